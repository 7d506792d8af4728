"""create game_config, season, player_in_season, game, turn, turn_flag

Revision ID: 3c9a7e1f2b60
Revises:
Create Date: 2026-10-17 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c9a7e1f2b60'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'game_config' not in existing_tables:
        op.create_table(
            'game_config',
            sa.Column('id', sa.String(length=64), primary_key=True),
            sa.Column('min_turns', sa.Integer(), nullable=False),
            sa.Column('max_turns', sa.Integer(), nullable=True),
            sa.Column('writing_timeout', sa.String(length=32), nullable=False),
            sa.Column('drawing_timeout', sa.String(length=32), nullable=False),
            sa.Column('game_timeout', sa.String(length=32), nullable=False),
            sa.Column('is_lewd', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('created_at', sa.DateTime(), nullable=False),
        )

    if 'season' not in existing_tables:
        op.create_table(
            'season',
            sa.Column('id', sa.String(length=64), primary_key=True),
            sa.Column('title', sa.String(length=128), nullable=False),
            sa.Column('status', sa.String(length=16), nullable=False, server_default='open'),
            sa.Column('created_by', sa.String(length=64), nullable=False),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('start_deadline', sa.DateTime(), nullable=True),
            sa.Column('min_players', sa.Integer(), nullable=False, server_default='2'),
            sa.Column('max_players', sa.Integer(), nullable=False, server_default='12'),
            sa.Column('turn_passing_algorithm', sa.String(length=16), nullable=False, server_default='algorithmic'),
            sa.Column('allow_player_invites', sa.Boolean(), nullable=False, server_default=sa.false()),
            sa.Column('game_config_id', sa.String(length=64), sa.ForeignKey('game_config.id'), nullable=False),
        )

    if 'player_in_season' not in existing_tables:
        op.create_table(
            'player_in_season',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('season_id', sa.String(length=64), sa.ForeignKey('season.id'), nullable=False),
            sa.Column('player_id', sa.String(length=64), nullable=False),
            sa.Column('invited_at', sa.DateTime(), nullable=False),
            sa.Column('joined_at', sa.DateTime(), nullable=True),
            sa.UniqueConstraint('season_id', 'player_id', name='uq_player_in_season'),
        )
        op.create_index('ix_player_in_season_player_id', 'player_in_season', ['player_id'])

    if 'game' not in existing_tables:
        op.create_table(
            'game',
            sa.Column('id', sa.String(length=64), primary_key=True),
            sa.Column('config_id', sa.String(length=64), sa.ForeignKey('game_config.id'), nullable=False, unique=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('expires_at', sa.DateTime(), nullable=False),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('deleted_at', sa.DateTime(), nullable=True),
            sa.Column('season_id', sa.String(length=64), sa.ForeignKey('season.id'), nullable=True),
            sa.Column('rotation_row', sa.Integer(), nullable=True),
            # FK to turn added below, the two tables reference each other
            sa.Column('poster_turn_id', sa.String(length=64), nullable=True),
        )
        op.create_index('ix_game_created_at', 'game', ['created_at'])
        op.create_index('ix_game_completed_at', 'game', ['completed_at'])
        op.create_index('ix_game_deleted_at', 'game', ['deleted_at'])
        op.create_index('ix_game_season_id', 'game', ['season_id'])

    if 'turn' not in existing_tables:
        op.create_table(
            'turn',
            sa.Column('id', sa.String(length=64), primary_key=True),
            sa.Column('game_id', sa.String(length=64), sa.ForeignKey('game.id'), nullable=False),
            sa.Column('player_id', sa.String(length=64), nullable=False),
            sa.Column('order_index', sa.Integer(), nullable=False),
            sa.Column('is_drawing', sa.Boolean(), nullable=False),
            sa.Column('content', sa.Text(), nullable=False, server_default=''),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('expires_at', sa.DateTime(), nullable=True),
            sa.Column('completed_at', sa.DateTime(), nullable=True),
            sa.Column('rejected_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_turn_game_id', 'turn', ['game_id'])
        op.create_index('ix_turn_player_id', 'turn', ['player_id'])
        op.create_index('ix_turn_expires_at', 'turn', ['expires_at'])

    if 'turn_flag' not in existing_tables:
        op.create_table(
            'turn_flag',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('turn_id', sa.String(length=64), sa.ForeignKey('turn.id'), nullable=False),
            sa.Column('player_id', sa.String(length=64), nullable=False),
            sa.Column('reason', sa.String(length=16), nullable=False),
            sa.Column('explanation', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(), nullable=False),
            sa.Column('resolved_at', sa.DateTime(), nullable=True),
        )
        op.create_index('ix_turn_flag_turn_id', 'turn_flag', ['turn_id'])
        op.create_index('ix_turn_flag_player_id', 'turn_flag', ['player_id'])
        op.create_index('ix_turn_flag_resolved_at', 'turn_flag', ['resolved_at'])

    # SQLite cannot add constraints to an existing table
    if bind.dialect.name != 'sqlite':
        fks = {fk.get('name') for fk in insp.get_foreign_keys('game')} if 'game' in existing_tables else set()
        if 'fk_game_poster_turn_id' not in fks:
            op.create_foreign_key(
                'fk_game_poster_turn_id', 'game', 'turn', ['poster_turn_id'], ['id'], ondelete='SET NULL'
            )


def downgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if bind.dialect.name != 'sqlite' and 'game' in existing_tables:
        fks = {fk.get('name') for fk in insp.get_foreign_keys('game')}
        if 'fk_game_poster_turn_id' in fks:
            op.drop_constraint('fk_game_poster_turn_id', 'game', type_='foreignkey')

    for table in ('turn_flag', 'turn', 'game', 'player_in_season', 'season', 'game_config'):
        if table in existing_tables:
            op.drop_table(table)
