from chainplay import db
from datetime import datetime, timezone
import random
import string


def utcnow():
    """Naive UTC timestamp, matching how the DateTime columns are stored."""
    return datetime.now(timezone.utc).replace(tzinfo=None)


def _iso(value):
    return value.isoformat() if value else None


def random_suffix(length=6):
    return ''.join(random.choices(string.ascii_lowercase + string.digits, k=length))


def to_base36(number):
    alphabet = string.digits + string.ascii_lowercase
    if number == 0:
        return '0'
    digits = []
    while number:
        number, rem = divmod(number, 36)
        digits.append(alphabet[rem])
    return ''.join(reversed(digits))


def _time_ordered_id(prefix, created_at):
    millis = int(created_at.replace(tzinfo=timezone.utc).timestamp() * 1000)
    return f"{prefix}_{to_base36(millis)}_{random_suffix()}"


def generate_game_id(created_at):
    """Time-ordered game id with a random suffix to avoid collisions in bursts."""
    return _time_ordered_id('g', created_at)


def generate_season_id(created_at):
    return _time_ordered_id('s', created_at)


def generate_turn_id(game_id, order_index):
    return f"t_{game_id[2:]}_{order_index}_{random_suffix(4)}"


class GameConfig(db.Model):
    __tablename__ = 'game_config'
    id = db.Column(db.String(64), primary_key=True)
    min_turns = db.Column(db.Integer, nullable=False)
    max_turns = db.Column(db.Integer, nullable=True)  # null: only expiry completes the game
    writing_timeout = db.Column(db.String(32), nullable=False)
    drawing_timeout = db.Column(db.String(32), nullable=False)
    game_timeout = db.Column(db.String(32), nullable=False)
    is_lewd = db.Column(db.Boolean, default=False, nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)

    def copy(self, new_id, **overrides):
        values = {
            'min_turns': self.min_turns,
            'max_turns': self.max_turns,
            'writing_timeout': self.writing_timeout,
            'drawing_timeout': self.drawing_timeout,
            'game_timeout': self.game_timeout,
            'is_lewd': self.is_lewd,
        }
        values.update(overrides)
        return GameConfig(id=new_id, **values)

    def to_dict(self):
        return {
            'id': self.id,
            'min_turns': self.min_turns,
            'max_turns': self.max_turns,
            'writing_timeout': self.writing_timeout,
            'drawing_timeout': self.drawing_timeout,
            'game_timeout': self.game_timeout,
            'is_lewd': self.is_lewd,
        }


class Game(db.Model):
    __tablename__ = 'game'
    id = db.Column(db.String(64), primary_key=True)
    config_id = db.Column(db.String(64), db.ForeignKey('game_config.id'), nullable=False, unique=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False, index=True)
    expires_at = db.Column(db.DateTime, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True, index=True)
    deleted_at = db.Column(db.DateTime, nullable=True, index=True)
    season_id = db.Column(db.String(64), db.ForeignKey('season.id'), nullable=True, index=True)
    # Row of the party's rotation matrix this chain follows
    rotation_row = db.Column(db.Integer, nullable=True)
    poster_turn_id = db.Column(db.String(64), db.ForeignKey('turn.id', name='fk_game_poster_turn_id', use_alter=True, ondelete='SET NULL'), nullable=True)

    config = db.relationship('GameConfig')
    season = db.relationship('Season', back_populates='games')
    turns = db.relationship('Turn', foreign_keys='Turn.game_id', back_populates='game',
                            order_by='Turn.order_index', cascade='all, delete-orphan')

    @property
    def completed_turns(self):
        return [t for t in self.turns if t.completed_at is not None and t.rejected_at is None]

    @property
    def completed_count(self):
        return len(self.completed_turns)

    @property
    def pending_turn(self):
        for t in self.turns:
            if t.completed_at is None:
                return t
        return None

    @property
    def next_turn_is_drawing(self):
        return self.completed_count % 2 == 1

    def to_dict(self, include_rejected=False):
        turns = self.turns if include_rejected else [t for t in self.turns if t.rejected_at is None]
        return {
            'id': self.id,
            'config': self.config.to_dict() if self.config else None,
            'created_at': _iso(self.created_at),
            'expires_at': _iso(self.expires_at),
            'completed_at': _iso(self.completed_at),
            'deleted_at': _iso(self.deleted_at),
            'season_id': self.season_id,
            'poster_turn_id': self.poster_turn_id,
            'completed_count': self.completed_count,
            'turns': [t.to_dict(include_flags=include_rejected) for t in turns],
        }


class Turn(db.Model):
    __tablename__ = 'turn'
    id = db.Column(db.String(64), primary_key=True)
    game_id = db.Column(db.String(64), db.ForeignKey('game.id'), nullable=False, index=True)
    player_id = db.Column(db.String(64), nullable=False, index=True)
    order_index = db.Column(db.Integer, nullable=False)
    is_drawing = db.Column(db.Boolean, nullable=False)
    # Text for writing turns, an opaque storage path for drawing turns
    content = db.Column(db.Text, nullable=False, default='')
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    expires_at = db.Column(db.DateTime, nullable=True, index=True)
    completed_at = db.Column(db.DateTime, nullable=True)
    rejected_at = db.Column(db.DateTime, nullable=True)

    game = db.relationship('Game', foreign_keys=[game_id], back_populates='turns')
    flags = db.relationship('TurnFlag', back_populates='turn', cascade='all, delete-orphan')

    @property
    def status(self):
        if self.rejected_at:
            return 'rejected'
        if self.completed_at:
            return 'completed'
        return 'pending'

    def to_dict(self, include_flags=False):
        data = {
            'id': self.id,
            'game_id': self.game_id,
            'player_id': self.player_id,
            'order_index': self.order_index,
            'is_drawing': self.is_drawing,
            'content': self.content,
            'status': self.status,
            'created_at': _iso(self.created_at),
            'expires_at': _iso(self.expires_at),
            'completed_at': _iso(self.completed_at),
            'rejected_at': _iso(self.rejected_at),
        }
        if include_flags:
            data['flags'] = [f.to_dict() for f in self.flags]
        return data


class TurnFlag(db.Model):
    __tablename__ = 'turn_flag'
    id = db.Column(db.Integer, primary_key=True)
    turn_id = db.Column(db.String(64), db.ForeignKey('turn.id'), nullable=False, index=True)
    player_id = db.Column(db.String(64), nullable=False, index=True)  # reporter
    reason = db.Column(db.String(16), nullable=False)  # spam, offensive, other
    explanation = db.Column(db.Text, nullable=True)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    resolved_at = db.Column(db.DateTime, nullable=True, index=True)

    turn = db.relationship('Turn', back_populates='flags')

    def to_dict(self):
        return {
            'id': self.id,
            'turn_id': self.turn_id,
            'player_id': self.player_id,
            'reason': self.reason,
            'explanation': self.explanation,
            'created_at': _iso(self.created_at),
            'resolved_at': _iso(self.resolved_at),
        }


class Season(db.Model):
    """A party: several chains played by a fixed roster."""
    __tablename__ = 'season'
    id = db.Column(db.String(64), primary_key=True)
    title = db.Column(db.String(128), nullable=False)
    status = db.Column(db.String(16), default='open', nullable=False)  # open, active, completed, cancelled
    created_by = db.Column(db.String(64), nullable=False)
    created_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    completed_at = db.Column(db.DateTime, nullable=True)
    start_deadline = db.Column(db.DateTime, nullable=True)
    min_players = db.Column(db.Integer, nullable=False, default=2)
    max_players = db.Column(db.Integer, nullable=False, default=12)
    turn_passing_algorithm = db.Column(db.String(16), nullable=False, default='algorithmic')  # round-robin, algorithmic
    # Lets joined members other than the creator invite more players
    allow_player_invites = db.Column(db.Boolean, nullable=False, default=False)
    game_config_id = db.Column(db.String(64), db.ForeignKey('game_config.id'), nullable=False)

    game_config = db.relationship('GameConfig')
    players = db.relationship('PlayerInSeason', back_populates='season',
                              order_by=lambda: (PlayerInSeason.invited_at, PlayerInSeason.id),
                              cascade='all, delete-orphan')
    games = db.relationship('Game', back_populates='season')

    @property
    def roster(self):
        """Joined player ids in roster order."""
        return [p.player_id for p in self.players if p.joined_at is not None]

    def to_dict(self):
        return {
            'id': self.id,
            'title': self.title,
            'status': self.status,
            'created_by': self.created_by,
            'created_at': _iso(self.created_at),
            'completed_at': _iso(self.completed_at),
            'start_deadline': _iso(self.start_deadline),
            'min_players': self.min_players,
            'max_players': self.max_players,
            'turn_passing_algorithm': self.turn_passing_algorithm,
            'allow_player_invites': self.allow_player_invites,
            'config': self.game_config.to_dict() if self.game_config else None,
            'players': [p.to_dict() for p in self.players],
        }


class PlayerInSeason(db.Model):
    __tablename__ = 'player_in_season'
    __table_args__ = (db.UniqueConstraint('season_id', 'player_id', name='uq_player_in_season'),)
    id = db.Column(db.Integer, primary_key=True)
    season_id = db.Column(db.String(64), db.ForeignKey('season.id'), nullable=False)
    player_id = db.Column(db.String(64), nullable=False, index=True)
    invited_at = db.Column(db.DateTime, default=utcnow, nullable=False)
    joined_at = db.Column(db.DateTime, nullable=True)

    season = db.relationship('Season', back_populates='players')

    def to_dict(self):
        return {
            'player_id': self.player_id,
            'invited_at': _iso(self.invited_at),
            'joined_at': _iso(self.joined_at),
        }
