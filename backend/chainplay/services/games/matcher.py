"""Routes a player to the next open slot of an existing chain, or starts one."""

from contextlib import contextmanager
from typing import Dict, Optional

import sqlalchemy as sa
from flask import current_app

from chainplay import db
from chainplay.errors import ConfigNotFound, PartyNotFound, PendingGameExists, ValidationError
from chainplay.models import Game, GameConfig, Season, Turn
from chainplay.services.games import scheduler, turns
from chainplay.services.games.moderation import eligible_games_query

TURN_TYPE_OPTIONS = (None, 'first', 'writing', 'drawing')


@contextmanager
def matching_transaction():
    """Short transaction for the read-check-insert of a match.

    Scheduling jobs is network I/O; callers do it after this block exits.
    """
    session = db.session
    # Isolation can only be set before the transaction touches a connection
    if session().in_transaction():
        session.commit()
    cfg = current_app.config
    isolation = cfg.get('MATCH_ISOLATION_LEVEL')
    if isolation:
        session.connection(execution_options={'isolation_level': isolation})
    if session.get_bind().dialect.name == 'postgresql':
        timeout_ms = int(cfg.get('MATCH_TIMEOUT_MS', 5000))
        session.execute(sa.text(f"SET LOCAL statement_timeout = {timeout_ms}"))
    try:
        yield session
        session.commit()
    except Exception:
        session.rollback()
        raise


def has_pending_turn(player_id: str) -> bool:
    return (
        Turn.query.join(Game, Turn.game_id == Game.id)
        .filter(
            Turn.player_id == player_id,
            Turn.completed_at.is_(None),
            Turn.rejected_at.is_(None),
            Game.completed_at.is_(None),
            Game.deleted_at.is_(None),
        )
        .first()
        is not None
    )


def _slot_fits(game: Game, turn_type: Optional[str]) -> bool:
    completed = turns.count_completed_turns(game.id)
    max_turns = game.config.max_turns
    if max_turns and completed >= max_turns:
        return False
    if turn_type is None:
        return True
    return (completed % 2 == 1) == (turn_type == 'drawing')


def _pick_candidate(player_id: str, is_lewd, turn_type, season_id) -> Optional[Game]:
    for game in eligible_games_query(player_id, is_lewd=is_lewd, season_id=season_id):
        if _slot_fits(game, turn_type):
            return game
    return None


def _lock_if_still_eligible(game_id: str, player_id: str, is_lewd, turn_type, season_id) -> Optional[Game]:
    locked = Game.query.filter(Game.id == game_id).with_for_update().first()
    if locked is None:
        return None
    still = eligible_games_query(player_id, is_lewd=is_lewd, season_id=season_id).filter(Game.id == game_id).first()
    if still is None or not _slot_fits(locked, turn_type):
        return None
    return locked


def _template_config(season_id: Optional[str]) -> GameConfig:
    if season_id:
        season = db.session.get(Season, season_id)
        if season is None:
            raise PartyNotFound()
        return season.game_config
    config = db.session.get(GameConfig, 'default')
    if config is None:
        raise ConfigNotFound('Default game config not found')
    return config


def _start_new_chain(player_id: str, is_lewd, season_id) -> Turn:
    config = _template_config(season_id)
    if season_id is None and is_lewd is None:
        is_lewd = False
    with matching_transaction():
        game = turns.build_game(config, season_id=season_id, is_lewd=is_lewd)
        turn = turns.build_turn(player_id, game)
    scheduler.schedule_game_expiration(game)
    scheduler.schedule_turn_expiration(turn)
    return turn


def find_or_create_turn(player_id: str, is_lewd: Optional[bool] = None, turn_type: Optional[str] = None,
                        season_id: Optional[str] = None) -> Turn:
    if turn_type not in TURN_TYPE_OPTIONS:
        raise ValidationError(f'Unknown turn type: {turn_type}')
    if has_pending_turn(player_id):
        raise PendingGameExists()

    if turn_type == 'first':
        current_app.logger.info(f"[match] player={player_id} first turn requested, new chain")
        return _start_new_chain(player_id, is_lewd, season_id)

    attempts = int(current_app.config.get('MATCH_ATTEMPTS', 3))
    for attempt in range(1, attempts + 1):
        turn = None
        with matching_transaction():
            candidate = _pick_candidate(player_id, is_lewd, turn_type, season_id)
            if candidate is None:
                break
            game = _lock_if_still_eligible(candidate.id, player_id, is_lewd, turn_type, season_id)
            if game is not None:
                turn = turns.build_turn(player_id, game)
        if turn is not None:
            current_app.logger.info(f"[match] player={player_id} game={turn.game_id} turn={turn.id} attempt={attempt}")
            scheduler.schedule_turn_expiration(turn)
            return turn
        current_app.logger.info(f"[match-race] player={player_id} game={candidate.id} attempt={attempt} slot taken")

    current_app.logger.info(f"[match] player={player_id} no eligible game, new chain lewd={is_lewd} type={turn_type}")
    return _start_new_chain(player_id, is_lewd, season_id)


def available_game_types(player_id: str) -> Dict[str, bool]:
    result = {
        'writing_safe': False,
        'writing_lewd': False,
        'drawing_safe': False,
        'drawing_lewd': False,
    }
    for game in eligible_games_query(player_id):
        completed = turns.count_completed_turns(game.id)
        if game.config.max_turns and completed >= game.config.max_turns:
            continue
        kind = 'drawing' if completed % 2 == 1 else 'writing'
        rating = 'lewd' if game.config.is_lewd else 'safe'
        result[f'{kind}_{rating}'] = True
    return result
