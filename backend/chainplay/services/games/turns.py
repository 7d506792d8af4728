"""Turn and game lifecycle.

A turn is pending until its content is submitted, then completed; moderation
can later reject a completed turn. A game is active until its completed
(non-rejected) turn count reaches the config's max_turns, or until it expires
with at least min_turns done.

The ``build_*`` helpers only add rows to the session so the matcher can use
them inside its own transaction; the ``create_*`` functions commit and then
schedule the expiration jobs.
"""

from datetime import datetime
from typing import Optional

from flask import current_app

from chainplay import db
from chainplay.errors import (
    EmptyContent,
    GameAlreadyCompleted,
    GameNotFound,
    TurnExpired,
    TurnNotFound,
    ValidationError,
    WrongTurnType,
)
from chainplay.events import GameCompleted, TurnCompleted, publish
from chainplay.models import Game, GameConfig, Turn, generate_game_id, generate_turn_id, utcnow
from chainplay.services import notifications
from chainplay.services.games import moderation, scheduler
from chainplay.services.games.durations import parse_duration

TURN_TYPES = ('writing', 'drawing')


def count_turns(game_id: str) -> int:
    return Turn.query.filter_by(game_id=game_id).count()


def count_completed_turns(game_id: str) -> int:
    """Completed turns that moderation has not rejected."""
    return Turn.query.filter(
        Turn.game_id == game_id,
        Turn.completed_at.isnot(None),
        Turn.rejected_at.is_(None),
    ).count()


def build_game(config: GameConfig, season_id: Optional[str] = None, is_lewd: Optional[bool] = None,
               created_at: Optional[datetime] = None, rotation_row: Optional[int] = None,
               **config_overrides) -> Game:
    now = created_at or utcnow()
    game_id = generate_game_id(now)
    if is_lewd is not None:
        config_overrides['is_lewd'] = is_lewd
    # Each game owns a frozen copy of its ruleset
    game_config = config.copy(game_id, **config_overrides)
    game = Game(
        id=game_id,
        config=game_config,
        season_id=season_id,
        rotation_row=rotation_row,
        created_at=now,
        expires_at=now + parse_duration(game_config.game_timeout),
    )
    db.session.add(game_config)
    db.session.add(game)
    db.session.flush()
    current_app.logger.info(
        f"[game-create] game={game.id} season={season_id} lewd={game_config.is_lewd} expires_at={game.expires_at.isoformat()}"
    )
    return game


def create_game(config: GameConfig, season_id: Optional[str] = None, is_lewd: Optional[bool] = None,
                created_at: Optional[datetime] = None, rotation_row: Optional[int] = None,
                **config_overrides) -> Game:
    game = build_game(config, season_id=season_id, is_lewd=is_lewd, created_at=created_at,
                      rotation_row=rotation_row, **config_overrides)
    db.session.commit()
    scheduler.schedule_game_expiration(game)
    return game


def build_turn(player_id: str, game: Game, created_at: Optional[datetime] = None) -> Turn:
    now = created_at or utcnow()
    order_index = count_turns(game.id)
    # Live count, so rejected turns shift the writing/drawing alternation
    is_drawing = count_completed_turns(game.id) % 2 == 1
    timeout = game.config.drawing_timeout if is_drawing else game.config.writing_timeout
    turn = Turn(
        id=generate_turn_id(game.id, order_index),
        game_id=game.id,
        player_id=player_id,
        order_index=order_index,
        is_drawing=is_drawing,
        content='',
        created_at=now,
        expires_at=now + parse_duration(timeout),
    )
    db.session.add(turn)
    db.session.flush()
    current_app.logger.info(
        f"[turn-create] turn={turn.id} player={player_id} drawing={is_drawing} expires_at={turn.expires_at.isoformat()}"
    )
    return turn


def create_turn(player_id: str, game: Game, created_at: Optional[datetime] = None) -> Turn:
    turn = build_turn(player_id, game, created_at=created_at)
    db.session.commit()
    scheduler.schedule_turn_expiration(turn)
    return turn


def complete_turn(turn_id: str, turn_type: str, content: str, now: Optional[datetime] = None) -> Turn:
    if turn_type not in TURN_TYPES:
        raise ValidationError(f'Unknown turn type: {turn_type}')
    turn = db.session.get(Turn, turn_id)
    if turn is None or turn.rejected_at is not None:
        raise TurnNotFound()
    # Deleted games and games under review look the same to players
    game = moderation.find_game_by_turn_id(turn.id)
    if game is None:
        raise GameNotFound()
    if game.completed_at is not None:
        raise GameAlreadyCompleted()
    if turn.completed_at is not None:
        raise TurnNotFound(f'Turn not found or already completed: {turn_id}')
    if turn_type == 'writing' and turn.is_drawing:
        raise WrongTurnType('Turn is a drawing, not a writing')
    if turn_type == 'drawing' and not turn.is_drawing:
        raise WrongTurnType('Turn is a writing, not a drawing')
    if not content or not content.strip():
        raise EmptyContent()

    now = now or utcnow()
    if delete_turn_if_expired(turn.id, now=now) in ('turn-deleted', 'game-deleted'):
        raise TurnExpired()

    turn.content = content
    turn.completed_at = now
    turn.expires_at = None
    db.session.flush()

    max_turns = game.config.max_turns
    finished = bool(max_turns) and count_completed_turns(game.id) >= max_turns
    if finished:
        game.completed_at = now
    else:
        game.expires_at = now + parse_duration(game.config.game_timeout)
    db.session.commit()
    current_app.logger.info(f"[turn-complete] turn={turn.id} game={game.id} game_completed={finished}")

    scheduler.cancel_turn_expiration(turn.id)
    if finished:
        _after_game_completed(game)
    else:
        scheduler.schedule_game_expiration(game)
        publish(TurnCompleted(
            turn_id=turn.id,
            game_id=game.id,
            player_id=turn.player_id,
            order_index=turn.order_index,
            season_id=game.season_id,
        ))
    return turn


def delete_turn_if_expired(turn_id: str, now: Optional[datetime] = None) -> str:
    """Enforce a turn's deadline; safe to call any number of times.

    Returns one of 'missing', 'completed', 'rescheduled', 'turn-deleted' or
    'game-deleted'.
    """
    turn = db.session.get(Turn, turn_id)
    if turn is None:
        current_app.logger.info(f"[turn-expire] turn={turn_id} no longer exists")
        return 'missing'
    if turn.expires_at is None:
        return 'completed'

    now = now or utcnow()
    if turn.expires_at > now:
        scheduler.schedule_turn_expiration(turn)
        return 'rescheduled'

    if turn.order_index == 0:
        # A chain that never got its first contribution is dropped entirely
        soft_delete_game(turn.game_id, now=now)
        current_app.logger.info(f"[turn-expire] turn={turn_id} first turn, game={turn.game_id} deleted")
        return 'game-deleted'

    game_id = turn.game_id
    db.session.delete(turn)
    db.session.commit()
    current_app.logger.info(f"[turn-expire] turn={turn_id} game={game_id} deleted")
    return 'turn-deleted'


def soft_delete_game(game_id: str, now: Optional[datetime] = None) -> Optional[Game]:
    game = db.session.get(Game, game_id)
    if game is None or game.deleted_at is not None:
        return game
    pending = [t for t in game.turns if t.completed_at is None]
    pending_ids = [t.id for t in pending]
    for turn in pending:
        game.turns.remove(turn)
    game.deleted_at = now or utcnow()
    db.session.commit()
    current_app.logger.info(f"[game-delete] game={game_id} pending_turns_removed={len(pending_ids)}")

    for turn_id in pending_ids:
        scheduler.cancel_turn_expiration(turn_id)
    scheduler.cancel_game_expiration(game_id)
    return game


def complete_game(game_id: str, now: Optional[datetime] = None) -> Game:
    game = db.session.get(Game, game_id)
    if game is None or game.deleted_at is not None:
        raise GameNotFound()
    if game.completed_at is not None:
        return game
    game.completed_at = now or utcnow()
    db.session.commit()
    _after_game_completed(game)
    return game


def complete_game_if_expired(game_id: str, now: Optional[datetime] = None) -> str:
    """Returns 'missing', 'completed', 'rescheduled', 'too-short' or 'expired'."""
    game = db.session.get(Game, game_id)
    if game is None or game.deleted_at is not None:
        current_app.logger.info(f"[game-expire] game={game_id} no longer exists")
        return 'missing'
    if game.completed_at is not None:
        return 'completed'

    now = now or utcnow()
    if game.expires_at > now:
        scheduler.schedule_game_expiration(game)
        return 'rescheduled'

    completed = count_completed_turns(game.id)
    if completed < game.config.min_turns:
        # Left for a later pass; the sweep sees it again every interval
        current_app.logger.debug(
            f"[game-expire] game={game_id} expired without enough turns ({completed}/{game.config.min_turns})"
        )
        return 'too-short'
    complete_game(game.id, now=now)
    current_app.logger.info(f"[game-expire] game={game_id} completed")
    return 'expired'


def _after_game_completed(game: Game) -> None:
    current_app.logger.info(f"[game-complete] game={game.id} season={game.season_id}")
    scheduler.cancel_game_expiration(game.id)
    notifications.notify_game_completed(game)
    publish(GameCompleted(game_id=game.id, season_id=game.season_id))
