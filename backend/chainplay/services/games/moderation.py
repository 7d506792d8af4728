"""Flags, and the visibility rules every other read path goes through.

A game with any turn carrying an unresolved flag is invisible to ordinary
queries and ineligible for matching, whoever asks. Only the ``*_admin``
lookups bypass that.
"""

from typing import List, Optional

import sqlalchemy as sa
from flask import current_app

from chainplay import db
from chainplay.errors import (
    DuplicatePendingFlag,
    FlagNotFound,
    GameNotFound,
    TurnAlreadyRejected,
    TurnNotFound,
    ValidationError,
)
from chainplay.models import Game, GameConfig, Turn, TurnFlag, utcnow
from chainplay.services import notifications
from chainplay.services.games import scheduler

FLAG_REASONS = ('spam', 'offensive', 'other')


def unresolved_flag_clause():
    """Correlated EXISTS: some turn of the outer Game has an open flag."""
    return (
        sa.select(TurnFlag.id)
        .join(Turn, TurnFlag.turn_id == Turn.id)
        .where(Turn.game_id == Game.id, TurnFlag.resolved_at.is_(None))
        .exists()
    )


def eligible_games_query(player_id: str, is_lewd: Optional[bool] = None, season_id: Optional[str] = None):
    """Active games this player may take the next turn of, oldest first."""
    played = sa.select(Turn.id).where(Turn.game_id == Game.id, Turn.player_id == player_id).exists()
    # A player who ever flagged a turn of a game never rejoins it
    flagged_by_player = (
        sa.select(TurnFlag.id)
        .join(Turn, TurnFlag.turn_id == Turn.id)
        .where(Turn.game_id == Game.id, TurnFlag.player_id == player_id)
        .exists()
    )
    pending = sa.select(Turn.id).where(Turn.game_id == Game.id, Turn.completed_at.is_(None)).exists()

    query = Game.query.filter(
        Game.completed_at.is_(None),
        Game.deleted_at.is_(None),
        ~played,
        ~unresolved_flag_clause(),
        ~flagged_by_player,
        ~pending,
    )
    if season_id:
        query = query.filter(Game.season_id == season_id)
    else:
        query = query.filter(Game.season_id.is_(None))
    if is_lewd is not None:
        query = query.join(GameConfig, Game.config_id == GameConfig.id).filter(GameConfig.is_lewd == is_lewd)
    return query.order_by(Game.created_at.asc(), Game.id.asc())


def game_has_unresolved_flag(game_id: str) -> bool:
    return db.session.query(
        sa.select(TurnFlag.id)
        .join(Turn, TurnFlag.turn_id == Turn.id)
        .where(Turn.game_id == game_id, TurnFlag.resolved_at.is_(None))
        .exists()
    ).scalar()


def find_game_by_id(game_id: str) -> Optional[Game]:
    game = Game.query.filter(Game.id == game_id, Game.deleted_at.is_(None)).first()
    if game is None:
        return None
    # Party chains stay private until the whole party has finished
    if game.season_id and (game.season is None or game.season.status != 'completed'):
        return None
    if game_has_unresolved_flag(game.id):
        return None
    return game


def find_game_by_id_admin(game_id: str) -> Optional[Game]:
    return db.session.get(Game, game_id)


def find_game_by_turn_id(turn_id: str) -> Optional[Game]:
    turn = (
        Turn.query.join(Game, Turn.game_id == Game.id)
        .filter(Turn.id == turn_id, Game.deleted_at.is_(None))
        .first()
    )
    if turn is None or game_has_unresolved_flag(turn.game_id):
        return None
    return turn.game


def find_turn_by_id(turn_id: str) -> Optional[Turn]:
    return (
        Turn.query.join(Game, Turn.game_id == Game.id)
        .filter(Turn.id == turn_id, Game.deleted_at.is_(None))
        .first()
    )


def find_pending_turns(player_id: str, party_only: bool = False) -> List[Turn]:
    query = (
        Turn.query.join(Game, Turn.game_id == Game.id)
        .filter(
            Turn.player_id == player_id,
            Turn.completed_at.is_(None),
            Turn.rejected_at.is_(None),
            Game.completed_at.is_(None),
            Game.deleted_at.is_(None),
        )
    )
    if party_only:
        query = query.filter(Game.season_id.isnot(None))
    return query.order_by(Turn.created_at.asc()).all()


def flag_turn(turn_id: str, reporter_id: str, reason: str, explanation: Optional[str] = None) -> TurnFlag:
    if reason not in FLAG_REASONS:
        raise ValidationError(f'Unknown flag reason: {reason}')
    if TurnFlag.query.filter_by(player_id=reporter_id, resolved_at=None).first() is not None:
        raise DuplicatePendingFlag()

    turn = find_turn_by_id(turn_id)
    # Rejected turns and games already under review read as missing
    if turn is None or turn.rejected_at is not None or find_game_by_turn_id(turn.id) is None:
        raise TurnNotFound()

    # The chain must not advance past content under review
    stale = Turn.query.filter(
        Turn.game_id == turn.game_id,
        Turn.order_index > turn.order_index,
        Turn.completed_at.is_(None),
    ).all()
    stale_ids = [t.id for t in stale]
    for pending in stale:
        db.session.delete(pending)

    flag = TurnFlag(turn_id=turn.id, player_id=reporter_id, reason=reason, explanation=explanation)
    db.session.add(flag)
    db.session.commit()
    current_app.logger.info(
        f"[flag-create] flag={flag.id} turn={turn.id} game={turn.game_id} reporter={reporter_id} removed_pending={len(stale_ids)}"
    )

    for pending_id in stale_ids:
        scheduler.cancel_turn_expiration(pending_id)
    notifications.notify_flag_submitted(flag)
    return flag


def _open_flag(flag_id) -> TurnFlag:
    flag = TurnFlag.query.filter_by(id=flag_id, resolved_at=None).first()
    if flag is None:
        raise FlagNotFound(f'Flag {flag_id} not found or already resolved')
    return flag


def confirm_flag(flag_id, admin_id: Optional[str] = None) -> TurnFlag:
    flag = _open_flag(flag_id)
    turn = flag.turn
    if turn.rejected_at is not None:
        raise TurnAlreadyRejected()
    now = utcnow()
    turn.rejected_at = now
    flag.resolved_at = now
    db.session.commit()
    current_app.logger.info(f"[flag-confirm] flag={flag.id} turn={turn.id} admin={admin_id or 'system'}")
    notifications.notify_flag_resolved(flag, confirmed=True)
    return flag


def reject_flag(flag_id, admin_id: Optional[str] = None) -> TurnFlag:
    flag = _open_flag(flag_id)
    flag.resolved_at = utcnow()
    db.session.commit()
    current_app.logger.info(f"[flag-reject] flag={flag.id} turn={flag.turn_id} admin={admin_id or 'system'}")
    notifications.notify_flag_resolved(flag, confirmed=False)
    return flag


def set_game_poster(game_id: str, turn_id: str) -> Game:
    game = find_game_by_id_admin(game_id)
    if game is None:
        raise GameNotFound()
    turn = db.session.get(Turn, turn_id)
    if turn is None:
        raise TurnNotFound()
    if turn.game_id != game.id:
        raise ValidationError('Turn does not belong to this game')
    game.poster_turn_id = turn.id
    db.session.commit()
    current_app.logger.info(f"[game-poster] game={game.id} turn={turn.id}")
    return game
