"""Fire-and-forget player notifications over Socket.IO.

Delivery failures are logged and never reach the caller.
"""

from flask import current_app

from chainplay import socketio

NAMESPACE = '/ws'
ADMINS_ROOM = 'admins'


def player_room(player_id: str) -> str:
    return f"player:{player_id}"


def _emit(room: str, kind: str, payload: dict) -> bool:
    try:
        socketio.emit('notification', dict(payload, kind=kind), to=room, namespace=NAMESPACE)
        return True
    except Exception as exc:
        current_app.logger.warning(f"[notify-failed] room={room} kind={kind} error={exc!r}")
        return False


def notify_player(player_id: str, kind: str, **payload) -> bool:
    return _emit(player_room(player_id), kind, payload)


def notify_admins(kind: str, **payload) -> bool:
    return _emit(ADMINS_ROOM, kind, payload)


def notify_turn_assigned(turn) -> bool:
    return notify_player(turn.player_id, 'turn_assigned', turn_id=turn.id, game_id=turn.game_id,
                         is_drawing=turn.is_drawing,
                         expires_at=turn.expires_at.isoformat() if turn.expires_at else None)


def notify_game_completed(game) -> int:
    """Tell every contributor of a finished chain; returns how many were notified."""
    sent = 0
    for player_id in sorted({t.player_id for t in game.completed_turns}):
        if notify_player(player_id, 'game_completed', game_id=game.id):
            sent += 1
    current_app.logger.info(f"[notify] game_completed game={game.id} players={sent}")
    return sent


def notify_flag_submitted(flag) -> None:
    turn = flag.turn
    notify_player(flag.player_id, 'flag_submitted', flag_id=flag.id, turn_id=flag.turn_id)
    notify_admins('flag_submitted', flag_id=flag.id, turn_id=flag.turn_id,
                  game_id=turn.game_id if turn else None, reason=flag.reason)


def notify_flag_resolved(flag, confirmed: bool) -> None:
    kind = 'flag_confirmed' if confirmed else 'flag_rejected'
    notify_player(flag.player_id, kind, flag_id=flag.id, turn_id=flag.turn_id)
    if confirmed and flag.turn:
        notify_player(flag.turn.player_id, kind, flag_id=flag.id, turn_id=flag.turn_id)
