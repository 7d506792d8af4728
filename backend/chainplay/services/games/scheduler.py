from datetime import datetime, timezone

from flask import current_app

from chainplay.errors import JobQueueUnavailable
from chainplay.services.jobs import get_queue

TURN_EXPIRATION = 'turn-expiration'
GAME_EXPIRATION = 'game-expiration'
PARTY_DEADLINE = 'party-deadline'


def _timestamp(value: datetime) -> float:
    return value.replace(tzinfo=timezone.utc).timestamp()


def _schedule(queue_name: str, job_id: str, payload: dict, run_at: datetime) -> bool:
    """Best effort: a failure is logged and the fallback sweep picks the job up later.

    Must be called outside any open matching transaction.
    """
    queue = get_queue(queue_name)
    if not queue.enabled:
        current_app.logger.debug(f"[schedule-skip] queue={queue_name} job={job_id} no redis")
        return False
    try:
        queue.add(job_id, payload, _timestamp(run_at))
    except JobQueueUnavailable as exc:
        current_app.logger.warning(f"[schedule-failed] queue={queue_name} job={job_id} error={exc}")
        return False
    current_app.logger.info(f"[schedule] queue={queue_name} job={job_id} run_at={run_at.isoformat()}")
    return True


def _cancel(queue_name: str, job_id: str) -> bool:
    queue = get_queue(queue_name)
    if not queue.enabled:
        return False
    try:
        queue.remove(job_id)
    except JobQueueUnavailable as exc:
        current_app.logger.warning(f"[cancel-failed] queue={queue_name} job={job_id} error={exc}")
        return False
    return True


def turn_job_id(turn_id: str) -> str:
    return f"turn-{turn_id}"


def game_job_id(game_id: str) -> str:
    return f"game-{game_id}"


def party_job_id(season_id: str) -> str:
    return f"party-{season_id}"


def schedule_turn_expiration(turn) -> bool:
    if turn.expires_at is None:
        return False
    payload = {'turn_id': turn.id, 'game_id': turn.game_id, 'order_index': turn.order_index}
    return _schedule(TURN_EXPIRATION, turn_job_id(turn.id), payload, turn.expires_at)


def schedule_game_expiration(game) -> bool:
    if game.expires_at is None:
        current_app.logger.warning(f"[schedule-skip] game={game.id} has no expiration date")
        return False
    return _schedule(GAME_EXPIRATION, game_job_id(game.id), {'game_id': game.id}, game.expires_at)


def schedule_party_deadline(season) -> bool:
    if season.start_deadline is None:
        return False
    payload = {'season_id': season.id}
    return _schedule(PARTY_DEADLINE, party_job_id(season.id), payload, season.start_deadline)


def cancel_turn_expiration(turn_id: str) -> bool:
    return _cancel(TURN_EXPIRATION, turn_job_id(turn_id))


def cancel_game_expiration(game_id: str) -> bool:
    return _cancel(GAME_EXPIRATION, game_job_id(game_id))


def cancel_party_deadline(season_id: str) -> bool:
    return _cancel(PARTY_DEADLINE, party_job_id(season_id))
