"""Expiration jobs and the fallback sweep.

Both paths enforce the same idempotent operations (``delete_turn_if_expired``,
``complete_game_if_expired``, ``activate_party_if_ready``), so either may run
any number of times, in any order, and still leave the same state.
"""

from typing import Dict, Optional

from flask import current_app

from chainplay import db, socketio
from chainplay.models import Game, Season, Turn, utcnow
from chainplay.services import jobs
from chainplay.services.games import parties, scheduler, turns


def _expire_turn(payload: dict) -> None:
    turns.delete_turn_if_expired(payload['turn_id'])


def _expire_game(payload: dict) -> None:
    turns.complete_game_if_expired(payload['game_id'])


def _party_deadline(payload: dict) -> None:
    current_app.logger.info(f"[party-deadline] party={payload['season_id']}")
    parties.activate_party_if_ready(payload['season_id'])


HANDLERS = {
    scheduler.TURN_EXPIRATION: _expire_turn,
    scheduler.GAME_EXPIRATION: _expire_game,
    scheduler.PARTY_DEADLINE: _party_deadline,
}


def register_queues(app, registry: jobs.QueueRegistry) -> None:
    """Build the three expiration queues once per app.

    With REDIS_URL empty the queues exist but are disabled, and only the sweep
    enforces deadlines.
    """
    url = app.config.get('REDIS_URL')
    producer = consumer = None
    if url:
        producer = jobs.connect(url, jobs.INTERACTIVE)
        consumer = jobs.connect(url, jobs.BACKGROUND)
    for name, handler in HANDLERS.items():
        registry.register(jobs.JobQueue(
            name,
            handler,
            producer=producer,
            consumer=consumer,
            max_attempts=int(app.config.get('JOB_MAX_ATTEMPTS', 3)),
            retry_backoff=float(app.config.get('JOB_RETRY_BACKOFF_SEC', 1.0)),
        ))
    app.logger.info(f"[queues] registered={sorted(HANDLERS)} redis={'on' if url else 'off'}")


def perform_expirations(now=None) -> Dict[str, int]:
    """Recompute every deadline that should already have fired."""
    now = now or utcnow()
    summary = {'turns_deleted': 0, 'games_deleted': 0, 'games_completed': 0, 'parties_activated': 0}

    expired_turn_ids = [
        turn_id for (turn_id,) in
        db.session.query(Turn.id)
        .join(Game, Turn.game_id == Game.id)
        .filter(Turn.completed_at.is_(None), Turn.expires_at < now, Game.deleted_at.is_(None))
        .order_by(Turn.expires_at.asc())
        .all()
    ]
    for turn_id in expired_turn_ids:
        outcome = turns.delete_turn_if_expired(turn_id, now=now)
        if outcome == 'turn-deleted':
            summary['turns_deleted'] += 1
        elif outcome == 'game-deleted':
            summary['games_deleted'] += 1

    expired_game_ids = [
        game_id for (game_id,) in
        db.session.query(Game.id)
        .filter(Game.completed_at.is_(None), Game.deleted_at.is_(None), Game.expires_at < now)
        .order_by(Game.expires_at.asc())
        .all()
    ]
    for game_id in expired_game_ids:
        if turns.complete_game_if_expired(game_id, now=now) == 'expired':
            summary['games_completed'] += 1

    due_party_ids = [
        season_id for (season_id,) in
        db.session.query(Season.id)
        .filter(Season.status == 'open', Season.start_deadline.isnot(None), Season.start_deadline <= now)
        .all()
    ]
    for season_id in due_party_ids:
        if parties.activate_party_if_ready(season_id, now=now):
            summary['parties_activated'] += 1

    current_app.logger.info(f"[sweep] {' '.join(f'{k}={v}' for k, v in summary.items())}")
    return summary


def _sweep_loop(app, interval: int) -> None:
    while True:
        socketio.sleep(interval)
        with app.app_context():
            try:
                perform_expirations()
            except Exception as exc:
                db.session.rollback()
                app.logger.error(f"[sweep-failed] error={exc!r}")


def start_background_services(app) -> Optional[jobs.WorkerPool]:
    """Start the worker pool and the periodic sweep. No-ops under TESTING."""
    if app.config.get('TESTING') and not app.config.get('ENABLE_SCHEDULER_IN_TESTS'):
        return None

    interval = int(app.config.get('EXPIRATION_SWEEP_INTERVAL_SEC', 300))
    with app.app_context():
        # Catch up on anything missed while no process was running
        try:
            perform_expirations()
        except Exception as exc:
            db.session.rollback()
            app.logger.error(f"[sweep-failed] error={exc!r}")
    socketio.start_background_task(_sweep_loop, app, interval)
    app.logger.info(f"[sweep-start] interval={interval}s")

    registry = app.extensions[jobs.EXTENSION_KEY]
    if not app.config.get('REDIS_URL'):
        app.logger.warning("[workers-skip] REDIS_URL not set, relying on the sweep")
        return None
    pool = jobs.WorkerPool(
        app,
        registry,
        concurrency=int(app.config.get('EXPIRATION_WORKER_CONCURRENCY', 5)),
        poll_interval=float(app.config.get('JOB_POLL_INTERVAL_SEC', 1.0)),
    )
    pool.start()
    return pool
