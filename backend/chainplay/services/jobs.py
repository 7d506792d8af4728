"""Delayed job queues on Redis.

Each queue keeps a sorted set of job ids scored by their run-at timestamp and
a hash of JSON payloads. Job ids are deterministic (``turn-<id>``), so
scheduling the same job again moves it instead of duplicating it.

Producers (request handlers) and consumers (the worker pool) talk to Redis
through two different connection policies: producers fail fast so a
request never hangs on a dead Redis, workers retry forever with long backoff
so no scheduled job is dropped because of a blip.
"""

import json
import time
from dataclasses import dataclass
from typing import Callable, Dict, Optional

from flask import current_app
from redis import Redis
from redis.backoff import ExponentialBackoff
from redis.exceptions import ConnectionError as RedisConnectionError
from redis.exceptions import RedisError
from redis.exceptions import TimeoutError as RedisTimeoutError
from redis.retry import Retry

from chainplay import socketio
from chainplay.errors import JobQueueUnavailable

EXTENSION_KEY = 'chainplay.queues'


@dataclass(frozen=True)
class ConnectionPolicy:
    name: str
    retries: int  # -1 retries forever
    backoff_base: float
    backoff_cap: float
    socket_timeout: float
    connect_timeout: float
    keepalive: bool = False
    health_check_interval: int = 0


INTERACTIVE = ConnectionPolicy('interactive', retries=3, backoff_base=0.1, backoff_cap=2.0,
                               socket_timeout=1.0, connect_timeout=1.0)
BACKGROUND = ConnectionPolicy('background', retries=-1, backoff_base=1.0, backoff_cap=20.0,
                              socket_timeout=60.0, connect_timeout=10.0, keepalive=True,
                              health_check_interval=30)


def connect(url: str, policy: ConnectionPolicy) -> Redis:
    retry = Retry(ExponentialBackoff(cap=policy.backoff_cap, base=policy.backoff_base), policy.retries)
    return Redis.from_url(
        url,
        retry=retry,
        retry_on_error=[RedisConnectionError, RedisTimeoutError],
        socket_timeout=policy.socket_timeout,
        socket_connect_timeout=policy.connect_timeout,
        socket_keepalive=policy.keepalive,
        health_check_interval=policy.health_check_interval,
        decode_responses=True,
    )


class JobQueue:
    def __init__(self, name: str, handler: Callable[[dict], None], producer: Optional[Redis] = None,
                 consumer: Optional[Redis] = None, max_attempts: int = 3, retry_backoff: float = 1.0):
        self.name = name
        self.handler = handler
        self.producer = producer
        self.consumer = consumer
        self.max_attempts = max_attempts
        self.retry_backoff = retry_backoff

    @property
    def schedule_key(self) -> str:
        return f"chainplay:{self.name}:schedule"

    @property
    def payload_key(self) -> str:
        return f"chainplay:{self.name}:jobs"

    @property
    def enabled(self) -> bool:
        return self.producer is not None

    def add(self, job_id: str, payload: dict, run_at: float, client: Optional[Redis] = None) -> None:
        client = client or self.producer
        if client is None:
            raise JobQueueUnavailable(f'{self.name} queue has no Redis connection')
        body = json.dumps(dict(payload, attempts=payload.get('attempts', 0)))
        try:
            pipe = client.pipeline()
            pipe.hset(self.payload_key, job_id, body)
            pipe.zadd(self.schedule_key, {job_id: run_at})
            pipe.execute()
        except RedisError as exc:
            raise JobQueueUnavailable(f'{self.name}: {exc}') from exc

    def remove(self, job_id: str) -> None:
        if self.producer is None:
            raise JobQueueUnavailable(f'{self.name} queue has no Redis connection')
        try:
            pipe = self.producer.pipeline()
            pipe.zrem(self.schedule_key, job_id)
            pipe.hdel(self.payload_key, job_id)
            pipe.execute()
        except RedisError as exc:
            raise JobQueueUnavailable(f'{self.name}: {exc}') from exc

    def run_at(self, job_id: str) -> Optional[float]:
        if self.producer is None:
            return None
        return self.producer.zscore(self.schedule_key, job_id)

    def claim_due(self, now: float, limit: int = 1):
        """Pop up to `limit` due jobs. ZREM decides which worker wins a job."""
        claimed = []
        for job_id in self.consumer.zrangebyscore(self.schedule_key, '-inf', now, start=0, num=limit):
            if self.consumer.zrem(self.schedule_key, job_id):
                body = self.consumer.hget(self.payload_key, job_id)
                if body is None:
                    continue
                claimed.append((job_id, json.loads(body)))
        return claimed

    def _finish(self, job_id: str) -> None:
        # A producer may have re-added the job while it ran; keep its payload then
        if self.consumer.zscore(self.schedule_key, job_id) is None:
            self.consumer.hdel(self.payload_key, job_id)

    def run_job(self, job_id: str, payload: dict, now: Optional[float] = None) -> bool:
        now = time.time() if now is None else now
        try:
            self.handler(payload)
        except Exception as exc:
            attempts = int(payload.get('attempts', 0)) + 1
            if attempts < self.max_attempts:
                delay = self.retry_backoff * (2 ** (attempts - 1))
                current_app.logger.warning(
                    f"[job-retry] queue={self.name} job={job_id} attempt={attempts} delay={delay}s error={exc!r}"
                )
                self.add(job_id, dict(payload, attempts=attempts), now + delay, client=self.consumer)
            else:
                current_app.logger.error(
                    f"[job-failed] queue={self.name} job={job_id} attempts={attempts} error={exc!r}"
                )
                self._finish(job_id)
            return False
        self._finish(job_id)
        return True

    def process_due(self, now: Optional[float] = None, limit: int = 1) -> int:
        now = time.time() if now is None else now
        done = 0
        for job_id, payload in self.claim_due(now, limit):
            if self.run_job(job_id, payload, now):
                done += 1
        return done


class QueueRegistry:
    """Every job queue of one app, built once at app creation.

    Workers and producers look queues up here instead of constructing their
    own, so a reloaded module can never start a second set of consumers.
    """

    def __init__(self):
        self._queues: Dict[str, JobQueue] = {}

    @classmethod
    def install(cls, app) -> 'QueueRegistry':
        if EXTENSION_KEY in app.extensions:
            raise RuntimeError('QueueRegistry already installed on this app')
        registry = cls()
        app.extensions[EXTENSION_KEY] = registry
        return registry

    def register(self, queue: JobQueue) -> JobQueue:
        if queue.name in self._queues:
            raise RuntimeError(f'Queue {queue.name} already registered')
        self._queues[queue.name] = queue
        return queue

    def get(self, name: str) -> JobQueue:
        return self._queues[name]

    def __iter__(self):
        return iter(self._queues.values())


def get_queue(name: str) -> JobQueue:
    return current_app.extensions[EXTENSION_KEY].get(name)


class WorkerPool:
    """A fixed number of Socket.IO background tasks draining every queue."""

    def __init__(self, app, registry: QueueRegistry, concurrency: int = 5, poll_interval: float = 1.0):
        self.app = app
        self.registry = registry
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._running = False

    def start(self) -> None:
        if self._running:
            return
        self._running = True
        for index in range(self.concurrency):
            socketio.start_background_task(self._worker, index)
        self.app.logger.info(f"[workers-start] concurrency={self.concurrency} poll={self.poll_interval}s")

    def stop(self) -> None:
        self._running = False

    def _worker(self, index: int) -> None:
        while self._running:
            busy = False
            with self.app.app_context():
                for queue in self.registry:
                    if queue.consumer is None:
                        continue
                    try:
                        busy = queue.process_due() > 0 or busy
                    except RedisError as exc:
                        self.app.logger.warning(f"[worker-redis] worker={index} queue={queue.name} error={exc!r}")
            if not busy:
                socketio.sleep(self.poll_interval)
