import os
import sys
from collections import defaultdict

import pytest
from redis.exceptions import ConnectionError as RedisConnectionError

# Ensure the backend root (containing the `chainplay` package) is on sys.path
CURRENT_DIR = os.path.dirname(__file__)
BACKEND_ROOT = os.path.abspath(os.path.join(CURRENT_DIR, '..'))
if BACKEND_ROOT not in sys.path:
    sys.path.insert(0, BACKEND_ROOT)

from chainplay import create_app, db, socketio
from chainplay.services import jobs


class TestConfig:
    TESTING = True
    SECRET_KEY = os.environ.get('SECRET_KEY', 'test-secret')
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    # Queues disabled; tests that need them swap in FakeRedis
    REDIS_URL = ''
    # SQLite has no READ COMMITTED
    MATCH_ISOLATION_LEVEL = None
    MATCH_TIMEOUT_MS = 5000
    MATCH_ATTEMPTS = 3
    JOB_MAX_ATTEMPTS = 3
    JOB_RETRY_BACKOFF_SEC = 1.0
    EXPIRATION_SWEEP_INTERVAL_SEC = 300
    DEFAULT_MIN_TURNS = 2
    DEFAULT_MAX_TURNS = 4
    DEFAULT_WRITING_TIMEOUT = '2m'
    DEFAULT_DRAWING_TIMEOUT = '5m'
    DEFAULT_GAME_TIMEOUT = '1d'
    PARTY_WRITING_TIMEOUT = '7d'
    PARTY_DRAWING_TIMEOUT = '7d'
    PARTY_GAME_TIMEOUT = '365d'


@pytest.fixture()
def flask_app():
    application = create_app(TestConfig)
    with application.app_context():
        # Ensure models are imported so tables are created
        from chainplay.models import GameConfig
        db.create_all()
        db.session.add(GameConfig(
            id='default',
            min_turns=TestConfig.DEFAULT_MIN_TURNS,
            max_turns=TestConfig.DEFAULT_MAX_TURNS,
            writing_timeout=TestConfig.DEFAULT_WRITING_TIMEOUT,
            drawing_timeout=TestConfig.DEFAULT_DRAWING_TIMEOUT,
            game_timeout=TestConfig.DEFAULT_GAME_TIMEOUT,
            is_lewd=False,
        ))
        db.session.commit()
        yield application
        db.session.remove()
        db.drop_all()


@pytest.fixture()
def client(flask_app):
    return flask_app.test_client()


@pytest.fixture()
def sio_client(flask_app):
    test_client = socketio.test_client(
        flask_app,
        flask_test_client=flask_app.test_client(),
        namespace='/ws'
    )
    yield test_client
    try:
        test_client.disconnect(namespace='/ws')
    except Exception:
        pass


class FakePipeline:
    def __init__(self, redis):
        self.redis = redis
        self.calls = []

    def __getattr__(self, name):
        def queue(*args, **kwargs):
            self.calls.append((name, args, kwargs))
            return self
        return queue

    def execute(self):
        self.redis.check()
        return [getattr(self.redis, name)(*args, **kwargs) for name, args, kwargs in self.calls]


class FakeRedis:
    """The handful of hash and sorted-set commands the job queue uses."""

    def __init__(self):
        self.hashes = defaultdict(dict)
        self.zsets = defaultdict(dict)
        self.down = False

    def check(self):
        if self.down:
            raise RedisConnectionError('redis is down')

    def pipeline(self):
        return FakePipeline(self)

    def hset(self, key, field, value):
        self.check()
        self.hashes[key][field] = value
        return 1

    def hget(self, key, field):
        self.check()
        return self.hashes[key].get(field)

    def hdel(self, key, *fields):
        self.check()
        return sum(1 for f in fields if self.hashes[key].pop(f, None) is not None)

    def zadd(self, key, mapping):
        self.check()
        self.zsets[key].update({member: float(score) for member, score in mapping.items()})
        return len(mapping)

    def zrem(self, key, *members):
        self.check()
        return sum(1 for m in members if self.zsets[key].pop(m, None) is not None)

    def zscore(self, key, member):
        self.check()
        return self.zsets[key].get(member)

    def zrangebyscore(self, key, low, high, start=None, num=None):
        self.check()
        low, high = float(low), float(high)
        members = [m for m, score in sorted(self.zsets[key].items(), key=lambda kv: (kv[1], kv[0]))
                   if low <= score <= high]
        if start is not None and num is not None:
            members = members[start:start + num]
        return members


@pytest.fixture()
def fake_redis(flask_app):
    fake = FakeRedis()
    for queue in flask_app.extensions[jobs.EXTENSION_KEY]:
        queue.producer = fake
        queue.consumer = fake
    return fake


@pytest.fixture()
def play(flask_app):
    """Match a player into a game and submit their turn."""
    from chainplay.services.games import matcher, turns

    def _play(player_id, **options):
        turn = matcher.find_or_create_turn(player_id, **options)
        kind = 'drawing' if turn.is_drawing else 'writing'
        return turns.complete_turn(turn.id, kind, f'{kind} by {player_id}')
    return _play
