from flask import Flask
from flask_sqlalchemy import SQLAlchemy
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
    "http://localhost:5174",
    "http://127.0.0.1:5174",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Composition root: one queue registry and one event bus per app
    from chainplay.events import EventBus, GameCompleted, TurnCompleted
    from chainplay.services.jobs import QueueRegistry
    from chainplay.services.games import expirations, parties

    bus = EventBus.install(flask_app)
    bus.subscribe(TurnCompleted, parties.handle_turn_completed)
    bus.subscribe(GameCompleted, parties.handle_game_completed)

    registry = QueueRegistry.install(flask_app)
    expirations.register_queues(flask_app, registry)

    from chainplay.api.games import games
    flask_app.register_blueprint(games, url_prefix='/api')

    from chainplay.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('seed-config')
    def seed_config_command():
        """Creates tables and upserts the 'default' game config."""
        from chainplay.models import GameConfig
        with flask_app.app_context():
            db.create_all()
            cfg = flask_app.config
            config = db.session.get(GameConfig, 'default') or GameConfig(id='default')
            config.min_turns = cfg['DEFAULT_MIN_TURNS']
            config.max_turns = cfg['DEFAULT_MAX_TURNS']
            config.writing_timeout = cfg['DEFAULT_WRITING_TIMEOUT']
            config.drawing_timeout = cfg['DEFAULT_DRAWING_TIMEOUT']
            config.game_timeout = cfg['DEFAULT_GAME_TIMEOUT']
            config.is_lewd = False
            db.session.add(config)
            db.session.commit()
            print(f'Default game config seeded: {config.to_dict()}')

    @click.command('sweep-expirations')
    def sweep_expirations_command():
        """Runs one fallback expiration sweep."""
        with flask_app.app_context():
            summary = expirations.perform_expirations()
            print(f'Expiration sweep finished: {summary}')

    @click.command('run-workers')
    def run_workers_command():
        """Starts the expiration worker pool and sweep loop, then blocks."""
        expirations.start_background_services(flask_app)
        while True:
            socketio.sleep(60)

    flask_app.cli.add_command(seed_config_command)
    flask_app.cli.add_command(sweep_expirations_command)
    flask_app.cli.add_command(run_workers_command)

    return flask_app
