from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_bcrypt import Bcrypt
from flask_login import LoginManager
from flask_cors import CORS
from flask_migrate import Migrate
from flask_socketio import SocketIO
import click
from config import Config

db = SQLAlchemy()
bcrypt = Bcrypt()
login_manager = LoginManager()
migrate = Migrate()
allowed_origins = [
    "http://localhost:5173",
    "http://127.0.0.1:5173",
]
socketio = SocketIO(cors_allowed_origins=allowed_origins, async_mode=None)

def create_app(config_class=Config):
    flask_app = Flask(__name__)
    flask_app.config.from_object(config_class)

    db.init_app(flask_app)
    bcrypt.init_app(flask_app)
    login_manager.init_app(flask_app)
    migrate.init_app(flask_app, db)
    CORS(flask_app, supports_credentials=True, origins=allowed_origins)

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    # Turn-sheet engine collaborators, built once and read-only afterwards
    from playbymail.services import EXTENSION_KEY, build_services
    flask_app.extensions[EXTENSION_KEY] = build_services(flask_app.config)

    from playbymail.main import main
    flask_app.register_blueprint(main)

    from playbymail.api.turn_sheets import turn_sheets
    flask_app.register_blueprint(turn_sheets, url_prefix='/api')

    from playbymail.api.game_instances import game_instances
    flask_app.register_blueprint(game_instances, url_prefix='/api')

    from playbymail.errors import PlayByMailError

    @flask_app.errorhandler(PlayByMailError)
    def handle_playbymail_error(exc):
        if exc.http_status >= 500:
            flask_app.logger.error(f"[api-error] kind={exc.kind} message={exc}")
        return jsonify(exc.to_dict()), exc.http_status

    from playbymail.socketio_events import register_socketio_handlers
    register_socketio_handlers()

    from playbymail.models import AccountUser

    @login_manager.user_loader
    def load_user(user_id):
        return db.session.get(AccountUser, user_id)

    @login_manager.request_loader
    def load_user_from_request(request):
        # Dev only: trust an account user email carried in a configured header
        header = flask_app.config.get('DEVELOPMENT_AUTH_BYPASS_HEADER')
        if not header or flask_app.config.get('ENV_NAME') == 'production':
            return None
        email = request.headers.get(header)
        if not email:
            return None
        return AccountUser.query.filter_by(email=email.strip().lower()).first()

    @click.command('db-reset')
    def db_reset_command():
        """Drops and recreates the database."""
        with flask_app.app_context():
            db.drop_all()
            db.create_all()
            print('Database has been reset!')

    @click.command('scheduler-tick')
    def scheduler_tick_command():
        """Enqueues turn jobs for every instance past its deadline."""
        from playbymail.services.games.scheduler import run_scheduler_tick
        with flask_app.app_context():
            keys = run_scheduler_tick(db.session, logger=flask_app.logger)
            print(f'Enqueued {len(keys)} turn job(s)')

    @click.command('work-jobs')
    @click.option('--limit', type=int, default=None, help='Stop after this many jobs.')
    def work_jobs_command(limit):
        """Runs queued jobs until the queue is idle."""
        from playbymail.services.games.workers import work_jobs
        ran = work_jobs(flask_app, limit=limit)
        print(f'Ran {ran} job(s)')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(scheduler_tick_command)
    flask_app.cli.add_command(work_jobs_command)

    return flask_app
