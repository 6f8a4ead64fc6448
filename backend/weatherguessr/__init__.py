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

    # Initialize Socket.IO after app is created
    socketio.init_app(flask_app, cors_allowed_origins=allowed_origins)

    from weatherguessr.main import main
    flask_app.register_blueprint(main)

    from weatherguessr.api.multiplayer import multiplayer
    flask_app.register_blueprint(multiplayer, url_prefix='/api/multiplayer')

    from weatherguessr.socketio_events import register_socketio_handlers
    register_socketio_handlers(testing=flask_app.config.get('TESTING', False))

    @click.command('db-reset')
    def db_reset_command():
        """Drops, recreates, and seeds the database."""
        from weatherguessr.models import Room, ROOM_NAMES
        with flask_app.app_context():
            db.drop_all()
            db.create_all()

            for name in ROOM_NAMES:
                db.session.add(Room(name=name, status='open'))

            db.session.commit()
            print('Database has been reset and seeded!')

    @click.command('expire-invitations')
    def expire_invitations_command():
        """Marks overdue pending invitations as expired."""
        from weatherguessr.services.multiplayer.stores import InvitationStore
        from weatherguessr.services.multiplayer.realtime import hub
        with flask_app.app_context():
            count = InvitationStore(hub).expire_overdue()
            print(f'Expired {count} invitation(s).')

    flask_app.cli.add_command(db_reset_command)
    flask_app.cli.add_command(expire_invitations_command)

    return flask_app
