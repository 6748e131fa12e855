import os
from dotenv import load_dotenv
load_dotenv() # Load env vars before anything else

from flask import Flask
from flask_migrate import Migrate
from sqlalchemy import event
from werkzeug.exceptions import HTTPException
from grc_asignaciones.models import db
from grc_asignaciones.errors import WorkflowError
from grc_asignaciones.utils import api_response


def _database_url():
    database_url = os.environ.get('DATABASE_URL', 'sqlite:///grc_asignaciones.db')
    # Normalize Postgres URL
    if database_url.startswith("postgres://"):
        database_url = database_url.replace("postgres://", "postgresql://", 1)
    return database_url


def _sqlite_savepoints(engine):
    # pysqlite manages transactions on its own and breaks SAVEPOINT; let SQLAlchemy emit BEGIN
    @event.listens_for(engine, "connect")
    def do_connect(dbapi_connection, connection_record):
        dbapi_connection.isolation_level = None

    @event.listens_for(engine, "begin")
    def do_begin(conn):
        conn.exec_driver_sql("BEGIN")


def create_app(config=None):
    app = Flask(__name__)

    # --- CONFIGURATION ---
    app.config['SECRET_KEY'] = os.environ.get('SECRET_KEY', 'grc-asignaciones-dev-key')
    app.config['SQLALCHEMY_DATABASE_URI'] = _database_url()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['JWT_EXPIRATION_DAYS'] = int(os.environ.get('JWT_EXPIRATION_DAYS', 7))
    app.config['NOTIFICATION_WEBHOOK_URL'] = os.environ.get('NOTIFICATION_WEBHOOK_URL')
    app.config['TESTING'] = os.environ.get('TESTING', '').lower() in ('1', 'true')
    if config:
        app.config.update(config)

    # --- INITIALIZE EXTENSIONS ---
    db.init_app(app)
    Migrate(app, db)

    from grc_asignaciones.auth import auth as auth_blueprint, login_manager
    login_manager.init_app(app)

    from grc_asignaciones.services.evento_service import EventoService, WebhookSubscriber
    if app.config.get('NOTIFICATION_WEBHOOK_URL'):
        EventoService.suscribir(app, WebhookSubscriber(app.config['NOTIFICATION_WEBHOOK_URL'], app.logger))
        app.logger.info("Notification webhook subscriber enabled")

    # --- ERROR HANDLERS ---
    @app.errorhandler(WorkflowError)
    def workflow_error(error):
        db.session.rollback()
        app.logger.warning(f"{error.code}: {error.message}")
        return api_response(success=False, error=error.to_dict(), status=error.status_code)

    @app.errorhandler(HTTPException)
    def http_error(error):
        return api_response(
            success=False,
            error={'code': error.name.lower().replace(' ', '_'), 'message': error.description},
            status=error.code
        )

    @app.errorhandler(500)
    def internal_error(error):
        # Fail-safe rollback
        db.session.rollback()
        app.logger.exception(f"Unhandled error: {error}")
        return api_response(success=False, error={'code': 'internal_error', 'message': 'Error interno'}, status=500)

    # --- REGISTER BLUEPRINTS ---
    from grc_asignaciones.routes.asignaciones import asignaciones_bp
    from grc_asignaciones.routes.evaluaciones import evaluaciones_bp

    app.register_blueprint(auth_blueprint)
    app.register_blueprint(asignaciones_bp)
    app.register_blueprint(evaluaciones_bp)

    with app.app_context():
        if db.engine.dialect.name == 'sqlite':
            _sqlite_savepoints(db.engine)
        db.create_all()

    return app
