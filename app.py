import logging
import os

from flask import Flask, jsonify, request
from flask_cors import CORS
from werkzeug.exceptions import HTTPException

from config import config_by_name
from extensions import db, jwt, scheduler
from routes import register_blueprints

logger = logging.getLogger(__name__)

SENSITIVE_FIELDS = ('password', 'current_password', 'new_password')


def _engine_options(app):
    uri = app.config['SQLALCHEMY_DATABASE_URI']
    if uri.startswith('sqlite'):
        return {}
    options = {
        'connect_args': {'connect_timeout': 10},
        'pool_size': 5,
        'max_overflow': 10,
        'pool_timeout': 30,
        'pool_pre_ping': True,
    }
    # For Neon / managed Postgres set DATABASE_SSLMODE=require
    if app.config.get('DATABASE_SSLMODE'):
        options['connect_args']['sslmode'] = app.config['DATABASE_SSLMODE']
    return options


def _masked(payload):
    if not isinstance(payload, dict):
        return payload
    return {k: ('***' if k in SENSITIVE_FIELDS else v) for k, v in payload.items()}


def start_scheduler(app):
    from circulation import assess_overdue_fines, send_daily_notifications

    def calculate_fines():
        with app.app_context():
            try:
                assess_overdue_fines()
            except Exception as e:
                db.session.rollback()
                logger.error(f"Scheduled fine calculation failed: {str(e)}")

    def send_notifications():
        with app.app_context():
            try:
                send_daily_notifications()
            except Exception as e:
                db.session.rollback()
                logger.error(f"Scheduled notifications failed: {str(e)}")

    if scheduler.running:
        return
    scheduler.add_job(calculate_fines, 'interval', hours=app.config['FINE_JOB_INTERVAL_HOURS'],
                      id='calculate_fines', replace_existing=True)
    scheduler.add_job(send_notifications, 'interval', hours=app.config['NOTIFICATION_JOB_INTERVAL_HOURS'],
                      id='send_notifications', replace_existing=True)
    scheduler.start()
    logger.info("Fine and notification scheduler started")


def create_app(config_name=None, start_jobs=True):
    app = Flask(__name__)
    config_name = config_name or os.environ.get('APP_ENV', 'development')
    config_class = config_by_name[config_name] if isinstance(config_name, str) else config_name
    app.config.from_object(config_class)

    # Configure logging
    logging.basicConfig(level=app.config['LOG_LEVEL'], format='%(asctime)s - %(levelname)s - %(message)s')

    if not app.config.get('SQLALCHEMY_DATABASE_URI'):
        raise ValueError("DATABASE_URL is not set in .env file")
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = _engine_options(app)

    CORS(app, supports_credentials=True, origins=app.config['CORS_ORIGINS'])

    try:
        db.init_app(app)
    except Exception as e:
        logger.error(f"Failed to initialize database: {str(e)}")
        raise
    jwt.init_app(app)
    register_blueprints(app)

    @app.before_request
    def log_request():
        logger.debug(f"Incoming request: {request.method} {request.path} "
                     f"{_masked(request.get_json(silent=True))}")

    @app.errorhandler(HTTPException)
    def handle_http_error(error):
        return jsonify({'error': error.description}), error.code

    @app.errorhandler(Exception)
    def handle_error(error):
        db.session.rollback()
        logger.error(f"Unhandled error: {str(error)}", exc_info=True)
        return jsonify({'error': 'An unexpected error occurred'}), 500

    if start_jobs and app.config['SCHEDULER_ENABLED'] and not app.config['TESTING']:
        start_scheduler(app)

    return app


if __name__ == '__main__':
    app = create_app()
    with app.app_context():
        db.create_all()
        logger.debug(f"Database connected: {app.config['SQLALCHEMY_DATABASE_URI']}")
    app.run(debug=app.config.get('DEBUG', False), use_reloader=False)
