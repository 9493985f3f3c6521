from flask import Flask, jsonify
from flask_sqlalchemy import SQLAlchemy
from flask_migrate import Migrate
from flask_caching import Cache
from werkzeug.exceptions import HTTPException
from config import Config, config_dict
import os
import time
import logging
from logging.config import dictConfig
import sentry_sdk
from sentry_sdk.integrations.flask import FlaskIntegration


db = SQLAlchemy()
migrate = Migrate()
cache = Cache()

logger = logging.getLogger(__name__)


def try_connect_db(app, retries=3):
    for attempt in range(retries):
        try:
            with app.app_context():
                with db.engine.connect():
                    return True
        except Exception as e:
            app.logger.error(f"Database connection attempt {attempt + 1} failed: {e}")
            time.sleep(1)
    return False


def _init_cache(app):
    """Redis-backed cache when reachable, SimpleCache otherwise."""
    redis_url = app.config.get('REDIS_URL')
    if app.config.get('TESTING') or not redis_url or not redis_url.strip():
        app.logger.warning("No REDIS_URL available, using simple cache")
        cache.init_app(app, config={'CACHE_TYPE': 'SimpleCache'})
        return

    try:
        import redis
        redis.from_url(redis_url, socket_connect_timeout=5).ping()
        cache.init_app(app, config={
            'CACHE_TYPE': 'RedisCache',
            'CACHE_REDIS_URL': redis_url,
            'CACHE_DEFAULT_TIMEOUT': app.config.get('CACHE_DEFAULT_TIMEOUT', 300),
            'CACHE_KEY_PREFIX': 'trendwire_',
            'CACHE_OPTIONS': {
                'socket_timeout': 5,
                'socket_connect_timeout': 5
            }
        })
        app.logger.info("Cache initialized with Redis URL")
    except Exception as e:
        app.logger.warning(f"Redis cache initialization failed: {e}, falling back to simple cache")
        cache.init_app(app, config={'CACHE_TYPE': 'SimpleCache'})


def create_app(config_name=None):
    env = config_name or os.getenv('FLASK_ENV', 'development')
    config_class = config_dict.get(env, Config)

    if env == 'production' and os.getenv('SENTRY_DSN'):
        sentry_sdk.init(
            dsn=os.getenv('SENTRY_DSN'),
            integrations=[FlaskIntegration()],
            traces_sample_rate=0.2,
        )

    app = Flask(__name__)

    dictConfig(Config.LOGGING_CONFIG)
    app.config.from_object(config_class)

    _init_cache(app)
    db.init_app(app)
    migrate.init_app(app, db)

    if not app.config.get('TESTING') and not try_connect_db(app):
        raise RuntimeError("Could not establish database connection")

    # Models must be imported before create_all / migrations see the metadata
    from trendwire import models  # noqa: F401

    from trendwire.generation import generation_bp
    from trendwire.api.errors import register_error_handlers
    if not getattr(generation_bp, "_tw_error_handlers_registered", False):
        register_error_handlers(generation_bp)
        generation_bp._tw_error_handlers_registered = True
    app.register_blueprint(generation_bp, url_prefix='/api/generation')

    from trendwire.commands import init_commands
    init_commands(app)

    @app.errorhandler(HTTPException)
    def handle_http_exception(e):
        app.logger.warning(f"{e.code} {e.name}: {e.description}")
        return jsonify({
            'error': e.name.lower().replace(' ', '_'),
            'message': e.description or str(e)
        }), e.code

    # Catch-all error handler for unhandled exceptions
    @app.errorhandler(Exception)
    def handle_exception(e):
        app.logger.error(f"Unhandled Exception: {e}", exc_info=True)
        return jsonify({
            'error': 'internal_error',
            'message': 'An unexpected error occurred.'
        }), 500

    # Background scheduler only runs outside tests and migrations
    if (app.config.get('SCHEDULER_ENABLED')
            and not app.config.get('TESTING')
            and not app.config.get('SQLALCHEMY_MIGRATE')):
        from trendwire.scheduler import init_scheduler, start_scheduler
        try:
            init_scheduler(app)
            start_scheduler()
            app.logger.info("Background scheduler started successfully")
        except Exception as e:
            app.logger.error(f"Failed to start scheduler: {e}")

    return app
