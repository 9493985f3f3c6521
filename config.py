from dotenv import load_dotenv
import os
import logging

load_dotenv()


def _env_int(name, default):
    value = os.getenv(name)
    if value is None or value.strip() == '':
        return default
    try:
        return int(value)
    except ValueError:
        logging.warning(f"Invalid integer for {name}: {value!r}, using {default}")
        return default


class Config:
    SECRET_KEY = os.getenv('SECRET_KEY', 'dev')
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL')

    if not SQLALCHEMY_DATABASE_URI:
        raise ValueError("DATABASE_URL environment variable not set")

    if SQLALCHEMY_DATABASE_URI and SQLALCHEMY_DATABASE_URI.startswith('postgres://'):
        SQLALCHEMY_DATABASE_URI = SQLALCHEMY_DATABASE_URI.replace('postgres://', 'postgresql://', 1)

    SQLALCHEMY_TRACK_MODIFICATIONS = False
    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
        'pool_size': 5,
        'max_overflow': 10,
        'pool_timeout': 30,
    }

    LOGGING_CONFIG = {
        'version': 1,
        'disable_existing_loggers': False,
        'formatters': {
            'default': {
                'format': '%(asctime)s %(levelname)s [%(name)s] %(message)s',
            },
        },
        'handlers': {
            'console': {
                'class': 'logging.StreamHandler',
                'level': 'INFO',
                'formatter': 'default',
            },
        },
        'root': {
            'handlers': ['console'],
            'level': 'INFO',
        }
    }

    DB_RETRY_ATTEMPTS = 3
    DB_RETRY_DELAY = 1  # seconds, doubled on each attempt

    REDIS_URL = os.getenv('REDIS_URL')
    CACHE_DEFAULT_TIMEOUT = 300
    # Local fallback snapshots outlive a normal cache entry so a DB outage
    # does not blank the status page
    FALLBACK_SNAPSHOT_TIMEOUT = 2 * 24 * 3600

    # Shared secret for the cron trigger and control endpoints
    CRON_SECRET = os.getenv('CRON_SECRET')

    # Operating calendar
    OPERATING_TIMEZONE = os.getenv('OPERATING_TIMEZONE', 'Europe/Prague')
    ACTIVE_HOURS_START = _env_int('ACTIVE_HOURS_START', 0)
    ACTIVE_HOURS_END = _env_int('ACTIVE_HOURS_END', 24)
    SLOT_INTERVAL_MINUTES = _env_int('SLOT_INTERVAL_MINUTES', 60)

    # Daily plan
    DAILY_ARTICLE_SLOTS = _env_int('DAILY_ARTICLE_SLOTS', 24)
    CANDIDATE_POOL_SIZE = _env_int('CANDIDATE_POOL_SIZE', 50)
    PROCESSED_TOPIC_TTL_HOURS = _env_int('PROCESSED_TOPIC_TTL_HOURS', 48)
    TREND_RETENTION_DAYS = _env_int('TREND_RETENTION_DAYS', 30)

    # Upstream trend API budget
    QUOTA_WEEKDAY_LIMIT = _env_int('QUOTA_WEEKDAY_LIMIT', 8)
    QUOTA_WEEKEND_LIMIT = _env_int('QUOTA_WEEKEND_LIMIT', 6)
    QUOTA_MONTHLY_LIMIT = _env_int('QUOTA_MONTHLY_LIMIT', 250)
    QUOTA_DAILY_RETENTION_DAYS = _env_int('QUOTA_DAILY_RETENTION_DAYS', 60)
    QUOTA_MONTHLY_RETENTION_MONTHS = _env_int('QUOTA_MONTHLY_RETENTION_MONTHS', 12)

    # Job lifecycle
    STALE_JOB_MINUTES = _env_int('STALE_JOB_MINUTES', 10)
    MAX_JOB_RETRIES = _env_int('MAX_JOB_RETRIES', 2)
    MIN_QUALITY_SCORE = _env_int('MIN_QUALITY_SCORE', 60)
    MIN_ARTICLE_WORDS = _env_int('MIN_ARTICLE_WORDS', 150)

    # Background scheduler
    SCHEDULER_ENABLED = os.getenv('SCHEDULER_ENABLED', 'True').lower() == 'true'
    TICK_INTERVAL_MINUTES = _env_int('TICK_INTERVAL_MINUTES', 10)
    TREND_IMPORT_HOURS = os.getenv('TREND_IMPORT_HOURS', '6,9,12,15,18')

    # External collaborators
    TREND_SOURCE_URL = os.getenv('TREND_SOURCE_URL')
    TREND_SOURCE_API_KEY = os.getenv('TREND_SOURCE_API_KEY')
    TREND_SOURCE_TIMEOUT = _env_int('TREND_SOURCE_TIMEOUT', 30)
    OPENAI_API_KEY = os.getenv('OPENAI_API_KEY')
    CONTENT_MODEL = os.getenv('CONTENT_MODEL', 'gpt-4o-mini')


class DevelopmentConfig(Config):
    FLASK_ENV = 'development'
    DEBUG = True
    SQLALCHEMY_ECHO = False


class ProductionConfig(Config):
    FLASK_ENV = 'production'
    DEBUG = False
    PREFERRED_URL_SCHEME = 'https'
    SENTRY_DSN = os.getenv('SENTRY_DSN')


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite:///:memory:'
    SQLALCHEMY_ENGINE_OPTIONS = {'pool_pre_ping': True}
    SCHEDULER_ENABLED = False
    DB_RETRY_DELAY = 0
    CRON_SECRET = None


# Dictionary to easily access configurations
config_dict = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
}
