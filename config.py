import os
from datetime import timedelta

from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default='false'):
    return os.environ.get(name, default).lower() in ('true', '1', 'yes')


def _database_url():
    database_url = os.environ.get('DATABASE_URL')
    if database_url and database_url.startswith('postgres://'):
        database_url = database_url.replace('postgres://', 'postgresql://', 1)
    return database_url


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'xYz9wV1uT0sR9qP8oN7mL6kJ5iH4gF3eD2cB1a')
    SQLALCHEMY_DATABASE_URI = _database_url()
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    DATABASE_SSLMODE = os.environ.get('DATABASE_SSLMODE')

    JWT_SECRET_KEY = os.environ.get('JWT_SECRET_KEY', SECRET_KEY)
    JWT_ACCESS_TOKEN_EXPIRES = timedelta(days=int(os.environ.get('JWT_EXPIRATION_DAYS', '7')))
    BCRYPT_ROUNDS = int(os.environ.get('BCRYPT_ROUNDS', '12'))

    CORS_ORIGINS = [o.strip() for o in os.environ.get('CORS_ORIGINS', 'http://localhost:3000').split(',') if o.strip()]
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'DEBUG')

    # Circulation rules
    LOAN_PERIOD_DAYS = int(os.environ.get('LOAN_PERIOD_DAYS', '14'))
    MAX_LOAN_PERIOD_DAYS = int(os.environ.get('MAX_LOAN_PERIOD_DAYS', '30'))
    MAX_RENEWALS = int(os.environ.get('MAX_RENEWALS', '2'))
    FINE_PER_DAY = float(os.environ.get('FINE_PER_DAY', '1.0'))

    DEFAULT_PAGE_SIZE = int(os.environ.get('DEFAULT_PAGE_SIZE', '12'))
    MAX_PAGE_SIZE = int(os.environ.get('MAX_PAGE_SIZE', '100'))
    NOTIFICATION_DEDUP_MINUTES = int(os.environ.get('NOTIFICATION_DEDUP_MINUTES', '5'))

    SCHEDULER_ENABLED = _env_bool('SCHEDULER_ENABLED', 'true')
    FINE_JOB_INTERVAL_HOURS = int(os.environ.get('FINE_JOB_INTERVAL_HOURS', '24'))
    NOTIFICATION_JOB_INTERVAL_HOURS = int(os.environ.get('NOTIFICATION_JOB_INTERVAL_HOURS', '24'))
    DB_RETRY_DELAY = 1
    TESTING = False


class DevelopmentConfig(Config):
    DEBUG = True


class ProductionConfig(Config):
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')


class TestingConfig(Config):
    TESTING = True
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    JWT_SECRET_KEY = 'test-jwt-secret-key-with-enough-length'
    BCRYPT_ROUNDS = 4
    SCHEDULER_ENABLED = False
    DB_RETRY_DELAY = 0
    LOG_LEVEL = 'WARNING'
    CORS_ORIGINS = ['http://localhost:3000']


config_by_name = {
    'development': DevelopmentConfig,
    'production': ProductionConfig,
    'testing': TestingConfig,
}
