import os


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY', 'change-this-secret')
    SQLALCHEMY_DATABASE_URI = os.environ.get('DATABASE_URL', 'sqlite:///finance.db')
    SQLALCHEMY_TRACK_MODIFICATIONS = False
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO')

    # Backoff for transient database connection failures
    DB_RETRY_ATTEMPTS = int(os.environ.get('DB_RETRY_ATTEMPTS', 3))
    DB_RETRY_DELAY = float(os.environ.get('DB_RETRY_DELAY', 1.0))

    NOTIFICATIONS_PAGE_SIZE = 50


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'testing'
    SQLALCHEMY_DATABASE_URI = 'sqlite://'
    DB_RETRY_DELAY = 0.0
    LOG_LEVEL = 'DEBUG'
