"""config.py

Purpose:
 - Read settings from the environment (.env via python-dotenv) into `app.config`.
 - Hold the business constants shared by the attendance and library services.

Notes:
 - `configure_app(app, overrides)` is called by the application factory; tests pass
   overrides (sqlite, TESTING...) instead of touching environment variables.
 - When DATABASE_URL is not set the MySQL connection string is composed from MYSQL_* vars.
"""

import os
from decimal import Decimal
from urllib.parse import quote_plus

from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()

APP_ENV = os.getenv('APP_ENV', 'development')

# Loan / reservation periods in days
LOAN_PERIOD_DAYS = 14
RENEWAL_DAYS = 14
RESERVATION_HOLD_DAYS = 7
RESERVATION_PICKUP_DAYS = 3

# Late return fine, per started day
FINE_PER_DAY = Decimal('0.50')
DEFAULT_MAX_BORROW_LIMIT = 5

USER_ROLES = ('admin', 'teacher', 'viewer', 'librarian')
ATTENDANCE_STATUSES = ('present', 'absent', 'late')
COPY_STATUSES = ('available', 'borrowed', 'reserved', 'maintenance', 'lost')
EMAIL_FREQUENCIES = ('daily', 'weekly', 'monthly', 'never')

MIN_PASSWORD_LENGTH = 6


def _env_bool(name, default):
    value = os.getenv(name)
    if value is None:
        return default
    return value.strip().lower() in ('1', 'true', 'yes', 'on')


def database_uri():
    """Prefer a generic DATABASE_URL, fall back to MySQL env vars (pymysql driver)."""
    url = os.getenv('DATABASE_URL') or os.getenv('DATABASE_URI')
    if url:
        return url

    host = os.getenv('MYSQLHOST') or os.getenv('MYSQL_HOST') or 'localhost'
    user = os.getenv('MYSQLUSER') or os.getenv('MYSQL_USER') or 'root'
    password = os.getenv('MYSQLPASSWORD') or os.getenv('MYSQL_PASSWORD') or ''
    name = os.getenv('MYSQLDATABASE') or os.getenv('MYSQL_DATABASE') or 'attendance_library'
    port = os.getenv('MYSQLPORT') or os.getenv('MYSQL_PORT') or '3306'

    # URL encode password to handle special characters like @
    return f"mysql+pymysql://{user}:{quote_plus(password)}@{host}:{port}/{name}"


def configure_app(app, overrides=None):
    """Fill `app.config` from the environment, then apply `overrides`."""
    app.config['APP_ENV'] = APP_ENV
    app.config['SECRET_KEY'] = os.getenv('SECRET_KEY', 'dev-secret-key-change-in-production')

    # Bearer tokens
    app.config['TOKEN_MAX_AGE_SECONDS'] = int(os.getenv('TOKEN_MAX_AGE_SECONDS', 24 * 60 * 60))

    # Login rate limiting is only active in production unless forced
    app.config['LOGIN_RATE_LIMIT_ENABLED'] = _env_bool('LOGIN_RATE_LIMIT_ENABLED', APP_ENV == 'production')
    app.config['LOGIN_RATE_LIMIT_MAX'] = int(os.getenv('LOGIN_RATE_LIMIT_MAX', 5))
    app.config['LOGIN_RATE_LIMIT_WINDOW_MINUTES'] = int(os.getenv('LOGIN_RATE_LIMIT_WINDOW_MINUTES', 15))

    # Email configuration (Flask-Mail)
    app.config['MAIL_SERVER'] = os.getenv('MAIL_SERVER', 'smtp.gmail.com')
    app.config['MAIL_PORT'] = int(os.getenv('MAIL_PORT', 587))
    app.config['MAIL_USE_TLS'] = _env_bool('MAIL_USE_TLS', True)
    app.config['MAIL_USE_SSL'] = _env_bool('MAIL_USE_SSL', False)
    app.config['MAIL_USERNAME'] = os.getenv('MAIL_USERNAME')
    app.config['MAIL_PASSWORD'] = os.getenv('MAIL_PASSWORD')
    app.config['MAIL_DEFAULT_SENDER'] = os.getenv('MAIL_DEFAULT_SENDER') or os.getenv('MAIL_USERNAME')

    # Notification queue
    app.config['NOTIFICATION_INLINE'] = _env_bool('NOTIFICATION_INLINE', False)
    app.config['NOTIFICATION_MAX_ATTEMPTS'] = int(os.getenv('NOTIFICATION_MAX_ATTEMPTS', 3))

    # Scheduler (Flask-APScheduler)
    app.config['SCHEDULER_ENABLED'] = _env_bool('SCHEDULER_ENABLED', True)
    app.config['SCHEDULER_TIMEZONE'] = os.getenv('SCHEDULER_TIMEZONE', 'Asia/Manila')
    app.config['SCHEDULER_API_ENABLED'] = False

    # Logging
    app.config['LOG_LEVEL'] = os.getenv('LOG_LEVEL', 'INFO')
    app.config['LOG_FILE'] = os.getenv('LOG_FILE')

    # SQLAlchemy
    app.config['SQLALCHEMY_DATABASE_URI'] = database_uri()
    app.config['SQLALCHEMY_TRACK_MODIFICATIONS'] = False
    app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {
        'pool_pre_ping': True,
        'pool_recycle': 280,
        'pool_size': 5,
        'max_overflow': 10,
    }

    if overrides:
        app.config.update(overrides)

    # Pool sizing options are not accepted by sqlite's single-connection pool
    if app.config['SQLALCHEMY_DATABASE_URI'].startswith('sqlite'):
        app.config['SQLALCHEMY_ENGINE_OPTIONS'] = {}

    return app
