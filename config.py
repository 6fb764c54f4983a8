import os
from dotenv import load_dotenv

# Load environment variables from .env file
load_dotenv()


def _env_flag(name, default='False'):
    return os.environ.get(name, default).lower() == 'true'


class Config:
    SECRET_KEY = os.environ.get('SECRET_KEY') or 'a_default_secret_key'
    DATABASE = os.environ.get('DATABASE') or 'studysync.db'
    BASE_URL = os.environ.get('BASE_URL') or 'http://localhost:3000'
    PORT = int(os.environ.get('PORT', '3000'))
    LOG_LEVEL = os.environ.get('LOG_LEVEL', 'INFO').upper()

    # Real-time layer
    SOCKETIO_ASYNC_MODE = os.environ.get('SOCKETIO_ASYNC_MODE') or 'threading'

    # Email reminders (Flask-Mailman)
    ENABLE_EMAIL_NOTIFICATIONS = _env_flag('ENABLE_EMAIL_NOTIFICATIONS')
    MAIL_SERVER = os.environ.get('MAIL_SERVER') or 'localhost'
    MAIL_PORT = int(os.environ.get('MAIL_PORT', '25'))
    MAIL_USERNAME = os.environ.get('MAIL_USERNAME')
    MAIL_PASSWORD = os.environ.get('MAIL_PASSWORD')
    MAIL_USE_TLS = _env_flag('MAIL_USE_TLS')
    MAIL_DEFAULT_SENDER = os.environ.get('MAIL_DEFAULT_SENDER') or 'noreply@studysync.local'
    MAIL_BACKEND = os.environ.get('MAIL_BACKEND') or 'smtp'

    # Background jobs (APScheduler)
    SCHEDULER_ENABLED = _env_flag('SCHEDULER_ENABLED', 'True')
    SCHEDULER_TIMEZONE = os.environ.get('SCHEDULER_TIMEZONE') or None
    STREAK_UPDATE_HOUR = int(os.environ.get('STREAK_UPDATE_HOUR', '0'))
    DAILY_REPORT_HOUR = int(os.environ.get('DAILY_REPORT_HOUR', '23'))
    NOTIFICATION_CLEANUP_DAY = os.environ.get('NOTIFICATION_CLEANUP_DAY') or 'sun'
    NOTIFICATION_RETENTION_DAYS = int(os.environ.get('NOTIFICATION_RETENTION_DAYS', '30'))
    UPCOMING_SESSION_LOOKAHEAD_HOURS = int(os.environ.get('UPCOMING_SESSION_LOOKAHEAD_HOURS', '25'))
