import os
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name, default):
    return os.getenv(name, str(default)).lower() == 'true'


class Config:
    # Get base directory for absolute paths
    BASE_DIR = os.path.abspath(os.path.dirname(os.path.dirname(__file__)))
    SQLITE_DB_PATH = os.path.join(BASE_DIR, '..', 'instance', 'medisafe.db')

    # ========================================================================
    # DATABASE CONFIGURATION
    # ========================================================================

    # PostgreSQL in production (DATABASE_URL), SQLite file otherwise
    SQLALCHEMY_DATABASE_URI = os.getenv('DATABASE_URL') or f'sqlite:///{SQLITE_DB_PATH}'

    SQLALCHEMY_TRACK_MODIFICATIONS = False

    SQLALCHEMY_ENGINE_OPTIONS = {
        'pool_pre_ping': True,
        'pool_recycle': 300,
    }

    SECRET_KEY = os.getenv('SECRET_KEY')

    # Email (Flask-Mail)
    MAIL_SERVER = os.getenv('MAIL_SERVER')
    MAIL_PORT = int(os.getenv('MAIL_PORT', 587))
    MAIL_USE_TLS = _env_bool('MAIL_USE_TLS', True)
    MAIL_USERNAME = os.getenv('MAIL_USERNAME')
    MAIL_PASSWORD = os.getenv('MAIL_PASSWORD')
    MAIL_DEFAULT_SENDER = os.getenv('MAIL_DEFAULT_SENDER')

    # ========================================================================
    # NOTIFICATION TRANSPORTS
    # ========================================================================

    # Twilio (SMS + voice calls). Missing values disable both channels.
    TWILIO_ACCOUNT_SID = os.getenv('TWILIO_ACCOUNT_SID')
    TWILIO_AUTH_TOKEN = os.getenv('TWILIO_AUTH_TOKEN')
    TWILIO_PHONE_NUMBER = os.getenv('TWILIO_PHONE_NUMBER')
    TWILIO_API_BASE = os.getenv('TWILIO_API_BASE', 'https://api.twilio.com/2010-04-01')

    # Firebase Cloud Messaging (push). Path or inline JSON credentials.
    FIREBASE_PROJECT_ID = os.getenv('FIREBASE_PROJECT_ID')
    FIREBASE_CREDENTIALS = os.getenv('FIREBASE_CREDENTIALS')

    # ========================================================================
    # REMINDER SCHEDULER
    # ========================================================================

    REMINDER_TIMEZONE = os.getenv('REMINDER_TIMEZONE', 'Asia/Kolkata')
    REMINDER_RECONCILE_INTERVAL_SECONDS = int(os.getenv('REMINDER_RECONCILE_INTERVAL_SECONDS', 60))
    REMINDER_CLEANUP_HOUR = int(os.getenv('REMINDER_CLEANUP_HOUR', 0))
    REMINDER_DISPATCH_TIMEOUT_SECONDS = int(os.getenv('REMINDER_DISPATCH_TIMEOUT_SECONDS', 15))
    REMINDER_MAX_WORKERS = int(os.getenv('REMINDER_MAX_WORKERS', 8))
    REMINDER_MAX_EMERGENCY_CONTACTS = int(os.getenv('REMINDER_MAX_EMERGENCY_CONTACTS', 3))

    # Voice calls are always read out in this locale, whatever the recipient's
    # language. Set to an empty string to honour the recipient preference.
    REMINDER_VOICE_LOCALE = os.getenv('REMINDER_VOICE_LOCALE', 'te')

    # Drop occurrences that fall after a schedule's end date
    REMINDER_ENFORCE_END_DATE = _env_bool('REMINDER_ENFORCE_END_DATE', True)

    APP_NAME = os.getenv('APP_NAME', 'MediSafe')
