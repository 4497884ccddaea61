import json
from datetime import timedelta
from threading import Lock

import pytest
import pytz
from apscheduler.schedulers.background import BackgroundScheduler

from medisafe import create_app
from medisafe.config.config import Config
from medisafe.models.base import db as _db
from medisafe.models.device_token import DeviceToken
from medisafe.models.medication import Medication
from medisafe.models.user import User
from medisafe.services.scheduler_service import ReminderScheduler
from medisafe.utils.timezone import to_db, utcnow


class TestConfig(Config):
    TESTING = True
    SQLALCHEMY_ENGINE_OPTIONS = {}
    MAIL_SERVER = None
    MAIL_DEFAULT_SENDER = None
    MAIL_SUPPRESS_SEND = True
    TWILIO_ACCOUNT_SID = None
    TWILIO_AUTH_TOKEN = None
    TWILIO_PHONE_NUMBER = None
    FIREBASE_PROJECT_ID = None
    FIREBASE_CREDENTIALS = None
    REMINDER_TIMEZONE = 'UTC'
    REMINDER_DISPATCH_TIMEOUT_SECONDS = 2
    REMINDER_MAX_WORKERS = 4
    REMINDER_VOICE_LOCALE = 'te'
    REMINDER_ENFORCE_END_DATE = True


@pytest.fixture
def app(tmp_path):
    class _Config(TestConfig):
        SQLALCHEMY_DATABASE_URI = f"sqlite:///{tmp_path / 'medisafe-test.db'}"

    app = create_app(_Config)
    with app.app_context():
        yield app
        _db.session.remove()
        _db.drop_all()


@pytest.fixture
def db(app):
    return _db


@pytest.fixture
def make_user(db):
    def _make_user(name='Ravi', email='ravi@example.com', phone='+919999999999',
                   language='en', tokens=(), contacts=None, preferences=None):
        user = User(name=name, email=email, phone=phone, language=language)
        if contacts is not None:
            user.set_emergency_contacts(contacts)
        if preferences is not None:
            user.set_notification_preferences(preferences)
        db.session.add(user)
        db.session.flush()
        for token in tokens:
            db.session.add(DeviceToken(user_id=user.user_id, fcm_token=token))
        db.session.commit()
        return user
    return _make_user


@pytest.fixture
def make_medication(db):
    def _make_medication(user, name='Metformin', times=(540,), methods=('push',),
                         next_reminder=None, **fields):
        medication = Medication(
            user_id=user.user_id,
            name=name,
            dosage_value=fields.pop('dosage_value', '500'),
            dosage_unit=fields.pop('dosage_unit', 'mg'),
            schedule_times=json.dumps(list(times)),
            reminder_methods=json.dumps(list(methods)),
            next_reminder=to_db(next_reminder) if next_reminder else None,
            **fields
        )
        db.session.add(medication)
        db.session.commit()
        return medication
    return _make_medication


@pytest.fixture
def future():
    # Fixed anchor so repeated calls inside one test agree
    anchor = utcnow().replace(microsecond=0)
    return lambda **delta: anchor + timedelta(**delta)


class RecordingDispatcher:
    """Stands in for NotificationDispatcher and records every call."""

    def __init__(self, outcomes=None, raises=()):
        self.outcomes = outcomes or {}
        self.raises = set(raises)
        self.calls = []
        self.alerts = []
        self._lock = Lock()

    def dispatch(self, channel, user, message):
        with self._lock:
            self.calls.append((channel, user.user_id, message))
        if channel in self.raises:
            raise RuntimeError(f"{channel} transport exploded")
        return self.outcomes.get(channel, True)

    def send_emergency_alert(self, contact, text):
        with self._lock:
            self.alerts.append((contact, text))
        return True

    def channels(self):
        return sorted(call[0] for call in self.calls)

    def message_for(self, channel):
        return next(call[2] for call in self.calls if call[0] == channel)


@pytest.fixture
def dispatcher():
    return RecordingDispatcher()


@pytest.fixture
def reminder_scheduler(app, dispatcher):
    # Not started: jobs stay pending in APScheduler and never run by themselves
    scheduler = ReminderScheduler(
        app,
        dispatcher=dispatcher,
        scheduler=BackgroundScheduler(timezone=pytz.utc)
    )
    yield scheduler
    scheduler.stop()
