from datetime import timedelta

import pytest
import pytz
from apscheduler.schedulers.background import BackgroundScheduler

from medisafe.models.medication import Medication
from medisafe.services import scheduler_service
from medisafe.services.notification_service import NotificationDispatcher
from medisafe.services.scheduler_service import RECONCILE_JOB_ID, CLEANUP_JOB_ID, ReminderScheduler
from medisafe.utils.timezone import to_db, utcnow

from conftest import RecordingDispatcher


@pytest.fixture
def build_scheduler(app):
    built = []

    def _build(dispatcher):
        scheduler = ReminderScheduler(
            app,
            dispatcher=dispatcher,
            scheduler=BackgroundScheduler(timezone=pytz.utc)
        )
        built.append(scheduler)
        return scheduler

    yield _build
    for scheduler in built:
        scheduler.stop()


def reminder_jobs(reminder_scheduler):
    return [job for job in reminder_scheduler.scheduler.get_jobs() if job.id.startswith('med-')]


def reload(db, medication):
    db.session.expire_all()
    return db.session.get(Medication, medication.medication_id)


# ============================================================================
# schedule_record
# ============================================================================

def test_schedule_record_is_idempotent(reminder_scheduler, make_user, make_medication, future):
    medication = make_medication(make_user(), next_reminder=future(hours=1))

    assert reminder_scheduler.schedule_record(medication)
    assert reminder_scheduler.schedule_record(medication)

    assert reminder_scheduler.get_tracked() == {medication.medication_id: future(hours=1)}
    assert len(reminder_jobs(reminder_scheduler)) == 1


def test_schedule_record_replaces_previous_timer(db, reminder_scheduler, make_user, make_medication, future):
    medication = make_medication(make_user(), next_reminder=future(hours=1))
    reminder_scheduler.schedule_record(medication)

    medication.next_reminder = to_db(future(hours=3))
    db.session.commit()
    assert reminder_scheduler.schedule_record(medication)

    assert reminder_scheduler.get_tracked()[medication.medication_id] == future(hours=3)
    jobs = reminder_jobs(reminder_scheduler)
    assert len(jobs) == 1
    assert jobs[0].args[1] == future(hours=3)


def test_schedule_record_ignores_missing_or_past_trigger(reminder_scheduler, make_user, make_medication, future):
    user = make_user()
    missing = make_medication(user, name='Aspirin')
    past = make_medication(user, name='Insulin', next_reminder=future(minutes=-5))

    assert not reminder_scheduler.schedule_record(missing)
    assert not reminder_scheduler.schedule_record(past)
    assert reminder_scheduler.get_tracked() == {}
    assert reminder_jobs(reminder_scheduler) == []


# ============================================================================
# fire
# ============================================================================

def test_fire_sends_on_every_channel_and_rearms(db, reminder_scheduler, dispatcher, make_user,
                                                make_medication, future):
    fire_at = future(minutes=-1)
    medication = make_medication(make_user(), methods=('push', 'sms', 'email'), next_reminder=fire_at)

    results = reminder_scheduler.fire(medication.medication_id, fire_at)

    assert results == {'push': True, 'sms': True, 'email': True}
    assert dispatcher.channels() == ['email', 'push', 'sms']

    medication = reload(db, medication)
    next_reminder = medication.get_next_reminder()
    assert next_reminder > utcnow()
    assert next_reminder - utcnow() <= timedelta(days=1)
    assert reminder_scheduler.get_tracked() == {medication.medication_id: next_reminder}


def test_failing_channel_does_not_block_the_others(build_scheduler, make_user, make_medication, future):
    dispatcher = RecordingDispatcher(raises={'sms'})
    reminder_scheduler = build_scheduler(dispatcher)
    fire_at = future(minutes=-1)
    medication = make_medication(make_user(), methods=('push', 'sms', 'email'), next_reminder=fire_at)

    results = reminder_scheduler.fire(medication.medication_id, fire_at)

    assert results == {'push': True, 'sms': False, 'email': True}
    assert medication.medication_id in reminder_scheduler.get_tracked()


def test_push_failure_with_sms_success(build_scheduler, make_user, make_medication, future):
    sent_sms = []
    dispatcher = NotificationDispatcher(transports={
        'push': lambda tokens, title, body, data=None: False,
        'sms': lambda to, body: sent_sms.append((to, body)) or True,
    })
    reminder_scheduler = build_scheduler(dispatcher)
    user = make_user(tokens=('device-token-1',))
    fire_at = future(minutes=-1)
    medication = make_medication(user, methods=('push', 'sms'), next_reminder=fire_at)

    results = reminder_scheduler.fire(medication.medication_id, fire_at)

    assert results == {'push': False, 'sms': True}
    assert sent_sms[0][0] == '+919999999999'
    assert 'Metformin' in sent_sms[0][1]


def test_duplicate_methods_are_attempted_once(reminder_scheduler, dispatcher, make_user,
                                              make_medication, future):
    fire_at = future(minutes=-1)
    medication = make_medication(make_user(), methods=('sms', 'sms', 'push'), next_reminder=fire_at)

    reminder_scheduler.fire(medication.medication_id, fire_at)

    assert dispatcher.channels() == ['push', 'sms']


def test_empty_schedule_stops_after_firing(db, reminder_scheduler, make_user, make_medication, future):
    fire_at = future(minutes=-1)
    medication = make_medication(make_user(), times=(), next_reminder=fire_at)

    reminder_scheduler.fire(medication.medication_id, fire_at)

    assert reload(db, medication).next_reminder is None
    assert reminder_scheduler.get_tracked() == {}


def test_end_date_stops_the_schedule(db, reminder_scheduler, make_user, make_medication, future):
    fire_at = future(minutes=-1)
    medication = make_medication(
        make_user(), next_reminder=fire_at, end_date=to_db(future(minutes=-1))
    )

    reminder_scheduler.fire(medication.medication_id, fire_at)

    assert reload(db, medication).next_reminder is None
    assert reminder_scheduler.get_tracked() == {}


def test_persistence_failure_leaves_record_untracked(db, monkeypatch, reminder_scheduler, dispatcher,
                                                     make_user, make_medication, future):
    fire_at = future(minutes=-1)
    medication = make_medication(make_user(), next_reminder=fire_at)

    def broken_commit():
        raise RuntimeError('database is gone')

    monkeypatch.setattr(db.session, 'commit', broken_commit)
    results = reminder_scheduler.fire(medication.medication_id, fire_at)
    monkeypatch.undo()

    assert results == {'push': True}
    assert reminder_scheduler.get_tracked() == {}
    assert reload(db, medication).get_next_reminder() == fire_at


def test_voice_uses_fixed_locale_while_text_follows_recipient(reminder_scheduler, dispatcher, make_user,
                                                              make_medication, future):
    fire_at = future(minutes=-1)
    medication = make_medication(make_user(language='en'), methods=('voice', 'sms'), next_reminder=fire_at)

    reminder_scheduler.fire(medication.medication_id, fire_at)

    assert dispatcher.message_for('voice')['metadata']['language'] == 'te'
    assert dispatcher.message_for('sms')['metadata']['language'] == 'en'
    assert dispatcher.message_for('sms')['title'] == '💊 Time to take Metformin'


def test_recipient_is_reloaded_at_fire_time(db, reminder_scheduler, dispatcher, make_user,
                                            make_medication, future):
    user = make_user(language='en')
    fire_at = future(minutes=-1)
    medication = make_medication(user, next_reminder=fire_at)

    user.language = 'hi'
    db.session.commit()

    reminder_scheduler.fire(medication.medication_id, fire_at)

    message = dispatcher.message_for('push')
    assert message['metadata']['language'] == 'hi'
    assert message['title'] == '💊 Metformin लेने का समय'


def test_moved_trigger_is_followed_without_sending(reminder_scheduler, dispatcher, make_user,
                                                   make_medication, future):
    medication = make_medication(make_user(), next_reminder=future(hours=2))

    results = reminder_scheduler.fire(medication.medication_id, future(minutes=-1))

    assert results == {}
    assert dispatcher.calls == []
    assert reminder_scheduler.get_tracked() == {medication.medication_id: future(hours=2)}


def test_paused_medication_is_dropped_when_it_fires(db, reminder_scheduler, dispatcher, make_user,
                                                    make_medication, future):
    fire_at = future(hours=1)
    medication = make_medication(make_user(), next_reminder=fire_at)
    reminder_scheduler.schedule_record(medication)

    medication.status = 'paused'
    db.session.commit()

    assert reminder_scheduler.fire(medication.medication_id, fire_at) == {}
    assert dispatcher.calls == []
    assert reminder_scheduler.get_tracked() == {}
    assert reminder_jobs(reminder_scheduler) == []


def test_missing_medication_is_dropped(reminder_scheduler, dispatcher, future):
    assert reminder_scheduler.fire(4242, future(minutes=-1)) == {}
    assert dispatcher.calls == []


def test_emergency_contacts_are_limited_and_ordered(reminder_scheduler, dispatcher, make_user,
                                                    make_medication, future):
    contacts = [
        {'name': f'Contact {priority}', 'phone': f'+9100000000{priority}', 'priority': priority}
        for priority in (5, 2, 4, 1, 3)
    ]
    user = make_user(contacts=contacts)
    fire_at = future(minutes=-1)
    medication = make_medication(user, next_reminder=fire_at, notify_emergency_contacts=True)

    reminder_scheduler.fire(medication.medication_id, fire_at)

    assert [contact['name'] for contact, _ in dispatcher.alerts] == ['Contact 1', 'Contact 2', 'Contact 3']
    assert 'Ravi' in dispatcher.alerts[0][1]
    assert 'Metformin' in dispatcher.alerts[0][1]


def test_emergency_contacts_not_alerted_unless_enabled(reminder_scheduler, dispatcher, make_user,
                                                       make_medication, future):
    user = make_user(contacts=[{'name': 'Asha', 'phone': '+911111111111'}])
    fire_at = future(minutes=-1)
    medication = make_medication(user, next_reminder=fire_at)

    reminder_scheduler.fire(medication.medication_id, fire_at)

    assert dispatcher.alerts == []


# ============================================================================
# SWEEPS
# ============================================================================

def test_reconcile_adopts_untracked_records(reminder_scheduler, make_user, make_medication, future):
    user = make_user()
    active = make_medication(user, next_reminder=future(hours=1))
    make_medication(user, name='Aspirin', next_reminder=future(hours=1), status='paused')
    make_medication(user, name='Insulin', next_reminder=future(hours=1), reminders_enabled=False)

    assert reminder_scheduler.reconcile() == 1
    assert reminder_scheduler.get_tracked() == {active.medication_id: future(hours=1)}

    # Nothing changed: the second sweep arms nothing
    assert reminder_scheduler.reconcile() == 0


def test_reconcile_rearms_changed_trigger(db, reminder_scheduler, make_user, make_medication, future):
    medication = make_medication(make_user(), next_reminder=future(hours=1))
    reminder_scheduler.schedule_record(medication)

    medication.next_reminder = to_db(future(hours=5))
    db.session.commit()

    assert reminder_scheduler.reconcile() == 1
    assert reminder_scheduler.get_tracked() == {medication.medication_id: future(hours=5)}
    assert len(reminder_jobs(reminder_scheduler)) == 1


def test_reconcile_heals_missing_and_elapsed_triggers(db, reminder_scheduler, make_user,
                                                      make_medication, future):
    user = make_user()
    missing = make_medication(user, name='Aspirin')
    elapsed = make_medication(user, name='Insulin', next_reminder=future(days=-2))

    assert reminder_scheduler.reconcile() == 2

    tracked = reminder_scheduler.get_tracked()
    for medication in (missing, elapsed):
        medication = reload(db, medication)
        assert medication.get_next_reminder() > utcnow()
        assert tracked[medication.medication_id] == medication.get_next_reminder()


def test_cleanup_evicts_elapsed_timers(monkeypatch, reminder_scheduler, make_user, make_medication, future):
    user = make_user()
    soon = make_medication(user, next_reminder=future(hours=1))
    later = make_medication(user, name='Aspirin', next_reminder=future(hours=5))
    reminder_scheduler.schedule_record(soon)
    reminder_scheduler.schedule_record(later)

    monkeypatch.setattr(scheduler_service, 'utcnow', lambda: future(hours=2))

    assert reminder_scheduler.cleanup() == 1
    assert reminder_scheduler.get_tracked() == {later.medication_id: future(hours=5)}
    assert [job.args[0] for job in reminder_jobs(reminder_scheduler)] == [later.medication_id]


# ============================================================================
# LIFECYCLE
# ============================================================================

def test_start_loads_only_eligible_records(reminder_scheduler, make_user, make_medication, future):
    user = make_user()
    eligible = make_medication(user, next_reminder=future(hours=1))
    make_medication(user, name='Aspirin', next_reminder=future(minutes=-10))
    make_medication(user, name='Insulin', next_reminder=future(hours=1), is_archived=True)
    make_medication(user, name='Warfarin', next_reminder=future(hours=1), status='completed')

    reminder_scheduler.start()
    reminder_scheduler.start()

    assert reminder_scheduler.scheduler.running
    assert reminder_scheduler.get_tracked() == {eligible.medication_id: future(hours=1)}
    job_ids = {job.id for job in reminder_scheduler.scheduler.get_jobs()}
    assert {RECONCILE_JOB_ID, CLEANUP_JOB_ID} <= job_ids


def test_stop_clears_timers_and_can_repeat(reminder_scheduler, make_user, make_medication, future):
    medication = make_medication(make_user(), next_reminder=future(hours=1))
    reminder_scheduler.schedule_record(medication)

    reminder_scheduler.stop()
    reminder_scheduler.stop()

    assert reminder_scheduler.get_tracked() == {}
    assert reminder_jobs(reminder_scheduler) == []
    # Closed: late callers cannot arm new timers
    assert not reminder_scheduler.schedule_record(medication)


def test_reconcile_heals_timer_missed_by_apscheduler(db, monkeypatch, reminder_scheduler, make_user,
                                                     make_medication, future):
    medication = make_medication(make_user(), next_reminder=future(hours=1))
    reminder_scheduler.schedule_record(medication)

    # The date job never ran and is now well past its misfire window
    monkeypatch.setattr(scheduler_service, 'utcnow', lambda: future(hours=2))

    assert reminder_scheduler.reconcile() == 1

    stored = reload(db, medication).get_next_reminder()
    assert stored > future(hours=2)
    assert reminder_scheduler.get_tracked() == {medication.medication_id: stored}
    assert len(reminder_jobs(reminder_scheduler)) == 1


def test_reconcile_leaves_timer_inside_misfire_window(db, monkeypatch, reminder_scheduler, make_user,
                                                      make_medication, future):
    medication = make_medication(make_user(), next_reminder=future(hours=1))
    reminder_scheduler.schedule_record(medication)

    monkeypatch.setattr(scheduler_service, 'utcnow', lambda: future(hours=1, minutes=1))

    assert reminder_scheduler.reconcile() == 0
    assert reminder_scheduler.get_tracked() == {medication.medication_id: future(hours=1)}
    assert reload(db, medication).get_next_reminder() == future(hours=1)


def test_record_locks_are_released_with_their_timer(db, monkeypatch, reminder_scheduler, make_user,
                                                    make_medication, future):
    user = make_user()
    paused = make_medication(user, next_reminder=future(hours=1))
    elapsed = make_medication(user, name='Aspirin', next_reminder=future(hours=1, minutes=30))
    reminder_scheduler.schedule_record(paused)
    reminder_scheduler.schedule_record(elapsed)

    paused.status = 'paused'
    db.session.commit()
    reminder_scheduler.fire(paused.medication_id, future(hours=1))

    monkeypatch.setattr(scheduler_service, 'utcnow', lambda: future(hours=2))
    assert reminder_scheduler.cleanup() == 1

    assert reminder_scheduler.get_tracked() == {}
    assert reminder_scheduler._record_locks == {}


def test_firing_after_stop_sends_nothing(db, reminder_scheduler, dispatcher, make_user,
                                         make_medication, future):
    fire_at = future(minutes=-1)
    medication = make_medication(make_user(), next_reminder=fire_at)
    reminder_scheduler.stop()

    assert reminder_scheduler.fire(medication.medication_id, fire_at) == {}
    assert dispatcher.calls == []
    assert reminder_scheduler._executor is None
    assert reminder_scheduler.get_tracked() == {}
