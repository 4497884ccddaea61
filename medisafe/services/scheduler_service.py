"""
Scheduler Service
=================
Background reminder scheduler built on APScheduler.

1. Một timer (`date` trigger) cho mỗi thuốc, hẹn đúng vào `next_reminder`.
2. Khi timer chạy: gửi nhắc nhở qua mọi kênh đã bật, tính lại `next_reminder`,
   lưu DB và hẹn timer mới.
3. Reconciliation (mỗi 60 giây): nhận các thuốc mới / vừa sửa bởi API.
4. Cleanup (hàng ngày lúc 00:00): xóa các timer đã quá hạn mà chưa tự dọn.

The scheduler is an explicit lifecycle object: `main.py` builds one
instance and calls `start()` / `stop()`. It assumes it is the only active
scheduler process.
"""

import logging
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor, wait
from datetime import datetime, timedelta
from threading import Lock, RLock
from typing import Dict, Optional

from apscheduler.jobstores.base import JobLookupError
from apscheduler.schedulers.background import BackgroundScheduler
from sqlalchemy import or_
from sqlalchemy.orm import selectinload

from medisafe.models.base import db
from medisafe.models.medication import Medication
from medisafe.models.user import User
from medisafe.services.message_composer import (
    compose_emergency_alert,
    compose_reminder_message,
    resolve_locale,
)
from medisafe.services.notification_service import NotificationDispatcher
from medisafe.utils.timezone import get_timezone, to_db, utcnow

logger = logging.getLogger(__name__)

# A timer that could not run within this window is skipped; the next
# reconciliation sweep moves the record on to its next slot.
MISFIRE_GRACE_SECONDS = 300

RECONCILE_JOB_ID = 'reminder_reconcile_job'
CLEANUP_JOB_ID = 'reminder_cleanup_job'


class TimerHandle(namedtuple('TimerHandle', ['medication_id', 'fire_at', 'job_id'])):
    """Tracked timer, keyed by (medication_id, fire_at)."""

    @property
    def key(self):
        return (self.medication_id, self.fire_at)


class ReminderScheduler:
    """
    Owns the in-memory timer table (medication_id -> TimerHandle).

    Every insert / replace / remove of a table entry happens under that
    record's lock, so a firing and a sweep cannot re-arm the same record
    concurrently.
    """

    def __init__(self, app, dispatcher: Optional[NotificationDispatcher] = None,
                 scheduler: Optional[BackgroundScheduler] = None,
                 voice_locale: Optional[str] = None):
        config = app.config
        self.app = app
        self.dispatcher = dispatcher or NotificationDispatcher()
        self.tz = get_timezone(config.get('REMINDER_TIMEZONE'))
        self.scheduler = scheduler or BackgroundScheduler(timezone=self.tz)

        self.voice_locale = config.get('REMINDER_VOICE_LOCALE') if voice_locale is None else voice_locale
        self.enforce_end_date = config.get('REMINDER_ENFORCE_END_DATE', True)
        self.reconcile_interval = config.get('REMINDER_RECONCILE_INTERVAL_SECONDS', 60)
        self.cleanup_hour = config.get('REMINDER_CLEANUP_HOUR', 0)
        self.dispatch_timeout = config.get('REMINDER_DISPATCH_TIMEOUT_SECONDS', 15)
        self.max_workers = config.get('REMINDER_MAX_WORKERS', 8)
        self.max_emergency_contacts = config.get('REMINDER_MAX_EMERGENCY_CONTACTS', 3)

        self.timers: Dict[int, TimerHandle] = {}
        self._table_lock = Lock()
        self._record_locks: Dict[int, RLock] = {}
        self._in_flight = set()
        self._executor: Optional[ThreadPoolExecutor] = None
        self._executor_lock = Lock()
        self._started = False
        self._closed = False

    # ========================================================================
    # LIFECYCLE
    # ========================================================================

    def start(self):
        """
        Load eligible medications, arm one timer each, then start the
        reconciliation and cleanup sweeps. Calling it again is a no-op.
        """
        if self._started:
            logger.warning("Scheduler already started")
            return

        self._started = True
        self._closed = False
        logger.info("🚀 Starting Reminder Scheduler...")

        loaded = 0
        with self.app.app_context():
            try:
                medications = Medication.eligible_query().all()
                logger.info(f"📊 Loaded {len(medications)} active medications")
                for medication in medications:
                    if self.schedule_record(medication):
                        loaded += 1
            except Exception as e:
                # Keep running with whatever was armed; reconciliation retries
                logger.error(f"❌ Error loading medications at startup: {e}", exc_info=True)
                db.session.rollback()

        self.scheduler.add_job(
            func=self.reconcile,
            trigger='interval',
            seconds=self.reconcile_interval,
            id=RECONCILE_JOB_ID,
            name='Adopt new or changed medication reminders',
            replace_existing=True,
            max_instances=1,
            coalesce=True
        )

        self.scheduler.add_job(
            func=self.cleanup,
            trigger='cron',
            hour=self.cleanup_hour,
            minute=0,
            id=CLEANUP_JOB_ID,
            name='Evict elapsed reminder timers',
            replace_existing=True
        )

        if not self.scheduler.running:
            self.scheduler.start()

        logger.info("✅ Reminder Scheduler started successfully")
        logger.info(f"   - Timers armed: {loaded}")
        logger.info(f"   - Reconciliation: every {self.reconcile_interval}s")
        logger.info(f"   - Cleanup: daily at {self.cleanup_hour:02d}:00")

    def stop(self):
        """Cancel every timer and clear the table. Safe to call repeatedly."""
        self._closed = True

        with self._table_lock:
            handles = list(self.timers.values())
            self.timers.clear()
            self._record_locks.clear()

        for handle in handles:
            self._cancel(handle)

        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)
        else:
            for job_id in (RECONCILE_JOB_ID, CLEANUP_JOB_ID):
                self._remove_job(job_id)

        with self._executor_lock:
            if self._executor is not None:
                self._executor.shutdown(wait=False)
                self._executor = None

        self._started = False
        logger.info(f"🛑 Reminder Scheduler stopped ({len(handles)} timers cancelled)")

    # ========================================================================
    # TIMER TABLE
    # ========================================================================

    def _record_lock(self, medication_id) -> RLock:
        with self._table_lock:
            lock = self._record_locks.get(medication_id)
            if lock is None:
                lock = self._record_locks[medication_id] = RLock()
            return lock

    def _remove_job(self, job_id):
        try:
            self.scheduler.remove_job(job_id)
        except JobLookupError:
            # Date jobs are removed by APScheduler once they have run
            pass

    def _cancel(self, handle: TimerHandle):
        self._remove_job(handle.job_id)

    def _drop(self, medication_id, fire_at=None):
        """Forget the timer for a record, unless it was re-armed meanwhile."""
        with self._record_lock(medication_id):
            handle = self.timers.get(medication_id)
            if handle is None:
                with self._table_lock:
                    self._record_locks.pop(medication_id, None)
                return
            if fire_at is not None and handle.fire_at != fire_at:
                return
            self._cancel(handle)
            with self._table_lock:
                self.timers.pop(medication_id, None)
                self._record_locks.pop(medication_id, None)

    def get_tracked(self) -> Dict[int, datetime]:
        """Snapshot: medication_id -> scheduled fire instant."""
        with self._table_lock:
            return {mid: handle.fire_at for mid, handle in self.timers.items()}

    def schedule_record(self, medication) -> bool:
        """
        Arm a timer for `medication.next_reminder`.

        No-op when the trigger is missing or not in the future. Any existing
        timer for the same record is replaced; an identical one is kept.

        Returns:
            bool: True if a timer for this trigger is armed
        """
        if self._closed:
            return False

        fire_at = medication.get_next_reminder()
        if fire_at is None or fire_at <= utcnow():
            return False

        medication_id = medication.medication_id
        with self._record_lock(medication_id):
            current = self.timers.get(medication_id)
            if current is not None:
                if current.fire_at == fire_at:
                    return True
                self._cancel(current)

            job_id = f"med-{medication_id}-{int(fire_at.timestamp())}"
            self.scheduler.add_job(
                func=self.fire,
                trigger='date',
                run_date=fire_at,
                args=[medication_id, fire_at],
                id=job_id,
                name=f'Reminder for {medication.name}',
                replace_existing=True,
                misfire_grace_time=MISFIRE_GRACE_SECONDS
            )
            with self._table_lock:
                self.timers[medication_id] = TimerHandle(medication_id, fire_at, job_id)

        logger.info(f"📅 Scheduled reminder for {medication.name} at {fire_at.astimezone(self.tz)}")
        return True

    # ========================================================================
    # FIRING
    # ========================================================================

    def fire(self, medication_id, fire_at) -> Dict[str, bool]:
        """
        Timer callback: deliver the reminder, then recompute and re-arm.

        Returns:
            dict: channel -> delivered (empty when nothing was sent)
        """
        with self._table_lock:
            self._in_flight.add(medication_id)
        try:
            with self.app.app_context():
                try:
                    return self._process_firing(medication_id, fire_at)
                except Exception as e:
                    logger.error(f"❌ Error processing reminder for medication {medication_id}: {e}", exc_info=True)
                    db.session.rollback()
                    self._drop(medication_id, fire_at)
                    return {}
        finally:
            with self._table_lock:
                self._in_flight.discard(medication_id)

    def _process_firing(self, medication_id, fire_at):
        medication = db.session.get(Medication, medication_id, populate_existing=True)
        if medication is None or not medication.is_schedulable():
            logger.info(f"⏭️  Medication {medication_id} is no longer eligible - dropping timer")
            self._drop(medication_id, fire_at)
            return {}

        stored = medication.get_next_reminder()
        if stored is not None and stored != fire_at and stored > utcnow():
            # Schedule was edited out of band; follow the stored trigger
            logger.info(f"🔁 {medication.name} moved to {stored} - re-arming without sending")
            self.schedule_record(medication)
            return {}

        logger.info(f"⏰ Reminder triggered for {medication.name}")

        # The recipient is re-read at fire time: language / phone may have
        # changed since the timer was armed.
        user = db.session.get(
            User,
            medication.user_id,
            options=[selectinload(User.device_tokens)],
            populate_existing=True
        )

        results = {}
        if user is None:
            logger.error(f"❌ Recipient {medication.user_id} not found for medication {medication_id} - skipping send")
        else:
            results = self._fan_out(medication, user)
            if medication.notify_emergency_contacts:
                self._notify_emergency_contacts(user, medication)

            sent = sum(1 for ok in results.values() if ok)
            logger.info(f"📡 {medication.name}: {sent}/{len(results)} channels delivered {results}")

        self._schedule_next(medication, fire_at)
        return results

    def _get_executor(self) -> ThreadPoolExecutor:
        with self._executor_lock:
            if self._executor is None:
                self._executor = ThreadPoolExecutor(
                    max_workers=self.max_workers,
                    thread_name_prefix='reminder-dispatch'
                )
            return self._executor

    def _deliver(self, channel, medication, user, now):
        with self.app.app_context():
            locale = resolve_locale(user, channel, self.voice_locale)
            message = compose_reminder_message(medication, user, locale=locale, now=now)
            return self.dispatcher.dispatch(channel, user, message)

    def _fan_out(self, medication, user) -> Dict[str, bool]:
        """
        Compose + dispatch on every configured channel concurrently.

        Each channel is attempted regardless of the others; a channel that
        raises or does not finish within the wait bound counts as failed.
        """
        if self._closed:
            logger.warning(f"⚠️  Scheduler stopped - not sending reminder for {medication.name}")
            return {}

        methods = medication.get_reminder_methods() or ['push']
        now = utcnow()
        executor = self._get_executor()

        futures = {
            channel: executor.submit(self._deliver, channel, medication, user, now)
            for channel in dict.fromkeys(methods)
        }
        logger.info(f"📡 Attempting to send reminders via: {', '.join(futures)}")

        _, not_done = wait(futures.values(), timeout=self.dispatch_timeout * 2)

        results = {}
        for channel, future in futures.items():
            if future in not_done:
                logger.error(f"❌ {channel.upper()} reminder for {medication.name} timed out")
                results[channel] = False
                continue
            try:
                results[channel] = bool(future.result())
            except Exception as e:
                logger.error(f"❌ Error sending {channel} reminder for {medication.name}: {e}", exc_info=True)
                results[channel] = False
                continue

            if results[channel]:
                logger.info(f"✅ {channel.upper()} reminder sent successfully for {medication.name}")
            else:
                logger.warning(f"⚠️  {channel.upper()} reminder not delivered for {medication.name}")
        return results

    def _notify_emergency_contacts(self, user, medication) -> int:
        try:
            contacts = user.get_emergency_contacts()[:self.max_emergency_contacts]
            if not contacts:
                return 0

            text = compose_emergency_alert(user, medication)
            sent = 0
            for contact in contacts:
                if self.dispatcher.send_emergency_alert(contact, text):
                    sent += 1
            logger.info(f"🚨 Emergency alert for {medication.name}: {sent}/{len(contacts)} contacts notified")
            return sent
        except Exception as e:
            logger.error(f"❌ Error notifying emergency contacts of user {user.user_id}: {e}", exc_info=True)
            return 0

    def _schedule_next(self, medication, fired_at):
        """Recompute next_reminder, persist it and re-arm (or drop) the timer."""
        medication_id = medication.medication_id
        now = max(utcnow(), fired_at)

        try:
            next_time = medication.update_next_reminder(
                now=now, tz=self.tz, enforce_end_date=self.enforce_end_date
            )
            db.session.commit()
        except Exception as e:
            db.session.rollback()
            logger.error(f"❌ Could not persist next reminder for medication {medication_id}: {e}", exc_info=True)
            self._drop(medication_id, fired_at)
            return None

        if next_time is None:
            logger.info(f"🏁 No further reminders for {medication.name}")
            self._drop(medication_id, fired_at)
            return None

        self.schedule_record(medication)
        return next_time

    # ========================================================================
    # SWEEPS
    # ========================================================================

    def reconcile(self):
        """
        Periodic sweep over the store.

        - adopts eligible records that are not tracked yet
        - re-arms tracked records whose stored trigger changed
        - recomputes active records whose stored trigger is empty or elapsed

        Returns:
            int: number of timers armed or re-armed
        """
        with self.app.app_context():
            try:
                armed = self._adopt_eligible()
                armed += self._heal_stale()
            except Exception as e:
                logger.error(f"❌ Periodic check error: {e}", exc_info=True)
                db.session.rollback()
                return 0

        if armed:
            logger.info(f"🔄 Reconciliation armed {armed} reminder(s)")
        return armed

    def _adopt_eligible(self):
        tracked = self.get_tracked()
        armed = 0
        for medication in Medication.eligible_query().all():
            if tracked.get(medication.medication_id) == medication.get_next_reminder():
                continue
            if self.schedule_record(medication):
                armed += 1
        return armed

    def _heal_stale(self):
        now = utcnow()
        stale = Medication.query.filter(
            Medication.status == 'active',
            Medication.is_archived == False,  # noqa: E712
            Medication.reminders_enabled == True,  # noqa: E712
            or_(Medication.next_reminder.is_(None), Medication.next_reminder <= to_db(now))
        ).all()

        with self._table_lock:
            in_flight = set(self._in_flight)
        tracked = self.get_tracked()
        overdue = now - timedelta(seconds=MISFIRE_GRACE_SECONDS)

        healed = []
        for medication in stale:
            medication_id = medication.medication_id
            if medication_id in in_flight:
                # Firing in progress; it recomputes on its own
                continue
            fire_at = tracked.get(medication_id)
            if fire_at is not None:
                if fire_at >= overdue:
                    # Still inside the misfire window, APScheduler may run it
                    continue
                # Missed by APScheduler: forget the dead timer and heal below
                logger.warning(f"⚠️  Reminder for medication {medication_id} at {fire_at} was missed")
                self._drop(medication_id, fire_at)
            try:
                if medication.update_next_reminder(now=now, tz=self.tz, enforce_end_date=self.enforce_end_date):
                    healed.append(medication)
            except ValueError as e:
                logger.warning(f"⚠️  Skipping medication {medication.medication_id} with invalid schedule: {e}")

        db.session.commit()

        armed = 0
        for medication in healed:
            if self.schedule_record(medication):
                armed += 1
        return armed

    def cleanup(self):
        """
        Evict timers whose fire instant has already passed.

        Returns:
            int: number of evicted timers
        """
        now = utcnow()
        with self._table_lock:
            expired = [handle for handle in self.timers.values() if handle.fire_at < now]

        evicted = 0
        for handle in expired:
            with self._record_lock(handle.medication_id):
                if self.timers.get(handle.medication_id) is not handle:
                    continue
                self._cancel(handle)
                with self._table_lock:
                    self.timers.pop(handle.medication_id, None)
                    self._record_locks.pop(handle.medication_id, None)
                evicted += 1

        logger.info(f"🧹 Cleaned up {evicted} elapsed reminder timers")
        return evicted
