"""
Medication Model
================
Mô hình lưu trữ thuốc của người dùng và cấu hình nhắc nhở.

Mục đích:
- Lưu thông tin thuốc (tên, liều lượng, hướng dẫn uống)
- Lưu lịch uống (các mốc giờ trong ngày, tính bằng phút từ nửa đêm)
- `next_reminder` là trường duy nhất scheduler dựa vào để hẹn giờ
- Theo dõi tuân thủ (số liều đã uống / bỏ lỡ, chuỗi ngày liên tục)
- Theo dõi tồn kho: mỗi liều đã uống trừ 1, cảnh báo khi sắp hết
"""

from datetime import datetime, timedelta
from medisafe.models.base import db
from medisafe.utils.timezone import next_occurrence, to_db, as_utc, utcnow, get_timezone
import json
import logging

logger = logging.getLogger(__name__)

REMINDER_METHODS = ('push', 'sms', 'email', 'voice')
STATUSES = ('active', 'completed', 'stopped', 'paused')
TAKE_WITH_OPTIONS = ('empty-stomach', 'with-food', 'before-food', 'after-food', 'with-milk')


class Medication(db.Model):
    """
    Bảng thuốc + lịch nhắc nhở.

    Quan hệ: 1 User - N Medications (One-to-Many)
    """
    __tablename__ = 'Medications'

    # ========================================================================
    # PRIMARY KEY / FOREIGN KEY
    # ========================================================================
    medication_id = db.Column(
        db.Integer,
        primary_key=True,
        autoincrement=True
    )

    user_id = db.Column(
        db.Integer,
        db.ForeignKey('Users.user_id', ondelete='CASCADE'),
        nullable=False,
        index=True,
        comment='ID người dùng'
    )

    # ========================================================================
    # THÔNG TIN THUỐC
    # ========================================================================
    name = db.Column(
        db.String(100),
        nullable=False,
        comment='Tên thuốc (VD: Paracetamol, Metformin)'
    )

    dosage_value = db.Column(db.String(20), nullable=True, comment='VD: "500"')
    dosage_unit = db.Column(db.String(20), nullable=True, comment='VD: "mg", "ml"')
    dosage_form = db.Column(db.String(30), nullable=True, comment='VD: tablet, syrup')

    take_with = db.Column(
        db.String(20),
        nullable=True,
        comment='Một trong: ' + ', '.join(TAKE_WITH_OPTIONS)
    )

    special_instructions = db.Column(
        db.String(500),
        nullable=True,
        comment='VD: "Take after food"'
    )

    # ========================================================================
    # LỊCH TRÌNH
    # ========================================================================
    frequency = db.Column(db.String(20), nullable=False, default='Daily')

    schedule_times = db.Column(
        db.Text,
        nullable=False,
        default='[]',
        comment='JSON array phút từ nửa đêm. VD: [540, 1260] = 09:00 và 21:00'
    )

    start_date = db.Column(db.DateTime, nullable=False, default=datetime.utcnow)

    end_date = db.Column(db.DateTime, nullable=True, comment='UTC; NULL nếu uống dài hạn')

    next_reminder = db.Column(
        db.DateTime,
        nullable=True,
        index=True,
        comment='Thời điểm nhắc tiếp theo (UTC). Scheduler chỉ đọc trường này.'
    )

    # ========================================================================
    # CẤU HÌNH NHẮC NHỞ
    # ========================================================================
    reminders_enabled = db.Column(db.Boolean, nullable=False, default=True)

    reminder_methods = db.Column(
        db.Text,
        nullable=False,
        default='["push"]',
        comment='JSON array kênh: push, sms, email, voice'
    )

    notify_emergency_contacts = db.Column(db.Boolean, nullable=False, default=False)

    # ========================================================================
    # TRẠNG THÁI
    # ========================================================================
    status = db.Column(db.String(20), nullable=False, default='active', index=True)
    is_archived = db.Column(db.Boolean, nullable=False, default=False)

    # ========================================================================
    # TUÂN THỦ (ADHERENCE)
    # ========================================================================
    total_doses = db.Column(db.Integer, nullable=False, default=0)
    taken_doses = db.Column(db.Integer, nullable=False, default=0)
    missed_doses = db.Column(db.Integer, nullable=False, default=0)
    adherence_rate = db.Column(db.Float, nullable=False, default=0.0)
    last_taken = db.Column(db.DateTime, nullable=True)
    current_streak = db.Column(db.Integer, nullable=False, default=0)
    longest_streak = db.Column(db.Integer, nullable=False, default=0)

    # ========================================================================
    # TỒN KHO (INVENTORY)
    # ========================================================================
    inventory_enabled = db.Column(db.Boolean, nullable=False, default=True)
    current_quantity = db.Column(db.Integer, nullable=False, default=0, comment='Số viên / liều còn lại')
    low_stock_threshold = db.Column(db.Integer, nullable=False, default=5, comment='Cảnh báo khi còn <= ngưỡng này')
    last_refill_date = db.Column(db.DateTime, nullable=True)

    interactions = db.Column(
        db.Text,
        nullable=True,
        comment='JSON: cảnh báo tương tác thuốc người dùng đã xác nhận khi tạo'
    )

    notes = db.Column(db.String(1000), nullable=True)

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    user = db.relationship('User', backref=db.backref('medications', lazy=True))

    # ========================================================================
    # QUERIES
    # ========================================================================

    @classmethod
    def eligible_query(cls, now=None):
        """
        Thuốc đủ điều kiện để hẹn giờ nhắc:
        status=active, chưa lưu trữ, bật nhắc nhở, next_reminder > now.
        """
        now = to_db(now or utcnow())
        return cls.query.filter(
            cls.status == 'active',
            cls.is_archived == False,  # noqa: E712
            cls.reminders_enabled == True,  # noqa: E712
            cls.next_reminder > now
        )

    @classmethod
    def find_active_by_user(cls, user_id):
        return cls.query.filter_by(
            user_id=user_id,
            status='active',
            is_archived=False
        ).order_by(cls.next_reminder).all()

    def is_schedulable(self):
        return self.status == 'active' and not self.is_archived and self.reminders_enabled

    # ========================================================================
    # HELPER METHODS
    # ========================================================================

    def get_schedule_times(self):
        """
        Returns:
            list[int]: phút từ nửa đêm, VD: [540, 1260]
        """
        if not self.schedule_times:
            return []
        try:
            return json.loads(self.schedule_times)
        except json.JSONDecodeError:
            return []

    def set_schedule_times(self, times):
        self.schedule_times = json.dumps(sorted(times))

    def get_reminder_methods(self):
        if not self.reminder_methods:
            return []
        try:
            return json.loads(self.reminder_methods)
        except json.JSONDecodeError:
            return []

    def set_reminder_methods(self, methods):
        self.reminder_methods = json.dumps(list(methods))

    def get_interactions(self):
        if not self.interactions:
            return []
        try:
            return json.loads(self.interactions)
        except json.JSONDecodeError:
            return []

    def set_interactions(self, interactions):
        self.interactions = json.dumps(interactions)

    @property
    def dosage_text(self):
        return ' '.join(part for part in (self.dosage_value, self.dosage_unit) if part)

    def get_next_reminder(self):
        """next_reminder dạng aware UTC"""
        return as_utc(self.next_reminder)

    def update_next_reminder(self, now=None, tz=None, enforce_end_date=True):
        """
        Tính lại next_reminder từ các mốc giờ trong lịch.

        Raises:
            ValueError: lịch chứa mốc giờ không hợp lệ
        """
        end_date = self.end_date if enforce_end_date else None
        next_time = next_occurrence(
            self.get_schedule_times(),
            now=now,
            tz=tz or get_timezone(),
            end_date=end_date
        )
        self.next_reminder = to_db(next_time)
        return next_time

    # ========================================================================
    # ADHERENCE
    # ========================================================================

    def _refresh_adherence_rate(self):
        if self.total_doses > 0:
            self.adherence_rate = round(self.taken_doses / self.total_doses * 100, 2)
        else:
            self.adherence_rate = 0.0

    def mark_as_taken(self, note=None, now=None):
        """
        Ghi nhận đã uống 1 liều, cập nhật chuỗi ngày liên tục và tồn kho.

        Returns:
            bool: True nếu tồn kho chạm ngưỡng cảnh báo
        """
        now = as_utc(now or utcnow())
        tz = get_timezone()
        today = now.astimezone(tz).date()
        previous = as_utc(self.last_taken)
        previous_day = previous.astimezone(tz).date() if previous else None

        self.taken_doses = (self.taken_doses or 0) + 1
        self.total_doses = (self.total_doses or 0) + 1

        if previous_day == today:
            # Second dose on the same day keeps the streak as it is
            self.current_streak = max(self.current_streak or 0, 1)
        elif previous_day == today - timedelta(days=1):
            self.current_streak = (self.current_streak or 0) + 1
        else:
            self.current_streak = 1
        self.longest_streak = max(self.longest_streak or 0, self.current_streak)

        self.last_taken = to_db(now)
        if note:
            self.notes = note
        self._refresh_adherence_rate()
        return self.consume_dose()

    # ========================================================================
    # INVENTORY
    # ========================================================================

    def is_low_stock(self):
        return bool(self.inventory_enabled) and (self.current_quantity or 0) <= (self.low_stock_threshold or 0)

    def consume_dose(self):
        """
        Trừ 1 đơn vị tồn kho cho mỗi liều đã uống (không xuống dưới 0).

        Returns:
            bool: True nếu tồn kho chạm ngưỡng cảnh báo sau khi trừ
        """
        if not self.inventory_enabled or (self.current_quantity or 0) <= 0:
            return False

        self.current_quantity -= 1
        if self.is_low_stock():
            logger.warning(f"⚠️ Low Stock Alert: {self.name} has only {self.current_quantity} left!")
            return True
        return False

    def refill(self, quantity, now=None):
        """Nhập thêm thuốc: cộng dồn số lượng và ghi ngày refill."""
        if quantity <= 0:
            raise ValueError("Refill quantity must be positive")
        self.current_quantity = (self.current_quantity or 0) + quantity
        self.last_refill_date = to_db(now or utcnow())

    def mark_as_missed(self):
        """Ghi nhận bỏ lỡ 1 liều (reset chuỗi ngày)."""
        self.missed_doses = (self.missed_doses or 0) + 1
        self.total_doses = (self.total_doses or 0) + 1
        self.current_streak = 0
        self._refresh_adherence_rate()

    def to_dict(self):
        next_reminder = self.get_next_reminder()
        return {
            'medication_id': self.medication_id,
            'user_id': self.user_id,
            'name': self.name,
            'dosage': {
                'value': self.dosage_value,
                'unit': self.dosage_unit,
                'form': self.dosage_form
            },
            'instructions': {
                'take_with': self.take_with,
                'special_instructions': self.special_instructions or ""
            },
            'schedule': {
                'frequency': self.frequency,
                'times': self.get_schedule_times(),
                'start_date': self.start_date.isoformat() if self.start_date else None,
                'end_date': self.end_date.isoformat() if self.end_date else None
            },
            'reminders': {
                'enabled': self.reminders_enabled,
                'methods': self.get_reminder_methods(),
                'notify_emergency_contacts': self.notify_emergency_contacts
            },
            'status': self.status,
            'is_archived': self.is_archived,
            'next_reminder': next_reminder.isoformat() if next_reminder else None,
            'adherence': {
                'total_doses': self.total_doses,
                'taken_doses': self.taken_doses,
                'missed_doses': self.missed_doses,
                'adherence_rate': self.adherence_rate,
                'last_taken': self.last_taken.isoformat() if self.last_taken else None,
                'current_streak': self.current_streak,
                'longest_streak': self.longest_streak
            },
            'inventory': {
                'enabled': self.inventory_enabled,
                'current_quantity': self.current_quantity,
                'low_stock_threshold': self.low_stock_threshold,
                'last_refill_date': self.last_refill_date.isoformat() if self.last_refill_date else None
            },
            'interactions': self.get_interactions(),
            'notes': self.notes or ""
        }

    def __repr__(self):
        return f'<Medication {self.medication_id}: {self.name} for user {self.user_id}>'
