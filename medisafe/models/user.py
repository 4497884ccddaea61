"""
User Model
==========
Recipient of medication reminders and emergency alerts.

Only the fields the reminder pipeline reads live here: contact details,
preferred language, per-channel preferences and emergency contacts.
"""

from datetime import datetime
from medisafe.models.base import db
import json


SUPPORTED_LANGUAGES = ('en', 'hi', 'te', 'es', 'fr', 'de', 'zh', 'ar')

DEFAULT_NOTIFICATION_PREFERENCES = {
    'push': True,
    'sms': True,
    'email': True,
    'voice': True
}


class User(db.Model):
    """
    Bảng người dùng (người nhận nhắc nhở).

    Quan hệ: 1 User - N Medications, 1 User - N DeviceTokens
    """
    __tablename__ = 'Users'

    user_id = db.Column(
        db.Integer,
        primary_key=True,
        autoincrement=True
    )

    name = db.Column(db.String(50), nullable=False)

    email = db.Column(
        db.String(255),
        nullable=True,
        unique=True,
        comment='Địa chỉ email nhận nhắc nhở'
    )

    phone = db.Column(
        db.String(20),
        nullable=True,
        comment='Số điện thoại E.164 cho SMS / cuộc gọi'
    )

    language = db.Column(
        db.String(5),
        nullable=False,
        default='en',
        comment='Ngôn ngữ ưa thích: ' + ', '.join(SUPPORTED_LANGUAGES)
    )

    notification_preferences = db.Column(
        db.Text,
        nullable=True,
        comment='JSON: {"push": true, "sms": true, "email": true, "voice": true}'
    )

    emergency_contacts = db.Column(
        db.Text,
        nullable=True,
        comment='JSON array: [{"name", "phone", "email", "relationship", "priority"}]'
    )

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)
    updated_at = db.Column(db.DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False)

    device_tokens = db.relationship('DeviceToken', backref='user', lazy=True, cascade='all, delete-orphan')

    # ========================================================================
    # HELPER METHODS
    # ========================================================================

    def get_notification_preferences(self):
        preferences = dict(DEFAULT_NOTIFICATION_PREFERENCES)
        if self.notification_preferences:
            try:
                preferences.update(json.loads(self.notification_preferences))
            except json.JSONDecodeError:
                pass
        return preferences

    def set_notification_preferences(self, preferences):
        self.notification_preferences = json.dumps(preferences)

    def get_emergency_contacts(self):
        """
        Danh sách người liên hệ khẩn cấp, sắp xếp theo priority (1 = cao nhất).

        Returns:
            list[dict]
        """
        if not self.emergency_contacts:
            return []
        try:
            contacts = json.loads(self.emergency_contacts)
        except json.JSONDecodeError:
            return []
        # sorted() is stable: equal priorities keep their stored order
        return sorted(contacts, key=lambda c: c.get('priority', 1))

    def set_emergency_contacts(self, contacts):
        self.emergency_contacts = json.dumps(contacts)

    def get_device_tokens(self):
        """FCM tokens, newest first"""
        tokens = sorted(self.device_tokens, key=lambda t: t.created_at or datetime.min, reverse=True)
        return [t.fcm_token for t in tokens if t.fcm_token]

    def to_dict(self):
        return {
            'user_id': self.user_id,
            'name': self.name,
            'email': self.email,
            'phone': self.phone,
            'language': self.language,
            'notification_preferences': self.get_notification_preferences(),
            'emergency_contacts': self.get_emergency_contacts()
        }

    def __repr__(self):
        return f'<User {self.user_id}: {self.name}>'
