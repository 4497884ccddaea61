from datetime import datetime
from medisafe.models.base import db


class DeviceToken(db.Model):
    """FCM registration token of one of the user's devices."""
    __tablename__ = 'DeviceTokens'

    token_id = db.Column(db.Integer, primary_key=True, autoincrement=True)

    user_id = db.Column(
        db.Integer,
        db.ForeignKey('Users.user_id', ondelete='CASCADE'),
        nullable=False,
        index=True
    )

    fcm_token = db.Column(db.String(512), nullable=False, unique=True)

    platform = db.Column(
        db.String(20),
        nullable=False,
        default='android',
        comment='android | ios | web'
    )

    created_at = db.Column(db.DateTime, default=datetime.utcnow, nullable=False)

    def __repr__(self):
        return f'<DeviceToken {self.token_id} ({self.platform}) for user {self.user_id}>'
