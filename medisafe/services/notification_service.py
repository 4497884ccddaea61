"""
Notification Service
====================
Channel dispatcher: sends one composed reminder through one channel.

Chức năng:
1. Chọn transport theo kênh (push / sms / email / voice).
2. Kiểm tra điều kiện của người nhận (device token, số điện thoại, email).
3. Cô lập lỗi: mọi lỗi của một kênh được log và trả về False, không bao giờ
   ném ngoại lệ ra ngoài dispatcher.
"""

import logging
from typing import Callable, Dict, Optional

from medisafe.services import email_service, push_service, sms_service, voice_service

logger = logging.getLogger(__name__)

CHANNELS = ('push', 'sms', 'email', 'voice')


def default_transports() -> Dict[str, Callable]:
    return {
        'push': push_service.send_push,
        'sms': sms_service.send_sms,
        'email': email_service.send_medication_reminder_email,
        'voice': voice_service.make_call,
        'alert_email': email_service.send_alert_email,
    }


class NotificationDispatcher:
    """
    Gửi thông báo qua từng kênh.

    Transports can be replaced (tests, alternative providers) by passing a
    dict with the same keys as `default_transports()`.
    """

    def __init__(self, transports: Optional[Dict[str, Callable]] = None):
        self.transports = default_transports()
        if transports:
            self.transports.update(transports)

    def dispatch(self, channel: str, user, message: dict) -> bool:
        """
        Deliver `message` to `user` through `channel`.

        Returns:
            bool: True if the transport accepted the message. Never raises.
        """
        if channel not in CHANNELS:
            logger.warning(f"⚠️  Unknown notification channel '{channel}' for user {user.user_id}")
            return False

        if user.get_notification_preferences().get(channel) is False:
            logger.info(f"🔕 {channel.upper()} disabled by user {user.user_id}")
            return False

        handler = getattr(self, f'_send_{channel}')
        try:
            return bool(handler(user, message))
        except Exception as e:
            logger.error(f"❌ {channel.upper()} dispatch failed for user {user.user_id}: {e}", exc_info=True)
            return False

    # ========================================================================
    # CHANNELS
    # ========================================================================

    def _send_push(self, user, message):
        tokens = user.get_device_tokens()
        if not tokens:
            logger.warning(f"⚠️  No device token registered for user {user.user_id}")
            return False
        return self.transports['push'](tokens, message['title'], message['body'], message.get('metadata'))

    def _send_sms(self, user, message):
        if not user.phone:
            logger.warning(f"⚠️  Cannot send SMS - user {user.user_id} has no phone number")
            return False
        text = f"{message['title']}\n{message['body']}\n{message['instructions']}"
        return self.transports['sms'](user.phone, text)

    def _send_email(self, user, message):
        if not user.email:
            logger.warning(f"⚠️  Cannot send email - user {user.user_id} has no email address")
            return False
        return self.transports['email'](user.email, user.name, message)

    def _send_voice(self, user, message):
        if not user.phone:
            logger.warning(f"⚠️  Cannot call - user {user.user_id} has no phone number")
            return False
        language = message.get('metadata', {}).get('language', 'en')
        script = f"{message['body']}. {message['instructions']}"
        return self.transports['voice'](user.phone, script, language)

    # ========================================================================
    # EMERGENCY CONTACTS
    # ========================================================================

    def send_emergency_alert(self, contact: dict, text: str) -> bool:
        """
        Alert one emergency contact: SMS when they have a phone, otherwise
        (or if SMS is unavailable) email.
        """
        try:
            if contact.get('phone') and self.transports['sms'](contact['phone'], text):
                return True
            if contact.get('email'):
                return bool(self.transports['alert_email'](contact['email'], 'Medication Alert', text))
        except Exception as e:
            logger.error(f"❌ Error notifying emergency contact {contact.get('name')}: {e}", exc_info=True)
            return False

        logger.warning(f"⚠️  No usable channel for emergency contact {contact.get('name')}")
        return False
