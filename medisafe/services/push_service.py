import json
import logging
import os
from threading import Lock

import firebase_admin
from firebase_admin import credentials, messaging
from flask import current_app

logger = logging.getLogger(__name__)

_init_lock = Lock()


def _ensure_firebase_initialized():
    """
    Initialize the default Firebase app once.

    Returns:
        bool: True if an app is available for messaging
    """
    with _init_lock:
        if firebase_admin._apps:
            return True

        config = current_app.config
        project_id = config.get('FIREBASE_PROJECT_ID')
        creds = (config.get('FIREBASE_CREDENTIALS') or '').strip()

        if not project_id and not creds:
            logger.warning("⚠️  [FCM] No credentials provided - push notifications are disabled")
            return False

        options = {'httpTimeout': config.get('REMINDER_DISPATCH_TIMEOUT_SECONDS', 15)}
        if project_id:
            options['projectId'] = project_id

        try:
            if creds.startswith('{'):
                cred = credentials.Certificate(json.loads(creds))
            elif creds and os.path.exists(creds):
                cred = credentials.Certificate(creds)
            else:
                cred = credentials.ApplicationDefault()
            firebase_admin.initialize_app(cred, options=options)
        except Exception as e:
            logger.error(f"❌ [FCM] Failed to initialize Firebase: {e!r}")
            return False

        logger.info(f"✅ [FCM] Firebase app initialized | project_id={project_id}")
        return True


def send_push(tokens, title, body, data=None):
    """
    Send one notification to every device token of a user.

    Args:
        tokens: FCM registration tokens
        title: Notification title
        body: Notification body
        data: Extra payload (values are converted to strings)

    Returns:
        bool: True if at least one device accepted the message
    """
    if not tokens:
        logger.warning("⚠️  [FCM] No device tokens - skipping push notification")
        return False

    if not _ensure_firebase_initialized():
        return False

    message = messaging.MulticastMessage(
        tokens=list(tokens),
        notification=messaging.Notification(title=title, body=body),
        data={k: str(v) for k, v in (data or {}).items()},
        android=messaging.AndroidConfig(
            priority='high',
            notification=messaging.AndroidNotification(sound='default')
        ),
        apns=messaging.APNSConfig(
            headers={'apns-push-type': 'alert', 'apns-priority': '10'},
            payload=messaging.APNSPayload(aps=messaging.Aps(sound='default', badge=1))
        )
    )

    try:
        response = messaging.send_each_for_multicast(message)
    except Exception as e:
        logger.error(f"❌ [FCM] Failed to send notification: {e!r}")
        return False

    logger.info(
        f"🚀 [FCM] Push sent: success={response.success_count} failure={response.failure_count}"
    )
    return response.success_count > 0
