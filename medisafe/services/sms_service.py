import logging
import requests
from medisafe.services import twilio_client

logger = logging.getLogger(__name__)


def send_sms(to, body):
    """
    Send an SMS through Twilio.

    Returns:
        bool: True if Twilio accepted the message
    """
    if not twilio_client.is_configured():
        logger.warning("⚠️  Cannot send SMS - Twilio is not configured")
        return False

    if not to:
        logger.warning("⚠️  Cannot send SMS - no phone number")
        return False

    try:
        result = twilio_client.create_resource('Messages', {'To': to, 'Body': body})
    except (requests.RequestException, ValueError) as e:
        logger.error(f"❌ SMS sending error to {to}: {e}")
        return False

    logger.info(f"📱 SMS sent to {to}, SID: {result.get('sid')}")
    return True
