"""
Minimal Twilio REST client (Messages + Calls) on top of requests.

Reads credentials from the Flask app config. Every call carries a timeout so
a hung provider cannot stall the reminder that triggered it.
"""

import logging
import requests
from flask import current_app

logger = logging.getLogger(__name__)


def is_configured():
    config = current_app.config
    return all(
        (config.get(key) or '').strip()
        for key in ('TWILIO_ACCOUNT_SID', 'TWILIO_AUTH_TOKEN', 'TWILIO_PHONE_NUMBER')
    )


def create_resource(resource, payload):
    """
    POST /Accounts/{sid}/{resource}.json

    Args:
        resource: "Messages" or "Calls"
        payload: form fields (To, Body / Twiml ...); From is filled in

    Returns:
        dict: Twilio JSON response

    Raises:
        requests.RequestException: network or HTTP error
    """
    config = current_app.config
    sid = config['TWILIO_ACCOUNT_SID']
    url = f"{config['TWILIO_API_BASE']}/Accounts/{sid}/{resource}.json"

    data = dict(payload)
    data['From'] = config['TWILIO_PHONE_NUMBER']

    response = requests.post(
        url,
        data=data,
        auth=(sid, config['TWILIO_AUTH_TOKEN']),
        timeout=config.get('REMINDER_DISPATCH_TIMEOUT_SECONDS', 15)
    )
    response.raise_for_status()
    return response.json()
