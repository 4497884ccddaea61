"""
Voice Service
=============
Text-to-speech reminder calls through Twilio.

The call reads the message twice between a localized greeting and goodbye.
"""

import logging
from xml.sax.saxutils import escape
import requests
from medisafe.services import twilio_client

logger = logging.getLogger(__name__)

LANGUAGE_CONFIG = {
    'en': {
        'code': 'en-US',
        'voice': 'Polly.Joanna',
        'greeting': 'Hello. This is a reminder from MediSafe.',
        'repeat': 'I repeat.',
        'goodbye': 'Goodbye.'
    },
    'te': {
        'code': 'te-IN',
        'voice': 'Google.te-IN-Standard-A',
        'greeting': 'నమస్కారం, ఇది మీ మెడిసేఫ్ మందుల రిమైండర్.',
        'repeat': 'నేను మళ్ళీ చెబుతున్నాను.',
        'goodbye': 'ధన్యవాదాలు, మీ ఆరోగ్యం జాగ్రత్త.'
    },
    'hi': {
        'code': 'hi-IN',
        'voice': None,
        'greeting': 'नमस्ते। यह MediSafe से आपका दवा रिमाइंडर है।',
        'repeat': 'मैं दोहराता हूँ।',
        'goodbye': 'धन्यवाद।'
    }
}


def build_twiml(message, language='en'):
    config = LANGUAGE_CONFIG.get(language, LANGUAGE_CONFIG['en'])
    voice_attr = f' voice="{config["voice"]}"' if config['voice'] else ''
    say_open = f'<Say{voice_attr} language="{config["code"]}">'
    text = escape(message)

    return (
        '<?xml version="1.0" encoding="UTF-8"?>'
        '<Response>'
        f'{say_open}{escape(config["greeting"])} {text}</Say>'
        '<Pause length="1"/>'
        f'{say_open}{escape(config["repeat"])} {text}</Say>'
        '<Pause length="1"/>'
        f'{say_open}{escape(config["goodbye"])}</Say>'
        '</Response>'
    )


def make_call(to, message, language='en'):
    """
    Place a voice call that reads `message` aloud.

    Args:
        to: Phone number to call
        message: Text to speak
        language: Language code (en, te, hi); unknown codes fall back to en

    Returns:
        bool: True if the call was queued by Twilio
    """
    if not twilio_client.is_configured():
        logger.warning("⚠️  Cannot make call: Twilio is not configured")
        return False

    if not to:
        logger.warning("⚠️  Cannot make call: No phone number provided")
        return False

    logger.info(f"📞 Initiating call to {to} in language: {language}")

    try:
        result = twilio_client.create_resource('Calls', {
            'To': to,
            'Twiml': build_twiml(message, language)
        })
    except (requests.RequestException, ValueError) as e:
        logger.error(f"❌ Failed to make voice call to {to}: {e}")
        return False

    logger.info(f"✅ Call initiated successfully. SID: {result.get('sid')}")
    return True
