"""
Message Composer
================
Builds the reminder content for one medication and one recipient.

Pure functions: same inputs (including `now`) give the same message. The
neutral rendering is English; recipients whose language has a template below
get a localized title/body and a localized instruction phrase.
"""

from medisafe.config.config import Config
from medisafe.utils.timezone import utcnow, get_timezone, as_utc

DEFAULT_LOCALE = 'en'
DEFAULT_INSTRUCTIONS = 'Take as prescribed'

# Instruction keywords are checked in this order (substring, case-insensitive)
INSTRUCTION_KEYWORDS = ('after food', 'before food', 'with food')

LOCALE_TEMPLATES = {
    'te': {
        'title': '💊 {name} వేసుకునే సమయం',
        'body': '{name} - {dosage} వేసుకోండి',
        'body_no_dosage': '{name} వేసుకోండి',
        'instructions': {
            'after food': 'భోజనం తర్వాత వేసుకోండి',
            'before food': 'భోజనం ముందు వేసుకోండి',
            'with food': 'భోజనంతో పాటు వేసుకోండి',
        },
        'suffix': '{instructions} (వేసుకోండి)',
    },
    'hi': {
        'title': '💊 {name} लेने का समय',
        'body': '{name} - {dosage} लें',
        'body_no_dosage': '{name} लें',
        'instructions': {
            'after food': 'खाना खाने के बाद लें',
            'before food': 'खाना खाने से पहले लें',
            'with food': 'खाने के साथ लें',
        },
        'suffix': '{instructions} (लें)',
    },
}


def resolve_locale(user, channel=None, voice_locale=None):
    """
    Pick the rendering locale for one channel.

    Voice calls use `voice_locale` whenever it is set, regardless of the
    recipient's stored language. Every other channel follows the recipient.
    """
    if channel == 'voice' and voice_locale:
        return voice_locale
    return getattr(user, 'language', None) or DEFAULT_LOCALE


def localize_instructions(instructions, template):
    lowered = instructions.lower()
    for keyword in INSTRUCTION_KEYWORDS:
        if keyword in lowered:
            return template['instructions'][keyword]
    return template['suffix'].format(instructions=instructions)


def compose_reminder_message(medication, user, locale=None, now=None):
    """
    Build the reminder for `medication` addressed to `user`.

    Args:
        medication: Medication record
        user: Recipient (User)
        locale: Override the recipient's language (used by the voice policy)
        now: Instant the reminder is composed at

    Returns:
        dict: {title, body, instructions, metadata}
    """
    locale = locale or getattr(user, 'language', None) or DEFAULT_LOCALE
    now = as_utc(now) if now is not None else utcnow()
    local_time = now.astimezone(get_timezone()).strftime('%I:%M %p').lstrip('0')

    dosage = medication.dosage_text
    instructions = medication.special_instructions or DEFAULT_INSTRUCTIONS

    template = LOCALE_TEMPLATES.get(locale)
    if template is None:
        locale = DEFAULT_LOCALE
        title = f"💊 Time to take {medication.name}"
        body = f"Take {dosage} of {medication.name}" if dosage else f"Take {medication.name}"
    else:
        title = template['title'].format(name=medication.name)
        body_template = template['body'] if dosage else template['body_no_dosage']
        body = body_template.format(name=medication.name, dosage=dosage)
        instructions = localize_instructions(instructions, template)

    next_reminder = medication.get_next_reminder()

    return {
        'title': title,
        'body': body,
        'instructions': instructions,
        'metadata': {
            'type': 'medication_reminder',
            'priority': 'high',
            'language': locale,
            'time': local_time,
            'medication_id': str(medication.medication_id),
            'user_id': str(user.user_id),
            'dosage': dosage,
            'form': medication.dosage_form or '',
            'take_with': medication.take_with or '',
            'next_reminder': next_reminder.isoformat() if next_reminder else ''
        }
    }


def compose_emergency_alert(user, medication):
    """Short alert text sent to a recipient's emergency contacts."""
    return f"🚨 {Config.APP_NAME} Alert: {user.name} may have missed their {medication.name} medication."
