import logging
import smtplib
from flask import current_app
from flask_mail import Connection, Message

logger = logging.getLogger(__name__)


class BoundedConnection(Connection):
    """Flask-Mail connection whose SMTP socket carries a timeout."""

    def configure_host(self):
        timeout = current_app.config.get('REMINDER_DISPATCH_TIMEOUT_SECONDS', 15)
        state = self.mail
        if state.use_ssl:
            host = smtplib.SMTP_SSL(state.server, state.port, timeout=timeout)
        else:
            host = smtplib.SMTP(state.server, state.port, timeout=timeout)

        host.set_debuglevel(int(state.debug))

        if state.use_tls:
            host.starttls()
        if state.username and state.password:
            host.login(state.username, state.password)

        return host


def _send(msg):
    with BoundedConnection(current_app.extensions['mail']) as connection:
        msg.send(connection)


def _mail_configured():
    return bool(current_app.config.get('MAIL_SERVER') and current_app.config.get('MAIL_DEFAULT_SENDER'))


def send_medication_reminder_email(email, user_name, message):
    """
    Send medication reminder email to user

    Args:
        email (str): User's email address
        user_name (str): User's name
        message (dict): Composed reminder {title, body, instructions, metadata}

    Returns:
        bool: True if sent successfully, False otherwise
    """
    if not _mail_configured():
        logger.warning("⚠️  Cannot send email - MAIL_SERVER / MAIL_DEFAULT_SENDER not configured")
        return False

    app_name = current_app.config.get('APP_NAME', 'MediSafe')
    title = message['title']
    reminder_time = message.get('metadata', {}).get('time', '')

    try:
        msg = Message(title,
                      sender=current_app.config['MAIL_DEFAULT_SENDER'],
                      recipients=[email])

        msg.html = f'''
        <div style="font-family: 'Segoe UI', Tahoma, Geneva, Verdana, sans-serif; max-width: 600px; margin: auto; border: 1px solid #e0e0e0; border-radius: 12px; padding: 30px; background: #fff; color: #333;">
            <h2 style="color: #4a90e2; text-align: center;">{title}</h2>
            <p style="font-size: 16px; margin: 10px 0;"><strong>Hello {user_name},</strong></p>
            <div style="background: #f8f9fa; padding: 20px; border-radius: 8px; margin: 20px 0; border-left: 4px solid #4a90e2;">
                <p style="font-size: 16px; margin: 5px 0;">{message['body']}</p>
                <p style="font-size: 14px; margin: 5px 0; color: #666;">{message['instructions']}</p>
                <p style="font-size: 12px; margin: 5px 0; color: #999;">Time: {reminder_time}</p>
            </div>
            <hr style="margin: 30px 0; border: none; border-top: 1px solid #e0e0e0;">
            <p style="font-size: 12px; color: #999; text-align: center;">This is an automated reminder from {app_name}.</p>
        </div>
        '''

        msg.body = f"{title}\n\nHello {user_name},\n\n{message['body']}\n{message['instructions']}\n\nTime: {reminder_time}\n\n---\n{app_name}"

        _send(msg)
        logger.info(f"📧 Reminder email sent to {email}")
        return True

    except Exception as e:
        logger.error(f"❌ Error sending medication reminder email to {email}: {e}")
        return False


def send_alert_email(email, subject, text):
    """Plain-text alert (used for emergency contacts without a phone)."""
    if not _mail_configured():
        logger.warning("⚠️  Cannot send alert email - mail not configured")
        return False

    try:
        msg = Message(subject,
                      sender=current_app.config['MAIL_DEFAULT_SENDER'],
                      recipients=[email])
        msg.body = text
        _send(msg)
        return True
    except Exception as e:
        logger.error(f"❌ Error sending alert email to {email}: {e}")
        return False
