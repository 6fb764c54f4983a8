"""Email delivery for session reminders (Flask-Mailman)."""

import logging

from flask import current_app
from flask_mailman import EmailMessage

logger = logging.getLogger(__name__)


class ReminderMailer:
    """Callable used by the NotificationDispatcher when email reminders are enabled.

    Must run inside an application context so Flask-Mailman can pick up the
    MAIL_* settings. Delivery errors are left to the caller.
    """

    def __init__(self, store):
        self.store = store

    def __call__(self, session, lead_time):
        user = self.store.get_user(session['user_id'])
        if not user or not user.get('email'):
            logger.info('No email address for user %s, skipping email reminder', session['user_id'])
            return False

        settings = self.store.get_user_settings(user['id'])
        if settings and not settings['email_notifications']:
            logger.info('User %s disabled email notifications', user['id'])
            return False

        name = user.get('full_name') or user['username']
        msg = EmailMessage(
            subject=f'Reminder: "{session["title"]}" starts in {lead_time}',
            body=(
                f'Hi {name},\n\n'
                f'Your study session "{session["title"]}" starts in {lead_time} '
                f'({session["scheduled_for"]}).\n\n'
                'Good luck!\nStudySync'
            ),
            from_email=current_app.config['MAIL_DEFAULT_SENDER'],
            to=[user['email']],
        )
        msg.send()
        logger.info('📧 Email reminder sent to user %s for session %s', user['id'], session['id'])
        return True
