"""
Session reminders.

The ReminderScheduler runs once a minute (see jobs.StudyScheduler). Each tick
it looks at upcoming study sessions, works out how long until each one
starts, and hands sessions that just crossed a lead time (15 minutes, 1 hour,
1 day) to the NotificationDispatcher, which stores a notification, optionally
emails the owner and pushes a ``reminder`` event to the owner's room.
"""

import logging
from datetime import datetime, timedelta

logger = logging.getLogger(__name__)

REMINDER_TITLE = 'Upcoming Study Session'
REMINDER_TYPE = 'session_reminder'

# (label, lower bound exclusive, upper bound inclusive)
REMINDER_THRESHOLDS = (
    ('15 minutes', timedelta(minutes=14), timedelta(minutes=15)),
    ('1 hour', timedelta(minutes=59), timedelta(minutes=60)),
    ('1 day', timedelta(hours=23.9), timedelta(hours=24)),
)


def user_room(user_id):
    return f'user-{user_id}'


def group_room(group_id):
    return f'group-{group_id}'


def classify(time_until):
    """Return the lead-time labels whose window contains ``time_until``.

    Args:
        time_until: timedelta between now and the session start

    Returns:
        List of labels, usually empty or a single entry
    """
    return [label for label, lower, upper in REMINDER_THRESHOLDS
            if lower < time_until <= upper]


def parse_session_start(value):
    """Parse a stored start timestamp ('YYYY-MM-DD HH:MM[:SS]' or ISO 'T' form)."""
    if isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value.replace('T', ' '))


class NotificationDispatcher:
    """Deliver one session reminder through every available channel.

    Persistence comes first. Email (when enabled) and the real-time push are
    attempted regardless of whether the earlier steps failed.
    """

    def __init__(self, store, socketio, email_sender=None, email_enabled=False):
        self.store = store
        self.socketio = socketio
        self.email_sender = email_sender
        self.email_enabled = email_enabled

    def dispatch(self, session, lead_time):
        """Send one reminder.

        Returns:
            The stored notification, or None if it could not be stored
        """
        notification = None
        try:
            notification = self.store.create_notification({
                'user_id': session['user_id'],
                'type': REMINDER_TYPE,
                'title': REMINDER_TITLE,
                'message': f'Your study session "{session["title"]}" starts in {lead_time}',
                'related_id': session['id'],
                'related_type': 'study_session',
            })
        except Exception:
            logger.exception('Error storing reminder notification for session %s', session.get('id'))

        if self.email_enabled and self.email_sender is not None:
            try:
                self.email_sender(session, lead_time)
            except Exception:
                logger.exception('Error emailing reminder for session %s', session.get('id'))

        try:
            self.socketio.emit('reminder', {
                'title': REMINDER_TITLE,
                'message': f'"{session["title"]}" starts in {lead_time}',
                'sessionId': session['id'],
            }, room=user_room(session['user_id']))
        except Exception:
            logger.exception('Error emitting reminder for session %s', session.get('id'))

        if notification is None:
            logger.warning('Reminder for session %s (%s) was not stored', session.get('id'), lead_time)
        else:
            logger.info('⏰ Reminder sent for session %s (%s)', session.get('id'), lead_time)
        return notification


class ReminderScheduler:
    """Scan upcoming sessions and dispatch reminders whose threshold was just crossed.

    A (session, lead time) pair whose notification was stored is recorded
    and never dispatched again, so a slower or irregular cadence cannot
    produce duplicates. A pair whose notification could not be stored is
    left unrecorded and retried on later ticks inside the same window.
    """

    def __init__(self, store, dispatcher, clock=datetime.now):
        self.store = store
        self.dispatcher = dispatcher
        self.clock = clock

    def tick(self):
        """Run one scan. Never raises; returns the (session id, label) pairs dispatched."""
        sent = []
        try:
            now = self.clock()
            for session in self.store.get_upcoming_sessions(now):
                try:
                    starts_at = parse_session_start(session['scheduled_for'])
                except (TypeError, ValueError, AttributeError):
                    logger.warning('Skipping session %s with unreadable start time %r',
                                   session.get('id'), session.get('scheduled_for'))
                    continue

                for lead_time in classify(starts_at - now):
                    if self.store.reminder_already_sent(session['id'], lead_time):
                        continue
                    if self.dispatcher.dispatch(session, lead_time) is None:
                        # not recorded; retried on the next tick inside the window
                        continue
                    self.store.mark_reminder_sent(session['id'], lead_time, now)
                    sent.append((session['id'], lead_time))
        except Exception:
            logger.exception('Error in reminder job')
        return sent
