"""
StudySync persistence layer.

Thin wrapper around the SQLite database described by schema.sql. Every
operation opens its own connection (safe to call from the scheduler's
worker threads and from Socket.IO handlers alike) and returns plain dicts.
"""

import logging
import os
import sqlite3
from datetime import date, datetime, timedelta

logger = logging.getLogger(__name__)

SCHEMA_PATH = os.path.join(os.path.dirname(os.path.abspath(__file__)), 'schema.sql')
TIMESTAMP_FORMAT = '%Y-%m-%d %H:%M:%S'


def format_timestamp(value):
    return value.strftime(TIMESTAMP_FORMAT)


def calculate_streaks(study_dates, today):
    """Compute (current, longest) streaks from a collection of study days.

    The current streak only counts if the most recent study day is today or
    yesterday; a gap of more than one day resets it to zero.
    """
    days = sorted(set(study_dates))
    if not days:
        return 0, 0

    longest = run = 1
    for previous, current in zip(days, days[1:]):
        if (current - previous).days == 1:
            run += 1
        else:
            run = 1
        longest = max(longest, run)

    current_streak = 0
    if (today - days[-1]).days <= 1:
        expected = days[-1]
        for day in reversed(days):
            if day != expected:
                break
            current_streak += 1
            expected -= timedelta(days=1)

    return current_streak, longest


class StudyStore:
    """SQLite-backed store used by the reminder jobs, the hub and the API."""

    def __init__(self, database, lookahead_hours=25, retention_days=30):
        self.database = database
        self.lookahead_hours = lookahead_hours
        self.retention_days = retention_days

    def connect(self):
        """Get database connection with Row factory for dict-like access."""
        conn = sqlite3.connect(self.database)
        conn.row_factory = sqlite3.Row
        conn.execute('PRAGMA foreign_keys = ON')
        return conn

    def init_db(self):
        """Create every table and index from schema.sql (idempotent)."""
        conn = self.connect()
        try:
            with open(SCHEMA_PATH, 'r') as f:
                conn.executescript(f.read())
            conn.commit()
        finally:
            conn.close()
        logger.info('✅ Database initialized at %s', self.database)

    def _fetch_one(self, query, params=()):
        conn = self.connect()
        try:
            row = conn.execute(query, params).fetchone()
        finally:
            conn.close()
        return dict(row) if row else None

    def _fetch_all(self, query, params=()):
        conn = self.connect()
        try:
            rows = conn.execute(query, params).fetchall()
        finally:
            conn.close()
        return [dict(row) for row in rows]

    def _insert(self, query, params, table):
        conn = self.connect()
        try:
            cursor = conn.execute(query, params)
            row_id = cursor.lastrowid
            conn.commit()
            row = conn.execute(f'SELECT * FROM {table} WHERE id = ?', (row_id,)).fetchone()
        finally:
            conn.close()
        return dict(row)

    # ============================================
    # USERS
    # ============================================

    def create_user(self, username, email, password_hash, full_name=None):
        """Insert a user and their default settings row.

        Raises:
            sqlite3.IntegrityError: username or email already taken
        """
        conn = self.connect()
        try:
            cursor = conn.execute(
                'INSERT INTO users (username, email, password_hash, full_name) VALUES (?, ?, ?, ?)',
                (username, email, password_hash, full_name)
            )
            user_id = cursor.lastrowid
            conn.execute('INSERT INTO user_settings (user_id) VALUES (?)', (user_id,))
            conn.commit()
        finally:
            conn.close()
        return user_id

    def get_user(self, user_id):
        """Get a user row by id, or None"""
        return self._fetch_one('SELECT * FROM users WHERE id = ?', (user_id,))

    def get_user_by_username(self, username):
        """Get a user row by username (used by login), or None"""
        return self._fetch_one('SELECT * FROM users WHERE username = ?', (username,))

    def get_user_settings(self, user_id):
        """Get the notification preferences row for a user"""
        return self._fetch_one('SELECT * FROM user_settings WHERE user_id = ?', (user_id,))

    def set_user_online(self, user_id, online, now=None):
        """Update the presence flag and last_seen timestamp"""
        now = now or datetime.now()
        conn = self.connect()
        try:
            conn.execute(
                'UPDATE users SET is_online = ?, last_seen = ? WHERE id = ?',
                (1 if online else 0, format_timestamp(now), user_id)
            )
            conn.commit()
        finally:
            conn.close()

    def get_studying_friends(self, user_id):
        """Active users with an accepted friendship to ``user_id`` (either direction)."""
        return self._fetch_all('''
            SELECT u.id, u.username, u.full_name, u.is_online
            FROM friendships f
            JOIN users u
              ON u.id = CASE WHEN f.user_id1 = ? THEN f.user_id2 ELSE f.user_id1 END
            WHERE (f.user_id1 = ? OR f.user_id2 = ?)
              AND f.status = 'accepted'
              AND u.is_active = 1
            ORDER BY u.id
        ''', (user_id, user_id, user_id))

    def is_group_member(self, group_id, user_id):
        """Check whether a user belongs to a study group"""
        row = self._fetch_one(
            'SELECT 1 AS member FROM group_members WHERE group_id = ? AND user_id = ?',
            (group_id, user_id)
        )
        return row is not None

    # ============================================
    # STUDY SESSIONS
    # ============================================

    def create_study_session(self, user_id, title, scheduled_date, start_time, end_time,
                             subject=None, description=None, location=None, status='planned'):
        """Schedule a study session.

        Args:
            scheduled_date: ISO date string (YYYY-MM-DD)
            start_time: HH:MM
            end_time: HH:MM, used to derive duration_minutes

        Returns:
            The stored session row
        """
        start = datetime.strptime(start_time, '%H:%M')
        end = datetime.strptime(end_time, '%H:%M')
        duration_minutes = int((end - start).total_seconds() // 60)
        return self._insert('''
            INSERT INTO study_sessions
                (user_id, title, subject, description, scheduled_date, start_time, end_time,
                 duration_minutes, status, location)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
        ''', (user_id, title, subject, description, scheduled_date, start_time, end_time,
              duration_minutes, status, location), 'study_sessions')

    def get_study_session(self, session_id):
        """Get a session with its combined scheduled_for timestamp"""
        return self._fetch_one('''
            SELECT *, scheduled_date || ' ' || start_time AS scheduled_for
            FROM study_sessions WHERE id = ?
        ''', (session_id,))

    def get_sessions_for_day(self, user_id, day):
        """All of a user's sessions on ``day``, ordered by start time"""
        return self._fetch_all('''
            SELECT *, scheduled_date || ' ' || start_time AS scheduled_for
            FROM study_sessions
            WHERE user_id = ? AND scheduled_date = ?
            ORDER BY start_time
        ''', (user_id, day.isoformat()))

    def get_upcoming_sessions(self, now=None):
        """Planned sessions starting after ``now`` and within the lookahead window."""
        now = now or datetime.now()
        horizon = now + timedelta(hours=self.lookahead_hours)
        return self._fetch_all('''
            SELECT id, user_id, title, subject, status,
                   scheduled_date || ' ' || start_time AS scheduled_for
            FROM study_sessions
            WHERE status = 'planned'
              AND datetime(scheduled_date || ' ' || start_time) > datetime(?)
              AND datetime(scheduled_date || ' ' || start_time) <= datetime(?)
            ORDER BY scheduled_date, start_time
        ''', (format_timestamp(now), format_timestamp(horizon)))

    def reminder_already_sent(self, session_id, threshold):
        """Check whether the (session, threshold) reminder was already recorded"""
        row = self._fetch_one(
            'SELECT id FROM reminders_sent WHERE session_id = ? AND threshold = ?',
            (session_id, threshold)
        )
        return row is not None

    def mark_reminder_sent(self, session_id, threshold, now=None):
        """Record a reminder as sent. Recording the same pair twice is a no-op."""
        now = now or datetime.now()
        conn = self.connect()
        try:
            conn.execute(
                'INSERT OR IGNORE INTO reminders_sent (session_id, threshold, sent_at) VALUES (?, ?, ?)',
                (session_id, threshold, format_timestamp(now))
            )
            conn.commit()
        finally:
            conn.close()

    # ============================================
    # MESSAGING
    # ============================================

    def save_message(self, sender_id, receiver_id, content, message_type='text'):
        """Persist a private message.

        Returns:
            The stored message row, including id and created_at
        """
        return self._insert('''
            INSERT INTO messages (sender_id, receiver_id, content, message_type, created_at)
            VALUES (?, ?, ?, ?, ?)
        ''', (sender_id, receiver_id, content, message_type or 'text',
              format_timestamp(datetime.now())), 'messages')

    def save_group_message(self, group_id, sender_id, content):
        """Persist a group chat message and return the stored row"""
        return self._insert('''
            INSERT INTO group_messages (group_id, sender_id, content, created_at)
            VALUES (?, ?, ?, ?)
        ''', (group_id, sender_id, content, format_timestamp(datetime.now())), 'group_messages')

    # ============================================
    # NOTIFICATIONS
    # ============================================

    def create_notification(self, fields):
        """Persist a notification.

        Args:
            fields: dict with user_id, type, title, message and optionally
                related_id / related_type

        Returns:
            The stored notification row
        """
        return self._insert('''
            INSERT INTO notifications (user_id, type, title, message, related_id, related_type, created_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
        ''', (fields['user_id'], fields['type'], fields['title'], fields['message'],
              fields.get('related_id'), fields.get('related_type'),
              format_timestamp(datetime.now())), 'notifications')

    def get_notifications(self, user_id, limit=50):
        """Newest non-archived notifications for a user"""
        return self._fetch_all('''
            SELECT * FROM notifications
            WHERE user_id = ? AND is_archived = 0
            ORDER BY created_at DESC, id DESC
            LIMIT ?
        ''', (user_id, limit))

    def count_unread_notifications(self, user_id):
        """Number of unread notifications for a user"""
        row = self._fetch_one(
            'SELECT COUNT(*) AS count FROM notifications WHERE user_id = ? AND is_read = 0',
            (user_id,)
        )
        return row['count']

    def mark_notification_read(self, notification_id, user_id):
        """Mark one of the user's notifications as read.

        Returns:
            False if the notification does not exist or belongs to someone else
        """
        conn = self.connect()
        try:
            cursor = conn.execute(
                'UPDATE notifications SET is_read = 1, read_at = ? WHERE id = ? AND user_id = ?',
                (format_timestamp(datetime.now()), notification_id, user_id)
            )
            changed = cursor.rowcount
            conn.commit()
        finally:
            conn.close()
        return changed > 0

    def mark_all_notifications_read(self, user_id):
        """Mark every unread notification of a user as read.

        Returns:
            Number of notifications updated
        """
        conn = self.connect()
        try:
            cursor = conn.execute(
                'UPDATE notifications SET is_read = 1, read_at = ? WHERE user_id = ? AND is_read = 0',
                (format_timestamp(datetime.now()), user_id)
            )
            changed = cursor.rowcount
            conn.commit()
        finally:
            conn.close()
        return changed

    def cleanup_old_notifications(self, now=None):
        """Delete read or archived notifications older than the retention period."""
        now = now or datetime.now()
        cutoff = now - timedelta(days=self.retention_days)
        conn = self.connect()
        try:
            cursor = conn.execute('''
                DELETE FROM notifications
                WHERE (is_read = 1 OR is_archived = 1) AND created_at < ?
            ''', (format_timestamp(cutoff),))
            changed = cursor.rowcount
            conn.commit()
        finally:
            conn.close()
        return changed

    # ============================================
    # ANALYTICS
    # ============================================

    def generate_daily_reports(self, day=None):
        """Aggregate each user's completed sessions for ``day`` into daily_logs."""
        day = day or date.today()
        conn = self.connect()
        try:
            rows = conn.execute('''
                SELECT user_id,
                       SUM(COALESCE(duration_minutes,
                           (strftime('%s', end_time) - strftime('%s', start_time)) / 60)) AS total_minutes,
                       COUNT(*) AS sessions_completed,
                       GROUP_CONCAT(DISTINCT subject) AS subjects_studied
                FROM study_sessions
                WHERE status = 'completed' AND scheduled_date = ?
                GROUP BY user_id
            ''', (day.isoformat(),)).fetchall()

            for row in rows:
                conn.execute('''
                    INSERT INTO daily_logs (user_id, log_date, total_minutes, sessions_completed, subjects_studied)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id, log_date) DO UPDATE SET
                        total_minutes = excluded.total_minutes,
                        sessions_completed = excluded.sessions_completed,
                        subjects_studied = excluded.subjects_studied
                ''', (row['user_id'], day.isoformat(), row['total_minutes'] or 0,
                      row['sessions_completed'], row['subjects_studied']))
            conn.commit()
        finally:
            conn.close()
        return len(rows)

    def update_all_streaks(self, today=None):
        """Recompute current/longest study streaks for every user from daily_logs."""
        today = today or date.today()
        conn = self.connect()
        try:
            users = conn.execute('SELECT id FROM users').fetchall()
            for user in users:
                logged = conn.execute('''
                    SELECT log_date FROM daily_logs
                    WHERE user_id = ? AND (total_minutes > 0 OR sessions_completed > 0)
                ''', (user['id'],)).fetchall()
                study_dates = [date.fromisoformat(row['log_date']) for row in logged]
                current_streak, longest_streak = calculate_streaks(study_dates, today)
                last_study_date = max(study_dates).isoformat() if study_dates else None

                conn.execute('''
                    INSERT INTO study_streaks (user_id, current_streak, longest_streak, last_study_date, updated_at)
                    VALUES (?, ?, ?, ?, ?)
                    ON CONFLICT(user_id) DO UPDATE SET
                        current_streak = excluded.current_streak,
                        longest_streak = MAX(study_streaks.longest_streak, excluded.longest_streak),
                        last_study_date = excluded.last_study_date,
                        updated_at = excluded.updated_at
                ''', (user['id'], current_streak, longest_streak, last_study_date,
                      format_timestamp(datetime.now())))
            conn.commit()
        finally:
            conn.close()
        return len(users)

    def get_streak(self, user_id):
        """Get the study_streaks row for a user, or None"""
        return self._fetch_one('SELECT * FROM study_streaks WHERE user_id = ?', (user_id,))
