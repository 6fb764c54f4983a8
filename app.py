"""
StudySync - Study Coordination Server

Flask application wiring the study-session store, the Socket.IO real-time
hub, the session reminder pipeline and the periodic maintenance jobs.

Run with:
    python app.py
    flask --app app run-job session-reminders
"""

# ============================================
# IMPORTS
# ============================================
import atexit
import logging
import os
import sqlite3
from datetime import date, datetime, timedelta
from functools import wraps

import click
from flask import Blueprint, Flask, current_app, jsonify, make_response, request, session
from flask_mailman import Mail
from flask_socketio import SocketIO
from ics import Calendar, Event
from werkzeug.security import check_password_hash, generate_password_hash

from config import Config
from database import StudyStore
from jobs import StudyScheduler
from mailer import ReminderMailer
from realtime import RealtimeHub
from reminders import NotificationDispatcher, ReminderScheduler

logger = logging.getLogger(__name__)

api = Blueprint('api', __name__, url_prefix='/api')


# ============================================
# DECORATORS & UTILITY FUNCTIONS
# ============================================

def login_required(f):
    """Decorator to protect API routes that require authentication.

    Answers 401 with a JSON error for anonymous requests.
    """
    @wraps(f)
    def decorated_function(*args, **kwargs):
        if 'user_id' not in session:
            return jsonify({'error': 'Authentication required'}), 401
        return f(*args, **kwargs)
    return decorated_function


def get_store():
    return current_app.extensions['studysync']['store']


def public_user(user):
    return {
        'id': user['id'],
        'username': user['username'],
        'email': user['email'],
        'full_name': user['full_name'],
    }


def bad_request(message):
    return jsonify({'error': message}), 400


# ============================================
# AUTHENTICATION ROUTES
# ============================================

@api.route('/auth/register', methods=['POST'])
def register():
    """User registration with username, email, and password."""
    data = request.get_json(silent=True) or {}
    username = (data.get('username') or '').strip()
    email = (data.get('email') or '').strip()
    password = data.get('password') or ''

    if not username or not email or not password:
        return bad_request('username, email and password are required')

    try:
        user_id = get_store().create_user(username, email, generate_password_hash(password),
                                          data.get('full_name'))
    except sqlite3.IntegrityError:
        return jsonify({'error': 'Username or email already exists'}), 409

    logger.info('New account registered: %s', username)
    return jsonify({'id': user_id, 'username': username}), 201


@api.route('/auth/login', methods=['POST'])
def login():
    data = request.get_json(silent=True) or {}
    user = get_store().get_user_by_username(data.get('username') or '')

    if not user or not user['is_active'] or not check_password_hash(user['password_hash'], data.get('password') or ''):
        return jsonify({'error': 'Invalid username or password'}), 401

    session['user_id'] = user['id']
    session['username'] = user['username']
    return jsonify({'user': public_user(user)})


@api.route('/auth/logout', methods=['POST'])
def logout():
    """Clear session and log out user."""
    session.clear()
    return jsonify({'success': True})


@api.route('/auth/me')
@login_required
def me():
    user = get_store().get_user(session['user_id'])
    if not user:
        session.clear()
        return jsonify({'error': 'Authentication required'}), 401
    return jsonify({'user': public_user(user)})


# ============================================
# NOTIFICATION ROUTES
# ============================================

@api.route('/notifications')
@login_required
def get_notifications():
    """API endpoint to fetch user's recent notifications.

    Returns:
        JSON with list of up to 50 most recent notifications
    """
    notifications = get_store().get_notifications(session['user_id'])
    return jsonify({'notifications': notifications})


@api.route('/notifications/unread-count')
@login_required
def unread_count():
    """Get count of unread notifications"""
    return jsonify({'count': get_store().count_unread_notifications(session['user_id'])})


@api.route('/notifications/<int:notif_id>/read', methods=['POST'])
@login_required
def mark_notification_read(notif_id):
    """Mark a notification as read"""
    if not get_store().mark_notification_read(notif_id, session['user_id']):
        return jsonify({'error': 'Notification not found'}), 404
    return jsonify({'success': True})


@api.route('/notifications/mark-all-read', methods=['POST'])
@login_required
def mark_all_read():
    """Mark all notifications as read"""
    updated = get_store().mark_all_notifications_read(session['user_id'])
    return jsonify({'success': True, 'updated': updated})


# ============================================
# SCHEDULE ROUTES
# ============================================

@api.route('/schedule/create', methods=['POST'])
@login_required
def create_session():
    data = request.get_json(silent=True) or {}
    title = (data.get('title') or '').strip()
    if not title:
        return bad_request('title is required')

    try:
        scheduled_date = date.fromisoformat(data.get('scheduled_date') or '')
        start = datetime.strptime(data.get('start_time') or '', '%H:%M')
        end = datetime.strptime(data.get('end_time') or '', '%H:%M')
    except ValueError:
        return bad_request('scheduled_date must be YYYY-MM-DD and times HH:MM')
    if end <= start:
        return bad_request('end_time must be after start_time')

    study_session = get_store().create_study_session(
        session['user_id'], title, scheduled_date.isoformat(),
        start.strftime('%H:%M'), end.strftime('%H:%M'),
        subject=data.get('subject'),
        description=data.get('description'),
        location=data.get('location'),
    )
    return jsonify({'session': study_session}), 201


@api.route('/schedule/today')
@login_required
def today_sessions():
    sessions = get_store().get_sessions_for_day(session['user_id'], date.today())
    return jsonify({'sessions': sessions})


@api.route('/schedule/<int:session_id>/calendar.ics')
@login_required
def export_to_calendar(session_id):
    """Export a study session to an .ics calendar file"""
    study_session = get_store().get_study_session(session_id)
    if not study_session or study_session['user_id'] != session['user_id']:
        return jsonify({'error': 'Session not found'}), 404

    cal = Calendar()
    event = Event()
    event.name = study_session['title']
    event.begin = datetime.strptime(study_session['scheduled_for'], '%Y-%m-%d %H:%M')
    event.duration = timedelta(minutes=study_session['duration_minutes'] or 60)

    description_parts = []
    if study_session['subject']:
        description_parts.append(f"Subject: {study_session['subject']}")
    if study_session['description']:
        description_parts.append(study_session['description'])
    if study_session['location']:
        event.location = study_session['location']
    event.description = "\n".join(description_parts)

    cal.events.add(event)

    response = make_response(cal.serialize())
    response.headers['Content-Type'] = 'text/calendar; charset=utf-8'
    response.headers['Content-Disposition'] = f'attachment; filename="study_session_{session_id}.ics"'
    return response


# ============================================
# APPLICATION FACTORY
# ============================================

def configure_logging(app):
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(format='%(asctime)s %(levelname)s %(name)s: %(message)s')
    root.setLevel(app.config.get('LOG_LEVEL', 'INFO'))


def create_app(config_object=Config, store=None):
    app = Flask(__name__)
    app.config.from_object(config_object)
    configure_logging(app)

    store = store or StudyStore(
        app.config['DATABASE'],
        lookahead_hours=app.config.get('UPCOMING_SESSION_LOOKAHEAD_HOURS', 25),
        retention_days=app.config.get('NOTIFICATION_RETENTION_DAYS', 30),
    )

    # WebSocket: Initialize SocketIO for real-time features
    socketio = SocketIO(app, cors_allowed_origins=app.config['BASE_URL'],
                        async_mode=app.config.get('SOCKETIO_ASYNC_MODE'))
    Mail(app)

    dispatcher = NotificationDispatcher(
        store, socketio,
        email_sender=ReminderMailer(store),
        email_enabled=app.config.get('ENABLE_EMAIL_NOTIFICATIONS', False),
    )
    hub = RealtimeHub(socketio, store).register()
    reminder_scheduler = ReminderScheduler(store, dispatcher)
    scheduler = StudyScheduler(app, store, reminder_scheduler)

    app.extensions['studysync'] = {
        'store': store,
        'socketio': socketio,
        'hub': hub,
        'dispatcher': dispatcher,
        'reminders': reminder_scheduler,
        'scheduler': scheduler,
    }
    app.register_blueprint(api)

    @app.route('/health')
    def health():
        return jsonify({'status': 'ok', 'scheduler': scheduler.get_status()})

    @app.cli.command('init-db')
    def init_db_command():
        """Create the database tables."""
        store.init_db()
        click.echo(f'Initialized database at {store.database}')

    @app.cli.command('run-job')
    @click.argument('job_id', type=click.Choice(sorted(scheduler.jobs)))
    def run_job_command(job_id):
        """Run one background job immediately."""
        result = scheduler.run_job(job_id)
        click.echo(f'{job_id}: {result}')

    store.init_db()

    return app


def start_background_jobs(app):
    """Start the background scheduler for a serving process.

    CLI commands never call this. Under the debug reloader only the child
    process (WERKZEUG_RUN_MAIN=true) starts it, so a single process runs the
    reminder tick.

    Returns:
        True if the scheduler was started by this call
    """
    scheduler = app.extensions['studysync']['scheduler']
    if not app.config.get('SCHEDULER_ENABLED') or scheduler.is_running:
        return False
    if app.debug and os.environ.get('WERKZEUG_RUN_MAIN') != 'true':
        return False

    scheduler.start()
    # Shut down scheduler gracefully when app exits
    atexit.register(scheduler.shutdown)
    return True


if __name__ == '__main__':
    app = create_app()
    start_background_jobs(app)
    socketio = app.extensions['studysync']['socketio']
    logger.info('🚀 Server running at http://localhost:%s', app.config['PORT'])
    socketio.run(app, host='0.0.0.0', port=app.config['PORT'], allow_unsafe_werkzeug=True)
