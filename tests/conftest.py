"""Shared fixtures: a throwaway database, the app, users and Socket.IO clients."""

from __future__ import annotations

import pytest
from werkzeug.security import generate_password_hash

from app import create_app
from config import Config


class TestingConfig(Config):
    TESTING = True
    SECRET_KEY = 'test-secret'
    SCHEDULER_ENABLED = False
    ENABLE_EMAIL_NOTIFICATIONS = False
    MAIL_BACKEND = 'locmem'
    MAIL_DEFAULT_SENDER = 'reminders@studysync.test'
    SOCKETIO_ASYNC_MODE = 'threading'
    LOG_LEVEL = 'DEBUG'


@pytest.fixture
def config_class(tmp_path):
    class _Config(TestingConfig):
        DATABASE = str(tmp_path / 'studysync-test.db')
    return _Config


@pytest.fixture
def app(config_class):
    return create_app(config_class)


@pytest.fixture
def store(app):
    return app.extensions['studysync']['store']


@pytest.fixture
def socketio(app):
    return app.extensions['studysync']['socketio']


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def users(store):
    """Three accounts: alice and bob are friends, carol is a stranger."""
    ids = {}
    for name in ('alice', 'bob', 'carol'):
        ids[name] = store.create_user(name, f'{name}@example.com',
                                      generate_password_hash('secret'), name.title())
    conn = store.connect()
    conn.execute("INSERT INTO friendships (user_id1, user_id2, status) VALUES (?, ?, 'accepted')",
                 (ids['alice'], ids['bob']))
    conn.commit()
    conn.close()
    return ids


@pytest.fixture
def group(store, users):
    """A study group with alice and bob as members."""
    conn = store.connect()
    cursor = conn.execute("INSERT INTO study_groups (name, creator_id) VALUES ('Calculus', ?)",
                          (users['alice'],))
    group_id = cursor.lastrowid
    conn.execute("INSERT INTO group_members (group_id, user_id, role) VALUES (?, ?, 'creator')",
                 (group_id, users['alice']))
    conn.execute("INSERT INTO group_members (group_id, user_id) VALUES (?, ?)",
                 (group_id, users['bob']))
    conn.commit()
    conn.close()
    return group_id


def login(http_client, user_id):
    with http_client.session_transaction() as sess:
        sess['user_id'] = user_id


@pytest.fixture
def connect(app, socketio):
    """Open a Socket.IO test connection, authenticated as ``user_id`` when given."""
    opened = []

    def _connect(user_id=None):
        http_client = app.test_client()
        if user_id is not None:
            login(http_client, user_id)
        sio_client = socketio.test_client(app, flask_test_client=http_client)
        opened.append(sio_client)
        return sio_client

    yield _connect

    for sio_client in opened:
        if sio_client.is_connected():
            sio_client.disconnect()


def received(sio_client, event):
    """Payloads (first argument) of every ``event`` received since the last call."""
    return [item['args'][0] for item in sio_client.get_received() if item['name'] == event]
