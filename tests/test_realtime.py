"""Tests for the Socket.IO hub: authentication, room isolation and relays."""

from __future__ import annotations

import pytest

from conftest import received
from realtime import PayloadError, RoomRegistry, parse_content, parse_id


def by_name(events, name):
    return [item['args'][0] for item in events if item['name'] == name]


# ---------------------------------------------------------------------------
# Payload helpers and registry
# ---------------------------------------------------------------------------


def test_parse_id():
    assert parse_id(42, 'userId') == 42
    assert parse_id('42', 'userId') == 42
    for bad in (None, True, 'abc', 0, -3, [1]):
        with pytest.raises(PayloadError):
            parse_id(bad, 'userId')


def test_parse_content():
    assert parse_content('  hi  ') == 'hi'
    for bad in ('', '   ', None, 12):
        with pytest.raises(PayloadError):
            parse_content(bad)


def test_registry_tracks_rooms_and_owners():
    registry = RoomRegistry()
    registry.register('sid-1', 1)
    registry.register('sid-2', 1)
    registry.join('sid-1', 'user-1')
    registry.join('sid-1', 'group-9')
    registry.join('sid-2', 'user-1')

    assert registry.members('user-1') == {'sid-1', 'sid-2'}
    assert registry.rooms_of('sid-1') == {'user-1', 'group-9'}

    registry.leave('sid-1', 'group-9')
    assert registry.members('group-9') == set()

    assert registry.leave_all('sid-1') == 1
    assert registry.is_online(1)
    assert registry.leave_all('sid-2') == 1
    assert not registry.is_online(1)
    assert registry.members('user-1') == set()


# ---------------------------------------------------------------------------
# Connection lifecycle
# ---------------------------------------------------------------------------


def test_anonymous_connection_is_refused(connect):
    assert not connect().is_connected()


def test_connection_marks_user_online_until_last_disconnect(store, users, connect):
    first = connect(users['alice'])
    second = connect(users['alice'])
    assert first.is_connected()
    assert store.get_user(users['alice'])['is_online'] == 1

    first.disconnect()
    assert store.get_user(users['alice'])['is_online'] == 1

    second.disconnect()
    assert store.get_user(users['alice'])['is_online'] == 0


# ---------------------------------------------------------------------------
# Rooms
# ---------------------------------------------------------------------------


def test_join_user_rejects_other_identities(app, users, connect):
    carol = connect(users['carol'])
    carol.emit('join-user', users['alice'])

    errors = received(carol, 'request-error')
    assert errors[0]['event'] == 'join-user'

    hub = app.extensions['studysync']['hub']
    assert hub.registry.members(f"user-{users['alice']}") == set()


def test_join_group_requires_membership(app, users, group, connect):
    alice = connect(users['alice'])
    carol = connect(users['carol'])

    alice.emit('join-group', group)
    carol.emit('join-group', group)

    assert received(alice, 'request-error') == []
    assert received(carol, 'request-error')[0]['error'] == 'not a member of this group'
    assert len(app.extensions['studysync']['hub'].registry.members(f'group-{group}')) == 1


# ---------------------------------------------------------------------------
# Private messages
# ---------------------------------------------------------------------------


def test_send_message_relays_to_receiver_and_acks_sender(store, users, connect):
    alice = connect(users['alice'])
    bob = connect(users['bob'])
    carol = connect(users['carol'])
    for client, name in ((alice, 'alice'), (bob, 'bob'), (carol, 'carol')):
        client.emit('join-user', users[name])

    alice.emit('send-message', {
        'senderId': users['alice'],
        'receiverId': users['bob'],
        'content': 'Library at 5?',
        'type': 'text',
    })

    delivered = received(bob, 'new-message')
    assert len(delivered) == 1
    assert delivered[0]['content'] == 'Library at 5?'
    assert delivered[0]['sender_id'] == users['alice']

    alice_events = alice.get_received()
    assert len(by_name(alice_events, 'message-sent')) == 1
    assert by_name(alice_events, 'new-message') == []
    assert carol.get_received() == []


def test_send_message_persists_before_emitting(store, users, connect, monkeypatch):
    def broken_save(*args, **kwargs):
        raise RuntimeError('database is locked')

    monkeypatch.setattr(store, 'save_message', broken_save)
    alice = connect(users['alice'])
    bob = connect(users['bob'])
    bob.emit('join-user', users['bob'])

    alice.emit('send-message', {'receiverId': users['bob'], 'content': 'hello'})

    assert bob.get_received() == []
    alice_events = alice.get_received()
    assert by_name(alice_events, 'message-sent') == []
    assert by_name(alice_events, 'request-error')[0]['event'] == 'send-message'


def test_send_message_with_forged_sender_is_rejected(store, users, connect):
    carol = connect(users['carol'])
    bob = connect(users['bob'])
    bob.emit('join-user', users['bob'])

    carol.emit('send-message', {'senderId': users['alice'], 'receiverId': users['bob'], 'content': 'hi'})

    assert bob.get_received() == []
    assert received(carol, 'request-error')[0]['event'] == 'send-message'


@pytest.mark.parametrize('payload', [
    'not a dict',
    {'content': 'missing receiver'},
    {'receiverId': 2, 'content': '   '},
    {'receiverId': 'bob', 'content': 'hi'},
])
def test_malformed_messages_are_rejected(users, connect, payload):
    alice = connect(users['alice'])

    alice.emit('send-message', payload)

    events = alice.get_received()
    assert by_name(events, 'message-sent') == []
    assert len(by_name(events, 'request-error')) == 1


# ---------------------------------------------------------------------------
# Group messages
# ---------------------------------------------------------------------------


def test_group_message_reaches_every_member_including_sender(users, group, connect):
    alice = connect(users['alice'])
    bob = connect(users['bob'])
    carol = connect(users['carol'])
    alice.emit('join-group', group)
    bob.emit('join-group', group)

    alice.emit('send-group-message', {'groupId': group, 'senderId': users['alice'], 'content': 'Quiz tomorrow'})

    for member in (alice, bob):
        messages = received(member, 'new-group-message')
        assert len(messages) == 1
        assert messages[0]['content'] == 'Quiz tomorrow'
        assert messages[0]['group_id'] == group
    assert received(carol, 'new-group-message') == []


def test_non_member_cannot_post_to_group(users, group, connect):
    alice = connect(users['alice'])
    carol = connect(users['carol'])
    alice.emit('join-group', group)

    carol.emit('send-group-message', {'groupId': group, 'content': 'let me in'})

    assert received(alice, 'new-group-message') == []
    assert received(carol, 'request-error')[0]['event'] == 'send-group-message'


def test_leave_group_stops_delivery(users, group, connect):
    alice = connect(users['alice'])
    bob = connect(users['bob'])
    alice.emit('join-group', group)
    bob.emit('join-group', group)
    bob.emit('leave-group', group)

    alice.emit('send-group-message', {'groupId': group, 'content': 'still here?'})

    assert received(bob, 'new-group-message') == []


# ---------------------------------------------------------------------------
# Typing and presence
# ---------------------------------------------------------------------------


def test_typing_goes_to_receiver_only(users, connect):
    alice = connect(users['alice'])
    bob = connect(users['bob'])
    alice.emit('join-user', users['alice'])
    bob.emit('join-user', users['bob'])

    alice.emit('typing', {'senderId': users['alice'], 'receiverId': users['bob']})

    assert received(bob, 'user-typing') == [{'senderId': users['alice']}]
    assert received(alice, 'user-typing') == []


def test_start_study_session_notifies_friends(users, connect):
    alice = connect(users['alice'])
    bob = connect(users['bob'])
    carol = connect(users['carol'])
    bob.emit('join-user', users['bob'])
    carol.emit('join-user', users['carol'])

    alice.emit('start-study-session', {'sessionId': 11, 'userId': users['alice'], 'subject': 'Math'})

    assert received(bob, 'friend-started-study') == [
        {'userId': users['alice'], 'sessionId': 11, 'subject': 'Math'}
    ]
    assert received(carol, 'friend-started-study') == []


def test_start_study_session_survives_store_failure(store, users, connect, monkeypatch):
    def broken_friends(user_id):
        raise RuntimeError('database is locked')

    monkeypatch.setattr(store, 'get_studying_friends', broken_friends)
    alice = connect(users['alice'])

    alice.emit('start-study-session', {'sessionId': 11, 'userId': users['alice']})

    assert received(alice, 'request-error')[0]['event'] == 'start-study-session'
