"""
Real-time hub.

Socket.IO relay for private chat, group chat, typing indicators and study
presence. Every connection carries the identity of the logged-in user (taken
from the Flask session cookie at handshake) and may only subscribe to its own
user room and to rooms of groups it belongs to.
"""

import logging
import threading

from flask import request, session
from flask_socketio import emit, join_room, leave_room

from reminders import group_room, user_room

logger = logging.getLogger(__name__)


class PayloadError(ValueError):
    """Raised when a client event carries missing or invalid data."""


def parse_id(value, field):
    if isinstance(value, bool) or value is None:
        raise PayloadError(f'{field} is required')
    try:
        parsed = int(value)
    except (TypeError, ValueError):
        raise PayloadError(f'{field} must be an integer')
    if parsed <= 0:
        raise PayloadError(f'{field} must be positive')
    return parsed


def parse_content(value):
    if not isinstance(value, str) or not value.strip():
        raise PayloadError('content must be a non-empty string')
    return value.strip()


def require_dict(data):
    if not isinstance(data, dict):
        raise PayloadError('payload must be an object')
    return data


class RoomRegistry:
    """Which connection is in which room, and which user owns each connection.

    Lives only in memory: clients rebuild their memberships by joining again
    after a reconnect.
    """

    def __init__(self):
        self._rooms = {}   # {room: {sid, ...}}
        self._users = {}   # {sid: user_id}
        self._lock = threading.Lock()

    def register(self, sid, user_id):
        with self._lock:
            self._users[sid] = user_id

    def user_of(self, sid):
        with self._lock:
            return self._users.get(sid)

    def join(self, sid, room):
        with self._lock:
            self._rooms.setdefault(room, set()).add(sid)

    def leave(self, sid, room):
        with self._lock:
            members = self._rooms.get(room)
            if members is None:
                return
            members.discard(sid)
            if not members:
                del self._rooms[room]

    def leave_all(self, sid):
        """Forget a connection entirely. Returns the user it belonged to."""
        with self._lock:
            for room in list(self._rooms):
                self._rooms[room].discard(sid)
                if not self._rooms[room]:
                    del self._rooms[room]
            return self._users.pop(sid, None)

    def members(self, room):
        with self._lock:
            return set(self._rooms.get(room, ()))

    def rooms_of(self, sid):
        with self._lock:
            return {room for room, members in self._rooms.items() if sid in members}

    def connections_of(self, user_id):
        with self._lock:
            return [sid for sid, owner in self._users.items() if owner == user_id]

    def is_online(self, user_id):
        return bool(self.connections_of(user_id))


class RealtimeHub:
    """Registers the chat/presence event handlers on a Flask-SocketIO server."""

    def __init__(self, socketio, store, registry=None):
        self.socketio = socketio
        self.store = store
        self.registry = registry or RoomRegistry()

    def register(self):
        handlers = {
            'connect': self.on_connect,
            'disconnect': self.on_disconnect,
            'join-user': self.on_join_user,
            'join-group': self.on_join_group,
            'leave-group': self.on_leave_group,
            'send-message': self.on_send_message,
            'send-group-message': self.on_send_group_message,
            'start-study-session': self.on_start_study_session,
            'typing': self.on_typing,
        }
        for event, handler in handlers.items():
            self.socketio.on_event(event, handler)
        return self

    # ============================================
    # HELPERS
    # ============================================

    def _identity(self):
        return self.registry.user_of(request.sid)

    def _reject(self, event, error):
        logger.warning('Rejected %s from %s: %s', event, request.sid, error)
        emit('request-error', {'event': event, 'error': str(error)})

    def _check_sender(self, data, field='senderId'):
        """The claimed sender (if any) must be the authenticated user."""
        user_id = self._identity()
        claimed = data.get(field)
        if claimed is not None and parse_id(claimed, field) != user_id:
            raise PayloadError(f'{field} does not match the authenticated user')
        return user_id

    # ============================================
    # CONNECTION LIFECYCLE
    # ============================================

    def on_connect(self, auth=None):
        """Bind the connection to the logged-in user; refuse anonymous clients"""
        user_id = session.get('user_id')
        if not user_id:
            logger.info('🔌 Refused unauthenticated connection %s', request.sid)
            return False

        self.registry.register(request.sid, user_id)
        try:
            self.store.set_user_online(user_id, True)
        except Exception:
            logger.exception('Error marking user %s online', user_id)
        logger.info('🔌 New client connected: %s (user %s)', request.sid, user_id)

    def on_disconnect(self, reason=None):
        """Drop the connection's rooms and mark the user offline if it was their last"""
        user_id = self.registry.leave_all(request.sid)
        logger.info('🔌 Client disconnected: %s', request.sid)
        if user_id is None or self.registry.is_online(user_id):
            return
        try:
            self.store.set_user_online(user_id, False)
        except Exception:
            logger.exception('Error marking user %s offline', user_id)

    # ============================================
    # ROOMS
    # ============================================

    def on_join_user(self, user_id=None):
        """Join the personal room of the authenticated user.

        Args:
            user_id: must equal the connection's own user id
        """
        try:
            requested = parse_id(user_id, 'userId')
            if requested != self._identity():
                raise PayloadError('cannot join another user\'s room')
        except PayloadError as e:
            self._reject('join-user', e)
            return

        room = user_room(requested)
        join_room(room)
        self.registry.join(request.sid, room)
        logger.info('User %s joined their room', requested)

    def on_join_group(self, group_id=None):
        """Join a group chat room. Only members may join."""
        try:
            group_id = parse_id(group_id, 'groupId')
        except PayloadError as e:
            self._reject('join-group', e)
            return

        try:
            is_member = self.store.is_group_member(group_id, self._identity())
        except Exception:
            logger.exception('Error checking membership of group %s', group_id)
            self._reject('join-group', 'group membership could not be verified')
            return
        if not is_member:
            self._reject('join-group', 'not a member of this group')
            return

        room = group_room(group_id)
        join_room(room)
        self.registry.join(request.sid, room)
        logger.info('Socket %s joined group %s', request.sid, group_id)

    def on_leave_group(self, group_id=None):
        """Leave a group chat room"""
        try:
            group_id = parse_id(group_id, 'groupId')
        except PayloadError as e:
            self._reject('leave-group', e)
            return

        room = group_room(group_id)
        leave_room(room)
        self.registry.leave(request.sid, room)

    # ============================================
    # MESSAGING
    # ============================================

    def on_send_message(self, data=None):
        """Save a private message, relay it to the receiver and acknowledge the sender.

        Args:
            data: {receiverId, content, type?, senderId?}
        """
        try:
            data = require_dict(data)
            sender_id = self._check_sender(data)
            receiver_id = parse_id(data.get('receiverId'), 'receiverId')
            content = parse_content(data.get('content'))
        except PayloadError as e:
            self._reject('send-message', e)
            return

        try:
            message = self.store.save_message(sender_id, receiver_id, content, data.get('type') or 'text')
        except Exception:
            logger.exception('Error saving message from user %s', sender_id)
            self._reject('send-message', 'message could not be saved')
            return

        self.socketio.emit('new-message', message, room=user_room(receiver_id))
        emit('message-sent', message)

    def on_send_group_message(self, data=None):
        """Save a group message and relay it to everyone in the group room.

        Args:
            data: {groupId, content, senderId?}
        """
        try:
            data = require_dict(data)
            sender_id = self._check_sender(data)
            group_id = parse_id(data.get('groupId'), 'groupId')
            content = parse_content(data.get('content'))
        except PayloadError as e:
            self._reject('send-group-message', e)
            return

        try:
            if not self.store.is_group_member(group_id, sender_id):
                self._reject('send-group-message', 'not a member of this group')
                return
            message = self.store.save_group_message(group_id, sender_id, content)
        except Exception:
            logger.exception('Error saving group message for group %s', group_id)
            self._reject('send-group-message', 'message could not be saved')
            return

        self.socketio.emit('new-group-message', message, room=group_room(group_id))

    def on_typing(self, data=None):
        """Tell the receiver that the sender is typing"""
        try:
            data = require_dict(data)
            sender_id = self._check_sender(data)
            receiver_id = parse_id(data.get('receiverId'), 'receiverId')
        except PayloadError as e:
            self._reject('typing', e)
            return

        self.socketio.emit('user-typing', {'senderId': sender_id},
                           room=user_room(receiver_id), include_self=False)

    # ============================================
    # PRESENCE
    # ============================================

    def on_start_study_session(self, data=None):
        """Tell the user's friends that a study session has started.

        Args:
            data: {sessionId, subject?, userId?}
        """
        try:
            data = require_dict(data)
            user_id = self._check_sender(data, 'userId')
            session_id = parse_id(data.get('sessionId'), 'sessionId')
        except PayloadError as e:
            self._reject('start-study-session', e)
            return

        try:
            friends = self.store.get_studying_friends(user_id)
        except Exception:
            logger.exception('Error loading friends of user %s', user_id)
            self._reject('start-study-session', 'friends could not be notified')
            return

        payload = {'userId': user_id, 'sessionId': session_id, 'subject': data.get('subject')}
        for friend in friends:
            self.socketio.emit('friend-started-study', payload, room=user_room(friend['id']))
        logger.info('User %s started session %s, notified %d friends', user_id, session_id, len(friends))
