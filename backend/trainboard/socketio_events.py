from flask import current_app, request
from flask_socketio import join_room, leave_room, emit

from trainboard.errors import TrainboardError
from trainboard.services.sessions import get_session
from trainboard.services.sync import ACTIVITIES, PARTICIPANTS, feed, room_for


def _get_sid() -> str:
    # request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _session_id(data):
    session_id = (data or {}).get('session_id')
    if session_id is None:
        emit('error', {'message': 'session_id is required'})
        return None
    try:
        return get_session(session_id).id
    except TrainboardError as exc:
        emit('error', {'message': exc.message})
        return None


def handle_connect():
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(*args):
    # Socket.IO drops the socket from its rooms; nothing else is held per socket
    current_app.logger.debug(f"[ws] disconnected sid={_get_sid()}")


def handle_subscribe_session(data):
    """Join the session's room and send both snapshots to this socket only.

    Joining a room twice is a no-op, so a client that re-subscribes never
    receives duplicate updates.
    """
    session_id = _session_id(data)
    if session_id is None:
        return
    room = room_for(session_id)
    join_room(room)
    emit('subscribed', {'room': room, 'session_id': session_id})
    emit(f'{PARTICIPANTS}_snapshot', {'session_id': session_id, PARTICIPANTS: feed.snapshot(session_id, PARTICIPANTS)})
    emit(f'{ACTIVITIES}_snapshot', {'session_id': session_id, ACTIVITIES: feed.snapshot(session_id, ACTIVITIES)})


def handle_unsubscribe_session(data):
    session_id = (data or {}).get('session_id')
    if session_id is None:
        emit('error', {'message': 'session_id is required'})
        return
    try:
        room = room_for(session_id)
    except (TypeError, ValueError):
        emit('error', {'message': 'session_id must be a number'})
        return
    leave_room(room)
    emit('unsubscribed', {'room': room})


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    from trainboard import socketio

    namespaces = ['/ws', '/'] if testing else ['/ws']
    for namespace in namespaces:
        socketio.on_event('connect', handle_connect, namespace=namespace)
        socketio.on_event('disconnect', handle_disconnect, namespace=namespace)
        socketio.on_event('subscribe_session', handle_subscribe_session, namespace=namespace)
        socketio.on_event('unsubscribe_session', handle_unsubscribe_session, namespace=namespace)
        socketio.on_event('ping', handle_ping, namespace=namespace)
