from flask import current_app, request
from flask_socketio import join_room, leave_room, emit
from typing import Dict, Set

from weatherguessr.services.multiplayer.realtime import (
    NAMESPACE,
    STATE_EVENT,
    game_topic,
    hub,
    table_topic,
)

SUBSCRIBABLE_TABLES = ('online_players', 'game_invitations', 'multiplayer_games')

# sid -> topics joined, so disconnects can be logged and cleaned up
_sid_topics: Dict[str, Set[str]] = {}


def _get_sid() -> str:
    # type: ignore: request.sid exists in Socket.IO context
    return request.sid  # type: ignore


def _join(topic: str) -> None:
    join_room(topic)
    _sid_topics.setdefault(_get_sid(), set()).add(topic)


def _leave(topic: str) -> None:
    leave_room(topic)
    _sid_topics.get(_get_sid(), set()).discard(topic)


def handle_connect(auth=None):
    emit('connected', {'message': 'Connected to /ws'})


def handle_disconnect(reason=None):
    topics = _sid_topics.pop(_get_sid(), None)
    if topics:
        current_app.logger.info(f"[ws-disconnect] sid={_get_sid()} topics={sorted(topics)}")


def handle_subscribe(data):
    table = (data or {}).get('table')
    if table not in SUBSCRIBABLE_TABLES:
        emit('error', {'message': f'unknown table: {table}'})
        return
    topic = table_topic(table)
    _join(topic)
    emit('subscribed', {'topic': topic})


def handle_unsubscribe(data):
    table = (data or {}).get('table')
    if table not in SUBSCRIBABLE_TABLES:
        emit('error', {'message': f'unknown table: {table}'})
        return
    topic = table_topic(table)
    _leave(topic)
    emit('unsubscribed', {'topic': topic})


def handle_join_game(data):
    game_id = (data or {}).get('game_id')
    if game_id in (None, ''):
        emit('error', {'message': 'game_id is required'})
        return
    room = game_topic(game_id)
    _join(room)
    emit('joined', {'room': room})


def handle_leave_game(data):
    game_id = (data or {}).get('game_id')
    if game_id in (None, ''):
        emit('error', {'message': 'game_id is required'})
        return
    room = game_topic(game_id)
    _leave(room)
    emit('left', {'room': room})


def handle_broadcast(data):
    """Relay a peer's message to everyone else on the game channel."""
    data = data or {}
    game_id = data.get('game_id')
    event = data.get('event') or STATE_EVENT
    payload = data.get('payload')
    if game_id in (None, '') or not isinstance(payload, dict):
        emit('error', {'message': 'game_id and payload are required'})
        return
    hub.publish(game_topic(game_id), event, payload, skip_sid=_get_sid())


def handle_ping(data):
    emit('pong', data or {})


def register_socketio_handlers(testing: bool = False) -> None:
    """Register Socket.IO event handlers.

    Always register on namespace '/ws'. When testing is True, also mirror
    handlers on the default namespace '/' to accommodate the test harness.
    """
    from weatherguessr import socketio

    handlers = {
        'connect': handle_connect,
        'disconnect': handle_disconnect,
        'subscribe': handle_subscribe,
        'unsubscribe': handle_unsubscribe,
        'join_game': handle_join_game,
        'leave_game': handle_leave_game,
        'broadcast': handle_broadcast,
        'ping': handle_ping,
    }
    namespaces = [NAMESPACE, '/'] if testing else [NAMESPACE]
    for namespace in namespaces:
        for event, handler in handlers.items():
            socketio.on_event(event, handler, namespace=namespace)
