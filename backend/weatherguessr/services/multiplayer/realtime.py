from collections import defaultdict
from typing import Any, Callable, Dict, List, Optional

from flask import current_app

from weatherguessr import socketio

NAMESPACE = '/ws'
ROW_CHANGE_EVENT = 'row_change'
STATE_EVENT = 'state'


def table_topic(table: str) -> str:
    return f"table:{table}"


def game_topic(game_id) -> str:
    return f"game:{game_id}"


class Subscription:
    def __init__(self, hub: 'RealtimeHub', topic: str, event: str, callback: Callable[[dict], Any]):
        self.hub = hub
        self.topic = topic
        self.event = event
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self.hub._remove(self)
            self.active = False


class RealtimeHub:
    """Topic fan-out shared by Socket.IO rooms and in-process listeners.

    Remote clients join the Socket.IO room named after a topic; local
    session controllers register callbacks. ``publish`` reaches both.
    """

    def __init__(self):
        self._listeners: Dict[str, List[Subscription]] = defaultdict(list)

    def subscribe(self, topic: str, event: str, callback: Callable[[dict], Any]) -> Subscription:
        sub = Subscription(self, topic, event, callback)
        self._listeners[topic].append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._listeners.get(sub.topic, [])
        if sub in subs:
            subs.remove(sub)
        if not subs:
            self._listeners.pop(sub.topic, None)

    def listener_count(self, topic: str) -> int:
        return len(self._listeners.get(topic, []))

    def reset(self) -> None:
        self._listeners.clear()

    def publish(self, topic: str, event: str, payload: dict,
                skip: Optional[Subscription] = None, skip_sid: Optional[str] = None) -> None:
        try:
            socketio.emit(event, payload, to=topic, namespace=NAMESPACE, skip_sid=skip_sid)
        except Exception as exc:
            current_app.logger.warning(f"[emit-failed] topic={topic} event={event} err={exc}")
        for sub in list(self._listeners.get(topic, [])):
            if sub is skip or sub.event != event or not sub.active:
                continue
            try:
                sub.callback(payload)
            except Exception:
                current_app.logger.exception(f"[listener-failed] topic={topic} event={event}")

    def publish_change(self, table: str, event_type: str, new: Optional[dict] = None,
                       old: Optional[dict] = None) -> None:
        self.publish(table_topic(table), ROW_CHANGE_EVENT, {
            'event_type': event_type,
            'table': table,
            'new': new or {},
            'old': old or {},
        })


hub = RealtimeHub()


class SyncChannel:
    """Per-game broadcast topic; senders never receive their own messages."""

    def __init__(self, realtime: RealtimeHub, game_id):
        self.hub = realtime
        self.game_id = game_id
        self.topic = game_topic(game_id)
        self._subscription: Optional[Subscription] = None

    @property
    def joined(self) -> bool:
        return self._subscription is not None

    def join(self, on_state: Callable[[dict], Any]) -> None:
        self.leave()
        self._subscription = self.hub.subscribe(self.topic, STATE_EVENT, on_state)

    def leave(self) -> None:
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None

    def send(self, game_state: dict) -> None:
        self.hub.publish(self.topic, STATE_EVENT, {'game_state': game_state}, skip=self._subscription)
