"""Publish/subscribe point for connection changes and incoming data.

Callbacks run synchronously in registration order. A callback that raises is
logged and skipped; the remaining callbacks still run.
"""
from typing import Any, Callable, Dict, List

from .logger import get_logger

logger = get_logger(__name__)

CONNECTION = 'connection'
DATA = 'data'


class Subscription:
    def __init__(self, bus: 'EventBus', topic: str, callback: Callable[[Any], None]):
        self._bus = bus
        self.topic = topic
        self.callback = callback
        self.active = True

    def unsubscribe(self) -> None:
        if self.active:
            self._bus._remove(self)
            self.active = False


class EventBus:
    def __init__(self):
        self._subs: Dict[str, List[Subscription]] = {}

    def subscribe(self, topic: str, callback: Callable[[Any], None]) -> Subscription:
        sub = Subscription(self, topic, callback)
        self._subs.setdefault(topic, []).append(sub)
        return sub

    def _remove(self, sub: Subscription) -> None:
        subs = self._subs.get(sub.topic, [])
        if sub in subs:
            subs.remove(sub)

    def publish(self, topic: str, payload: Any) -> int:
        """Deliver `payload` to every subscriber of `topic`; return how many succeeded."""
        delivered = 0
        # snapshot so a callback may unsubscribe itself
        for sub in list(self._subs.get(topic, [])):
            try:
                sub.callback(payload)
                delivered += 1
            except Exception:
                logger.exception('%s subscriber %r failed', topic, sub.callback)
        return delivered

    def subscriber_count(self, topic: str) -> int:
        return len(self._subs.get(topic, []))
