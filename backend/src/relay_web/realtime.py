from __future__ import annotations

import logging
from collections import defaultdict, deque
from dataclasses import dataclass
from threading import Lock
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

DEFAULT_HISTORY_LIMIT = 200


def conversation_channel(conversation_id: str) -> str:
    return f"conversation:{conversation_id}"


@dataclass(frozen=True)
class RealtimeEvent:
    channel: str
    event_type: str
    payload: dict[str, Any]


RealtimeHandler = Callable[[RealtimeEvent], None]


class RealtimeNotifier(Protocol):
    def publish(self, event: RealtimeEvent) -> None: ...


class InMemoryRealtimeNotifier:
    """Single-process fan-out. Subscriber errors are logged, never raised to the writer.

    Only the most recent ``history_limit`` events are kept for ``published()``.
    """

    def __init__(self, *, history_limit: int = DEFAULT_HISTORY_LIMIT) -> None:
        self._lock = Lock()
        self._handlers: dict[str, list[RealtimeHandler]] = defaultdict(list)
        self._published: deque[RealtimeEvent] = deque(maxlen=max(0, history_limit))

    def reset(self) -> None:
        with self._lock:
            self._handlers.clear()
            self._published.clear()

    def subscribe(self, channel: str, handler: RealtimeHandler) -> Callable[[], None]:
        with self._lock:
            self._handlers[channel].append(handler)

        def _unsubscribe() -> None:
            with self._lock:
                handlers = self._handlers.get(channel, [])
                if handler in handlers:
                    handlers.remove(handler)

        return _unsubscribe

    def publish(self, event: RealtimeEvent) -> None:
        with self._lock:
            self._published.append(event)
            handlers = list(self._handlers.get(event.channel, []))
        for handler in handlers:
            try:
                handler(event)
            except Exception:
                logger.exception("realtime subscriber failed channel=%s event=%s", event.channel, event.event_type)

    def published(self, channel: str | None = None) -> list[RealtimeEvent]:
        with self._lock:
            if channel is None:
                return list(self._published)
            return [event for event in self._published if event.channel == channel]
