"""Push channel: server-originated task events.

The engine depends only on the ``PushChannel`` protocol. ``LocalPushChannel``
is an in-process implementation used by the reference backend and tests.
"""

import logging
from typing import Any, Callable, Protocol

logger = logging.getLogger(__name__)

TASK_CREATED = "task_created"
TASK_UPDATED = "task_updated"

Handler = Callable[[dict[str, Any]], None]


class PushChannel(Protocol):
    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]: ...

    def publish(self, event: str, payload: dict[str, Any]) -> None: ...


class LocalPushChannel:
    """Synchronous in-process fan-out of events to subscribed handlers.

    Handlers run in subscription order. A failing handler is logged and
    does not stop delivery to the others.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = {}

    def subscribe(self, event: str, handler: Handler) -> Callable[[], None]:
        """Register *handler* for *event*. Returns an unsubscribe function."""
        self._handlers = {
            **self._handlers,
            event: [*self._handlers.get(event, []), handler],
        }

        def unsubscribe() -> None:
            remaining = [h for h in self._handlers.get(event, []) if h is not handler]
            self._handlers = {**self._handlers, event: remaining}

        return unsubscribe

    def publish(self, event: str, payload: dict[str, Any]) -> None:
        handlers = self._handlers.get(event, [])
        logger.debug("Publishing %s to %d handler(s)", event, len(handlers))
        for handler in list(handlers):
            try:
                handler(payload)
            except Exception:
                logger.exception("Push handler for %s failed", event)

    def listener_count(self, event: str) -> int:
        return len(self._handlers.get(event, []))
