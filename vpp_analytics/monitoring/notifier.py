"""Publish/subscribe notifier for analytics events.

The service holds one EventNotifier and hands it to the components that
emit events (alert dispatcher, service lifecycle). Subscribers register a
handler per event kind; handlers may be plain functions or coroutines.

A failing handler is logged and skipped -- one broken subscriber must not
prevent delivery to the others or crash the monitoring loop.
"""

from __future__ import annotations

from collections import defaultdict
from typing import Any, Callable

import structlog

from vpp_analytics.core.enums import EventKind
from vpp_analytics.core.interfaces import resolve

logger = structlog.get_logger(__name__)

Handler = Callable[[Any], Any]


class EventNotifier:
    """Explicit observer list keyed by event kind."""

    def __init__(self) -> None:
        self._handlers: dict[str, list[Handler]] = defaultdict(list)

    def subscribe(self, event_kind: EventKind | str, handler: Handler) -> None:
        """Register *handler* for *event_kind* (duplicates are ignored)."""
        kind = _kind(event_kind)
        if handler not in self._handlers[kind]:
            self._handlers[kind].append(handler)

    def unsubscribe(self, event_kind: EventKind | str, handler: Handler) -> bool:
        """Remove *handler*; returns False if it was not registered."""
        handlers = self._handlers.get(_kind(event_kind), [])
        if handler in handlers:
            handlers.remove(handler)
            return True
        return False

    async def publish(self, event_kind: EventKind | str, payload: Any) -> int:
        """Deliver *payload* to every handler of *event_kind*.

        Returns:
            Number of handlers that completed without raising.
        """
        kind = _kind(event_kind)
        delivered = 0
        for handler in list(self._handlers.get(kind, [])):
            try:
                await resolve(handler(payload))
                delivered += 1
            except Exception as exc:
                logger.error(
                    "event_handler_failed",
                    event_kind=kind,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(exc),
                )
        return delivered

    def subscriber_count(self, event_kind: EventKind | str) -> int:
        return len(self._handlers.get(_kind(event_kind), []))


def _kind(event_kind: EventKind | str) -> str:
    return event_kind.value if isinstance(event_kind, EventKind) else str(event_kind)
