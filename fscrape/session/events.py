"""Session lifecycle notifications.

Events are informational. Subscribers cannot affect session state, and
a failing subscriber is logged and skipped.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable

from ..core.types import SessionStatus, utcnow
from ..observability.logger import get_logger

logger = get_logger(__name__)


class SessionEventType(str, Enum):
    CREATED = "session:created"
    STARTED = "session:started"
    PAUSED = "session:paused"
    RESUMED = "session:resumed"
    COMPLETED = "session:completed"
    FAILED = "session:failed"
    CANCELLED = "session:cancelled"
    PROGRESS = "session:progress"
    MILESTONE = "session:milestone"
    RETRY = "session:retry"


@dataclass(frozen=True)
class SessionEvent:
    type: SessionEventType
    session_id: str
    status: SessionStatus
    data: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)


EventHandler = Callable[[SessionEvent], Any]


class EventBus:
    """Fan-out of session events to subscribers.

    Usage:
        bus = EventBus()
        bus.subscribe(lambda e: print(e.type, e.data))
        bus.subscribe(on_milestone, SessionEventType.MILESTONE)
    """

    def __init__(self) -> None:
        self._handlers: list[tuple[EventHandler, frozenset[SessionEventType] | None]] = []

    def subscribe(self, handler: EventHandler, *types: SessionEventType) -> Callable[[], None]:
        """Register a handler, optionally filtered by event type.

        Returns:
            Function that removes the subscription
        """
        entry = (handler, frozenset(types) if types else None)
        self._handlers.append(entry)

        def unsubscribe() -> None:
            if entry in self._handlers:
                self._handlers.remove(entry)

        return unsubscribe

    async def emit(self, event: SessionEvent) -> None:
        for handler, types in list(self._handlers):
            if types is not None and event.type not in types:
                continue
            try:
                result = handler(event)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception(
                    f"Event handler failed for {event.type.value}",
                    extra={"session_id": event.session_id},
                )
