"""In-process notification bus for research store changes.

Publishers (the callback receiver) announce new or updated rows; subscribers
(the orchestrator) reconcile their progress from them. Each delivery runs on
its own asyncio task, so a slow handler never blocks the publisher and the
same event may be observed more than once if it is published twice.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, TypeVar
from uuid import UUID

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CompanyResearchCompleted:
    """A company_research row was inserted or updated."""

    user_id: UUID
    company_research_id: UUID
    company_domain: str
    status: str
    company_status: str | None = None
    raw_data: Any = None
    operation: str = "insert"
    error_message: str | None = None
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


@dataclass(frozen=True)
class ProspectResearchInserted:
    """A prospect_research row was inserted."""

    user_id: UUID
    prospect_id: UUID
    company_research_id: UUID
    occurred_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


EventT = TypeVar("EventT")
Handler = Callable[[Any], Awaitable[None]]


class NotificationBus:
    """Fan out events to subscribed coroutine handlers."""

    def __init__(self) -> None:
        self._handlers: dict[type, list[Handler]] = {}
        self._tasks: set[asyncio.Task[None]] = set()

    def subscribe(self, event_type: type[EventT], handler: Callable[[EventT], Awaitable[None]]) -> None:
        handlers = self._handlers.setdefault(event_type, [])
        if handler not in handlers:
            handlers.append(handler)

    def unsubscribe(self, event_type: type[EventT], handler: Callable[[EventT], Awaitable[None]]) -> None:
        handlers = self._handlers.get(event_type, [])
        if handler in handlers:
            handlers.remove(handler)

    def publish(self, event: object) -> int:
        """Schedule every handler for ``event``; returns the number scheduled."""
        handlers = list(self._handlers.get(type(event), ()))
        if not handlers:
            return 0
        loop = asyncio.get_running_loop()
        for handler in handlers:
            task = loop.create_task(self._deliver(handler, event))
            self._tasks.add(task)
            task.add_done_callback(self._tasks.discard)
        logger.debug(
            "research.events.published",
            extra={"event": type(event).__name__, "handlers": len(handlers)},
        )
        return len(handlers)

    async def drain(self) -> None:
        """Wait until all in-flight deliveries, including ones they schedule, finish."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)

    @property
    def pending(self) -> int:
        return len(self._tasks)

    async def _deliver(self, handler: Handler, event: object) -> None:
        try:
            await handler(event)
        except Exception:
            logger.exception(
                "research.events.handler_failed",
                extra={"event": type(event).__name__, "handler": getattr(handler, "__qualname__", repr(handler))},
            )
