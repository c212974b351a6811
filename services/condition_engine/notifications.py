"""Unacknowledged alert event count ("badge").

The count is eventually consistent: it is re-read from the Definition Store
after every fire and every acknowledge, never incremented locally.
"""
from __future__ import annotations

import asyncio
import inspect
import logging
from typing import Awaitable, Callable, Union

from condition_engine.models import AlertEvent
from shared.logging import log_event
from shared.metrics import open_alert_events

logger = logging.getLogger(__name__)

BadgeListener = Callable[[int], Union[None, Awaitable[None]]]


class BadgeCounter:
    def __init__(self, store):
        self.store = store
        self.count = 0
        self._listeners: list[BadgeListener] = []
        self._lock = asyncio.Lock()

    def subscribe(self, listener: BadgeListener) -> None:
        self._listeners.append(listener)

    def unsubscribe(self, listener: BadgeListener) -> None:
        if listener in self._listeners:
            self._listeners.remove(listener)

    async def refresh(self) -> int:
        """Re-read the open event count. Failures keep the previous value."""
        async with self._lock:
            try:
                count = await self.store.count_open_events()
            except Exception as exc:
                log_event(
                    logger,
                    "badge refresh failed",
                    level="WARNING",
                    error_type=type(exc).__name__,
                    error=str(exc),
                )
                return self.count
            self.count = count
            open_alert_events.set(count)

        for listener in list(self._listeners):
            try:
                result = listener(count)
                if inspect.isawaitable(result):
                    await result
            except Exception:
                logger.exception("badge listener failed")
        return count


async def acknowledge_event(store, badge: BadgeCounter, event_id: str) -> AlertEvent:
    """Mark an event acknowledged and refresh the badge."""
    event = await store.ack_event(event_id)
    log_event(logger, "alert event acknowledged", event_id=event_id, alert_id=event.alert_id)
    await badge.refresh()
    return event
