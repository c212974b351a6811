"""Tick loop plumbing shared by the alert and rule schedulers.

A tick decides synchronously and hands every I/O side effect to an
``EffectDispatcher``, which runs it as its own task under a timeout. A slow
or failing write therefore never delays the next definition or tick.
"""
from __future__ import annotations

import asyncio
import logging
import time
from abc import ABC, abstractmethod
from typing import Awaitable, Callable, Generic, Optional, TypeVar

from condition_engine.models import now_ms as wall_clock_ms
from shared.logging import log_event, trace_scope
from shared.metrics import side_effect_failures_total, tick_duration_seconds, tick_errors_total

logger = logging.getLogger(__name__)

T = TypeVar("T")


class EffectDispatcher:
    def __init__(self, name: str, timeout_seconds: float = 5.0):
        self.name = name
        self.timeout_seconds = timeout_seconds
        self._pending: set[asyncio.Task] = set()

    def dispatch(self, operation: str, coro: Awaitable, **context) -> asyncio.Task:
        """Start a side effect without waiting for it. Must be called on the event loop."""
        task = asyncio.get_running_loop().create_task(self._run(operation, coro, context))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _run(self, operation: str, coro: Awaitable, context: dict) -> bool:
        try:
            await asyncio.wait_for(coro, timeout=self.timeout_seconds)
            return True
        except asyncio.TimeoutError:
            side_effect_failures_total.labels(operation=operation, reason="timeout").inc()
            log_event(
                logger,
                "side effect timed out",
                level="WARNING",
                scheduler=self.name,
                operation=operation,
                timeout_seconds=self.timeout_seconds,
                **context,
            )
        except Exception as exc:
            side_effect_failures_total.labels(operation=operation, reason="error").inc()
            logger.error(
                "side effect failed",
                extra={
                    "scheduler": self.name,
                    "operation": operation,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                    **context,
                },
                exc_info=True,
            )
        return False

    @property
    def pending(self) -> int:
        return len(self._pending)

    async def drain(self) -> None:
        """Wait for every in-flight side effect, including ones they spawn."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)


class PeriodicScheduler(ABC, Generic[T]):
    """Fixed-period tick loop with a cached, periodically refreshed definition list."""

    name = "scheduler"

    def __init__(
        self,
        loader: Callable[[], Awaitable[list[T]]],
        tick_seconds: float,
        io_timeout_seconds: float = 5.0,
        refresh_seconds: float = 10.0,
        clock: Optional[Callable[[], int]] = None,
    ):
        self._loader = loader
        self.tick_seconds = tick_seconds
        self.io_timeout_seconds = io_timeout_seconds
        self.refresh_seconds = refresh_seconds
        self.clock = clock or wall_clock_ms
        self.definitions: list[T] = []
        self.loaded = False
        self.effects = EffectDispatcher(self.name, io_timeout_seconds)
        self.last_tick_at: Optional[int] = None

    def set_definitions(self, definitions: list[T]) -> None:
        self.definitions = list(definitions)
        self.loaded = True

    async def refresh_definitions(self) -> bool:
        """Reload definitions; on failure keep evaluating the previous list."""
        try:
            definitions = await asyncio.wait_for(self._loader(), timeout=self.io_timeout_seconds)
        except Exception as exc:
            side_effect_failures_total.labels(operation=f"{self.name}.list", reason="error").inc()
            log_event(
                logger,
                "definition refresh failed",
                level="WARNING",
                scheduler=self.name,
                error_type=type(exc).__name__,
                error=str(exc),
            )
            return False
        self.set_definitions(definitions)
        return True

    @abstractmethod
    def tick(self, now_ms: Optional[int] = None):
        """Decide synchronously for every definition; dispatch side effects."""

    async def drain(self) -> None:
        await self.effects.drain()

    async def run_forever(self, stop: asyncio.Event) -> None:
        log_event(logger, "scheduler started", scheduler=self.name, tick_seconds=self.tick_seconds)
        next_refresh = 0.0
        while not stop.is_set():
            with trace_scope():
                try:
                    if time.monotonic() >= next_refresh:
                        await self.refresh_definitions()
                        next_refresh = time.monotonic() + self.refresh_seconds
                    with tick_duration_seconds.labels(scheduler=self.name).time():
                        self.tick()
                except Exception as exc:
                    tick_errors_total.labels(scheduler=self.name).inc()
                    logger.error(
                        "tick failed",
                        extra={"scheduler": self.name, "error_type": type(exc).__name__, "error": str(exc)},
                        exc_info=True,
                    )
            try:
                await asyncio.wait_for(stop.wait(), timeout=self.tick_seconds)
            except asyncio.TimeoutError:
                pass
        await self.drain()
        log_event(logger, "scheduler stopped", scheduler=self.name)
