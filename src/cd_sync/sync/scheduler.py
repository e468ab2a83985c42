# ABOUTME: Background scheduler running periodic sync passes per Application
# ABOUTME: Keeps exactly one cancellable asyncio task per Application key

"""
Periodic sync scheduling.

=============================================================================
HOW IT WORKS
=============================================================================

Every Application gets one asyncio task ticking at a fixed rate:

    next_tick = start + sync_check_period
    while not stopped:
        wait until next_tick for the stop event
        engine.sync(app, forced=False)
        next_tick += sync_check_period

Ticks are fixed-rate, not fixed-delay: a pass that takes 10s of a 60s
period does not push the next tick out to 70s. A pass that overruns the
whole period is followed immediately by one more pass; the ticks it
missed are dropped rather than queued.

`schedule(app)` always replaces the task for `app.key`. Under the
registry lock the old entry is swapped for a new one and the old stop
event is set; the join happens after the lock is released, so a busy
Application never holds up registration of the others. The new task
waits for its predecessor to exit before its first tick, so one
Application never has two loops running passes.

Stopping is cooperative: the stop event is only seen between passes and
a pass in flight always runs to completion. `join_timeout` bounds how
long `schedule` / `cancel` / `shutdown` wait for that; after it they log
and return. Only with `cancel_stuck=True` is a task still running after
`join_timeout` hard-cancelled.

Failed passes are logged and the loop carries on; there is no backoff and
no overall deadline.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import TYPE_CHECKING, Protocol

import structlog

from cd_sync.errors import SyncError

if TYPE_CHECKING:
    from collections.abc import Awaitable, Callable

    from cd_sync.models import Application
    from cd_sync.sync.engine import SyncResult

logger = structlog.get_logger(__name__)


class Syncer(Protocol):
    async def sync(self, app: Application, forced: bool = False) -> SyncResult: ...


@dataclass
class _Entry:
    app: Application
    period: float
    stop: asyncio.Event
    task: asyncio.Task[None]


async def _stopped_within(stop: asyncio.Event, delay: float) -> bool:
    """Wait up to `delay` seconds; True if the stop event was set."""
    try:
        async with asyncio.timeout(max(delay, 0.0)):
            await stop.wait()
    except TimeoutError:
        return False
    return True


class SyncScheduler:
    """
    Example:
        >>> scheduler = SyncScheduler(engine)
        >>> await scheduler.schedule(app)      # start (or restart) periodic sync
        >>> await scheduler.cancel(app.key)    # stop it
        >>> await scheduler.shutdown()         # stop everything
    """

    def __init__(
        self,
        engine: Syncer,
        join_timeout: float = 30.0,
        on_synced: Callable[[Application, SyncResult], Awaitable[None]] | None = None,
        cancel_stuck: bool = False,
    ) -> None:
        self._engine = engine
        self._join_timeout = join_timeout
        self._on_synced = on_synced
        self._cancel_stuck = cancel_stuck
        self._entries: dict[str, _Entry] = {}
        self._lock = asyncio.Lock()

    def keys(self) -> list[str]:
        return sorted(self._entries)

    def period(self, key: str) -> float | None:
        entry = self._entries.get(key)
        return entry.period if entry else None

    def application(self, key: str) -> Application | None:
        entry = self._entries.get(key)
        return entry.app if entry else None

    def __contains__(self, key: object) -> bool:
        return key in self._entries

    def __len__(self) -> int:
        return len(self._entries)

    async def schedule(self, app: Application) -> None:
        """Replace any periodic task for `app.key` with a fresh one."""
        period = float(app.sync_policy.sync_check_period)
        if period <= 0:
            raise ValueError(f"sync_check_period must be positive for {app.key}")

        async with self._lock:
            old = self._entries.pop(app.key, None)
            if old is not None:
                old.stop.set()

            stop = asyncio.Event()
            previous = old.task if old is not None else None
            task = asyncio.create_task(
                self._run(app, period, stop, previous), name=f"sync:{app.key}"
            )
            self._entries[app.key] = _Entry(app=app, period=period, stop=stop, task=task)
        logger.info("Scheduled periodic sync", application=app.key, period=period)

        if old is not None:
            await self._join(old)

    async def cancel(self, key: str) -> bool:
        """Stop the task for `key`. Returns False if none was registered."""
        async with self._lock:
            entry = self._entries.pop(key, None)
            if entry is None:
                return False
            entry.stop.set()
        await self._join(entry)
        logger.info("Cancelled periodic sync", application=key)
        return True

    async def shutdown(self) -> None:
        async with self._lock:
            entries = list(self._entries.values())
            self._entries.clear()
            for entry in entries:
                entry.stop.set()
        await asyncio.gather(*(self._join(entry) for entry in entries))
        logger.info("Scheduler stopped", tasks=len(entries))

    async def _join(self, entry: _Entry) -> None:
        if entry.task is asyncio.current_task():
            return
        done, _ = await asyncio.wait({entry.task}, timeout=self._join_timeout)
        if done:
            return
        if not self._cancel_stuck:
            logger.warning(
                "Periodic sync still finishing a pass, not waiting for it",
                application=entry.app.key,
                timeout=self._join_timeout,
            )
            return
        logger.warning(
            "Periodic sync did not stop in time, cancelling",
            application=entry.app.key,
            timeout=self._join_timeout,
        )
        entry.task.cancel()
        await asyncio.gather(entry.task, return_exceptions=True)

    async def _run(
        self,
        app: Application,
        period: float,
        stop: asyncio.Event,
        previous: asyncio.Task[None] | None = None,
    ) -> None:
        if previous is not None:
            await asyncio.wait({previous})

        loop = asyncio.get_running_loop()
        next_tick = loop.time() + period
        while not await _stopped_within(stop, next_tick - loop.time()):
            if stop.is_set():
                break
            await self._pass(app)
            next_tick += period
            # Overran the period: run once more right away, drop the rest
            next_tick = max(next_tick, loop.time())

    async def _pass(self, app: Application) -> None:
        try:
            result = await self._engine.sync(app, forced=False)
        except SyncError as e:
            logger.warning(
                "Periodic sync failed",
                application=app.key,
                error_type=type(e).__name__,
                error=str(e),
            )
            return
        except Exception:
            logger.exception("Periodic sync crashed", application=app.key)
            return

        if self._on_synced is not None:
            try:
                await self._on_synced(app, result)
            except Exception:
                logger.exception("Sync hook failed", application=app.key)
