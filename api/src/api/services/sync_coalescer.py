"""Debounced coalescing of catalog change signals into full sync passes."""

from __future__ import annotations

import asyncio
import logging
import secrets
from collections.abc import AsyncIterator, Awaitable, Callable
from contextlib import asynccontextmanager, suppress
from typing import Any

import redis.asyncio as aioredis
from billsync.config import get_settings
from billsync.database import get_session
from redis.exceptions import RedisError

from api.services.catalog_sync import sync_catalog_with_stripe

logger = logging.getLogger(__name__)

_RELEASE_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('del', KEYS[1])
end
return 0
"""

_RENEW_SCRIPT = """
if redis.call('get', KEYS[1]) == ARGV[1] then
    return redis.call('pexpire', KEYS[1], ARGV[2])
end
return 0
"""


class RedisSyncLock:
    """Cluster-wide single-owner lock for sync passes.

    Acquired with ``SET NX PX`` under a random token and released with a
    compare-and-delete, so an expired holder cannot release a newer one.
    While held, the TTL is extended every third of its length. Each
    acquisition also draws a monotonically increasing fencing token, which
    the pass presents to the datastore before writing.
    """

    def __init__(
        self,
        client: aioredis.Redis,
        *,
        key: str = "billsync:catalog-sync:lock",
        ttl_seconds: float = 300,
    ) -> None:
        self._client = client
        self._key = key
        self._fence_key = f"{key}:fence"
        self._ttl_ms = max(1, int(ttl_seconds * 1000))
        self.lost = False

    @asynccontextmanager
    async def hold(self) -> AsyncIterator[int | None]:
        """Yield a fencing token while holding the lock, or None if another owner has it."""
        token = secrets.token_hex(16)
        acquired = await self._client.set(self._key, token, nx=True, px=self._ttl_ms)
        if not acquired:
            yield None
            return
        self.lost = False
        keep_alive: asyncio.Task | None = None
        try:
            fence = await self._client.incr(self._fence_key)
            keep_alive = asyncio.get_running_loop().create_task(self._keep_alive(token))
            yield int(fence)
        finally:
            if keep_alive is not None:
                keep_alive.cancel()
                with suppress(asyncio.CancelledError):
                    await keep_alive
            await self._client.eval(_RELEASE_SCRIPT, 1, self._key, token)

    async def _keep_alive(self, token: str) -> None:
        interval = self._ttl_ms / 3000
        while True:
            await asyncio.sleep(interval)
            try:
                extended = await self._client.eval(
                    _RENEW_SCRIPT, 1, self._key, token, self._ttl_ms
                )
            except RedisError:
                logger.warning("Could not extend sync lock %s", self._key, exc_info=True)
                continue
            if not extended:
                self.lost = True
                logger.error("Sync lock %s expired while held; a newer owner may be running", self._key)
                return

    async def aclose(self) -> None:
        await self._client.aclose()


class DebouncedSyncCoalescer:
    """Trailing-edge debounce around an expensive sync pass.

    Every ``signal()`` re-arms the quiet-period timer, so a burst of signals
    produces one pass after the last one. Signals that arrive while a pass
    is executing schedule exactly one follow-up pass. At most one pass runs
    at a time per process (and per cluster when a lock is supplied).

    ``run_pass`` receives the lock's fencing token, or None without a lock.
    A pass skipped because the lock is unavailable keeps its signals and is
    retried with exponential backoff up to ``retry_max_seconds``.
    """

    def __init__(
        self,
        run_pass: Callable[[int | None], Awaitable[Any]],
        *,
        quiet_seconds: float = 5.0,
        lock: RedisSyncLock | None = None,
        name: str = "catalog-sync",
        retry_max_seconds: float = 300.0,
    ) -> None:
        self._run_pass = run_pass
        self._quiet_seconds = quiet_seconds
        self._retry_max_seconds = retry_max_seconds
        self._lock = lock
        self.name = name
        self._timer: asyncio.Task | None = None
        self._pass_task: asyncio.Task | None = None
        self._running = False
        self._rerun = False
        self._closed = False
        self._skip_streak = 0
        self.pending_signals = 0
        self.passes_completed = 0
        self.passes_failed = 0
        self.passes_skipped = 0
        self.last_fence_token: int | None = None

    @property
    def is_running(self) -> bool:
        return self._running

    def snapshot(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "running": self._running,
            "timer_armed": self._timer is not None and not self._timer.done(),
            "pending_signals": self.pending_signals,
            "passes_completed": self.passes_completed,
            "passes_failed": self.passes_failed,
            "passes_skipped": self.passes_skipped,
            "last_fence_token": self.last_fence_token,
        }

    def signal(self, reason: str = "") -> int:
        """Record a change signal and (re)arm the quiet-period timer."""
        if self._closed:
            logger.warning("%s coalescer is closed; ignoring signal %s", self.name, reason)
            return self.pending_signals
        self.pending_signals += 1
        logger.debug("%s signal #%d: %s", self.name, self.pending_signals, reason)
        self._arm(self._quiet_seconds)
        return self.pending_signals

    def _arm(self, delay: float) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = asyncio.get_running_loop().create_task(self._fire_after(delay))

    async def _fire_after(self, delay: float) -> None:
        await asyncio.sleep(delay)
        # Past this point the timer is no longer cancellable by signal().
        self._timer = None
        if self._running:
            self._rerun = True
            return
        self._running = True
        self._pass_task = asyncio.get_running_loop().create_task(self._execute())

    async def _execute(self) -> None:
        skipped = False
        try:
            while True:
                self._rerun = False
                signals = self.pending_signals
                self.pending_signals = 0
                logger.info("%s pass starting (%d coalesced signals)", self.name, signals)
                try:
                    ran = await self._run_guarded()
                except Exception:
                    self._skip_streak = 0
                    self.passes_failed += 1
                    logger.exception("%s pass failed", self.name)
                else:
                    if ran:
                        self._skip_streak = 0
                        self.passes_completed += 1
                    else:
                        self._skip_streak += 1
                        self.passes_skipped += 1
                        self.pending_signals += signals
                        skipped = True
                        break
                if not self._rerun:
                    break
        finally:
            self._running = False
        if skipped and not self._closed and (self._timer is None or self._timer.done()):
            delay = min(self._quiet_seconds * 2**self._skip_streak, self._retry_max_seconds)
            logger.info(
                "%s pass rescheduled in %.1fs (%d pending signals)",
                self.name,
                delay,
                self.pending_signals,
            )
            self._arm(delay)

    async def _run_guarded(self) -> bool:
        if self._lock is None:
            await self._run_pass(None)
            return True
        try:
            async with self._lock.hold() as fence:
                if fence is None:
                    logger.warning("%s pass skipped: lock held by another instance", self.name)
                    return False
                self.last_fence_token = fence
                await self._run_pass(fence)
                return True
        except RedisError:
            logger.exception("%s pass skipped: sync lock unavailable", self.name)
            return False

    async def wait_idle(self) -> None:
        """Wait until no timer is armed and no pass is executing."""
        while True:
            timer = self._timer
            if timer is not None and not timer.done():
                with suppress(asyncio.CancelledError):
                    await timer
                continue
            task = self._pass_task
            if task is not None and not task.done():
                await task
                continue
            return

    async def aclose(self) -> None:
        self._closed = True
        timer = self._timer
        if timer is not None and not timer.done():
            timer.cancel()
            with suppress(asyncio.CancelledError):
                await timer
        self._timer = None
        task = self._pass_task
        if task is not None and not task.done():
            await task
        if self._lock is not None:
            await self._lock.aclose()


async def run_catalog_sync_pass(fence_token: int | None = None) -> dict[str, Any]:
    async with get_session() as db:
        return await sync_catalog_with_stripe(
            db, trigger="catalog_changed", fence_token=fence_token
        )


def build_catalog_coalescer() -> DebouncedSyncCoalescer:
    settings = get_settings()
    lock = None
    if settings.catalog_sync_lock_enabled:
        lock = RedisSyncLock(
            aioredis.from_url(settings.redis_url),
            ttl_seconds=settings.catalog_sync_lock_ttl_seconds,
        )
    return DebouncedSyncCoalescer(
        run_catalog_sync_pass,
        quiet_seconds=settings.catalog_sync_quiet_seconds,
        lock=lock,
        name="catalog-sync",
    )
