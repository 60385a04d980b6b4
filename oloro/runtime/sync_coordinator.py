from __future__ import annotations

import asyncio
import time
from typing import Callable, Optional

from loguru import logger

from oloro.config import Config
from oloro.data.record_queue import RecordSyncQueue
from oloro.runtime.connectivity import ConnectivityMonitor


class SyncCoordinator:
    """Runs retry passes on reconnect, on request, and after failed passes.

    Retry requests coalesce to the earliest pending due time, so a burst of
    triggers produces a single pass. Passes never overlap.
    """

    def __init__(
        self,
        queue: RecordSyncQueue,
        connectivity: ConnectivityMonitor,
        *,
        loop: asyncio.AbstractEventLoop | None = None,
        retry_delay_seconds: float | None = None,
    ):
        self._queue = queue
        self._connectivity = connectivity
        self._loop = loop
        delay = retry_delay_seconds if retry_delay_seconds is not None else Config.SYNC_RETRY_DELAY_SECONDS
        self._retry_delay = max(0.0, float(delay))
        self._handle: asyncio.TimerHandle | None = None
        self._due_monotonic: float | None = None
        self._pass_task: asyncio.Task | None = None
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._passes = 0

    @property
    def due_monotonic(self) -> float | None:
        return self._due_monotonic

    @property
    def passes(self) -> int:
        return self._passes

    def start(self) -> None:
        if self._unsubscribe is not None:
            return
        if self._loop is None:
            self._loop = asyncio.get_running_loop()
        self._unsubscribe = self._connectivity.subscribe(self._on_connectivity)
        if self._connectivity.is_online and self._queue.pending_count():
            self.schedule_in(0.0)

    async def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        self.cancel()
        if self._pass_task is not None and not self._pass_task.done():
            self._pass_task.cancel()
            await asyncio.gather(self._pass_task, return_exceptions=True)
        self._pass_task = None

    def _on_connectivity(self, online: bool) -> None:
        if online:
            self.schedule_in(0.0)
        else:
            self.cancel()

    def request_retry(self) -> None:
        self.schedule_in(0.0)

    def schedule_in(self, delay_seconds: float) -> None:
        if self._loop is None:
            raise RuntimeError("SyncCoordinator.start() must be called before scheduling")
        delay = max(0.0, float(delay_seconds))
        due = time.monotonic() + delay
        if self._due_monotonic is not None and due >= self._due_monotonic:
            return
        if self._handle is not None:
            self._handle.cancel()
        self._due_monotonic = due

        def _fire() -> None:
            self._handle = None
            self._due_monotonic = None
            if self._pass_task is not None and not self._pass_task.done():
                self._pass_task.add_done_callback(lambda _t: self.schedule_in(0.0))
                return
            self._pass_task = asyncio.ensure_future(self._run_pass())

        self._handle = self._loop.call_later(delay, _fire)

    def cancel(self) -> None:
        if self._handle is not None:
            self._handle.cancel()
            self._handle = None
        self._due_monotonic = None

    async def run_once(self) -> int:
        """Run a retry pass now, bypassing the timer.

        If a timer-started pass is already running, wait for it and then run
        a fresh one so records queued meanwhile are covered.
        """
        while self._pass_task is not None and not self._pass_task.done():
            await asyncio.gather(self._pass_task, return_exceptions=True)
        self._pass_task = asyncio.ensure_future(self._run_pass())
        return await asyncio.shield(self._pass_task)

    async def _run_pass(self) -> int:
        self._passes += 1
        try:
            synced = await self._queue.retry_pending()
        except Exception:
            logger.exception("Sync retry pass failed")
            synced = 0
        remaining = self._queue.pending_count()
        if remaining and self._connectivity.is_online and self._retry_delay > 0:
            logger.debug(f"{remaining} records still unsynced; next retry in {self._retry_delay:g}s")
            self.schedule_in(self._retry_delay)
        return synced
