"""
Session Worker — one paced dispatch loop per session.

Loop:
  ┌────────────────┐  none   ┌──────────────────────────┐
  │ next pending?  │────────▶│ wait idle_poll_interval  │──┐
  └───────┬────────┘         └──────────────────────────┘  │
          │ item                                            │
          ▼                                                 │
  ┌────────────────┐         ┌──────────────────────────┐  │
  │ dispatch item  │────────▶│ wait execution_interval  │──┤
  └────────────────┘         └──────────────────────────┘  │
          ▲                                                 │
          └─────────────────────────────────────────────────┘

Waits end early when stop() is called. An in-flight dispatch is never
interrupted by stop(); only its own timeout can cut it short.
"""
from __future__ import annotations

import asyncio
import structlog
from datetime import datetime, timezone
from typing import Any, Optional

from channels.dispatcher import Dispatcher, extract_error_message
from job_queue.session_queue import QueuedItem, SessionQueue
from models.schemas import QueuedItemStatus

logger = structlog.get_logger()

DEFAULT_EXECUTION_INTERVAL = 60.0
DEFAULT_IDLE_POLL_INTERVAL = 5.0
DEFAULT_DISPATCH_TIMEOUT = 30.0


class SessionWorker:
    """
    Drains a SessionQueue one item at a time, pacing between dispatches.

    Usage:
        worker = SessionWorker("S1", queue, dispatcher)
        worker.start()       # returns immediately, loop runs as a task
        worker.stop()
        await worker.join()
    """

    def __init__(
        self,
        session: str,
        queue: SessionQueue,
        dispatcher: Dispatcher,
        execution_interval: float = DEFAULT_EXECUTION_INTERVAL,
        idle_poll_interval: float = DEFAULT_IDLE_POLL_INTERVAL,
        dispatch_timeout: float = DEFAULT_DISPATCH_TIMEOUT,
    ):
        self.session = session
        self.queue = queue
        self.dispatcher = dispatcher
        self.execution_interval = execution_interval
        self.idle_poll_interval = idle_poll_interval
        self.dispatch_timeout = dispatch_timeout
        self.created_at = datetime.now(timezone.utc)
        self.restored_active = False
        self.completed_count = 0
        self.failed_count = 0
        self._running = False
        self._task: Optional[asyncio.Task] = None
        self._wake = asyncio.Event()

    @property
    def is_active(self) -> bool:
        return self._running

    # ── Lifecycle ─────────────────────────────────────────

    def start(self) -> None:
        if self._running:
            logger.debug("worker_already_running", session=self.session)
            return

        self._running = True
        self._wake.clear()
        previous = self._task
        self._task = asyncio.get_running_loop().create_task(
            self._run(previous), name=f"session-worker:{self.session}"
        )
        logger.info("worker_started", session=self.session)

    def stop(self) -> None:
        if not self._running:
            return
        self._running = False
        self._wake.set()
        logger.info("worker_stopped", session=self.session)

    async def join(self, timeout: Optional[float] = None) -> bool:
        """Wait for the loop task to exit. Returns False on timeout."""
        task = self._task
        if task is None or task.done():
            return True
        done, _ = await asyncio.wait([task], timeout=timeout)
        return bool(done)

    # ── Loop ──────────────────────────────────────────────

    def _is_current(self) -> bool:
        return self._running and self._task is asyncio.current_task()

    async def _run(self, previous: Optional[asyncio.Task]) -> None:
        # A stopped loop may still be finishing its last dispatch
        if previous is not None and not previous.done():
            await asyncio.wait([previous])

        while self._is_current():
            item = self.queue.next_pending()
            if item is None:
                await self._wait(self.idle_poll_interval)
                continue

            await self._execute(item)
            await self._wait(self.execution_interval)

        logger.debug("worker_loop_exited", session=self.session)

    async def _wait(self, seconds: float) -> None:
        if not self._is_current():
            return
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=seconds)
        except asyncio.TimeoutError:
            pass

    async def _execute(self, item: QueuedItem) -> None:
        self.queue.mark_executing(item.id)
        if self.queue.get(item.id) is not item or item.status != QueuedItemStatus.EXECUTING:
            logger.error("dispatch_skipped_untracked_item", session=self.session, item_id=item.id)
            return
        job = item.job
        logger.info("dispatch_started",
                    session=self.session,
                    item_id=item.id,
                    campaign_id=item.campaign_id,
                    url=job.url)

        try:
            result = await asyncio.wait_for(
                self.dispatcher.dispatch(
                    job.method, job.url, job.headers, job.data, self.dispatch_timeout,
                ),
                timeout=self.dispatch_timeout,
            )
        except asyncio.TimeoutError:
            self._record_failure(item, f"Dispatch timed out after {self.dispatch_timeout:g}s")
        except Exception as e:
            self._record_failure(item, extract_error_message(e))
        else:
            self.queue.mark_completed(item.id, result)
            self.completed_count += 1
            logger.info("dispatch_completed", session=self.session, item_id=item.id)

    def _record_failure(self, item: QueuedItem, message: str) -> None:
        self.queue.mark_failed(item.id, message)
        self.failed_count += 1
        logger.warning("dispatch_failed",
                       session=self.session,
                       item_id=item.id,
                       error=message)

    # ── Persistence ───────────────────────────────────────

    def serialize(self) -> dict[str, Any]:
        return {
            "session": self.session,
            "isActive": self._running,
            "createdAt": self.created_at.isoformat(),
        }

    @classmethod
    def deserialize(
        cls,
        data: dict[str, Any],
        queue: SessionQueue,
        dispatcher: Dispatcher,
        **timing: float,
    ) -> SessionWorker:
        """Rebuild a stopped worker; restore_workers() decides whether it runs."""
        worker = cls(data["session"], queue, dispatcher, **timing)
        if data.get("createdAt"):
            worker.created_at = datetime.fromisoformat(data["createdAt"])
        worker.restored_active = bool(data.get("isActive", False))
        return worker
