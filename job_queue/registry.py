"""
Queue Registry — owns every session's queue and worker.

  session ──▶ SessionQueue   (created on first enqueue, never dropped)
          └─▶ SessionWorker  (at most one per session)

Every mutation schedules a debounced snapshot of the whole registry as a
single document:

  {
      "queues":  {session: [serialized QueuedItem, ...]},
      "workers": {session: {"session", "isActive", "createdAt"}},
  }

Startup sequence:
    registry.load_all()          # rebuild queues + stopped workers
    registry.restore_workers()   # start the ones that were running
"""
from __future__ import annotations

import asyncio
import structlog
from typing import Any, Iterable, Optional, Union

from channels.dispatcher import Dispatcher
from config.settings import WorkerConfig
from job_queue.session_queue import QueuedItem, SessionQueue
from job_queue.worker import SessionWorker
from models.schemas import DispatchJob, QueuedItemStatus
from persistence.store import PersistenceStore

logger = structlog.get_logger()

INTERRUPTED_REASON = "Interrupted by restart before completion"


class QueueRegistry:
    """Explicitly constructed service; create one per process (or per test)."""

    def __init__(
        self,
        persistence: PersistenceStore,
        dispatcher: Dispatcher,
        worker_config: WorkerConfig = None,
        document_key: str = "queues",
        debounce_delay: Optional[float] = None,
    ):
        self.persistence = persistence
        self.dispatcher = dispatcher
        self.worker_config = worker_config or WorkerConfig()
        self.document_key = document_key
        self.debounce_delay = debounce_delay
        self._queues: dict[str, SessionQueue] = {}
        self._workers: dict[str, SessionWorker] = {}

    # ── Lookup ────────────────────────────────────────────

    def _worker_timing(self) -> dict[str, float]:
        cfg = self.worker_config
        return {
            "execution_interval": cfg.execution_interval,
            "idle_poll_interval": cfg.idle_poll_interval,
            "dispatch_timeout": cfg.dispatch_timeout,
        }

    def _get_or_create_queue(self, session: str) -> SessionQueue:
        queue = self._queues.get(session)
        if queue is None:
            queue = SessionQueue()
            self._queues[session] = queue
            logger.info("session_queue_created", session=session)
        return queue

    def _get_or_create_worker(self, session: str) -> SessionWorker:
        worker = self._workers.get(session)
        if worker is None:
            worker = SessionWorker(
                session,
                self._get_or_create_queue(session),
                self.dispatcher,
                **self._worker_timing(),
            )
            self._workers[session] = worker
        return worker

    def get_queue(self, session: str) -> Optional[SessionQueue]:
        return self._queues.get(session)

    def get_worker(self, session: str) -> Optional[SessionWorker]:
        return self._workers.get(session)

    @property
    def sessions(self) -> list[str]:
        return list(self._queues)

    # ── Commands ──────────────────────────────────────────

    def enqueue(
        self,
        session: str,
        jobs: Iterable[Union[DispatchJob, dict[str, Any]]],
        campaign_id: str,
    ) -> list[QueuedItem]:
        queue = self._get_or_create_queue(session)
        items = queue.add_items(jobs, campaign_id)
        self._get_or_create_worker(session).start()
        logger.info("jobs_enqueued",
                    session=session,
                    campaign_id=campaign_id,
                    count=len(items))
        self.save_all()
        return items

    def start(self, session: str) -> None:
        self._get_or_create_worker(session).start()
        self.save_all()

    def stop(self, session: str) -> bool:
        worker = self._workers.get(session)
        if worker is None:
            return False
        worker.stop()
        self.save_all()
        return True

    def clear_campaign(self, campaign_id: str) -> int:
        removed = sum(q.clear_campaign(campaign_id) for q in self._queues.values())
        logger.info("campaign_cleared", campaign_id=campaign_id, removed=removed)
        self.save_all()
        return removed

    # ── Queries ───────────────────────────────────────────

    def status_for(self, session: str) -> Optional[dict[str, Any]]:
        worker = self._workers.get(session)
        if worker is None:
            return None

        queue = self._queues.get(session)
        items = queue.all_items() if queue else []
        counts = {status: 0 for status in QueuedItemStatus}
        campaigns: dict[str, dict[str, Any]] = {}

        for item in items:
            counts[item.status] += 1
            progress = campaigns.setdefault(item.campaign_id, {
                "campaignId": item.campaign_id,
                "total": 0,
                "completed": 0,
                "failed": 0,
                "pending": 0,
                "executing": 0,
                "messages": [],
            })
            progress["total"] += 1
            progress[item.status.value] += 1
            progress["messages"].append({
                "requestId": item.id,
                "status": item.status.value,
                "error": item.error,
                "executedAt": item.executed_at.isoformat() if item.executed_at else None,
            })

        return {
            "session": session,
            "isActive": worker.is_active,
            "totalRequests": len(items),
            "pendingRequests": counts[QueuedItemStatus.PENDING],
            "completedRequests": counts[QueuedItemStatus.COMPLETED],
            "failedRequests": counts[QueuedItemStatus.FAILED],
            "executingRequests": counts[QueuedItemStatus.EXECUTING],
            "campaigns": list(campaigns.values()),
        }

    def all_status(self) -> list[dict[str, Any]]:
        return [self.status_for(session) for session in self._workers]

    def stats(self) -> dict[str, int]:
        return {
            "totalSessions": len(self._workers),
            "activeSessions": sum(1 for w in self._workers.values() if w.is_active),
            "totalRequests": sum(len(q) for q in self._queues.values()),
            "totalPending": sum(q.pending_count() for q in self._queues.values()),
        }

    def all_queues(self) -> dict[str, dict[str, Any]]:
        """Read-only dump of every queue, for reporting."""
        return {
            session: {
                "totalRequests": len(queue),
                "pendingRequests": queue.pending_count(),
                "requests": queue.serialize(),
            }
            for session, queue in self._queues.items()
        }

    # ── Persistence ───────────────────────────────────────

    def serialize(self) -> dict[str, Any]:
        return {
            "queues": {s: q.serialize() for s, q in self._queues.items()},
            "workers": {s: w.serialize() for s, w in self._workers.items()},
        }

    def save_all(self, immediate: bool = False) -> None:
        """
        Snapshot the registry. Debounced by default; immediate=True writes
        now and lets PersistenceWriteError propagate.
        """
        if immediate:
            self.persistence.save(self.document_key, self.serialize())
        else:
            self.persistence.debounced_save(
                self.document_key, self.serialize, self.debounce_delay
            )

    def load_all(self) -> bool:
        data = self.persistence.load(self.document_key, expected_type=dict)
        if not data:
            return False

        for session, raw_items in self._section(data, "queues").items():
            if not isinstance(raw_items, list):
                logger.warning("session_queue_malformed", session=session)
                continue
            try:
                queue = SessionQueue.deserialize(raw_items)
            except (AttributeError, KeyError, TypeError, ValueError) as e:
                logger.error("session_queue_load_failed", session=session, error=str(e))
                continue
            interrupted = queue.fail_interrupted(INTERRUPTED_REASON)
            if interrupted:
                logger.warning("interrupted_items_failed", session=session, count=interrupted)
            self._queues[session] = queue

        for session, raw_worker in self._section(data, "workers").items():
            queue = self._queues.get(session)
            if queue is None or not isinstance(raw_worker, dict):
                continue
            try:
                worker = SessionWorker.deserialize(
                    {**raw_worker, "session": session},
                    queue,
                    self.dispatcher,
                    **self._worker_timing(),
                )
            except (TypeError, ValueError) as e:
                logger.error("session_worker_load_failed", session=session, error=str(e))
                continue
            old = self._workers.get(session)
            if old is not None:
                old.stop()
            self._workers[session] = worker

        logger.info("registry_loaded",
                    queues=len(self._queues),
                    workers=len(self._workers))
        return True

    @staticmethod
    def _section(data: dict[str, Any], name: str) -> dict[str, Any]:
        section = data.get(name) or {}
        if not isinstance(section, dict):
            logger.warning("snapshot_section_malformed", section=name)
            return {}
        return section

    def restore_workers(self) -> int:
        restored = 0
        for session, worker in self._workers.items():
            if worker.restored_active and not worker.is_active:
                worker.start()
                restored += 1
                logger.info("worker_restored", session=session)
        logger.info("workers_restored", count=restored)
        return restored

    async def shutdown(self, timeout: Optional[float] = None) -> None:
        """
        Stop every worker and write a final snapshot in which the workers
        that were running are still recorded as running.
        """
        self.persistence.flush_all()

        was_active = [s for s, w in self._workers.items() if w.is_active]
        for worker in self._workers.values():
            worker.stop()

        if timeout is None:
            timeout = self.worker_config.dispatch_timeout
        joined = await asyncio.gather(
            *(w.join(timeout) for w in self._workers.values())
        )
        if not all(joined):
            logger.warning("workers_still_dispatching_at_shutdown")

        document = self.serialize()
        for session in was_active:
            document["workers"][session]["isActive"] = True
        self.persistence.save(self.document_key, document)
        logger.info("registry_shutdown", resumable_workers=len(was_active))


class AutoSaver:
    """
    Background task that writes an unconditional snapshot every `interval`
    seconds and prunes old backups.
    """

    def __init__(self, registry: QueueRegistry, interval: float = 30.0, backup_keep: int = 5):
        self.registry = registry
        self.interval = interval
        self.backup_keep = backup_keep
        self._task: Optional[asyncio.Task] = None

    def start_background(self) -> asyncio.Task:
        self._task = asyncio.get_running_loop().create_task(self._run())
        return self._task

    async def stop(self):
        if self._task:
            self._task.cancel()
            try:
                await self._task
            except asyncio.CancelledError:
                pass
            self._task = None

    async def _run(self):
        logger.info("autosave_started", interval=self.interval)
        while True:
            await asyncio.sleep(self.interval)
            try:
                self.registry.save_all(immediate=True)
                self.registry.persistence.cleanup_old_backups(
                    self.registry.document_key, self.backup_keep
                )
            except Exception as e:
                logger.error("autosave_failed", error=str(e))
