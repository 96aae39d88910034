"""
Session Queue — Ordered, per-session sequence of dispatch jobs.

Items are dispatched strictly in insertion order. Each item moves through
  pending → executing → completed | failed
and is never put back to pending. An id index gives O(1) status updates.

Persisted item schema (one list per session):
  {
      "id":          unique item id,
      "request":     DispatchJob as a dict (method, url, headers, data),
      "campaignId":  campaign the job belongs to,
      "status":      pending|executing|completed|failed,
      "error":       failure message (failed items only),
      "executedAt":  ISO timestamp of completion/failure,
      "result":      gateway response (completed items only),
  }
"""
from __future__ import annotations

import uuid
import structlog
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Iterable, Optional, Union

from models.schemas import DispatchJob, QueuedItemStatus

logger = structlog.get_logger()


# ──────────────────────────────────────────────────────────────
#  Item Model
# ──────────────────────────────────────────────────────────────

@dataclass
class QueuedItem:
    """One dispatch job waiting in (or already processed by) a session queue."""
    job: DispatchJob
    campaign_id: str
    status: QueuedItemStatus = QueuedItemStatus.PENDING
    error: Optional[str] = None
    executed_at: Optional[datetime] = None
    result: Any = None
    id: str = field(default="")

    def __post_init__(self):
        if not self.id:
            self.id = f"{self.campaign_id}_req_{uuid.uuid4().hex[:16]}"

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "request": self.job.model_dump(),
            "campaignId": self.campaign_id,
            "status": self.status.value,
            "error": self.error,
            "executedAt": self.executed_at.isoformat() if self.executed_at else None,
            "result": self.result,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> QueuedItem:
        executed_at = data.get("executedAt")
        return cls(
            id=data["id"],
            job=DispatchJob.model_validate(data["request"]),
            campaign_id=data["campaignId"],
            status=QueuedItemStatus(data.get("status", "pending")),
            error=data.get("error"),
            executed_at=datetime.fromisoformat(executed_at) if executed_at else None,
            result=data.get("result"),
        )


# ──────────────────────────────────────────────────────────────
#  Queue
# ──────────────────────────────────────────────────────────────

class SessionQueue:
    """
    FIFO of QueuedItems for a single session.

    mark_* calls for unknown ids are silently ignored: a campaign may be
    cleared while one of its items is still being dispatched.
    """

    def __init__(self):
        self._items: list[QueuedItem] = []
        self._index: dict[str, QueuedItem] = {}

    def __len__(self) -> int:
        return len(self._items)

    # ── Mutation ──────────────────────────────────────────

    def add_items(
        self,
        jobs: Iterable[Union[DispatchJob, dict[str, Any]]],
        campaign_id: str,
    ) -> list[QueuedItem]:
        added = []
        for job in jobs:
            if not isinstance(job, DispatchJob):
                job = DispatchJob.model_validate(job)
            item = QueuedItem(job=job, campaign_id=campaign_id)
            while item.id in self._index:
                item.id = f"{campaign_id}_req_{uuid.uuid4().hex[:16]}"
            self._items.append(item)
            self._index[item.id] = item
            added.append(item)

        logger.debug("queue_items_added", campaign_id=campaign_id, count=len(added))
        return added

    def next_pending(self) -> Optional[QueuedItem]:
        for item in self._items:
            if item.status == QueuedItemStatus.PENDING:
                return item
        return None

    def mark_executing(self, item_id: str) -> None:
        item = self._index.get(item_id)
        if item and item.status == QueuedItemStatus.PENDING:
            item.status = QueuedItemStatus.EXECUTING

    def mark_completed(self, item_id: str, result: Any = None) -> None:
        item = self._index.get(item_id)
        if item and not item.status.is_terminal:
            item.status = QueuedItemStatus.COMPLETED
            item.executed_at = datetime.now(timezone.utc)
            item.result = result

    def mark_failed(self, item_id: str, error: str) -> None:
        item = self._index.get(item_id)
        if item and not item.status.is_terminal:
            item.status = QueuedItemStatus.FAILED
            item.error = error
            item.executed_at = datetime.now(timezone.utc)

    def clear_campaign(self, campaign_id: str) -> int:
        """Remove every item of `campaign_id`, whatever its status."""
        kept = []
        removed = 0
        for item in self._items:
            if item.campaign_id == campaign_id:
                self._index.pop(item.id, None)
                removed += 1
            else:
                kept.append(item)
        self._items = kept
        return removed

    def fail_interrupted(self, reason: str) -> int:
        """Fail items left executing by a previous process; they are never resent."""
        count = 0
        for item in self._items:
            if item.status == QueuedItemStatus.EXECUTING:
                self.mark_failed(item.id, reason)
                count += 1
        return count

    # ── Queries ───────────────────────────────────────────

    def get(self, item_id: str) -> Optional[QueuedItem]:
        return self._index.get(item_id)

    def all_items(self) -> list[QueuedItem]:
        return list(self._items)

    def items_for_campaign(self, campaign_id: str) -> list[QueuedItem]:
        return [item for item in self._items if item.campaign_id == campaign_id]

    def pending_count(self) -> int:
        return sum(1 for item in self._items if item.status == QueuedItemStatus.PENDING)

    def count_by_status(self) -> dict[QueuedItemStatus, int]:
        counts = {status: 0 for status in QueuedItemStatus}
        for item in self._items:
            counts[item.status] += 1
        return counts

    # ── Persistence ───────────────────────────────────────

    def serialize(self) -> list[dict[str, Any]]:
        return [item.to_dict() for item in self._items]

    @classmethod
    def deserialize(cls, data: list[dict[str, Any]]) -> SessionQueue:
        queue = cls()
        for raw in data:
            item = QueuedItem.from_dict(raw)
            if item.id in queue._index:
                logger.warning("queue_duplicate_item_skipped", item_id=item.id)
                continue
            queue._items.append(item)
            queue._index[item.id] = item
        return queue
