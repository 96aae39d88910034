"""
Core data models for the Turbozap dispatch service.
These are the universal types shared across all modules.
"""
from __future__ import annotations

from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


# ──────────────────────────────────────────────────────────────
#  Enums
# ──────────────────────────────────────────────────────────────

class QueuedItemStatus(str, Enum):
    PENDING = "pending"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (QueuedItemStatus.COMPLETED, QueuedItemStatus.FAILED)


# ──────────────────────────────────────────────────────────────
#  Dispatch job — one fully-formed request to the messaging gateway
# ──────────────────────────────────────────────────────────────

class DispatchJob(BaseModel):
    """
    A single outbound gateway request produced by the campaign generator.
    The queue and worker never look inside `data`; it is handed to the
    dispatcher untouched.
    """
    method: str = "POST"
    url: str
    headers: dict[str, str] = Field(default_factory=dict)
    data: Any = None


# ──────────────────────────────────────────────────────────────
#  API request bodies
# ──────────────────────────────────────────────────────────────

class EnqueueJobsRequest(BaseModel):
    campaign_id: str = Field(min_length=1)
    jobs: list[DispatchJob] = Field(min_length=1)
