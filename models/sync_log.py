"""Append-only audit trail of sync attempts."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


OUTCOME_SUCCESS = "success"
OUTCOME_FAILURE = "failure"

CATEGORY_TRANSIENT = "transient"
CATEGORY_PERMANENT = "permanent"
CATEGORY_CLAIM_TIMEOUT = "claim_timeout"
CATEGORY_SKIPPED = "skipped"
CATEGORY_SUPERSEDED = "superseded"


class SyncLogEntry(SQLModel, table=True):
    __tablename__ = "sync_log"

    id: Optional[int] = Field(default=None, primary_key=True)
    queue_item_id: int = Field(index=True, foreign_key="sync_queue.id")
    attempt_number: int
    outcome: str
    error_category: Optional[str] = Field(default=None, index=True)
    error_detail: Optional[str] = None
    worker_id: Optional[str] = None
    timestamp: datetime = Field(default_factory=utc_now, index=True, sa_type=DateTime(timezone=True))


__all__ = [
    "SyncLogEntry",
    "OUTCOME_SUCCESS",
    "OUTCOME_FAILURE",
    "CATEGORY_TRANSIENT",
    "CATEGORY_PERMANENT",
    "CATEGORY_CLAIM_TIMEOUT",
    "CATEGORY_SKIPPED",
    "CATEGORY_SUPERSEDED",
]
