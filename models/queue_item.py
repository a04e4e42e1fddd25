"""SQLModel table for pending index propagations (the outbox)."""

from __future__ import annotations

from datetime import datetime
from typing import Optional

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


OP_INSERT = "INSERT"
OP_UPDATE = "UPDATE"
OP_DELETE = "DELETE"
VALID_OPERATIONS = {OP_INSERT, OP_UPDATE, OP_DELETE}

STATUS_PENDING = "pending"
STATUS_PROCESSING = "processing"
STATUS_COMPLETED = "completed"
STATUS_FAILED = "failed"
VALID_STATUSES = (STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED, STATUS_FAILED)


class QueueItem(SQLModel, table=True):
    __tablename__ = "sync_queue"

    id: Optional[int] = Field(default=None, primary_key=True)
    source_table: str = Field(index=True)
    record_id: str = Field(index=True)
    operation: str
    payload: str
    status: str = Field(default=STATUS_PENDING, index=True)
    retry_count: int = Field(default=0)
    last_error: Optional[str] = None
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    processed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))
    not_before: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    # claim marker, set only while processing
    claimed_by: Optional[str] = None
    claim_token: Optional[str] = Field(default=None, index=True)
    claimed_at: Optional[datetime] = Field(default=None, sa_type=DateTime(timezone=True))


__all__ = [
    "QueueItem",
    "OP_INSERT",
    "OP_UPDATE",
    "OP_DELETE",
    "VALID_OPERATIONS",
    "STATUS_PENDING",
    "STATUS_PROCESSING",
    "STATUS_COMPLETED",
    "STATUS_FAILED",
    "VALID_STATUSES",
]
