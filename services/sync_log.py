"""Append-only access to the ``sync_log`` audit trail."""

from __future__ import annotations

from datetime import datetime
from typing import Callable, Dict, List, Optional

from sqlalchemy import func
from sqlmodel import Session, select

from models.sync_log import OUTCOME_FAILURE, OUTCOME_SUCCESS, SyncLogEntry
from storage.db import get_session


class SyncLog:
    def __init__(self, session_factory: Callable[[], Session] = get_session) -> None:
        self._session_factory = session_factory

    def append(
        self,
        session: Session,
        *,
        queue_item_id: int,
        attempt_number: int,
        outcome: str,
        error_category: Optional[str] = None,
        error_detail: Optional[str] = None,
        worker_id: Optional[str] = None,
        timestamp: Optional[datetime] = None,
    ) -> SyncLogEntry:
        """Stage a new entry in ``session``; the caller commits it with the status change."""

        if outcome not in (OUTCOME_SUCCESS, OUTCOME_FAILURE):
            raise ValueError(f"Unsupported outcome: {outcome}")
        entry = SyncLogEntry(
            queue_item_id=queue_item_id,
            attempt_number=attempt_number,
            outcome=outcome,
            error_category=error_category,
            error_detail=error_detail,
            worker_id=worker_id,
        )
        if timestamp is not None:
            entry.timestamp = timestamp
        session.add(entry)
        return entry

    def history(self, queue_item_id: int) -> List[SyncLogEntry]:
        with self._session_factory() as session:
            stmt = (
                select(SyncLogEntry)
                .where(SyncLogEntry.queue_item_id == queue_item_id)
                .order_by(SyncLogEntry.id.asc())
            )
            return list(session.exec(stmt))

    def outcome_counts(self, since: Optional[datetime] = None) -> Dict[str, int]:
        counts = {OUTCOME_SUCCESS: 0, OUTCOME_FAILURE: 0}
        with self._session_factory() as session:
            stmt = select(SyncLogEntry.outcome, func.count()).group_by(SyncLogEntry.outcome)
            if since is not None:
                stmt = stmt.where(SyncLogEntry.timestamp >= since)
            for outcome, total in session.exec(stmt):
                counts[outcome] = int(total)
        return counts

    def failures_by_category(self, since: Optional[datetime] = None) -> Dict[str, int]:
        with self._session_factory() as session:
            stmt = (
                select(SyncLogEntry.error_category, func.count())
                .where(SyncLogEntry.outcome == OUTCOME_FAILURE)
                .group_by(SyncLogEntry.error_category)
            )
            if since is not None:
                stmt = stmt.where(SyncLogEntry.timestamp >= since)
            return {category or "unknown": int(total) for category, total in session.exec(stmt)}


__all__ = ["SyncLog"]
