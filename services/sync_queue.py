from __future__ import annotations

import json
import uuid
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Callable, Dict, Iterable, Iterator, List, Optional

from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session, select

from models.queue_item import (
    STATUS_COMPLETED,
    STATUS_FAILED,
    STATUS_PENDING,
    STATUS_PROCESSING,
    VALID_OPERATIONS,
    VALID_STATUSES,
    QueueItem,
)
from services.errors import EnqueueError
from storage.db import get_session
from utils.datetime_utils import ensure_utc, to_rfc3339_utc, utc_now


MAX_ERROR_LENGTH = 1000


def backoff_delay(retry_count: int, base: float = 2.0, cap: float = 300.0) -> float:
    return min(cap, base ** max(retry_count, 0))


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return to_rfc3339_utc(value) if value.tzinfo else value.isoformat()
    if isinstance(value, date):
        return value.isoformat()
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, uuid.UUID):
        return str(value)
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def serialize_payload(payload: Dict[str, Any]) -> str:
    return json.dumps(payload, ensure_ascii=False, sort_keys=True, default=_json_default)


def build_queue_row(
    source_table: str,
    record_id: Any,
    operation: str,
    payload: Optional[Dict[str, Any]] = None,
    *,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Column values for a new ``pending`` queue row."""

    if operation not in VALID_OPERATIONS:
        raise ValueError(f"Unsupported operation: {operation}")
    if not source_table:
        raise ValueError("source_table is required")
    if record_id is None or str(record_id) == "":
        raise ValueError("record_id is required")
    timestamp = now or utc_now()
    body = dict(payload or {})
    body.setdefault("document_id", str(record_id))
    return {
        "source_table": source_table,
        "record_id": str(record_id),
        "operation": operation,
        "payload": serialize_payload(body),
        "status": STATUS_PENDING,
        "retry_count": 0,
        "created_at": timestamp,
        "not_before": timestamp,
    }


@dataclass
class ClaimedItem:
    id: int
    source_table: str
    record_id: str
    operation: str
    payload: Optional[dict]
    payload_error: Optional[str]
    retry_count: int
    created_at: datetime
    claim_token: str
    claimed_by: str

    @property
    def attempt_number(self) -> int:
        return self.retry_count + 1

    @property
    def document_id(self) -> Optional[str]:
        if not self.payload:
            return None
        value = self.payload.get("document_id")
        return str(value) if value not in (None, "") else None


@dataclass
class ReclaimedItem:
    id: int
    retry_count: int
    previous_owner: Optional[str]
    failed: bool
    error: str


def _decode_payload(raw: Optional[str]) -> tuple[Optional[dict], Optional[str]]:
    try:
        data = json.loads(raw or "")
    except json.JSONDecodeError as exc:
        return None, f"malformed payload: {exc}"
    if not isinstance(data, dict):
        return None, "malformed payload: expected a JSON object"
    return data, None


class SyncQueue:
    """Queue store over the ``sync_queue`` table.

    Every method accepts an optional ``session``; when given, the work joins the
    caller's transaction and nothing is committed here.
    """

    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock

    @contextmanager
    def _scope(self, session: Optional[Session]) -> Iterator[Session]:
        if session is not None:
            yield session
            return
        with self._session_factory() as own:
            yield own
            own.commit()

    def now(self) -> datetime:
        return self._clock()

    # ----- enqueue -----
    def enqueue(
        self,
        source_table: str,
        record_id: Any,
        operation: str,
        payload: Optional[Dict[str, Any]] = None,
        *,
        session: Optional[Session] = None,
    ) -> QueueItem:
        values = build_queue_row(source_table, record_id, operation, payload, now=self._clock())
        record = QueueItem(**values)
        try:
            if session is not None:
                session.add(record)
                session.flush()
            else:
                with self._session_factory() as s:
                    s.add(record)
                    s.commit()
                    s.refresh(record)
        except SQLAlchemyError as exc:
            raise EnqueueError(f"Failed to enqueue {operation} for {source_table}/{record_id}: {exc}") from exc
        return record

    # ----- claiming -----
    def claim(
        self,
        worker_id: str,
        limit: int,
        *,
        session: Optional[Session] = None,
    ) -> List[ClaimedItem]:
        """Atomically move up to ``limit`` due items to ``processing``.

        The claim is a single conditional UPDATE: only rows still ``pending``
        are taken, so concurrent workers never end up owning the same row.
        """

        now = self._clock()
        token = f"{worker_id}:{uuid.uuid4().hex}"
        candidates = (
            select(QueueItem.id)
            .where(QueueItem.status == STATUS_PENDING, QueueItem.not_before <= now)
            .order_by(QueueItem.created_at.asc(), QueueItem.id.asc())
            .limit(limit)
            .with_for_update(skip_locked=True)
        )
        stmt = (
            update(QueueItem)
            .where(QueueItem.id.in_(candidates), QueueItem.status == STATUS_PENDING)
            .values(
                status=STATUS_PROCESSING,
                claim_token=token,
                claimed_by=worker_id,
                claimed_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        with self._scope(session) as s:
            s.exec(stmt)
            rows = s.exec(
                select(QueueItem)
                .where(QueueItem.claim_token == token, QueueItem.status == STATUS_PROCESSING)
                .order_by(QueueItem.created_at.asc(), QueueItem.id.asc())
            ).all()
            claimed = []
            for row in rows:
                payload, payload_error = _decode_payload(row.payload)
                claimed.append(
                    ClaimedItem(
                        id=row.id,
                        source_table=row.source_table,
                        record_id=row.record_id,
                        operation=row.operation,
                        payload=payload,
                        payload_error=payload_error,
                        retry_count=row.retry_count,
                        created_at=row.created_at,
                        claim_token=token,
                        claimed_by=worker_id,
                    )
                )
        return claimed

    def _release_claim(self, session: Session, item_id: int, token: str, **values: Any) -> bool:
        stmt = (
            update(QueueItem)
            .where(
                QueueItem.id == item_id,
                QueueItem.status == STATUS_PROCESSING,
                QueueItem.claim_token == token,
            )
            .values(claim_token=None, claimed_by=None, claimed_at=None, **values)
            .execution_options(synchronize_session=False)
        )
        return session.exec(stmt).rowcount == 1

    # ----- transitions out of processing -----
    def mark_completed(self, session: Session, item: ClaimedItem) -> bool:
        return self._release_claim(
            session,
            item.id,
            item.claim_token,
            status=STATUS_COMPLETED,
            processed_at=self._clock(),
            last_error=None,
        )

    def mark_retry(
        self,
        session: Session,
        item: ClaimedItem,
        *,
        retry_count: int,
        error: str,
        not_before: datetime,
    ) -> bool:
        return self._release_claim(
            session,
            item.id,
            item.claim_token,
            status=STATUS_PENDING,
            retry_count=retry_count,
            last_error=error[:MAX_ERROR_LENGTH],
            not_before=not_before,
        )

    def mark_failed(self, session: Session, item: ClaimedItem, *, retry_count: int, error: str) -> bool:
        return self._release_claim(
            session,
            item.id,
            item.claim_token,
            status=STATUS_FAILED,
            retry_count=retry_count,
            last_error=error[:MAX_ERROR_LENGTH],
            processed_at=self._clock(),
        )

    def reclaim_expired(
        self,
        session: Session,
        *,
        claim_timeout: float,
        max_retries: int,
        backoff_base: float = 2.0,
        backoff_cap: float = 300.0,
    ) -> List[ReclaimedItem]:
        """Return abandoned ``processing`` rows to the queue, charging one retry."""

        now = self._clock()
        cutoff = now - timedelta(seconds=claim_timeout)
        rows = session.exec(
            select(QueueItem)
            .where(QueueItem.status == STATUS_PROCESSING, QueueItem.claimed_at < cutoff)
            .order_by(QueueItem.id.asc())
        ).all()

        reclaimed: List[ReclaimedItem] = []
        for row in rows:
            retry_count = row.retry_count + 1
            error = (
                f"claim expired: held by {row.claimed_by or 'unknown'} "
                f"since {to_rfc3339_utc(ensure_utc(row.claimed_at))}"
            )
            failed = retry_count >= max_retries
            values: Dict[str, Any] = {
                "retry_count": retry_count,
                "last_error": error[:MAX_ERROR_LENGTH],
            }
            if failed:
                values.update(status=STATUS_FAILED, processed_at=now)
            else:
                delay = backoff_delay(retry_count, backoff_base, backoff_cap)
                values.update(status=STATUS_PENDING, not_before=now + timedelta(seconds=delay))
            if self._release_claim(session, row.id, row.claim_token, **values):
                reclaimed.append(
                    ReclaimedItem(
                        id=row.id,
                        retry_count=retry_count,
                        previous_owner=row.claimed_by,
                        failed=failed,
                        error=error,
                    )
                )
        return reclaimed

    def latest_live_ids(
        self,
        session: Session,
        source_table: str,
        record_ids: Iterable[str],
    ) -> Dict[str, int]:
        """Highest queue id per record among items that are not ``failed``."""

        ids = sorted(set(record_ids))
        if not ids:
            return {}
        stmt = (
            select(QueueItem.record_id, func.max(QueueItem.id))
            .where(
                QueueItem.source_table == source_table,
                QueueItem.record_id.in_(ids),
                QueueItem.status.in_((STATUS_PENDING, STATUS_PROCESSING, STATUS_COMPLETED)),
            )
            .group_by(QueueItem.record_id)
        )
        return {record_id: int(latest) for record_id, latest in session.exec(stmt)}

    # ----- administration -----
    def reset_failed(
        self,
        *,
        source_table: Optional[str] = None,
        item_ids: Optional[Iterable[int]] = None,
        session: Optional[Session] = None,
    ) -> int:
        """Revive ``failed`` items: back to ``pending`` with a fresh retry budget."""

        conditions = [QueueItem.status == STATUS_FAILED]
        if source_table:
            conditions.append(QueueItem.source_table == source_table)
        if item_ids is not None:
            ids = list(item_ids)
            if not ids:
                return 0
            conditions.append(QueueItem.id.in_(ids))
        stmt = (
            update(QueueItem)
            .where(*conditions)
            .values(
                status=STATUS_PENDING,
                retry_count=0,
                last_error=None,
                processed_at=None,
                not_before=self._clock(),
            )
            .execution_options(synchronize_session=False)
        )
        with self._scope(session) as s:
            return int(s.exec(stmt).rowcount or 0)

    def get(self, item_id: int) -> Optional[QueueItem]:
        with self._session_factory() as session:
            return session.get(QueueItem, item_id)

    def list_by_status(self, status: str, limit: int = 50) -> List[QueueItem]:
        if status not in VALID_STATUSES:
            raise ValueError(f"Unknown status: {status}")
        with self._session_factory() as session:
            stmt = (
                select(QueueItem)
                .where(QueueItem.status == status)
                .order_by(QueueItem.created_at.asc(), QueueItem.id.asc())
                .limit(limit)
            )
            return list(session.exec(stmt))

    def counts_by_status(self) -> Dict[str, int]:
        counts = {status: 0 for status in VALID_STATUSES}
        with self._session_factory() as session:
            stmt = select(QueueItem.status, func.count()).group_by(QueueItem.status)
            for status, total in session.exec(stmt):
                counts[status] = int(total)
        return counts

    def retry_histogram(self) -> Dict[int, int]:
        with self._session_factory() as session:
            stmt = (
                select(QueueItem.retry_count, func.count())
                .group_by(QueueItem.retry_count)
                .order_by(QueueItem.retry_count)
            )
            return {int(retries): int(total) for retries, total in session.exec(stmt)}

    def oldest_pending_created_at(self) -> Optional[datetime]:
        with self._session_factory() as session:
            stmt = select(func.min(QueueItem.created_at)).where(QueueItem.status == STATUS_PENDING)
            return ensure_utc(session.exec(stmt).one())

    def count(self) -> int:
        with self._session_factory() as session:
            return int(session.exec(select(func.count()).select_from(QueueItem)).one())


__all__ = [
    "SyncQueue",
    "ClaimedItem",
    "ReclaimedItem",
    "backoff_delay",
    "build_queue_row",
    "serialize_payload",
]
