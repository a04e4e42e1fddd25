from __future__ import annotations
import logging
import os
import socket
import threading
import time
import traceback
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta
from logging.handlers import RotatingFileHandler
from typing import Callable, Dict, List, Optional, Tuple

from sqlmodel import Session

from core.settings import SYNC_LOG_PATH, WORKER, WorkerSettings
from models.index_config import IndexConfig
from models.queue_item import OP_DELETE
from models.sync_log import (
    CATEGORY_CLAIM_TIMEOUT,
    CATEGORY_SKIPPED,
    CATEGORY_SUPERSEDED,
    OUTCOME_FAILURE,
    OUTCOME_SUCCESS,
)
from services.errors import (
    PERMANENT,
    IndexServiceError,
    TransformError,
    TransientIndexError,
    classify_error,
)
from services.index_client import BatchResult, IndexClient
from services.index_configs import IndexConfigRegistry
from services.sync_log import SyncLog
from services.sync_queue import ClaimedItem, SyncQueue, backoff_delay
from services.transforms import TransformRegistry, default_registry
from storage.db import get_session
from utils.datetime_utils import utc_now


def _ensure_logger() -> logging.Logger:
    logger = logging.getLogger("indexsync.sync")
    if not logger.handlers:
        SYNC_LOG_PATH.parent.mkdir(parents=True, exist_ok=True)
        handler = RotatingFileHandler(SYNC_LOG_PATH, maxBytes=1_000_000, backupCount=3, encoding="utf-8")
        formatter = logging.Formatter("%(asctime)s [%(levelname)s] %(message)s")
        handler.setFormatter(formatter)
        logger.addHandler(handler)
    logger.setLevel(logging.INFO)
    return logger


def default_worker_id() -> str:
    return f"{socket.gethostname()}-{os.getpid()}-{uuid.uuid4().hex[:8]}"


def _error_detail(exc: BaseException) -> str:
    return "".join(traceback.format_exception(type(exc), exc, exc.__traceback__)).strip()


def _group_by_table(items: List[ClaimedItem]) -> List[Tuple[str, List[ClaimedItem]]]:
    groups: Dict[str, List[ClaimedItem]] = {}
    for item in items:
        groups.setdefault(item.source_table, []).append(item)
    return list(groups.items())


@dataclass
class PassResult:
    claimed: int = 0
    completed: int = 0
    skipped: int = 0
    superseded: int = 0
    retried: int = 0
    failed: int = 0
    reclaimed: int = 0
    lost: int = 0
    abandoned: int = 0

    @property
    def recorded(self) -> int:
        return self.completed + self.skipped + self.superseded + self.retried + self.failed + self.lost


class SyncWorker:
    """Claims queue items, pushes them to the index and records each attempt."""

    def __init__(
        self,
        client: IndexClient,
        *,
        settings: WorkerSettings = WORKER,
        session_factory: Callable[[], Session] = get_session,
        queue: Optional[SyncQueue] = None,
        configs: Optional[IndexConfigRegistry] = None,
        sync_log: Optional[SyncLog] = None,
        transforms: Optional[TransformRegistry] = None,
        clock: Callable[[], datetime] = utc_now,
        monotonic: Callable[[], float] = time.monotonic,
        worker_id: Optional[str] = None,
    ) -> None:
        self.client = client
        self.settings = settings
        self._session_factory = session_factory
        self._clock = clock
        self._monotonic = monotonic
        self.queue = queue or SyncQueue(session_factory, clock)
        self.configs = configs or IndexConfigRegistry(session_factory)
        self.sync_log = sync_log or SyncLog(session_factory)
        self.transforms = transforms or default_registry()
        self.worker_id = worker_id or default_worker_id()
        self.logger = _ensure_logger()
        self._stop = threading.Event()
        self._stop_requested_at: Optional[float] = None

    # ------------------------------------------------------------------
    # Lifecycle
    def stop(self) -> None:
        if not self._stop.is_set():
            self.logger.info("Stopping worker %s", self.worker_id)
            self._stop_requested_at = self._monotonic()
            self._stop.set()

    @property
    def stopping(self) -> bool:
        return self._stop.is_set()

    def _shutdown_expired(self) -> bool:
        if self._stop_requested_at is None:
            return False
        return self._monotonic() - self._stop_requested_at > self.settings.shutdown_timeout

    def run_forever(self) -> None:
        self.logger.info(
            "Sync worker %s started (batch_size=%s, poll_interval=%ss, max_retries=%s)",
            self.worker_id,
            self.settings.batch_size,
            self.settings.poll_interval,
            self.settings.max_retries,
        )
        while not self._stop.is_set():
            full_batch = False
            try:
                result = self.run_once()
                full_batch = result.claimed >= self.settings.batch_size
            except Exception as exc:  # keep polling after unexpected errors
                self.logger.exception("Unexpected error in worker loop: %s", exc)
            if not full_batch:
                self._stop.wait(self.settings.poll_interval)
        self.logger.info("Worker %s stopped", self.worker_id)

    def close(self) -> None:
        self.client.close()

    # ------------------------------------------------------------------
    # One polling pass
    def run_once(self) -> PassResult:
        result = PassResult()
        self._reclaim_expired(result)
        if self._stop.is_set():
            return result

        with self._session_factory() as session:
            items = self.queue.claim(self.worker_id, self.settings.batch_size, session=session)
            session.commit()
        result.claimed = len(items)
        if not items:
            return result

        self.logger.info("Processing sync batch of %d items", len(items))
        for source_table, group in _group_by_table(items):
            if self._shutdown_expired():
                break
            self._process_group(source_table, group, result)
        result.abandoned = result.claimed - result.recorded
        if result.abandoned:
            self.logger.warning(
                "Shutdown timeout reached, leaving %d claimed items for reclamation", result.abandoned
            )

        self.logger.info(
            "Batch processing completed: total=%d completed=%d skipped=%d superseded=%d retried=%d failed=%d lost=%d",
            result.claimed,
            result.completed,
            result.skipped,
            result.superseded,
            result.retried,
            result.failed,
            result.lost,
        )
        return result

    def _reclaim_expired(self, result: PassResult) -> None:
        now = self._clock()
        with self._session_factory() as session:
            reclaimed = self.queue.reclaim_expired(
                session,
                claim_timeout=self.settings.claim_timeout,
                max_retries=self.settings.max_retries,
                backoff_base=self.settings.backoff_base,
                backoff_cap=self.settings.backoff_cap,
            )
            for entry in reclaimed:
                self.sync_log.append(
                    session,
                    queue_item_id=entry.id,
                    attempt_number=entry.retry_count,
                    outcome=OUTCOME_FAILURE,
                    error_category=CATEGORY_CLAIM_TIMEOUT,
                    error_detail=entry.error,
                    worker_id=self.worker_id,
                    timestamp=now,
                )
            session.commit()
        for entry in reclaimed:
            self.logger.warning(
                "Reclaimed item %s from %s (retry %d%s)",
                entry.id,
                entry.previous_owner,
                entry.retry_count,
                ", now failed" if entry.failed else "",
            )
        result.reclaimed = len(reclaimed)

    def _process_group(self, source_table: str, group: List[ClaimedItem], result: PassResult) -> None:
        config = self.configs.get(source_table)
        if config is None or not config.is_enabled:
            reason = "no index config" if config is None else "sync disabled"
            note = f"skipped: {reason} for table {source_table}"
            self.logger.warning("%s (%d items)", note, len(group))
            for item in group:
                self._record_success(item, result, note=note, category=CATEGORY_SKIPPED)
            return

        try:
            transform = self.transforms.get(config.transform_selector)
        except TransformError as exc:
            for item in group:
                self._record_failure(item, exc, result)
            return

        # a newer live item for the same row carries the newer state
        with self._session_factory() as session:
            latest = self.queue.latest_live_ids(session, source_table, (item.record_id for item in group))

        pending: List[Tuple[ClaimedItem, dict]] = []
        for item in group:
            if self._shutdown_expired():
                return
            newer = latest.get(item.record_id, item.id)
            if newer > item.id:
                self._record_success(
                    item, result, note=f"superseded by item {newer}", category=CATEGORY_SUPERSEDED
                )
                continue
            if item.payload_error or item.document_id is None:
                reason = item.payload_error or "payload has no document_id"
                self._record_failure(item, TransformError(reason), result)
                continue
            if item.operation == OP_DELETE:
                self._push_upserts(config, pending, result)
                pending = []
                self._push_delete(config, item, result)
                continue
            try:
                document = transform.apply(item.payload)
            except TransformError as exc:
                self._record_failure(item, exc, result)
                continue
            pending.append((item, document))
            if len(pending) >= config.batch_size:
                self._push_upserts(config, pending, result)
                pending = []
        self._push_upserts(config, pending, result)

    # ------------------------------------------------------------------
    # Index calls
    def _push_upserts(
        self, config: IndexConfig, pending: List[Tuple[ClaimedItem, dict]], result: PassResult
    ) -> None:
        if not pending:
            return
        documents = [(item.document_id, document) for item, document in pending]
        try:
            if len(documents) == 1:
                self.client.upsert(config.index_name, documents[0][0], documents[0][1])
                outcomes = [BatchResult(documents[0][0])]
            else:
                outcomes = self.client.batch_upsert(config.index_name, documents)
        except IndexServiceError as exc:
            outcomes = [BatchResult(document_id, exc) for document_id, _ in documents]
        except Exception as exc:  # unknown client failures are retried
            self.logger.exception("Index client crashed on %s: %s", config.index_name, exc)
            outcomes = [BatchResult(document_id, TransientIndexError(str(exc))) for document_id, _ in documents]

        if len(outcomes) != len(pending):
            error = TransientIndexError(
                f"index returned {len(outcomes)} results for {len(pending)} documents"
            )
            outcomes = [BatchResult(document_id, error) for document_id, _ in documents]

        for (item, _), outcome in zip(pending, outcomes):
            if outcome.ok and outcome.document_id == item.document_id:
                self._record_success(item, result)
            else:
                error = outcome.error or TransientIndexError(
                    f"index result for {outcome.document_id} does not match {item.document_id}"
                )
                self._record_failure(item, error, result)

    def _push_delete(self, config: IndexConfig, item: ClaimedItem, result: PassResult) -> None:
        try:
            self.client.delete(config.index_name, item.document_id)
        except Exception as exc:  # classified below; unknown errors are transient
            self._record_failure(item, exc, result)
            return
        self._record_success(item, result)

    # ------------------------------------------------------------------
    # Outcome recording
    def _claim_lost(self, item: ClaimedItem, result: PassResult) -> None:
        result.lost += 1
        self.logger.warning("Claim on item %s was lost before its outcome was recorded", item.id)

    def _record_success(
        self,
        item: ClaimedItem,
        result: PassResult,
        *,
        note: Optional[str] = None,
        category: Optional[str] = None,
    ) -> None:
        with self._session_factory() as session:
            if not self.queue.mark_completed(session, item):
                session.rollback()
                self._claim_lost(item, result)
                return
            self.sync_log.append(
                session,
                queue_item_id=item.id,
                attempt_number=item.attempt_number,
                outcome=OUTCOME_SUCCESS,
                error_category=category,
                error_detail=note,
                worker_id=self.worker_id,
                timestamp=self._clock(),
            )
            session.commit()
        if category == CATEGORY_SKIPPED:
            result.skipped += 1
        elif category == CATEGORY_SUPERSEDED:
            result.superseded += 1
        else:
            result.completed += 1

    def _record_failure(self, item: ClaimedItem, exc: BaseException, result: PassResult) -> None:
        category = classify_error(exc)
        retry_count = item.retry_count + 1
        message = f"{type(exc).__name__}: {exc}"
        terminal = category == PERMANENT or retry_count >= self.settings.max_retries
        now = self._clock()

        with self._session_factory() as session:
            if terminal:
                updated = self.queue.mark_failed(session, item, retry_count=retry_count, error=message)
            else:
                delay = backoff_delay(retry_count, self.settings.backoff_base, self.settings.backoff_cap)
                updated = self.queue.mark_retry(
                    session,
                    item,
                    retry_count=retry_count,
                    error=message,
                    not_before=now + timedelta(seconds=delay),
                )
            if not updated:
                session.rollback()
                self._claim_lost(item, result)
                return
            self.sync_log.append(
                session,
                queue_item_id=item.id,
                attempt_number=item.attempt_number,
                outcome=OUTCOME_FAILURE,
                error_category=category,
                error_detail=_error_detail(exc),
                worker_id=self.worker_id,
                timestamp=now,
            )
            session.commit()

        if terminal:
            result.failed += 1
            self.logger.error(
                "Item %s (%s/%s) failed permanently after %d attempts: %s",
                item.id,
                item.source_table,
                item.record_id,
                retry_count,
                message,
            )
        else:
            result.retried += 1
            self.logger.warning("Item %s attempt %d failed, will retry: %s", item.id, retry_count, message)


__all__ = ["SyncWorker", "PassResult", "SYNC_LOG_PATH", "default_worker_id"]
