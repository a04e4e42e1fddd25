"""Operator controls and health metrics for the sync pipeline."""

from __future__ import annotations

from datetime import datetime, timedelta
from typing import Callable, Dict, Iterable, List, Optional

from sqlalchemy import MetaData, Table, select
from sqlmodel import Session, SQLModel

from models.index_config import IndexConfig
from models.queue_item import OP_UPDATE, STATUS_FAILED, STATUS_PENDING, QueueItem
from models.sync_log import OUTCOME_FAILURE, OUTCOME_SUCCESS, SyncLogEntry
from services.index_configs import IndexConfigRegistry
from services.sync_log import SyncLog
from services.sync_queue import SyncQueue, build_queue_row
from storage.db import get_session
from utils.datetime_utils import seconds_between, to_rfc3339_utc, utc_now


class SyncAdmin:
    def __init__(
        self,
        session_factory: Callable[[], Session] = get_session,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        self._session_factory = session_factory
        self._clock = clock
        self.queue = SyncQueue(session_factory, clock)
        self.configs = IndexConfigRegistry(session_factory)
        self.sync_log = SyncLog(session_factory)

    # ----- configuration -----
    def list_configs(self) -> List[IndexConfig]:
        return self.configs.list()

    def upsert_config(
        self,
        source_table: str,
        index_name: Optional[str] = None,
        *,
        transform_selector: Optional[str] = None,
        batch_size: Optional[int] = None,
        is_enabled: Optional[bool] = None,
    ) -> IndexConfig:
        return self.configs.upsert(
            source_table,
            index_name=index_name,
            transform_selector=transform_selector,
            batch_size=batch_size,
            is_enabled=is_enabled,
        )

    def set_enabled(self, source_table: str, enabled: bool) -> IndexConfig:
        return self.configs.set_enabled(source_table, enabled)

    # ----- queue -----
    def reset_failed(
        self,
        *,
        source_table: Optional[str] = None,
        item_ids: Optional[Iterable[int]] = None,
    ) -> int:
        return self.queue.reset_failed(source_table=source_table, item_ids=item_ids)

    def queue_depth(self) -> Dict[str, int]:
        return self.queue.counts_by_status()

    def item_history(self, item_id: int) -> List[SyncLogEntry]:
        return self.sync_log.history(item_id)

    def failed_items(self, limit: int = 50) -> List[QueueItem]:
        return self.queue.list_by_status(STATUS_FAILED, limit=limit)

    def reindex_table(self, source_table: str, *, key_column: str = "id") -> int:
        """Queue an UPDATE for every row of ``source_table`` in one transaction."""

        if self.configs.get(source_table) is None:
            raise KeyError(f"No index config for table: {source_table}")
        table = SQLModel.metadata.tables.get(source_table)
        now = self._clock()
        with self._session_factory() as session:
            if table is None:
                table = Table(source_table, MetaData(), autoload_with=session.connection())
            if key_column not in table.c:
                raise ValueError(f"Table {source_table!r} has no column {key_column!r}")
            count = 0
            for row in session.connection().execute(select(table).order_by(table.c[key_column])):
                data = dict(row._mapping)
                record_id = data[key_column]
                data["document_id"] = str(record_id)
                session.add(QueueItem(**build_queue_row(source_table, record_id, OP_UPDATE, data, now=now)))
                count += 1
            session.commit()
        return count

    # ----- metrics -----
    def metrics(self, *, window: Optional[timedelta] = None) -> Dict[str, object]:
        now = self._clock()
        since = now - window if window else None
        oldest = self.queue.oldest_pending_created_at()
        outcomes = self.sync_log.outcome_counts(since)
        failures = self.sync_log.failures_by_category(since)
        attempts = outcomes[OUTCOME_SUCCESS] + outcomes[OUTCOME_FAILURE]
        return {
            "countsByStatus": self.queue.counts_by_status(),
            "retryHistogram": self.queue.retry_histogram(),
            "oldestPendingAt": to_rfc3339_utc(oldest),
            "oldestPendingAgeSeconds": seconds_between(oldest, now),
            "attempts": attempts,
            "failuresByCategory": failures,
            "failureRateByCategory": {
                category: (total / attempts if attempts else 0.0) for category, total in failures.items()
            },
            "failureRate": (outcomes[OUTCOME_FAILURE] / attempts) if attempts else 0.0,
        }

    def status(self) -> Dict[str, object]:
        depth = self.queue_depth()
        return {
            "queueDepth": depth,
            "pending": depth.get(STATUS_PENDING, 0),
            "failed": depth.get(STATUS_FAILED, 0),
            "configs": [
                {
                    "sourceTable": cfg.source_table,
                    "indexName": cfg.index_name,
                    "isEnabled": cfg.is_enabled,
                    "transform": cfg.transform_selector,
                    "batchSize": cfg.batch_size,
                }
                for cfg in self.list_configs()
            ],
        }


__all__ = ["SyncAdmin"]
