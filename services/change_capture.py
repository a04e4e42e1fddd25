"""Outbox capture of source-table mutations through SQLAlchemy flush events.

The enqueue is written with the flushing session's own connection, so the
queue row commits or rolls back together with the mutation that caused it.
If the insert fails the flush raises and the mutation does not commit.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Tuple, Type

from sqlalchemy import event, insert, inspect as sa_inspect, select
from sqlalchemy.exc import SQLAlchemyError
from sqlmodel import Session

from core.settings import CAPTURE, CaptureSettings
from models.index_config import IndexConfig
from models.queue_item import OP_DELETE, OP_INSERT, OP_UPDATE, QueueItem
from services.errors import EnqueueError
from services.sync_queue import build_queue_row
from utils.datetime_utils import utc_now


@dataclass(frozen=True)
class SourceBinding:
    model: type
    source_table: str
    key_column: str = "id"

    def record_id(self, obj: Any) -> Any:
        state = sa_inspect(obj)
        # expired rows that were just deleted cannot be reloaded; use the identity key
        if self.key_column not in state.dict and state.identity is not None:
            if [col.key for col in state.mapper.primary_key] == [self.key_column]:
                return state.identity[0]
        return getattr(obj, self.key_column)

    def snapshot(self, obj: Any) -> Dict[str, Any]:
        mapper = sa_inspect(obj).mapper
        return {attr.key: getattr(obj, attr.key) for attr in mapper.column_attrs}


class ChangeCapture:
    def __init__(self, settings: CaptureSettings = CAPTURE) -> None:
        self.settings = settings
        self._sources: Dict[type, SourceBinding] = {}
        # keep one bound method so the listener can be found again for removal
        self._listener = self._after_flush

    # ----- registration -----
    def register_source(
        self,
        model: type,
        *,
        source_table: Optional[str] = None,
        key_column: str = "id",
    ) -> SourceBinding:
        table_name = source_table or getattr(model, "__tablename__", None)
        if not table_name:
            raise ValueError(f"Cannot determine source table for {model!r}")
        binding = SourceBinding(model=model, source_table=str(table_name), key_column=key_column)
        self._sources[model] = binding
        return binding

    def unregister_source(self, model: type) -> None:
        self._sources.pop(model, None)

    def sources(self) -> List[SourceBinding]:
        return list(self._sources.values())

    def install(self, session_class: Type[Session] = Session) -> None:
        if self.settings.mode != "orm":
            return
        if not event.contains(session_class, "after_flush", self._listener):
            event.listen(session_class, "after_flush", self._listener)

    def uninstall(self, session_class: Type[Session] = Session) -> None:
        if event.contains(session_class, "after_flush", self._listener):
            event.remove(session_class, "after_flush", self._listener)

    # ----- flush hook -----
    def _binding_for(self, obj: Any) -> Optional[SourceBinding]:
        return self._sources.get(type(obj))

    def _collect(self, session) -> List[Tuple[SourceBinding, Any, str]]:
        events: List[Tuple[SourceBinding, Any, str]] = []
        for obj in session.new:
            binding = self._binding_for(obj)
            if binding:
                events.append((binding, obj, OP_INSERT))
        for obj in session.dirty:
            binding = self._binding_for(obj)
            if binding and session.is_modified(obj, include_collections=False):
                events.append((binding, obj, OP_UPDATE))
        for obj in session.deleted:
            binding = self._binding_for(obj)
            if binding:
                events.append((binding, obj, OP_DELETE))
        return events

    def _after_flush(self, session, flush_context) -> None:
        events = self._collect(session)
        if not events:
            return

        connection = session.connection()
        tables = {binding.source_table for binding, _, _ in events}
        config_table = IndexConfig.__table__
        enabled_by_table = dict(
            connection.execute(
                select(config_table.c.source_table, config_table.c.is_enabled).where(
                    config_table.c.source_table.in_(tables)
                )
            ).all()
        )

        now = utc_now()
        rows = []
        for binding, obj, operation in events:
            enabled = enabled_by_table.get(binding.source_table)
            if enabled is None:
                continue
            if not enabled and not self.settings.enqueue_when_disabled:
                continue
            record_id = binding.record_id(obj)
            if operation == OP_DELETE:
                payload = {"document_id": str(record_id), binding.key_column: record_id}
            else:
                payload = binding.snapshot(obj)
                payload["document_id"] = str(record_id)
            rows.append(build_queue_row(binding.source_table, record_id, operation, payload, now=now))

        if not rows:
            return
        try:
            connection.execute(insert(QueueItem.__table__), rows)
        except SQLAlchemyError as exc:
            raise EnqueueError(f"Change capture failed for {sorted(tables)}: {exc}") from exc


CHANGE_CAPTURE = ChangeCapture()


def register_source(model: type, *, source_table: Optional[str] = None, key_column: str = "id") -> SourceBinding:
    return CHANGE_CAPTURE.register_source(model, source_table=source_table, key_column=key_column)


def install_change_capture(session_class: Type[Session] = Session) -> None:
    CHANGE_CAPTURE.install(session_class)


__all__ = [
    "ChangeCapture",
    "SourceBinding",
    "CHANGE_CAPTURE",
    "install_change_capture",
    "register_source",
]
