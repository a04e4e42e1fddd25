"""Persistence helpers for the index configuration registry."""

from __future__ import annotations

from typing import Callable, List, Optional

from sqlmodel import Session, select

from models.index_config import IndexConfig
from storage.db import get_session
from utils.datetime_utils import utc_now


class IndexConfigRegistry:
    """Wrapper around SQLModel session for ``index_config`` rows."""

    def __init__(self, session_factory: Callable[[], Session] = get_session) -> None:
        self._session_factory = session_factory

    def get(self, source_table: str) -> Optional[IndexConfig]:
        with self._session_factory() as session:
            return session.get(IndexConfig, source_table)

    def list(self) -> List[IndexConfig]:
        with self._session_factory() as session:
            stmt = select(IndexConfig).order_by(IndexConfig.source_table)
            return list(session.exec(stmt))

    def upsert(
        self,
        source_table: str,
        *,
        index_name: Optional[str] = None,
        transform_selector: Optional[str] = None,
        batch_size: Optional[int] = None,
        is_enabled: Optional[bool] = None,
    ) -> IndexConfig:
        if batch_size is not None and batch_size < 1:
            raise ValueError("batch_size must be at least 1")
        with self._session_factory() as session:
            config = session.get(IndexConfig, source_table)
            if config is None:
                if not index_name:
                    raise ValueError(f"index_name is required for new table {source_table!r}")
                config = IndexConfig(source_table=source_table, index_name=index_name)
            if index_name is not None:
                config.index_name = index_name
            if transform_selector is not None:
                config.transform_selector = transform_selector
            if batch_size is not None:
                config.batch_size = batch_size
            if is_enabled is not None:
                config.is_enabled = is_enabled
            config.updated_at = utc_now()
            session.add(config)
            session.commit()
            session.refresh(config)
            return config

    def set_enabled(self, source_table: str, enabled: bool) -> IndexConfig:
        with self._session_factory() as session:
            config = session.get(IndexConfig, source_table)
            if config is None:
                raise KeyError(f"No index config for table: {source_table}")
            config.is_enabled = enabled
            config.updated_at = utc_now()
            session.add(config)
            session.commit()
            session.refresh(config)
            return config

    def delete(self, source_table: str) -> bool:
        with self._session_factory() as session:
            config = session.get(IndexConfig, source_table)
            if config is None:
                return False
            session.delete(config)
            session.commit()
            return True


__all__ = ["IndexConfigRegistry"]
