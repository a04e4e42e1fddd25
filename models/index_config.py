"""Per-table index configuration."""

from __future__ import annotations

from datetime import datetime

from sqlalchemy import DateTime
from sqlmodel import Field, SQLModel

from utils.datetime_utils import utc_now


class IndexConfig(SQLModel, table=True):
    """Maps a source table to its target index and transform."""

    __tablename__ = "index_config"

    source_table: str = Field(primary_key=True)
    index_name: str
    is_enabled: bool = Field(default=True)
    transform_selector: str = Field(default="passthrough")
    batch_size: int = Field(default=100)
    created_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))
    updated_at: datetime = Field(default_factory=utc_now, sa_type=DateTime(timezone=True))


__all__ = ["IndexConfig"]
