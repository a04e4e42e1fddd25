"""Exception hierarchy for the change-propagation pipeline."""

from __future__ import annotations

from typing import Optional


TRANSIENT = "transient"
PERMANENT = "permanent"


class IndexSyncError(Exception):
    """Base class for all pipeline errors."""


class EnqueueError(IndexSyncError):
    """Raised when change capture cannot write the outbox row."""


class TransformError(IndexSyncError):
    """A payload cannot be turned into an index document; never retried."""


class IndexServiceError(IndexSyncError):
    category = TRANSIENT

    def __init__(self, message: str, *, status: Optional[int] = None) -> None:
        super().__init__(message)
        self.status = status


class TransientIndexError(IndexServiceError):
    category = TRANSIENT


class PermanentIndexError(IndexServiceError):
    category = PERMANENT


def classify_error(exc: BaseException) -> str:
    """Return ``"transient"`` or ``"permanent"`` for a processing failure."""

    if isinstance(exc, TransformError):
        return PERMANENT
    if isinstance(exc, IndexServiceError):
        return exc.category
    return TRANSIENT


__all__ = [
    "TRANSIENT",
    "PERMANENT",
    "IndexSyncError",
    "EnqueueError",
    "TransformError",
    "IndexServiceError",
    "TransientIndexError",
    "PermanentIndexError",
    "classify_error",
]
