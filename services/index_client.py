"""Adapters over the external search-indexing service."""

from __future__ import annotations

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Sequence, Tuple
from urllib.parse import quote

import httpx

from core.settings import INDEX, IndexSettings
from services.errors import IndexServiceError, PermanentIndexError, TransientIndexError


RETRYABLE_STATUS = {408, 425, 429, 500, 502, 503, 504}

logger = logging.getLogger("indexsync.index_client")


@dataclass
class BatchResult:
    document_id: str
    error: Optional[IndexServiceError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


def _with_object_id(document_id: str, document: Dict[str, Any]) -> Dict[str, Any]:
    body = dict(document)
    body["objectID"] = document_id
    return body


class IndexClient:
    """Interface every index backend implements."""

    def upsert(self, index_name: str, document_id: str, document: Dict[str, Any]) -> None:
        raise NotImplementedError

    def delete(self, index_name: str, document_id: str) -> None:
        raise NotImplementedError

    def batch_upsert(
        self, index_name: str, documents: Sequence[Tuple[str, Dict[str, Any]]]
    ) -> List[BatchResult]:
        """Write documents in order; one result per input, in input order."""

        results: List[BatchResult] = []
        for document_id, document in documents:
            try:
                self.upsert(index_name, document_id, document)
            except IndexServiceError as exc:
                results.append(BatchResult(document_id, exc))
            else:
                results.append(BatchResult(document_id))
        return results

    def close(self) -> None:
        return None


class HttpIndexClient(IndexClient):
    """Algolia-compatible REST client built on :mod:`httpx`."""

    def __init__(
        self,
        settings: IndexSettings = INDEX,
        *,
        transport: Optional[httpx.BaseTransport] = None,
    ) -> None:
        base_url = settings.resolved_base_url()
        if not base_url:
            raise RuntimeError("Index service is not configured (INDEX_APP_ID / INDEX_BASE_URL)")
        if not settings.api_key:
            raise RuntimeError("Missing index admin key (INDEX_ADMIN_KEY)")
        headers = {
            "X-Algolia-API-Key": settings.api_key,
            "Content-Type": "application/json",
        }
        if settings.app_id:
            headers["X-Algolia-Application-Id"] = settings.app_id
        self._client = httpx.Client(
            base_url=base_url,
            headers=headers,
            timeout=settings.request_timeout,
            transport=transport,
        )

    def _object_path(self, index_name: str, document_id: str) -> str:
        return f"/1/indexes/{quote(index_name, safe='')}/{quote(document_id, safe='')}"

    def _request(self, method: str, path: str, *, payload: Any = None, missing_ok: bool = False) -> Any:
        try:
            response = self._client.request(method, path, json=payload)
        except httpx.TimeoutException as exc:
            raise TransientIndexError(f"{method} {path} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise TransientIndexError(f"{method} {path} failed: {exc}") from exc

        status = response.status_code
        if missing_ok and status == 404:
            return None
        if status >= 400:
            message = f"{method} {path} returned {status}: {_error_message(response)}"
            if status in RETRYABLE_STATUS or status >= 500:
                raise TransientIndexError(message, status=status)
            raise PermanentIndexError(message, status=status)
        if not response.content:
            return None
        try:
            return response.json()
        except json.JSONDecodeError:
            return None

    def upsert(self, index_name: str, document_id: str, document: Dict[str, Any]) -> None:
        self._request(
            "PUT",
            self._object_path(index_name, document_id),
            payload=_with_object_id(document_id, document),
        )

    def delete(self, index_name: str, document_id: str) -> None:
        self._request("DELETE", self._object_path(index_name, document_id), missing_ok=True)

    def batch_upsert(
        self, index_name: str, documents: Sequence[Tuple[str, Dict[str, Any]]]
    ) -> List[BatchResult]:
        if not documents:
            return []
        body = {
            "requests": [
                {"action": "updateObject", "body": _with_object_id(document_id, document)}
                for document_id, document in documents
            ]
        }
        path = f"/1/indexes/{quote(index_name, safe='')}/batch"
        try:
            self._request("POST", path, payload=body)
        except TransientIndexError as exc:
            return [BatchResult(document_id, exc) for document_id, _ in documents]
        except PermanentIndexError as exc:
            if len(documents) == 1:
                return [BatchResult(documents[0][0], exc)]
            # the batch is rejected as a whole; replay one by one to find the bad documents
            logger.warning("Batch rejected for %s, retrying %d documents individually", index_name, len(documents))
            return super().batch_upsert(index_name, documents)
        return [BatchResult(document_id) for document_id, _ in documents]

    def close(self) -> None:
        self._client.close()


def _error_message(response: httpx.Response) -> str:
    try:
        data = response.json()
    except (json.JSONDecodeError, ValueError):
        return response.text[:500]
    if isinstance(data, dict) and data.get("message"):
        return str(data["message"])
    return response.text[:500]


class InMemoryIndexClient(IndexClient):
    """Dictionary-backed index, used for local runs and tests."""

    def __init__(self) -> None:
        self.indexes: Dict[str, Dict[str, Dict[str, Any]]] = {}
        self.calls: List[Tuple[str, str, Any]] = []

    def get(self, index_name: str, document_id: str) -> Optional[Dict[str, Any]]:
        return self.indexes.get(index_name, {}).get(document_id)

    def upsert(self, index_name: str, document_id: str, document: Dict[str, Any]) -> None:
        self.calls.append(("upsert", index_name, document_id))
        self.indexes.setdefault(index_name, {})[document_id] = _with_object_id(document_id, document)

    def delete(self, index_name: str, document_id: str) -> None:
        self.calls.append(("delete", index_name, document_id))
        self.indexes.get(index_name, {}).pop(document_id, None)

    def batch_upsert(
        self, index_name: str, documents: Sequence[Tuple[str, Dict[str, Any]]]
    ) -> List[BatchResult]:
        self.calls.append(("batch_upsert", index_name, [document_id for document_id, _ in documents]))
        target = self.indexes.setdefault(index_name, {})
        for document_id, document in documents:
            target[document_id] = _with_object_id(document_id, document)
        return [BatchResult(document_id) for document_id, _ in documents]


def build_index_client(settings: IndexSettings = INDEX) -> IndexClient:
    if settings.backend == "memory":
        return InMemoryIndexClient()
    return HttpIndexClient(settings)


__all__ = [
    "BatchResult",
    "IndexClient",
    "HttpIndexClient",
    "InMemoryIndexClient",
    "RETRYABLE_STATUS",
    "build_index_client",
]
