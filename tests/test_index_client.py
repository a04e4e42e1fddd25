import json

import httpx
import pytest

from core.settings import IndexSettings
from services.errors import PermanentIndexError, TransientIndexError, classify_error
from services.index_client import HttpIndexClient, InMemoryIndexClient, build_index_client


SETTINGS = IndexSettings(app_id="APP", api_key="secret", base_url="https://index.test")


def _client(handler):
    return HttpIndexClient(SETTINGS, transport=httpx.MockTransport(handler))


def test_upsert_puts_document_with_object_id():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"objectID": "42"})

    client = _client(handler)
    client.upsert("products", "42", {"name": "Bolt"})

    [request] = seen
    assert request.method == "PUT"
    assert request.url.path == "/1/indexes/products/42"
    assert request.headers["X-Algolia-API-Key"] == "secret"
    assert request.headers["X-Algolia-Application-Id"] == "APP"
    assert json.loads(request.content) == {"name": "Bolt", "objectID": "42"}


@pytest.mark.parametrize("status", [408, 429, 500, 502, 503])
def test_retryable_status_is_transient(status):
    client = _client(lambda request: httpx.Response(status, json={"message": "try later"}))

    with pytest.raises(TransientIndexError) as excinfo:
        client.upsert("products", "1", {})
    assert excinfo.value.status == status
    assert "try later" in str(excinfo.value)
    assert classify_error(excinfo.value) == "transient"


@pytest.mark.parametrize("status", [400, 403, 413, 422])
def test_client_errors_are_permanent(status):
    client = _client(lambda request: httpx.Response(status, text="invalid"))

    with pytest.raises(PermanentIndexError) as excinfo:
        client.upsert("products", "1", {})
    assert excinfo.value.status == status
    assert classify_error(excinfo.value) == "permanent"


@pytest.mark.parametrize(
    "exc",
    [httpx.ConnectError("connection refused"), httpx.ReadTimeout("read timed out")],
)
def test_transport_failures_are_transient(exc):
    def handler(request):
        raise exc

    with pytest.raises(TransientIndexError):
        _client(handler).upsert("products", "1", {})


def test_delete_of_missing_document_succeeds():
    seen = []

    def handler(request):
        seen.append((request.method, request.url.path))
        return httpx.Response(404, json={"message": "ObjectID does not exist"})

    _client(handler).delete("products", "9")

    assert seen == [("DELETE", "/1/indexes/products/9")]


def test_batch_upsert_posts_one_request():
    seen = []

    def handler(request):
        seen.append(json.loads(request.content))
        return httpx.Response(200, json={"taskID": 1})

    results = _client(handler).batch_upsert("products", [("1", {"a": 1}), ("2", {"a": 2})])

    assert [result.ok for result in results] == [True, True]
    assert [result.document_id for result in results] == ["1", "2"]
    assert seen == [
        {
            "requests": [
                {"action": "updateObject", "body": {"a": 1, "objectID": "1"}},
                {"action": "updateObject", "body": {"a": 2, "objectID": "2"}},
            ]
        }
    ]


def test_batch_transient_failure_marks_every_item():
    client = _client(lambda request: httpx.Response(503))

    results = client.batch_upsert("products", [("1", {}), ("2", {})])

    assert all(isinstance(result.error, TransientIndexError) for result in results)


def test_rejected_batch_is_replayed_per_document():
    def handler(request):
        if request.url.path.endswith("/batch"):
            return httpx.Response(400, json={"message": "record too big"})
        if request.url.path.endswith("/2"):
            return httpx.Response(400, json={"message": "record too big"})
        return httpx.Response(200, json={})

    results = _client(handler).batch_upsert("products", [("1", {}), ("2", {}), ("3", {})])

    assert [result.ok for result in results] == [True, False, True]
    assert isinstance(results[1].error, PermanentIndexError)


def test_http_client_requires_credentials():
    with pytest.raises(RuntimeError):
        HttpIndexClient(IndexSettings())
    with pytest.raises(RuntimeError):
        HttpIndexClient(IndexSettings(app_id="APP"))


def test_build_index_client_backends():
    assert isinstance(build_index_client(IndexSettings(backend="memory")), InMemoryIndexClient)
    client = build_index_client(SETTINGS)
    assert isinstance(client, HttpIndexClient)
    client.close()


def test_in_memory_client_round_trip():
    client = InMemoryIndexClient()
    client.upsert("products", "1", {"name": "Bolt"})
    assert client.get("products", "1") == {"name": "Bolt", "objectID": "1"}
    client.delete("products", "1")
    client.delete("products", "1")
    assert client.get("products", "1") is None
