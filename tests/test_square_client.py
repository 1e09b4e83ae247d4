"""Tests for the Square REST client over a mocked transport."""
import json
from datetime import datetime, timezone

import httpx
import pytest

from square_reconciler.integrations.square.models import CatalogCategory, CatalogImage, CatalogItem
from square_reconciler.services.square_client import SQUARE_SANDBOX_URL, SquareClient
from square_reconciler.utils.retry import PermanentError, TransientError


def _client(handler, environment="sandbox", token="test-token") -> SquareClient:
    return SquareClient(
        environment=environment,
        access_token=token,
        http_client=httpx.AsyncClient(transport=httpx.MockTransport(handler)),
    )


@pytest.mark.anyio
async def test_search_catalog_sends_filters_and_parses_objects():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["url"] = str(request.url)
        seen["headers"] = request.headers
        seen["body"] = json.loads(request.content)
        return httpx.Response(
            200,
            json={
                "objects": [
                    {"type": "ITEM", "id": "I1", "item_data": {"name": "Alfajores", "image_ids": ["IMG1"]}},
                    {"type": "TAX", "id": "T1"},
                ],
                "related_objects": [
                    {"type": "CATEGORY", "id": "C1", "category_data": {"name": "Cookies"}},
                    {"type": "IMAGE", "id": "IMG1", "image_data": {"url": "https://img/1.jpg"}},
                ],
            },
        )

    client = _client(handler)
    result = await client.search_catalog(["ITEM", "IMAGE", "CATEGORY"])
    await client.close()

    assert seen["url"] == f"{SQUARE_SANDBOX_URL}/v2/catalog/search"
    assert seen["headers"]["authorization"] == "Bearer test-token"
    assert "square-version" in seen["headers"]
    assert seen["body"]["include_deleted_objects"] is False
    assert seen["body"]["include_related_objects"] is True
    assert [type(o) for o in result.objects] == [CatalogItem]
    assert isinstance(result.categories()[0], CatalogCategory)
    assert isinstance(result.images()["IMG1"], CatalogImage)


@pytest.mark.anyio
async def test_search_catalog_all_follows_cursor():
    pages = {
        None: {"objects": [{"type": "ITEM", "id": "I1", "item_data": {"name": "a"}}], "cursor": "next"},
        "next": {"objects": [{"type": "ITEM", "id": "I2", "item_data": {"name": "b"}}]},
    }

    def handler(request: httpx.Request) -> httpx.Response:
        return httpx.Response(200, json=pages[json.loads(request.content).get("cursor")])

    client = _client(handler)
    result = await client.search_catalog_all(["ITEM"])

    assert [i.id for i in result.items()] == ["I1", "I2"]


@pytest.mark.anyio
async def test_list_payments_passes_window_and_skips_malformed():
    seen = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen["params"] = dict(request.url.params)
        return httpx.Response(
            200,
            json={
                "payments": [
                    {"id": "P1", "status": "COMPLETED", "order_id": "O1", "amount_money": {"amount": 500}},
                    {"status": "COMPLETED"},
                ],
                "cursor": "c2",
            },
        )

    client = _client(handler)
    payments, cursor = await client.list_payments(
        datetime(2025, 6, 1, 12, 0, tzinfo=timezone.utc), cursor="c1"
    )

    assert seen["params"]["begin_time"] == "2025-06-01T12:00:00Z"
    assert seen["params"]["cursor"] == "c1"
    assert [p.id for p in payments] == ["P1"]
    assert cursor == "c2"


@pytest.mark.anyio
async def test_retrieve_missing_object_returns_none():
    client = _client(lambda request: httpx.Response(404, json={"errors": [{"detail": "not found"}]}))

    assert await client.retrieve_catalog_object("IMG404") is None


@pytest.mark.anyio
async def test_server_errors_are_retried_then_raised_as_transient():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(503, text="unavailable")

    client = _client(handler)
    with pytest.raises(TransientError):
        await client.list_payments(datetime.now(timezone.utc))

    assert len(calls) == 3


@pytest.mark.anyio
async def test_client_errors_are_not_retried():
    calls = []

    def handler(request: httpx.Request) -> httpx.Response:
        calls.append(request)
        return httpx.Response(400, json={"errors": [{"detail": "bad request"}]})

    client = _client(handler)
    with pytest.raises(PermanentError):
        await client.search_catalog(["ITEM"])

    assert len(calls) == 1


@pytest.mark.anyio
async def test_missing_token_fails_without_calling_square():
    calls = []
    client = _client(lambda request: calls.append(request) or httpx.Response(200, json={}), token="")

    with pytest.raises(PermanentError):
        await client.search_catalog(["ITEM"])
    assert calls == []


@pytest.mark.anyio
async def test_image_exists_never_raises():
    def handler(request: httpx.Request) -> httpx.Response:
        assert request.method == "HEAD"
        assert "authorization" not in request.headers
        if request.url.path == "/ok.jpg":
            return httpx.Response(200)
        if request.url.path == "/down.jpg":
            raise httpx.ConnectError("unreachable", request=request)
        return httpx.Response(404)

    client = _client(handler)

    assert await client.image_exists("https://img.example.com/ok.jpg") is True
    assert await client.image_exists("https://img.example.com/missing.jpg") is False
    assert await client.image_exists("https://img.example.com/down.jpg") is False
