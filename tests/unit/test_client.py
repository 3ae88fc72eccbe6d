"""Tests for ``apps.poller.client`` against a mocked HTTP transport."""

from __future__ import annotations

import json
from datetime import datetime
from decimal import Decimal
from typing import Callable

import httpx
import pytest

from apps.poller.client import ORDER_STATUSES, IikoClient, format_iiko_datetime
from apps.poller.errors import AuthError, StaleCursorError, TransientError

BASE_URL = "https://iiko.test"


def make_client(handler: Callable[[httpx.Request], httpx.Response]) -> IikoClient:
    http_client = httpx.AsyncClient(base_url=BASE_URL, transport=httpx.MockTransport(handler))
    return IikoClient(BASE_URL, initial_window_hours=3, http_client=http_client)


def body_of(request: httpx.Request) -> dict:
    return json.loads(request.content)


class TestAuthenticate:
    @pytest.mark.asyncio
    async def test_returns_token_without_bearer_header(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(200, json={"correlationId": "c-1", "token": "tok-123"})

        async with make_client(handler) as client:
            token = await client.authenticate("api-login")

        assert token == "tok-123"
        assert seen[0].url.path == "/api/1/access_token"
        assert body_of(seen[0]) == {"apiLogin": "api-login"}
        assert "authorization" not in seen[0].headers

    @pytest.mark.asyncio
    async def test_rejected_login_raises_auth_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                401,
                json={
                    "correlationId": "c-2",
                    "error": "UNAUTHORIZED",
                    "errorDescription": "Login is not authorized",
                },
            )

        async with make_client(handler) as client:
            with pytest.raises(AuthError) as exc_info:
                await client.authenticate("bad-login")

        assert exc_info.value.status_code == 401
        assert "Login is not authorized" in str(exc_info.value)

    @pytest.mark.asyncio
    async def test_empty_token_raises_auth_error(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json={"correlationId": "c-3", "token": None})

        async with make_client(handler) as client:
            with pytest.raises(AuthError):
                await client.authenticate("login")

    @pytest.mark.asyncio
    async def test_transport_failure_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            raise httpx.ConnectError("connection refused", request=request)

        async with make_client(handler) as client:
            with pytest.raises(TransientError):
                await client.authenticate("login")


class TestOrganizations:
    @pytest.mark.asyncio
    async def test_lists_ids_with_bearer_token(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "correlationId": "c",
                    "organizations": [
                        {"id": "org-1", "name": "North", "responseType": "Simple"},
                        {"id": "org-2", "name": "South", "responseType": "Simple"},
                    ],
                },
            )

        async with make_client(handler) as client:
            ids = await client.list_sub_identifiers("tok")

        assert ids == ["org-1", "org-2"]
        assert seen[0].headers["authorization"] == "Bearer tok"
        assert body_of(seen[0]) == {"organizationIds": None}


class TestInitialCursor:
    @pytest.mark.asyncio
    async def test_requests_recent_window_in_every_status(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200, json={"correlationId": "c", "maxRevision": 100, "ordersByOrganizations": []}
            )

        now = datetime(2024, 5, 1, 15, 0, 0, 123456)
        async with make_client(handler) as client:
            revision = await client.fetch_initial_cursor("tok", ["org-1"], now=now)

        assert revision == 100
        assert seen[0].url.path == "/api/1/deliveries/by_delivery_date_and_status"
        body = body_of(seen[0])
        assert body["organizationIds"] == ["org-1"]
        assert body["deliveryDateFrom"] == "2024-05-01 12:00:00.123"
        assert body["deliveryDateTo"] == "2024-05-01 15:00:00.123"
        assert body["statuses"] == list(ORDER_STATUSES)
        assert len(body["statuses"]) == 10

    def test_datetime_format_has_milliseconds(self):
        assert format_iiko_datetime(datetime(2024, 1, 2, 3, 4, 5)) == "2024-01-02 03:04:05.000"


class TestFetchSince:
    @pytest.mark.asyncio
    async def test_flattens_orders_across_organizations(self):
        seen = []

        def handler(request: httpx.Request) -> httpx.Response:
            seen.append(request)
            return httpx.Response(
                200,
                json={
                    "correlationId": "c",
                    "maxRevision": 105,
                    "ordersByOrganizations": [
                        {
                            "organizationId": "org-1",
                            "orders": [
                                {"id": "a", "organizationId": "org-1", "order": {"status": "OnWay"}},
                                {"id": "b", "order": None},
                            ],
                        },
                        {"organizationId": "org-2", "orders": [{"id": "c", "organizationId": "org-2"}]},
                    ],
                },
            )

        async with make_client(handler) as client:
            orders, revision = await client.fetch_since("tok", ["org-1", "org-2"], 100)

        assert revision == 105
        assert [order.id for order in orders] == ["a", "b", "c"]
        assert orders[0].order.status == "OnWay"
        assert orders[1].organizationId == "org-1"
        assert orders[1].order.customer.name == ""
        assert body_of(seen[0]) == {"organizationIds": ["org-1", "org-2"], "startRevision": 100}

    @pytest.mark.asyncio
    async def test_skips_orders_that_are_not_objects(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "maxRevision": 7,
                    "ordersByOrganizations": [
                        {"organizationId": "org-1", "orders": ["garbage", {"id": "ok"}]}
                    ],
                },
            )

        async with make_client(handler) as client:
            orders, revision = await client.fetch_since("tok", ["org-1"], 6)

        assert [order.id for order in orders] == ["ok"]
        assert revision == 7

    @pytest.mark.asyncio
    async def test_keeps_order_sum_exact(self):
        payload = (
            b'{"maxRevision": 7, "ordersByOrganizations": [{"organizationId": "org-1", '
            b'"orders": [{"id": "big", "order": {"sum": 12345678901234567.89, '
            b'"deliveryPoint": {"coordinates": {"latitude": 55.75, "longitude": 37.62}}}}]}]}'
        )

        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200, content=payload, headers={"Content-Type": "application/json"}
            )

        async with make_client(handler) as client:
            orders, _ = await client.fetch_since("tok", ["org-1"], 6)

        assert orders[0].order.sum == Decimal("12345678901234567.89")
        assert orders[0].order.deliveryPoint.coordinates.latitude == 55.75

    @pytest.mark.asyncio
    async def test_too_old_revision_raises_stale_cursor(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                400,
                json={
                    "correlationId": "c-9",
                    "error": "TOO_OLD_REVISION",
                    "errorDescription": "Revision is too old",
                },
            )

        async with make_client(handler) as client:
            with pytest.raises(StaleCursorError) as exc_info:
                await client.fetch_since("tok", ["org-1"], 1)

        assert exc_info.value.correlation_id == "c-9"
        assert exc_info.value.error == "TOO_OLD_REVISION"
        assert exc_info.value.status_code == 400

    @pytest.mark.asyncio
    async def test_other_errors_are_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                500,
                json={"correlationId": "c", "error": "INTERNAL_ERROR", "errorDescription": "oops"},
            )

        async with make_client(handler) as client:
            with pytest.raises(TransientError) as exc_info:
                await client.fetch_since("tok", ["org-1"], 1)

        assert not isinstance(exc_info.value, StaleCursorError)
        assert exc_info.value.error == "INTERNAL_ERROR"

    @pytest.mark.asyncio
    async def test_non_json_error_body_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(502, text="<html>Bad Gateway</html>")

        async with make_client(handler) as client:
            with pytest.raises(TransientError) as exc_info:
                await client.fetch_since("tok", ["org-1"], 1)

        assert exc_info.value.status_code == 502

    @pytest.mark.asyncio
    async def test_unexpected_success_payload_is_transient(self):
        def handler(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, json=["not", "an", "object"])

        async with make_client(handler) as client:
            with pytest.raises(TransientError):
                await client.fetch_since("tok", ["org-1"], 1)
