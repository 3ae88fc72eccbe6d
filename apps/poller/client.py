"""
iiko Cloud API client.

Thin, stateless adapter over the upstream ordering API. One call is one HTTP
request: no retries and no caching happen here, the scheduler owns both.

Used endpoints (all POST, JSON in and out):
- /api/1/access_token                        -> {"token": "..."}
- /api/1/organizations                       -> {"organizations": [{"id": ...}]}
- /api/1/deliveries/by_delivery_date_and_status -> {"maxRevision": n, ...}
- /api/1/deliveries/by_revision              -> {"maxRevision": n, "ordersByOrganizations": [...]}

Non-success responses carry {"correlationId", "error", "errorDescription"};
error == "TOO_OLD_REVISION" means the requested revision can no longer be
resumed from.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from decimal import Decimal
from typing import Any, Optional, TypeVar

import httpx
from pydantic import BaseModel, ValidationError

from apps.poller.errors import (
    TOO_OLD_REVISION,
    AuthError,
    StaleCursorError,
    TransientError,
    UpstreamError,
)
from utils.config import settings
from utils.schemas import (
    AccessTokenResponse,
    DeliveriesResponse,
    DeliveryOrder,
    ErrorResponse,
    OrganizationsResponse,
)

logger = logging.getLogger(__name__)

# Upstream date-time format: yyyy-MM-dd HH:mm:ss.fff
IIKO_DATETIME_FORMAT = "%Y-%m-%d %H:%M:%S.%f"

# Every delivery status the upstream knows, in status-code order
ORDER_STATUSES = (
    "Unconfirmed",
    "WaitCooking",
    "ReadyForCooking",
    "CookingStarted",
    "CookingCompleted",
    "Waiting",
    "OnWay",
    "Delivered",
    "Closed",
    "Cancelled",
)

ModelT = TypeVar("ModelT", bound=BaseModel)


def format_iiko_datetime(value: datetime) -> str:
    """Format a datetime with millisecond precision."""
    return value.strftime(IIKO_DATETIME_FORMAT)[:-3]


class IikoClient:
    """
    HTTP client for the iiko Cloud API.

    Usage:
        async with IikoClient() as client:
            token = await client.authenticate(api_login)
            org_ids = await client.list_sub_identifiers(token)
            revision = await client.fetch_initial_cursor(token, org_ids)
            orders, revision = await client.fetch_since(token, org_ids, revision)
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        timeout_s: Optional[float] = None,
        initial_window_hours: Optional[float] = None,
        http_client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        """
        Initialize API client.

        Args:
            base_url: API root, defaults to settings.IIKO_API_BASE
            timeout_s: Per-request timeout, defaults to settings.API_TIMEOUT
            initial_window_hours: Look-back window for the initial revision
            http_client: Pre-built httpx client (tests inject a mock transport)
        """
        self.base_url = (base_url or settings.IIKO_API_BASE).rstrip("/")
        self.initial_window = timedelta(
            hours=initial_window_hours or settings.INITIAL_REVISION_WINDOW_HOURS
        )
        self._http = http_client or httpx.AsyncClient(
            base_url=self.base_url,
            timeout=timeout_s or settings.API_TIMEOUT,
        )

    async def __aenter__(self) -> "IikoClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self._http.aclose()

    async def authenticate(self, api_login: str) -> str:
        """
        Exchange a tenant's API login for a bearer token.

        Raises:
            AuthError: The upstream answered with a non-success status
            TransientError: The request never got an answer
        """
        try:
            data = await self._request("/api/1/access_token", {"apiLogin": api_login})
        except UpstreamError as e:
            if e.status_code is None:
                raise
            raise AuthError(
                f"access token request rejected: {e.error_description or e}",
                status_code=e.status_code,
            ) from e

        response = self._parse(AccessTokenResponse, data, "/api/1/access_token")
        if not response.token:
            raise AuthError("access token response carried no token")
        return response.token

    async def list_sub_identifiers(self, token: str) -> list[str]:
        """Return the IDs of the upstream organizations the token can see."""
        data = await self._request(
            "/api/1/organizations", {"organizationIds": None}, token=token
        )
        response = self._parse(OrganizationsResponse, data, "/api/1/organizations")
        return [org.id for org in response.organizations if org.id]

    async def fetch_initial_cursor(
        self,
        token: str,
        organization_ids: list[str],
        *,
        now: Optional[datetime] = None,
    ) -> int:
        """
        Derive a starting revision from recent deliveries in every status.

        Used for cold start and for stale-cursor recovery.
        """
        now = now or datetime.now()
        path = "/api/1/deliveries/by_delivery_date_and_status"
        data = await self._request(
            path,
            {
                "organizationIds": organization_ids,
                "deliveryDateFrom": format_iiko_datetime(now - self.initial_window),
                "deliveryDateTo": format_iiko_datetime(now),
                "statuses": list(ORDER_STATUSES),
            },
            token=token,
        )
        return self._parse(DeliveriesResponse, data, path).maxRevision

    async def fetch_since(
        self,
        token: str,
        organization_ids: list[str],
        revision: int,
    ) -> tuple[list[DeliveryOrder], int]:
        """
        Fetch every order changed after `revision`.

        Returns:
            (orders, max_revision)

        Raises:
            StaleCursorError: `revision` is too old to resume from
            TransientError: Any other failure
        """
        path = "/api/1/deliveries/by_revision"
        data = await self._request(
            path,
            {"organizationIds": organization_ids, "startRevision": revision},
            token=token,
        )
        response = self._parse(DeliveriesResponse, data, path)

        orders: list[DeliveryOrder] = []
        for group in response.ordersByOrganizations:
            for raw in group.orders:
                try:
                    order = DeliveryOrder.model_validate(raw)
                except ValidationError as e:
                    logger.warning(
                        "Skipping malformed order",
                        extra={"organization_id": group.organizationId, "error": str(e)},
                    )
                    continue
                if not order.organizationId:
                    order = order.model_copy(update={"organizationId": group.organizationId})
                orders.append(order)

        return orders, response.maxRevision

    async def _request(
        self,
        path: str,
        body: dict[str, Any],
        *,
        token: Optional[str] = None,
    ) -> Any:
        headers = {"Accept": "application/json"}
        if token is not None:
            headers["Authorization"] = f"Bearer {token}"

        try:
            resp = await self._http.post(path, json=body, headers=headers)
        except httpx.HTTPError as e:
            raise TransientError(f"{path} request failed: {e}") from e

        if resp.status_code != 200:
            raise self._error_from_response(path, resp)

        try:
            return resp.json(parse_float=Decimal)
        except ValueError as e:
            raise TransientError(
                f"{path} returned invalid JSON", status_code=resp.status_code
            ) from e

    @staticmethod
    def _error_from_response(path: str, resp: httpx.Response) -> UpstreamError:
        try:
            body = ErrorResponse.model_validate(resp.json())
        except (ValueError, ValidationError):
            # Avoid dumping huge bodies; include a small snippet.
            return TransientError(
                f"{path} failed: {resp.status_code} {resp.text[:500]}",
                status_code=resp.status_code,
            )

        error_cls = StaleCursorError if body.error == TOO_OLD_REVISION else TransientError
        return error_cls(
            f"{path} failed: {resp.status_code} {body.error} {body.errorDescription}".strip(),
            status_code=resp.status_code,
            correlation_id=body.correlationId,
            error=body.error,
            error_description=body.errorDescription,
        )

    @staticmethod
    def _parse(model: type[ModelT], data: Any, path: str) -> ModelT:
        try:
            return model.model_validate(data)
        except ValidationError as e:
            raise TransientError(f"{path} returned an unexpected payload: {e}") from e
