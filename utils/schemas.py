"""
Pydantic Schemas - Data Validation Models

Defines all Pydantic schemas used by the order poller:
- Upstream API responses (access token, organizations, deliveries, errors)
- Upstream delivery orders (lenient: missing or null fields become empty values)
- Normalized orders as persisted to the database
- Redis Pub/Sub messages

Usage:
    from utils.schemas import DeliveryOrder

    order = DeliveryOrder.model_validate(raw_data)
    print(order.order.deliveryPoint.address.street.city.name)
"""

from datetime import datetime, timezone
from decimal import Decimal
from typing import Any, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


class UpstreamModel(BaseModel):
    """Base for upstream payloads.

    The ordering API omits fields or sends explicit nulls depending on the
    order state, so nulls are dropped before validation and field defaults apply.
    """

    model_config = ConfigDict(extra="ignore", coerce_numbers_to_str=True)

    @model_validator(mode="before")
    @classmethod
    def drop_nulls(cls, data: Any) -> Any:
        if data is None:
            return {}
        if isinstance(data, dict):
            return {key: value for key, value in data.items() if value is not None}
        return data


def _lenient_float(value: Any) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        return 0.0


def _lenient_decimal(value: Any) -> Decimal:
    # repr gives the shortest digits that round-trip the float
    if isinstance(value, float):
        value = repr(value)
    try:
        number = Decimal(value.strip() if isinstance(value, str) else value)
    except (TypeError, ValueError, ArithmeticError):
        return Decimal("0")
    return number if number.is_finite() else Decimal("0")


class City(UpstreamModel):
    name: str = ""


class Street(UpstreamModel):
    name: str = ""
    city: City = Field(default_factory=City)


class Address(UpstreamModel):
    street: Street = Field(default_factory=Street)
    index: str = ""
    house: str = ""
    building: str = ""
    flat: str = ""
    entrance: str = ""
    floor: str = ""
    comment: str = ""


class Coordinates(UpstreamModel):
    latitude: float = 0.0
    longitude: float = 0.0

    @field_validator("latitude", "longitude", mode="before")
    @classmethod
    def coerce_coordinate(cls, value: Any) -> float:
        return _lenient_float(value)


class DeliveryPoint(UpstreamModel):
    coordinates: Coordinates = Field(default_factory=Coordinates)
    address: Address = Field(default_factory=Address)


class Customer(UpstreamModel):
    name: str = ""


class OrderInfo(UpstreamModel):
    status: str = ""
    deliveryStatus: str = ""
    whenCreated: str = ""
    completeBefore: str = ""
    customer: Customer = Field(default_factory=Customer)
    deliveryPoint: DeliveryPoint = Field(default_factory=DeliveryPoint)
    sum: Decimal = Decimal("0")

    @field_validator("sum", mode="before")
    @classmethod
    def coerce_sum(cls, value: Any) -> Decimal:
        return _lenient_decimal(value)


class DeliveryOrder(UpstreamModel):
    """One delivery order as returned by the deliveries endpoints."""

    id: str = ""
    organizationId: str = ""
    order: OrderInfo = Field(default_factory=OrderInfo)


class AccessTokenResponse(UpstreamModel):
    correlationId: str = ""
    token: str = ""


class OrganizationInfo(UpstreamModel):
    id: str = ""
    name: str = ""
    code: str = ""


class OrganizationsResponse(UpstreamModel):
    correlationId: str = ""
    organizations: list[OrganizationInfo] = Field(default_factory=list)


class OrganizationOrders(UpstreamModel):
    organizationId: str = ""
    # Kept raw so one malformed order does not reject the whole response
    orders: list[Any] = Field(default_factory=list)


class DeliveriesResponse(UpstreamModel):
    correlationId: str = ""
    maxRevision: int = 0
    ordersByOrganizations: list[OrganizationOrders] = Field(default_factory=list)


class ErrorResponse(UpstreamModel):
    """Structured error body returned with every non-success status."""

    correlationId: str = ""
    error: str = ""
    errorDescription: str = ""


class Tenant(BaseModel):
    """Organization whose orders are synchronized."""

    model_config = ConfigDict(frozen=True)

    id: int = Field(..., description="Internal organization ID")
    name: str = Field(default="", description="Display name")
    api_login: str = Field(..., repr=False, description="Upstream API login")


class PersistedOrder(BaseModel):
    """Normalized delivery order as stored in the orders table."""

    tenant_id: int
    external_id: str = ""
    sub_organization_id: str = ""
    customer_name: str = ""
    city: str = ""
    street: str = ""
    house: str = ""
    building: str = ""
    apartment: str = ""
    floor: int = 0
    entrance: int = 0
    comment: str = ""
    cost: Decimal = Decimal("0")
    status: str = ""
    status_code: int = 0
    longitude: float = 0.0
    latitude: float = 0.0
    created_at: datetime = datetime(1, 1, 1)

    @property
    def point_wkt(self) -> str:
        """Geographic point in WKT, longitude first."""
        return f"POINT({self.longitude!r} {self.latitude!r})"


class OrdersSyncedEvent(BaseModel):
    """Redis Pub/Sub payload published after a batch is committed.

    {
        "type": "orders_synced",
        "tenant_id": 7,
        "revision": 105,
        "orders": [...],
        "ts": "2025-01-15T03:15:02+00:00"
    }
    """

    type: str = Field(default="orders_synced", description="Event type")
    tenant_id: int = Field(..., description="Tenant the batch belongs to")
    revision: Optional[int] = Field(default=None, description="Cursor after the batch")
    orders: list[PersistedOrder] = Field(default_factory=list)
    ts: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
