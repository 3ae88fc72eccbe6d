"""
Order ingestion: normalize upstream delivery orders and persist a batch.

Upstream records are partially malformed in practice, so numeric and date
fields fall back to zero values instead of rejecting the record. Storage
errors are not tolerated: the first one aborts the whole batch.
"""

import logging
import re
import sqlite3
from datetime import datetime

from apps.poller.client import IIKO_DATETIME_FORMAT, ORDER_STATUSES
from apps.poller.errors import IngestionError
from apps.poller.repository import OrderRepository
from utils.schemas import DeliveryOrder, PersistedOrder

logger = logging.getLogger(__name__)

ZERO_TIMESTAMP = datetime(1, 1, 1)

STATUS_CODES = {status: code for code, status in enumerate(ORDER_STATUSES)}

_INT32_MIN, _INT32_MAX = -(2**31), 2**31 - 1
_INTEGER_RE = re.compile(r"[+-]?[0-9]+")
_TIMESTAMP_RE = re.compile(r"[0-9]{4}-[0-9]{2}-[0-9]{2} [0-9]{2}:[0-9]{2}:[0-9]{2}\.[0-9]{3}")


def parse_int32(value: str) -> int:
    """Parse a base-10 int32; anything else becomes 0."""
    if not _INTEGER_RE.fullmatch(value or ""):
        return 0
    number = int(value)
    if not _INT32_MIN <= number <= _INT32_MAX:
        return 0
    return number


def parse_timestamp(value: str) -> datetime:
    """Parse an upstream `yyyy-MM-dd HH:mm:ss.fff` timestamp; failures give ZERO_TIMESTAMP."""
    # strptime's %f takes 1-6 digits; upstream always sends milliseconds
    if not _TIMESTAMP_RE.fullmatch(value or ""):
        return ZERO_TIMESTAMP
    try:
        return datetime.strptime(value, IIKO_DATETIME_FORMAT)
    except ValueError:
        return ZERO_TIMESTAMP


def status_code(status: str) -> int:
    return STATUS_CODES.get(status, 0)


def to_persisted(tenant_id: int, order: DeliveryOrder) -> PersistedOrder:
    info = order.order
    point = info.deliveryPoint
    address = point.address

    return PersistedOrder(
        tenant_id=tenant_id,
        external_id=order.id,
        sub_organization_id=order.organizationId,
        customer_name=info.customer.name.strip(),
        city=address.street.city.name,
        street=address.street.name,
        house=address.house,
        building=address.building,
        apartment=address.flat,
        floor=parse_int32(address.floor),
        entrance=parse_int32(address.entrance),
        comment=address.comment,
        cost=info.sum,
        status=info.status,
        status_code=status_code(info.status),
        longitude=point.coordinates.longitude,
        latitude=point.coordinates.latitude,
        created_at=parse_timestamp(info.whenCreated),
    )


def ingest_orders(
    repository: OrderRepository,
    tx: sqlite3.Connection,
    tenant_id: int,
    orders: list[DeliveryOrder],
) -> list[PersistedOrder]:
    """
    Insert a batch of orders within the caller's transaction.

    Args:
        repository: Storage collaborator
        tx: Open transaction from `repository.transaction()`
        tenant_id: Tenant the batch belongs to
        orders: Orders returned by the incremental fetch

    Returns:
        The normalized orders, in input order

    Raises:
        IngestionError: Any insert failed; the caller must roll back
    """
    persisted: list[PersistedOrder] = []
    for order in orders:
        row = to_persisted(tenant_id, order)
        try:
            repository.insert_order(tx, row)
        except sqlite3.Error as e:
            raise IngestionError(
                f"failed to insert order {order.id or '<no id>'} for tenant {tenant_id}: {e}"
            ) from e
        persisted.append(row)

    logger.debug("Inserted orders", extra={"tenant_id": tenant_id, "count": len(persisted)})
    return persisted
