"""
Order poller persistence.
This module is where poller-related SQL lives.
"""

import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime, timezone
from typing import Iterator, Optional

from utils.db import get_conn
from utils.schemas import PersistedOrder, Tenant

logger = logging.getLogger(__name__)


class OrderRepository:
    """
    SQLite-backed storage for tenants, revisions and orders.

    Every call opens its own connection, so tenant workers never share one.
    """

    def __init__(self, db_path: Optional[str] = None) -> None:
        self.db_path = db_path

    def _connect(self) -> sqlite3.Connection:
        return get_conn(self.db_path)

    def list_tenants(self) -> list[Tenant]:
        conn = self._connect()
        try:
            rows = conn.execute(
                "SELECT id, name, iiko_api_token FROM organizations ORDER BY id"
            ).fetchall()
        finally:
            conn.close()
        return [
            Tenant(id=row["id"], name=row["name"], api_login=row["iiko_api_token"])
            for row in rows
        ]

    def get_cursor(self, tenant_id: int) -> Optional[int]:
        """Return the stored revision, or None when the tenant has no row."""
        conn = self._connect()
        try:
            row = conn.execute(
                "SELECT revision_id FROM revisions WHERE organization_id = ?",
                (tenant_id,),
            ).fetchone()
        finally:
            conn.close()
        return int(row["revision_id"]) if row is not None else None

    def set_cursor(self, tenant_id: int, revision: int) -> None:
        conn = self._connect()
        try:
            with conn:
                conn.execute(
                    """
                    INSERT INTO revisions (organization_id, revision_id, updated_at)
                    VALUES (?, ?, ?)
                    ON CONFLICT (organization_id) DO UPDATE
                    SET revision_id = excluded.revision_id,
                        updated_at = excluded.updated_at
                    """,
                    (tenant_id, revision, datetime.now(timezone.utc).isoformat()),
                )
        finally:
            conn.close()

    @contextmanager
    def transaction(self) -> Iterator[sqlite3.Connection]:
        """
        Yield a connection inside one transaction.

        Commits when the block exits cleanly, rolls back on any exception.
        """
        conn = self._connect()
        try:
            conn.execute("BEGIN")
            try:
                yield conn
            except BaseException:
                conn.rollback()
                raise
            conn.commit()
        finally:
            conn.close()

    def insert_order(self, tx: sqlite3.Connection, order: PersistedOrder) -> int:
        cur = tx.execute(
            """
            INSERT INTO orders (
                organization_id, external_id, sub_organization_id, customer_name,
                city, street, house, building, apartment, floor, entrance, comment,
                cost, status, status_code, point, created_at, inserted_at
            )
            VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                order.tenant_id,
                order.external_id,
                order.sub_organization_id,
                order.customer_name,
                order.city,
                order.street,
                order.house,
                order.building,
                order.apartment,
                order.floor,
                order.entrance,
                order.comment,
                str(order.cost),
                order.status,
                order.status_code,
                order.point_wkt,
                order.created_at.isoformat(sep=" "),
                datetime.now(timezone.utc).isoformat(),
            ),
        )
        return int(cur.lastrowid)
