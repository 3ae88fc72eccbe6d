"""
Database utilities for SQLite operations.

Provides connection management and schema initialization for the order poller.
"""

import logging
import sqlite3
from pathlib import Path
from typing import Optional

from utils.config import settings

logger = logging.getLogger(__name__)


def get_conn(db_path: Optional[str] = None) -> sqlite3.Connection:
    """
    Get SQLite database connection with dict-friendly row factory.

    Args:
        db_path: Database file path, defaults to settings.SQLITE_PATH

    Returns:
        SQLite connection with row_factory set to sqlite3.Row

    Raises:
        sqlite3.Error: If connection fails
    """
    path = db_path or settings.SQLITE_PATH

    # Ensure database directory exists
    if path != ":memory:":
        Path(path).parent.mkdir(parents=True, exist_ok=True)

    conn = sqlite3.connect(path, timeout=30)
    conn.row_factory = sqlite3.Row
    conn.execute("PRAGMA foreign_keys = ON")
    return conn


def init_schema(db_path: Optional[str] = None) -> None:
    """
    Initialize database schema by creating required tables if they don't exist.

    Creates:
    - organizations: tenants and their upstream API login
    - revisions: last processed upstream revision per tenant
    - orders: delivery orders ingested from upstream

    Raises:
        sqlite3.Error: If schema creation fails
    """
    conn = get_conn(db_path)
    try:
        conn.execute("""
            CREATE TABLE IF NOT EXISTS organizations (
                id INTEGER PRIMARY KEY,
                name TEXT NOT NULL,
                iiko_api_token TEXT NOT NULL
            )
        """)

        conn.execute("""
            CREATE TABLE IF NOT EXISTS revisions (
                organization_id INTEGER PRIMARY KEY REFERENCES organizations(id),
                revision_id INTEGER NOT NULL,
                updated_at TEXT NOT NULL
            )
        """)

        # point is stored as WKT, longitude first
        conn.execute("""
            CREATE TABLE IF NOT EXISTS orders (
                id INTEGER PRIMARY KEY AUTOINCREMENT,
                organization_id INTEGER NOT NULL REFERENCES organizations(id),
                external_id TEXT,
                sub_organization_id TEXT,
                customer_name TEXT NOT NULL,
                city TEXT,
                street TEXT,
                house TEXT,
                building TEXT,
                apartment TEXT,
                floor INTEGER,
                entrance INTEGER,
                comment TEXT,
                cost TEXT NOT NULL,
                status TEXT,
                status_code INTEGER NOT NULL,
                point TEXT NOT NULL,
                created_at TEXT NOT NULL,
                inserted_at TEXT NOT NULL
            )
        """)

        conn.execute(
            "CREATE INDEX IF NOT EXISTS idx_orders_organization ON orders (organization_id)"
        )

        conn.commit()
    finally:
        conn.close()

    logger.info("DB schema ready")
