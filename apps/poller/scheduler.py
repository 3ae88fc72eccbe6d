"""
Order Polling Scheduler - Per-Tenant Incremental Sync

Runs one independent periodic worker per organization using APScheduler.
Each tick pulls the deliveries changed since the tenant's last revision,
stores them and advances the revision.

Features:
- One interval job per tenant (fixed period, no backoff, no overlap)
- Lazily cached bearer tokens and revision cursors
- Stale-cursor recovery: reset via the initial revision and retry once
- Best-effort Redis event publishing after every committed batch
- RUN_ONCE mode for a single tick across all tenants
- Graceful shutdown handling

Usage:
    # Scheduled mode (default)
    python -m apps.poller

    # One tick per tenant and exit
    RUN_ONCE=true python -m apps.poller
"""

import asyncio
import logging
import os
import signal
import sqlite3
import sys
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from apps.poller.client import IikoClient
from apps.poller.errors import (
    ConfigError,
    IngestionError,
    NoCursorError,
    StaleCursorError,
    SyncError,
)
from apps.poller.ingest import ingest_orders
from apps.poller.publisher import OrderPublisher, build_publisher
from apps.poller.repository import OrderRepository
from apps.poller.state import CredentialCache, CursorStore
from utils.config import settings
from utils.db import init_schema
from utils.logging import setup_logging
from utils.schemas import DeliveryOrder, PersistedOrder, Tenant

logger = logging.getLogger(__name__)

# A stale cursor is reset and the incremental fetch retried this many times
MAX_STALE_RETRIES = 1


class TickState(str, Enum):
    IDLE = "idle"
    AUTHENTICATING = "authenticating"
    CURSOR_RESOLVING = "cursor_resolving"
    FETCHING = "fetching"
    INGESTING = "ingesting"
    PUBLISHING = "publishing"
    STOPPED = "stopped"


@dataclass
class TenantStatus:
    state: TickState = TickState.IDLE
    ticks: int = 0
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None


class PollingScheduler:
    """
    Scheduler for per-tenant order polling.

    Handles:
    - APScheduler setup with one interval job per tenant
    - The fetch -> ingest -> advance -> publish tick
    - RUN_ONCE immediate execution
    - Signal handling for graceful shutdown

    Collaborators are passed in; the scheduler owns no global state.
    """

    def __init__(
        self,
        repository: OrderRepository,
        client: IikoClient,
        publisher: OrderPublisher,
        *,
        poll_interval: Optional[float] = None,
        run_once: bool = False,
        cursors: Optional[CursorStore] = None,
        credentials: Optional[CredentialCache] = None,
    ) -> None:
        """
        Initialize scheduler.

        Args:
            repository: Storage collaborator
            client: Upstream API client
            publisher: Sink for committed batches
            poll_interval: Seconds between ticks, defaults to settings.POLL_INTERVAL_SECONDS
            run_once: If True, run one tick per tenant and exit
            cursors: Revision store, built from `repository` when omitted
            credentials: Token cache, built from `client` when omitted
        """
        self.repository = repository
        self.client = client
        self.publisher = publisher
        self.poll_interval = poll_interval or settings.POLL_INTERVAL_SECONDS
        self.run_once = run_once
        self.cursors = cursors or CursorStore(repository)
        self.credentials = credentials or CredentialCache(client.authenticate)

        self.tenants: list[Tenant] = []
        self.scheduler: Optional[AsyncIOScheduler] = None
        self.shutdown_event = asyncio.Event()
        self._status: dict[int, TenantStatus] = {}
        self._inflight: set[asyncio.Task] = set()

        logger.info(
            "PollingScheduler initialized",
            extra={"run_once": run_once, "poll_interval": self.poll_interval},
        )

    def load_tenants(self) -> list[Tenant]:
        """
        Load every tenant known right now.

        Raises:
            ConfigError: Storage failed or returned no tenants
        """
        try:
            tenants = self.repository.list_tenants()
        except sqlite3.Error as e:
            raise ConfigError(f"failed to list organizations: {e}") from e

        if not tenants:
            raise ConfigError("no organizations to poll")

        self.tenants = tenants
        for tenant in tenants:
            self._status.setdefault(tenant.id, TenantStatus())

        logger.info(
            "Loaded organizations",
            extra={"tenants": [tenant.id for tenant in tenants]},
        )
        return tenants

    async def start(self) -> None:
        """
        Register one interval job per tenant and start the scheduler.

        Returns as soon as the jobs are scheduled; polling continues in the
        background until `stop()`.
        """
        tenants = self.load_tenants()

        self.scheduler = AsyncIOScheduler()
        for tenant in tenants:
            self.scheduler.add_job(
                self._run_tick,
                trigger=IntervalTrigger(seconds=self.poll_interval),
                args=[tenant],
                id=f"poll_tenant_{tenant.id}",
                name=f"Poll orders for {tenant.name or tenant.id}",
                max_instances=1,
                coalesce=True,
                replace_existing=True,
            )

        self.scheduler.start()
        logger.info(
            "Scheduler started",
            extra={"jobs": len(tenants), "poll_interval": self.poll_interval},
        )

    async def stop(self) -> None:
        """Stop scheduling new ticks and cancel the ones in flight."""
        self.shutdown_event.set()

        if self.scheduler is not None and self.scheduler.running:
            self.scheduler.shutdown(wait=False)

        inflight = list(self._inflight)
        for task in inflight:
            task.cancel()
        if inflight:
            await asyncio.gather(*inflight, return_exceptions=True)

        for status in self._status.values():
            status.state = TickState.STOPPED

        logger.info("Scheduler shutdown complete")

    async def run_all_once(self) -> dict[int, bool]:
        """Run one tick for every tenant concurrently."""
        tenants = self.tenants or self.load_tenants()
        results = await asyncio.gather(*(self.poll_tenant(tenant) for tenant in tenants))
        return {tenant.id: ok for tenant, ok in zip(tenants, results)}

    def setup_signal_handlers(self) -> None:
        """Setup handlers for graceful shutdown on SIGINT/SIGTERM."""
        loop = asyncio.get_running_loop()

        def signal_handler(signum: int) -> None:
            logger.info(f"Received signal {signum}, initiating graceful shutdown")
            self.shutdown_event.set()

        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.add_signal_handler(signum, signal_handler, signum)

    def remove_signal_handlers(self) -> None:
        loop = asyncio.get_running_loop()
        for signum in (signal.SIGINT, signal.SIGTERM):
            loop.remove_signal_handler(signum)

    async def run(self) -> None:
        """
        Start polling and block until a shutdown signal.

        In RUN_ONCE mode, runs a single tick per tenant and returns.
        """
        self.setup_signal_handlers()
        try:
            if self.run_once:
                logger.info("Running in RUN_ONCE mode")
                results = await self.run_all_once()
                logger.info("RUN_ONCE finished", extra={"results": results})
                return

            logger.info("Running in scheduled mode")
            await self.start()
            logger.info("Waiting for jobs...")

            await self.shutdown_event.wait()

            logger.info("Shutting down scheduler")
            await self.stop()
        finally:
            self.remove_signal_handlers()

    def snapshot(self) -> dict[int, dict[str, Any]]:
        """Point-in-time view of every tenant worker, for diagnostics."""
        return {
            tenant_id: {
                "state": status.state.value,
                "cursor": self.cursors.peek(tenant_id),
                "ticks": status.ticks,
                "last_error": status.last_error,
                "last_success_at": status.last_success_at,
            }
            for tenant_id, status in self._status.items()
        }

    async def _run_tick(self, tenant: Tenant) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._inflight.add(task)
        try:
            await self.poll_tenant(tenant)
        except asyncio.CancelledError:
            logger.info("Tick cancelled", extra={"tenant_id": tenant.id})
            raise
        finally:
            if task is not None:
                self._inflight.discard(task)

    async def poll_tenant(self, tenant: Tenant) -> bool:
        """
        Run one tick for a tenant.

        Errors are logged and swallowed here so a failing tenant never stops
        its own worker or anyone else's.

        Returns:
            True if the tick completed
        """
        if self.shutdown_event.is_set():
            return False

        status = self._status.setdefault(tenant.id, TenantStatus())
        status.ticks += 1

        try:
            count = await self._poll_tenant_orders(tenant, status)
        except asyncio.CancelledError:
            status.state = TickState.STOPPED
            raise
        except SyncError as e:
            status.state = TickState.IDLE
            status.last_error = str(e)
            logger.error(
                "Error polling organization",
                extra={
                    "tenant_id": tenant.id,
                    "tenant": tenant.name,
                    "error_type": type(e).__name__,
                    "error": str(e),
                },
            )
            return False
        except Exception as e:
            status.state = TickState.IDLE
            status.last_error = str(e)
            logger.error(
                "Unexpected error polling organization",
                extra={"tenant_id": tenant.id, "tenant": tenant.name, "error": str(e)},
                exc_info=True,
            )
            return False

        status.state = TickState.IDLE
        status.last_error = None
        status.last_success_at = datetime.now(timezone.utc)
        logger.info(
            "Tick completed",
            extra={
                "tenant_id": tenant.id,
                "orders": count,
                "revision": self.cursors.peek(tenant.id),
            },
        )
        return True

    async def _poll_tenant_orders(self, tenant: Tenant, status: TenantStatus) -> int:
        status.state = TickState.AUTHENTICATING
        token = await self.credentials.get_or_fetch(tenant)
        organization_ids = await self.client.list_sub_identifiers(token)

        status.state = TickState.CURSOR_RESOLVING
        revision = await self._resolve_cursor(tenant, token, organization_ids)

        status.state = TickState.FETCHING
        orders, revision, max_revision = await self._fetch_orders(
            tenant, token, organization_ids, revision
        )
        logger.debug(
            "Fetched orders",
            extra={"tenant_id": tenant.id, "orders": len(orders), "max_revision": max_revision},
        )

        status.state = TickState.INGESTING
        persisted = self._ingest(tenant, orders)

        if max_revision < revision:
            logger.warning(
                "Upstream returned an older revision, keeping cursor",
                extra={"tenant_id": tenant.id, "cursor": revision, "max_revision": max_revision},
            )
            max_revision = revision
        self.cursors.set(tenant.id, max_revision)

        status.state = TickState.PUBLISHING
        await self._publish(tenant, persisted, max_revision)

        return len(persisted)

    async def _resolve_cursor(
        self,
        tenant: Tenant,
        token: str,
        organization_ids: list[str],
    ) -> int:
        try:
            return self.cursors.get(tenant.id)
        except NoCursorError:
            pass

        revision = await self.client.fetch_initial_cursor(token, organization_ids)
        self.cursors.set(tenant.id, revision)
        logger.info(
            "Bootstrapped revision cursor",
            extra={"tenant_id": tenant.id, "revision": revision},
        )
        return revision

    async def _fetch_orders(
        self,
        tenant: Tenant,
        token: str,
        organization_ids: list[str],
        revision: int,
    ) -> tuple[list[DeliveryOrder], int, int]:
        """
        Incremental fetch with bounded stale-cursor recovery.

        Returns:
            (orders, revision the fetch started from, max_revision)

        The reset revision is only persisted once a fetch from it succeeded,
        so a failed recovery leaves the stored cursor untouched.
        """
        retries = 0
        reset = False
        while True:
            try:
                orders, max_revision = await self.client.fetch_since(
                    token, organization_ids, revision
                )
            except StaleCursorError:
                if retries >= MAX_STALE_RETRIES:
                    raise
                retries += 1
                logger.warning(
                    "Revision too old, resetting cursor",
                    extra={"tenant_id": tenant.id, "revision": revision},
                )
                revision = await self.client.fetch_initial_cursor(token, organization_ids)
                reset = True
                continue

            if reset:
                self.cursors.set(tenant.id, revision)
                logger.info(
                    "Reset revision cursor",
                    extra={"tenant_id": tenant.id, "revision": revision},
                )
            return orders, revision, max_revision

    def _ingest(self, tenant: Tenant, orders: list[DeliveryOrder]) -> list[PersistedOrder]:
        try:
            with self.repository.transaction() as tx:
                return ingest_orders(self.repository, tx, tenant.id, orders)
        except sqlite3.Error as e:
            raise IngestionError(f"transaction failed for tenant {tenant.id}: {e}") from e

    async def _publish(
        self,
        tenant: Tenant,
        orders: list[PersistedOrder],
        revision: int,
    ) -> None:
        if not orders:
            return
        try:
            await self.publisher.publish(tenant.id, orders, revision=revision)
        except Exception as e:
            logger.warning(
                "Failed to publish orders",
                extra={"tenant_id": tenant.id, "orders": len(orders), "error": str(e)},
            )


async def main() -> None:
    """Main entry point for the poller."""
    setup_logging(level=settings.LOG_LEVEL, format_type=settings.LOG_FORMAT)
    run_once = os.getenv("RUN_ONCE", "false").lower() in ("true", "1", "yes")

    init_schema()
    repository = OrderRepository()
    client = IikoClient()
    publisher = build_publisher()
    scheduler = PollingScheduler(repository, client, publisher, run_once=run_once)

    try:
        await scheduler.run()
    except ConfigError as e:
        logger.error("Poller cannot start", extra={"error": str(e)})
        sys.exit(1)
    except Exception as e:
        logger.error("Poller failed", extra={"error": str(e)}, exc_info=True)
        sys.exit(1)
    finally:
        await client.aclose()
        await publisher.close()


if __name__ == "__main__":
    asyncio.run(main())
