"""
Per-tenant poller state: revision cursors and bearer tokens.

Both caches are plain dicts keyed by tenant ID. Only a tenant's own worker
writes its entry and everything runs on one event loop, so readers (the
diagnostics snapshot) never take a lock. The credential fetch awaits the
network, so it is serialized per tenant to authenticate at most once.
"""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

from apps.poller.errors import NoCursorError
from apps.poller.repository import OrderRepository
from utils.schemas import Tenant

logger = logging.getLogger(__name__)


class CursorStore:
    """Durable tenant -> last processed revision, with an in-memory mirror."""

    def __init__(self, repository: OrderRepository) -> None:
        self._repository = repository
        self._revisions: dict[int, int] = {}

    def get(self, tenant_id: int) -> int:
        """
        Return the last processed revision.

        Raises:
            NoCursorError: Neither memory nor storage holds a revision
        """
        revision = self._revisions.get(tenant_id)
        if revision is not None:
            return revision

        revision = self._repository.get_cursor(tenant_id)
        # Revision 0 is never issued upstream; a 0 row means "not bootstrapped"
        if not revision:
            raise NoCursorError(tenant_id)

        self._revisions[tenant_id] = revision
        return revision

    def set(self, tenant_id: int, revision: int) -> None:
        """Persist first; memory only changes once storage accepted the value."""
        self._repository.set_cursor(tenant_id, revision)
        self._revisions[tenant_id] = revision

    def peek(self, tenant_id: int) -> Optional[int]:
        return self._revisions.get(tenant_id)


class CredentialCache:
    """
    Tenant -> bearer token, filled lazily and kept for the process lifetime.

    Tokens are never expired. `invalidate` is the hook for forcing a fresh
    authentication; nothing calls it automatically.
    """

    def __init__(self, authenticate: Callable[[str], Awaitable[str]]) -> None:
        self._authenticate = authenticate
        self._tokens: dict[int, str] = {}
        self._locks: dict[int, asyncio.Lock] = {}

    async def get_or_fetch(self, tenant: Tenant) -> str:
        token = self._tokens.get(tenant.id)
        if token is not None:
            return token

        lock = self._locks.setdefault(tenant.id, asyncio.Lock())
        async with lock:
            token = self._tokens.get(tenant.id)
            if token is None:
                token = await self._authenticate(tenant.api_login)
                self._tokens[tenant.id] = token
                logger.info("Authenticated tenant", extra={"tenant_id": tenant.id})
        return token

    def invalidate(self, tenant_id: int) -> None:
        self._tokens.pop(tenant_id, None)

    def peek(self, tenant_id: int) -> Optional[str]:
        return self._tokens.get(tenant_id)
