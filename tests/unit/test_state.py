"""Tests for ``apps.poller.state``: cursor store and credential cache."""

from __future__ import annotations

import asyncio
import sqlite3
from unittest.mock import AsyncMock, MagicMock

import pytest

from apps.poller.errors import AuthError, NoCursorError
from apps.poller.state import CredentialCache, CursorStore
from utils.schemas import Tenant


class TestCursorStore:
    def test_missing_cursor(self, repository, tenant):
        store = CursorStore(repository)

        with pytest.raises(NoCursorError) as exc_info:
            store.get(tenant.id)
        assert exc_info.value.tenant_id == tenant.id
        assert store.peek(tenant.id) is None

    def test_zero_row_counts_as_missing(self, repository, tenant):
        repository.set_cursor(tenant.id, 0)

        with pytest.raises(NoCursorError):
            CursorStore(repository).get(tenant.id)

    def test_set_writes_through(self, repository, tenant):
        store = CursorStore(repository)

        store.set(tenant.id, 105)

        assert store.get(tenant.id) == 105
        assert store.peek(tenant.id) == 105
        assert repository.get_cursor(tenant.id) == 105

    def test_loads_from_storage_after_restart(self, repository, tenant):
        CursorStore(repository).set(tenant.id, 42)

        fresh = CursorStore(repository)
        assert fresh.peek(tenant.id) is None
        assert fresh.get(tenant.id) == 42
        assert fresh.peek(tenant.id) == 42

    def test_cached_value_skips_storage(self, tenant):
        repository = MagicMock()
        repository.get_cursor.return_value = 9
        store = CursorStore(repository)

        store.get(tenant.id)
        store.get(tenant.id)

        repository.get_cursor.assert_called_once_with(tenant.id)

    def test_failed_write_keeps_previous_value(self, tenant):
        repository = MagicMock()
        store = CursorStore(repository)
        store.set(tenant.id, 10)
        repository.set_cursor.side_effect = sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError):
            store.set(tenant.id, 11)

        assert store.get(tenant.id) == 10

    def test_tenants_are_independent(self, repository, tenant, other_tenant):
        store = CursorStore(repository)
        store.set(tenant.id, 1)

        with pytest.raises(NoCursorError):
            store.get(other_tenant.id)


class TestCredentialCache:
    @pytest.mark.asyncio
    async def test_authenticates_once(self):
        authenticate = AsyncMock(return_value="tok-1")
        cache = CredentialCache(authenticate)
        tenant = Tenant(id=1, name="A", api_login="login-a")

        first = await cache.get_or_fetch(tenant)
        second = await cache.get_or_fetch(tenant)

        assert first == second == "tok-1"
        authenticate.assert_awaited_once_with("login-a")

    @pytest.mark.asyncio
    async def test_concurrent_callers_share_one_authentication(self):
        calls = []

        async def authenticate(api_login: str) -> str:
            calls.append(api_login)
            await asyncio.sleep(0.01)
            return f"tok-{api_login}"

        cache = CredentialCache(authenticate)
        tenant = Tenant(id=1, name="A", api_login="a")

        tokens = await asyncio.gather(*(cache.get_or_fetch(tenant) for _ in range(5)))

        assert tokens == ["tok-a"] * 5
        assert calls == ["a"]

    @pytest.mark.asyncio
    async def test_tenants_get_their_own_tokens(self):
        cache = CredentialCache(AsyncMock(side_effect=lambda login: f"tok-{login}"))

        a = await cache.get_or_fetch(Tenant(id=1, api_login="a"))
        b = await cache.get_or_fetch(Tenant(id=2, api_login="b"))

        assert (a, b) == ("tok-a", "tok-b")
        assert cache.peek(1) == "tok-a"
        assert cache.peek(2) == "tok-b"

    @pytest.mark.asyncio
    async def test_failed_authentication_is_not_cached(self):
        authenticate = AsyncMock(side_effect=[AuthError("rejected"), "tok-2"])
        cache = CredentialCache(authenticate)
        tenant = Tenant(id=1, api_login="a")

        with pytest.raises(AuthError):
            await cache.get_or_fetch(tenant)
        assert cache.peek(tenant.id) is None

        assert await cache.get_or_fetch(tenant) == "tok-2"

    @pytest.mark.asyncio
    async def test_invalidate_forces_reauthentication(self):
        authenticate = AsyncMock(side_effect=["tok-1", "tok-2"])
        cache = CredentialCache(authenticate)
        tenant = Tenant(id=1, api_login="a")

        assert await cache.get_or_fetch(tenant) == "tok-1"
        cache.invalidate(tenant.id)
        assert await cache.get_or_fetch(tenant) == "tok-2"
        assert authenticate.await_count == 2
