"""
Shared pytest fixtures for the order poller tests.

Every test gets its own SQLite file under pytest's tmp_path, with the schema
created and one tenant registered.
"""

from pathlib import Path

import pytest

from tests.fakes import FakeIikoClient, FakePublisher, InspectableOrderRepository
from utils.db import init_schema
from utils.schemas import Tenant


@pytest.fixture
def db_path(tmp_path: Path) -> str:
    path = str(tmp_path / "db" / "orders.db")
    init_schema(path)
    return path


@pytest.fixture
def repository(db_path: str) -> InspectableOrderRepository:
    return InspectableOrderRepository(db_path)


@pytest.fixture
def tenant(repository: InspectableOrderRepository) -> Tenant:
    tenant = Tenant(id=1, name="Pizza North", api_login="login-1")
    repository.add_tenant(tenant)
    return tenant


@pytest.fixture
def other_tenant(repository: InspectableOrderRepository) -> Tenant:
    tenant = Tenant(id=2, name="Sushi South", api_login="login-2")
    repository.add_tenant(tenant)
    return tenant


@pytest.fixture
def client() -> FakeIikoClient:
    return FakeIikoClient()


@pytest.fixture
def publisher() -> FakePublisher:
    return FakePublisher()
