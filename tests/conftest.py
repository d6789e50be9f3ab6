from unittest.mock import MagicMock

import pytest

from lockstep import PostgresPool
from lockstep.sql.postgres import interface

from .fakes import DSN, FakeDatabase, FakePool


@pytest.fixture
def database():
    return FakeDatabase()


@pytest.fixture
def fake_pool(database):
    return FakePool(database)


@pytest.fixture(autouse=True)
def mock_postgres_pool(request, monkeypatch, fake_pool):
    if request.node.get_closest_marker("integration"):
        return None
    mock = MagicMock(return_value=fake_pool)
    monkeypatch.setattr(interface, "AsyncConnectionPool", mock)
    return mock


@pytest.fixture
def pool():
    return PostgresPool(dsn=DSN)
