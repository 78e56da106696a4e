"""Pytest configuration and fixtures."""
from datetime import datetime, timedelta, timezone

import pytest

from db import create_db_and_tables, make_engine
from matching import CallerContext, LifecycleOrchestrator, MemoryStore, SqlStore
from models import OrgRole


class TickingClock:
    """Deterministic clock: every reading is one second after the previous one."""

    def __init__(self, start=datetime(2024, 1, 1, 12, 0, 0, tzinfo=timezone.utc)):
        self.now = start

    def __call__(self) -> datetime:
        self.now += timedelta(seconds=1)
        return self.now

    def advance(self, **delta) -> None:
        self.now += timedelta(**delta)


@pytest.fixture
def clock():
    return TickingClock()


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def sql_store(tmp_path):
    engine = make_engine(f"sqlite:///{tmp_path / 'engine.db'}")
    create_db_and_tables(engine)
    yield SqlStore(engine)
    engine.dispose()


@pytest.fixture(params=["memory", "sql"])
def store(request):
    return request.getfixturevalue(f"{request.param}_store")


@pytest.fixture
def engine(store, clock):
    return LifecycleOrchestrator(store, clock=clock)


@pytest.fixture
def donor():
    return CallerContext(org_id="donor-1", role=OrgRole.DONOR)


@pytest.fixture
def other_donor():
    return CallerContext(org_id="donor-2", role=OrgRole.DONOR)


@pytest.fixture
def ngo_a():
    return CallerContext(org_id="ngo-a", role=OrgRole.RECIPIENT)


@pytest.fixture
def ngo_b():
    return CallerContext(org_id="ngo-b", role=OrgRole.RECIPIENT)
