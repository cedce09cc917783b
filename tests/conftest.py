"""
Pytest fixtures and test configuration for Hearth tests.
"""

from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import pytest

from hearth import query
from hearth.engine import Engine
from hearth.models import RemoteChange
from hearth.types import MonotonicClock, StoreDefinition

POPULATE_URL = "https://api.example.com/populate"
SYNC_URL = "https://api.example.com/sync"


class FakeTransport:
    """In-memory SyncTransport that records every call."""

    def __init__(self):
        self.sync_calls: List[Dict[str, Any]] = []
        self.populate_calls: List[List[str]] = []
        self.remote_changes: List[RemoteChange] = []
        self.snapshot: Dict[str, List[Dict[str, Any]]] = {}
        self.error: Optional[Exception] = None
        self.on_sync = None  # optional callable run during a sync call

    def sync(self, checkpoint, batch):
        self.sync_calls.append({"checkpoint": checkpoint, "batch": list(batch)})
        if self.on_sync is not None:
            self.on_sync()
        if self.error is not None:
            raise self.error
        return list(self.remote_changes)

    def populate(self, store_names):
        self.populate_calls.append(list(store_names))
        if self.error is not None:
            raise self.error
        return dict(self.snapshot)


class SteppingClock:
    """Deterministic ``now`` source advancing one second per reading."""

    def __init__(self, start: Optional[datetime] = None):
        self.current = start or datetime(2024, 1, 1, tzinfo=timezone.utc)

    def __call__(self) -> datetime:
        value = self.current
        self.current += timedelta(seconds=1)
        return value


@pytest.fixture
def clock():
    """Monotonic clock starting at 2024-01-01 UTC, one second per reading."""
    return MonotonicClock(SteppingClock())


@pytest.fixture
def db_path(tmp_path):
    """Create a temporary database path."""
    return tmp_path / "hearth.db"


@pytest.fixture
def transport():
    return FakeTransport()


@pytest.fixture
def task_definition():
    return StoreDefinition(
        name="Task",
        key_path="id",
        indexes={"createdAt": "createdAt", "priority": "priority"},
    )


@pytest.fixture
def engine_factory(db_path, transport):
    """Build engines on the temp database with the fake transport."""
    engines = []

    def factory(stores=None, **options):
        options.setdefault("database_path", db_path)
        options.setdefault("populate_url", POPULATE_URL)
        options.setdefault("sync_url", SYNC_URL)
        options.setdefault("migration_poll_interval", 0.001)
        engine = Engine(
            transport=options.pop("transport", transport),
            stores=stores if stores is not None else [],
            **options,
        )
        engines.append(engine)
        return engine

    yield factory
    for engine in engines:
        engine.close()


@pytest.fixture
def engine(engine_factory, task_definition):
    """Engine with a single Task store."""
    return engine_factory(stores=[task_definition])


@pytest.fixture
def tasks(engine):
    return engine.stores["Task"]


@pytest.fixture(autouse=True)
def clean_operator_registry():
    """Drop custom query operators registered by a test."""
    before = set(query.registered_operators())
    yield
    for name in set(query.registered_operators()) - before:
        query.unregister_operator(name)
