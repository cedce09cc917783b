"""End-to-end tests for the Engine: schema lifecycle and the Task scenario."""

import threading
from datetime import datetime, timezone

import httpx
import pytest

from hearth import Engine, Router, StoreDefinition
from hearth.gates import ReadinessState
from hearth.models import RemoteChange
from hearth.protocols import ConfigValidationError, MigrationTimeout
from hearth.storage import CreateIndex, DeleteIndex, TransactionMode

BASE = "https://api.example.com/tasks"


class TestSchemaLifecycle:
    """Migration runs lazily, once, and only when the declaration changes."""

    def test_lazy_migration(self, engine):
        assert engine.readiness_state is ReadinessState.UNINITIALIZED
        assert engine.ensure_ready() is True
        assert engine.ensure_ready() is False
        assert engine.readiness_state is ReadinessState.READY
        assert engine.schema_version() == 1
        assert engine.plan() == []

    def test_first_store_access_migrates(self, engine, tasks):
        tasks.count()
        assert engine.readiness_state is ReadinessState.READY

    def test_reopen_without_changes_keeps_version(self, engine_factory, task_definition):
        engine_factory(stores=[task_definition]).ensure_ready()
        again = engine_factory(stores=[task_definition])
        assert again.plan() == []
        again.ensure_ready()
        assert again.schema_version() == 1

    def test_index_change_bumps_version_by_one(self, engine_factory, task_definition):
        first = engine_factory(stores=[task_definition])
        first.stores["Task"].create({"id": "a", "priority": 1})

        changed = StoreDefinition(
            "Task", indexes={"createdAt": "createdAt", "priority": ("priority", "createdAt")}
        )
        second = engine_factory(stores=[changed])
        assert second.plan() == [
            DeleteIndex("Task", "priority"),
            CreateIndex("Task", "priority", ("priority", "createdAt")),
        ]
        second.ensure_ready()
        assert second.schema_version() == 2
        # data survives an index-only migration
        assert second.stores["Task"].find_one("a") == {"id": "a", "priority": 1}

    def test_add_store_after_ready_rejected(self, engine):
        engine.ensure_ready()
        with pytest.raises(ConfigValidationError):
            engine.add_store(StoreDefinition("Late"))

    def test_duplicate_store_rejected(self, engine, task_definition):
        with pytest.raises(ConfigValidationError):
            engine.add_store(task_definition)

    def test_add_store_from_mapping(self, engine):
        store = engine.add_store({"name": "Note", "key_path": "slug"})
        assert store.key_path == "slug"
        assert "Note" in engine.stores

    def test_config_and_options_are_exclusive(self, engine):
        with pytest.raises(ConfigValidationError):
            Engine(engine.config, stores=[])

    def test_concurrent_first_access_migrates_once(self, engine_factory, task_definition):
        engine = engine_factory(stores=[task_definition])
        results = []
        threads = [
            threading.Thread(target=lambda: results.append(engine.ensure_ready()))
            for _ in range(4)
        ]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(10)
        assert sorted(results) == [False, False, False, True]
        assert engine.schema_version() == 1

    def test_waiting_for_stuck_migration_times_out(self, engine_factory, task_definition):
        engine = engine_factory(stores=[task_definition], migration_timeout=0.01)
        engine.readiness._state = ReadinessState.MIGRATING
        with pytest.raises(MigrationTimeout):
            engine.stores["Task"].count()

    def test_destroy_resets(self, engine, tasks):
        tasks.create({"id": "a"})
        engine.destroy()
        assert not engine.database.db_path.exists()
        assert engine.readiness_state is ReadinessState.UNINITIALIZED
        assert tasks.count() == 0
        assert engine.schema_version() == 1


class TestStatus:
    def test_status_snapshot(self, engine, tasks):
        tasks.create({"id": "a"})
        tasks.update("a", {"id": "a", "title": "x"})
        status = engine.status()
        assert status["schema_version"] == 1
        assert status["readiness"] == "ready"
        assert status["sync_state"] == "idle"
        assert status["stores"] == ["Task"]
        assert status["queued_entries"] == 2
        assert status["pending_changes"] == 1
        assert status["checkpoint"] is None

    def test_custom_operator_through_engine(self, engine, tasks):
        engine.register_operator(
            "$startswith", lambda value, prefix: str(value).startswith(prefix)
        )
        tasks.create({"id": "roof-1"})
        tasks.create({"id": "yard-1"})
        assert [r["id"] for r in tasks.find_many({"id": {"$startswith": "roof"}})] == ["roof-1"]


class TestTaskScenario:
    """A Task app working offline through intercepted HTTP, then syncing."""

    def test_offline_then_sync(self, engine_factory, task_definition, transport, clock):
        engine = engine_factory(
            stores=[task_definition],
            routers=[Router(BASE, "Task", ["create", "list", "retrieve", "update", "delete"])],
            clock=clock,
        )
        client = httpx.Client(
            transport=engine.transport(httpx.MockTransport(lambda request: httpx.Response(502)))
        )

        # Offline: the app talks to its usual API, served locally
        first = client.post(BASE, json={"title": "Fix roof", "priority": 1, "createdAt": "a"})
        second = client.post(BASE, json={"title": "Paint", "priority": 2, "createdAt": "b"})
        task_id = first.json()["id"]
        client.put(f"{BASE}/{task_id}", json={"id": task_id, "priority": 3})
        client.delete(f"{BASE}/{second.json()['id']}")

        listing = client.get(BASE, params={"limit": "10"}).json()
        assert listing["count"] == 1
        assert listing["rows"][0] == {
            "id": task_id,
            "title": "Fix roof",
            "priority": 3,
            "createdAt": "a",
        }

        # Back online: the server also has a task created elsewhere
        transport.remote_changes = [
            RemoteChange(
                created_at=datetime(2024, 6, 1, tzinfo=timezone.utc),
                store_name="Task",
                data={"id": "remote-1", "title": "Order tiles", "priority": 2},
            )
        ]
        result = engine.sync()

        assert result.success
        assert result.pushed == 2
        pushed = {item.primary_key: item.data for item in transport.sync_calls[0]["batch"]}
        assert pushed[task_id]["priority"] == 3
        assert pushed[second.json()["id"]] is None
        assert engine.pending_changes() == []
        assert engine.checkpoint() == datetime(2024, 6, 1, tzinfo=timezone.utc)

        fetched = client.get(f"{BASE}/remote-1")
        assert fetched.json()["title"] == "Order tiles"
        assert client.get(BASE).json()["count"] == 2

        # The next round starts from the stored checkpoint and pushes nothing
        transport.remote_changes = []
        assert engine.sync().pushed == 0
        assert transport.sync_calls[1]["checkpoint"] == datetime(2024, 6, 1, tzinfo=timezone.utc)
        client.close()

    def test_caller_transaction_spans_stores(self, engine_factory, task_definition):
        engine = engine_factory(stores=[task_definition, StoreDefinition("Project")])
        with pytest.raises(RuntimeError):
            with engine.transaction() as tx:
                project = engine.stores["Project"].create({"name": "Roof"}, tx)
                engine.stores["Task"].create({"projectId": project["id"]}, tx)
                raise RuntimeError("changed my mind")
        assert engine.stores["Project"].count() == 0
        assert engine.stores["Task"].count() == 0

        with engine.transaction() as tx:
            project = engine.stores["Project"].create({"name": "Roof"}, tx)
            engine.stores["Task"].create({"projectId": project["id"]}, tx)
        with engine.transaction(TransactionMode.READ) as tx:
            assert engine.stores["Task"].find_one({"projectId": project["id"]}, tx) is not None
