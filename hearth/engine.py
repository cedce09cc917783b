"""Hearth engine: the composition root.

The engine owns the configuration, the SQLite database, the monotonic clock,
the readiness gate, the stores, the route table, the transport and the sync
engine. Schema migration runs lazily, once, before the first storage access.

Usage::

    engine = Engine(
        database_path="~/.myapp/data.db",
        stores=[StoreDefinition("Task", indexes={"createdAt": "createdAt"})],
        routers=[Router("https://api.example.com/tasks", "Task", ["list", "create"])],
        populate_url="https://api.example.com/populate",
        sync_url="https://api.example.com/sync",
    )
    task = engine.stores["Task"].create({"title": "Paint the fence"})
    engine.sync()
"""

import contextlib
import logging
from datetime import datetime
from typing import Any, Callable, Dict, Iterable, Iterator, List, Mapping, Optional, Union

import httpx

from hearth import query
from hearth.config import EngineConfig
from hearth.gates import ReadinessGate, ReadinessState, SyncState
from hearth.interception import InterceptingTransport, execute_route
from hearth.logging_config import log_migration, log_populate, log_sync
from hearth.protocols import ConfigValidationError, SyncTransport
from hearth.routing import RouteMatch, Router, RouteTable
from hearth.serializers import format_for_storage
from hearth.storage import sync_queue
from hearth.storage.schema import MigrationOp, SchemaPlanner, declared_snapshot
from hearth.storage.sqlite import SQLiteDatabase, Transaction, TransactionMode
from hearth.store import Store
from hearth.sync_engine import SyncEngine
from hearth.transport import HttpTransport
from hearth.types import (
    MonotonicClock,
    PopulateResult,
    StoreDefinition,
    SyncQueueEntry,
    SyncResult,
    format_timestamp,
)

logger = logging.getLogger(__name__)


class Engine:
    """Local-first data engine.

    Args:
        config: A validated ``EngineConfig``; alternatively pass its fields as
            keyword options
        transport: Sync transport; defaults to ``HttpTransport`` on the
            configured URLs
        clock: Clock for queue timestamps and the first checkpoint
        http_client: ``httpx.Client`` used by the default transport
    """

    def __init__(
        self,
        config: Optional[EngineConfig] = None,
        *,
        transport: Optional[SyncTransport] = None,
        clock: Optional[MonotonicClock] = None,
        http_client: Optional[httpx.Client] = None,
        **options: Any,
    ):
        if config is None:
            config = EngineConfig.from_options(options)
        elif options:
            raise ConfigValidationError("Pass either a config or keyword options, not both")

        self.config = config
        self.database = SQLiteDatabase(config.database_path)
        self.clock = clock or MonotonicClock()
        self.readiness = ReadinessGate(
            timeout=config.migration_timeout, poll_interval=config.migration_poll_interval
        )
        self.stores: Dict[str, Store] = {}
        self._routes = RouteTable()
        self._planner = SchemaPlanner(self.database)
        self._transport = transport or HttpTransport(
            config.populate_url,
            config.sync_url,
            authentication=config.authentication,
            client=http_client,
        )
        self._sync_engine = SyncEngine(self, self._transport)

        for definition in config.stores:
            self.add_store(definition)
        for router in config.routers:
            self.add_router(router)

    def __repr__(self) -> str:
        return f"Engine({str(self.config.database_path)!r}, stores={list(self.stores)})"

    def __enter__(self) -> "Engine":
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()

    # === Declaration ===

    def add_store(self, definition: Union[StoreDefinition, Mapping[str, Any]]) -> Store:
        """Declare a store. Only allowed before the schema is migrated."""
        if isinstance(definition, Mapping):
            definition = StoreDefinition.from_options(definition)
        if self.readiness.state is not ReadinessState.UNINITIALIZED:
            raise ConfigValidationError(
                f"Cannot add store {definition.name} after the schema is ready"
            )
        if definition.name in self.stores:
            raise ConfigValidationError(f"Store {definition.name} is already declared")
        store = Store(definition, self)
        self.stores[definition.name] = store
        return store

    def add_router(self, router: Union[Router, Mapping[str, Any]]) -> Router:
        if isinstance(router, Mapping):
            router = Router(**router)
        for route in router.routes:
            if route.store_name and route.store_name not in self.stores:
                logger.warning(
                    f"Route {route.method} {route.template} "
                    f"uses undeclared store {route.store_name}"
                )
        self._routes.add_router(router)
        return router

    def register_operator(self, name: str, predicate: Callable[[Any, Any], bool]) -> None:
        """Add a custom query operator (process-wide)."""
        query.register_operator(name, predicate)

    # === Schema ===

    def _declared(self):
        return declared_snapshot(store.definition for store in self.stores.values())

    def _migrate(self) -> None:
        ops = self._planner.migrate(self._declared())
        if ops and self.config.event_log:
            log_migration(self.config.database_name, len(ops), self.database.schema_version())

    def ensure_ready(self) -> bool:
        """Migrate the schema if nobody has yet; wait if someone is.

        Returns:
            True if this call ran the migration
        """
        return self.readiness.ensure(self._migrate)

    @property
    def readiness_state(self) -> ReadinessState:
        return self.readiness.state

    def plan(self) -> List[MigrationOp]:
        """Dry run: the migration ops the next start would apply."""
        return self._planner.plan(self._declared())

    def schema_version(self) -> int:
        return self.database.schema_version()

    # === Transactions ===

    @contextlib.contextmanager
    def transaction(self, mode: TransactionMode = TransactionMode.WRITE) -> Iterator[Transaction]:
        """Engine-owned transaction: commit on success, abort on exception."""
        self.ensure_ready()
        with self.database.transaction(mode) as tx:
            yield tx

    def begin(self, mode: TransactionMode = TransactionMode.WRITE) -> Transaction:
        """Caller-owned transaction; the caller must commit or abort it."""
        self.ensure_ready()
        return self.database.begin(mode)

    # === Store host ===

    def format_for_storage(self, data: Mapping[str, Any]) -> Dict[str, Any]:
        if self.config.format_data_before_save is not None:
            data = self.config.format_data_before_save(data)
        return format_for_storage(dict(data))

    def _add_to_sync_queue(self, tx: Transaction, store_name: str, primary_key: Any) -> None:
        sync_queue.append_entry(tx, self.clock, store_name, primary_key)

    def _emit(self, hook_name: str, **kwargs: Any) -> None:
        """Call a configured hook; hook failures are logged, never raised."""
        hook = getattr(self.config, hook_name)
        if hook is None:
            return
        try:
            hook(**kwargs)
        except Exception as e:
            logger.error(f"Hook {hook_name} raised: {e}", exc_info=True)

    # === Sync ===

    def sync(self) -> Optional[SyncResult]:
        """Push local changes and pull remote ones.

        Returns None when a sync is already running.
        """
        self.ensure_ready()
        result = self._sync_engine.sync()
        if result is not None and self.config.event_log:
            log_sync(
                self.config.database_name,
                result.pushed,
                result.pulled,
                result.skipped,
                result.error,
            )
        return result

    def populate(
        self, include: Optional[Iterable[str]] = None, exclude: Optional[Iterable[str]] = None
    ) -> PopulateResult:
        """Bulk-load store snapshots from the remote."""
        self.ensure_ready()
        result = self._sync_engine.populate(include, exclude)
        if self.config.event_log:
            log_populate(
                self.config.database_name,
                len(result.applied),
                sum(result.applied.values()),
                result.error,
            )
        return result

    @property
    def sync_state(self) -> SyncState:
        return self._sync_engine.state

    def pending_changes(self) -> List[SyncQueueEntry]:
        """Deduplicated changes the next sync would push, newest first."""
        return self._sync_engine.pending_changes()

    def checkpoint(self) -> Optional[datetime]:
        return self._sync_engine.checkpoint()

    def status(self) -> Dict[str, Any]:
        """Snapshot of schema, readiness, sync state and queue size."""
        with self.transaction(TransactionMode.READ) as tx:
            queued = sync_queue.count_entries(tx)
            pending = len(self._sync_engine.pending_changes(tx))
            checkpoint = sync_queue.get_checkpoint(tx)
        return {
            "database": str(self.config.database_path),
            "schema_version": self.database.schema_version(),
            "readiness": self.readiness_state.value,
            "sync_state": self.sync_state.value,
            "stores": list(self.stores),
            "queued_entries": queued,
            "pending_changes": pending,
            "checkpoint": format_timestamp(checkpoint) if checkpoint else None,
        }

    # === Routing ===

    def match(self, method: str, url: Union[str, httpx.URL]) -> Optional[RouteMatch]:
        return self._routes.match(method, url)

    def execute(self, match: RouteMatch, request: httpx.Request) -> httpx.Response:
        return execute_route(self, match, request)

    def transport(self, fallback: Optional[httpx.BaseTransport] = None) -> InterceptingTransport:
        """httpx transport serving registered routes from local storage."""
        return InterceptingTransport(self, fallback)

    # === Lifecycle ===

    def destroy(self) -> None:
        """Delete the database files; the next access migrates from scratch."""
        self.database.destroy()
        self.readiness.reset()

    def close(self) -> None:
        close = getattr(self._transport, "close", None)
        if close is not None:
            close()
