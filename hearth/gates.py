"""Readiness and sync gates.

Two small per-engine state machines:

- ``ReadinessGate``: UNINITIALIZED -> MIGRATING -> READY. The first caller
  runs the migration; anyone arriving while it runs polls until READY or the
  timeout expires.
- ``SyncGate``: IDLE <-> SYNCING. Entering is non-blocking; a caller that
  finds the gate busy is told so and does nothing.
"""

import contextlib
import logging
import threading
import time
from enum import Enum
from typing import Any, Callable, Iterator

from hearth.protocols import MigrationTimeout

logger = logging.getLogger(__name__)

DEFAULT_MIGRATION_TIMEOUT = 10.0
DEFAULT_POLL_INTERVAL = 0.02


class ReadinessState(str, Enum):
    UNINITIALIZED = "uninitialized"
    MIGRATING = "migrating"
    READY = "ready"


class SyncState(str, Enum):
    IDLE = "idle"
    SYNCING = "syncing"


class ReadinessGate:
    """Runs the schema migration exactly once and makes late callers wait.

    Args:
        timeout: Seconds a waiting caller polls before giving up
        poll_interval: Seconds between polls
        sleep: Sleep function (injectable for tests)
        monotonic: Clock function (injectable for tests)
    """

    def __init__(
        self,
        timeout: float = DEFAULT_MIGRATION_TIMEOUT,
        poll_interval: float = DEFAULT_POLL_INTERVAL,
        sleep: Callable[[float], None] = time.sleep,
        monotonic: Callable[[], float] = time.monotonic,
    ):
        self.timeout = timeout
        self.poll_interval = poll_interval
        self._sleep = sleep
        self._monotonic = monotonic
        self._state = ReadinessState.UNINITIALIZED
        self._lock = threading.Lock()

    @property
    def state(self) -> ReadinessState:
        with self._lock:
            return self._state

    @property
    def is_ready(self) -> bool:
        return self.state is ReadinessState.READY

    def ensure(self, migrate: Callable[[], Any]) -> bool:
        """Make sure the migration has run.

        Returns:
            True if this call ran the migration, False if it was already done
            (or done by another caller while this one waited)

        Raises:
            MigrationTimeout: If another caller's migration outlasts the timeout
        """
        deadline = None
        while True:
            with self._lock:
                if self._state is ReadinessState.READY:
                    return False
                if self._state is ReadinessState.UNINITIALIZED:
                    self._state = ReadinessState.MIGRATING
                    break
            if deadline is None:
                deadline = self._monotonic() + self.timeout
            elif self._monotonic() >= deadline:
                raise MigrationTimeout(self.timeout)
            self._sleep(self.poll_interval)

        try:
            migrate()
        except BaseException:
            with self._lock:
                self._state = ReadinessState.UNINITIALIZED
            logger.error("Schema migration failed, readiness reset")
            raise

        with self._lock:
            self._state = ReadinessState.READY
        return True

    def reset(self) -> None:
        with self._lock:
            self._state = ReadinessState.UNINITIALIZED


class SyncGate:
    """Non-reentrant, non-queueing guard around a sync round."""

    def __init__(self):
        self._state = SyncState.IDLE
        self._lock = threading.Lock()

    @property
    def state(self) -> SyncState:
        with self._lock:
            return self._state

    def try_enter(self) -> bool:
        with self._lock:
            if self._state is SyncState.SYNCING:
                return False
            self._state = SyncState.SYNCING
            return True

    def leave(self) -> None:
        with self._lock:
            self._state = SyncState.IDLE

    @contextlib.contextmanager
    def hold(self) -> Iterator[bool]:
        """Enter the gate for the duration of the block.

        Yields False (and leaves the state alone) when the gate is busy.
        """
        entered = self.try_enter()
        try:
            yield entered
        finally:
            if entered:
                self.leave()
