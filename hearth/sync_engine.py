"""Sync engine for hearth.

SyncEngine reconciles the local stores with the remote server:

- ``sync``: push the deduplicated sync queue, pull the remote changes since
  the checkpoint, apply them, advance the checkpoint, drop the pushed entries
- ``populate``: bulk-load full store snapshots from the remote

It receives the host engine to open transactions, reach the stores and fire
hooks.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Optional

from hearth.gates import SyncGate, SyncState
from hearth.models import SyncBatchItem
from hearth.protocols import HearthError, SyncError, SyncTransport
from hearth.serializers import key_from_record
from hearth.storage import sync_queue
from hearth.storage.sqlite import Transaction, TransactionMode
from hearth.types import PopulateResult, SyncQueueEntry, SyncResult, SyncStatus

logger = logging.getLogger(__name__)


class SyncEngine:
    """Push/pull reconciliation against a sync transport.

    Args:
        host: The owning engine; provides ``transaction(mode)``, ``stores``,
            ``clock`` and ``_emit(hook_name, **kwargs)``
        transport: Remote endpoints for populate and sync
    """

    def __init__(self, host, transport: SyncTransport):
        self._host = host
        self._transport = transport
        self.gate = SyncGate()

    @property
    def state(self) -> SyncState:
        return self.gate.state

    # === Queue Inspection ===

    def pending_changes(self, transaction: Optional[Transaction] = None) -> List[SyncQueueEntry]:
        """Deduplicated queue entries the next sync would push, newest first."""
        if transaction is not None:
            return sync_queue.deduplicate(sync_queue.read_entries(transaction))
        with self._host.transaction(TransactionMode.READ) as tx:
            return sync_queue.deduplicate(sync_queue.read_entries(tx))

    def checkpoint(self) -> Optional[datetime]:
        with self._host.transaction(TransactionMode.READ) as tx:
            return sync_queue.get_checkpoint(tx)

    def _resolve(self, tx: Transaction, entry: SyncQueueEntry) -> Optional[Dict[str, Any]]:
        store = self._host.stores.get(entry.store_name)
        if store is None:
            logger.warning(f"Queued change for unknown store {entry.store_name}, sending no data")
            return None
        return store.find_one(key_from_record(entry.primary_key), tx)

    # === Sync ===

    def sync(self) -> Optional[SyncResult]:
        """Run one sync round.

        Returns:
            None if a sync is already in flight, otherwise a SyncResult;
            failures are reported through the result and ``on_sync_error``
        """
        with self.gate.hold() as entered:
            if not entered:
                logger.debug("Sync already in progress, skipping")
                return None
            try:
                result = self._sync_round()
            except Exception as e:
                logger.error(f"Sync failed: {e}", exc_info=True)
                self._host._emit("on_sync_error", error=e)
                return SyncResult(status=SyncStatus.FAILED, error=str(e))

        logger.info(
            f"Sync complete: pushed={result.pushed}, pulled={result.pulled}, "
            f"skipped={result.skipped}"
        )
        self._host._emit("on_sync_success", result=result)
        return result

    def _sync_round(self) -> SyncResult:
        # Phase 1: checkpoint and local changes
        with self._host.transaction(TransactionMode.READ) as tx:
            current = sync_queue.get_checkpoint(tx)
            pending = self._host.clock.now() if current is None else None
            entries = sync_queue.read_entries(tx, newest_first=True)
            batch = [
                SyncBatchItem.from_entry(entry, self._resolve(tx, entry))
                for entry in sync_queue.deduplicate(entries)
            ]

        # Phase 2: round trip
        changes = self._transport.sync(current or pending, batch)

        # Phase 3: apply remote changes, advance checkpoint, drop pushed entries
        pulled = 0
        skipped = 0
        with self._host.transaction(TransactionMode.WRITE) as tx:
            for change in changes:
                store = self._host.stores.get(change.store_name)
                if store is None:
                    logger.warning(f"Skipping remote change for unknown store {change.store_name}")
                    skipped += 1
                    continue
                if change.data is None:
                    logger.warning(f"Skipping remote change without data for {change.store_name}")
                    skipped += 1
                    continue
                try:
                    store.put(change.data, tx)
                except HearthError as e:
                    raise SyncError(
                        f"Cannot apply remote change for {change.store_name}: {e}"
                    ) from e
                pulled += 1

            candidates = [c for c in (current, pending) if c is not None]
            candidates.extend(change.created_at for change in changes)
            next_checkpoint = max(candidates)
            sync_queue.set_checkpoint(tx, next_checkpoint)
            sync_queue.delete_entries(tx, [entry.id for entry in entries])

        return SyncResult(
            status=SyncStatus.SUCCESS,
            pushed=len(batch),
            pulled=pulled,
            skipped=skipped,
            checkpoint=next_checkpoint,
        )

    # === Populate ===

    def select_stores(
        self, include: Optional[Iterable[str]] = None, exclude: Optional[Iterable[str]] = None
    ) -> List[str]:
        """Store names to populate: all (or ``include``) minus ``exclude``."""
        include = set(include or ())
        exclude = set(exclude or ())
        return [
            name
            for name in self._host.stores
            if (not include or name in include) and name not in exclude
        ]

    def populate(
        self, include: Optional[Iterable[str]] = None, exclude: Optional[Iterable[str]] = None
    ) -> PopulateResult:
        """Bulk-load remote snapshots, one transaction per store.

        Stores applied before a failure stay committed.
        """
        names = self.select_stores(include, exclude)
        result = PopulateResult()

        try:
            snapshot = self._transport.populate(names)
            for store_name, rows in snapshot.items():
                if store_name not in names:
                    logger.warning(f"Ignoring populate rows for unrequested store {store_name}")
                    continue
                store = self._host.stores[store_name]
                with self._host.transaction(TransactionMode.WRITE) as tx:
                    for row in rows:
                        store.put(row, tx)
                result.applied[store_name] = len(rows)
                logger.debug(f"Populated {store_name} with {len(rows)} rows")
        except Exception as e:
            logger.error(f"Populate failed: {e}", exc_info=True)
            result.error = str(e)
            self._host._emit("on_populate_error", error=e)
            return result

        logger.info(f"Populate complete: {sum(result.applied.values())} rows")
        self._host._emit("on_populate_success", result=result)
        return result
