"""Sync queue and checkpoint records.

The queue lives in the internal ``__SyncQueue`` store, one record per local
write, indexed on ``createdAt``. The checkpoint lives under the
``lastChangeAt`` key of the out-of-line ``__Metadata`` store.

All functions receive an open transaction so they compose with the store
write that produced the entry.
"""

import logging
import uuid
from datetime import datetime
from typing import Any, List, Optional, Sequence, Set, Tuple

from hearth.serializers import key_to_storage
from hearth.storage.schema import (
    INTERNAL_STORES,
    METADATA_STORE,
    SYNC_QUEUE_CREATED_AT_INDEX,
    SYNC_QUEUE_STORE,
)
from hearth.storage.sqlite import ASC, DESC, Transaction
from hearth.types import MonotonicClock, SyncQueueEntry, format_timestamp, parse_datetime

logger = logging.getLogger(__name__)

CHECKPOINT_KEY = "lastChangeAt"

_CREATED_AT_PATH = INTERNAL_STORES[SYNC_QUEUE_STORE].indexes[SYNC_QUEUE_CREATED_AT_INDEX]


def append_entry(
    tx: Transaction, clock: MonotonicClock, store_name: str, primary_key: Any
) -> SyncQueueEntry:
    """Queue a (store, key) pair for the next sync."""
    entry = SyncQueueEntry(
        id=uuid.uuid4().hex,
        created_at=clock.timestamp(),
        store_name=store_name,
        primary_key=list(primary_key) if isinstance(primary_key, tuple) else primary_key,
    )
    tx.insert(SYNC_QUEUE_STORE, entry.id, entry.to_record())
    return entry


def read_entries(tx: Transaction, newest_first: bool = True) -> List[SyncQueueEntry]:
    """Read the whole queue ordered by ``createdAt``."""
    direction = DESC if newest_first else ASC
    return [
        SyncQueueEntry.from_record(record)
        for record in tx.scan(SYNC_QUEUE_STORE, _CREATED_AT_PATH, direction)
    ]


def deduplicate(entries: Sequence[SyncQueueEntry]) -> List[SyncQueueEntry]:
    """Keep the first entry per (store, key), preserving order."""
    seen: Set[Tuple[str, Any]] = set()
    unique = []
    for entry in entries:
        marker = (entry.store_name, key_to_storage(entry.primary_key))
        if marker in seen:
            continue
        seen.add(marker)
        unique.append(entry)
    return unique


def delete_entries(tx: Transaction, entry_ids: Sequence[str]) -> int:
    if not entry_ids:
        return 0
    return tx.delete_many(SYNC_QUEUE_STORE, list(entry_ids))


def count_entries(tx: Transaction) -> int:
    return tx.count(SYNC_QUEUE_STORE)


def get_checkpoint(tx: Transaction) -> Optional[datetime]:
    """Return the persisted checkpoint, or None before the first sync."""
    record = tx.get(METADATA_STORE, CHECKPOINT_KEY)
    if not record or not record.get("value"):
        return None
    return parse_datetime(record["value"])


def set_checkpoint(tx: Transaction, checkpoint: datetime) -> None:
    tx.upsert(METADATA_STORE, CHECKPOINT_KEY, {"value": format_timestamp(checkpoint)})
    logger.debug(f"Checkpoint set to {format_timestamp(checkpoint)}")
