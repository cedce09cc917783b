"""Hearth storage layer.

Local-first document storage on SQLite, plus the schema migration planner
and the sync queue records.
"""

from .schema import (
    CreateIndex,
    CreateStore,
    DeleteIndex,
    DeleteStore,
    MigrationOp,
    SchemaPlanner,
    declared_snapshot,
    plan_migration,
)
from .sqlite import SQLiteDatabase, Transaction, TransactionMode

__all__ = [
    "CreateIndex",
    "CreateStore",
    "DeleteIndex",
    "DeleteStore",
    "MigrationOp",
    "SQLiteDatabase",
    "SchemaPlanner",
    "Transaction",
    "TransactionMode",
    "declared_snapshot",
    "plan_migration",
]
