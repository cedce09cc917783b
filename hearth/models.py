"""Pydantic models for the populate and sync wire payloads."""

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, RootModel, field_validator

from hearth.types import SyncQueueEntry, as_utc

# =============================================================================
# Sync Models
# =============================================================================


class SyncBatchItem(BaseModel):
    """One deduplicated local change pushed to the sync endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    created_at: str = Field(alias="createdAt")
    store_name: str = Field(alias="storeName")
    primary_key: Any = Field(alias="primaryKey")
    data: Optional[Dict[str, Any]] = None  # None when the record was deleted

    @classmethod
    def from_entry(cls, entry: SyncQueueEntry, data: Optional[Dict[str, Any]]) -> "SyncBatchItem":
        return cls(
            created_at=entry.created_at,
            store_name=entry.store_name,
            primary_key=entry.primary_key,
            data=data,
        )


class RemoteChange(BaseModel):
    """A server-authoritative change returned by the sync endpoint."""

    model_config = ConfigDict(populate_by_name=True)

    created_at: datetime = Field(alias="createdAt")
    store_name: str = Field(alias="storeName")
    data: Optional[Dict[str, Any]] = None

    @field_validator("created_at")
    @classmethod
    def _to_utc(cls, value: datetime) -> datetime:
        return as_utc(value)


class SyncResponse(RootModel[List[RemoteChange]]):
    """Body of a sync response: a list of remote changes."""


# =============================================================================
# Populate Models
# =============================================================================


class PopulateResponse(RootModel[Dict[str, List[Dict[str, Any]]]]):
    """Body of a populate response: store name -> records."""
