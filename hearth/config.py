"""Engine configuration.

``EngineConfig`` is validated once, at construction, against a closed set of
fields; unknown or malformed options fail fast with ``ConfigValidationError``.
Stores and routers may be given as objects or as plain mappings.
"""

from pathlib import Path
from typing import Any, Callable, List, Mapping, Optional

import httpx
from pydantic import (
    BaseModel,
    ConfigDict,
    Field,
    InstanceOf,
    ValidationError,
    field_validator,
    model_validator,
)

from hearth.gates import DEFAULT_MIGRATION_TIMEOUT, DEFAULT_POLL_INTERVAL
from hearth.protocols import ConfigValidationError
from hearth.routing import Router
from hearth.types import StoreDefinition

Hook = Callable[..., Any]


class EngineConfig(BaseModel):
    """Settings for one hearth engine."""

    model_config = ConfigDict(extra="forbid", frozen=True, arbitrary_types_allowed=True)

    # Storage
    database_path: Path
    stores: List[InstanceOf[StoreDefinition]]
    routers: List[InstanceOf[Router]] = Field(default_factory=list)

    # Remote
    populate_url: str
    sync_url: str
    authentication: Optional[Callable[[], Optional[str]]] = None  # returns a bearer token

    # Routing
    collection_count_key: str = "count"
    collection_data_key: str = "rows"
    route_state: Optional[Callable[[httpx.Request], Mapping[str, Any]]] = None
    format_route_search_param: Optional[Callable[[str], Any]] = None
    format_route_path_param: Optional[Callable[[str], Any]] = None

    # Storage normalisation; defaults to a JSON round trip
    format_data_before_save: Optional[Callable[[Mapping[str, Any]], Mapping[str, Any]]] = None

    # Hooks
    on_route_success: Optional[Hook] = None
    on_route_error: Optional[Hook] = None
    on_populate_success: Optional[Hook] = None
    on_populate_error: Optional[Hook] = None
    on_sync_success: Optional[Hook] = None
    on_sync_error: Optional[Hook] = None

    # Readiness
    migration_timeout: float = Field(default=DEFAULT_MIGRATION_TIMEOUT, gt=0)
    migration_poll_interval: float = Field(default=DEFAULT_POLL_INTERVAL, gt=0)

    # Engine event log (see hearth.logging_config)
    event_log: bool = False

    @field_validator("stores", mode="before")
    @classmethod
    def _build_stores(cls, value: Any) -> Any:
        if not isinstance(value, (list, tuple)):
            raise ValueError("stores must be a list")
        return [
            StoreDefinition.from_options(item) if isinstance(item, Mapping) else item
            for item in value
        ]

    @field_validator("routers", mode="before")
    @classmethod
    def _build_routers(cls, value: Any) -> Any:
        if not isinstance(value, (list, tuple)):
            raise ValueError("routers must be a list")
        routers = []
        for item in value:
            if isinstance(item, Mapping):
                try:
                    item = Router(**item)
                except TypeError as e:
                    raise ValueError(f"Invalid router options: {e}") from e
            routers.append(item)
        return routers

    @field_validator("populate_url", "sync_url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        try:
            url = httpx.URL(value)
        except httpx.InvalidURL as e:
            raise ValueError(f"Invalid URL {value!r}: {e}") from e
        if url.scheme not in ("http", "https") or not url.host:
            raise ValueError(f"URL must be an absolute http(s) URL: {value!r}")
        return value

    @field_validator("collection_count_key", "collection_data_key")
    @classmethod
    def _check_key(cls, value: str) -> str:
        if not value:
            raise ValueError("Collection keys must not be empty")
        return value

    @model_validator(mode="after")
    def _check_store_names(self) -> "EngineConfig":
        names = [store.name for store in self.stores]
        duplicates = sorted({name for name in names if names.count(name) > 1})
        if duplicates:
            raise ValueError(f"Duplicate store names: {', '.join(duplicates)}")
        if self.collection_count_key == self.collection_data_key:
            raise ValueError("collection_count_key and collection_data_key must differ")
        return self

    @property
    def database_name(self) -> str:
        return self.database_path.stem

    @classmethod
    def from_options(cls, options: Mapping[str, Any]) -> "EngineConfig":
        """Validate plain options, raising ``ConfigValidationError`` on failure."""
        try:
            return cls(**options)
        except ValidationError as e:
            raise ConfigValidationError(f"Invalid engine configuration: {e}") from e
