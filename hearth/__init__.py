"""
Hearth - local-first data engine.

Query and mutate an on-device SQLite database, serve intercepted HTTP
requests from it, and reconcile local writes with a remote server.
"""

from .config import EngineConfig
from .engine import Engine
from .routing import Route, Router
from .store import Query, Store
from .types import FieldKind, FieldShape, StoreDefinition

try:
    from importlib.metadata import version

    __version__ = version("hearth")
except Exception:
    __version__ = "0.0.0"

__all__ = [
    "Engine",
    "EngineConfig",
    "FieldKind",
    "FieldShape",
    "Query",
    "Route",
    "Router",
    "Store",
    "StoreDefinition",
]
