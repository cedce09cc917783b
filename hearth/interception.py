"""Serving matched HTTP requests from the local stores.

``execute_route`` runs a matched route's handler inside a transaction scoped
to the request: success commits and serialises the result, failure aborts and
answers ``500 {"error": "Route handler error"}``. No handler exception gets
past this layer; it is handed to the ``on_route_error`` hook instead.

``InterceptingTransport`` plugs this into httpx::

    client = httpx.Client(transport=engine.transport())
    client.get("https://api.example.com/projects/42")  # served locally
"""

import json
import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from hearth.protocols import RouteHandlerError
from hearth.routing import RouteMatch
from hearth.serializers import to_json
from hearth.storage.sqlite import Transaction, TransactionMode
from hearth.types import FindResult

logger = logging.getLogger(__name__)

BODY_METHODS = frozenset({"POST", "PUT", "PATCH"})
# Methods served in a write transaction; the rest get a read transaction
WRITE_METHODS = BODY_METHODS | {"DELETE"}
ROUTE_ERROR_BODY = {"error": "Route handler error"}


@dataclass
class RouteContext:
    """What a route handler receives besides the stores."""

    request: httpx.Request
    state: Dict[str, Any] = field(default_factory=dict)
    search_params: Dict[str, Any] = field(default_factory=dict)
    path_params: Dict[str, Any] = field(default_factory=dict)
    body: Any = None
    transaction: Optional[Transaction] = None


def _json_response(status_code: int, payload: Any) -> httpx.Response:
    return httpx.Response(
        status_code,
        content=to_json(payload).encode("utf-8"),
        headers={"Content-Type": "application/json"},
    )


def build_context(match: RouteMatch, request: httpx.Request, config) -> RouteContext:
    """Parse search params, path params, state and body for a matched request."""
    ctx = RouteContext(request=request)

    format_search = config.format_route_search_param
    for key, value in match.url.params.multi_items():
        ctx.search_params[key] = format_search(value) if format_search else value

    format_path = config.format_route_path_param
    for key, value in match.path_params.items():
        ctx.path_params[key] = format_path(value) if format_path else value

    if config.route_state is not None:
        ctx.state.update(config.route_state(request) or {})

    if request.method.upper() in BODY_METHODS:
        content = request.read()
        ctx.body = json.loads(content) if content else None

    return ctx


def to_response(result: Any, count_key: str = "count", data_key: str = "rows") -> httpx.Response:
    """Serialise a handler result into a response."""
    if isinstance(result, httpx.Response):
        return result
    if result is None:
        return _json_response(404, {"error": "Not found"})
    if isinstance(result, FindResult):
        return _json_response(200, result.to_dict(count_key, data_key))
    return _json_response(200, result)


def execute_route(host, match: RouteMatch, request: httpx.Request) -> httpx.Response:
    """Run a matched route against the host engine's stores.

    Args:
        host: The engine; provides ``config``, ``begin(mode)``, ``stores``
            and ``_emit(hook_name, **kwargs)``
        match: The matched route
        request: The intercepted request
    """
    config = host.config
    tx: Optional[Transaction] = None
    try:
        ctx = build_context(match, request, config)
        mode = (
            TransactionMode.WRITE
            if request.method.upper() in WRITE_METHODS
            else TransactionMode.READ
        )
        tx = host.begin(mode)
        ctx.transaction = tx
        result = match.route.handler(ctx, host.stores)
        response = to_response(result, config.collection_count_key, config.collection_data_key)
        if tx.active:
            tx.commit()
    except Exception as e:
        if tx is not None and tx.active:
            tx.abort()
        error = RouteHandlerError(match.route, e)
        logger.error(
            f"Route {match.route.method} {match.route.template} failed: {e}", exc_info=True
        )
        host._emit("on_route_error", route=match.route, error=error)
        return _json_response(500, ROUTE_ERROR_BODY)

    host._emit("on_route_success", route=match.route, result=result)
    return response


class InterceptingTransport(httpx.BaseTransport):
    """httpx transport that serves matching requests locally.

    Requests no route matches go to ``fallback`` (a plain
    ``httpx.HTTPTransport`` by default).
    """

    def __init__(self, engine, fallback: Optional[httpx.BaseTransport] = None):
        self._engine = engine
        self._fallback = fallback if fallback is not None else httpx.HTTPTransport()

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        match = self._engine.match(request.method, request.url)
        if match is None:
            return self._fallback.handle_request(request)
        logger.debug(f"Serving {request.method} {request.url} locally")
        return self._engine.execute(match, request)

    def close(self) -> None:
        self._fallback.close()
