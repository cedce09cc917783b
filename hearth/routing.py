"""Routers and route matching.

A ``Router`` groups routes under a base URL. Path templates use ``:name``
segments for path parameters::

    Router(
        "https://api.example.com/projects",
        store_name="Project",
        routes=["list", "retrieve", Route("GET", "/:id/tasks", list_tasks)],
    )

Preset names (``create``, ``list``, ``retrieve``, ``update``, ``delete``)
expand to CRUD handlers over the router's store. Routes are grouped by
(origin, method, number of path segments) and tried most specific first;
a literal segment outranks a parameter.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Tuple, Union

import httpx

from hearth.protocols import ConfigValidationError
from hearth.store import Query

logger = logging.getLogger(__name__)

PRIMARY_KEY_PARAM = "primaryKey"
_PARAM_PATTERN = re.compile(r"^:([A-Za-z_][A-Za-z0-9_]*)$")

Handler = Callable[..., Any]


@dataclass(frozen=True)
class Route:
    """A route declaration relative to its router's base URL."""

    method: str
    pathname: str
    handler: Handler


@dataclass(frozen=True)
class CompiledRoute:
    method: str
    template: str
    origin: str
    segments: int
    param_names: Tuple[str, ...]
    pattern: "re.Pattern[str]" = field(repr=False)
    handler: Handler = field(repr=False)
    store_name: Optional[str] = None

    @property
    def specificity(self) -> int:
        return self.segments * 2 - len(self.param_names)


@dataclass(frozen=True)
class RouteMatch:
    """A route matched against a concrete URL."""

    route: CompiledRoute
    url: httpx.URL
    path_params: Dict[str, str]


def join_paths(base_url: str, pathname: str) -> str:
    """Join a base URL and a route path, without duplicate or trailing slashes."""
    joined = base_url.rstrip("/")
    path = pathname.strip("/")
    if path:
        joined = f"{joined}/{path}"
    return joined


def _path_segments(path: str) -> List[str]:
    return [segment for segment in path.split("/") if segment]


def compile_route(
    base_url: str,
    method: str,
    pathname: str,
    handler: Handler,
    store_name: Optional[str] = None,
) -> CompiledRoute:
    """Compile a route template into a matcher.

    Raises:
        ConfigValidationError: If the URL is not absolute or the handler is not callable
    """
    if not isinstance(method, str) or not method:
        raise ConfigValidationError(f"Route method is required for {pathname!r}")
    if not callable(handler):
        raise ConfigValidationError(f"Route handler for {method} {pathname} must be callable")

    template = join_paths(base_url, pathname)
    url = httpx.URL(template)
    if url.scheme not in ("http", "https") or not url.host:
        raise ConfigValidationError(f"Router base URL must be an absolute http(s) URL: {base_url}")

    segments = _path_segments(url.path)
    params = []
    parts = []
    for segment in segments:
        param = _PARAM_PATTERN.match(segment)
        if param:
            params.append(param.group(1))
            parts.append("([^/]+)")
        else:
            parts.append(re.escape(segment))

    return CompiledRoute(
        method=method.upper(),
        template=template,
        origin=_origin(url),
        segments=len(segments),
        param_names=tuple(params),
        pattern=re.compile("^/" + "/".join(parts) + "$"),
        handler=handler,
        store_name=store_name,
    )


def _origin(url: httpx.URL) -> str:
    default_port = {"http": 80, "https": 443}.get(url.scheme)
    port = "" if url.port in (None, default_port) else f":{url.port}"
    return f"{url.scheme}://{url.host}{port}"


# =============================================================================
# Presets
# =============================================================================


def _list_query(search_params: Mapping[str, Any]) -> Optional[Query]:
    bounds = {key: search_params[key] for key in ("limit", "offset") if key in search_params}
    return Query(**bounds) if bounds else None


def _preset_handlers(store_name: str) -> Dict[str, Route]:
    def create(ctx, stores):
        return stores[store_name].create(ctx.body or {}, ctx.transaction)

    def list_records(ctx, stores):
        return stores[store_name].find_many_and_count(
            _list_query(ctx.search_params), ctx.transaction
        )

    def retrieve(ctx, stores):
        return stores[store_name].find_one(ctx.path_params[PRIMARY_KEY_PARAM], ctx.transaction)

    def update(ctx, stores):
        return stores[store_name].update(
            ctx.path_params[PRIMARY_KEY_PARAM], ctx.body or {}, ctx.transaction
        )

    def delete(ctx, stores):
        deleted = stores[store_name].delete(ctx.path_params[PRIMARY_KEY_PARAM], ctx.transaction)
        return {"deleted": True} if deleted else None

    item = f"/:{PRIMARY_KEY_PARAM}"
    return {
        "create": Route("POST", "/", create),
        "list": Route("GET", "/", list_records),
        "retrieve": Route("GET", item, retrieve),
        "update": Route("PUT", item, update),
        "delete": Route("DELETE", item, delete),
    }


PRESETS = frozenset({"create", "list", "retrieve", "update", "delete"})


# =============================================================================
# Router
# =============================================================================


RouteSpec = Union[Route, str, Mapping[str, Any]]


class Router:
    """Routes under one base URL.

    Args:
        base_url: Absolute URL the route paths are relative to
        store_name: Store used by preset routes
        routes: ``Route`` objects, preset names, ``{"method", "pathname",
            "handler"}`` mappings or ``{"store_name", "presets"}`` groups
    """

    def __init__(
        self,
        base_url: str,
        store_name: Optional[str] = None,
        routes: Iterable[RouteSpec] = (),
    ):
        if not isinstance(base_url, str) or not base_url:
            raise ConfigValidationError("Router base_url is required")
        self.base_url = base_url
        self.store_name = store_name
        self.routes: List[CompiledRoute] = []
        for spec in routes:
            self._add_spec(spec)

    def __repr__(self) -> str:
        return f"Router({self.base_url!r}, routes={len(self.routes)})"

    def _add_spec(self, spec: RouteSpec) -> None:
        if isinstance(spec, Route):
            self.add_route(spec.method, spec.pathname, spec.handler)
        elif isinstance(spec, str):
            self.add_presets(self.store_name, [spec])
        elif isinstance(spec, Mapping) and "presets" in spec:
            self.add_presets(spec.get("store_name", self.store_name), spec["presets"])
        elif isinstance(spec, Mapping):
            unknown = set(spec) - {"method", "pathname", "handler"}
            if unknown:
                raise ConfigValidationError(f"Unknown route options: {', '.join(sorted(unknown))}")
            self.add_route(spec.get("method"), spec.get("pathname", "/"), spec.get("handler"))
        else:
            raise ConfigValidationError(f"Invalid route declaration: {spec!r}")

    def add_route(
        self, method: str, pathname: str, handler: Handler, store_name: Optional[str] = None
    ) -> CompiledRoute:
        route = compile_route(self.base_url, method, pathname, handler, store_name)
        self.routes.append(route)
        self.routes.sort(key=lambda r: r.specificity, reverse=True)
        return route

    def add_presets(self, store_name: Optional[str], presets: Iterable[str]) -> None:
        if not store_name:
            raise ConfigValidationError(f"Preset routes on {self.base_url} need a store_name")
        handlers = _preset_handlers(store_name)
        for preset in presets:
            if preset not in PRESETS:
                raise ConfigValidationError(f"Unknown route preset: {preset!r}")
            route = handlers[preset]
            self.add_route(route.method, route.pathname, route.handler, store_name)


class RouteTable:
    """All registered routes, indexed by (origin, method, segment count)."""

    def __init__(self):
        self._groups: Dict[Tuple[str, str, int], List[CompiledRoute]] = {}

    def __len__(self) -> int:
        return sum(len(group) for group in self._groups.values())

    def add(self, route: CompiledRoute) -> None:
        group = self._groups.setdefault((route.origin, route.method, route.segments), [])
        group.append(route)
        group.sort(key=lambda r: r.specificity, reverse=True)

    def add_router(self, router: Router) -> None:
        for route in router.routes:
            self.add(route)
        logger.debug(f"Registered {len(router.routes)} routes under {router.base_url}")

    def store_names(self) -> List[str]:
        """Store names referenced by preset routes."""
        names = {
            route.store_name
            for group in self._groups.values()
            for route in group
            if route.store_name
        }
        return sorted(names)

    def match(self, method: str, url: Union[str, httpx.URL]) -> Optional[RouteMatch]:
        url = httpx.URL(url)
        segments = _path_segments(url.path)
        group = self._groups.get((_origin(url), method.upper(), len(segments)), [])
        path = "/" + "/".join(segments)
        for route in group:
            found = route.pattern.match(path)
            if found:
                return RouteMatch(
                    route=route,
                    url=url,
                    path_params=dict(zip(route.param_names, found.groups())),
                )
        return None
