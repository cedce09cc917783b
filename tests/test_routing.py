"""Tests for routers, presets and route matching."""

import pytest

from hearth.protocols import ConfigValidationError
from hearth.routing import Route, Router, RouteTable, compile_route, join_paths

BASE = "https://api.example.com/projects"


def handler(ctx, stores):
    return {"ok": True}


def other(ctx, stores):
    return {"other": True}


def _table(*routers):
    table = RouteTable()
    for router in routers:
        table.add_router(router)
    return table


class TestJoinPaths:
    @pytest.mark.parametrize(
        "base, path, expected",
        [
            ("https://a.io/x", "/", "https://a.io/x"),
            ("https://a.io/x/", "/y", "https://a.io/x/y"),
            ("https://a.io/x", "y/", "https://a.io/x/y"),
            ("https://a.io", "/:id", "https://a.io/:id"),
        ],
    )
    def test_join(self, base, path, expected):
        assert join_paths(base, path) == expected


class TestCompileRoute:
    """Tests for compile_route."""

    def test_params_and_segments(self):
        route = compile_route(BASE, "get", "/:projectId/tasks/:taskId", handler)
        assert route.method == "GET"
        assert route.segments == 4
        assert route.param_names == ("projectId", "taskId")
        assert route.origin == "https://api.example.com"

    def test_literal_outranks_param(self):
        literal = compile_route(BASE, "GET", "/archived", handler)
        param = compile_route(BASE, "GET", "/:id", handler)
        assert literal.specificity > param.specificity

    def test_relative_base_rejected(self):
        with pytest.raises(ConfigValidationError):
            compile_route("/projects", "GET", "/", handler)

    def test_non_callable_handler_rejected(self):
        with pytest.raises(ConfigValidationError):
            compile_route(BASE, "GET", "/", "nope")

    def test_explicit_port_is_part_of_origin(self):
        assert compile_route("http://localhost:8080/x", "GET", "/", handler).origin == (
            "http://localhost:8080"
        )
        assert compile_route("https://a.io:443/x", "GET", "/", handler).origin == "https://a.io"


class TestRouter:
    """Tests for Router declarations."""

    def test_presets_expand(self):
        router = Router(BASE, "Project", ["create", "list", "retrieve", "update", "delete"])
        assert sorted((r.method, r.template) for r in router.routes) == [
            ("DELETE", f"{BASE}/:primaryKey"),
            ("GET", BASE),
            ("GET", f"{BASE}/:primaryKey"),
            ("POST", BASE),
            ("PUT", f"{BASE}/:primaryKey"),
        ]
        assert {r.store_name for r in router.routes} == {"Project"}

    def test_preset_group_with_own_store(self):
        router = Router(BASE, routes=[{"store_name": "Task", "presets": ["list"]}])
        assert router.routes[0].store_name == "Task"

    def test_presets_need_a_store(self):
        with pytest.raises(ConfigValidationError):
            Router(BASE, routes=["list"])

    def test_unknown_preset_rejected(self):
        with pytest.raises(ConfigValidationError):
            Router(BASE, "Project", ["upsert"])

    def test_mapping_route(self):
        spec = {"method": "GET", "pathname": "/:id/tasks", "handler": handler}
        router = Router(BASE, routes=[spec])
        assert router.routes[0].param_names == ("id",)

    def test_mapping_route_with_unknown_keys_rejected(self):
        with pytest.raises(ConfigValidationError):
            Router(BASE, routes=[{"method": "GET", "handler": handler, "auth": True}])

    def test_invalid_spec_rejected(self):
        with pytest.raises(ConfigValidationError):
            Router(BASE, routes=[42])

    def test_base_url_required(self):
        with pytest.raises(ConfigValidationError):
            Router("")


class TestRouteTable:
    """Tests for RouteTable.match."""

    def test_matches_path_params(self):
        table = _table(Router(BASE, routes=[Route("GET", "/:projectId/tasks/:taskId", handler)]))
        match = table.match("GET", f"{BASE}/p1/tasks/t9?expand=1")
        assert match.path_params == {"projectId": "p1", "taskId": "t9"}
        assert match.url.params["expand"] == "1"

    def test_method_is_case_insensitive(self):
        table = _table(Router(BASE, routes=[Route("GET", "/", handler)]))
        assert table.match("get", BASE) is not None

    def test_trailing_slash_ignored(self):
        table = _table(Router(BASE, routes=[Route("GET", "/", handler)]))
        assert table.match("GET", f"{BASE}/") is not None

    def test_no_match_on_other_method_origin_or_depth(self):
        table = _table(Router(BASE, routes=[Route("GET", "/:id", handler)]))
        assert table.match("POST", f"{BASE}/1") is None
        assert table.match("GET", "https://other.example.com/projects/1") is None
        assert table.match("GET", f"{BASE}/1/extra") is None
        assert table.match("GET", "https://api.example.com/elsewhere/1") is None

    def test_most_specific_route_wins(self):
        """A literal segment beats a parameter regardless of declaration order."""
        table = _table(
            Router(BASE, routes=[Route("GET", "/:id", other), Route("GET", "/archived", handler)])
        )
        assert table.match("GET", f"{BASE}/archived").route.handler is handler
        assert table.match("GET", f"{BASE}/42").route.handler is other

    def test_routes_from_several_routers(self):
        table = _table(
            Router(BASE, "Project", ["list"]),
            Router("https://api.example.com/tasks", "Task", ["list", "retrieve"]),
        )
        assert len(table) == 3
        assert table.store_names() == ["Project", "Task"]
        assert table.match("GET", "https://api.example.com/tasks/7").route.store_name == "Task"
