"""Tests for the query condition evaluator."""

import pytest

from hearth.protocols import QueryError
from hearth.query import (
    And,
    Leaf,
    Operator,
    Or,
    compile_condition,
    matches,
    normalize_for_search,
    register_operator,
)

RECORD = {
    "id": "t1",
    "title": "Réparer la Toiture",
    "priority": 3,
    "done": False,
    "owner": {"name": "Eloïse", "team": {"id": "roof"}},
    "tags": ["urgent", "outdoor"],
    "items": [{"id": 1, "label": "tiles"}, {"id": 2, "label": "nails"}],
    "note": None,
}


class TestCompile:
    """Tests for compiling mapping conditions into nodes."""

    def test_empty_condition_compiles_to_none(self):
        """None and {} both mean 'match everything'."""
        assert compile_condition(None) is None
        assert compile_condition({}) is None

    def test_bare_value_is_equal_leaf(self):
        """A bare value implies $equal."""
        assert compile_condition({"priority": 3}) == Leaf("priority", Operator.EQUAL.value, 3)

    def test_several_keys_are_an_implicit_and(self):
        """Multiple keys in one mapping compile to an And node."""
        node = compile_condition({"priority": 3, "done": False})
        assert isinstance(node, And)
        assert len(node.conditions) == 2

    def test_logical_operators(self):
        """$and/$or compile to And/Or nodes."""
        node = compile_condition({"$or": [{"priority": 1}, {"priority": 3}]})
        assert isinstance(node, Or)
        assert len(node.conditions) == 2

    def test_unknown_operator_rejected(self):
        """Unknown operators fail at compile time."""
        with pytest.raises(QueryError, match="Unknown query operator"):
            compile_condition({"priority": {"$between": [1, 3]}})

    def test_operator_without_field_rejected(self):
        """A top-level leaf operator has no field to apply to."""
        with pytest.raises(QueryError):
            compile_condition({"$gt": 3})

    def test_in_requires_list(self):
        with pytest.raises(QueryError):
            compile_condition({"priority": {"$in": 3}})

    def test_function_requires_callable(self):
        with pytest.raises(QueryError):
            compile_condition({"priority": {"$function": "nope"}})

    def test_mapping_with_non_operator_keys_is_literal(self):
        """A nested mapping that is not an operator map compares by equality."""
        node = compile_condition({"owner": {"name": "Eloïse"}})
        assert node == Leaf("owner", "$equal", {"name": "Eloïse"})


class TestMatches:
    """Truth table of the built-in operators."""

    def test_no_condition_matches(self):
        assert matches(None, RECORD) is True
        assert matches({}, RECORD) is True

    @pytest.mark.parametrize(
        "condition, expected",
        [
            ({"priority": 3}, True),
            ({"priority": 4}, False),
            ({"priority": {"$notequal": 4}}, True),
            ({"priority": {"$gt": 2}}, True),
            ({"priority": {"$gte": 3}}, True),
            ({"priority": {"$lt": 3}}, False),
            ({"priority": {"$lte": 3}}, True),
            ({"priority": {"$gte": 2, "$lt": 3}}, False),
            ({"priority": {"$in": [1, 3]}}, True),
            ({"priority": {"$notin": [1, 3]}}, False),
            ({"title": {"$like": "toiture"}}, True),
            ({"title": {"$like": "REPARER"}}, True),
            ({"title": {"$like": "fenêtre"}}, False),
            ({"owner.name": {"$like": "eloise"}}, True),
            ({"owner.team.id": "roof"}, True),
            ({"items": {"$some": ["label", "nails"]}}, True),
            ({"items": {"$some": ["label", "glue"]}}, False),
            ({"items": {"$some": {"id": {"$gt": 1}}}}, True),
            ({"tags": {"$some": lambda tag: tag == "urgent"}}, True),
            ({"priority": {"$function": lambda value: value % 2 == 1}}, True),
        ],
    )
    def test_operator(self, condition, expected):
        assert matches(condition, RECORD) is expected

    def test_booleans_are_not_numbers(self):
        """False does not equal 0."""
        assert matches({"done": 0}, RECORD) is False
        assert matches({"done": False}, RECORD) is True

    def test_incomparable_types_are_false(self):
        """Comparisons between incomparable types return False instead of raising."""
        assert matches({"title": {"$gt": 3}}, RECORD) is False
        assert matches({"note": {"$lt": 3}}, RECORD) is False

    def test_missing_intermediate_segment_is_false(self):
        """A path through a missing object fails closed."""
        assert matches({"assignee.name": "x"}, RECORD) is False
        assert matches({"assignee.name": None}, RECORD) is False

    def test_non_object_intermediate_segment_is_false(self):
        assert matches({"priority.value": 3}, RECORD) is False

    def test_missing_final_segment_resolves_to_none(self):
        assert matches({"owner.email": None}, RECORD) is True
        assert matches({"owner.email": {"$in": [None]}}, RECORD) is True

    def test_like_with_custom_normalizer(self):
        """A (normalizer, text) pair applies the normalizer to the record value only."""
        assert matches({"title": {"$like": (str.lower, "toiture")}}, RECORD) is True
        assert matches({"title": {"$like": (None, "toiture")}}, RECORD) is False
        assert matches({"title": {"$like": (None, "Toiture")}}, RECORD) is True

    def test_like_on_non_string_is_false(self):
        assert matches({"priority": {"$like": "3"}}, RECORD) is False

    def test_some_on_non_list_is_false(self):
        assert matches({"title": {"$some": ["id", 1]}}, RECORD) is False


class TestLogic:
    """Nested AND/OR combinations follow boolean algebra."""

    @pytest.mark.parametrize("a", [True, False])
    @pytest.mark.parametrize("b", [True, False])
    @pytest.mark.parametrize("c", [True, False])
    def test_nested_truth_table(self, a, b, c):
        leaf = {True: {"priority": 3}, False: {"priority": 99}}
        condition = {"$or": [{"$and": [leaf[a], leaf[b]]}, leaf[c]]}
        assert matches(condition, RECORD) is ((a and b) or c)

    def test_and_short_circuits(self):
        """The second branch is not evaluated once the first is false."""
        calls = []

        def spy(value):
            calls.append(value)
            return True

        matches({"$and": [{"priority": 99}, {"priority": {"$function": spy}}]}, RECORD)
        assert calls == []

    def test_or_short_circuits(self):
        calls = []

        def spy(value):
            calls.append(value)
            return True

        matches({"$or": [{"priority": 3}, {"priority": {"$function": spy}}]}, RECORD)
        assert calls == []


class TestRegisterOperator:
    """Tests for the custom operator registry."""

    def test_registered_operator_is_usable(self):
        register_operator("$startswith", lambda value, prefix: str(value).startswith(prefix))
        assert matches({"id": {"$startswith": "t"}}, RECORD) is True
        assert matches({"id": {"$startswith": "x"}}, RECORD) is False

    @pytest.mark.parametrize("name", ["startswith", "$", "", "$equal", "$and", "$or"])
    def test_invalid_names_rejected(self, name):
        with pytest.raises(QueryError):
            register_operator(name, lambda value, operand: True)

    def test_non_callable_rejected(self):
        with pytest.raises(QueryError):
            register_operator("$odd", "not callable")


def test_normalize_for_search():
    """Accents are stripped and text lowercased."""
    assert normalize_for_search("Élodie ÇA") == "elodie ca"
