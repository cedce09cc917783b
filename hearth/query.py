"""Query condition evaluator.

Conditions are written as plain mappings::

    {"status": "open"}                              # implicit $equal
    {"priority": {"$gte": 2, "$lt": 5}}             # operator map
    {"owner.name": {"$like": "eloise"}}             # dotted field path
    {"$or": [{"status": "open"}, {"pinned": True}]}

and compiled into ``Leaf`` / ``And`` / ``Or`` nodes before evaluation.
Several keys in one mapping form an implicit AND. Unknown operators are
rejected at compile time; evaluation itself never raises for missing fields
or incomparable values, it just returns False.
"""

import logging
import threading
import unicodedata
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, Mapping, Optional, Tuple, Union

from hearth.protocols import QueryError
from hearth.types import MISSING

logger = logging.getLogger(__name__)

OPERATOR_PREFIX = "$"
LOGICAL_OPERATORS = frozenset({"$and", "$or"})

Predicate = Callable[[Any, Any], bool]


class Operator(str, Enum):
    """Built-in leaf operators."""

    EQUAL = "$equal"
    NOTEQUAL = "$notequal"
    GT = "$gt"
    GTE = "$gte"
    LT = "$lt"
    LTE = "$lte"
    IN = "$in"
    NOTIN = "$notin"
    LIKE = "$like"
    SOME = "$some"
    FUNCTION = "$function"


BUILTIN_OPERATORS = frozenset(op.value for op in Operator)


@dataclass(frozen=True)
class Leaf:
    path: str
    operator: str
    operand: Any


@dataclass(frozen=True)
class And:
    conditions: Tuple["Node", ...]


@dataclass(frozen=True)
class Or:
    conditions: Tuple["Node", ...]


Node = Union[Leaf, And, Or]


# =============================================================================
# Text normalisation
# =============================================================================


def normalize_for_search(text: str) -> str:
    """Strip diacritics and lowercase ``text``."""
    decomposed = unicodedata.normalize("NFD", text)
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch)).lower()


# =============================================================================
# Custom operator registry
# =============================================================================

_custom_operators: Dict[str, Predicate] = {}
_registry_lock = threading.Lock()


def register_operator(name: str, predicate: Predicate) -> None:
    """Register a custom leaf operator for every engine in the process.

    Args:
        name: Operator name, e.g. ``"$startswith"``
        predicate: ``predicate(record_value, operand) -> bool``

    Raises:
        QueryError: If the name lacks the ``$`` prefix, is only the prefix,
            or collides with a built-in or logical operator
    """
    if not isinstance(name, str) or not name.startswith(OPERATOR_PREFIX) or len(name) == 1:
        raise QueryError(f"Operator name must start with '{OPERATOR_PREFIX}': {name!r}")
    if name in BUILTIN_OPERATORS or name in LOGICAL_OPERATORS:
        raise QueryError(f"Operator {name} is built in and cannot be replaced")
    if not callable(predicate):
        raise QueryError(f"Operator {name} needs a callable predicate")
    with _registry_lock:
        _custom_operators[name] = predicate
    logger.debug(f"Registered query operator {name}")


def unregister_operator(name: str) -> None:
    with _registry_lock:
        _custom_operators.pop(name, None)


def registered_operators() -> Dict[str, Predicate]:
    with _registry_lock:
        return dict(_custom_operators)


# =============================================================================
# Built-in predicates
# =============================================================================


def _equal(value: Any, operand: Any) -> bool:
    # True == 1 in Python; keep booleans distinct from numbers
    if isinstance(value, bool) != isinstance(operand, bool):
        return False
    try:
        return bool(value == operand)
    except Exception:
        return False


def _compare(op: Callable[[Any, Any], bool]) -> Predicate:
    def predicate(value: Any, operand: Any) -> bool:
        if value is None or operand is None:
            return False
        try:
            return bool(op(value, operand))
        except TypeError:
            return False

    return predicate


def _contains(value: Any, operand: Any) -> bool:
    return any(_equal(value, candidate) for candidate in operand)


def _like(value: Any, operand: Any) -> bool:
    if isinstance(operand, tuple):
        normalizer, text = operand
        if not isinstance(value, str):
            return False
        if normalizer is not None:
            value = normalizer(value)
        return text in value
    if not isinstance(value, str):
        return False
    return normalize_for_search(operand) in normalize_for_search(value)


def _some(value: Any, operand: Any) -> bool:
    if not isinstance(value, list):
        return False
    if isinstance(operand, (And, Or, Leaf)):
        return any(evaluate(operand, item) for item in value)
    if callable(operand):
        return any(operand(item) for item in value)
    key, expected = operand
    return any(isinstance(item, dict) and _equal(item.get(key), expected) for item in value)


def _function(value: Any, operand: Any) -> bool:
    return bool(operand(value))


_BUILTINS: Dict[Operator, Predicate] = {
    Operator.EQUAL: _equal,
    Operator.NOTEQUAL: lambda value, operand: not _equal(value, operand),
    Operator.GT: _compare(lambda a, b: a > b),
    Operator.GTE: _compare(lambda a, b: a >= b),
    Operator.LT: _compare(lambda a, b: a < b),
    Operator.LTE: _compare(lambda a, b: a <= b),
    Operator.IN: _contains,
    Operator.NOTIN: lambda value, operand: not _contains(value, operand),
    Operator.LIKE: _like,
    Operator.SOME: _some,
    Operator.FUNCTION: _function,
}


# =============================================================================
# Compilation
# =============================================================================


def _is_operator_map(value: Any) -> bool:
    return (
        isinstance(value, Mapping)
        and bool(value)
        and all(isinstance(key, str) and key.startswith(OPERATOR_PREFIX) for key in value)
    )


def _compile_operand(operator: str, operand: Any) -> Any:
    if operator in (Operator.IN.value, Operator.NOTIN.value):
        if not isinstance(operand, (list, tuple, set, frozenset)):
            raise QueryError(f"{operator} expects a list of values")
        return tuple(operand)
    if operator == Operator.LIKE.value:
        if isinstance(operand, str):
            return operand
        if isinstance(operand, (list, tuple)) and len(operand) == 2:
            normalizer, text = operand
            if (normalizer is None or callable(normalizer)) and isinstance(text, str):
                return (normalizer, text)
        raise QueryError(f"{operator} expects a string or a (normalizer, text) pair")
    if operator == Operator.SOME.value:
        if isinstance(operand, Mapping):
            node = compile_condition(operand)
            return node if node is not None else And(())
        if callable(operand):
            return operand
        if isinstance(operand, (list, tuple)) and len(operand) == 2:
            return (operand[0], operand[1])
        raise QueryError(f"{operator} expects a (key, value) pair, a predicate or a condition")
    if operator == Operator.FUNCTION.value and not callable(operand):
        raise QueryError(f"{operator} expects a callable")
    return operand


def _compile_leaves(path: str, value: Any) -> Node:
    if not _is_operator_map(value):
        return Leaf(path, Operator.EQUAL.value, value)

    leaves = []
    for operator, operand in value.items():
        if operator not in BUILTIN_OPERATORS and operator not in _custom_operators:
            raise QueryError(f"Unknown query operator: {operator}")
        leaves.append(Leaf(path, operator, _compile_operand(operator, operand)))
    return leaves[0] if len(leaves) == 1 else And(tuple(leaves))


def compile_condition(condition: Optional[Mapping[str, Any]]) -> Optional[Node]:
    """Compile a mapping condition into a node tree.

    Returns None for an absent or empty condition (matches everything).

    Raises:
        QueryError: On unknown operators or malformed logical groups
    """
    if condition is None:
        return None
    if isinstance(condition, (Leaf, And, Or)):
        return condition
    if not isinstance(condition, Mapping):
        raise QueryError(f"Query condition must be a mapping, got {type(condition).__name__}")
    if not condition:
        return None

    nodes = []
    for key, value in condition.items():
        if key in LOGICAL_OPERATORS:
            if not isinstance(value, (list, tuple)):
                raise QueryError(f"{key} expects a list of conditions")
            children = tuple(
                node for node in (compile_condition(item) for item in value) if node is not None
            )
            nodes.append(And(children) if key == "$and" else Or(children))
        elif isinstance(key, str) and key.startswith(OPERATOR_PREFIX):
            raise QueryError(f"Operator {key} used without a field")
        elif not isinstance(key, str) or not key:
            raise QueryError(f"Invalid field path: {key!r}")
        else:
            nodes.append(_compile_leaves(key, value))

    return nodes[0] if len(nodes) == 1 else And(tuple(nodes))


# =============================================================================
# Evaluation
# =============================================================================


def _resolve(record: Any, path: str) -> Any:
    """Resolve a field path; MISSING when an intermediate segment is unusable."""
    segments = path.split(".")
    value = record
    for segment in segments[:-1]:
        if not isinstance(value, dict) or segment not in value:
            return MISSING
        value = value[segment]
    if not isinstance(value, dict):
        return MISSING
    return value.get(segments[-1])


def _predicate_for(operator: str) -> Optional[Predicate]:
    try:
        return _BUILTINS[Operator(operator)]
    except ValueError:
        return _custom_operators.get(operator)


def evaluate(node: Optional[Node], record: Any) -> bool:
    """Evaluate a compiled node against a record."""
    if node is None:
        return True
    if isinstance(node, And):
        return all(evaluate(child, record) for child in node.conditions)
    if isinstance(node, Or):
        return any(evaluate(child, record) for child in node.conditions)

    value = _resolve(record, node.path)
    if value is MISSING:
        return False
    predicate = _predicate_for(node.operator)
    if predicate is None:
        # custom operator unregistered after compilation
        return False
    return bool(predicate(value, node.operand))


def matches(condition: Any, record: Any) -> bool:
    """Check whether ``record`` satisfies ``condition``."""
    return evaluate(compile_condition(condition), record)
