"""Field-level record merge used by ``Store.update``.

Fields of the current record that the update leaves out are kept. Nested
objects merge recursively. Lists of records merge element by element on their
id field: matching elements are merged in place, unknown elements are
appended, and current elements the update does not mention are kept. A field
declared ``LIST`` or ``SCALAR`` is replaced wholesale, which is how a caller
removes list elements.
"""

import copy
from typing import Any, Dict, List, Mapping, Optional

from hearth.types import FieldKind, FieldShape

Shapes = Mapping[str, FieldShape]


def infer_shape(current: Any, update: Any, id_field: str) -> FieldShape:
    """Shape for a field nobody declared, inferred from both values."""
    if isinstance(current, dict) and isinstance(update, dict):
        return FieldShape(FieldKind.OBJECT)
    if isinstance(current, list) and isinstance(update, list):
        return FieldShape(FieldKind.RECORDS, id_field=id_field)
    return FieldShape(FieldKind.SCALAR)


def _merge_value(current: Any, update: Any, shape: FieldShape, id_field: str) -> Any:
    if shape.kind is FieldKind.OBJECT and isinstance(current, dict) and isinstance(update, dict):
        return merge_records(current, update, shape.fields, id_field)
    if shape.kind is FieldKind.RECORDS and isinstance(current, list) and isinstance(update, list):
        return merge_record_lists(current, update, shape.id_field, shape.fields)
    return copy.deepcopy(update)


def merge_record_lists(
    current: List[Any],
    update: List[Any],
    id_field: str = "id",
    shapes: Optional[Shapes] = None,
) -> List[Any]:
    """Merge two lists of records on ``id_field``.

    Elements without an id (or that are not dicts) in the update are appended
    as they are.
    """
    merged = [copy.deepcopy(item) for item in current]
    positions: Dict[Any, int] = {}
    for index, item in enumerate(merged):
        if isinstance(item, dict) and item.get(id_field) is not None:
            try:
                positions.setdefault(item[id_field], index)
            except TypeError:
                continue

    for item in update:
        item_id = item.get(id_field) if isinstance(item, dict) else None
        try:
            position = positions.get(item_id) if item_id is not None else None
        except TypeError:
            position = None
        if position is None:
            merged.append(copy.deepcopy(item))
            continue
        merged[position] = merge_records(merged[position], item, shapes, id_field)

    return merged


def merge_records(
    current: Dict[str, Any],
    update: Dict[str, Any],
    shapes: Optional[Shapes] = None,
    id_field: str = "id",
) -> Dict[str, Any]:
    """Merge ``update`` into ``current`` and return a new dict.

    Args:
        current: The stored record
        update: Incoming partial or full record
        shapes: Declared field shapes, keyed by field name
        id_field: Identifier field used for lists of undeclared shape
    """
    shapes = shapes or {}
    merged = copy.deepcopy(current)

    for name, value in update.items():
        if name not in merged:
            merged[name] = copy.deepcopy(value)
            continue
        shape = shapes.get(name) or infer_shape(merged[name], value, id_field)
        merged[name] = _merge_value(merged[name], value, shape, id_field)

    return merged
