"""Deep merge for endpoint documents.

Maps merge key by key, sequences are replaced wholesale and any other value
is a scalar where the incoming side wins. Replacing sequences keeps list
fields such as endpoint attributes from growing on every sync.
"""
import copy
from collections.abc import Mapping
from enum import Enum
from typing import Any, Dict


class ValueKind(str, Enum):
    """Kind of a JSON-like value as far as merging is concerned."""
    MAP = "map"
    SEQUENCE = "sequence"
    SCALAR = "scalar"


def kind_of(value: Any) -> ValueKind:
    if isinstance(value, Mapping):
        return ValueKind.MAP
    # str and bytes are scalars even though they are sequences
    if isinstance(value, (list, tuple)):
        return ValueKind.SEQUENCE
    return ValueKind.SCALAR


def merge_values(base: Any, incoming: Any) -> Any:
    """Merge two values; returns a new object and never mutates either side."""
    if kind_of(base) is ValueKind.MAP and kind_of(incoming) is ValueKind.MAP:
        return deep_merge(base, incoming)
    if kind_of(incoming) is ValueKind.SEQUENCE:
        return [copy.deepcopy(item) for item in incoming]
    return copy.deepcopy(incoming)


def deep_merge(base: Mapping, incoming: Mapping) -> Dict[str, Any]:
    """
    Merge ``incoming`` onto ``base``.

    Args:
        base: Existing document
        incoming: Document whose values take precedence

    Returns:
        A new dict; keys only present in ``base`` are kept as they were
    """
    merged = {key: copy.deepcopy(value) for key, value in base.items()}
    for key, value in incoming.items():
        if key in merged:
            merged[key] = merge_values(merged[key], value)
        else:
            merged[key] = merge_values(None, value)
    return merged
