"""The closed structured-value model used for tool parameters and results."""

from __future__ import annotations

import math
from typing import Any, Dict, List, Union

StructuredValue = Union[None, bool, int, float, str, List["StructuredValue"], Dict[str, "StructuredValue"]]


def ensure_structured(value: Any, path: str = "$") -> StructuredValue:
    """
    Check that ``value`` is built only from null/bool/number/string/list/mapping.

    Tuples are accepted and returned as lists. Raises ``ValueError`` naming the
    offending location otherwise.
    """
    if value is None or isinstance(value, (bool, str)):
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError(f"{path}: non-finite number")
        return value
    if isinstance(value, (list, tuple)):
        return [ensure_structured(item, f"{path}[{i}]") for i, item in enumerate(value)]
    if isinstance(value, dict):
        result: Dict[str, StructuredValue] = {}
        for key, item in value.items():
            if not isinstance(key, str):
                raise ValueError(f"{path}: mapping key {key!r} is not a string")
            result[key] = ensure_structured(item, f"{path}.{key}")
        return result
    raise ValueError(f"{path}: unsupported value of type {type(value).__name__}")
