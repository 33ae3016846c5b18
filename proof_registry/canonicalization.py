"""
Canonical JSON encoding for proofs and manifests.

Semantically identical documents produce identical bytes regardless of
key insertion order. These bytes are the signature payload and the input
to every digest that feeds a Merkle root.
"""

import json
import math
from typing import Any, Dict, List, Union


def canonicalize(obj: Any) -> bytes:
    """
    Convert an object to canonical JSON bytes.

    Rules:
    - Object keys sorted by Unicode code point
    - No whitespace between tokens
    - UTF-8 encoding, no ASCII escaping
    - Arrays preserve order
    - Only JSON types; non-string keys, NaN and Infinity are rejected

    Raises:
        ValueError: if the object contains a value that has no canonical form
    """
    canonical = _canonicalize_value(obj)
    return json.dumps(
        canonical, separators=(',', ':'), ensure_ascii=False, allow_nan=False
    ).encode('utf-8')


def canonicalize_str(obj: Any) -> str:
    """Return canonical JSON as string."""
    return canonicalize(obj).decode('utf-8')


def _canonicalize_value(value: Any) -> Any:
    """Recursively canonicalize a value."""
    if value is None:
        return None
    elif isinstance(value, bool):
        return value
    elif isinstance(value, int):
        return value
    elif isinstance(value, float):
        if math.isnan(value) or math.isinf(value):
            raise ValueError("Cannot canonicalize non-finite number")
        return value
    elif isinstance(value, str):
        return value
    elif isinstance(value, dict):
        return _canonicalize_object(value)
    elif isinstance(value, (list, tuple)):
        return _canonicalize_array(value)
    else:
        raise ValueError(f"Cannot canonicalize type: {type(value)}")


def _canonicalize_object(obj: Dict[str, Any]) -> Dict[str, Any]:
    for key in obj:
        if not isinstance(key, str):
            raise ValueError(f"Object keys must be strings, got {type(key)}")
    return {k: _canonicalize_value(obj[k]) for k in sorted(obj.keys())}


def _canonicalize_array(arr: Union[List, tuple]) -> List:
    return [_canonicalize_value(item) for item in arr]
