# ABOUTME: JSON merge patch and canonical JSON helpers
# ABOUTME: Used by drift detection to merge desired state into live objects and compare them

"""JSON merge patch (RFC 7386) and canonical JSON comparison."""

from __future__ import annotations

import copy
import json
from typing import Any

# Server-managed metadata that changes on every write and never appears in git
VOLATILE_METADATA = frozenset(["resourceVersion", "managedFields", "generation"])


def merge_patch(target: Any, patch: Any) -> Any:
    """
    Apply `patch` to `target` as a JSON merge patch.

    - keys in patch win
    - keys only in target are kept
    - a None value in patch deletes the key
    - non-dict patch values (lists included) replace wholesale

    Neither argument is modified.
    """
    if not isinstance(patch, dict):
        return copy.deepcopy(patch)

    result = copy.deepcopy(target) if isinstance(target, dict) else {}
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        else:
            result[key] = merge_patch(result.get(key), value)
    return result


def _normalize(value: Any) -> Any:
    if isinstance(value, dict):
        return {k: _normalize(v) for k, v in value.items()}
    if isinstance(value, list):
        return [_normalize(v) for v in value]
    if isinstance(value, float) and value.is_integer():
        return int(value)
    return value


def canonical_json(obj: dict[str, Any]) -> str:
    """Sorted-key JSON of `obj` without volatile server metadata."""
    data = _normalize(obj)
    metadata = data.get("metadata")
    if isinstance(metadata, dict):
        data["metadata"] = {k: v for k, v in metadata.items() if k not in VOLATILE_METADATA}
    return json.dumps(data, sort_keys=True, separators=(",", ":"), default=str)
