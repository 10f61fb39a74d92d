import copy
from typing import Any, Mapping


def deep_merge(base: Mapping[str, Any], update: Mapping[str, Any]) -> dict:
    """
    Merge `update` into a copy of `base`.

    Nested mappings are merged key by key. Every other value, sequences
    included, replaces the base value wholesale (lists are never concatenated).
    Neither argument is mutated.

    Example:
        deep_merge({"tags": [1, 2], "a": {"x": 1}}, {"tags": [3], "a": {"y": 2}})
        -> {"tags": [3], "a": {"x": 1, "y": 2}}
    """
    merged = copy.deepcopy(dict(base))

    for key, value in update.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)

    return merged
