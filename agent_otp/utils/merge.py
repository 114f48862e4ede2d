"""Scope merging"""
from typing import Any, Dict, Mapping


def deep_merge(base: Mapping[str, Any], override: Mapping[str, Any]) -> Dict[str, Any]:
    """Merge ``override`` into a copy of ``base``; override values win.

    Nested dicts on both sides are merged recursively. Any other value
    (lists included) from ``override`` replaces the base value. Keys present
    on only one side are kept. Neither input is mutated.
    """
    result: Dict[str, Any] = dict(base)
    for key, value in override.items():
        current = result.get(key)
        if isinstance(value, Mapping) and isinstance(current, Mapping):
            result[key] = deep_merge(current, value)
        else:
            result[key] = value
    return result
