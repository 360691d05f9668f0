"""Configuration-tier merging for deploy requests.

Precedence, highest first: explicit per-key overrides, inline structured
values, a referenced values file, the target's stored defaults, and (for
chart releases) the chart's built-in defaults.  Tiers are deep-merged: a
key absent from a higher tier falls through to the next one.
"""

from __future__ import annotations

import copy
import re
from collections.abc import Iterable, Mapping
from pathlib import Path
from typing import Any

import yaml

_KEY_SPLIT = re.compile(r"(?<!\\)\.")
_INT = re.compile(r"^[+-]?\d+$")


def deep_merge(base: Mapping[str, Any], overlay: Mapping[str, Any]) -> dict[str, Any]:
    """Return a new dict with *overlay* merged over *base*.

    Nested mappings merge key by key; any other value in *overlay*
    replaces the value in *base* wholesale (lists included).
    """
    merged: dict[str, Any] = copy.deepcopy(dict(base))
    for key, value in overlay.items():
        current = merged.get(key)
        if isinstance(current, Mapping) and isinstance(value, Mapping):
            merged[key] = deep_merge(current, value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def split_key(dotted: str) -> list[str]:
    """Split ``a.b\\.c`` into ``["a", "b.c"]``."""
    return [part.replace("\\.", ".") for part in _KEY_SPLIT.split(dotted)]


def expand_dotted(flat: Mapping[str, Any]) -> dict[str, Any]:
    """Expand ``{"a.b": 1}`` into ``{"a": {"b": 1}}``."""
    expanded: dict[str, Any] = {}
    for dotted, value in flat.items():
        node = expanded
        *parents, leaf = split_key(dotted)
        for part in parents:
            child = node.get(part)
            if not isinstance(child, dict):
                child = node[part] = {}
            node = child
        node[leaf] = value
    return expanded


def parse_scalar(raw: str) -> Any:
    """Coerce a ``--set`` value the way the chart manager does."""
    lowered = raw.lower()
    if lowered == "true":
        return True
    if lowered == "false":
        return False
    if lowered == "null":
        return None
    if _INT.match(raw):
        return int(raw)
    if raw.startswith("{") and raw.endswith("}"):
        inner = raw[1:-1]
        return [parse_scalar(item.strip()) for item in inner.split(",")] if inner else []
    return raw


def parse_set_overrides(items: Iterable[str]) -> dict[str, Any]:
    """Parse ``key.path=value`` strings into a flat override dict.

    Later items win over earlier ones for the same key.
    """
    overrides: dict[str, Any] = {}
    for item in items:
        key, sep, raw = item.partition("=")
        if not sep or not key.strip():
            raise ValueError(f"Invalid override {item!r}; expected key=value")
        overrides[key.strip()] = parse_scalar(raw)
    return overrides


def load_values_file(path: Path) -> dict[str, Any]:
    """Load a YAML (or JSON) values file; an empty file yields ``{}``."""
    with Path(path).open(encoding="utf-8") as fh:
        data = yaml.safe_load(fh)
    if data is None:
        return {}
    if not isinstance(data, Mapping):
        raise ValueError(f"Values file {path} must contain a mapping")
    return dict(data)


def resolve_values(
    *,
    overrides: Mapping[str, Any] | None = None,
    inline: Mapping[str, Any] | None = None,
    file_values: Mapping[str, Any] | None = None,
    defaults: Mapping[str, Any] | None = None,
    chart_defaults: Mapping[str, Any] | None = None,
) -> dict[str, Any]:
    """Merge all configuration tiers, lowest precedence first."""
    resolved: dict[str, Any] = {}
    for tier in (chart_defaults, defaults, file_values, inline):
        if tier:
            resolved = deep_merge(resolved, tier)
    if overrides:
        resolved = deep_merge(resolved, expand_dotted(overrides))
    return resolved
