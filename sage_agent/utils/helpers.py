"""Small shared helpers."""

from __future__ import annotations

import os
import re
from pathlib import Path
from typing import Any

_CAMEL_BOUNDARY = re.compile(r"(?<!^)(?=[A-Z])")


def ensure_dir(path: Path) -> Path:
    """Create directory if needed and return it."""
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_data_path() -> Path:
    """Resolve the data directory (SAGE_HOME or ~/.sage)."""
    raw = os.environ.get("SAGE_HOME", "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.home() / ".sage"


def camel_to_snake(name: str) -> str:
    return _CAMEL_BOUNDARY.sub("_", name).lower()


def convert_keys(data: Any, preserve: frozenset[str] = frozenset()) -> Any:
    """Recursively convert camelCase dict keys to snake_case.

    Mappings under keys listed in ``preserve`` keep their own keys as-is
    (model names, HTTP header names).
    """
    if isinstance(data, dict):
        converted: dict[str, Any] = {}
        for key, value in data.items():
            snake = camel_to_snake(str(key))
            if snake in preserve and isinstance(value, dict):
                converted[snake] = {k: convert_keys(v, preserve) for k, v in value.items()}
            else:
                converted[snake] = convert_keys(value, preserve)
        return converted
    if isinstance(data, list):
        return [convert_keys(item, preserve) for item in data]
    return data


def compact_preview(text: str, limit: int = 1200) -> str:
    compact = " ".join((text or "").split())
    if len(compact) <= limit:
        return compact
    return compact[:limit] + "..."
