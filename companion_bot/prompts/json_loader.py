from __future__ import annotations

import copy
import json
import logging
from pathlib import Path
from typing import Any

logger = logging.getLogger("companion_bot")

_CACHE: dict[Path, tuple[int | None, dict[str, Any]]] = {}


def data_dir() -> Path:
    return Path(__file__).with_name("data")


def _overlay(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in override.items():
        if isinstance(merged.get(key), dict) and isinstance(value, dict):
            merged[key] = _overlay(merged[key], value)
        else:
            merged[key] = copy.deepcopy(value)
    return merged


def load_prompt_json(filename: str, defaults: dict[str, Any], *, directory: Path | None = None) -> dict[str, Any]:
    """Return `defaults` overlaid with `<data dir>/<filename>`.

    The parsed file is cached by mtime, so edits are picked up without a
    restart. A missing or malformed file falls back to the defaults.
    """
    path = ((directory or data_dir()) / filename).resolve()
    try:
        mtime_ns: int | None = path.stat().st_mtime_ns
    except OSError:
        mtime_ns = None

    cached = _CACHE.get(path)
    if cached is not None and cached[0] == mtime_ns:
        return copy.deepcopy(cached[1])

    result = copy.deepcopy(defaults)
    if mtime_ns is None:
        logger.debug("Prompt file not found: %s (using defaults)", path)
    else:
        try:
            payload = json.loads(path.read_text(encoding="utf-8-sig"))
        except (OSError, ValueError) as exc:
            logger.warning("Failed to read prompt file %s (%s). Using defaults.", path, exc)
        else:
            if isinstance(payload, dict):
                result = _overlay(result, payload)
            else:
                logger.warning("Prompt file root must be an object: %s (using defaults)", path)

    _CACHE[path] = (mtime_ns, copy.deepcopy(result))
    return result
