"""Reading config.yaml (and an optional config.local.yaml beside it)."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from loguru import logger


def _deep_update(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Return base with override merged in; nested mappings merge key by key, lists are replaced."""
    merged = dict(base)
    for key, value in override.items():
        current = merged.get(key)
        if isinstance(current, dict) and isinstance(value, dict):
            merged[key] = _deep_update(current, value)
        else:
            merged[key] = value
    return merged


def load_config(path: str | Path) -> dict[str, Any]:
    """Parse one YAML file.

    A missing or empty file, or one whose top level is not a mapping, yields
    ``{}`` so tobby can still start with defaults. Syntax errors propagate.
    """
    path = Path(path)
    if not path.is_file():
        logger.warning("No config at {}, using defaults", path)
        return {}
    try:
        with path.open(encoding="utf-8") as fh:
            data = yaml.safe_load(fh)
    except yaml.YAMLError as exc:
        logger.error("Cannot parse {}: {}", path, exc)
        raise
    if data is None:
        return {}
    if not isinstance(data, dict):
        logger.warning("Ignoring {}: top level is {}, expected a mapping", path, type(data).__name__)
        return {}
    return data


def local_override_path(path: str | Path) -> Path:
    """config.yaml -> config.local.yaml"""
    path = Path(path)
    return path.with_name(f"{path.stem}.local{path.suffix or '.yaml'}")


def load_config_with_env(path: str | Path) -> dict[str, Any]:
    """Populate os.environ from .env, then read the config and its local override.

    The TOBBY_* variables themselves are applied later by Config.
    """
    load_dotenv()
    data = load_config(path)
    local = local_override_path(path)
    if local.is_file():
        logger.debug("Merging local overrides from {}", local)
        data = _deep_update(data, load_config(local))
    return data
