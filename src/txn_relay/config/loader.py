"""Relay config loading.

A relay config is assembled in three layers, later layers winning:

1. the built-in ``defaults/relay.yaml``
2. the charging backend's environment variables (``STEVE_DB_*`` for the
   MySQL source, ``DB_*`` / ``SSL_MODE`` for the PostgreSQL destination),
   optionally read from a ``.env`` file first
3. an optional relay YAML file, whose strings may reference the environment
   as ``${VAR}`` or ``${VAR:-fallback}``
"""

from __future__ import annotations

import os
import re
from collections.abc import Mapping
from pathlib import Path
from typing import Any

import yaml
from dotenv import load_dotenv
from pydantic import ValidationError

from txn_relay.config.models import RelayConfig

DEFAULTS_PATH = Path(__file__).parent / "defaults" / "relay.yaml"

# Environment variable -> config field, as the backend deploys them.
ENV_FIELDS: dict[str, tuple[str, ...]] = {
    "STEVE_DB_HOST": ("source", "host"),
    "STEVE_DB_PORT": ("source", "port"),
    "STEVE_DB_DATABASE_NAME": ("source", "database"),
    "STEVE_DB_USERNAME": ("source", "username"),
    "STEVE_DB_PASSWORD": ("source", "password"),
    "STEVE_DB_TABLE_NAME_ONE": ("source", "tables", "start"),
    "STEVE_DB_TABLE_NAME_TWO": ("source", "tables", "stop"),
    "STEVE_DB_TABLE_NAME_THREE": ("source", "tables", "stop_failed"),
    "DB_HOST": ("destination", "host"),
    "DB_PORT": ("destination", "port"),
    "DB_NAME": ("destination", "database"),
    "DB_USER": ("destination", "username"),
    "DB_PASS": ("destination", "password"),
    "SSL_MODE": ("destination", "sslmode"),
    "LOG_LEVEL": ("logging", "level"),
}

_REFERENCE = re.compile(r"\$\{(?P<name>[A-Za-z_][A-Za-z0-9_]*)(?::-(?P<fallback>[^}]*))?\}")


def load_env_file(path: str | Path) -> bool:
    """Export the variables of a ``.env`` file that are not already set."""
    return load_dotenv(dotenv_path=path, override=False)


def interpolate(data: Any, environ: Mapping[str, str]) -> Any:
    """Expand ``${VAR}`` references in every string of a parsed YAML tree."""
    if isinstance(data, dict):
        return {key: interpolate(value, environ) for key, value in data.items()}
    if isinstance(data, list):
        return [interpolate(item, environ) for item in data]
    if not isinstance(data, str):
        return data

    def _expand(match: re.Match[str]) -> str:
        name, fallback = match.group("name"), match.group("fallback")
        if name in environ:
            return environ[name]
        if fallback is None:
            msg = f"${{{name}}} is referenced but not set and has no fallback"
            raise ValueError(msg)
        return fallback

    return _REFERENCE.sub(_expand, data)


def settings_from_env(environ: Mapping[str, str]) -> dict[str, Any]:
    """Nest the backend's environment variables into a partial relay config."""
    settings: dict[str, Any] = {}
    for var, path in ENV_FIELDS.items():
        value = environ.get(var)
        if not value:
            continue
        *parents, leaf = path
        node = settings
        for key in parents:
            node = node.setdefault(key, {})
        node[leaf] = value
    return settings


def read_yaml(path: str | Path) -> dict[str, Any]:
    """Parse a YAML mapping; errors name the file and, if known, the line."""
    p = Path(path)
    if not p.is_file():
        msg = f"Config file not found: {p}"
        raise FileNotFoundError(msg)
    try:
        data = yaml.safe_load(p.read_text()) or {}
    except yaml.YAMLError as exc:
        mark = getattr(exc, "problem_mark", None)
        where = f" at line {mark.line + 1}" if mark is not None else ""
        msg = f"Cannot parse {p}{where}: {exc}"
        raise ValueError(msg) from exc
    if not isinstance(data, dict):
        msg = f"{p} must hold a YAML mapping, not a {type(data).__name__}"
        raise TypeError(msg)
    return data


def _overlay(base: dict[str, Any], top: dict[str, Any]) -> dict[str, Any]:
    merged = dict(base)
    for key, value in top.items():
        below = merged.get(key)
        if isinstance(below, dict) and isinstance(value, dict):
            value = _overlay(below, value)
        merged[key] = value
    return merged


def load_relay_config(
    path: str | Path | None = None,
    *,
    environ: Mapping[str, str] | None = None,
) -> RelayConfig:
    """Build the relay config from defaults, the environment and *path*."""
    env = os.environ if environ is None else environ
    data = _overlay(read_yaml(DEFAULTS_PATH), settings_from_env(env))
    if path is not None:
        data = _overlay(data, interpolate(read_yaml(path), env))
    try:
        return RelayConfig.model_validate(data)
    except ValidationError as exc:
        origin = path if path is not None else "environment"
        msg = f"Invalid relay config ({origin}):\n{exc}"
        raise ValueError(msg) from exc
