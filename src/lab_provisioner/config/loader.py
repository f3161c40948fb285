"""YAML configuration file loader."""

from __future__ import annotations

import logging
import os
from pathlib import Path
from typing import Any

from dotenv import dotenv_values
from pydantic import ValidationError
from ruamel.yaml import YAML
from ruamel.yaml.constructor import SafeConstructor

from lab_provisioner.config.schema import Config
from lab_provisioner.engine.errors import ConfigError

logger = logging.getLogger(__name__)

# Field name -> environment variable, per config section.
_PROXMOX_ENV_MAP: dict[str, str] = {
    "host": "PROXMOX_HOST",
    "port": "PROXMOX_PORT",
    "user": "PROXMOX_USER",
    "token_name": "PROXMOX_TOKEN_NAME",
    "token_value": "PROXMOX_TOKEN_VALUE",
    "password": "PROXMOX_PASSWORD",
    "verify_ssl": "PROXMOX_VERIFY_SSL",
    "node": "PROXMOX_NODE",
}

_LINODE_ENV_MAP: dict[str, str] = {
    "token": "LINODE_TOKEN",
    "root_password": "LINODE_ROOT_PASSWORD",
}

_TOP_LEVEL_ENV_MAP: dict[str, str] = {
    "ssh_public_key": "LAB_SSH_PUBLIC_KEY",
}

_BOOL_FIELDS: frozenset[str] = frozenset({"verify_ssl"})


def _resolve_section(
    raw_section: dict[str, Any],
    env_map: dict[str, str],
    dotenv_vals: dict[str, str | None],
) -> dict[str, Any]:
    """Resolve fields from YAML, env vars, and ``.env`` file.

    Priority (highest wins): YAML value > env var > ``.env`` file. Keys of
    *raw_section* without an env mapping are passed through unchanged.
    """
    resolved: dict[str, Any] = dict(raw_section)
    for field, env_key in env_map.items():
        val = raw_section.get(field)
        if val is None:
            val = os.environ.get(env_key)
        if val is None:
            val = dotenv_vals.get(env_key)
        if val is None:
            continue
        if field in _BOOL_FIELDS and isinstance(val, str):
            if val.lower() not in SafeConstructor.bool_values:
                raise ConfigError(f"Invalid boolean for {env_key}: {val!r}")
            val = SafeConstructor.bool_values[val.lower()]
        resolved[field] = val
    return resolved


def _section(raw: dict[str, Any], key: str) -> dict[str, Any]:
    value = raw.get(key)
    if value is None:
        return {}
    if not isinstance(value, dict):
        raise ConfigError(f"'{key}' must be a mapping")
    return value


def load_config(path: Path | str) -> Config:
    """Load a YAML configuration file and return a ``Config`` object.

    Raises:
        ConfigError: On YAML parse errors, missing sections, or validation failures.
    """
    path = Path(path)

    try:
        raw = YAML(typ="safe").load(path)
    except Exception as exc:
        raise ConfigError(f"Failed to read {path}: {exc}") from exc

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ConfigError(f"{path}: top level must be a mapping")

    env_file = path.parent / ".env"
    dotenv_vals = dotenv_values(env_file, encoding="utf-8-sig") if env_file.is_file() else {}

    raw["proxmox"] = _resolve_section(_section(raw, "proxmox"), _PROXMOX_ENV_MAP, dotenv_vals)
    raw["linode"] = _resolve_section(_section(raw, "linode"), _LINODE_ENV_MAP, dotenv_vals)
    raw.update(_resolve_section(raw, _TOP_LEVEL_ENV_MAP, dotenv_vals))

    try:
        config = Config.model_validate(raw)
    except ValidationError as exc:
        raise ConfigError(str(exc)) from exc

    config.config_dir = path.parent
    if not config.state_path.is_absolute():
        config.state_path = config.config_dir / config.state_path

    logger.info("Loaded config from %s (%d VMs, edge=%s)", path, len(config.vms), bool(config.edge))
    return config
