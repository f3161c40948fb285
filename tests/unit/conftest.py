"""Shared fixtures for unit tests."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest

from lab_provisioner.config import load

if TYPE_CHECKING:
    from collections.abc import Callable
    from pathlib import Path

    from lab_provisioner.config.schema import Config

_LAB_ENV_VARS = (
    "PROXMOX_HOST",
    "PROXMOX_PORT",
    "PROXMOX_USER",
    "PROXMOX_TOKEN_NAME",
    "PROXMOX_TOKEN_VALUE",
    "PROXMOX_PASSWORD",
    "PROXMOX_VERIFY_SSL",
    "PROXMOX_NODE",
    "LINODE_TOKEN",
    "LINODE_ROOT_PASSWORD",
    "LAB_SSH_PUBLIC_KEY",
    "LAB_LOG",
)


@pytest.fixture(autouse=True)
def _clean_lab_env(monkeypatch: pytest.MonkeyPatch) -> None:
    """Remove provider env vars so unit tests don't leak host config."""
    for var in _LAB_ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def make_config(tmp_path: Path) -> Callable[..., Config]:
    """Factory fixture: write YAML + optional .env, return loaded Config."""

    def _make(yaml_str: str, *, dotenv: str | None = None) -> Config:
        (tmp_path / "config.yaml").write_text(yaml_str)
        if dotenv is not None:
            (tmp_path / ".env").write_text(dotenv)
        return load(tmp_path / "config.yaml")

    return _make
