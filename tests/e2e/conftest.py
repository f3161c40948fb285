"""Shared fixtures for e2e tests against a live Proxmox VE host.

Connection settings come from the usual ``PROXMOX_*`` variables. The VM used
by the tests is described by ``LAB_E2E_VMID`` and ``LAB_E2E_IP``; it is
cloned from ``LAB_E2E_TEMPLATE_VMID`` and destroyed again afterwards.
"""

from __future__ import annotations

import contextlib
import logging
import os
from typing import TYPE_CHECKING, Any

import pytest
from proxmoxer import ProxmoxAPI

from lab_provisioner.config import load

if TYPE_CHECKING:
    from collections.abc import Callable, Generator
    from pathlib import Path

    from lab_provisioner.config.schema import Config

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Options
# ---------------------------------------------------------------------------


def pytest_addoption(parser: pytest.Parser) -> None:
    group = parser.getgroup("e2e", "Proxmox e2e test options")
    group.addoption(
        "--e2e-node",
        default=None,
        help="Proxmox node to create the test VM on (default: PROXMOX_NODE env -> pve)",
    )


def _require_env(name: str) -> str:
    value = os.environ.get(name)
    if not value:
        pytest.skip(f"{name} is not set")
    return value


# ---------------------------------------------------------------------------
# Session-scoped fixtures
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def proxmox_node(request: pytest.FixtureRequest) -> str:
    return request.config.getoption("--e2e-node") or os.environ.get("PROXMOX_NODE", "pve")


@pytest.fixture(scope="session")
def proxmox_client() -> ProxmoxAPI:
    host = _require_env("PROXMOX_HOST")
    kwargs: dict[str, Any] = {
        "user": os.environ.get("PROXMOX_USER", "root@pam"),
        "verify_ssl": os.environ.get("PROXMOX_VERIFY_SSL", "true").lower() in {"1", "true", "yes"},
    }
    if os.environ.get("PROXMOX_TOKEN_NAME") and os.environ.get("PROXMOX_TOKEN_VALUE"):
        kwargs["token_name"] = os.environ["PROXMOX_TOKEN_NAME"]
        kwargs["token_value"] = os.environ["PROXMOX_TOKEN_VALUE"]
    else:
        kwargs["password"] = _require_env("PROXMOX_PASSWORD")

    client = ProxmoxAPI(host, **kwargs)
    try:
        client.version.get()
    except Exception as exc:
        pytest.skip(f"Proxmox not reachable at {host}: {exc}")
    return client


@pytest.fixture(scope="session")
def e2e_vm() -> dict[str, Any]:
    """VMID, IP and template of the disposable test VM."""
    return {
        "vmid": int(_require_env("LAB_E2E_VMID")),
        "ip": _require_env("LAB_E2E_IP"),
        "template_vmid": int(os.environ.get("LAB_E2E_TEMPLATE_VMID", "9000")),
    }


# ---------------------------------------------------------------------------
# Cleanup fixtures (function-scoped)
# ---------------------------------------------------------------------------


@pytest.fixture()
def cleanup_vms(proxmox_client: ProxmoxAPI, proxmox_node: str) -> Generator[list[int]]:
    created: list[int] = []
    yield created
    node = proxmox_client.nodes(proxmox_node)
    for vmid in reversed(created):
        with contextlib.suppress(Exception):
            node.qemu(vmid).status.stop.post()
        with contextlib.suppress(Exception):
            node.qemu(vmid).delete(purge=1)


# ---------------------------------------------------------------------------
# Config factory
# ---------------------------------------------------------------------------


@pytest.fixture()
def make_config(
    tmp_path: Path, proxmox_client: ProxmoxAPI, proxmox_node: str, e2e_vm: dict[str, Any]
) -> Callable[..., Config]:
    """Write a one-VM config into *tmp_path*; extra YAML is appended to the VM entry."""
    _ = proxmox_client
    ssh_key = _require_env("LAB_SSH_PUBLIC_KEY")

    def _make(*, name: str = "lab-e2e", vm_extra: str = "") -> Config:
        network = os.environ.get("LAB_E2E_NETWORK", "192.168.1.0/24")
        gateway = os.environ.get("LAB_E2E_GATEWAY", "192.168.1.1")
        (tmp_path / "lab.yaml").write_text(
            f"stack: e2e\n"
            f'ssh_public_key: "{ssh_key}"\n'
            f"proxmox:\n  node: {proxmox_node}\n"
            f"network:\n  cidr: {network}\n  gateway: {gateway}\n  dns_server: {gateway}\n"
            f"template:\n  vmid: {e2e_vm['template_vmid']}\n"
            f"vms:\n"
            f"  - name: {name}\n"
            f"    vmid: {e2e_vm['vmid']}\n"
            f"    ip: {e2e_vm['ip']}\n"
            f"{vm_extra}"
        )
        return load(tmp_path / "lab.yaml")

    return _make
