"""Tests for Ansible inventory generation."""

from __future__ import annotations

from typing import TYPE_CHECKING

import pytest
from ruamel.yaml import YAML

from lab_provisioner.core.state import ResourceInstance, State
from lab_provisioner.inventory import (
    DuplicateHostError,
    generate_inventory,
    render_inventory,
    write_inventory,
)

if TYPE_CHECKING:
    from pathlib import Path


def _vm(name: str, ip: str, role: str = "agent") -> ResourceInstance:
    return ResourceInstance(
        address=f"vm.{name}",
        kind="vm",
        resource_type="proxmox_vm",
        name=name,
        attributes={"name": name, "ip": ip, "role": role, "ci_user": "admin", "vmid": 201},
    )


def _edge(label: str = "homelab-edge") -> ResourceInstance:
    return ResourceInstance(
        address="vm.edge",
        kind="vm",
        resource_type="linode_instance",
        name="edge",
        attributes={"label": label, "ipv4": "203.0.113.10", "private_ipv4": "192.168.140.7"},
    )


def _state(*instances: ResourceInstance) -> State:
    return State(stack="homelab", resources={i.address: i for i in instances})


class TestGenerateInventory:
    def test_groups_by_role(self) -> None:
        state = _state(
            _vm("k3s-worker-02", "192.168.1.32"),
            _vm("k3s-master-01", "192.168.1.21", role="server"),
            _vm("k3s-worker-01", "192.168.1.31"),
        )

        groups = generate_inventory(state)["all"]["children"]

        assert list(groups) == ["control_plane", "workers"]
        assert groups["control_plane"]["hosts"] == {
            "k3s-master-01": {"ansible_host": "192.168.1.21", "ansible_user": "admin"}
        }
        assert list(groups["workers"]["hosts"]) == ["k3s-worker-01", "k3s-worker-02"]

    def test_empty_state_keeps_groups(self) -> None:
        groups = generate_inventory(_state())["all"]["children"]

        assert groups == {"control_plane": {"hosts": {}}, "workers": {"hosts": {}}}

    def test_edge_host(self) -> None:
        state = _state(_vm("k3s-master-01", "192.168.1.21", role="server"), _edge())

        groups = generate_inventory(
            state,
            edge_vars={
                "ingress_ip": "192.168.1.200",
                "home_endpoint": None,
                "home_wg_public_key": "wgkey=",
            },
        )["all"]["children"]

        assert groups["edge"]["hosts"] == {
            "homelab-edge": {
                "ansible_host": "203.0.113.10",
                "ansible_user": "root",
                "private_ip": "192.168.140.7",
                "ingress_ip": "192.168.1.200",
                "home_wg_public_key": "wgkey=",
            }
        }

    def test_other_resource_types_ignored(self) -> None:
        balancer = ResourceInstance(
            address="load_balancer.edge-lb",
            kind="load_balancer",
            resource_type="linode_nodebalancer",
            name="edge-lb",
            attributes={"label": "homelab-edge-lb"},
        )

        groups = generate_inventory(_state(balancer))["all"]["children"]

        assert "edge" not in groups

    def test_duplicate_host_rejected(self) -> None:
        state = _state(_vm("k3s-master-01", "192.168.1.21"), _edge(label="k3s-master-01"))

        with pytest.raises(DuplicateHostError, match="k3s-master-01"):
            generate_inventory(state)


class TestRenderInventory:
    def test_render_is_yaml(self) -> None:
        inventory = generate_inventory(_state(_vm("k3s-master-01", "192.168.1.21", "server")))

        text = render_inventory(inventory)

        assert YAML(typ="safe").load(text) == inventory
        assert "control_plane:" in text

    def test_write_creates_parent_dirs(self, tmp_path: Path) -> None:
        inventory = generate_inventory(_state(_vm("k3s-worker-01", "192.168.1.31")))
        target = tmp_path / "ansible" / "inventory" / "hosts.yaml"

        write_inventory(inventory, target)

        assert YAML(typ="safe").load(target.read_text()) == inventory
