"""YAML configuration loading and convenience plan/apply API."""

from __future__ import annotations

from typing import TYPE_CHECKING, Any

from pydantic import SecretStr

from lab_provisioner.config.desired import DesiredState, build_desired_state
from lab_provisioner.config.loader import load_config
from lab_provisioner.config.registry import default_registry
from lab_provisioner.config.schema import Config, EdgeConfig, ProxmoxConfig, VMConfig
from lab_provisioner.core.provider import LinodeProvider, ProviderSet, ProxmoxProvider
from lab_provisioner.core.state import State
from lab_provisioner.engine.engine import LabEngine, ProgressCallback
from lab_provisioner.engine.errors import ConfigError
from lab_provisioner.engine.lock import StateLock
from lab_provisioner.engine.types import Action, ResourceChange

if TYPE_CHECKING:
    from pathlib import Path

    from lab_provisioner.engine.types import ApplyResult, Plan

__all__ = [
    "Config",
    "ConfigError",
    "DesiredState",
    "EdgeConfig",
    "ProxmoxConfig",
    "State",
    "VMConfig",
    "apply",
    "build_desired_state",
    "drift",
    "load",
    "load_config",
    "outputs",
    "plan",
    "plan_and_apply",
    "refresh",
    "save_state",
    "validate",
]


def load(path: Path | str) -> Config:
    """Load a YAML configuration file."""
    return load_config(path)


def _secret(value: str | None) -> SecretStr | None:
    return SecretStr(value) if value else None


def _providers(config: Config, *, require: bool) -> ProviderSet:
    """Provider connections for *config*.

    With ``require=True`` the credentials needed by the declared resources
    must be present.
    """
    px = config.proxmox
    if require and config.vms:
        if not px.host:
            raise ConfigError("proxmox.host is required (set in YAML or PROXMOX_HOST env var)")
        if not (px.token_name and px.token_value) and not px.password:
            raise ConfigError(
                "Proxmox credentials missing: set PROXMOX_TOKEN_NAME + PROXMOX_TOKEN_VALUE "
                "or PROXMOX_PASSWORD"
            )
    if require and config.edge is not None and not config.linode.token:
        raise ConfigError("linode.token is required for the edge node (set LINODE_TOKEN env var)")

    proxmox = None
    if px.host:
        proxmox = ProxmoxProvider(
            host=px.host,
            port=px.port,
            user=px.user,
            token_name=px.token_name,
            token_value=_secret(px.token_value),
            password=_secret(px.password),
            verify_ssl=px.verify_ssl,
            task_timeout=px.task_timeout,
        )
    linode = None
    if config.linode.token:
        linode = LinodeProvider(
            token=_secret(config.linode.token),
            root_password=_secret(config.linode.root_password),
        )
    return ProviderSet(proxmox=proxmox, linode=linode)


def _engine_from_config(config: Config, *, require_credentials: bool = True) -> LabEngine:
    """Build a ``LabEngine`` from a ``Config`` instance."""
    return LabEngine(
        providers=_providers(config, require=require_credentials),
        stack=config.stack,
        state_path=config.state_path,
        registry=default_registry(),
    )


def validate(config: Config) -> DesiredState:
    """Build the desired state and run every check that needs no provider call."""
    desired = build_desired_state(config)
    engine = _engine_from_config(config, require_credentials=False)
    engine.validate(list(desired.resources))
    return desired


def plan(config: Config, *, destroy: bool = False, refresh: bool = True) -> Plan:
    """Plan changes for the given configuration."""
    if destroy:
        resources: list[Any] = []
        protect = frozenset(config.protect)
        exports: dict[str, Any] = {}
    else:
        desired = build_desired_state(config)
        resources = list(desired.resources)
        protect = desired.protected
        exports = desired.outputs
    engine = _engine_from_config(config)
    return engine.plan(
        resources, destroy=destroy, refresh=refresh, protect=protect, outputs=exports
    )


def apply(
    plan_obj: Plan,
    config: Config,
    *,
    allow_replace: bool = False,
    parallelism: int = 1,
    continue_on_error: bool = False,
    timeout: float | None = None,
    progress: ProgressCallback | None = None,
) -> ApplyResult:
    """Apply a previously computed plan."""
    engine = _engine_from_config(config)
    return engine.apply(
        plan_obj,
        allow_replace=allow_replace,
        parallelism=parallelism,
        continue_on_error=continue_on_error,
        timeout=timeout,
        progress=progress,
    )


def plan_and_apply(
    config: Config,
    *,
    destroy: bool = False,
    refresh: bool = True,
    allow_replace: bool = False,
) -> ApplyResult:
    """Plan and apply in one step."""
    plan_obj = plan(config, destroy=destroy, refresh=refresh)
    return apply(plan_obj, config, allow_replace=allow_replace)


def refresh(config: Config) -> tuple[list[ResourceChange], State]:
    """Refresh state from the live providers (not persisted).

    Returns the list of drift changes and the new state. Call
    :func:`save_state` to persist the returned state to disk.
    """
    engine = _engine_from_config(config)
    old_state, new_state = engine.refresh()
    return _build_drift_changes(old_state, new_state), new_state


def save_state(config: Config, state: State) -> None:
    """Persist state to disk."""
    with StateLock(config.state_path):
        state.serial += 1
        state.save(config.state_path)


def drift(config: Config) -> list[ResourceChange]:
    """Detect drift between state file and live providers."""
    changes, _ = refresh(config)
    return changes


def outputs(config: Config) -> dict[str, Any]:
    """Exported values recorded by the last successful apply."""
    if not config.state_path.exists():
        return {}
    return dict(State.load(config.state_path).outputs)


def _build_drift_changes(old_state: State, new_state: State) -> list[ResourceChange]:
    """Compare old vs new state and return a list of drift changes."""
    changes: list[ResourceChange] = []
    for addr, inst in sorted(new_state.resources.items()):
        old_inst = old_state.resources.get(addr)
        if old_inst is None:
            continue
        old = old_inst.attributes
        if old != inst.attributes:
            all_keys = sorted(set(old) | set(inst.attributes))
            diff = {
                k: {"from": old.get(k), "to": inst.attributes.get(k)}
                for k in all_keys
                if old.get(k) != inst.attributes.get(k)
            }
            changes.append(
                ResourceChange(
                    address=addr,
                    kind=inst.kind,
                    resource_type=inst.resource_type,
                    action=Action.UPDATE,
                    prior=dict(old),
                    planned=dict(inst.attributes),
                    diff=diff,
                )
            )
    for addr in sorted(set(old_state.resources) - set(new_state.resources)):
        old_inst = old_state.resources[addr]
        changes.append(
            ResourceChange(
                address=addr,
                kind=old_inst.kind,
                resource_type=old_inst.resource_type,
                action=Action.DELETE,
                prior=dict(old_inst.attributes),
            )
        )
    return changes
