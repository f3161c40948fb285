"""Linode edge handlers (instance, NodeBalancer, configs, backend nodes) via linode_api4."""

from __future__ import annotations

import ipaddress
import logging
from typing import TYPE_CHECKING, Any

from linode_api4 import ApiError, Instance, NodeBalancer

from lab_provisioner.engine.handlers import ResourceHandler, planned_attributes

if TYPE_CHECKING:
    from linode_api4 import LinodeClient, NodeBalancerConfig, NodeBalancerNode

    from lab_provisioner.core.state import ResourceInstance
    from lab_provisioner.engine.handlers import EngineContext
    from lab_provisioner.resources.linode import (
        LinodeInstanceResource,
        NodeBalancerConfigResource,
        NodeBalancerNodeResource,
        NodeBalancerResource,
    )

logger = logging.getLogger(__name__)

# Linode assigns private IPv4 addresses from this block only.
_PRIVATE_NETWORK = ipaddress.IPv4Network("192.168.128.0/17")

_CONFIG_FIELDS = (
    "protocol",
    "algorithm",
    "check",
    "check_interval",
    "check_timeout",
    "check_attempts",
    "stickiness",
)


def _client(ctx: EngineContext) -> LinodeClient:
    return ctx.providers.require_linode().client


def _is_not_found(exc: ApiError) -> bool:
    return getattr(exc, "status", None) == 404


def _load_nodebalancer(client: LinodeClient, nb_id: int) -> NodeBalancer | None:
    try:
        nb = client.load(NodeBalancer, nb_id)
    except ApiError as e:
        if _is_not_found(e):
            return None
        raise
    return nb


def _find_config(nb: NodeBalancer, config_id: int) -> NodeBalancerConfig | None:
    return next((c for c in nb.configs if c.id == config_id), None)


def _enum_value(value: Any) -> Any:
    # linode_api4 exposes some config fields as enums.
    return getattr(value, "value", value)


class LinodeInstanceHandler(ResourceHandler["LinodeInstanceResource"]):
    """CRUD handler for the Linode edge node."""

    def _find(self, client: LinodeClient, label: str) -> Instance | None:
        return next(iter(client.linode.instances(Instance.label == label)), None)

    def _attrs(self, instance: Instance) -> dict[str, Any]:
        private = [a for a in instance.ipv4 if ipaddress.ip_address(a) in _PRIVATE_NETWORK]
        public = [a for a in instance.ipv4 if a not in private]
        return {
            "id": instance.id,
            "label": instance.label,
            "status": instance.status,
            "tags": sorted(instance.tags),
            "ipv4": public[0] if public else None,
            "private_ipv4": private[0] if private else None,
            "ipv6": instance.ipv6,
        }

    def validate(self, ctx: EngineContext, desired: LinodeInstanceResource) -> list[str]:
        _ = ctx
        if not desired.authorized_keys:
            return [f"{desired.address}: at least one authorized SSH key is required"]
        return []

    def create(self, ctx: EngineContext, desired: LinodeInstanceResource) -> dict[str, Any]:
        client = _client(ctx)
        instance = self._find(client, desired.label)
        if instance is not None:
            logger.info("Linode instance %s already exists; adopting", desired.label)
            return {**planned_attributes(desired), **self._attrs(instance)}

        root_password = ctx.providers.require_linode().root_password
        if root_password is None:
            raise ValueError("Linode root password is required to create an instance")

        logger.info("Creating Linode instance %s in %s", desired.label, desired.region)
        result = client.linode.instance_create(
            desired.instance_type,
            desired.region,
            image=desired.image,
            label=desired.label,
            root_pass=root_password.get_secret_value(),
            authorized_keys=desired.authorized_keys,
            private_ip=desired.private_ip,
            tags=desired.tags,
            booted=desired.booted,
        )
        # instance_create returns (instance, password) when it generated the password.
        instance = result[0] if isinstance(result, tuple) else result
        return {**planned_attributes(desired), **self._attrs(instance)}

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        client = _client(ctx)
        try:
            instance = client.load(Instance, prior.attributes["id"])
        except ApiError as e:
            if _is_not_found(e):
                return None
            raise
        attrs = {**prior.attributes, **self._attrs(instance)}
        attrs["booted"] = instance.status == "running"
        return attrs

    def update(
        self,
        ctx: EngineContext,
        desired: LinodeInstanceResource,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        client = _client(ctx)
        instance = client.load(Instance, prior.attributes["id"])

        if {"label", "tags"} & set(diff):
            instance.label = desired.label
            instance.tags = desired.tags
            instance.save()
        if "booted" in diff:
            if desired.booted:
                instance.boot()
            else:
                instance.shutdown()
        return {**planned_attributes(desired), **self._attrs(instance)}

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        client = _client(ctx)
        try:
            instance = client.load(Instance, prior.attributes["id"])
        except ApiError as e:
            if _is_not_found(e):
                return
            raise
        logger.info("Deleting Linode instance %s", instance.label)
        instance.delete()


class NodeBalancerHandler(ResourceHandler["NodeBalancerResource"]):
    """CRUD handler for the edge NodeBalancer."""

    def _find(self, client: LinodeClient, label: str) -> NodeBalancer | None:
        return next(iter(client.nodebalancers(NodeBalancer.label == label)), None)

    def _attrs(self, nb: NodeBalancer) -> dict[str, Any]:
        return {
            "id": nb.id,
            "label": nb.label,
            "hostname": nb.hostname,
            "ipv4": getattr(nb.ipv4, "address", nb.ipv4),
            "ipv6": nb.ipv6,
            "client_conn_throttle": nb.client_conn_throttle,
            "tags": sorted(nb.tags),
        }

    def create(self, ctx: EngineContext, desired: NodeBalancerResource) -> dict[str, Any]:
        client = _client(ctx)
        nb = self._find(client, desired.label)
        if nb is None:
            logger.info("Creating NodeBalancer %s in %s", desired.label, desired.region)
            nb = client.nodebalancers.create(
                desired.region,
                label=desired.label,
                client_conn_throttle=desired.client_conn_throttle,
                tags=desired.tags,
            )
        else:
            logger.info("NodeBalancer %s already exists; adopting", desired.label)
        return {**planned_attributes(desired), **self._attrs(nb)}

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        nb = _load_nodebalancer(_client(ctx), prior.attributes["id"])
        if nb is None:
            return None
        return {**prior.attributes, **self._attrs(nb)}

    def update(
        self,
        ctx: EngineContext,
        desired: NodeBalancerResource,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        _ = diff
        nb = _client(ctx).load(NodeBalancer, prior.attributes["id"])
        nb.label = desired.label
        nb.client_conn_throttle = desired.client_conn_throttle
        nb.tags = desired.tags
        nb.save()
        return {**planned_attributes(desired), **self._attrs(nb)}

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        nb = _load_nodebalancer(_client(ctx), prior.attributes["id"])
        if nb is None:
            return
        logger.info("Deleting NodeBalancer %s", nb.label)
        nb.delete()


class NodeBalancerConfigHandler(ResourceHandler["NodeBalancerConfigResource"]):
    """CRUD handler for NodeBalancer port configs. Natural key: (NodeBalancer, port)."""

    def _attrs(self, config: NodeBalancerConfig, nb_id: int) -> dict[str, Any]:
        attrs: dict[str, Any] = {"id": config.id, "nodebalancer_id": nb_id, "port": config.port}
        for field in _CONFIG_FIELDS:
            attrs[field] = _enum_value(getattr(config, field))
        return attrs

    def create(self, ctx: EngineContext, desired: NodeBalancerConfigResource) -> dict[str, Any]:
        nb_id = ctx.attributes_of(f"load_balancer.{desired.nodebalancer}")["id"]
        nb = _client(ctx).load(NodeBalancer, nb_id)

        config = next((c for c in nb.configs if c.port == desired.port), None)
        if config is None:
            logger.info("Creating port %d config on NodeBalancer %s", desired.port, nb_id)
            config = nb.config_create(
                port=desired.port, **{f: getattr(desired, f) for f in _CONFIG_FIELDS}
            )
        else:
            logger.info("Port %d config on NodeBalancer %s already exists", desired.port, nb_id)
        return {**planned_attributes(desired), **self._attrs(config, nb_id)}

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        nb_id = prior.attributes["nodebalancer_id"]
        nb = _load_nodebalancer(_client(ctx), nb_id)
        if nb is None:
            return None
        config = _find_config(nb, prior.attributes["id"])
        if config is None:
            return None
        return {**prior.attributes, **self._attrs(config, nb_id)}

    def update(
        self,
        ctx: EngineContext,
        desired: NodeBalancerConfigResource,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        nb_id = prior.attributes["nodebalancer_id"]
        nb = _client(ctx).load(NodeBalancer, nb_id)
        config = _find_config(nb, prior.attributes["id"])
        if config is None:
            raise RuntimeError(f"Config {prior.attributes['id']} not found on NodeBalancer {nb_id}")
        for field in _CONFIG_FIELDS:
            if field in diff:
                setattr(config, field, getattr(desired, field))
        config.save()
        return {**planned_attributes(desired), **self._attrs(config, nb_id)}

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        nb = _load_nodebalancer(_client(ctx), prior.attributes["nodebalancer_id"])
        config = _find_config(nb, prior.attributes["id"]) if nb is not None else None
        if config is None:
            return
        config.delete()


class NodeBalancerNodeHandler(ResourceHandler["NodeBalancerNodeResource"]):
    """CRUD handler for backend nodes. The address is the instance's private IP."""

    def _backend_address(self, ctx: EngineContext, desired: NodeBalancerNodeResource) -> str:
        instance = ctx.attributes_of(f"vm.{desired.instance}")
        private_ip = instance.get("private_ipv4")
        if not private_ip:
            raise RuntimeError(f"Instance '{desired.instance}' has no private IPv4 address")
        return f"{private_ip}:{desired.port}"

    def _config(self, ctx: EngineContext, nb_id: int, config_id: int) -> NodeBalancerConfig:
        nb = _client(ctx).load(NodeBalancer, nb_id)
        config = _find_config(nb, config_id)
        if config is None:
            raise RuntimeError(f"Config {config_id} not found on NodeBalancer {nb_id}")
        return config

    def _attrs(self, node: NodeBalancerNode, nb_id: int, config_id: int) -> dict[str, Any]:
        return {
            "id": node.id,
            "nodebalancer_id": nb_id,
            "config_id": config_id,
            "address": node.address,
            "status": node.status,
        }

    def create(self, ctx: EngineContext, desired: NodeBalancerNodeResource) -> dict[str, Any]:
        nb_id = ctx.attributes_of(f"load_balancer.{desired.nodebalancer}")["id"]
        config_id = ctx.attributes_of(f"lb_config.{desired.config}")["id"]
        address = self._backend_address(ctx, desired)
        config = self._config(ctx, nb_id, config_id)

        node = next((n for n in config.nodes if n.label == desired.label), None)
        if node is None:
            logger.info(
                "Registering backend %s (%s) on config %s", desired.label, address, config_id
            )
            node = config.node_create(desired.label, address, weight=desired.weight)
        else:
            logger.info("Backend %s already registered on config %s", desired.label, config_id)
        return {**planned_attributes(desired), **self._attrs(node, nb_id, config_id)}

    def read(self, ctx: EngineContext, prior: ResourceInstance) -> dict[str, Any] | None:
        nb_id = prior.attributes["nodebalancer_id"]
        config_id = prior.attributes["config_id"]
        nb = _load_nodebalancer(_client(ctx), nb_id)
        config = _find_config(nb, config_id) if nb is not None else None
        if config is None:
            return None
        node = next((n for n in config.nodes if n.id == prior.attributes["id"]), None)
        if node is None:
            return None
        attrs = {**prior.attributes, **self._attrs(node, nb_id, config_id)}
        attrs["weight"] = node.weight
        return attrs

    def update(
        self,
        ctx: EngineContext,
        desired: NodeBalancerNodeResource,
        prior: ResourceInstance,
        diff: dict[str, Any],
    ) -> dict[str, Any]:
        _ = diff
        nb_id = prior.attributes["nodebalancer_id"]
        config_id = prior.attributes["config_id"]
        config = self._config(ctx, nb_id, config_id)
        node = next((n for n in config.nodes if n.id == prior.attributes["id"]), None)
        if node is None:
            raise RuntimeError(f"Backend {desired.label} not found on config {config_id}")
        node.label = desired.label
        node.address = self._backend_address(ctx, desired)
        node.weight = desired.weight
        node.save()
        return {**planned_attributes(desired), **self._attrs(node, nb_id, config_id)}

    def delete(self, ctx: EngineContext, prior: ResourceInstance) -> None:
        nb = _load_nodebalancer(_client(ctx), prior.attributes["nodebalancer_id"])
        config = _find_config(nb, prior.attributes["config_id"]) if nb is not None else None
        if config is None:
            return
        node = next((n for n in config.nodes if n.id == prior.attributes["id"]), None)
        if node is not None:
            node.delete()
