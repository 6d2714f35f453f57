"""Service definition to cluster Services.

Every service gets an internal Service used for intra-stack discovery. Ports
with a fixed published port go on ``<name>-published``; the others go on
``<name>-random-ports``.
"""

from __future__ import annotations

import copy
from typing import Any

from kubestack.convert.pod import to_protocol
from kubestack.models.stack import InternalServiceType, PortConfig, ServiceConfig, object_key
from kubestack.stackresources.state import SERVICE, StackState

PUBLISHED_SERVICE_SUFFIX = "-published"
RANDOM_PORTS_SERVICE_SUFFIX = "-random-ports"
HEADLESS_PORT_NAME = "headless"
HEADLESS_PORT = 55555


def _find_port(ports: list[dict[str, Any]], name: str) -> dict[str, Any]:
    for port in ports:
        if port.get("name") == name:
            return copy.deepcopy(port)
    return {"name": name}


class ServiceStrategy:
    """How published ports are exposed outside the cluster."""

    random_service_type = "NodePort"
    published_service_type = ""

    def convert_port(
        self,
        source: PortConfig,
        live_published: list[dict[str, Any]],
        live_random: list[dict[str, Any]],
    ) -> tuple[dict[str, Any], bool]:
        """Return the Service port for ``source`` and whether it is published."""
        raise NotImplementedError

    def _random_port(self, source: PortConfig, live_random: list[dict[str, Any]]) -> dict[str, Any]:
        proto = to_protocol(source.protocol)
        port = _find_port(live_random, f"{source.target}-{proto.lower()}")
        port["protocol"] = proto
        port["port"] = source.target
        port["targetPort"] = source.target
        return port


class LoadBalancerServiceStrategy(ServiceStrategy):
    """Published port is the load balancer port."""

    published_service_type = "LoadBalancer"

    def convert_port(
        self,
        source: PortConfig,
        live_published: list[dict[str, Any]],
        live_random: list[dict[str, Any]],
    ) -> tuple[dict[str, Any], bool]:
        if not source.published:
            return self._random_port(source, live_random), False
        proto = to_protocol(source.protocol)
        port = _find_port(live_published, f"{source.published}-{proto.lower()}")
        port["port"] = source.published
        port["protocol"] = proto
        port["targetPort"] = source.target
        return port, True


class NodePortServiceStrategy(ServiceStrategy):
    """Published port is the node port."""

    published_service_type = "NodePort"

    def convert_port(
        self,
        source: PortConfig,
        live_published: list[dict[str, Any]],
        live_random: list[dict[str, Any]],
    ) -> tuple[dict[str, Any], bool]:
        if not source.published:
            return self._random_port(source, live_random), False
        proto = to_protocol(source.protocol)
        port = _find_port(live_published, f"{source.published}-{proto.lower()}")
        port["nodePort"] = source.published
        port["protocol"] = proto
        port["port"] = source.target
        port["targetPort"] = source.target
        return port, True


def service_strategy_for(service_type: str) -> ServiceStrategy:
    if service_type == "LoadBalancer":
        return LoadBalancerServiceStrategy()
    if service_type == "NodePort":
        return NodePortServiceStrategy()
    raise ValueError(f"No strategy for service type {service_type}")


def _base(live: dict[str, Any] | None, metadata: dict[str, Any]) -> dict[str, Any]:
    svc = copy.deepcopy(live) if live else {}
    svc.pop("status", None)
    svc["apiVersion"] = "v1"
    svc["kind"] = SERVICE
    svc["metadata"] = metadata
    return svc


def _internal_service(
    service: ServiceConfig,
    metadata: dict[str, Any],
    selector: dict[str, str],
    live: dict[str, Any] | None,
) -> dict[str, Any]:
    if service.internal_service_type == InternalServiceType.HEADLESS:
        headless = True
    elif service.internal_service_type == InternalServiceType.AUTO:
        headless = not service.internal_ports
    else:
        headless = False

    svc = _base(live, metadata)
    spec = svc.setdefault("spec", {})
    spec["selector"] = dict(selector)
    if headless:
        if spec.get("clusterIP") != "None":
            spec.pop("clusterIPs", None)
        spec["clusterIP"] = "None"
        spec["ports"] = [
            {"name": HEADLESS_PORT_NAME, "port": HEADLESS_PORT, "targetPort": HEADLESS_PORT, "protocol": "TCP"}
        ]
    else:
        if spec.get("clusterIP") == "None":
            spec.pop("clusterIP")
            spec.pop("clusterIPs", None)
        spec["ports"] = [
            {
                "name": f"{p.port}-{p.protocol.lower()}",
                "port": p.port,
                "targetPort": p.port,
                "protocol": p.protocol,
            }
            for p in service.internal_ports
        ]
    return svc


def _exposed_service(
    metadata: dict[str, Any],
    ports: list[dict[str, Any]],
    service_type: str,
    selector: dict[str, str],
    live: dict[str, Any] | None,
) -> dict[str, Any] | None:
    if not ports:
        return None
    svc = _base(live, metadata)
    spec = svc.setdefault("spec", {})
    spec["type"] = service_type
    spec["selector"] = dict(selector)
    spec["ports"] = ports
    return svc


def _renamed(metadata: dict[str, Any], suffix: str) -> dict[str, Any]:
    result = copy.deepcopy(metadata)
    result["name"] = metadata["name"] + suffix
    return result


def to_services(
    service: ServiceConfig,
    metadata: dict[str, Any],
    selector: dict[str, str],
    strategy: ServiceStrategy,
    current: StackState,
) -> list[dict[str, Any]]:
    namespace = metadata.get("namespace", "")
    published_meta = _renamed(metadata, PUBLISHED_SERVICE_SUFFIX)
    random_meta = _renamed(metadata, RANDOM_PORTS_SERVICE_SUFFIX)

    live_internal = current.get(SERVICE, object_key(namespace, metadata["name"]))
    live_published = current.get(SERVICE, object_key(namespace, published_meta["name"]))
    live_random = current.get(SERVICE, object_key(namespace, random_meta["name"]))

    def live_ports(obj: dict[str, Any] | None) -> list[dict[str, Any]]:
        return ((obj or {}).get("spec") or {}).get("ports") or []

    published_ports, random_ports = [], []
    for p in service.ports:
        port, published = strategy.convert_port(p, live_ports(live_published), live_ports(live_random))
        (published_ports if published else random_ports).append(port)

    result = [_internal_service(service, _with_live_annotations(metadata, live_internal), selector, live_internal)]
    for svc in (
        _exposed_service(
            _with_live_annotations(published_meta, live_published),
            published_ports,
            strategy.published_service_type,
            selector,
            live_published,
        ),
        _exposed_service(
            _with_live_annotations(random_meta, live_random),
            random_ports,
            strategy.random_service_type,
            selector,
            live_random,
        ),
    ):
        if svc is not None:
            result.append(svc)
    return result


def _with_live_annotations(metadata: dict[str, Any], live: dict[str, Any] | None) -> dict[str, Any]:
    result = copy.deepcopy(metadata)
    annotations = ((live or {}).get("metadata") or {}).get("annotations")
    if annotations:
        result["annotations"] = dict(annotations)
    return result
