"""Service definition to pod template."""

from __future__ import annotations

import copy
from decimal import Decimal, InvalidOperation
from typing import Any

from kubestack.convert.placement import to_node_affinity
from kubestack.convert.volumes import to_volumes_and_mounts
from kubestack.errors import StackValidationError
from kubestack.models.stack import HealthCheck, ResourceLimit, ServiceConfig, StackSpec

_RESTART_POLICIES = {
    "any": "Always",
    "none": "Never",
    "on-failure": "OnFailure",
}

_BINARY_SUFFIXES = (("Ei", 2**60), ("Pi", 2**50), ("Ti", 2**40), ("Gi", 2**30), ("Mi", 2**20), ("Ki", 2**10))


def _set(target: dict[str, Any], key: str, value: Any) -> None:
    """Set ``key``, or remove it when ``value`` is empty."""
    if value is None or value is False or value == "" or value == [] or value == {}:
        target.pop(key, None)
    else:
        target[key] = value


def to_protocol(value: str) -> str:
    return "UDP" if value.lower() == "udp" else "TCP"


def to_image_pull_policy(image: str) -> str:
    return "Always" if image.endswith(":latest") else "IfNotPresent"


def to_env(environment: dict[str, str | None]) -> list[dict[str, str]]:
    env = []
    for name, value in environment.items():
        if value is None:
            raise StackValidationError(f"{name} has no value, unsetting an environment variable is not supported")
        env.append({"name": name, "value": value})
    return sorted(env, key=lambda e: e["name"])


def to_host_aliases(extra_hosts: list[str] | None) -> list[dict[str, Any]]:
    if not extra_hosts:
        return []
    by_hostname: dict[str, str] = {}
    for host in extra_hosts:
        hostname, sep, ip = host.partition(":")
        if not sep:
            raise StackValidationError(f"malformed host {host}")
        by_hostname[hostname] = ip
    by_ip: dict[str, list[str]] = {}
    for hostname, ip in by_hostname.items():
        by_ip.setdefault(ip, []).append(hostname)
    return [{"ip": ip, "hostnames": sorted(by_ip[ip])} for ip in sorted(by_ip)]


def to_restart_policy(service: ServiceConfig, live: str | None) -> str | None:
    policy = service.deploy.restart_policy
    if policy is None:
        return live
    result = _RESTART_POLICIES.get(policy.condition)
    if result is None:
        raise StackValidationError(f"unsupported restart policy {policy.condition}")
    return result


def cpu_quantity(cpus: str) -> str:
    """Fractional CPU count as a canonical quantity: ``0.5`` -> ``500m``, ``2`` -> ``2``."""
    try:
        millis = int((Decimal(cpus) * 1000).to_integral_value())
    except (InvalidOperation, ValueError, OverflowError) as exc:
        raise StackValidationError(f"invalid cpu value {cpus!r}") from exc
    if millis < 0:
        raise StackValidationError(f"invalid cpu value {cpus!r}")
    if millis % 1000 == 0:
        return str(millis // 1000)
    return f"{millis}m"


def memory_quantity(num_bytes: int) -> str:
    """Byte count as a canonical binary quantity: ``67108864`` -> ``64Mi``."""
    for suffix, factor in _BINARY_SUFFIXES:
        if num_bytes >= factor and num_bytes % factor == 0:
            return f"{num_bytes // factor}{suffix}"
    return str(num_bytes)


def to_resource_list(limit: ResourceLimit | None) -> dict[str, str]:
    if limit is None:
        return {}
    result = {}
    if limit.cpus:
        result["cpu"] = cpu_quantity(limit.cpus)
    if limit.memory:
        result["memory"] = memory_quantity(limit.memory)
    return result


def to_liveness_probe(hc: HealthCheck | None, live: dict[str, Any] | None) -> dict[str, Any] | None:
    if hc is None or not hc.test or hc.test[0] == "NONE":
        return None
    command = list(hc.test[1:])
    if hc.test[0] == "CMD-SHELL":
        command = ["sh", "-c", *command]
    probe = copy.deepcopy(live) if live else {}
    for handler in ("httpGet", "tcpSocket", "grpc"):
        probe.pop(handler, None)
    probe["exec"] = {"command": command}
    probe["timeoutSeconds"] = hc.timeout_seconds if hc.timeout_seconds is not None else 1
    probe["periodSeconds"] = hc.interval_seconds if hc.interval_seconds is not None else 1
    probe["failureThreshold"] = hc.retries if hc.retries is not None else 3
    return probe


def to_security_context(service: ServiceConfig, live: dict[str, Any] | None) -> dict[str, Any] | None:
    has_caps = service.cap_add is not None or service.cap_drop is not None
    if not (service.privileged or service.read_only or has_caps or service.user is not None):
        return None
    ctx = copy.deepcopy(live) if live else {}
    _set(ctx, "runAsUser", service.user)
    _set(ctx, "privileged", service.privileged)
    _set(ctx, "readOnlyRootFilesystem", service.read_only)
    if has_caps:
        caps: dict[str, Any] = {}
        _set(caps, "add", list(service.cap_add or []))
        _set(caps, "drop", list(service.cap_drop or []))
        _set(ctx, "capabilities", caps)
    else:
        ctx.pop("capabilities", None)
    return ctx


def to_pod_template(
    service: ServiceConfig,
    labels: dict[str, str],
    stack_spec: StackSpec,
    live: dict[str, Any] | None,
) -> dict[str, Any]:
    """Pod template for ``service``, layered over the live template if there is one."""
    tpl = copy.deepcopy(live) if live else {}
    volumes, mounts = to_volumes_and_mounts(service, stack_spec)

    tpl["metadata"] = {"labels": dict(labels)}
    if service.labels:
        tpl["metadata"]["annotations"] = dict(service.labels)

    spec = tpl.setdefault("spec", {})
    _set(spec, "restartPolicy", to_restart_policy(service, spec.get("restartPolicy")))
    _set(spec, "volumes", volumes)
    _set(spec, "hostPID", service.pid == "host")
    _set(spec, "hostIPC", service.ipc == "host")
    _set(spec, "hostname", service.hostname)
    if service.stop_grace_period_seconds is not None:
        spec["terminationGracePeriodSeconds"] = service.stop_grace_period_seconds
    _set(spec, "hostAliases", to_host_aliases(service.extra_hosts))
    spec["affinity"] = to_node_affinity(service.deploy.constraints)

    # Other containers may have been injected by admission hooks; only the
    # service's own container is managed.
    containers = spec.setdefault("containers", [])
    if not containers:
        containers.append({})
    index = next((i for i, c in enumerate(containers) if c.get("name") == service.name), 0)
    container = containers[index]

    container["name"] = service.name
    container["image"] = service.image
    container["imagePullPolicy"] = to_image_pull_policy(service.image)
    _set(container, "command", service.entrypoint)
    _set(container, "args", service.command)
    _set(container, "workingDir", service.working_dir)
    _set(container, "tty", service.tty)
    _set(container, "stdin", service.stdin_open)
    _set(
        container,
        "ports",
        [{"containerPort": p.target, "protocol": to_protocol(p.protocol)} for p in service.ports],
    )
    _set(container, "livenessProbe", to_liveness_probe(service.health_check, container.get("livenessProbe")))
    _set(container, "env", to_env(service.environment))
    _set(container, "volumeMounts", mounts)
    _set(container, "securityContext", to_security_context(service, container.get("securityContext")))
    resources: dict[str, Any] = {}
    _set(resources, "limits", to_resource_list(service.deploy.resources.limits))
    _set(resources, "requests", to_resource_list(service.deploy.resources.reservations))
    _set(container, "resources", resources)
    return tpl


def force_restart_policy(template: dict[str, Any], policy: str) -> dict[str, Any]:
    spec = template.get("spec") or {}
    if spec.get("restartPolicy"):
        spec["restartPolicy"] = policy
    return template
