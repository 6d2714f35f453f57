"""The ``v1alpha3`` Stack schema: structured placement constraints and internal ports."""

from __future__ import annotations

from typing import Any

from kubestack.conversions.base import StackConverter, parse_duration_seconds
from kubestack.errors import StackValidationError
from kubestack.models.stack import (
    Constraint,
    Constraints,
    DeployConfig,
    FileObject,
    FileReference,
    HealthCheck,
    InternalPort,
    InternalServiceType,
    PortConfig,
    ResourceLimit,
    Resources,
    RestartPolicy,
    ServiceConfig,
    StackSpec,
    UpdateConfig,
    VolumeMount,
)


def _str_list(value: Any) -> list[str] | None:
    if value is None:
        return None
    if isinstance(value, str):
        return [value]
    return [str(v) for v in value]


def _constraint(value: dict[str, Any] | None) -> Constraint | None:
    if not value:
        return None
    return Constraint(operator=value["operator"], value=str(value["value"]))


def _decode_constraints(value: dict[str, Any] | None) -> Constraints | None:
    if value is None:
        return None
    return Constraints(
        operating_system=_constraint(value.get("operatingSystem")),
        architecture=_constraint(value.get("architecture")),
        hostname=_constraint(value.get("hostname")),
        match_labels={
            k: Constraint(v["operator"], str(v["value"])) for k, v in (value.get("matchLabels") or {}).items()
        },
    )


def _decode_limit(value: dict[str, Any] | None) -> ResourceLimit | None:
    if value is None:
        return None
    return ResourceLimit(cpus=str(value.get("cpus") or ""), memory=int(value.get("memory") or 0))


def _decode_deploy(value: dict[str, Any] | None) -> DeployConfig:
    value = value or {}
    resources = value.get("resources") or {}
    update = value.get("updateConfig")
    restart = value.get("restartPolicy")
    replicas = value.get("replicas")
    return DeployConfig(
        mode=value.get("mode") or "",
        replicas=int(replicas) if replicas is not None else None,
        labels=dict(value.get("labels") or {}),
        update_config=UpdateConfig(parallelism=update.get("parallelism")) if update is not None else None,
        resources=Resources(
            limits=_decode_limit(resources.get("limits")),
            reservations=_decode_limit(resources.get("reservations")),
        ),
        restart_policy=RestartPolicy(condition=restart["condition"]) if restart else None,
        constraints=_decode_constraints((value.get("placement") or {}).get("constraints")),
    )


def _decode_health_check(value: dict[str, Any] | None) -> HealthCheck | None:
    if value is None:
        return None
    retries = value.get("retries")
    return HealthCheck(
        test=_str_list(value.get("test")) or [],
        timeout_seconds=parse_duration_seconds(value.get("timeout")),
        interval_seconds=parse_duration_seconds(value.get("interval")),
        retries=int(retries) if retries is not None else None,
    )


def _decode_refs(values: list[dict[str, Any]] | None) -> list[FileReference]:
    return [FileReference(source=v["source"], target=v.get("target") or "", mode=v.get("mode")) for v in values or []]


def _decode_environment(value: dict[str, Any] | None) -> dict[str, str | None]:
    return {k: (str(v) if v is not None else None) for k, v in (value or {}).items()}


def decode_service(value: dict[str, Any], with_internal_ports: bool = True) -> ServiceConfig:
    name = value.get("name")
    if not name:
        raise StackValidationError("service has no name")
    internal_type = InternalServiceType.AUTO
    internal_ports: list[InternalPort] = []
    if with_internal_ports:
        try:
            internal_type = InternalServiceType(value.get("internalServiceType") or "")
        except ValueError as exc:
            raise StackValidationError(
                f"unsupported internal service type {value.get('internalServiceType')!r}"
            ) from exc
        internal_ports = [
            InternalPort(port=int(p["port"]), protocol=(p.get("protocol") or "TCP").upper())
            for p in value.get("internalPorts") or []
        ]
    user = value.get("user")
    return ServiceConfig(
        name=name,
        image=value.get("image") or "",
        command=_str_list(value.get("command")),
        entrypoint=_str_list(value.get("entrypoint")),
        environment=_decode_environment(value.get("environment")),
        working_dir=value.get("workingDir") or "",
        user=int(user) if user is not None else None,
        hostname=value.get("hostname") or "",
        tty=bool(value.get("tty")),
        stdin_open=bool(value.get("stdinOpen")),
        privileged=bool(value.get("privileged")),
        read_only=bool(value.get("readOnly")),
        cap_add=_str_list(value.get("capAdd")),
        cap_drop=_str_list(value.get("capDrop")),
        extra_hosts=_str_list(value.get("extraHosts")),
        pid=value.get("pid") or "",
        ipc=value.get("ipc") or "",
        stop_grace_period_seconds=parse_duration_seconds(value.get("stopGracePeriod")),
        health_check=_decode_health_check(value.get("healthCheck")),
        labels=dict(value.get("labels") or {}),
        ports=[
            PortConfig(
                target=int(p["target"]),
                published=int(p.get("published") or 0),
                protocol=p.get("protocol") or "tcp",
                mode=p.get("mode") or "",
            )
            for p in value.get("ports") or []
        ],
        internal_ports=internal_ports,
        internal_service_type=internal_type,
        volumes=[
            VolumeMount(
                type=v.get("type") or "",
                source=v.get("source") or "",
                target=v["target"],
                read_only=bool(v.get("readOnly")),
            )
            for v in value.get("volumes") or []
        ],
        tmpfs=_str_list(value.get("tmpfs")) or [],
        secrets=_decode_refs(value.get("secrets")),
        configs=_decode_refs(value.get("configs")),
        deploy=_decode_deploy(value.get("deploy")),
    )


def _decode_file_objects(values: dict[str, Any] | None) -> dict[str, FileObject]:
    result = {}
    for key, v in (values or {}).items():
        v = v or {}
        external = v.get("external")
        if isinstance(external, dict):
            external = external.get("external")
        result[key] = FileObject(
            name=v.get("name") or key,
            file=v.get("file") or "",
            external=bool(external),
            labels=dict(v.get("labels") or {}),
            data=v.get("data"),
        )
    return result


def decode_spec(spec: dict[str, Any], with_internal_ports: bool = True) -> StackSpec:
    return StackSpec(
        services=[decode_service(s, with_internal_ports) for s in spec.get("services") or []],
        secrets=_decode_file_objects(spec.get("secrets")),
        configs=_decode_file_objects(spec.get("configs")),
        volumes=dict(spec.get("volumes") or {}),
        networks=dict(spec.get("networks") or {}),
    )


# ---------------------------------------------------------------------------
# Encoding
# ---------------------------------------------------------------------------


def compact(d: dict[str, Any]) -> dict[str, Any]:
    return {k: v for k, v in d.items() if v is not None and v != "" and v != [] and v != {} and v is not False}


def _encode_constraint(c: Constraint | None) -> dict[str, str] | None:
    return {"operator": c.operator, "value": c.value} if c is not None else None


def _encode_constraints(c: Constraints | None) -> dict[str, Any] | None:
    if c is None:
        return None
    return compact(
        {
            "operatingSystem": _encode_constraint(c.operating_system),
            "architecture": _encode_constraint(c.architecture),
            "hostname": _encode_constraint(c.hostname),
            "matchLabels": {k: _encode_constraint(v) for k, v in c.match_labels.items()},
        }
    )


def _encode_limit(limit: ResourceLimit | None) -> dict[str, Any] | None:
    if limit is None:
        return None
    return compact({"cpus": limit.cpus, "memory": limit.memory or None})


def encode_deploy(deploy: DeployConfig, constraints: Any) -> dict[str, Any]:
    return compact(
        {
            "mode": deploy.mode,
            "replicas": deploy.replicas,
            "labels": deploy.labels,
            "updateConfig": (
                compact({"parallelism": deploy.update_config.parallelism}) if deploy.update_config else None
            ),
            "resources": compact(
                {
                    "limits": _encode_limit(deploy.resources.limits),
                    "reservations": _encode_limit(deploy.resources.reservations),
                }
            ),
            "restartPolicy": {"condition": deploy.restart_policy.condition} if deploy.restart_policy else None,
            "placement": compact({"constraints": constraints}),
        }
    )


def _encode_refs(refs: list[FileReference]) -> list[dict[str, Any]]:
    return [compact({"source": r.source, "target": r.target, "mode": r.mode}) for r in refs]


def encode_service(service: ServiceConfig, with_internal_ports: bool = True, constraints: Any = None) -> dict[str, Any]:
    hc = service.health_check
    result = {
        "name": service.name,
        "image": service.image,
        "command": service.command,
        "entrypoint": service.entrypoint,
        "environment": service.environment,
        "workingDir": service.working_dir,
        "user": service.user,
        "hostname": service.hostname,
        "tty": service.tty,
        "stdinOpen": service.stdin_open,
        "privileged": service.privileged,
        "readOnly": service.read_only,
        "capAdd": service.cap_add,
        "capDrop": service.cap_drop,
        "extraHosts": service.extra_hosts,
        "pid": service.pid,
        "ipc": service.ipc,
        "stopGracePeriod": (
            f"{service.stop_grace_period_seconds}s" if service.stop_grace_period_seconds is not None else None
        ),
        "healthCheck": (
            compact(
                {
                    "test": hc.test,
                    "timeout": f"{hc.timeout_seconds}s" if hc.timeout_seconds is not None else None,
                    "interval": f"{hc.interval_seconds}s" if hc.interval_seconds is not None else None,
                    "retries": hc.retries,
                }
            )
            if hc is not None
            else None
        ),
        "labels": service.labels,
        "ports": [
            compact({"mode": p.mode, "target": p.target, "published": p.published or None, "protocol": p.protocol})
            for p in service.ports
        ],
        "volumes": [
            compact({"type": v.type, "source": v.source, "target": v.target, "readOnly": v.read_only})
            for v in service.volumes
        ],
        "tmpfs": service.tmpfs,
        "secrets": _encode_refs(service.secrets),
        "configs": _encode_refs(service.configs),
        "deploy": encode_deploy(
            service.deploy,
            constraints if constraints is not None else _encode_constraints(service.deploy.constraints),
        ),
    }
    if with_internal_ports:
        result["internalServiceType"] = str(service.internal_service_type)
        result["internalPorts"] = [{"port": p.port, "protocol": p.protocol} for p in service.internal_ports]
    return compact(result)


def encode_file_objects(objects: dict[str, FileObject]) -> dict[str, Any]:
    return {
        key: compact(
            {
                "name": o.name if o.name != key else None,
                "file": o.file,
                "external": {"external": True} if o.external else None,
                "labels": o.labels,
                "data": o.data,
            }
        )
        for key, o in objects.items()
    }


class V1Alpha3Converter(StackConverter):
    version = "v1alpha3"

    def decode_spec(self, spec: dict[str, Any]) -> StackSpec:
        return decode_spec(spec)

    def encode_spec(self, spec: StackSpec) -> dict[str, Any]:
        return compact(
            {
                "services": [encode_service(s) for s in spec.services],
                "secrets": encode_file_objects(spec.secrets),
                "configs": encode_file_objects(spec.configs),
                "volumes": spec.volumes,
                "networks": spec.networks,
            }
        )
