"""Canonical Stack representation.

Every external schema version is converted to and from these structures by
``kubestack.conversions``; the controller never looks at a versioned object.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

GROUP = "kubestack.io"
KIND = "Stack"
PLURAL = "stacks"

STACK_LABEL = f"{GROUP}/stack"
SERVICE_LABEL = f"{GROUP}/service"


class StackPhase(StrEnum):
    """Reconciliation phase reported on a Stack's status."""

    PENDING = "Pending"
    PROGRESSING = "Progressing"
    AVAILABLE = "Available"
    FAILURE = "Failure"


class InternalServiceType(StrEnum):
    """How intra-stack traffic reaches a service."""

    AUTO = ""
    HEADLESS = "Headless"
    CLUSTER_IP = "ClusterIP"


@dataclass(frozen=True)
class StackStatus:
    phase: StackPhase
    message: str = ""


@dataclass
class Constraint:
    """A single ``key <operator> value`` placement requirement."""

    operator: str
    value: str


@dataclass
class Constraints:
    operating_system: Constraint | None = None
    architecture: Constraint | None = None
    hostname: Constraint | None = None
    match_labels: dict[str, Constraint] = field(default_factory=dict)


@dataclass
class ResourceLimit:
    cpus: str = ""
    memory: int = 0


@dataclass
class Resources:
    limits: ResourceLimit | None = None
    reservations: ResourceLimit | None = None


@dataclass
class RestartPolicy:
    condition: str


@dataclass
class UpdateConfig:
    parallelism: int | None = None


@dataclass
class DeployConfig:
    mode: str = ""
    replicas: int | None = None
    labels: dict[str, str] = field(default_factory=dict)
    update_config: UpdateConfig | None = None
    resources: Resources = field(default_factory=Resources)
    restart_policy: RestartPolicy | None = None
    constraints: Constraints | None = None


@dataclass
class HealthCheck:
    test: list[str] = field(default_factory=list)
    timeout_seconds: int | None = None
    interval_seconds: int | None = None
    retries: int | None = None


@dataclass
class PortConfig:
    target: int
    published: int = 0
    protocol: str = "tcp"
    mode: str = ""


@dataclass
class InternalPort:
    port: int
    protocol: str = "TCP"


@dataclass
class VolumeMount:
    type: str
    target: str
    source: str = ""
    read_only: bool = False


@dataclass
class FileReference:
    """A service's use of a top-level secret or config."""

    source: str
    target: str = ""
    mode: int | None = None


@dataclass
class FileObject:
    """A top-level secret or config.

    Entries with inline ``data`` and not marked external are materialized by
    the controller as owned Secrets/ConfigMaps.
    """

    name: str
    file: str = ""
    external: bool = False
    labels: dict[str, str] = field(default_factory=dict)
    data: str | None = None


@dataclass
class ServiceConfig:
    name: str
    image: str = ""
    command: list[str] | None = None
    entrypoint: list[str] | None = None
    environment: dict[str, str | None] = field(default_factory=dict)
    working_dir: str = ""
    user: int | None = None
    hostname: str = ""
    tty: bool = False
    stdin_open: bool = False
    privileged: bool = False
    read_only: bool = False
    cap_add: list[str] | None = None
    cap_drop: list[str] | None = None
    extra_hosts: list[str] | None = None
    pid: str = ""
    ipc: str = ""
    stop_grace_period_seconds: int | None = None
    health_check: HealthCheck | None = None
    labels: dict[str, str] = field(default_factory=dict)
    ports: list[PortConfig] = field(default_factory=list)
    internal_ports: list[InternalPort] = field(default_factory=list)
    internal_service_type: InternalServiceType = InternalServiceType.AUTO
    volumes: list[VolumeMount] = field(default_factory=list)
    tmpfs: list[str] = field(default_factory=list)
    secrets: list[FileReference] = field(default_factory=list)
    configs: list[FileReference] = field(default_factory=list)
    deploy: DeployConfig = field(default_factory=DeployConfig)


@dataclass
class StackSpec:
    services: list[ServiceConfig] = field(default_factory=list)
    secrets: dict[str, FileObject] = field(default_factory=dict)
    configs: dict[str, FileObject] = field(default_factory=dict)
    volumes: dict[str, Any] = field(default_factory=dict)
    networks: dict[str, Any] = field(default_factory=dict)


@dataclass
class Stack:
    """A Stack in canonical form.

    ``raw`` is the object exactly as read from the API server, in its own
    schema version. It is what revision recording and status writes start
    from.
    """

    namespace: str
    name: str
    uid: str = ""
    resource_version: str = ""
    generation: int = 0
    api_version: str = ""
    labels: dict[str, str] = field(default_factory=dict)
    annotations: dict[str, str] = field(default_factory=dict)
    deletion_timestamp: str | None = None
    spec: StackSpec | None = None
    status: StackStatus | None = None
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def key(self) -> str:
        return object_key(self.namespace, self.name)


def object_key(namespace: str, name: str) -> str:
    """Store key of an object: ``namespace/name``, or ``name`` if cluster scoped."""
    if not namespace:
        return name
    return f"{namespace}/{name}"


def labels_for_stack(stack_name: str) -> dict[str, str]:
    return {STACK_LABEL: stack_name}


def labels_for_service(stack_name: str, service_name: str) -> dict[str, str]:
    return {STACK_LABEL: stack_name, SERVICE_LABEL: service_name}


def selector_for_stack(stack_name: str) -> str:
    return f"{STACK_LABEL}={stack_name}"


def key_of(obj: dict[str, Any]) -> str:
    """Store key of a raw API object."""
    meta = obj.get("metadata") or {}
    return object_key(meta.get("namespace", ""), meta.get("name", ""))
