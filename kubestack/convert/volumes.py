"""Service mounts to pod volumes, volume mounts and claim templates."""

from __future__ import annotations

import copy
import posixpath
from dataclasses import dataclass
from typing import Any

from kubestack.errors import StackValidationError
from kubestack.models.stack import FileObject, FileReference, ServiceConfig, StackSpec

DOCKER_SOCK = "/var/run/docker.sock"
DEFAULT_CLAIM_SIZE = "100Mi"


@dataclass
class _VolumeSpec:
    mount: dict[str, Any]
    source: dict[str, Any] | None


def has_persistent_volumes(service: ServiceConfig) -> bool:
    return any(v.type == "volume" for v in service.volumes)


def file_key(file: str) -> str:
    """Key under which a secret or config's content is stored."""
    if file:
        return posixpath.basename(file)
    return "file"


def _volume_mount(name: str, path: str, read_only: bool, sub_path: str) -> dict[str, Any]:
    mount: dict[str, Any] = {"name": name, "mountPath": path}
    if read_only:
        mount["readOnly"] = True
    if sub_path:
        mount["subPath"] = sub_path
    return mount


def _host_path(path: str) -> dict[str, Any]:
    return {"hostPath": {"path": path}}


def _or(value: str, default: str) -> str:
    if value and value != ".":
        return value
    return default


def _key_to_path(ref: FileReference, obj: FileObject | None, sub_path: str) -> dict[str, Any]:
    item: dict[str, Any] = {"key": file_key(obj.file if obj else ""), "path": sub_path}
    if ref.mode is not None:
        item["mode"] = ref.mode
    return item


def _volume_specs(service: ServiceConfig, spec: StackSpec) -> list[_VolumeSpec]:
    specs = []
    for i, m in enumerate(service.volumes):
        source: dict[str, Any] | None = None
        name = f"mount-{i}"
        sub_path = ""
        if m.source == DOCKER_SOCK and m.target == DOCKER_SOCK:
            sub_path = "docker.sock"
            source = _host_path("/var/run")
        elif m.source.endswith(".git"):
            source = {"gitRepo": {"repository": m.source}}
        elif m.type == "volume":
            if m.source:
                name = m.source
        else:
            if not posixpath.isabs(m.source):
                raise StackValidationError(f"{m.source}: only absolute paths can be specified in mount source")
            if m.source == "/":
                source = _host_path("/")
            else:
                parent, file = posixpath.split(m.source.rstrip("/"))
                source = _host_path(parent or "/")
                sub_path = file
        specs.append(_VolumeSpec(_volume_mount(name, m.target, m.read_only, sub_path), source))

    for i, target in enumerate(service.tmpfs):
        specs.append(_VolumeSpec(_volume_mount(f"tmp-{i}", target, False, ""), {"emptyDir": {"medium": "Memory"}}))

    for i, ref in enumerate(service.secrets):
        name = f"secret-{i}"
        target = posixpath.join("/run/secrets", _or(ref.target, ref.source))
        source = {
            "secret": {
                "secretName": ref.source,
                "items": [_key_to_path(ref, spec.secrets.get(ref.source), name)],
            }
        }
        specs.append(_VolumeSpec(_volume_mount(name, target, True, name), source))

    for i, ref in enumerate(service.configs):
        name = f"config-{i}"
        target = _or(ref.target, "/" + ref.source)
        source = {
            "configMap": {
                "name": ref.source,
                "items": [_key_to_path(ref, spec.configs.get(ref.source), name)],
            }
        }
        specs.append(_VolumeSpec(_volume_mount(name, target, True, name), source))

    return specs


def to_volumes_and_mounts(service: ServiceConfig, spec: StackSpec) -> tuple[list[dict[str, Any]], list[dict[str, Any]]]:
    """Pod volumes and container mounts. Named volumes get no pod volume: claims back them."""
    specs = _volume_specs(service, spec)
    volumes = [{"name": s.mount["name"], **s.source} for s in specs if s.source is not None]
    mounts = [s.mount for s in specs]
    return volumes, mounts


def to_claim_templates(service: ServiceConfig, live: list[dict[str, Any]] | None) -> list[dict[str, Any]]:
    by_name = {(c.get("metadata") or {}).get("name"): c for c in live or []}
    claims = []
    for i, volume in enumerate(service.volumes):
        if volume.type != "volume":
            continue
        name = volume.source or f"mount-{i}"
        claim = copy.deepcopy(by_name.get(name, {}))
        claim["metadata"] = {"name": name}
        if service.deploy.labels:
            claim["metadata"]["annotations"] = dict(service.deploy.labels)
        claim_spec = claim.setdefault("spec", {})
        claim_spec["accessModes"] = ["ReadWriteOnce"]
        claim_spec["resources"] = {"requests": {"storage": DEFAULT_CLAIM_SIZE}}
        claims.append(claim)
    return claims
