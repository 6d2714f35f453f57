"""Desired-versus-current comparison of a stack's children."""

from __future__ import annotations

import copy
from dataclasses import dataclass, field
from typing import Any

from kubestack.models.stack import GROUP
from kubestack.observability.logging import get_logger
from kubestack.stackresources.state import (
    CONFIG_MAP,
    DEPLOYMENT,
    KINDS,
    SECRET,
    SERVICE,
    STATEFUL_SET,
    StackState,
)

IGNORED_TOLERATION_PREFIX = f"{GROUP}/"

_log = get_logger("stackresources.diff")

_SCALABLE_KINDS = (DEPLOYMENT, STATEFUL_SET)


@dataclass
class KindDiff:
    to_add: list[dict[str, Any]] = field(default_factory=list)
    to_update: list[dict[str, Any]] = field(default_factory=list)
    to_delete: list[dict[str, Any]] = field(default_factory=list)
    # desired objects whose only divergence is the replica count
    to_scale: list[dict[str, Any]] = field(default_factory=list)

    def empty(self) -> bool:
        return not (self.to_add or self.to_update or self.to_delete or self.to_scale)


@dataclass
class StackStateDiff:
    kinds: dict[str, KindDiff] = field(default_factory=lambda: {k: KindDiff() for k in KINDS})

    def __getitem__(self, kind: str) -> KindDiff:
        return self.kinds[kind]

    def empty(self) -> bool:
        return all(d.empty() for d in self.kinds.values())

    def summary(self) -> dict[str, int]:
        return {
            "add": sum(len(d.to_add) for d in self.kinds.values()),
            "update": sum(len(d.to_update) for d in self.kinds.values()),
            "delete": sum(len(d.to_delete) for d in self.kinds.values()),
            "scale": sum(len(d.to_scale) for d in self.kinds.values()),
        }


def _prune(value: Any) -> Any:
    """Drop ``None`` and empty collections, recursively."""
    if isinstance(value, dict):
        pruned = {k: _prune(v) for k, v in value.items()}
        return {k: v for k, v in pruned.items() if v is not None and v != {} and v != []}
    if isinstance(value, list):
        return [_prune(v) for v in value]
    return value


def _normalize_pod_spec(current: dict[str, Any], desired: dict[str, Any]) -> None:
    for spec in (current, desired):
        tolerations = [
            t for t in spec.get("tolerations") or [] if not str(t.get("key", "")).startswith(IGNORED_TOLERATION_PREFIX)
        ]
        spec["tolerations"] = tolerations

    for field_name in ("initContainers", "containers"):
        cur = current.get(field_name) or []
        des = desired.get(field_name) or []
        if len(cur) != len(des):
            return
    # an image resolved to a digest by an admission hook is still the same image
    for field_name in ("initContainers", "containers"):
        for cur, des in zip(current.get(field_name) or [], desired.get(field_name) or [], strict=True):
            current_image = cur.get("image") or ""
            desired_image = des.get("image") or ""
            if desired_image and current_image.startswith(desired_image + "@"):
                des["image"] = current_image


def _comparable(obj: dict[str, Any]) -> dict[str, Any]:
    meta = obj.get("metadata") or {}
    result = {
        "labels": meta.get("labels"),
        "ownerReferences": meta.get("ownerReferences"),
    }
    if obj.get("kind") in (CONFIG_MAP, SECRET):
        result["data"] = obj.get("data")
        result["binaryData"] = obj.get("binaryData")
    else:
        result["spec"] = obj.get("spec")
    return _prune(result)


def objects_equal(current: dict[str, Any], desired: dict[str, Any]) -> bool:
    """Compare the fields the controller manages, after normalization."""
    current = copy.deepcopy(current)
    desired = copy.deepcopy(desired)
    cur_pod = ((current.get("spec") or {}).get("template") or {}).get("spec")
    des_pod = ((desired.get("spec") or {}).get("template") or {}).get("spec")
    if cur_pod is not None and des_pod is not None:
        _normalize_pod_spec(cur_pod, des_pod)
    return _comparable(current) == _comparable(desired)


def _is_scale_only(current: dict[str, Any], desired: dict[str, Any]) -> bool:
    desired_replicas = (desired.get("spec") or {}).get("replicas")
    if desired_replicas is None:
        return False
    scaled = copy.deepcopy(current)
    scaled.setdefault("spec", {})["replicas"] = desired_replicas
    return objects_equal(scaled, desired)


def service_requires_recreate(current: dict[str, Any], desired: dict[str, Any]) -> bool:
    """A Service's cluster IP is immutable; changing it means delete and create."""
    cur = current.get("spec") or {}
    des = desired.get("spec") or {}
    if cur.get("type") == "ExternalName" or des.get("type") == "ExternalName":
        return False
    if not cur.get("clusterIP"):
        return False
    return cur.get("clusterIP") != des.get("clusterIP")


def _with_resource_version(desired: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    result = copy.deepcopy(desired)
    rv = (current.get("metadata") or {}).get("resourceVersion")
    if rv:
        result.setdefault("metadata", {})["resourceVersion"] = rv
    return result


def compute_diff(current: StackState, desired: StackState) -> StackStateDiff:
    """What has to be created, changed and removed to go from current to desired."""
    result = StackStateDiff()
    for kind in KINDS:
        kd = result[kind]
        cur_objs = current.of_kind(kind)
        des_objs = desired.of_kind(kind)
        for key, des in sorted(des_objs.items()):
            cur = cur_objs.get(key)
            if cur is None:
                kd.to_add.append(des)
            elif objects_equal(cur, des):
                continue
            elif kind == SERVICE and service_requires_recreate(cur, des):
                kd.to_delete.append(cur)
                kd.to_add.append(des)
            elif kind in _SCALABLE_KINDS and _is_scale_only(cur, des):
                kd.to_scale.append(_with_resource_version(des, cur))
            else:
                kd.to_update.append(_with_resource_version(des, cur))
        for key, cur in sorted(cur_objs.items()):
            if key not in des_objs:
                kd.to_delete.append(cur)
    _log.debug("computed stack state diff", **result.summary())
    return result
