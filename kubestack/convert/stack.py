"""Canonical Stack to the full set of desired child objects."""

from __future__ import annotations

import base64
import copy
from typing import Any

from kubestack.convert.pod import to_pod_template
from kubestack.convert.services import ServiceStrategy, to_services
from kubestack.convert.volumes import file_key, has_persistent_volumes
from kubestack.convert.workloads import is_global, to_daemon_set, to_deployment, to_stateful_set
from kubestack.errors import StackValidationError
from kubestack.models.stack import (
    FileObject,
    ServiceConfig,
    Stack,
    StackSpec,
    labels_for_service,
    labels_for_stack,
    object_key,
)
from kubestack.stackresources.state import (
    CONFIG_MAP,
    DAEMON_SET,
    DEPLOYMENT,
    SECRET,
    STATEFUL_SET,
    StackState,
)


def _live_annotations(live: dict[str, Any] | None) -> dict[str, str]:
    return dict(((live or {}).get("metadata") or {}).get("annotations") or {})


def _live_template(live: dict[str, Any] | None) -> dict[str, Any] | None:
    return ((live or {}).get("spec") or {}).get("template")


def _object_meta(
    name: str, namespace: str, labels: dict[str, str], live: dict[str, Any] | None
) -> dict[str, Any]:
    meta: dict[str, Any] = {"name": name, "namespace": namespace, "labels": labels}
    annotations = _live_annotations(live)
    if annotations:
        meta["annotations"] = annotations
    return meta


def _service_resources(
    stack: Stack,
    service: ServiceConfig,
    spec: StackSpec,
    strategy: ServiceStrategy,
    current: StackState,
) -> list[dict[str, Any]]:
    selector = labels_for_service(stack.name, service.name)
    # user labels never override the ownership labels
    labels = {**service.deploy.labels, **selector}
    key = object_key(stack.namespace, service.name)

    base_meta = {"name": service.name, "namespace": stack.namespace, "labels": labels}
    resources = to_services(service, base_meta, selector, strategy, current)

    if is_global(service):
        if has_persistent_volumes(service):
            raise StackValidationError("using persistent volumes in a global service is not supported yet")
        live = current.get(DAEMON_SET, key)
        template = to_pod_template(service, labels, spec, _live_template(live))
        meta = _object_meta(service.name, stack.namespace, labels, live)
        resources.append(to_daemon_set(meta, template, selector, live))
    elif has_persistent_volumes(service):
        live = current.get(STATEFUL_SET, key)
        template = to_pod_template(service, labels, spec, _live_template(live))
        meta = _object_meta(service.name, stack.namespace, labels, live)
        resources.append(to_stateful_set(service, meta, template, selector, live))
    else:
        live = current.get(DEPLOYMENT, key)
        template = to_pod_template(service, labels, spec, _live_template(live))
        meta = _object_meta(service.name, stack.namespace, labels, live)
        resources.append(to_deployment(service, meta, template, selector, live))
    return resources


def _file_objects(
    stack: Stack,
    kind: str,
    entries: dict[str, FileObject],
    current: StackState,
) -> list[dict[str, Any]]:
    """Secrets or ConfigMaps the stack carries inline.

    Entries without inline data are provided by the user; an owned object of
    that name is left untouched.
    """
    result = []
    for name in sorted(entries):
        entry = entries[name]
        if entry.external:
            continue
        live = current.get(kind, object_key(stack.namespace, name))
        if entry.data is None:
            if live is not None:
                result.append(live)
            continue
        obj = copy.deepcopy(live) if live else {}
        obj["apiVersion"] = "v1"
        obj["kind"] = kind
        obj["metadata"] = _object_meta(name, stack.namespace, {**entry.labels, **labels_for_stack(stack.name)}, live)
        key = file_key(entry.file)
        if kind == SECRET:
            obj["type"] = obj.get("type") or "Opaque"
            obj["data"] = {key: base64.b64encode(entry.data.encode()).decode()}
        else:
            obj["data"] = {key: entry.data}
        obj.pop("binaryData", None)
        result.append(obj)
    return result


def stack_to_state(stack: Stack, strategy: ServiceStrategy, current: StackState) -> StackState:
    """Every child object ``stack`` should have.

    Each desired object is layered over its live counterpart in ``current``
    so that fields filled in by the API server are preserved.
    """
    spec = stack.spec
    if spec is None:
        raise StackValidationError("stack spec is missing")
    if not spec.services:
        raise StackValidationError("this stack has no service")

    resources: list[dict[str, Any]] = []
    for service in sorted(spec.services, key=lambda s: s.name):
        resources.extend(_service_resources(stack, service, spec, strategy, current))
    resources.extend(_file_objects(stack, SECRET, spec.secrets, current))
    resources.extend(_file_objects(stack, CONFIG_MAP, spec.configs, current))
    return StackState.from_objects(resources)
