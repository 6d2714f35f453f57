"""Service definition to Deployment, StatefulSet or DaemonSet."""

from __future__ import annotations

import copy
from typing import Any

from kubestack.convert.pod import force_restart_policy
from kubestack.convert.volumes import to_claim_templates
from kubestack.models.stack import ServiceConfig
from kubestack.stackresources.state import DAEMON_SET, DEPLOYMENT, STATEFUL_SET

REVISION_HISTORY_LIMIT = 3


def is_global(service: ServiceConfig) -> bool:
    return service.deploy.mode == "global"


def to_replicas(service: ServiceConfig) -> int:
    return service.deploy.replicas if service.deploy.replicas is not None else 1


def _base(kind: str, live: dict[str, Any] | None, metadata: dict[str, Any]) -> dict[str, Any]:
    obj = copy.deepcopy(live) if live else {}
    obj.pop("status", None)
    obj["apiVersion"] = "apps/v1"
    obj["kind"] = kind
    obj["metadata"] = metadata
    obj.setdefault("spec", {})
    return obj


def _parallelism(service: ServiceConfig) -> int | None:
    config = service.deploy.update_config
    if config is None:
        return None
    return config.parallelism


def to_deployment(
    service: ServiceConfig,
    metadata: dict[str, Any],
    template: dict[str, Any],
    selector: dict[str, str],
    live: dict[str, Any] | None,
) -> dict[str, Any]:
    dep = _base(DEPLOYMENT, live, metadata)
    spec = dep["spec"]
    spec["replicas"] = to_replicas(service)
    spec["revisionHistoryLimit"] = REVISION_HISTORY_LIMIT
    spec["template"] = force_restart_policy(template, "Always")
    spec["selector"] = {"matchLabels": dict(selector)}
    parallelism = _parallelism(service)
    if parallelism is not None:
        rolling = dict((spec.get("strategy") or {}).get("rollingUpdate") or {})
        rolling["maxUnavailable"] = parallelism
        spec["strategy"] = {"type": "RollingUpdate", "rollingUpdate": rolling}
    return dep


def to_stateful_set(
    service: ServiceConfig,
    metadata: dict[str, Any],
    template: dict[str, Any],
    selector: dict[str, str],
    live: dict[str, Any] | None,
) -> dict[str, Any]:
    sts = _base(STATEFUL_SET, live, metadata)
    spec = sts["spec"]
    spec["replicas"] = to_replicas(service)
    spec["revisionHistoryLimit"] = REVISION_HISTORY_LIMIT
    spec["serviceName"] = service.name
    spec["template"] = force_restart_policy(template, "Always")
    spec["volumeClaimTemplates"] = to_claim_templates(service, spec.get("volumeClaimTemplates"))
    spec["selector"] = {"matchLabels": dict(selector)}
    parallelism = _parallelism(service)
    if parallelism is not None:
        spec["updateStrategy"] = {"type": "RollingUpdate", "rollingUpdate": {"partition": parallelism}}
    return sts


def to_daemon_set(
    metadata: dict[str, Any],
    template: dict[str, Any],
    selector: dict[str, str],
    live: dict[str, Any] | None,
) -> dict[str, Any]:
    ds = _base(DAEMON_SET, live, metadata)
    ds["spec"]["template"] = template
    ds["spec"]["selector"] = {"matchLabels": dict(selector)}
    return ds
