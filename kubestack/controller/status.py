"""Stack status derived from the observed state of its children."""

from __future__ import annotations

from kubestack.models.stack import Stack, StackPhase, StackStatus
from kubestack.observability.logging import get_logger
from kubestack.stackresources.state import DAEMON_SET, DEPLOYMENT, STATEFUL_SET, StackState

_log = get_logger("status")


def status_progressing() -> StackStatus:
    return StackStatus(StackPhase.PROGRESSING, "Stack is starting")


def status_available() -> StackStatus:
    return StackStatus(StackPhase.AVAILABLE, "Stack is started")


def status_failure(err: Exception | str) -> StackStatus:
    return StackStatus(StackPhase.FAILURE, str(err))


def generate_status(stack: Stack, current: StackState) -> StackStatus:
    """Available once every service's workload reports ready, Progressing otherwise."""
    remaining = {svc.name for svc in (stack.spec.services if stack.spec else [])}
    for kind in (DEPLOYMENT, STATEFUL_SET):
        for obj in current.of_kind(kind).values():
            desired = (obj.get("spec") or {}).get("replicas")
            desired = 1 if desired is None else desired
            ready = (obj.get("status") or {}).get("readyReplicas") or 0
            if ready == desired:
                remaining.discard(obj["metadata"]["name"])
    for obj in current.of_kind(DAEMON_SET).values():
        if not (obj.get("status") or {}).get("numberUnavailable"):
            remaining.discard(obj["metadata"]["name"])
    if remaining:
        _log.debug("services not ready", stack=stack.key, services=sorted(remaining))
        return status_progressing()
    return status_available()
