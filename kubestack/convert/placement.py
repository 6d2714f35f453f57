"""Placement constraints to node affinity."""

from __future__ import annotations

from typing import Any

from kubestack.errors import StackValidationError
from kubestack.models.stack import Constraint, Constraints

KUBERNETES_OS = "kubernetes.io/os"
KUBERNETES_ARCH = "kubernetes.io/arch"
KUBERNETES_HOSTNAME = "kubernetes.io/hostname"

_OPERATORS = {
    "==": "In",
    "!=": "NotIn",
    ">": "Gt",
    "<": "Lt",
}


def _requirement(key: str, constraint: Constraint) -> dict[str, Any]:
    operator = _OPERATORS.get(constraint.operator)
    if operator is None:
        raise StackValidationError(f"operator {constraint.operator} not supported")
    return {"key": key, "operator": operator, "values": [constraint.value]}


def to_node_affinity(constraints: Constraints | None) -> dict[str, Any]:
    constraints = constraints or Constraints()
    requirements = []
    if constraints.operating_system is not None:
        requirements.append(_requirement(KUBERNETES_OS, constraints.operating_system))
    if constraints.architecture is not None:
        requirements.append(_requirement(KUBERNETES_ARCH, constraints.architecture))
    if constraints.hostname is not None:
        requirements.append(_requirement(KUBERNETES_HOSTNAME, constraints.hostname))
    for key in sorted(constraints.match_labels):
        requirements.append(_requirement(key, constraints.match_labels[key]))

    if not any(r["key"] == KUBERNETES_OS for r in requirements):
        requirements.append({"key": KUBERNETES_OS, "operator": "In", "values": ["linux"]})

    return {
        "nodeAffinity": {
            "requiredDuringSchedulingIgnoredDuringExecution": {
                "nodeSelectorTerms": [{"matchExpressions": requirements}],
            },
        },
    }
