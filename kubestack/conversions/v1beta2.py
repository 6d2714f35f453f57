"""The ``v1beta2`` Stack schema.

Placement constraints are swarm-style expressions such as
``node.hostname == web1`` and services have no internal ports.
"""

from __future__ import annotations

import re
from typing import Any

from kubestack.conversions.base import StackConverter
from kubestack.conversions.v1alpha3 import (
    compact,
    decode_service,
    decode_spec,
    encode_file_objects,
    encode_service,
)
from kubestack.errors import StackValidationError
from kubestack.models.stack import Constraint, Constraints, StackSpec

_CONSTRAINT = re.compile(r"^\s*([\w.\-/]+)\s*(==|!=|>|<)\s*(.*?)\s*$")
_NODE_LABEL_PREFIX = "node.labels."


def parse_constraints(expressions: list[str] | None) -> Constraints | None:
    if expressions is None:
        return None
    result = Constraints()
    for expression in expressions:
        match = _CONSTRAINT.match(expression)
        if match is None or not match.group(3):
            raise StackValidationError(f"malformed constraint {expression!r}")
        key, operator, value = match.groups()
        constraint = Constraint(operator=operator, value=value)
        if key == "node.hostname":
            result.hostname = constraint
        elif key in ("node.platform.os", "engine.labels.operatingsystem"):
            result.operating_system = constraint
        elif key == "node.platform.arch":
            result.architecture = constraint
        elif key.startswith(_NODE_LABEL_PREFIX) and len(key) > len(_NODE_LABEL_PREFIX):
            result.match_labels[key[len(_NODE_LABEL_PREFIX) :]] = constraint
        else:
            raise StackValidationError(f"unsupported constraint {expression!r}")
    return result


def format_constraints(constraints: Constraints | None) -> list[str] | None:
    if constraints is None:
        return None
    result = []
    for key, c in (
        ("node.platform.os", constraints.operating_system),
        ("node.platform.arch", constraints.architecture),
        ("node.hostname", constraints.hostname),
    ):
        if c is not None:
            result.append(f"{key} {c.operator} {c.value}")
    for label in sorted(constraints.match_labels):
        c = constraints.match_labels[label]
        result.append(f"{_NODE_LABEL_PREFIX}{label} {c.operator} {c.value}")
    return result


class V1Beta2Converter(StackConverter):
    version = "v1beta2"

    def decode_spec(self, spec: dict[str, Any]) -> StackSpec:
        result = decode_spec({**spec, "services": []})
        for value in spec.get("services") or []:
            # decoded without constraints; the swarm expressions are parsed here
            deploy = dict(value.get("deploy") or {})
            placement = dict(deploy.pop("placement", None) or {})
            service = decode_service({**value, "deploy": deploy}, with_internal_ports=False)
            service.deploy.constraints = parse_constraints(placement.get("constraints"))
            result.services.append(service)
        return result

    def encode_spec(self, spec: StackSpec) -> dict[str, Any]:
        return compact(
            {
                "services": [
                    encode_service(
                        s,
                        with_internal_ports=False,
                        constraints=format_constraints(s.deploy.constraints),
                    )
                    for s in spec.services
                ],
                "secrets": encode_file_objects(spec.secrets),
                "configs": encode_file_objects(spec.configs),
                "volumes": spec.volumes,
                "networks": spec.networks,
            }
        )
