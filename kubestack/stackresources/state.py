"""The set of child objects belonging to one stack, grouped by kind."""

from __future__ import annotations

from collections.abc import Iterable, Iterator
from dataclasses import dataclass, field
from typing import Any

from kubestack.models.stack import key_of

DEPLOYMENT = "Deployment"
STATEFUL_SET = "StatefulSet"
DAEMON_SET = "DaemonSet"
SERVICE = "Service"
CONFIG_MAP = "ConfigMap"
SECRET = "Secret"

# Order in which kinds are applied to the cluster.
KINDS = (DAEMON_SET, DEPLOYMENT, STATEFUL_SET, SERVICE, CONFIG_MAP, SECRET)
WORKLOAD_KINDS = (DAEMON_SET, DEPLOYMENT, STATEFUL_SET)


@dataclass
class StackState:
    """Objects per kind, keyed by ``namespace/name``."""

    objects: dict[str, dict[str, dict[str, Any]]] = field(default_factory=lambda: {k: {} for k in KINDS})

    @classmethod
    def from_objects(cls, objects: Iterable[dict[str, Any]]) -> StackState:
        state = cls()
        for obj in objects:
            state.add(obj)
        return state

    def add(self, obj: dict[str, Any]) -> None:
        kind = obj.get("kind", "")
        if kind not in self.objects:
            raise ValueError(f"unexpected object kind: {kind!r}")
        self.objects[kind][key_of(obj)] = obj

    def of_kind(self, kind: str) -> dict[str, dict[str, Any]]:
        return self.objects[kind]

    def get(self, kind: str, key: str) -> dict[str, Any] | None:
        return self.objects[kind].get(key)

    def __iter__(self) -> Iterator[dict[str, Any]]:
        for kind in KINDS:
            yield from self.objects[kind].values()

    def __len__(self) -> int:
        return sum(len(v) for v in self.objects.values())


def empty_state() -> StackState:
    return StackState()
