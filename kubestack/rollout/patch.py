"""JSON patch (RFC 6902) builder."""

from __future__ import annotations

import json
from typing import Any


def escape_pointer(token: str) -> str:
    """Escape one JSON pointer reference token (RFC 6901)."""
    return token.replace("~", "~0").replace("/", "~1")


class Patch:
    """An ordered list of patch operations.

    Appending never mutates: every builder method returns a new Patch.
    """

    __slots__ = ("_ops",)

    def __init__(self, ops: tuple[dict[str, Any], ...] = ()) -> None:
        self._ops = ops

    def _append(self, op: dict[str, Any]) -> Patch:
        return Patch((*self._ops, op))

    def replace(self, path: str, value: Any) -> Patch:
        return self._append({"op": "replace", "path": path, "value": value})

    def remove(self, path: str) -> Patch:
        return self._append({"op": "remove", "path": path})

    def add(self, path: str, value: Any) -> Patch:
        return self._append({"op": "add", "path": path, "value": value})

    def add_kv(self, path: str, key: str, value: Any) -> Patch:
        return self._append({"op": "add", "path": path, "value": {key: value}})

    def test(self, path: str, value: Any) -> Patch:
        """Precondition: the patch fails unless ``path`` holds ``value``."""
        return self._append({"op": "test", "path": path, "value": value})

    def extend(self, other: Patch) -> Patch:
        return Patch((*self._ops, *other._ops))

    @property
    def operations(self) -> list[dict[str, Any]]:
        return [dict(op) for op in self._ops]

    def __len__(self) -> int:
        return len(self._ops)

    def __bool__(self) -> bool:
        return bool(self._ops)

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Patch):
            return NotImplemented
        return self._ops == other._ops

    def __repr__(self) -> str:
        return f"Patch({list(self._ops)!r})"

    def to_json(self) -> str:
        return json.dumps(list(self._ops), separators=(",", ":"))
