"""Common machinery for Stack schema versions."""

from __future__ import annotations

import copy
import re
from typing import Any

from kubestack.errors import StackValidationError
from kubestack.models.stack import GROUP, Stack, StackPhase, StackSpec, StackStatus

_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")
_UNIT_SECONDS = {"ns": 1e-9, "us": 1e-6, "µs": 1e-6, "ms": 1e-3, "s": 1.0, "m": 60.0, "h": 3600.0}


def parse_duration_seconds(value: Any) -> int | None:
    """Whole seconds of a duration.

    Accepts duration strings (``"1m30s"``, ``"500ms"``) or an integer count of
    nanoseconds, which is how durations are encoded on the wire.
    """
    if value is None:
        return None
    if isinstance(value, bool):
        raise ValueError(f"invalid duration {value!r}")
    if isinstance(value, int):
        return value // 1_000_000_000
    text = str(value).strip()
    if text == "0":
        return 0
    pos = 0
    total = 0.0
    for match in _DURATION_PART.finditer(text):
        if match.start() != pos:
            break
        total += float(match.group(1)) * _UNIT_SECONDS[match.group(2)]
        pos = match.end()
    if pos != len(text) or not text:
        raise ValueError(f"invalid duration {value!r}")
    return int(total)


class StackConverter:
    """Converts between one external Stack schema version and the canonical form."""

    version: str = ""

    @property
    def api_version(self) -> str:
        return f"{GROUP}/{self.version}"

    def decode_spec(self, spec: dict[str, Any]) -> StackSpec:
        raise NotImplementedError

    def encode_spec(self, spec: StackSpec) -> dict[str, Any]:
        raise NotImplementedError

    def to_canonical(self, raw: dict[str, Any]) -> Stack:
        meta = raw.get("metadata") or {}
        stack = Stack(
            namespace=meta.get("namespace", ""),
            name=meta.get("name", ""),
            uid=meta.get("uid", ""),
            resource_version=str(meta.get("resourceVersion", "")),
            generation=int(meta.get("generation") or 0),
            api_version=raw.get("apiVersion", self.api_version),
            labels=dict(meta.get("labels") or {}),
            annotations=dict(meta.get("annotations") or {}),
            deletion_timestamp=meta.get("deletionTimestamp"),
            raw=raw,
        )
        status = raw.get("status")
        if status:
            try:
                stack.status = StackStatus(StackPhase(status.get("phase", "")), status.get("message", ""))
            except ValueError:
                stack.status = None
        if raw.get("spec") is not None:
            try:
                stack.spec = self.decode_spec(raw["spec"])
            except StackValidationError as exc:
                raise StackValidationError(str(exc), stack) from exc
            except (AttributeError, KeyError, TypeError, ValueError) as exc:
                raise StackValidationError(f"invalid stack spec: {exc}", stack) from exc
        return stack

    def from_canonical(self, stack: Stack) -> dict[str, Any]:
        """Versioned object for ``stack``, starting from its raw form."""
        raw = copy.deepcopy(stack.raw) if stack.raw else {}
        raw["apiVersion"] = self.api_version
        raw["kind"] = "Stack"
        meta = raw.setdefault("metadata", {})
        meta["name"] = stack.name
        meta["namespace"] = stack.namespace
        if stack.resource_version:
            meta["resourceVersion"] = stack.resource_version
        if stack.spec is not None:
            raw["spec"] = self.encode_spec(stack.spec)
        if stack.status is not None:
            raw["status"] = {"phase": str(stack.status.phase), "message": stack.status.message}
        return raw
