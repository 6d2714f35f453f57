"""Writes a computed diff and the Stack status back to the cluster."""

from __future__ import annotations

from typing import Any

from kubestack.conversions.base import StackConverter
from kubestack.errors import ApplyError, OwnershipConflictError, RetryableError
from kubestack.kube.client import ResourceClient, StackClient
from kubestack.kube.errors import API_ERRORS, is_conflict, is_forbidden, is_not_found, is_transient, reason
from kubestack.models.stack import FileObject, Stack, StackStatus, key_of, selector_for_stack
from kubestack.observability.logging import get_logger
from kubestack.rollout.patch import Patch
from kubestack.stackresources.diff import StackStateDiff
from kubestack.stackresources.state import CONFIG_MAP, KINDS, SECRET

_log = get_logger("updater")


def _meta(obj: dict[str, Any]) -> tuple[str, str]:
    meta = obj.get("metadata") or {}
    return meta.get("namespace", ""), meta.get("name", "")


def _replicas(obj: dict[str, Any]) -> int:
    return int((obj.get("spec") or {}).get("replicas", 1))


class ResourceUpdater:
    """Applies stack state diffs through one ResourceClient per child kind."""

    def __init__(
        self,
        clients: dict[str, ResourceClient],
        stack_client: StackClient,
        converter: StackConverter,
    ) -> None:
        self._clients = clients
        self._stack_client = stack_client
        self._converter = converter

    def _fail(self, verb: str, kind: str, key: str, stack: Stack, exc: BaseException) -> Exception:
        if is_transient(exc):
            return RetryableError(f"{verb} {kind} {key}: {reason(exc)}")
        return ApplyError(verb, kind, key, stack.key, exc)

    async def apply(self, stack: Stack, diff: StackStateDiff) -> list[OwnershipConflictError]:
        """Apply ``diff`` kind by kind; return the creates rejected as conflicts.

        Raises RetryableError for optimistic-concurrency conflicts and
        transient failures, ApplyError for anything else.
        """
        conflicts: list[OwnershipConflictError] = []
        for kind in KINDS:
            kd = diff[kind]
            if kd.empty():
                continue
            client = self._clients[kind]
            for obj in kd.to_delete:
                await self._delete(client, kind, obj, stack)
            for obj in kd.to_add:
                conflict = await self._create(client, kind, obj, stack)
                if conflict is not None:
                    conflicts.append(conflict)
            for obj in kd.to_scale:
                await self._scale(client, kind, obj, stack)
            for obj in kd.to_update:
                await self._update(client, kind, obj, stack)
        return conflicts

    async def _delete(self, client: ResourceClient, kind: str, obj: dict[str, Any], stack: Stack) -> None:
        namespace, name = _meta(obj)
        try:
            await client.delete(namespace, name)
        except API_ERRORS as exc:
            if is_not_found(exc):
                return
            raise self._fail("delete", kind, key_of(obj), stack, exc) from exc
        _log.info("deleted child", stack=stack.key, kind=kind, name=name)

    async def _create(
        self, client: ResourceClient, kind: str, obj: dict[str, Any], stack: Stack
    ) -> OwnershipConflictError | None:
        namespace, name = _meta(obj)
        try:
            await client.create(namespace, obj)
        except API_ERRORS as exc:
            if is_conflict(exc):
                _log.warning("child already exists", stack=stack.key, kind=kind, name=name)
                return OwnershipConflictError(kind, key_of(obj))
            raise self._fail("create", kind, key_of(obj), stack, exc) from exc
        _log.info("created child", stack=stack.key, kind=kind, name=name)
        return None

    async def _scale(self, client: ResourceClient, kind: str, obj: dict[str, Any], stack: Stack) -> None:
        namespace, name = _meta(obj)
        patch = Patch().replace("/spec/replicas", _replicas(obj))
        try:
            await client.patch(namespace, name, patch.operations)
        except API_ERRORS as exc:
            if is_conflict(exc):
                raise RetryableError(f"scale {kind} {key_of(obj)}: {reason(exc)}") from exc
            raise self._fail("scale", kind, key_of(obj), stack, exc) from exc
        _log.info("scaled child", stack=stack.key, kind=kind, name=name, replicas=_replicas(obj))

    async def _update(self, client: ResourceClient, kind: str, obj: dict[str, Any], stack: Stack) -> None:
        namespace, name = _meta(obj)
        try:
            await client.replace(namespace, name, obj)
        except API_ERRORS as exc:
            if is_conflict(exc):
                raise RetryableError(f"update {kind} {key_of(obj)}: {reason(exc)}") from exc
            raise self._fail("update", kind, key_of(obj), stack, exc) from exc
        _log.info("updated child", stack=stack.key, kind=kind, name=name)

    async def update_stack_status(self, stack: Stack, status: StackStatus) -> None:
        if stack.status == status:
            return
        stack.status = status
        body = self._converter.from_canonical(stack)
        try:
            await self._stack_client.replace_status(stack.namespace, stack.name, body)
        except API_ERRORS as exc:
            if is_not_found(exc):
                return
            if is_conflict(exc) or is_transient(exc):
                raise RetryableError(f"status of stack {stack.key}: {reason(exc)}") from exc
            raise
        _log.info("stack status updated", stack=stack.key, phase=str(status.phase), message=status.message)

    async def delete_secrets_and_config_maps(self, stack: Stack) -> None:
        """Remove the Secrets and ConfigMaps carrying the stack label.

        When listing by label is forbidden, fall back to deleting the entries
        named in the stack spec one by one.
        """
        selector = selector_for_stack(stack.name)
        for kind, entries in (
            (SECRET, stack.spec.secrets if stack.spec else {}),
            (CONFIG_MAP, stack.spec.configs if stack.spec else {}),
        ):
            client = self._clients[kind]
            try:
                await client.delete_collection(stack.namespace, selector)
            except API_ERRORS as exc:
                if not is_forbidden(exc):
                    raise self._fail("delete", kind, f"{stack.namespace}/{selector}", stack, exc) from exc
                _log.warning("collection delete forbidden, deleting by name", stack=stack.key, kind=kind)
                await self._delete_named(client, stack, entries)

    async def _delete_named(self, client: ResourceClient, stack: Stack, entries: dict[str, FileObject]) -> None:
        for name, entry in sorted(entries.items()):
            if entry.external:
                continue
            try:
                await client.delete(stack.namespace, name)
            except API_ERRORS as exc:
                if not is_not_found(exc):
                    raise self._fail("delete", client.kind, f"{stack.namespace}/{name}", stack, exc) from exc
