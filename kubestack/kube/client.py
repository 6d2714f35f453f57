"""Thin async clients over the Kubernetes API.

Objects cross this boundary as plain camelCase dicts, the same shape the API
server speaks, so the rest of the controller never touches generated model
classes.
"""

from __future__ import annotations

from collections.abc import AsyncIterator
from typing import Any, Protocol

from kubernetes_asyncio import client as k8s_client
from kubernetes_asyncio import watch as k8s_watch

from kubestack.kube.errors import WatchExpiredError
from kubestack.models.stack import GROUP, KIND, PLURAL
from kubestack.observability.metrics import cluster_writes_total

_WATCH_TIMEOUT_SECONDS = 300

# kind -> (api class, api version, method suffix)
_TYPED_KINDS: dict[str, tuple[type, str, str]] = {
    "Deployment": (k8s_client.AppsV1Api, "apps/v1", "deployment"),
    "StatefulSet": (k8s_client.AppsV1Api, "apps/v1", "stateful_set"),
    "DaemonSet": (k8s_client.AppsV1Api, "apps/v1", "daemon_set"),
    "Service": (k8s_client.CoreV1Api, "v1", "service"),
    "ConfigMap": (k8s_client.CoreV1Api, "v1", "config_map"),
    "Secret": (k8s_client.CoreV1Api, "v1", "secret"),
}

MANAGED_KINDS = tuple(_TYPED_KINDS)


class ResourceClient(Protocol):
    """Operations the controller needs for one resource kind.

    An empty ``namespace`` on ``list``/``watch`` means all namespaces.
    """

    kind: str

    async def list(self, namespace: str = "", label_selector: str = "") -> tuple[list[dict[str, Any]], str]: ...

    def watch(
        self, namespace: str = "", resource_version: str = "", label_selector: str = ""
    ) -> AsyncIterator[tuple[str, dict[str, Any]]]: ...

    async def get(self, namespace: str, name: str) -> dict[str, Any]: ...

    async def create(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]: ...

    async def replace(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]: ...

    async def patch(self, namespace: str, name: str, operations: list[dict[str, Any]]) -> dict[str, Any]: ...

    async def delete(self, namespace: str, name: str) -> None: ...

    async def delete_collection(self, namespace: str, label_selector: str) -> None: ...


class _BaseClient:
    kind: str
    api_version: str

    def __init__(self, api_client: k8s_client.ApiClient) -> None:
        self._api_client = api_client

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        data: dict[str, Any] = self._api_client.sanitize_for_serialization(obj)
        data.setdefault("kind", self.kind)
        data.setdefault("apiVersion", self.api_version)
        return data

    def _list_fn(self, namespace: str) -> tuple[Any, dict[str, Any]]:
        raise NotImplementedError

    async def list(self, namespace: str = "", label_selector: str = "") -> tuple[list[dict[str, Any]], str]:
        fn, kwargs = self._list_fn(namespace)
        if label_selector:
            kwargs["label_selector"] = label_selector
        result = self._to_dict(await fn(**kwargs))
        items = [self._to_dict(item) for item in result.get("items") or []]
        for item in items:
            item["kind"] = self.kind
            item["apiVersion"] = self.api_version
        return items, str(result.get("metadata", {}).get("resourceVersion", ""))

    async def watch(
        self, namespace: str = "", resource_version: str = "", label_selector: str = ""
    ) -> AsyncIterator[tuple[str, dict[str, Any]]]:
        fn, kwargs = self._list_fn(namespace)
        kwargs["timeout_seconds"] = _WATCH_TIMEOUT_SECONDS
        kwargs["allow_watch_bookmarks"] = True
        if resource_version:
            kwargs["resource_version"] = resource_version
        if label_selector:
            kwargs["label_selector"] = label_selector
        try:
            async with k8s_watch.Watch().stream(fn, **kwargs) as stream:
                async for event in stream:
                    event_type = str(event.get("type", ""))
                    raw = event.get("raw_object") or {}
                    if event_type == "ERROR":
                        if raw.get("code") == 410:
                            raise WatchExpiredError(raw.get("message", "resource version too old"))
                        raise k8s_client.ApiException(status=raw.get("code"), reason=raw.get("message"))
                    if isinstance(raw, dict):
                        raw.setdefault("kind", self.kind)
                        raw.setdefault("apiVersion", self.api_version)
                    yield event_type, raw
        except k8s_client.ApiException as exc:
            if exc.status == 410:
                raise WatchExpiredError(str(exc.reason)) from exc
            raise


class KubeResourceClient(_BaseClient):
    """ResourceClient for one of the built-in child kinds."""

    def __init__(self, api_client: k8s_client.ApiClient, kind: str) -> None:
        super().__init__(api_client)
        if kind not in _TYPED_KINDS:
            raise ValueError(f"Unsupported kind: {kind}")
        api_cls, api_version, suffix = _TYPED_KINDS[kind]
        self.kind = kind
        self.api_version = api_version
        self._api = api_cls(api_client)
        self._suffix = suffix

    def _method(self, template: str) -> Any:
        return getattr(self._api, template.format(self._suffix))

    def _list_fn(self, namespace: str) -> tuple[Any, dict[str, Any]]:
        if namespace:
            return self._method("list_namespaced_{}"), {"namespace": namespace}
        return self._method("list_{}_for_all_namespaces"), {}

    async def get(self, namespace: str, name: str) -> dict[str, Any]:
        return self._to_dict(await self._method("read_namespaced_{}")(name, namespace))

    async def create(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        cluster_writes_total.labels(kind=self.kind, verb="create").inc()
        return self._to_dict(await self._method("create_namespaced_{}")(namespace, body))

    async def replace(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        cluster_writes_total.labels(kind=self.kind, verb="update").inc()
        return self._to_dict(await self._method("replace_namespaced_{}")(name, namespace, body))

    async def patch(self, namespace: str, name: str, operations: list[dict[str, Any]]) -> dict[str, Any]:
        cluster_writes_total.labels(kind=self.kind, verb="patch").inc()
        return self._to_dict(await self._method("patch_namespaced_{}")(name, namespace, operations))

    async def delete(self, namespace: str, name: str) -> None:
        cluster_writes_total.labels(kind=self.kind, verb="delete").inc()
        await self._method("delete_namespaced_{}")(name, namespace, propagation_policy="Foreground")

    async def delete_collection(self, namespace: str, label_selector: str) -> None:
        cluster_writes_total.labels(kind=self.kind, verb="deletecollection").inc()
        await self._method("delete_collection_namespaced_{}")(namespace, label_selector=label_selector)


class StackClient(_BaseClient):
    """ResourceClient for the Stack custom resource in one schema version."""

    kind = KIND

    def __init__(self, api_client: k8s_client.ApiClient, version: str) -> None:
        super().__init__(api_client)
        self.version = version
        self.api_version = f"{GROUP}/{version}"
        self._api = k8s_client.CustomObjectsApi(api_client)

    def _list_fn(self, namespace: str) -> tuple[Any, dict[str, Any]]:
        if namespace:
            return self._api.list_namespaced_custom_object, {
                "group": GROUP,
                "version": self.version,
                "namespace": namespace,
                "plural": PLURAL,
            }
        return self._api.list_cluster_custom_object, {"group": GROUP, "version": self.version, "plural": PLURAL}

    def _to_dict(self, obj: Any) -> dict[str, Any]:
        # custom objects already come back as dicts
        data = dict(obj)
        data.setdefault("kind", self.kind)
        data.setdefault("apiVersion", self.api_version)
        return data

    async def get(self, namespace: str, name: str) -> dict[str, Any]:
        return self._to_dict(await self._api.get_namespaced_custom_object(GROUP, self.version, namespace, PLURAL, name))

    async def create(self, namespace: str, body: dict[str, Any]) -> dict[str, Any]:
        cluster_writes_total.labels(kind=self.kind, verb="create").inc()
        return self._to_dict(
            await self._api.create_namespaced_custom_object(GROUP, self.version, namespace, PLURAL, body)
        )

    async def replace(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        cluster_writes_total.labels(kind=self.kind, verb="update").inc()
        return self._to_dict(
            await self._api.replace_namespaced_custom_object(GROUP, self.version, namespace, PLURAL, name, body)
        )

    async def replace_status(self, namespace: str, name: str, body: dict[str, Any]) -> dict[str, Any]:
        cluster_writes_total.labels(kind=self.kind, verb="update_status").inc()
        return self._to_dict(
            await self._api.replace_namespaced_custom_object_status(GROUP, self.version, namespace, PLURAL, name, body)
        )

    async def patch(self, namespace: str, name: str, operations: list[dict[str, Any]]) -> dict[str, Any]:
        cluster_writes_total.labels(kind=self.kind, verb="patch").inc()
        return self._to_dict(
            await self._api.patch_namespaced_custom_object(GROUP, self.version, namespace, PLURAL, name, operations)
        )

    async def delete(self, namespace: str, name: str) -> None:
        cluster_writes_total.labels(kind=self.kind, verb="delete").inc()
        await self._api.delete_namespaced_custom_object(
            GROUP, self.version, namespace, PLURAL, name, propagation_policy="Foreground"
        )

    async def delete_collection(self, namespace: str, label_selector: str) -> None:
        cluster_writes_total.labels(kind=self.kind, verb="deletecollection").inc()
        await self._api.delete_collection_namespaced_custom_object(
            GROUP, self.version, namespace, PLURAL, label_selector=label_selector
        )
