"""Tests for the indexed store."""

from __future__ import annotations

from typing import Any

from kubestack.controller.children import BY_STACK_INDEX, by_stack_indexer
from kubestack.controller.store import IndexedStore
from kubestack.models.stack import STACK_LABEL


def _obj(name: str, stack: str | None = None, namespace: str = "default", rv: str = "1") -> dict[str, Any]:
    meta: dict[str, Any] = {"name": name, "namespace": namespace, "resourceVersion": rv}
    if stack:
        meta["labels"] = {STACK_LABEL: stack}
    return {"kind": "Deployment", "metadata": meta}


def _store() -> IndexedStore:
    return IndexedStore({BY_STACK_INDEX: by_stack_indexer})


class TestIndexedStore:
    def test_upsert_returns_previous(self) -> None:
        store = _store()
        assert store.upsert(_obj("web", "app")) is None
        old = store.upsert(_obj("web", "app", rv="2"))
        assert old is not None
        assert old["metadata"]["resourceVersion"] == "1"
        assert len(store) == 1

    def test_get_by_key(self) -> None:
        store = _store()
        store.upsert(_obj("web", namespace="prod"))
        assert store.get("prod/web") is not None
        assert store.get("default/web") is None

    def test_index_follows_label_changes(self) -> None:
        store = _store()
        store.upsert(_obj("web", "app"))
        store.upsert(_obj("web", "other"))
        assert store.by_index(BY_STACK_INDEX, "default/app") == []
        assert [o["metadata"]["name"] for o in store.by_index(BY_STACK_INDEX, "default/other")] == ["web"]

    def test_delete_removes_from_index(self) -> None:
        store = _store()
        store.upsert(_obj("web", "app"))
        assert store.delete("default/web") is not None
        assert store.by_index(BY_STACK_INDEX, "default/app") == []
        assert store.delete("default/web") is None

    def test_replace_returns_previous_content(self) -> None:
        store = _store()
        store.upsert(_obj("a", "app"))
        previous = store.replace([_obj("b", "app")])
        assert list(previous) == ["default/a"]
        assert store.keys() == ["default/b"]
        assert [o["metadata"]["name"] for o in store.by_index(BY_STACK_INDEX, "default/app")] == ["b"]

    def test_unlabelled_objects_not_indexed(self) -> None:
        store = _store()
        store.upsert(_obj("web"))
        assert store.by_index(BY_STACK_INDEX, "default/") == []
        assert len(store) == 1

    def test_by_index_sorted(self) -> None:
        store = _store()
        for name in ("c", "a", "b"):
            store.upsert(_obj(name, "app"))
        assert [o["metadata"]["name"] for o in store.by_index(BY_STACK_INDEX, "default/app")] == ["a", "b", "c"]
