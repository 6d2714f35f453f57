"""Tests for stack revision history, recording and rollback."""

from __future__ import annotations

import json
from typing import Any
from unittest.mock import AsyncMock, MagicMock

import pytest
from hypothesis import given
from hypothesis import strategies as st
from kubernetes_asyncio.client import ApiException

from kubestack.errors import RevisionMutatedError, RevisionNotFoundError, RevisionUnreadableError
from kubestack.models.stack import Stack
from kubestack.rollout import (
    ANNOTATION_PREFIX,
    Revision,
    RevisionHistory,
    RevisionRecorder,
    diff,
    prune_revisions,
    revisions_of,
    rollback,
)
from kubestack.rollout.revisions import serialize_spec

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _history(*specs: str) -> RevisionHistory:
    history = RevisionHistory()
    for spec in specs:
        history = history.add(spec)
    return history


def _raw(spec: dict[str, Any], annotations: dict[str, str] | None = None) -> dict[str, Any]:
    return {
        "apiVersion": "kubestack.io/v1alpha3",
        "kind": "Stack",
        "metadata": {"name": "app", "namespace": "default", "resourceVersion": "7", "annotations": annotations or {}},
        "spec": spec,
    }


def _stack(raw: dict[str, Any]) -> Stack:
    return Stack(namespace="default", name="app", resource_version="7", raw=raw)


# ---------------------------------------------------------------------------
# Parsing
# ---------------------------------------------------------------------------


class TestRevisionsOf:
    def test_parses_and_sorts(self) -> None:
        obj = _raw(
            {},
            {
                f"{ANNOTATION_PREFIX}10": "c",
                f"{ANNOTATION_PREFIX}2": "b",
                f"{ANNOTATION_PREFIX}1": "a",
                "other": "x",
            },
        )
        history = revisions_of(obj)
        assert [r.number for r in history.revisions] == [1, 2, 10]
        assert history.annotations == {"other": "x"}

    def test_malformed_suffixes_skipped(self) -> None:
        malformed = {
            f"{ANNOTATION_PREFIX}abc": "x",
            f"{ANNOTATION_PREFIX}": "y",
            f"{ANNOTATION_PREFIX}\N{SUPERSCRIPT TWO}": "w",
            f"{ANNOTATION_PREFIX}\N{ARABIC-INDIC DIGIT FOUR}": "v",
            f"{ANNOTATION_PREFIX}03": "u",
        }
        obj = _raw({}, {**malformed, f"{ANNOTATION_PREFIX}3": "z"})
        history = revisions_of(obj)
        assert history.revisions == (Revision(3, "z"),)
        # kept untouched when the annotations map is written back
        assert history.annotations == malformed

    def test_no_annotations(self) -> None:
        assert len(revisions_of({"metadata": {}})) == 0
        assert len(revisions_of({})) == 0


# ---------------------------------------------------------------------------
# History operations
# ---------------------------------------------------------------------------


class TestHistory:
    def test_add_on_empty_history_is_revision_one(self) -> None:
        assert RevisionHistory().add("a").last() == Revision(1, "a")

    def test_add_never_reuses_numbers_after_prune(self) -> None:
        history = _history("a", "b", "c").prune(1)
        assert [r.number for r in history.revisions] == [3]
        assert history.add("d").last() == Revision(4, "d")

    def test_prune_keeps_newest(self) -> None:
        history = _history("a", "b", "c", "d").prune(2)
        assert [r.spec for r in history.revisions] == ["c", "d"]

    @given(st.lists(st.text(max_size=5), min_size=1, max_size=20))
    def test_numbers_strictly_increase(self, specs: list[str]) -> None:
        numbers = [r.number for r in _history(*specs).revisions]
        assert numbers == list(range(1, len(specs) + 1))


# ---------------------------------------------------------------------------
# Diff
# ---------------------------------------------------------------------------


class TestDiff:
    def test_diff_with_itself_is_empty(self) -> None:
        history = _history("a", "b")
        assert not diff(history, history)

    @given(st.lists(st.text(max_size=5), max_size=10))
    def test_diff_idempotent(self, specs: list[str]) -> None:
        history = _history(*specs)
        assert diff(history, history).to_json() == "[]"

    def test_mutated_revision_fails(self) -> None:
        current = RevisionHistory((Revision(1, "a"),))
        updated = RevisionHistory((Revision(1, "b"),))
        with pytest.raises(RevisionMutatedError, match=r"Changing a revision \(1\) is not supported"):
            diff(current, updated)

    def test_new_revisions_added_in_one_operation(self) -> None:
        current = RevisionHistory((Revision(1, "a"),), {"keep": "me"})
        updated = current.add("b").add("c")
        ops = diff(current, updated).operations
        assert ops == [
            {
                "op": "add",
                "path": "/metadata/annotations",
                "value": {
                    "keep": "me",
                    f"{ANNOTATION_PREFIX}1": "a",
                    f"{ANNOTATION_PREFIX}2": "b",
                    f"{ANNOTATION_PREFIX}3": "c",
                },
            }
        ]

    def test_pruned_revisions_removed_individually(self) -> None:
        current = _history("a", "b")
        updated = current.add("c").prune(2)
        ops = diff(current, updated).operations
        assert ops[0] == {"op": "remove", "path": "/metadata/annotations/kubestack.io~1revision-1"}
        assert ops[1]["op"] == "add"
        assert len(ops) == 2


# ---------------------------------------------------------------------------
# Recorder
# ---------------------------------------------------------------------------


class TestRevisionRecorder:
    async def test_records_first_revision(self) -> None:
        client = MagicMock()
        client.patch = AsyncMock(return_value={"patched": True})
        raw = _raw({"services": [{"name": "web"}]})
        recorder = RevisionRecorder(client)

        result = await recorder.record(_stack(raw))

        assert result == {"patched": True}
        namespace, name, ops = client.patch.call_args.args
        assert (namespace, name) == ("default", "app")
        assert ops == [
            {"op": "test", "path": "/metadata/resourceVersion", "value": "7"},
            {
                "op": "add",
                "path": "/metadata/annotations",
                "value": {f"{ANNOTATION_PREFIX}1": serialize_spec({"services": [{"name": "web"}]})},
            },
        ]

    async def test_unchanged_spec_is_not_recorded(self) -> None:
        client = MagicMock()
        client.patch = AsyncMock()
        spec = {"services": [{"name": "web"}]}
        raw = _raw(spec, {f"{ANNOTATION_PREFIX}1": serialize_spec(spec)})

        result = await RevisionRecorder(client).record(_stack(raw))

        assert result is raw
        client.patch.assert_not_called()

    async def test_recording_keeps_every_revision(self) -> None:
        client = MagicMock()
        client.patch = AsyncMock(return_value={})
        annotations = {f"{ANNOTATION_PREFIX}{i}": serialize_spec({"v": i}) for i in range(1, 21)}
        raw = _raw({"v": 21}, annotations)

        await RevisionRecorder(client).record(_stack(raw))

        ops = client.patch.call_args.args[2]
        assert [op["op"] for op in ops] == ["test", "add"]
        assert len(ops[1]["value"]) == 21

    async def test_stale_stack_is_rejected_by_precondition(self) -> None:
        client = MagicMock()
        client.patch = AsyncMock(side_effect=ApiException(status=422, reason="Unprocessable Entity"))
        raw = _raw({"v": 1}, {"team": "payments"})

        with pytest.raises(ApiException):
            await RevisionRecorder(client).record(_stack(raw))
        ops = client.patch.call_args.args[2]
        assert ops[0] == {"op": "test", "path": "/metadata/resourceVersion", "value": "7"}
        assert ops[1]["value"]["team"] == "payments"

    def test_serialized_spec_is_key_order_independent(self) -> None:
        assert serialize_spec({"b": 1, "a": 2}) == serialize_spec({"a": 2, "b": 1})


# ---------------------------------------------------------------------------
# Pruning
# ---------------------------------------------------------------------------


class TestPruneRevisions:
    async def test_removes_oldest(self) -> None:
        client = MagicMock()
        client.patch = AsyncMock(return_value={"pruned": True})
        annotations = {f"{ANNOTATION_PREFIX}{i}": serialize_spec({"v": i}) for i in (1, 2, 3)}

        removed, result = await prune_revisions(client, _stack(_raw({"v": 3}, annotations)), keep=2)

        assert removed == [1]
        assert result == {"pruned": True}
        ops = client.patch.call_args.args[2]
        assert ops == [
            {"op": "test", "path": "/metadata/resourceVersion", "value": "7"},
            {"op": "remove", "path": "/metadata/annotations/kubestack.io~1revision-1"},
        ]

    async def test_nothing_to_prune(self) -> None:
        client = MagicMock()
        client.patch = AsyncMock()
        raw = _raw({"v": 1}, {f"{ANNOTATION_PREFIX}1": serialize_spec({"v": 1})})

        removed, result = await prune_revisions(client, _stack(raw), keep=5)

        assert removed == []
        assert result is raw
        client.patch.assert_not_called()


# ---------------------------------------------------------------------------
# Rollback
# ---------------------------------------------------------------------------


class TestRollback:
    async def test_rollback_replaces_spec(self) -> None:
        client = MagicMock()
        client.patch = AsyncMock(return_value={})
        old_spec = {"services": [{"name": "web", "image": "nginx:1.24"}]}
        raw = _raw({"services": []}, {f"{ANNOTATION_PREFIX}1": json.dumps(old_spec)})

        await rollback(client, _stack(raw), 1)

        ops = client.patch.call_args.args[2]
        assert ops == [{"op": "replace", "path": "/spec", "value": old_spec}]

    async def test_unknown_revision(self) -> None:
        client = MagicMock()
        client.patch = AsyncMock()
        with pytest.raises(RevisionNotFoundError):
            await rollback(client, _stack(_raw({})), 4)
        client.patch.assert_not_called()

    @pytest.mark.parametrize("stored", ["{not json", "42", "[1, 2]"])
    async def test_unreadable_revision(self, stored: str) -> None:
        client = MagicMock()
        client.patch = AsyncMock()
        raw = _raw({}, {f"{ANNOTATION_PREFIX}1": stored})
        with pytest.raises(RevisionUnreadableError, match="Revision 1 cannot be decoded"):
            await rollback(client, _stack(raw), 1)
        client.patch.assert_not_called()
