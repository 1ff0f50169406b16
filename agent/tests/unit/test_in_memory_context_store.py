"""
Tests for the in-memory context store: live map, history and snapshots.
"""

import pytest
from datetime import datetime, timezone

from conftest import make_item
from domain.context.context_store import ContextView
from domain.context.errors import DuplicateKeyError, InvalidContextItemError, MissingKeyError
from domain.models.context_item import ContextItem


class TestAddAndRead:
    """Adding items and the read side of the store."""

    @pytest.mark.asyncio
    async def test_add_makes_item_live_and_starts_history(self, memory_store):
        item = make_item("user_input", "hello")
        await memory_store.add(item)

        assert memory_store.has("user_input")
        assert memory_store.get("user_input") == item
        assert memory_store.get_history("user_input") == [item]
        assert memory_store.get_all_keys() == {"user_input"}

    @pytest.mark.asyncio
    async def test_add_existing_key_fails_and_leaves_store_unchanged(self, memory_store):
        first = make_item("a", 1)
        await memory_store.add(first)

        with pytest.raises(DuplicateKeyError) as exc_info:
            await memory_store.add(make_item("a", 2))

        assert "already exists" in str(exc_info.value)
        assert memory_store.get("a").value == 1
        assert len(memory_store.get_history("a")) == 1

    @pytest.mark.asyncio
    async def test_missing_key_reads(self, memory_store):
        assert memory_store.get("nope") is None
        assert not memory_store.has("nope")
        assert memory_store.get_history("nope") == []

    @pytest.mark.asyncio
    async def test_get_by_source_and_confidence(self, memory_store):
        await memory_store.add(make_item("a", 1, confidence=0.5, source="user"))
        await memory_store.add(make_item("b", 2, confidence=0.8, source="nlp"))
        await memory_store.add(make_item("c", 3, confidence=0.9, source="nlp"))

        assert {item.key for item in memory_store.get_by_source("nlp")} == {"b", "c"}
        assert memory_store.get_by_source("missing") == []
        # Lower bound is inclusive
        assert {item.key for item in memory_store.get_by_confidence(0.8)} == {"b", "c"}
        assert {item.key for item in memory_store.get_by_confidence(0.0)} == {"a", "b", "c"}

    @pytest.mark.asyncio
    async def test_history_is_returned_as_a_copy(self, memory_store):
        await memory_store.add(make_item("a", 1))

        history = memory_store.get_history("a")
        history.clear()

        assert len(memory_store.get_history("a")) == 1

    @pytest.mark.asyncio
    async def test_invalid_items_are_rejected(self, memory_store):
        with pytest.raises(InvalidContextItemError):
            await memory_store.add({"key": "a", "value": 1})

        assert memory_store.get_all_keys() == set()

    @pytest.mark.asyncio
    @pytest.mark.parametrize("value", [{"a", "b"}, {1: "one"}, {"nested": [object()]}, float("nan")])
    async def test_non_json_values_are_rejected(self, memory_store, value):
        with pytest.raises(InvalidContextItemError):
            await memory_store.add(make_item("a", value))

        assert not memory_store.has("a")

    @pytest.mark.asyncio
    async def test_json_values_are_accepted(self, memory_store):
        value = {"name": "Acme", "tags": ["x", None], "score": 0.5, "ok": True, "count": 3}
        await memory_store.add(make_item("a", value))

        assert memory_store.get("a").value == value


class TestUpdate:
    """Updating live keys."""

    @pytest.mark.asyncio
    async def test_update_replaces_value_and_appends_history(self, memory_store):
        await memory_store.add(make_item("a", 1, confidence=0.4, source="nlp", reasoning="first"))

        updated = await memory_store.update("a", 2)

        assert updated.value == 2
        # Unspecified fields carry forward
        assert updated.confidence == 0.4
        assert updated.source == "nlp"
        assert updated.reasoning == "first"
        assert memory_store.get("a") == updated
        assert [entry.value for entry in memory_store.get_history("a")] == [1, 2]

    @pytest.mark.asyncio
    async def test_update_with_new_confidence_and_provenance(self, memory_store):
        await memory_store.add(make_item("a", 1, confidence=0.4))

        updated = await memory_store.update(
            "a", 2, 0.9, source="scorer", reasoning="rescored", parent_context_keys=["b", "b"]
        )

        assert updated.confidence == 0.9
        assert updated.source == "scorer"
        assert updated.reasoning == "rescored"
        assert updated.parent_context_keys == ["b"]

    @pytest.mark.asyncio
    async def test_update_missing_key_fails(self, memory_store):
        with pytest.raises(MissingKeyError):
            await memory_store.update("ghost", 1)

        assert not memory_store.has("ghost")
        assert memory_store.get_history("ghost") == []

    @pytest.mark.asyncio
    async def test_update_with_out_of_range_confidence_fails(self, memory_store):
        await memory_store.add(make_item("a", 1, confidence=0.5))

        with pytest.raises(InvalidContextItemError):
            await memory_store.update("a", 2, 1.5)

        assert memory_store.get("a").value == 1
        assert len(memory_store.get_history("a")) == 1

    @pytest.mark.asyncio
    async def test_history_follows_mutation_order_with_equal_timestamps(self, memory_store, monkeypatch):
        fixed = datetime(2024, 1, 1, tzinfo=timezone.utc)
        monkeypatch.setattr("domain.context.context_store.utc_now", lambda: fixed)
        await memory_store.add(ContextItem(key="k", value=0, confidence=1.0, source="user", timestamp=fixed))

        for value in range(1, 20):
            await memory_store.update("k", value)

        history = memory_store.get_history("k")
        assert {entry.timestamp for entry in history} == {fixed}
        assert [entry.value for entry in history] == list(range(20))

    @pytest.mark.asyncio
    async def test_update_with_non_json_value_fails(self, memory_store):
        await memory_store.add(make_item("a", 1))

        with pytest.raises(InvalidContextItemError):
            await memory_store.update("a", (1, 2))

        assert memory_store.get("a").value == 1
        assert len(memory_store.get_history("a")) == 1

    @pytest.mark.asyncio
    async def test_earlier_references_stay_valid_after_update(self, memory_store):
        await memory_store.add(make_item("a", {"n": 1}))
        before = memory_store.get("a")

        await memory_store.update("a", {"n": 2})

        assert before.value == {"n": 1}


class TestDeleteAndMerge:
    """Deleting keys and merging batches."""

    @pytest.mark.asyncio
    async def test_delete_keeps_history(self, memory_store):
        await memory_store.add(make_item("a", 1))
        await memory_store.update("a", 2)

        await memory_store.delete("a")

        assert not memory_store.has("a")
        assert [entry.value for entry in memory_store.get_history("a")] == [1, 2]

    @pytest.mark.asyncio
    async def test_delete_missing_key_is_a_noop(self, memory_store):
        await memory_store.delete("ghost")

        assert memory_store.get_all_keys() == set()

    @pytest.mark.asyncio
    async def test_key_can_be_re_added_after_delete(self, memory_store):
        await memory_store.add(make_item("a", 1))
        await memory_store.delete("a")
        await memory_store.add(make_item("a", 3))

        assert memory_store.get("a").value == 3
        assert [entry.value for entry in memory_store.get_history("a")] == [1, 3]

    @pytest.mark.asyncio
    async def test_merge_adds_new_and_updates_existing(self, memory_store):
        await memory_store.add(make_item("a", 1, confidence=0.5, source="user"))

        await memory_store.merge([
            make_item("a", 10, confidence=0.7, source="merger"),
            make_item("b", 20, confidence=0.6, source="merger"),
        ])

        assert memory_store.get("a").value == 10
        assert memory_store.get("a").confidence == 0.7
        # Merge updates value and confidence only
        assert memory_store.get("a").source == "user"
        assert memory_store.get("b").source == "merger"

    @pytest.mark.asyncio
    async def test_merge_with_repeated_key_sees_earlier_effects(self, memory_store):
        await memory_store.merge([make_item("a", 1), make_item("a", 2)])

        assert memory_store.get("a").value == 2
        assert [entry.value for entry in memory_store.get_history("a")] == [1, 2]

    @pytest.mark.asyncio
    async def test_empty_merge_is_a_noop(self, memory_store):
        await memory_store.merge([])

        assert memory_store.get_all_keys() == set()


class TestSnapshots:
    """Snapshot creation and restore."""

    @pytest.mark.asyncio
    async def test_restore_replaces_live_map(self, memory_store):
        await memory_store.add(make_item("a", 1))
        await memory_store.create_snapshot("s1")

        await memory_store.update("a", 2)
        await memory_store.add(make_item("b", 3))

        assert await memory_store.restore_snapshot("s1") is True
        assert memory_store.get_all_keys() == {"a"}
        assert memory_store.get("a").value == 1

    @pytest.mark.asyncio
    async def test_keys_deleted_after_snapshot_reappear(self, memory_store):
        await memory_store.add(make_item("a", 1))
        await memory_store.add(make_item("b", 2))
        await memory_store.create_snapshot("s1")
        await memory_store.delete("b")

        await memory_store.restore_snapshot("s1")

        assert memory_store.get("b").value == 2
        assert memory_store.get_all_keys() == {"a", "b"}

    @pytest.mark.asyncio
    async def test_restore_does_not_rewrite_history(self, memory_store):
        await memory_store.add(make_item("a", 1))
        await memory_store.create_snapshot("s1")
        await memory_store.update("a", 2)

        await memory_store.restore_snapshot("s1")

        assert [entry.value for entry in memory_store.get_history("a")] == [1, 2]

    @pytest.mark.asyncio
    async def test_snapshot_is_isolated_from_later_mutation(self, memory_store):
        await memory_store.add(make_item("a", {"tags": ["x"]}))
        await memory_store.create_snapshot("s1")

        memory_store.get("a").value["tags"].append("y")
        await memory_store.restore_snapshot("s1")

        assert memory_store.get("a").value == {"tags": ["x"]}

    @pytest.mark.asyncio
    async def test_restore_unknown_snapshot_returns_false(self, memory_store):
        await memory_store.add(make_item("a", 1))

        assert await memory_store.restore_snapshot("missing") is False
        assert memory_store.get_all_keys() == {"a"}

    @pytest.mark.asyncio
    async def test_snapshot_id_reuse_overwrites(self, memory_store):
        await memory_store.add(make_item("a", 1))
        await memory_store.create_snapshot("s1")
        await memory_store.update("a", 2)
        await memory_store.create_snapshot("s1")

        await memory_store.update("a", 3)
        await memory_store.restore_snapshot("s1")

        assert memory_store.get("a").value == 2
        assert memory_store.get_snapshot_ids() == ["s1"]

    @pytest.mark.asyncio
    async def test_empty_snapshot_restores_empty_map(self, memory_store):
        await memory_store.create_snapshot("empty")
        await memory_store.add(make_item("a", 1))

        assert await memory_store.restore_snapshot("empty") is True
        assert memory_store.get_all_keys() == set()


class TestViews:
    """Read-only views handed to agents."""

    @pytest.mark.asyncio
    async def test_view_is_live_and_read_only(self, memory_store):
        view = memory_store.view()
        await memory_store.add(make_item("a", 1))

        assert view.has("a")
        assert view.value("a") == 1
        assert view.value("missing", "default") == "default"
        assert not hasattr(view, "add")
        assert not hasattr(view, "update")
        with pytest.raises(AttributeError):
            view.extra = 1

    @pytest.mark.asyncio
    async def test_frozen_view_does_not_see_later_writes(self, memory_store):
        await memory_store.add(make_item("a", 1))
        frozen = ContextView.frozen(memory_store)

        await memory_store.add(make_item("b", 2))
        await memory_store.update("a", 3)

        assert frozen.get_all_keys() == {"a"}
        assert frozen.value("a") == 1
        assert len(frozen.get_history("a")) == 1
