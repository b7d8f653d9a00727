"""Unit tests for store.py - the keyed record store."""

import json

import pytest

from deployer.store import RecordStore


class TestRecordStore:
    @pytest.mark.asyncio
    async def test_insert_and_find(self, store):
        await store.insert("instances", {"id": "a", "user_id": "user_1"})
        assert await store.find_first("instances", {"id": "a"}) == {"id": "a", "user_id": "user_1"}
        assert await store.find_first("instances", {"id": "missing"}) is None

    @pytest.mark.asyncio
    async def test_duplicate_id_rejected(self, store):
        await store.insert("tasks", {"id": "t1"})
        with pytest.raises(ValueError, match="Duplicate id"):
            await store.insert("tasks", {"id": "t1"})

    @pytest.mark.asyncio
    async def test_unknown_collection(self, store):
        with pytest.raises(KeyError):
            await store.find_many("widgets")

    @pytest.mark.asyncio
    async def test_returned_records_are_copies(self, store):
        await store.insert("instances", {"id": "a", "tags": ["x"]})
        record = await store.find_first("instances", {"id": "a"})
        record["tags"].append("y")

        assert (await store.find_first("instances", {"id": "a"}))["tags"] == ["x"]

    @pytest.mark.asyncio
    async def test_order_by_is_stable(self, store):
        await store.insert("tasks", {"id": "t1", "created_at": "2026-01-02"})
        await store.insert("tasks", {"id": "t2", "created_at": "2026-01-01"})
        await store.insert("tasks", {"id": "t3", "created_at": "2026-01-01"})

        ordered = await store.find_many("tasks", order_by="created_at")
        assert [r["id"] for r in ordered] == ["t2", "t3", "t1"]

        newest = await store.find_many("tasks", order_by="created_at", descending=True, limit=1)
        assert [r["id"] for r in newest] == ["t1"]

    @pytest.mark.asyncio
    async def test_update_many_is_compare_and_set(self, store):
        await store.insert("tasks", {"id": "t1", "status": "pending"})

        first = await store.update_many(
            "tasks", {"id": "t1", "status": "pending"}, {"status": "processing"}
        )
        second = await store.update_many(
            "tasks", {"id": "t1", "status": "pending"}, {"status": "processing"}
        )

        assert first == 1
        assert second == 0
        record = await store.find_first("tasks", {"id": "t1"})
        assert record["status"] == "processing"
        assert "updated_at" in record

    @pytest.mark.asyncio
    async def test_where_matches_none_values(self, store):
        await store.insert("instances", {"id": "a", "container_id": None})
        await store.insert("instances", {"id": "b", "container_id": "c1"})

        rows = await store.find_many("instances", {"container_id": None})
        assert [r["id"] for r in rows] == ["a"]

    @pytest.mark.asyncio
    async def test_delete_many(self, store):
        await store.insert("instances", {"id": "a", "user_id": "user_1"})
        await store.insert("instances", {"id": "b", "user_id": "user_2"})

        assert await store.delete_many("instances", {"user_id": "user_1"}) == 1
        assert await store.delete_many("instances", {"user_id": "user_1"}) == 0
        assert [r["id"] for r in await store.find_many("instances")] == ["b"]

    @pytest.mark.asyncio
    async def test_persists_to_json_file(self, tmp_path):
        path = tmp_path / "state" / "state.json"
        store = RecordStore(path)
        await store.insert("instances", {"id": "a", "status": "creating"})
        await store.update_many("instances", {"id": "a"}, {"status": "running"})

        on_disk = json.loads(path.read_text())
        assert on_disk["instances"][0]["status"] == "running"
        assert on_disk["tasks"] == []

        reopened = RecordStore(path)
        record = await reopened.find_first("instances", {"id": "a"})
        assert record["status"] == "running"

    @pytest.mark.asyncio
    async def test_stores_sharing_a_file_see_each_others_writes(self, tmp_path):
        path = tmp_path / "state.json"
        first = RecordStore(path)
        second = RecordStore(path)

        await first.insert("instances", {"id": "a"})
        await second.insert("instances", {"id": "b"})
        await first.insert("instances", {"id": "c"})

        on_disk = json.loads(path.read_text())
        assert [r["id"] for r in on_disk["instances"]] == ["a", "b", "c"]
        assert [r["id"] for r in await second.find_many("instances")] == ["a", "b", "c"]

    @pytest.mark.asyncio
    async def test_compare_and_set_across_stores(self, tmp_path):
        path = tmp_path / "state.json"
        first = RecordStore(path)
        second = RecordStore(path)
        await first.insert("tasks", {"id": "t1", "status": "pending"})

        assert await second.update_many("tasks", {"id": "t1", "status": "pending"}, {"status": "processing"}) == 1
        assert await first.update_many("tasks", {"id": "t1", "status": "pending"}, {"status": "processing"}) == 0
        assert path.with_suffix(".json.lock").exists()
