"""Tests for the in-process realtime store."""

import asyncio

import pytest

from anchorwatch.errors import RemoteUnavailableError
from anchorwatch.remote.base import set_at
from anchorwatch.remote.memory import InMemoryDatabase, InMemoryStore


class TestTree:
    def test_set_at_prunes_empty_objects(self):
        tree = set_at(None, ["a", "b"], 1)
        assert tree == {"a": {"b": 1}}
        assert set_at(tree, ["a", "b"], None) is None

    def test_set_at_prunes_nested_nones(self):
        assert set_at(None, ["a"], {"b": None, "c": {}}) is None


class TestInMemoryDatabase:
    def test_nested_get_set(self):
        db = InMemoryDatabase()
        db.set("sessions/A", {"x": 1, "y": {"z": 2}})
        assert db.get("sessions/A/y/z") == 2
        assert db.get("sessions/B") is None

    def test_update_with_nested_keys(self):
        db = InMemoryDatabase()
        db.set("sessions/A", {"x": 1})
        db.update("sessions/A", {"devices/u1": {"role": "secondary"}, "x": None})
        assert db.get("sessions/A") == {"devices": {"u1": {"role": "secondary"}}}

    def test_reads_are_copies(self):
        db = InMemoryDatabase()
        db.set("a", {"b": 1})
        value = db.get("a")
        value["b"] = 2
        assert db.get("a/b") == 1

    def test_new_uids_are_unique(self):
        db = InMemoryDatabase()
        assert db.new_uid() != db.new_uid()


class TestInMemoryStore:
    @pytest.mark.asyncio
    async def test_anonymous_identity_per_client(self):
        db = InMemoryDatabase()
        a, b = InMemoryStore(db), InMemoryStore(db)
        uid_a = await a.ensure_authenticated()
        assert await a.ensure_authenticated() == uid_a
        assert await b.ensure_authenticated() != uid_a

    @pytest.mark.asyncio
    async def test_watch_yields_current_then_changes(self):
        db = InMemoryDatabase()
        store = InMemoryStore(db)
        values = store.watch("sessions/A")

        assert await values.__anext__() is None
        await store.write("sessions/A", {"isActive": True})
        assert await asyncio.wait_for(values.__anext__(), 1) == {"isActive": True}
        await store.update("sessions/A", {"monitoringActive": True})
        assert await asyncio.wait_for(values.__anext__(), 1) == {
            "isActive": True,
            "monitoringActive": True,
        }
        await store.remove("sessions/A")
        assert await asyncio.wait_for(values.__anext__(), 1) is None

        await values.aclose()
        assert db.watcher_count("sessions/A") == 0

    @pytest.mark.asyncio
    async def test_unrelated_change_not_delivered(self):
        db = InMemoryDatabase()
        store = InMemoryStore(db)
        values = store.watch("sessions/A/alarm")
        assert await values.__anext__() is None

        await store.write("sessions/A/anchor", {"lat": 1})
        await store.write("sessions/A/alarm", {"id": "x"})
        assert await asyncio.wait_for(values.__anext__(), 1) == {"id": "x"}
        await values.aclose()

    @pytest.mark.asyncio
    async def test_injected_failures(self):
        store = InMemoryStore(InMemoryDatabase())
        store.inject_failure(RemoteUnavailableError("down"), count=2, operations={"write"})

        assert await store.read("a") is None
        for _ in range(2):
            with pytest.raises(RemoteUnavailableError):
                await store.write("a", 1)
        await store.write("a", 1)
        assert await store.read("a") == 1
        assert ("write", "a") in store.operations
