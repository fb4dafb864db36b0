"""Unit tests for the session stores."""

import json

import pytest

from weaver.infrastructure.persistence.file_session_store import (
    FileSessionStore,
    InMemorySessionStore,
)


class TestFileSessionStore:
    @pytest.mark.asyncio
    async def test_save_and_load(self, tmp_path):
        store = FileSessionStore(work_dir=str(tmp_path))
        data = {"session_id": "s1", "resources": [{"state": "Analyzed"}]}

        await store.save_session("s1", data)

        assert await store.load_session("s1") == data
        on_disk = json.loads((tmp_path / "sessions" / "s1.json").read_text())
        assert on_disk == data

    @pytest.mark.asyncio
    async def test_missing_session(self, tmp_path):
        store = FileSessionStore(work_dir=str(tmp_path))
        assert await store.load_session("ghost") is None

    @pytest.mark.asyncio
    async def test_overwrite_leaves_no_temp_files(self, tmp_path):
        store = FileSessionStore(work_dir=str(tmp_path))

        await store.save_session("s1", {"version": 1})
        await store.save_session("s1", {"version": 2})

        assert await store.load_session("s1") == {"version": 2}
        assert sorted(p.name for p in (tmp_path / "sessions").iterdir()) == ["s1.json"]

    @pytest.mark.asyncio
    async def test_list_sessions(self, tmp_path):
        store = FileSessionStore(work_dir=str(tmp_path))
        await store.save_session("b", {})
        await store.save_session("a", {})

        assert await store.list_sessions() == ["a", "b"]


@pytest.mark.asyncio
async def test_in_memory_store_copies():
    store = InMemorySessionStore()
    data = {"resources": []}

    await store.save_session("s1", data)
    data["resources"].append("late")
    loaded = await store.load_session("s1")
    loaded["resources"].append("tampered")

    assert await store.load_session("s1") == {"resources": []}
    assert await store.list_sessions() == ["s1"]
