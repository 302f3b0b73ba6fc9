import json
from typing import Any, Dict, List, Optional

import pytest

from memory.composer import compose
from memory.errors import SessionNotFound
from memory.scope import ResolvedScope
from runtime_state import GLOBAL_NODE_KEY, RuntimeState, WorkingMemoryCache, build_key


class _FakeSources:
    def __init__(self) -> None:
        self.sessions: Dict[str, Dict[str, Any]] = {
            "s1": {"id": "s1", "project_id": "p1", "active_node_id": "n1"},
        }
        self.structure: Dict[str, Any] = {
            "nodes": [
                {"id": "n1", "label": "Node 1", "type": "task"},
                {"id": "n2", "label": "Node 2", "type": "task"},
            ],
            "edges": [{"from": "n1", "to": "n2"}],
        }
        self.messages: List[Dict[str, Any]] = []
        self.summary: Optional[Dict[str, Any]] = None
        self.message_calls: List[tuple] = []

    async def fetch_structure_index(self, project_id: str) -> Dict[str, Any]:
        return self.structure

    async def fetch_node(self, project_id: str, node_id: str) -> Optional[Dict[str, Any]]:
        for node in self.structure["nodes"]:
            if node["id"] == node_id:
                return dict(node)
        return None

    async def fetch_recent_messages(
        self, session_id: str, node_id: Optional[str], limit: int
    ) -> List[Dict[str, Any]]:
        self.message_calls.append((session_id, node_id, limit))
        return list(self.messages)

    async def fetch_latest_summary(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.summary

    async def fetch_session(self, session_id: str) -> Optional[Dict[str, Any]]:
        return self.sessions.get(session_id)


def _snapshot(session_id: str, project_id: str, node_id: str) -> Dict[str, Any]:
    return compose({}, ResolvedScope(session_id, project_id, node_id))


def _message(index: int, role: str = "user") -> Dict[str, Any]:
    return {
        "role": role,
        "content": f"m{index}",
        "created_at": f"2024-01-01T00:{index // 60:02d}:{index % 60:02d}Z",
    }


def test_build_key_uses_global_marker_for_missing_node() -> None:
    assert build_key("s1", None) == f"s1::{GLOBAL_NODE_KEY}"
    assert build_key(" s1 ", " n1 ") == "s1::n1"


@pytest.mark.asyncio
async def test_init_composes_snapshot_from_sources() -> None:
    sources = _FakeSources()
    cache = WorkingMemoryCache(sources, message_window=50)

    snapshot = await cache.init("s1", "n1")

    assert snapshot["session"]["session_id"] == "s1"
    assert snapshot["session"]["project_id"] == "p1"
    assert snapshot["session"]["active_node_id"] == "n1"
    assert len(snapshot["project_structure"]["project_graph"]["nodes"]) == 2
    assert len(snapshot["project_structure"]["project_graph"]["edges"]) == 1
    assert snapshot["node_context"]["id"] == "n1"
    assert snapshot["messages"] == []
    assert snapshot["last_user_input"] == ""
    assert sources.message_calls == [("s1", "n1", 50)]
    assert await cache.get("s1", "n1") == snapshot


@pytest.mark.asyncio
async def test_init_uses_active_node_and_latest_summary() -> None:
    sources = _FakeSources()
    sources.summary = {"summary": {"text": "earlier work"}, "created_at": "2024-01-01T00:00:00"}
    sources.messages = [_message(1), _message(2, "assistant")]
    cache = WorkingMemoryCache(sources, message_window=50)

    snapshot = await cache.init("s1")

    assert snapshot["session"]["active_node_id"] == "n1"
    assert snapshot["working_history"] == "earlier work"
    assert snapshot["work_history_summary"]["summary"] == {"text": "earlier work"}
    assert snapshot["last_user_message"] == "m1"


@pytest.mark.asyncio
async def test_init_unknown_session_raises() -> None:
    cache = WorkingMemoryCache(_FakeSources(), message_window=50)
    with pytest.raises(SessionNotFound):
        await cache.init("nope", "n1")
    assert (await cache.status())["entries"] == 0


@pytest.mark.asyncio
async def test_last_user_message_follows_appended_user_message() -> None:
    cache = WorkingMemoryCache(_FakeSources(), message_window=50)
    await cache.init("s1", "n1")

    patched = await cache.update_patch("s1", "n1", {"last_user_input": "hello"})
    assert patched["last_user_input"] == "hello"

    appended = await cache.append_message(
        "s1", "n1", {"role": "user", "content": "hi", "session_id": "s1"}
    )
    assert appended["last_user_message"] == "hi"
    assert appended["last_user_input"] == "hello"
    assert appended["messages"][-1]["content"] == "hi"
    assert appended["messages"][-1]["created_at"]


@pytest.mark.asyncio
async def test_appending_sixty_messages_keeps_newest_fifty() -> None:
    cache = WorkingMemoryCache(message_window=50)
    await cache.register(_snapshot("s1", "p1", "n1"))

    for index in range(60):
        await cache.append_message("s1", "n1", _message(index))

    snapshot = await cache.get("s1", "n1")
    assert len(snapshot["messages"]) == 50
    assert snapshot["messages"][0]["content"] == "m10"
    assert snapshot["messages"][-1]["content"] == "m59"


@pytest.mark.asyncio
async def test_message_window_reads_environment(monkeypatch) -> None:
    monkeypatch.setenv("WORKING_MEMORY_MESSAGE_WINDOW", "7")
    assert WorkingMemoryCache().message_window == 7
    monkeypatch.setenv("WORKING_MEMORY_MESSAGE_WINDOW", "5000")
    assert WorkingMemoryCache().message_window == 200
    monkeypatch.setenv("WORKING_MEMORY_MESSAGE_WINDOW", "junk")
    assert WorkingMemoryCache().message_window == 50


@pytest.mark.asyncio
async def test_indices_stay_consistent_through_updates_and_clears() -> None:
    cache = WorkingMemoryCache(message_window=50)
    await cache.register(_snapshot("s1", "p1", "n1"))
    await cache.register(_snapshot("s1", "p1", "n2"))
    await cache.register(_snapshot("s2", "p2", "n1"))

    assert await cache.update_by_node("n1", {"fetched_context": {"k": 1}}) == 2
    assert (await cache.get("s1", "n2"))["fetched_context"] == {}
    assert (await cache.get("s2", "n1"))["fetched_context"] == {"k": 1}

    assert await cache.clear("s1") == 2
    status = await cache.status()
    assert status["entries"] == 1
    assert status["sessions"] == 1
    assert status["projects"] == 1
    assert status["nodes"] == 1

    assert await cache.clear(None, "n1") == 1
    status = await cache.status()
    assert status == {
        "entries": 0,
        "sessions": 0,
        "nodes": 0,
        "projects": 0,
        "message_window": 50,
    }


@pytest.mark.asyncio
async def test_clear_exact_scope_and_everything() -> None:
    cache = WorkingMemoryCache(message_window=50)
    await cache.register(_snapshot("s1", "p1", "n1"))
    await cache.register(_snapshot("s1", "p1", ""))
    await cache.register(_snapshot("s2", "p1", "n1"))

    assert await cache.clear("s1", "n1") == 1
    assert await cache.get("s1", "n1") is None
    assert await cache.get("s1", None) is not None
    assert await cache.clear_project("p1") == 2
    await cache.register(_snapshot("s3", "p3", "n3"))
    assert await cache.clear() == 1


@pytest.mark.asyncio
async def test_update_patch_miss_returns_none() -> None:
    cache = WorkingMemoryCache(message_window=50)
    assert await cache.update_patch("s1", "n1", {"last_user_input": "x"}) is None
    assert await cache.update_patch("", "n1", {"last_user_input": "x"}) is None
    assert await cache.get(None, "n1") is None
    assert await cache.append_message("s1", "n1", {"content": "x"}) is None


@pytest.mark.asyncio
async def test_readers_receive_copies() -> None:
    cache = WorkingMemoryCache(message_window=50)
    await cache.register(_snapshot("s1", "p1", "n1"))

    snapshot = await cache.get("s1", "n1")
    snapshot["messages"].append({"content": "leak"})
    snapshot["fetched_context"]["leak"] = True

    fresh = await cache.get("s1", "n1")
    assert fresh["messages"] == []
    assert fresh["fetched_context"] == {}


@pytest.mark.asyncio
async def test_patch_semantics() -> None:
    cache = WorkingMemoryCache(message_window=50)
    await cache.register(_snapshot("s1", "p1", "n1"))

    await cache.update_patch("s1", "n1", {"context_data": {"a": 1}})
    merged = await cache.update_patch("s1", "n1", {"fetched_context": {"b": 2}})
    assert merged["fetched_context"] == {"a": 1, "b": 2}

    replaced = await cache.update_patch(
        "s1", "n1", {"clear_fetched_context": True, "fetched_context": {"c": 3}}
    )
    assert replaced["fetched_context"] == {"c": 3}

    seen: List[Dict[str, Any]] = []

    def _callable_patch(current: Dict[str, Any]) -> Dict[str, Any]:
        seen.append(current)
        return {"config": {"history_length": 5}, "working_history": "notes"}

    patched = await cache.update_patch("s1", "n1", _callable_patch)
    assert seen and seen[0]["fetched_context"] == {"c": 3}
    assert patched["config"]["history_length"] == 5
    assert patched["config"]["include_context"] is True
    assert patched["working_history"] == "notes"

    await cache.update_patch(
        "s1", "n1", {"recent_messages": [_message(2), _message(1)], "last_user_input": "typed"}
    )
    cleared = await cache.update_patch(
        "s1", "n1", {"clear_messages": True, "reset_last_user_input": True}
    )
    assert cleared["messages"] == []
    assert cleared["last_user_message"] == ""
    assert cleared["last_user_input"] == ""
    assert cleared["working_history"] == "notes"


@pytest.mark.asyncio
async def test_structure_propagates_to_every_project_entry() -> None:
    sources = _FakeSources()
    cache = WorkingMemoryCache(sources, message_window=50)
    await cache.register(_snapshot("s1", "p1", "n1"))
    await cache.register(_snapshot("s2", "p1", "n2"))
    await cache.register(_snapshot("s3", "p2", "n1"))

    structure = await cache.refresh_structure_for_project("p1")

    assert len(structure["project_graph"]["nodes"]) == 2
    for session_id, node_id in (("s1", "n1"), ("s2", "n2")):
        snapshot = await cache.get(session_id, node_id)
        assert snapshot["project_structure"] == structure
    untouched = await cache.get("s3", "n1")
    assert untouched["project_structure"]["project_graph"]["nodes"] == []
    assert await cache.refresh_structure_for_project("missing") is None


@pytest.mark.asyncio
async def test_append_message_to_session_reaches_every_node() -> None:
    cache = WorkingMemoryCache(message_window=50)
    await cache.register(_snapshot("s1", "p1", "n1"))
    await cache.register(_snapshot("s1", "p1", "n2"))

    assert await cache.append_message_to_session("s1", {"role": "assistant", "content": "ok"}) == 2
    for node_id in ("n1", "n2"):
        snapshot = await cache.get("s1", node_id)
        assert snapshot["messages"][-1]["content"] == "ok"
        assert snapshot["last_user_message"] == ""


@pytest.mark.asyncio
async def test_serialize_and_runtime_lifecycle() -> None:
    runtime = RuntimeState(message_window=50)
    await runtime.ensure_started(_FakeSources())
    assert runtime.started is True

    await runtime.working_memory.init("s1", "n1")
    payload = json.loads(await runtime.working_memory.serialize("s1", "n1"))
    assert payload["session"]["session_id"] == "s1"
    assert await runtime.working_memory.serialize("s9", "n1") is None

    await runtime.shutdown()
    assert runtime.started is False
    assert (await runtime.working_memory.status())["entries"] == 0


@pytest.mark.asyncio
async def test_replacing_messages_rederives_last_user_message() -> None:
    cache = WorkingMemoryCache(message_window=50)
    await cache.register(_snapshot("s1", "p1", "n1"))

    replaced = await cache.update_patch(
        "s1", "n1", {"messages": [{"role": "user", "content": "x"}]}
    )
    assert replaced["last_user_message"] == "x"

    appended = await cache.update_patch(
        "s1",
        "n1",
        {"append_messages": [{"role": "user", "content": " y "}, {"role": "assistant", "content": "ok"}]},
    )
    assert appended["last_user_message"] == "y"

    explicit = await cache.update_patch(
        "s1", "n1", {"recent_messages": [_message(1)], "last_user_message": "typed"}
    )
    assert explicit["last_user_message"] == "typed"

    assistant_only = await cache.update_patch(
        "s1", "n1", {"recent_messages": [_message(1, "assistant")]}
    )
    assert assistant_only["last_user_message"] == ""


@pytest.mark.asyncio
async def test_appended_empty_user_message_does_not_fall_back() -> None:
    cache = WorkingMemoryCache(message_window=50)
    await cache.register(_snapshot("s1", "p1", "n1"))

    await cache.append_message("s1", "n1", {"role": "user", "content": "earlier"})
    latest = await cache.append_message("s1", "n1", {"role": "user", "content": ""})

    assert [m["content"] for m in latest["messages"]] == ["earlier", ""]
    assert latest["last_user_message"] == ""
