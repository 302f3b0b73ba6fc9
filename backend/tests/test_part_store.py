import sqlite3
from pathlib import Path

import pytest
from sqlalchemy import select, text

from db.part_store import NodeWorkingHistory, WorkingMemoryPartRow, WorkingMemoryStore
from memory.errors import InvalidPart, MissingScope
from memory.schema import DerivedPart, WorkingMemoryPart


def _sqlite_url(db_path: Path) -> str:
    return f"sqlite+aiosqlite:///{db_path}"


async def _store(tmp_path: Path, name: str = "wm.db") -> WorkingMemoryStore:
    store = WorkingMemoryStore(_sqlite_url(tmp_path / name), default_project_id="default_project")
    await store.init_db()
    return store


@pytest.mark.asyncio
async def test_empty_scope_loads_schema_defaults(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    result = await store.load(store.resolve("s1"))
    await store.close()

    assert result.raw_parts == {}
    assert result.scope.project_id == "default_project"
    assert result.snapshot["session"]["session_id"] == "s1"
    assert result.snapshot["messages"] == []


@pytest.mark.asyncio
async def test_fallback_rows_fill_session_gaps_until_promoted(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    fallback = store.resolve(None, "p1", "n1")
    session_scope = store.resolve("s1", "p1", "n1")

    await store.save(fallback, "node_context", {"id": "n1", "label": "Shared"})
    await store.save(fallback, "fetched_context", {"doc": "shared"})

    loaded = await store.load(session_scope)
    assert loaded.snapshot["node_context"]["label"] == "Shared"
    assert loaded.snapshot["fetched_context"] == {"doc": "shared"}

    await store.save(session_scope, "node_context", {"id": "n1", "label": "Mine"})

    promoted = await store.load(session_scope)
    assert promoted.snapshot["node_context"]["label"] == "Mine"
    assert promoted.snapshot["fetched_context"] == {"doc": "shared"}

    shared = await store.load(fallback)
    await store.close()
    assert shared.snapshot["node_context"]["label"] == ""
    assert shared.snapshot["fetched_context"] == {"doc": "shared"}


@pytest.mark.asyncio
async def test_project_structure_writes_three_rows_and_recomposes(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    scope = store.resolve(None, "p1", "n1")
    structure = {
        "project_graph": {
            "nodes": [{"id": "a", "label": "A"}, {"id": "b", "label": "B"}],
            "edges": [{"from": "a", "to": "b"}],
        },
        "elements_graph": {"nodes": [{"id": "e1", "label": "E"}], "edges": []},
    }
    saved = await store.save(scope, WorkingMemoryPart.PROJECT_STRUCTURE, structure)

    async with store.session() as session:
        parts = (
            await session.execute(
                select(WorkingMemoryPartRow.part).where(WorkingMemoryPartRow.project_id == "p1")
            )
        ).scalars().all()
    assert sorted(parts) == ["elements_graph", "project_graph", "project_structure"]

    loaded = await store.load(scope)
    assert loaded.snapshot["project_structure"] == saved

    await store.save(scope, DerivedPart.PROJECT_GRAPH, {"nodes": [{"id": "c"}], "edges": []})
    reloaded = await store.load(scope)
    await store.close()

    assert reloaded.snapshot["project_structure"]["project_graph"]["nodes"] == [
        {"id": "c", "label": "", "type": ""}
    ]
    assert reloaded.snapshot["project_structure"]["elements_graph"] == saved["elements_graph"]
    assert reloaded.raw_parts["project_structure"] == reloaded.snapshot["project_structure"]


@pytest.mark.asyncio
async def test_working_history_is_mirrored_per_node(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.save(store.resolve("s1", "p1", "n1"), "working_history", {"text": "did things"})

    assert await store.get_node_working_history("p1", "n1") == "did things"

    rotated = await store.load(store.resolve("s2", "p1", "n1"))
    await store.close()
    assert rotated.snapshot["working_history"] == "did things"


@pytest.mark.asyncio
async def test_messages_save_trims_to_history_length(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    scope = store.resolve("s1")
    messages = [
        {"role": "user", "content": f"m{i}", "created_at": f"2024-01-01T00:00:{i:02d}Z"}
        for i in range(10)
    ]
    saved = await store.save(scope, "messages", messages, history_length=4)
    loaded = await store.load(scope)
    await store.close()

    assert [m["content"] for m in saved] == ["m6", "m7", "m8", "m9"]
    assert loaded.snapshot["messages"] == saved
    assert loaded.snapshot["last_user_message"] == "m9"


@pytest.mark.asyncio
async def test_session_scope_discovers_project_from_rows(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.save(store.resolve("s1", "p7", "n1"), "config", {"history_length": 5})

    loaded = await store.load(store.resolve("s1", None, "n1"))
    await store.close()
    assert loaded.scope.project_id == "p7"
    assert loaded.snapshot["session"]["project_id"] == "p7"
    assert loaded.snapshot["config"]["history_length"] == 5


@pytest.mark.asyncio
async def test_malformed_payload_degrades_to_default(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    scope = store.resolve("s1")
    await store.save(scope, "fetched_context", {"ok": True})
    async with store.session() as session:
        await session.execute(
            text(
                "INSERT INTO working_memory_parts("
                "session_id, project_id, node_id, part, payload, updated_at"
                ") VALUES ('s1', 'default_project', '', 'config', '{not json', CURRENT_TIMESTAMP)"
            )
        )

    loaded = await store.load(scope)
    await store.close()
    assert loaded.raw_parts["config"] is None
    assert loaded.snapshot["config"]["history_length"] == 20
    assert loaded.snapshot["fetched_context"] == {"ok": True}


@pytest.mark.asyncio
async def test_invalid_part_and_missing_scope_are_rejected(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    with pytest.raises(InvalidPart):
        await store.save(store.resolve("s1"), "bogus", {})
    with pytest.raises(MissingScope):
        store.resolve(None, "p1", None)

    async with store.session() as session:
        count = (await session.execute(select(WorkingMemoryPartRow))).scalars().all()
        history = (await session.execute(select(NodeWorkingHistory))).scalars().all()
    await store.close()
    assert count == []
    assert history == []


@pytest.mark.asyncio
async def test_init_db_migrates_legacy_session_only_table(tmp_path: Path) -> None:
    db_path = tmp_path / "legacy.db"
    conn = sqlite3.connect(db_path)
    try:
        conn.execute(
            "CREATE TABLE working_memory_parts ("
            "session_id TEXT NOT NULL, project_id TEXT, part TEXT NOT NULL, "
            "payload TEXT NOT NULL, updated_at TEXT, "
            "PRIMARY KEY (session_id, part))"
        )
        conn.execute(
            "CREATE INDEX idx_working_memory_parts_project ON working_memory_parts(project_id)"
        )
        conn.executemany(
            "INSERT INTO working_memory_parts VALUES (?, ?, ?, ?, ?)",
            [
                ("s1", "p1", "last_message", '"hello"', "2024-01-01 00:00:00"),
                ("s1", "p1", "config", '{"history_length": 7}', "2024-01-01 00:00:00"),
                ("s2", "", "fetched_context", '{"a": 1}', "2024-01-01 00:00:00"),
            ],
        )
        conn.commit()
    finally:
        conn.close()

    store = WorkingMemoryStore(_sqlite_url(db_path), default_project_id="default_project")
    await store.init_db()

    migrated = await store.load(store.resolve("s1"))
    defaulted = await store.load(store.resolve("s2"))
    stats = await store.get_stats()
    await store.close()

    assert migrated.snapshot["last_user_message"] == "hello"
    assert migrated.snapshot["config"]["history_length"] == 7
    assert defaulted.snapshot["fetched_context"] == {"a": 1}
    assert stats["total_rows"] == 3
    assert stats["part_counts"]["last_user_message"] == 1

    conn = sqlite3.connect(db_path)
    try:
        tables = {
            row[0] for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
        }
    finally:
        conn.close()
    assert "working_memory_parts_legacy" not in tables


@pytest.mark.asyncio
async def test_session_rows_of_another_node_do_not_shadow_fallback(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    await store.save(store.resolve("s1", "p1", "n1"), "node_context", {"id": "n1"})
    await store.save(store.resolve(None, "p1", "n2"), "node_context", {"id": "n2"})
    await store.save(store.resolve("s1"), "config", {"history_length": 6})

    loaded = await store.load(store.resolve("s1", "p1", "n2"))
    own = await store.load(store.resolve("s1", "p1", "n1"))
    await store.close()

    assert loaded.snapshot["session"]["active_node_id"] == "n2"
    assert loaded.snapshot["node_context"]["id"] == "n2"
    assert loaded.snapshot["config"]["history_length"] == 6
    assert own.snapshot["node_context"]["id"] == "n1"


@pytest.mark.asyncio
async def test_session_derived_write_keeps_fallback_sibling_graph(tmp_path: Path) -> None:
    store = await _store(tmp_path)
    fallback = store.resolve(None, "p1", "n1")
    session_scope = store.resolve("s1", "p1", "n1")
    await store.save(
        fallback,
        "project_structure",
        {
            "project_graph": {"nodes": [{"id": "a"}], "edges": []},
            "elements_graph": {"nodes": [{"id": "e1", "label": "E"}], "edges": []},
        },
    )
    before = await store.load(session_scope)

    await store.save(session_scope, "project_graph", {"nodes": [{"id": "b"}], "edges": []})
    after = await store.load(session_scope)
    await store.close()

    assert after.snapshot["project_structure"]["elements_graph"] == (
        before.snapshot["project_structure"]["elements_graph"]
    )
    assert after.snapshot["project_structure"]["elements_graph"]["nodes"][0]["id"] == "e1"
    assert after.snapshot["project_structure"]["project_graph"]["nodes"] == [
        {"id": "b", "label": "", "type": ""}
    ]
    assert after.raw_parts["elements_graph"]["nodes"][0]["id"] == "e1"
