from pathlib import Path

import pytest

from bubble.db import Database


@pytest.mark.asyncio
async def test_db_init_creates_tables(tmp_path: Path):
    db = Database(str(tmp_path / "schema.db"))
    await db.init()
    rows = await db.fetchall("SELECT name FROM sqlite_master WHERE type='table'")
    tables = {row["name"] for row in rows}
    expected = {"conversations", "runs", "messages", "events", "configs", "uploads", "memory_items"}
    assert expected.issubset(tables)


@pytest.mark.asyncio
async def test_db_init_is_idempotent(tmp_path: Path):
    db = Database(str(tmp_path / "twice.db"))
    await db.init()
    convo = await db.create_conversation(title="Keep me")
    await db.init()
    assert (await db.get_conversation(convo["id"]))["title"] == "Keep me"


@pytest.mark.asyncio
async def test_history_for_returns_latest_messages_oldest_first(tmp_path: Path):
    db = Database(str(tmp_path / "history.db"))
    await db.init()
    convo = await db.create_conversation()
    for idx in range(5):
        role = "user" if idx % 2 == 0 else "assistant"
        await db.add_message("run-1", convo["id"], role, f"m{idx}")

    history = await db.history_for(convo["id"], limit=3)

    assert history == [
        {"sender": "user", "text": "m2"},
        {"sender": "ai", "text": "m3"},
        {"sender": "user", "text": "m4"},
    ]


@pytest.mark.asyncio
async def test_run_lifecycle_and_sources(tmp_path: Path):
    db = Database(str(tmp_path / "runs.db"))
    await db.init()
    convo = await db.create_conversation()
    await db.insert_run("run-1", convo["id"], "question", "gemini-2.5-flash", "think")
    summary = await db.get_run_summary("run-1")
    assert summary["status"] == "running"
    assert summary["thinking_mode"] == "think"

    await db.add_message("run-1", convo["id"], "assistant", "answer", [{"url": "https://x.test", "title": "X"}])
    await db.finalize_run("run-1", "answer", "completed")

    summary = await db.get_run_summary("run-1")
    assert summary["final_answer"] == "answer"
    assert summary["status"] == "completed"
    assert await db.get_run_sources("run-1") == [{"url": "https://x.test", "title": "X"}]


@pytest.mark.asyncio
async def test_event_sequence_is_per_run(tmp_path: Path):
    db = Database(str(tmp_path / "events.db"))
    await db.init()
    first = await db.add_event("run-a", "run_started", {})
    second = await db.add_event("run-a", "chunk", {"text": "hi"})
    other = await db.add_event("run-b", "run_started", {})
    assert (first["seq"], second["seq"], other["seq"]) == (1, 2, 1)
    events = await db.list_events("run-a", after_seq=1)
    assert [e["event_type"] for e in events] == ["chunk"]


@pytest.mark.asyncio
async def test_delete_conversation_removes_runs_and_messages(tmp_path: Path):
    db = Database(str(tmp_path / "delete.db"))
    await db.init()
    convo = await db.create_conversation()
    await db.insert_run("run-1", convo["id"], "q", None, "normal")
    await db.add_message("run-1", convo["id"], "user", "q")
    await db.add_event("run-1", "run_started", {})

    await db.delete_conversation(convo["id"])

    assert await db.get_conversation(convo["id"]) is None
    assert await db.get_run_summary("run-1") is None
    assert await db.list_messages(convo["id"]) == []
    assert await db.list_events("run-1") == []
