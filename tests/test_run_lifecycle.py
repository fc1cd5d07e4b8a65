import asyncio

import pytest
from asgi_lifespan import LifespanManager
from httpx import ASGITransport, AsyncClient

from tests.fakes import FakeChatClient, FakeProvider, FakeTavilyClient, search_results


async def wait_for_run(app, run_id: str, timeout: float = 5.0) -> None:
    task = app.state.run_tasks.get(run_id)
    if task is not None:
        await asyncio.wait_for(task, timeout=timeout)


@pytest.mark.asyncio
async def test_chat_creates_run_and_streams_events(app_factory):
    app, _, _, _ = app_factory(fake_gemini=FakeProvider(default=["Hello ", "there."]))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json={"message": "Hi"})
            assert res.status_code == 200
            run_id = res.json()["run_id"]
            conversation_id = res.json()["conversation_id"]
            await wait_for_run(app, run_id)

            events = await app.state.db.list_events(run_id)
            event_types = [ev["event_type"] for ev in events]
            assert event_types[0] == "run_started"
            assert event_types[-1] == "archived"
            assert "".join(ev["payload"]["text"] for ev in events if ev["event_type"] == "chunk") == "Hello there."
            complete = next(ev for ev in events if ev["event_type"] == "message_complete")
            assert complete["payload"]["text"] == "Hello there."
            assert complete["payload"]["status"] == "completed"

            res = await client.get(f"/api/run/{run_id}")
            assert res.json()["status"] == "completed"
            assert res.json()["final_answer"] == "Hello there."

            res = await client.get(f"/api/conversations/{conversation_id}/messages")
            messages = res.json()["messages"]
            assert [(m["role"], m["content"]) for m in messages] == [("user", "Hi"), ("assistant", "Hello there.")]
            res = await client.get(f"/api/conversations/{conversation_id}")
            assert res.json()["conversation"]["title"] == "Hi"


@pytest.mark.asyncio
async def test_chat_accepts_legacy_prompt_field_and_mode_alias(app_factory):
    app, _, gemini, _ = app_factory()
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json={"prompt": "Hi", "thinking_mode": "thinking"})
            assert res.status_code == 200
            await wait_for_run(app, res.json()["run_id"])
            run = await app.state.db.get_run_summary(res.json()["run_id"])
            assert run["thinking_mode"] == "think"
            assert gemini.requests[0].thinking_budget == app.state.settings.think_budget


@pytest.mark.asyncio
async def test_chat_validation_errors(client):
    res = await client.post("/api/chat", json={"message": "   "})
    assert res.status_code == 400
    res = await client.post("/api/chat", json={"message": "Hi", "conversation_id": "missing"})
    assert res.status_code == 404
    res = await client.post("/api/chat", json={"message": "Hi", "upload_ids": [999]})
    assert res.status_code == 400


@pytest.mark.asyncio
async def test_follow_up_sends_conversation_history(app_factory):
    gemini = FakeProvider(scripts=[["First reply."], ["Second reply."]])
    app, _, _, _ = app_factory(fake_gemini=gemini)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json={"message": "Question one"})
            conversation_id = res.json()["conversation_id"]
            await wait_for_run(app, res.json()["run_id"])

            res = await client.post(
                "/api/chat", json={"message": "Question two", "conversation_id": conversation_id}
            )
            await wait_for_run(app, res.json()["run_id"])

    contents = gemini.requests[-1].contents
    assert [c["role"] for c in contents] == ["user", "model", "user"]
    assert contents[0]["parts"][0]["text"] == "Question one"
    assert contents[1]["parts"][0]["text"] == "First reply."
    assert contents[2]["parts"][0]["text"] == "Question two"


@pytest.mark.asyncio
async def test_stop_run_sets_status(app_factory):
    gemini = FakeProvider(default=[f"word{i} " for i in range(100)], delay_seconds=0.02)
    app, _, _, _ = app_factory(fake_gemini=gemini)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json={"message": "Stop test"})
            assert res.status_code == 200
            run_id = res.json()["run_id"]
            await asyncio.sleep(0.05)
            stop_res = await client.post(f"/api/run/{run_id}/stop")
            assert stop_res.status_code == 200
            assert stop_res.json()["status"] == "stopping"
            await wait_for_run(app, run_id)

            run = await app.state.db.get_run_summary(run_id)
            assert run["status"] == "stopped"
            assert run["final_answer"]
            assert "word99" not in run["final_answer"]
            events = await app.state.db.list_events(run_id)
            archived = [ev for ev in events if ev["event_type"] == "archived"]
            assert len(archived) == 1
            assert archived[0]["payload"]["stopped"] is True


@pytest.mark.asyncio
async def test_stop_unknown_run_returns_404(client):
    res = await client.post("/api/run/nope/stop")
    assert res.status_code == 404
    res = await client.get("/api/run/nope")
    assert res.status_code == 404


@pytest.mark.asyncio
async def test_run_sources_after_tag_search(app_factory):
    gemini = FakeProvider(scripts=[["Let me check. <SEARCH>python release</SEARCH>"], ["Python 3.13 is out."]])
    tavily = FakeTavilyClient(
        api_key="tv-key",
        search_response=search_results("https://python.test/a", "https://python.test/b", "https://python.test/a"),
    )
    app, _, _, _ = app_factory(fake_gemini=gemini, fake_tavily=tavily)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json={"message": "What is the newest Python?"})
            run_id = res.json()["run_id"]
            await wait_for_run(app, run_id)

            res = await client.get(f"/api/run/{run_id}/sources")
            assert res.status_code == 200
            urls = [s["url"] for s in res.json()["sources"]]
            assert urls == ["https://python.test/a", "https://python.test/b"]

            events = await app.state.db.list_events(run_id)
            complete = next(ev for ev in events if ev["event_type"] == "message_complete")
            assert complete["payload"]["text"].endswith("Python 3.13 is out.")

    assert tavily.search_calls[0]["query"] == "python release"
    assert "python release" in gemini.requests[1].contents[-1]["parts"][0]["text"]


@pytest.mark.asyncio
async def test_instant_mode_uses_instant_endpoint(app_factory):
    instant = FakeChatClient(name="instant", default=["Quick ", "reply."])
    gemini = FakeProvider()
    app, _, _, _ = app_factory(fake_gemini=gemini, fake_instant=instant)
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json={"message": "Hi", "thinking_mode": "instant"})
            run_id = res.json()["run_id"]
            await wait_for_run(app, run_id)
            run = await app.state.db.get_run_summary(run_id)

    assert run["status"] == "completed"
    assert run["final_answer"] == "Quick reply."
    assert gemini.requests == []
    assert instant.text_calls[0][-1] == {"role": "user", "content": "Hi"}


@pytest.mark.asyncio
async def test_instant_mode_failure_marks_run_error(app_factory):
    app, _, _, _ = app_factory(fake_instant=FakeChatClient(name="instant", fail=True))
    async with LifespanManager(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
            res = await client.post("/api/chat", json={"message": "Hi", "thinking_mode": "fast"})
            run_id = res.json()["run_id"]
            await wait_for_run(app, run_id)
            run = await app.state.db.get_run_summary(run_id)
            events = await app.state.db.list_events(run_id)

    assert run["status"] == "error"
    assert run["final_answer"] == "Instant mode service unavailable."
    assert events[-1]["event_type"] == "archived"
    assert events[-1]["payload"]["error"] is True
