import json

import httpx
import respx

import bubble_cli


def test_iter_sse_events_parses_frames_and_skips_garbage():
    lines = [
        'data: {"seq": 1, "event_type": "run_started"}',
        "",
        "data: not json",
        "",
        ": keepalive",
        'data: {"seq": 2, "event_type": "archived"}',
    ]
    events = list(bubble_cli.iter_sse_events(lines))
    assert [e["seq"] for e in events] == [1, 2]


def test_format_event_human_view():
    assert bubble_cli.format_event({"event_type": "chunk", "payload": {"text": "x"}}) is None
    assert bubble_cli.format_event({"event_type": "search_status", "payload": {"queries": ["a", "b"]}}) == "Searching: a, b"
    rendered = bubble_cli.format_event(
        {
            "event_type": "message_complete",
            "payload": {"text": "Answer", "sources": [{"url": "https://a.test", "title": "A"}]},
        }
    )
    assert rendered == "Answer\n\nSources:\n- A (https://a.test)"
    debug = bubble_cli.format_event({"seq": 3, "event_type": "chunk", "payload": {"text": "x"}}, view="debug")
    assert debug.startswith("[3] chunk:")


def test_chat_command_posts_and_follows_run(capsys):
    events = [
        {"seq": 1, "event_type": "run_started", "payload": {}},
        {"seq": 2, "event_type": "message_complete", "payload": {"text": "Hello!", "sources": []}},
        {"seq": 3, "event_type": "archived", "payload": {"status": "completed"}},
    ]
    body = "".join(f"data: {json.dumps(ev)}\n\n" for ev in events)
    with respx.mock(assert_all_called=True) as respx_mock:
        chat_route = respx_mock.post("http://bubble.test/api/chat").mock(
            return_value=httpx.Response(200, json={"run_id": "r1", "conversation_id": "c1"})
        )
        respx_mock.get("http://bubble.test/runs/r1/events").mock(return_value=httpx.Response(200, text=body))
        code = bubble_cli.main(["--base-url", "http://bubble.test", "chat", "--mode", "think", "Hi", "there"])

    assert code == 0
    sent = json.loads(chat_route.calls[0].request.content)
    assert sent == {"message": "Hi there", "thinking_mode": "think"}
    out = capsys.readouterr().out
    assert "Hello!" in out
    assert "Run finished (completed)." in out


def test_stop_command_reports_http_failure(capsys):
    with respx.mock(assert_all_called=True) as respx_mock:
        respx_mock.post("http://bubble.test/api/run/r9/stop").mock(return_value=httpx.Response(404))
        code = bubble_cli.main(["--base-url", "http://bubble.test", "stop", "r9"])
    assert code == 1
    assert "HTTP 404" in capsys.readouterr().err
