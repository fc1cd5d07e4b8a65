import argparse
import json
import os
import sys
from typing import Any, Dict, Iterable, List, Optional

import httpx


DEFAULT_API_BASE = "http://127.0.0.1:8000"
THINKING_MODES = ("instant", "normal", "think", "deep")


def _join_url(base: str, path: str) -> str:
    return base.rstrip("/") + path


def resolve_base_url(base_url: Optional[str]) -> str:
    if base_url:
        return base_url.rstrip("/")
    port = os.getenv("PORT", "").strip()
    if port.isdigit():
        return f"http://127.0.0.1:{port}"
    return DEFAULT_API_BASE


def condense_text(value: str, limit: int = 160) -> str:
    compact = " ".join(value.split())
    if len(compact) <= limit:
        return compact
    return compact[: max(0, limit - 3)] + "..."


def iter_sse_events(lines: Iterable[str]) -> Iterable[Dict[str, Any]]:
    data_lines: List[str] = []
    for raw_line in lines:
        line = (raw_line or "").strip()
        if not line:
            if data_lines:
                joined = "\n".join(data_lines)
                data_lines.clear()
                try:
                    yield json.loads(joined)
                except json.JSONDecodeError:
                    continue
            continue
        if line.startswith("data:"):
            data_lines.append(line[5:].lstrip())
    if data_lines:
        try:
            yield json.loads("\n".join(data_lines))
        except json.JSONDecodeError:
            return


def format_event(event: Dict[str, Any], view: str = "human") -> Optional[str]:
    """Render one run event for the terminal; ``None`` means nothing to print."""
    event_type = event.get("event_type") or ""
    payload = event.get("payload") or {}
    if view == "debug":
        return f"[{event.get('seq')}] {event_type}: {condense_text(json.dumps(payload), 200)}"
    if event_type == "chunk":
        return None
    if event_type == "notice":
        return condense_text(payload.get("text") or "")
    if event_type == "search_status":
        queries = payload.get("queries") or []
        return "Searching: " + ", ".join(queries) if queries else "Searching the web..."
    if event_type == "message_complete":
        lines = [payload.get("text") or ""]
        sources = payload.get("sources") or []
        if sources:
            lines.append("")
            lines.append("Sources:")
            lines.extend(f"- {s.get('title') or s.get('url')} ({s.get('url')})" for s in sources)
        return "\n".join(lines)
    if event_type == "archived":
        return f"Run finished ({payload.get('status') or 'unknown'})."
    return None


def safe_print(text: str) -> None:
    try:
        print(text)
    except OSError:
        print(text.encode("ascii", "backslashreplace").decode("ascii"))


def follow_run(client: httpx.Client, base: str, run_id: str, view: str) -> int:
    with client.stream("GET", _join_url(base, f"/runs/{run_id}/events")) as response:
        response.raise_for_status()
        for event in iter_sse_events(response.iter_lines()):
            line = format_event(event, view=view)
            if line:
                safe_print(line)
            if event.get("event_type") == "archived":
                status = (event.get("payload") or {}).get("status")
                return 0 if status in ("completed", "stopped") else 1
    return 1


def run_chat(args: argparse.Namespace) -> int:
    base = resolve_base_url(args.base_url)
    message = " ".join(args.message).strip()
    if not message:
        print("Message is required.", file=sys.stderr)
        return 1
    payload: Dict[str, Any] = {"message": message, "thinking_mode": args.mode}
    if args.conversation:
        payload["conversation_id"] = args.conversation
    if args.model:
        payload["model"] = args.model
    with httpx.Client(timeout=httpx.Timeout(10.0, read=None)) as client:
        resp = client.post(_join_url(base, "/api/chat"), json=payload)
        if resp.status_code >= 400:
            print(f"Failed to start chat: HTTP {resp.status_code} {resp.text}", file=sys.stderr)
            return 1
        data = resp.json()
        safe_print(f"Run {data['run_id']} in conversation {data['conversation_id']}")
        return follow_run(client, base, data["run_id"], args.view)


def run_watch(args: argparse.Namespace) -> int:
    base = resolve_base_url(args.base_url)
    with httpx.Client(timeout=httpx.Timeout(10.0, read=None)) as client:
        return follow_run(client, base, args.run_id, args.view)


def run_stop(args: argparse.Namespace) -> int:
    base = resolve_base_url(args.base_url)
    with httpx.Client() as client:
        resp = client.post(_join_url(base, f"/api/run/{args.run_id}/stop"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to stop run: HTTP {resp.status_code}", file=sys.stderr)
            return 1
        safe_print(f"Run {args.run_id}: {resp.json().get('status')}")
    return 0


def run_conversations(args: argparse.Namespace) -> int:
    base = resolve_base_url(args.base_url)
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/conversations"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list conversations: HTTP {resp.status_code}", file=sys.stderr)
            return 1
        conversations = resp.json().get("conversations") or []
    if not conversations:
        safe_print("No conversations.")
    for convo in conversations:
        safe_print(f"{convo['id']}  {convo.get('updated_at') or ''}  {condense_text(convo.get('title') or '', 60)}")
    return 0


def run_memory_list(args: argparse.Namespace) -> int:
    base = resolve_base_url(args.base_url)
    params = {}
    if args.query:
        params["q"] = args.query
    if args.kind:
        params["kind"] = args.kind
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/api/memory"), params=params, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to list memory: HTTP {resp.status_code}", file=sys.stderr)
            return 1
        items = resp.json().get("items") or []
    for item in items:
        safe_print(f"#{item['id']} [{item['kind']}] {item.get('title') or ''}: {condense_text(item['content'], 100)}")
    return 0


def run_memory_add(args: argparse.Namespace) -> int:
    base = resolve_base_url(args.base_url)
    payload = {"kind": args.kind, "title": args.title or "", "content": args.content, "tags": args.tag or []}
    with httpx.Client() as client:
        resp = client.post(_join_url(base, "/api/memory"), json=payload, timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to save memory: HTTP {resp.status_code}", file=sys.stderr)
            return 1
        safe_print(f"Saved memory #{resp.json().get('id')}")
    return 0


def run_settings(args: argparse.Namespace) -> int:
    base = resolve_base_url(args.base_url)
    with httpx.Client() as client:
        resp = client.get(_join_url(base, "/settings"), timeout=10)
        if resp.status_code >= 400:
            print(f"Failed to fetch settings: HTTP {resp.status_code}", file=sys.stderr)
            return 1
        safe_print(json.dumps(resp.json().get("settings") or {}, indent=2))
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Bubble chat CLI")
    parser.add_argument("--base-url", default=None, help="API base URL")
    parser.add_argument("--view", default="human", choices=["human", "debug"], help="Event output view")
    subparsers = parser.add_subparsers(dest="command")

    chat = subparsers.add_parser("chat", help="Send a message and stream the reply")
    chat.add_argument("message", nargs="*", help="Message text")
    chat.add_argument("--mode", default="normal", choices=THINKING_MODES, help="Thinking mode")
    chat.add_argument("--model", help="Model id (defaults to the server's default model)")
    chat.add_argument("--conversation", help="Continue an existing conversation")

    watch = subparsers.add_parser("watch", help="Follow the events of a run")
    watch.add_argument("run_id")

    stop = subparsers.add_parser("stop", help="Stop a running generation")
    stop.add_argument("run_id")

    subparsers.add_parser("conversations", help="List conversations")

    memory = subparsers.add_parser("memory", help="Saved memory")
    memory_sub = memory.add_subparsers(dest="memory_cmd")
    mem_list = memory_sub.add_parser("list", help="List or search memory items")
    mem_list.add_argument("--query", help="Full-text filter")
    mem_list.add_argument("--kind", help="Limit to one category")
    mem_add = memory_sub.add_parser("add", help="Save a memory item")
    mem_add.add_argument("content")
    mem_add.add_argument("--kind", default="custom")
    mem_add.add_argument("--title")
    mem_add.add_argument("--tag", action="append")

    subparsers.add_parser("settings", help="Show current (masked) settings")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    parser = build_parser()
    args = parser.parse_args(argv)
    handlers = {
        "chat": run_chat,
        "watch": run_watch,
        "stop": run_stop,
        "conversations": run_conversations,
        "settings": run_settings,
    }
    try:
        if args.command in handlers:
            return handlers[args.command](args)
        if args.command == "memory" and args.memory_cmd == "list":
            return run_memory_list(args)
        if args.command == "memory" and args.memory_cmd == "add":
            return run_memory_add(args)
    except KeyboardInterrupt:
        print("Stopped.")
        return 130
    except httpx.HTTPError as exc:
        print(f"HTTP error: {exc}", file=sys.stderr)
        return 1
    parser.print_help()
    return 1


if __name__ == "__main__":
    sys.exit(main())
