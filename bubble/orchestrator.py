import asyncio
import logging
import re
import uuid
from typing import Dict, List, Optional

from .agent import AutonomousAgent
from .attachments import attachment_from_upload
from .channel import ChannelEvent, OutputChannel
from .config import AppSettings
from .db import Database
from .errors import InstantModeUnavailable
from .schemas import AgentInput, Attachment, HistoryMessage, ThinkingMode
from .search import dedupe_sources


logger = logging.getLogger("uvicorn.error")

_MARKER_QUERY_RE = re.compile(r"<SEARCH>([\s\S]*?)</SEARCH>")


def new_run_id() -> str:
    return str(uuid.uuid4())


class EventBus:
    """In-memory fan-out for SSE plus persisted events."""

    def __init__(self, db: Database):
        self.db = db
        self.subscribers: Dict[str, List[asyncio.Queue]] = {}
        self.global_subscribers: List[asyncio.Queue] = []
        self.lock = asyncio.Lock()
        self.run_conversations: Dict[str, str] = {}

    def register_run(self, run_id: str, conversation_id: Optional[str]) -> None:
        if run_id and conversation_id:
            self.run_conversations[run_id] = conversation_id

    async def emit(self, run_id: str, event_type: str, payload: dict) -> dict:
        safe_payload = dict(payload or {})
        safe_payload.setdefault("run_id", run_id)
        if "conversation_id" not in safe_payload and run_id in self.run_conversations:
            safe_payload["conversation_id"] = self.run_conversations[run_id]
        stored = await self.db.add_event(run_id, event_type, safe_payload)
        async with self.lock:
            queues = list(self.subscribers.get(run_id, []))
            global_queues = list(self.global_subscribers)
        for q in queues:
            await q.put(stored)
        for q in global_queues:
            await q.put(stored)
        return stored

    async def subscribe(self, run_id: str) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.subscribers.setdefault(run_id, []).append(queue)
        return queue

    async def subscribe_global(self) -> asyncio.Queue:
        queue: asyncio.Queue = asyncio.Queue()
        async with self.lock:
            self.global_subscribers.append(queue)
        return queue

    async def unsubscribe(self, run_id: str, queue: asyncio.Queue) -> None:
        async with self.lock:
            queues = self.subscribers.get(run_id, [])
            if queue in queues:
                queues.remove(queue)
            if not queues:
                self.subscribers.pop(run_id, None)

    async def unsubscribe_global(self, queue: asyncio.Queue) -> None:
        async with self.lock:
            if queue in self.global_subscribers:
                self.global_subscribers.remove(queue)


async def forward_channel(channel: OutputChannel, bus: EventBus, run_id: str) -> None:
    """Republish channel output as run events until the channel closes."""
    async for event in channel:
        await bus.emit(run_id, *channel_event_to_bus(event))


def channel_event_to_bus(event: ChannelEvent):
    if event.kind == "notice":
        return "notice", {"text": event.text}
    if event.kind == "marker":
        queries = [q.strip() for q in _MARKER_QUERY_RE.findall(event.text)]
        return "search_status", {"queries": queries, "marker": event.text}
    return "chunk", {"text": event.text}


async def load_attachments(db: Database, upload_ids: List[int]) -> List[Attachment]:
    attachments: List[Attachment] = []
    for upload_id in upload_ids:
        record = await db.get_upload(upload_id)
        if not record:
            continue
        try:
            attachments.append(attachment_from_upload(record))
        except OSError as exc:
            logger.warning("Upload %s unreadable: %s", upload_id, exc)
    return attachments


async def run_chat(
    *,
    run_id: str,
    conversation_id: str,
    message: str,
    model: Optional[str],
    thinking_mode: ThinkingMode,
    project_id: Optional[str],
    upload_ids: List[int],
    settings: AppSettings,
    db: Database,
    bus: EventBus,
    agent: AutonomousAgent,
    stop_event: asyncio.Event,
) -> None:
    await bus.emit(run_id, "run_started", {"thinking_mode": thinking_mode, "model": model})
    history = [HistoryMessage(**item) for item in await db.history_for(conversation_id, settings.history_limit)]
    agent_input = AgentInput(
        prompt=message,
        attachments=await load_attachments(db, upload_ids),
        api_key=settings.gemini_api_key,
        project_id=project_id or "",
        chat_id=conversation_id,
        history=history,
        model=model,
        thinking_mode=thinking_mode,
        profile=settings.profile,
    )

    channel = OutputChannel()
    pump = asyncio.create_task(forward_channel(channel, bus, run_id))
    status = "completed"
    grounding = None
    try:
        result = await agent.run(agent_input, channel, stop_event)
        text = result.text
        grounding = result.messages[-1].grounding_metadata if result.messages else None
    except InstantModeUnavailable as exc:
        text = str(exc)
        status = "error"
    finally:
        await channel.close()
        await pump

    if status == "completed" and stop_event.is_set():
        status = "stopped"
    grounding_payload = [g.model_dump() for g in grounding] if grounding else None
    await db.add_message(run_id, conversation_id, "assistant", text, grounding_payload)
    await db.finalize_run(run_id, text, status)
    await bus.emit(
        run_id,
        "message_complete",
        {"text": text, "sources": dedupe_sources(grounding or []), "status": status},
    )
    archive_payload = {"run_id": run_id, "status": status}
    if status == "stopped":
        archive_payload["stopped"] = True
    if status == "error":
        archive_payload["error"] = True
    await bus.emit(run_id, "archived", archive_payload)
