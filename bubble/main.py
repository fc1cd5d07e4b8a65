import asyncio
import json
import logging
import uuid
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Dict, Optional

from fastapi import APIRouter, Body, Depends, FastAPI, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import FileResponse, StreamingResponse

from .agent import AutonomousAgent
from .attachments import TEXT_EXTENSIONS
from .config import CONFIG_PATH, SECRET_MASK, AppSettings, load_settings, save_settings
from .db import Database
from .llm import GeminiClient, OpenAICompatClient
from .memory import MemoryStore
from .orchestrator import EventBus, new_run_id, run_chat
from .router import SemanticRouter
from .schemas import StartChatRequest
from .search import SearchPipeline, TavilyClient, dedupe_sources


logger = logging.getLogger("uvicorn.error")

IMAGE_MIMES = {"image/png", "image/jpeg", "image/webp", "image/gif"}
DOCUMENT_MIMES = {"application/pdf", "application/json"}


def get_settings(request: Request) -> AppSettings:
    return request.app.state.settings


def get_db(request: Request) -> Database:
    return request.app.state.db


def get_event_bus(request: Request) -> EventBus:
    return request.app.state.bus


def get_agent(request: Request) -> AutonomousAgent:
    return request.app.state.agent


def get_upload_dir(request: Request) -> Path:
    return request.app.state.upload_dir


def get_max_upload_bytes(request: Request) -> int:
    return request.app.state.max_upload_bytes


def get_run_tasks(request: Request) -> Dict[str, asyncio.Task]:
    return request.app.state.run_tasks


def get_run_stop_events(request: Request) -> Dict[str, asyncio.Event]:
    return request.app.state.run_stop_events


def get_config_path(request: Request) -> Path:
    return request.app.state.config_path


def sse_format(event: dict) -> str:
    return f"data: {json.dumps(event)}\n\n"


def validate_upload(file: UploadFile) -> None:
    if not file.filename:
        raise HTTPException(status_code=400, detail="Filename required.")
    raw_name = file.filename
    safe_name = Path(raw_name).name
    if safe_name != raw_name or safe_name in (".", ".."):
        raise HTTPException(status_code=400, detail="Invalid filename.")
    mime = file.content_type or ""
    if mime in IMAGE_MIMES or mime in DOCUMENT_MIMES or mime.startswith("text/"):
        return
    if safe_name.lower().endswith(TEXT_EXTENSIONS + (".pdf",)):
        return
    raise HTTPException(status_code=400, detail="Only images, PDFs or text files are allowed.")


def strip_masked_secrets(body: Dict[str, Any]) -> Dict[str, Any]:
    """Drop masked values echoed back by the UI so they never overwrite stored keys."""
    cleaned = {k: v for k, v in body.items() if v != SECRET_MASK}
    profile = cleaned.get("profile")
    if isinstance(profile, dict):
        cleaned["profile"] = {k: v for k, v in profile.items() if v != SECRET_MASK}
    return cleaned


def build_agent(state: Any) -> AutonomousAgent:
    settings: AppSettings = state.settings
    return AutonomousAgent(
        settings,
        gemini=state.gemini_client,
        router=SemanticRouter(),
        memory=MemoryStore(state.db),
        pipeline=SearchPipeline(state.tavily_client, settings.search_depth, settings.extract_depth),
        openrouter=state.openrouter_client,
        instant=state.instant_client,
    )


async def stop_run_internal(
    run_id: str,
    db: Database,
    bus: EventBus,
    run_stop_events: Dict[str, asyncio.Event],
) -> Dict[str, Any]:
    run = await db.get_run_summary(run_id)
    stop_event = run_stop_events.get(run_id)
    if not run:
        if stop_event:
            if not stop_event.is_set():
                stop_event.set()
            return {"ok": True, "status": "stopping"}
        raise HTTPException(status_code=404, detail="Run not found")
    if stop_event and not stop_event.is_set():
        stop_event.set()
        return {"ok": True, "status": "stopping"}
    if run.get("status") in ("completed", "stopped", "error"):
        return {"ok": True, "status": run["status"]}
    await db.update_run_status(run_id, "stopped")
    await bus.emit(run_id, "archived", {"run_id": run_id, "status": "stopped", "stopped": True})
    return {"ok": True, "status": "stopped"}


router = APIRouter()


@router.get("/settings")
async def get_settings_route(settings: AppSettings = Depends(get_settings)):
    return {"settings": settings.to_safe_dict()}


@router.post("/settings")
async def update_settings_route(
    request: Request,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    config_path: Path = Depends(get_config_path),
):
    body = strip_masked_secrets(await request.json())
    current = settings.model_dump()
    if isinstance(body.get("profile"), dict):
        body["profile"] = {**current["profile"], **body["profile"]}
    try:
        new_settings = AppSettings(**{**current, **body})
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=f"Invalid settings: {exc}")
    save_settings(new_settings, config_path=config_path)
    await db.save_config(new_settings.to_safe_dict())
    state = request.app.state
    state.settings = new_settings
    state.gemini_client.api_key = new_settings.gemini_api_key
    state.gemini_client.base_url = new_settings.gemini_base_url.rstrip("/")
    state.openrouter_client.base_url = new_settings.openrouter_base_url.rstrip("/")
    state.instant_client.base_url = new_settings.instant_endpoint.base_url.rstrip("/")
    state.instant_client.default_model = new_settings.instant_endpoint.model_id
    state.tavily_client.api_key = new_settings.tavily_api_key
    upload_dir = Path(new_settings.upload_dir).resolve()
    upload_dir.mkdir(parents=True, exist_ok=True)
    state.upload_dir = upload_dir
    state.max_upload_bytes = new_settings.upload_max_mb * 1024 * 1024
    state.agent = build_agent(state)
    return {"ok": True, "settings": new_settings.to_safe_dict()}


@router.post("/api/uploads")
async def upload_file(
    file: UploadFile = File(...),
    run_id: Optional[str] = Form(None),
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    upload_dir: Path = Depends(get_upload_dir),
    max_upload_bytes: int = Depends(get_max_upload_bytes),
):
    validate_upload(file)
    data = await file.read()
    if len(data) > max_upload_bytes:
        raise HTTPException(status_code=400, detail=f"File too large (>{settings.upload_max_mb} MB).")
    safe_name = Path(file.filename).name
    stored_name = f"{uuid.uuid4().hex}_{safe_name}"
    upload_path = upload_dir / stored_name
    upload_dir.mkdir(parents=True, exist_ok=True)
    upload_path.write_bytes(data)
    mime = file.content_type or "application/octet-stream"
    upload_id = await db.add_upload(run_id, stored_name, safe_name, mime, len(data), str(upload_path))
    if run_id:
        await bus.emit(
            run_id,
            "upload_received",
            {"upload_id": upload_id, "name": safe_name, "mime": mime, "size": len(data)},
        )
    return {"id": upload_id, "filename": safe_name, "mime": mime, "size": len(data)}


@router.get("/api/uploads/{upload_id}")
async def get_upload(upload_id: int, db: Database = Depends(get_db)):
    record = await db.get_upload(upload_id)
    if not record:
        raise HTTPException(status_code=404, detail="Upload not found")
    path = Path(record["storage_path"])
    if not path.exists():
        raise HTTPException(status_code=404, detail="File missing on disk")
    return FileResponse(path, media_type=record["mime"], filename=record["original_name"])


@router.post("/api/chat")
async def start_chat(
    payload: StartChatRequest,
    settings: AppSettings = Depends(get_settings),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    agent: AutonomousAgent = Depends(get_agent),
    run_tasks: Dict[str, asyncio.Task] = Depends(get_run_tasks),
    run_stop_events: Dict[str, asyncio.Event] = Depends(get_run_stop_events),
):
    message = payload.message.strip()
    if not message:
        raise HTTPException(status_code=400, detail="Message is required.")
    for upload_id in payload.upload_ids:
        if not await db.get_upload(upload_id):
            raise HTTPException(status_code=400, detail=f"Unknown upload {upload_id}.")

    title_seed = message if len(message) <= 80 else message[:77].rstrip() + "..."
    conversation_id = payload.conversation_id
    if conversation_id:
        if not await db.get_conversation(conversation_id):
            raise HTTPException(status_code=404, detail="Conversation not found.")
        await db.ensure_conversation_title(conversation_id, title_seed)
    else:
        conversation = await db.create_conversation(
            title=title_seed,
            project_id=payload.project_id,
            model=payload.model,
            thinking_mode=payload.thinking_mode,
        )
        conversation_id = conversation["id"]
        await bus.emit("conversation", "conversation_created", {"conversation_id": conversation_id, "conversation": conversation})

    run_id = new_run_id()
    bus.register_run(run_id, conversation_id)
    await db.insert_run(run_id, conversation_id, message, payload.model, payload.thinking_mode)
    await db.add_message(run_id, conversation_id, "user", message)
    for upload_id in payload.upload_ids:
        await db.assign_upload_to_run(upload_id, run_id)
    stop_event = asyncio.Event()
    run_stop_events[run_id] = stop_event

    async def run_and_cleanup() -> None:
        try:
            await run_chat(
                run_id=run_id,
                conversation_id=conversation_id,
                message=message,
                model=payload.model,
                thinking_mode=payload.thinking_mode,
                project_id=payload.project_id,
                upload_ids=payload.upload_ids,
                settings=settings,
                db=db,
                bus=bus,
                agent=agent,
                stop_event=stop_event,
            )
        except Exception:
            logger.exception("Chat run %s failed", run_id)
            await db.finalize_run(run_id, "", status="error")
        finally:
            run_tasks.pop(run_id, None)
            run_stop_events.pop(run_id, None)
            archived_row = await db.fetchone(
                "SELECT 1 FROM events WHERE run_id=? AND event_type='archived' LIMIT 1",
                (run_id,),
            )
            if not archived_row:
                summary = await db.get_run_summary(run_id)
                status = (summary or {}).get("status") or "error"
                await bus.emit(run_id, "archived", {"run_id": run_id, "status": status, "error": status == "error"})

    task = asyncio.create_task(run_and_cleanup())
    run_tasks[run_id] = task
    return {"run_id": run_id, "conversation_id": conversation_id}


@router.get("/api/run/{run_id}")
async def get_run(run_id: str, db: Database = Depends(get_db)):
    run = await db.get_run_summary(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    return run


@router.get("/api/run/{run_id}/events")
async def list_run_events(run_id: str, after_seq: int = 0, db: Database = Depends(get_db)):
    run = await db.get_run_summary(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    events = await db.list_events(run_id, after_seq=after_seq)
    last_seq = events[-1]["seq"] if events else after_seq
    return {"events": events, "last_seq": last_seq}


@router.get("/api/run/{run_id}/sources")
async def get_run_sources(run_id: str, db: Database = Depends(get_db)):
    run = await db.get_run_summary(run_id)
    if not run:
        raise HTTPException(status_code=404, detail="Run not found")
    sources = dedupe_sources(await db.get_run_sources(run_id))
    return {"sources": sources, "count": len(sources)}


@router.post("/api/run/{run_id}/stop")
async def stop_run(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
    run_stop_events: Dict[str, asyncio.Event] = Depends(get_run_stop_events),
):
    return await stop_run_internal(run_id, db, bus, run_stop_events)


@router.get("/api/memory")
async def list_memory(q: Optional[str] = None, kind: Optional[str] = None, db: Database = Depends(get_db)):
    if q:
        items = await db.search_memory(q, limit=50)
    else:
        items = await db.list_memory(kinds=[kind] if kind else None, limit=50)
    return {"items": items}


@router.post("/api/memory")
async def create_memory(item: Dict[str, Any], db: Database = Depends(get_db)):
    if not str(item.get("content") or "").strip():
        raise HTTPException(status_code=400, detail="Memory content is required.")
    mem_id = await db.add_memory_item(
        item.get("kind", "custom"),
        item.get("title", ""),
        item.get("content", ""),
        item.get("tags", []),
        pinned=item.get("pinned", False),
        relevance_score=item.get("relevance_score", 0.0),
    )
    return {"id": mem_id}


@router.patch("/api/memory/{item_id}")
async def update_memory(item_id: int, item: Dict[str, Any], db: Database = Depends(get_db)):
    updated = await db.update_memory_item(
        item_id,
        title=item.get("title"),
        content=item.get("content"),
        pinned=item.get("pinned"),
        kind=item.get("kind"),
    )
    if not updated:
        raise HTTPException(status_code=404, detail="Memory item not found")
    return {"ok": True, "item": updated}


@router.delete("/api/memory/{item_id}")
async def delete_memory(item_id: int, db: Database = Depends(get_db)):
    await db.delete_memory_item(item_id)
    return {"ok": True}


@router.get("/api/conversations")
async def list_conversations(include_archived: bool = False, db: Database = Depends(get_db)):
    conversations = await db.list_conversations(include_archived=include_archived)
    return {"conversations": conversations}


@router.post("/api/conversations")
async def create_conversation(
    payload: Dict[str, Any] = Body(default={}),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    convo = await db.create_conversation(
        title=payload.get("title"),
        project_id=payload.get("project_id"),
        model=payload.get("model"),
        thinking_mode=payload.get("thinking_mode", "normal"),
    )
    await bus.emit("conversation", "conversation_created", {"conversation_id": convo["id"], "conversation": convo})
    return {"conversation": convo}


@router.get("/api/conversations/{conversation_id}")
async def get_conversation(conversation_id: str, db: Database = Depends(get_db)):
    convo = await db.get_conversation(conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    return {"conversation": convo}


@router.get("/api/conversations/{conversation_id}/messages")
async def get_conversation_messages(conversation_id: str, limit: int = 200, db: Database = Depends(get_db)):
    convo = await db.get_conversation(conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    messages = await db.list_messages(conversation_id, limit=limit)
    return {"messages": messages}


@router.patch("/api/conversations/{conversation_id}")
async def update_conversation(
    conversation_id: str,
    payload: Dict[str, Any] = Body(default={}),
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    convo = await db.update_conversation(
        conversation_id,
        title=payload.get("title"),
        model=payload.get("model"),
        thinking_mode=payload.get("thinking_mode"),
        archived=payload.get("archived"),
    )
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    await bus.emit("conversation", "conversation_updated", {"conversation_id": convo["id"], "conversation": convo})
    return {"conversation": convo}


@router.delete("/api/conversations/{conversation_id}")
async def delete_conversation(
    conversation_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    convo = await db.get_conversation(conversation_id)
    if not convo:
        raise HTTPException(status_code=404, detail="Conversation not found")
    await db.delete_conversation(conversation_id)
    await bus.emit("conversation", "conversation_deleted", {"conversation_id": conversation_id})
    return {"ok": True}


@router.get("/events")
async def stream_global_events(bus: EventBus = Depends(get_event_bus)):
    async def event_generator():
        queue = await bus.subscribe_global()
        try:
            while True:
                ev = await queue.get()
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe_global(queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


@router.get("/runs/{run_id}/events")
async def stream_events(
    run_id: str,
    db: Database = Depends(get_db),
    bus: EventBus = Depends(get_event_bus),
):
    # Replay stored events, then follow live ones.
    async def event_generator():
        queue = await bus.subscribe(run_id)
        try:
            past = await db.list_events(run_id)
            last_seq = 0
            for ev in past:
                last_seq = ev["seq"]
                yield sse_format(ev)
            while True:
                ev = await queue.get()
                if ev.get("seq", 0) <= last_seq:
                    continue
                yield sse_format(ev)
        except asyncio.CancelledError:
            pass
        finally:
            await bus.unsubscribe(run_id, queue)

    return StreamingResponse(event_generator(), media_type="text/event-stream")


def create_app(
    settings: AppSettings,
    *,
    db: Optional[Database] = None,
    gemini_client: Optional[GeminiClient] = None,
    openrouter_client: Optional[OpenAICompatClient] = None,
    instant_client: Optional[OpenAICompatClient] = None,
    tavily_client: Optional[TavilyClient] = None,
    config_path: Optional[Path] = None,
) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI):
        await app.state.db.init()
        await app.state.db.save_config(app.state.settings.to_safe_dict())
        app.state.upload_dir.mkdir(parents=True, exist_ok=True)
        try:
            yield
        finally:
            for task in list(app.state.run_tasks.values()):
                task.cancel()
            await app.state.gemini_client.close()
            await app.state.openrouter_client.close()
            await app.state.instant_client.close()
            await app.state.tavily_client.close()

    app = FastAPI(title="Bubble Chat", lifespan=lifespan)
    app.state.settings = settings
    app.state.db = db or Database(settings.database_path)
    app.state.gemini_client = gemini_client or GeminiClient(
        settings.gemini_api_key, settings.gemini_base_url, max_output_tokens=settings.max_output_tokens
    )
    app.state.openrouter_client = openrouter_client or OpenAICompatClient(
        settings.openrouter_base_url, name="openrouter", max_output_tokens=settings.max_output_tokens
    )
    app.state.instant_client = instant_client or OpenAICompatClient(
        settings.instant_endpoint.base_url,
        default_model=settings.instant_endpoint.model_id,
        name="instant",
    )
    app.state.tavily_client = tavily_client or TavilyClient(settings.tavily_api_key)
    app.state.bus = EventBus(app.state.db)
    app.state.agent = build_agent(app.state)
    app.state.run_tasks = {}
    app.state.run_stop_events = {}
    app.state.upload_dir = Path(settings.upload_dir).resolve()
    app.state.max_upload_bytes = settings.upload_max_mb * 1024 * 1024
    app.state.config_path = config_path or CONFIG_PATH

    app.include_router(router)
    return app


app = create_app(load_settings())


if __name__ == "__main__":
    import os
    import uvicorn

    settings = app.state.settings
    reload_enabled = os.getenv("BUBBLE_RELOAD", "").lower() in ("1", "true", "yes", "on")
    try:
        uvicorn.run(
            "bubble.main:app",
            host=settings.host,
            port=settings.port,
            reload=reload_enabled,
        )
    except KeyboardInterrupt:
        pass
