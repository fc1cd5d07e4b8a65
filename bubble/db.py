import json
import uuid
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Sequence, Tuple

import aiosqlite


def utc_now() -> str:
    return datetime.now(timezone.utc).replace(tzinfo=None).isoformat() + "Z"


def _memory_row(r: aiosqlite.Row) -> dict:
    return {
        "id": r["id"],
        "kind": r["kind"],
        "title": r["title"],
        "content": r["content"],
        "tags": json.loads(r["tags_json"] or "[]"),
        "pinned": bool(r["pinned_bool"]),
        "relevance_score": r["relevance_score"],
        "updated_at": r["updated_at"],
    }


def _upload_row(row: aiosqlite.Row) -> dict:
    return {
        "id": row["id"],
        "run_id": row["run_id"] or None,
        "filename": row["filename"],
        "original_name": row["original_name"],
        "mime": row["mime"],
        "size_bytes": row["size_bytes"],
        "storage_path": row["storage_path"],
        "status": row["status"],
        "created_at": row["created_at"],
    }


def _conversation_row(row: aiosqlite.Row) -> dict:
    return {
        "id": row["id"],
        "created_at": row["created_at"],
        "updated_at": row["updated_at"],
        "title": row["title"],
        "project_id": row["project_id"],
        "model": row["model"],
        "thinking_mode": row["thinking_mode"],
        "archived": bool(row["archived"]),
    }


MEMORY_COLUMNS = "id, kind, title, content, tags_json, pinned_bool, relevance_score, updated_at"
UPLOAD_COLUMNS = "id, run_id, filename, original_name, mime, size_bytes, storage_path, status, created_at"
CONVERSATION_COLUMNS = "id, created_at, updated_at, title, project_id, model, thinking_mode, archived"


class Database:
    def __init__(self, path: str):
        self.path = path

    async def init(self) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.executescript(
                """
                PRAGMA journal_mode=WAL;
                CREATE TABLE IF NOT EXISTS conversations(
                    id TEXT PRIMARY KEY,
                    created_at TEXT,
                    updated_at TEXT,
                    title TEXT,
                    project_id TEXT,
                    model TEXT,
                    thinking_mode TEXT,
                    archived INTEGER DEFAULT 0
                );
                CREATE TABLE IF NOT EXISTS runs(
                    run_id TEXT PRIMARY KEY,
                    conversation_id TEXT,
                    created_at TEXT,
                    user_question TEXT,
                    model TEXT,
                    thinking_mode TEXT,
                    final_answer TEXT,
                    status TEXT
                );
                CREATE TABLE IF NOT EXISTS messages(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    conversation_id TEXT,
                    role TEXT,
                    content TEXT,
                    grounding_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS events(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    seq INTEGER,
                    event_type TEXT,
                    payload_json TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS configs(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    payload_json TEXT
                );
                CREATE TABLE IF NOT EXISTS uploads(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    run_id TEXT,
                    filename TEXT,
                    original_name TEXT,
                    mime TEXT,
                    size_bytes INTEGER,
                    storage_path TEXT,
                    status TEXT,
                    created_at TEXT
                );
                CREATE TABLE IF NOT EXISTS memory_items(
                    id INTEGER PRIMARY KEY AUTOINCREMENT,
                    created_at TEXT,
                    updated_at TEXT,
                    kind TEXT,
                    title TEXT,
                    content TEXT,
                    tags_json TEXT,
                    pinned_bool INTEGER,
                    relevance_score REAL
                );
                CREATE INDEX IF NOT EXISTS idx_events_run ON events(run_id, seq);
                CREATE INDEX IF NOT EXISTS idx_messages_conversation ON messages(conversation_id, created_at);
                CREATE INDEX IF NOT EXISTS idx_memory_kind ON memory_items(kind);
                """
            )
            await db.commit()

    async def execute(self, query: str, params: Tuple[Any, ...] = ()) -> None:
        async with aiosqlite.connect(self.path) as db:
            await db.execute(query, params)
            await db.commit()

    async def fetchall(self, query: str, params: Tuple[Any, ...] = ()) -> List[aiosqlite.Row]:
        async with aiosqlite.connect(self.path) as db:
            db.row_factory = aiosqlite.Row
            cursor = await db.execute(query, params)
            rows = await cursor.fetchall()
            await cursor.close()
            return rows

    async def fetchone(self, query: str, params: Tuple[Any, ...] = ()) -> Optional[aiosqlite.Row]:
        rows = await self.fetchall(query, params)
        return rows[0] if rows else None

    async def _insert(self, query: str, params: Tuple[Any, ...]) -> int:
        async with aiosqlite.connect(self.path) as db:
            cursor = await db.execute(query, params)
            await db.commit()
            return cursor.lastrowid

    # Runs

    async def insert_run(
        self,
        run_id: str,
        conversation_id: str,
        question: str,
        model: Optional[str],
        thinking_mode: str,
        status: str = "running",
    ) -> None:
        created_at = utc_now()
        await self.execute(
            "INSERT INTO runs(run_id, conversation_id, created_at, user_question, model, thinking_mode, status) "
            "VALUES (?,?,?,?,?,?,?)",
            (run_id, conversation_id, created_at, question, model or "", thinking_mode, status),
        )
        await self.touch_conversation(conversation_id, updated_at=created_at)

    async def finalize_run(self, run_id: str, final_answer: str, status: str = "completed") -> None:
        await self.execute(
            "UPDATE runs SET final_answer=?, status=? WHERE run_id=?",
            (final_answer, status, run_id),
        )

    async def update_run_status(self, run_id: str, status: str) -> None:
        await self.execute("UPDATE runs SET status=? WHERE run_id=?", (status, run_id))

    async def get_run_summary(self, run_id: str) -> Optional[dict]:
        row = await self.fetchone(
            "SELECT run_id, conversation_id, created_at, user_question, model, thinking_mode, "
            "final_answer, status FROM runs WHERE run_id=?",
            (run_id,),
        )
        if not row:
            return None
        return {
            "run_id": row["run_id"],
            "conversation_id": row["conversation_id"],
            "created_at": row["created_at"],
            "user_question": row["user_question"],
            "model": row["model"],
            "thinking_mode": row["thinking_mode"],
            "final_answer": row["final_answer"],
            "status": row["status"],
        }

    async def get_run_sources(self, run_id: str) -> List[dict]:
        rows = await self.fetchall(
            "SELECT grounding_json FROM messages WHERE run_id=? AND role='assistant' ORDER BY id ASC",
            (run_id,),
        )
        sources: List[dict] = []
        for row in rows:
            sources.extend(json.loads(row["grounding_json"] or "[]"))
        return sources

    # Messages

    async def add_message(
        self,
        run_id: str,
        conversation_id: str,
        role: str,
        content: str,
        grounding: Optional[List[dict]] = None,
    ) -> dict:
        created_at = utc_now()
        message_id = await self._insert(
            "INSERT INTO messages(run_id, conversation_id, role, content, grounding_json, created_at) VALUES (?,?,?,?,?,?)",
            (run_id, conversation_id, role, content, json.dumps(grounding) if grounding is not None else None, created_at),
        )
        await self.touch_conversation(conversation_id, updated_at=created_at)
        return {"id": message_id, "created_at": created_at}

    async def list_messages(self, conversation_id: str, limit: int = 200) -> List[dict]:
        rows = await self.fetchall(
            "SELECT id, run_id, conversation_id, role, content, grounding_json, created_at "
            "FROM messages WHERE conversation_id=? ORDER BY id ASC LIMIT ?",
            (conversation_id, limit),
        )
        out = []
        for r in rows:
            item = dict(r)
            grounding = item.pop("grounding_json")
            item["grounding"] = json.loads(grounding) if grounding else None
            out.append(item)
        return out

    # Events

    async def next_event_seq(self, run_id: str) -> int:
        row = await self.fetchone("SELECT MAX(seq) as max_seq FROM events WHERE run_id=?", (run_id,))
        max_seq = row["max_seq"] if row and row["max_seq"] is not None else 0
        return int(max_seq) + 1

    async def add_event(self, run_id: str, event_type: str, payload: dict) -> dict:
        seq = await self.next_event_seq(run_id)
        created_at = utc_now()
        await self.execute(
            "INSERT INTO events(run_id, seq, event_type, payload_json, created_at) VALUES (?,?,?,?,?)",
            (run_id, seq, event_type, json.dumps(payload), created_at),
        )
        return {"run_id": run_id, "seq": seq, "event_type": event_type, "payload": payload, "created_at": created_at}

    async def list_events(self, run_id: str, after_seq: int = 0) -> List[dict]:
        rows = await self.fetchall(
            "SELECT seq, event_type, payload_json, created_at FROM events WHERE run_id=? AND seq>? ORDER BY seq ASC",
            (run_id, after_seq),
        )
        return [
            {
                "seq": row["seq"],
                "event_type": row["event_type"],
                "payload": json.loads(row["payload_json"] or "{}"),
                "created_at": row["created_at"],
            }
            for row in rows
        ]

    async def save_config(self, payload: dict) -> None:
        await self.execute(
            "INSERT INTO configs(created_at, payload_json) VALUES (?,?)", (utc_now(), json.dumps(payload))
        )

    # Uploads

    async def add_upload(
        self,
        run_id: Optional[str],
        filename: str,
        original_name: str,
        mime: str,
        size_bytes: int,
        storage_path: str,
        status: str = "received",
    ) -> int:
        return await self._insert(
            "INSERT INTO uploads(run_id, filename, original_name, mime, size_bytes, storage_path, status, created_at) "
            "VALUES (?,?,?,?,?,?,?,?)",
            (run_id or "", filename, original_name, mime, size_bytes, storage_path, status, utc_now()),
        )

    async def assign_upload_to_run(self, upload_id: int, run_id: str) -> None:
        await self.execute("UPDATE uploads SET run_id=?, status='attached' WHERE id=?", (run_id, upload_id))

    async def get_upload(self, upload_id: int) -> Optional[dict]:
        row = await self.fetchone(f"SELECT {UPLOAD_COLUMNS} FROM uploads WHERE id=?", (upload_id,))
        return _upload_row(row) if row else None

    # Memory

    async def add_memory_item(
        self, kind: str, title: str, content: str, tags: List[str], pinned: bool = False, relevance_score: float = 0.0
    ) -> int:
        now = utc_now()
        return await self._insert(
            "INSERT INTO memory_items(created_at, updated_at, kind, title, content, tags_json, pinned_bool, relevance_score) "
            "VALUES (?,?,?,?,?,?,?,?)",
            (now, now, kind, title, content, json.dumps(tags), 1 if pinned else 0, relevance_score),
        )

    async def get_memory_item(self, item_id: int) -> Optional[dict]:
        row = await self.fetchone(f"SELECT {MEMORY_COLUMNS} FROM memory_items WHERE id=?", (item_id,))
        return _memory_row(row) if row else None

    async def update_memory_item(
        self,
        item_id: int,
        title: Optional[str] = None,
        content: Optional[str] = None,
        pinned: Optional[bool] = None,
        kind: Optional[str] = None,
    ) -> Optional[dict]:
        row = await self.fetchone("SELECT kind, title, content, pinned_bool FROM memory_items WHERE id=?", (item_id,))
        if not row:
            return None
        new_kind = kind if kind is not None else row["kind"]
        new_title = title if title is not None else row["title"]
        new_content = content if content is not None else row["content"]
        new_pinned = pinned if pinned is not None else row["pinned_bool"]
        await self.execute(
            "UPDATE memory_items SET kind=?, title=?, content=?, pinned_bool=?, updated_at=? WHERE id=?",
            (new_kind, new_title, new_content, 1 if new_pinned else 0, utc_now(), item_id),
        )
        return await self.get_memory_item(item_id)

    async def delete_memory_item(self, item_id: int) -> None:
        await self.execute("DELETE FROM memory_items WHERE id=?", (item_id,))

    async def search_memory(self, query: str, limit: int = 10) -> List[dict]:
        pattern = f"%{query}%"
        rows = await self.fetchall(
            f"SELECT {MEMORY_COLUMNS} FROM memory_items "
            "WHERE title LIKE ? OR content LIKE ? ORDER BY pinned_bool DESC, relevance_score DESC, updated_at DESC LIMIT ?",
            (pattern, pattern, limit),
        )
        return [_memory_row(r) for r in rows]

    async def list_memory(self, kinds: Optional[Sequence[str]] = None, limit: int = 50) -> List[dict]:
        if kinds:
            placeholders = ",".join("?" for _ in kinds)
            rows = await self.fetchall(
                f"SELECT {MEMORY_COLUMNS} FROM memory_items WHERE kind IN ({placeholders}) "
                "ORDER BY pinned_bool DESC, relevance_score DESC, updated_at DESC LIMIT ?",
                (*kinds, limit),
            )
        else:
            rows = await self.fetchall(
                f"SELECT {MEMORY_COLUMNS} FROM memory_items "
                "ORDER BY pinned_bool DESC, relevance_score DESC, updated_at DESC LIMIT ?",
                (limit,),
            )
        return [_memory_row(r) for r in rows]

    # Conversations

    async def touch_conversation(self, conversation_id: Optional[str], updated_at: Optional[str] = None) -> Optional[str]:
        if not conversation_id:
            return None
        stamp = updated_at or utc_now()
        await self.execute("UPDATE conversations SET updated_at=? WHERE id=?", (stamp, conversation_id))
        return stamp

    async def create_conversation(
        self,
        title: Optional[str] = None,
        project_id: Optional[str] = None,
        model: Optional[str] = None,
        thinking_mode: str = "normal",
    ) -> dict:
        convo_id = uuid.uuid4().hex
        created_at = utc_now()
        await self.execute(
            "INSERT INTO conversations(id, created_at, updated_at, title, project_id, model, thinking_mode, archived) "
            "VALUES (?,?,?,?,?,?,?,0)",
            (convo_id, created_at, created_at, title or "New chat", project_id or "", model or "", thinking_mode),
        )
        return {
            "id": convo_id,
            "created_at": created_at,
            "updated_at": created_at,
            "title": title or "New chat",
            "project_id": project_id or "",
            "model": model or "",
            "thinking_mode": thinking_mode,
            "archived": False,
        }

    async def get_conversation(self, conversation_id: str) -> Optional[dict]:
        row = await self.fetchone(f"SELECT {CONVERSATION_COLUMNS} FROM conversations WHERE id=?", (conversation_id,))
        return _conversation_row(row) if row else None

    async def list_conversations(self, include_archived: bool = False, limit: int = 200) -> List[dict]:
        where = "" if include_archived else "WHERE archived=0"
        rows = await self.fetchall(
            f"SELECT {CONVERSATION_COLUMNS}, "
            "(SELECT run_id FROM runs WHERE conversation_id=conversations.id ORDER BY created_at DESC LIMIT 1) AS latest_run_id, "
            "(SELECT content FROM messages WHERE conversation_id=conversations.id ORDER BY id DESC LIMIT 1) AS latest_message "
            f"FROM conversations {where} ORDER BY updated_at DESC, created_at DESC LIMIT ?",
            (limit,),
        )
        out = []
        for r in rows:
            item = _conversation_row(r)
            item["latest_run_id"] = r["latest_run_id"]
            item["latest_message"] = r["latest_message"]
            out.append(item)
        return out

    async def update_conversation(
        self,
        conversation_id: str,
        title: Optional[str] = None,
        model: Optional[str] = None,
        thinking_mode: Optional[str] = None,
        archived: Optional[bool] = None,
    ) -> Optional[dict]:
        current = await self.get_conversation(conversation_id)
        if not current:
            return None
        next_archived = archived if archived is not None else current["archived"]
        await self.execute(
            "UPDATE conversations SET title=?, model=?, thinking_mode=?, archived=?, updated_at=? WHERE id=?",
            (
                title if title is not None else current["title"],
                model if model is not None else current["model"],
                thinking_mode if thinking_mode is not None else current["thinking_mode"],
                1 if next_archived else 0,
                utc_now(),
                conversation_id,
            ),
        )
        return await self.get_conversation(conversation_id)

    async def ensure_conversation_title(self, conversation_id: str, title: str) -> None:
        row = await self.fetchone("SELECT title FROM conversations WHERE id=?", (conversation_id,))
        if not row:
            return
        current = (row["title"] or "").strip()
        if current and current.lower() != "new chat":
            return
        await self.execute(
            "UPDATE conversations SET title=?, updated_at=? WHERE id=?",
            (title, utc_now(), conversation_id),
        )

    async def delete_conversation(self, conversation_id: str) -> None:
        await self.execute("DELETE FROM messages WHERE conversation_id=?", (conversation_id,))
        for table in ("events", "uploads"):
            await self.execute(
                f"DELETE FROM {table} WHERE run_id IN (SELECT run_id FROM runs WHERE conversation_id=?)",
                (conversation_id,),
            )
        await self.execute("DELETE FROM runs WHERE conversation_id=?", (conversation_id,))
        await self.execute("DELETE FROM conversations WHERE id=?", (conversation_id,))

    async def history_for(self, conversation_id: str, limit: int = 40) -> List[Dict[str, str]]:
        """Most recent messages of a conversation, oldest first, as sender/text pairs."""
        rows = await self.fetchall(
            "SELECT role, content FROM (SELECT id, role, content FROM messages WHERE conversation_id=? "
            "ORDER BY id DESC LIMIT ?) ORDER BY id ASC",
            (conversation_id, limit),
        )
        return [
            {"sender": "user" if r["role"] == "user" else "ai", "text": r["content"] or ""}
            for r in rows
        ]
