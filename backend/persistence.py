"""Per-session summary records and the mindmap field stored inside them."""

import asyncio
import json
import logging
import os
import re
import threading
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, Protocol

from backend.mindmap_errors import PersistenceError

logger = logging.getLogger(__name__)

MINDMAP_FIELD = "mindmap_json"

_SAFE_SESSION_ID_RE = re.compile(r"[^A-Za-z0-9_.-]")


def session_file_stem(session_id: str) -> str:
    sid = str(session_id or "").strip()
    if not sid:
        raise ValueError("Session ID is required to access summary.")
    return _SAFE_SESSION_ID_RE.sub("_", sid)


class SummaryRepository(Protocol):
    def get_summary_by_session_id(self, session_id: str) -> dict | None: ...

    def save_summary(self, session_id: str, record: dict) -> None: ...


class JsonSummaryRepository:
    """One JSON document per session, written atomically."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self._lock = threading.RLock()

    def _path(self, session_id: str) -> Path:
        return self.base_dir / f"{session_file_stem(session_id)}.summary.json"

    def get_summary_by_session_id(self, session_id: str) -> dict | None:
        path = self._path(session_id)
        with self._lock:
            if not path.is_file():
                return None
            data = json.loads(path.read_text(encoding="utf-8"))
        return data if isinstance(data, dict) else None

    def save_summary(self, session_id: str, record: dict) -> None:
        path = self._path(session_id)
        with self._lock:
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            try:
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(record, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                tmp_path.replace(path)
            except Exception:
                if tmp_path.exists():
                    tmp_path.unlink()
                raise


def default_summary_record(session_id: str, now_s: int) -> dict:
    return {
        "session_id": session_id,
        "text": "",
        "tldr": "",
        "bullet_json": "",
        "action_json": "",
        MINDMAP_FIELD: "",
        "model": "unknown",
        "generated_at": now_s,
        "updated_at": now_s,
    }


class MindmapPersistence:
    """
    Stores the serialized mindmap inside the session summary record.

    Saves are read-modify-write: only `mindmap_json` and `updated_at` change, every
    sibling field is written back as read. Writes for one session are serialized.
    """

    def __init__(self, repository: SummaryRepository):
        self.repository = repository
        # Session locks live only while a save holds or awaits them.
        self._locks: dict[str, asyncio.Lock] = {}
        self._lock_users: dict[str, int] = {}

    @asynccontextmanager
    async def _session_lock(self, session_id: str):
        lock = self._locks.setdefault(session_id, asyncio.Lock())
        self._lock_users[session_id] = self._lock_users.get(session_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[session_id] -= 1
            if not self._lock_users[session_id]:
                del self._lock_users[session_id]
                del self._locks[session_id]

    async def load(self, session_id: str) -> dict | None:
        try:
            return await asyncio.to_thread(self.repository.get_summary_by_session_id, session_id)
        except Exception as e:
            raise PersistenceError(session_id, str(e)) from e

    async def save(self, session_id: str, graph: dict) -> dict:
        if not session_id:
            raise PersistenceError("", "No active session to save mindmap")
        mindmap_json = json.dumps(graph)
        async with self._session_lock(session_id):
            existing = await self.load(session_id)
            now_s = int(time.time())
            record = dict(existing) if existing else default_summary_record(session_id, now_s)
            record[MINDMAP_FIELD] = mindmap_json
            record["updated_at"] = now_s
            try:
                await asyncio.to_thread(self.repository.save_summary, session_id, record)
            except Exception as e:
                raise PersistenceError(session_id, str(e)) from e
        logger.debug(f"Mindmap saved for session {session_id} ({len(mindmap_json)} chars)")
        return record

    async def load_graph(self, session_id: str) -> dict | None:
        record = await self.load(session_id)
        if not record:
            return None
        raw: Any = record.get(MINDMAP_FIELD)
        if not raw:
            return None
        if isinstance(raw, dict):
            return raw
        try:
            graph = json.loads(raw)
        except (TypeError, ValueError) as e:
            logger.error(f"Stored mindmap for session {session_id} is not valid JSON: {e}")
            return None
        return graph if isinstance(graph, dict) else None
