import json
import logging
import threading
import time
from pathlib import Path
from typing import Protocol

from backend.mindmap_types import TranscriptTurn
from backend.persistence import session_file_stem

logger = logging.getLogger(__name__)


class TranscriptRepository(Protocol):
    def get_all_transcripts_by_session_id(self, session_id: str) -> list[TranscriptTurn]: ...


class JsonTranscriptRepository:
    """Append-only transcript rows per session, one JSON file each."""

    def __init__(self, base_dir: Path):
        self.base_dir = Path(base_dir)
        self._lock = threading.RLock()
        self._cache: dict[str, list[dict]] = {}

    def _path(self, session_id: str) -> Path:
        return self.base_dir / f"{session_file_stem(session_id)}.transcript.json"

    def _rows(self, session_id: str) -> list[dict]:
        rows = self._cache.get(session_id)
        if rows is not None:
            return rows
        rows = []
        path = self._path(session_id)
        if path.is_file():
            data = json.loads(path.read_text(encoding="utf-8"))
            if isinstance(data, list):
                rows = [r for r in data if isinstance(r, dict)]
        self._cache[session_id] = rows
        return rows

    def add_transcript(self, session_id: str, speaker: str, text: str, start_at: float | None = None) -> TranscriptTurn:
        row = {
            "speaker": str(speaker or ""),
            "text": str(text or ""),
            "start_at": int(time.time()) if start_at is None else start_at,
        }
        with self._lock:
            rows = [*self._rows(session_id), row]
            path = self._path(session_id)
            path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = path.with_suffix(".tmp")
            tmp_path.write_text(json.dumps(rows, indent=2), encoding="utf-8")
            tmp_path.replace(path)
            self._cache[session_id] = rows
        return TranscriptTurn.from_row(row)

    def get_all_transcripts_by_session_id(self, session_id: str) -> list[TranscriptTurn]:
        with self._lock:
            return [TranscriptTurn.from_row(r) for r in self._rows(session_id)]
