"""
Live conversation mindmap engine.

One engine instance tracks exactly one bound session. Transcript turns arm a background
asyncio task that regenerates the mindmap from the full transcript every interval, bounds
its size, persists it and publishes the result on the event bus.
"""

from __future__ import annotations

import asyncio
import copy
import inspect
import logging
import time
from typing import Any, Callable

from backend.events import EventBus
from backend.important_log import log_important
from backend.mindmap_errors import MindmapError, NoTranscriptContent, PersistenceError, TranscriptSourceError
from backend.mindmap_generator import GenerationResult, generate_mindmap
from backend.mindmap_merge import merge_delta
from backend.mindmap_summarizer import summarize_older_nodes
from backend.mindmap_types import Graph, TranscriptTurn, empty_graph, graph_version, now_ms, sanitize_candidate
from backend.persistence import MindmapPersistence
from backend.settings import MindmapSettings
from backend.transcript_store import TranscriptRepository

logger = logging.getLogger(__name__)


class MindmapEngine:
    def __init__(
        self,
        *,
        transcripts: TranscriptRepository,
        llm_provider: Callable[[], Any],
        persistence: MindmapPersistence | None = None,
        settings: MindmapSettings | None = None,
        events: EventBus | None = None,
        autosave: bool = True,
    ):
        self.transcripts = transcripts
        self.persistence = persistence
        # When off, cycles and deltas stay in memory; save_current still writes.
        self.autosave = autosave
        self.settings = settings or MindmapSettings()
        self.events = events or EventBus()
        self._llm_provider = llm_provider

        self._session_id: str | None = None
        # Bumped on every rebind/reset; a cycle only commits if the epoch it started with is current.
        self._epoch = 0
        self._graph: Graph = empty_graph(None)
        self._conversation: list[str] = []
        self._pending: list[dict] = []
        self._timer_task: asyncio.Task | None = None
        self._cycle_lock = asyncio.Lock()
        self._cycle_task: asyncio.Task | None = None
        # Epoch of whoever holds _cycle_lock; a holder from an older epoch is waited on, not skipped.
        self._cycle_epoch = 0

    # ------------------------------------------------------------------
    # Session binding / transcript intake
    # ------------------------------------------------------------------

    @property
    def session_id(self) -> str | None:
        return self._session_id

    @property
    def is_running(self) -> bool:
        return self._timer_task is not None and not self._timer_task.done()

    def bind_session(self, session_id: str) -> None:
        sid = str(session_id or "").strip()
        if not sid:
            raise ValueError("session_id is required")
        if sid == self._session_id:
            return
        self._cancel_work()
        self._session_id = sid
        self._clear_state()
        log_important("mindmap.session.bound", session_id=sid)

    def unbind(self) -> None:
        self._cancel_work()
        self._session_id = None
        self._clear_state()

    def reset_session(self) -> None:
        """Drop history, pending turns and the in-memory graph; keep the session binding."""
        self._cancel_work()
        self._clear_state()
        logger.info(f"Mindmap reset for session {self._session_id}")

    def _clear_state(self) -> None:
        self._conversation = []
        self._pending = []
        self._graph = empty_graph(self._session_id)

    def record_turn(self, speaker: str, text: str) -> None:
        speaker = str(speaker or "unknown")
        text = str(text or "").strip()
        self._conversation.append(f"{speaker.lower()}: {text}")
        self._pending.append({"speaker": speaker, "text": text, "timestamp": time.time()})
        logger.debug(f"Mindmap turn recorded ({len(self._pending)} pending)")

        if self._session_id and not self.is_running:
            self._arm_timer()

    def get_conversation_history(self) -> list[str]:
        return list(self._conversation)

    def format_conversation(self, max_turns: int | None = None) -> str:
        limit = self.settings.merge_context_turns if max_turns is None else int(max_turns)
        if not self._conversation or limit <= 0:
            return ""
        return "\n".join(self._conversation[-limit:])

    @property
    def pending_turns(self) -> int:
        return len(self._pending)

    def get_current_graph(self) -> Graph:
        return copy.deepcopy(self._graph)

    # ------------------------------------------------------------------
    # Timer
    # ------------------------------------------------------------------

    def _arm_timer(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning("Mindmap timer not armed: no running event loop")
            return
        self._timer_task = loop.create_task(self._run_timer())
        log_important(
            "mindmap.timer.armed",
            session_id=self._session_id,
            interval_ms=self.settings.update_interval_ms,
        )

    def _cancel_timer(self) -> None:
        task = self._timer_task
        self._timer_task = None
        if task is not None and not task.done():
            task.cancel()

    def _cancel_work(self) -> None:
        """Stop the timer and any in-flight cycle, and invalidate results of the current epoch."""
        self._cancel_timer()
        self._epoch += 1
        task = self._cycle_task
        self._cycle_task = None
        if task is not None and not task.done():
            task.cancel()

    async def stop(self) -> None:
        task = self._timer_task
        self._cancel_timer()
        if task is not None:
            try:
                await task
            except asyncio.CancelledError:
                pass

    async def _run_timer(self) -> None:
        """First turn gets an immediate cycle, then one cycle per interval regardless of new turns."""
        interval_s = max(0.001, self.settings.update_interval_ms / 1000.0)
        if self._pending:
            await self._tick()
        while True:
            await asyncio.sleep(interval_s)
            if self._session_id:
                await self._tick()

    async def _tick(self) -> None:
        try:
            await self.run_cycle()
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("Mindmap cycle crashed; timer keeps running")

    # ------------------------------------------------------------------
    # Update cycle
    # ------------------------------------------------------------------

    async def run_cycle(self) -> bool:
        """Regenerate, bound, commit, persist and publish. Returns True when a new graph was committed."""
        session_id = self._session_id
        if not session_id:
            logger.warning("No active session, skipping mindmap update")
            return False

        if self._cycle_lock.locked() and self._cycle_epoch == self._epoch:
            log_important("mindmap.cycle.skipped", level=logging.WARNING, session_id=session_id, reason="in_flight")
            self._publish_status(session_id, "skipped", "in_flight", "Previous mindmap update still running")
            return False

        async with self._cycle_lock:
            session_id = self._session_id
            if not session_id:
                return False
            epoch = self._epoch
            self._cycle_epoch = epoch
            task = asyncio.ensure_future(self._guarded_cycle(session_id, epoch))
            self._cycle_task = task
            try:
                return await task
            except asyncio.CancelledError:
                current = asyncio.current_task()
                if (current is not None and current.cancelling()) or self._is_current(session_id, epoch):
                    raise
                logger.info(f"Mindmap update for session {session_id} cancelled: session changed")
                return False
            finally:
                if self._cycle_task is task:
                    self._cycle_task = None

    async def _guarded_cycle(self, session_id: str, epoch: int) -> bool:
        try:
            return await self._cycle(session_id, epoch)
        except NoTranscriptContent as e:
            logger.info(f"Mindmap cycle skipped for session {session_id}: {e}")
            self._publish_status(session_id, "skipped", e.kind, str(e))
            return False
        except MindmapError as e:
            self._handle_cycle_failure(session_id, epoch, e.kind, str(e))
            return False
        except Exception as e:
            logger.exception("Unexpected mindmap cycle error")
            self._handle_cycle_failure(session_id, epoch, "internal", str(e))
            return False

    async def _cycle(self, session_id: str, epoch: int) -> bool:
        turns = await self._fetch_transcripts(session_id)
        if not turns:
            logger.info(f"No transcripts found for session {session_id}; keeping existing mindmap")
            return False

        log_important("mindmap.cycle.start", session_id=session_id, turns=len(turns), version=graph_version(self._graph))
        result = await self._generate_with_retry(turns)

        if not self._is_current(session_id, epoch):
            logger.info(f"Discarding mindmap result for session {session_id}: session changed during update")
            return False

        nodes, edges = sanitize_candidate({"nodes": result.nodes, "edges": result.edges})
        graph: Graph = {
            "nodes": nodes,
            "edges": edges,
            "metadata": {
                "sessionId": session_id,
                "lastUpdated": now_ms(),
                "version": graph_version(self._graph) + 1,
                "totalTranscripts": len(turns),
            },
        }
        if result.warnings:
            graph["metadata"]["warning"] = "; ".join(result.warnings)
        graph = summarize_older_nodes(graph, self.settings.max_nodes)

        self._commit(graph)
        self._pending = []
        for warning in result.warnings:
            self._publish_status(session_id, "warning", "truncated", warning)
        log_important(
            "mindmap.cycle.ok",
            session_id=session_id,
            nodes=len(graph["nodes"]),
            edges=len(graph["edges"]),
            version=graph["metadata"]["version"],
        )

        try:
            await self._persist(session_id, graph)
        except PersistenceError:
            # Already reported; the in-memory graph stays authoritative.
            pass
        return True

    async def _fetch_transcripts(self, session_id: str) -> list[TranscriptTurn]:
        fetch = self.transcripts.get_all_transcripts_by_session_id
        try:
            if inspect.iscoroutinefunction(fetch):
                rows = await fetch(session_id)
            else:
                rows = await asyncio.to_thread(fetch, session_id)
        except Exception as e:
            raise TranscriptSourceError(f"Failed to read transcripts for session {session_id}: {e}") from e
        return [TranscriptTurn.from_row(r) for r in (rows or [])]

    async def _generate_with_retry(self, turns: list[TranscriptTurn]) -> GenerationResult:
        attempts = self.settings.retry_count + 1
        delay_s = self.settings.retry_delay_ms / 1000.0
        last_error: MindmapError | None = None
        for attempt in range(1, attempts + 1):
            try:
                return await generate_mindmap(turns, self._llm_provider())
            except MindmapError as e:
                if not e.retryable:
                    raise
                last_error = e
                log_important(
                    "mindmap.cycle.retry",
                    level=logging.WARNING,
                    attempt=f"{attempt}/{attempts}",
                    kind=e.kind,
                    error=e,
                )
                if attempt < attempts:
                    await asyncio.sleep(delay_s)
        assert last_error is not None
        raise last_error

    def _is_current(self, session_id: str, epoch: int) -> bool:
        return self._session_id == session_id and self._epoch == epoch

    def _handle_cycle_failure(self, session_id: str, epoch: int, kind: str, message: str) -> None:
        log_important("mindmap.cycle.failed", level=logging.ERROR, session_id=session_id, kind=kind, error=message)
        if not self._is_current(session_id, epoch):
            return
        if self._graph.get("nodes") or graph_version(self._graph) > 0:
            logger.info("Keeping existing mindmap due to error")
        else:
            # No good graph yet: surface the diagnostic on an empty graph.
            graph = empty_graph(session_id)
            graph["metadata"]["lastUpdated"] = now_ms()
            graph["metadata"]["error"] = message
            self._graph = graph
        self._publish_status(session_id, "error", kind, message)

    # ------------------------------------------------------------------
    # Incremental deltas / persistence
    # ------------------------------------------------------------------

    async def apply_delta(self, delta: dict) -> Graph:
        """Merge a partial {nodes, edges} delta into the current graph, bound it, persist and publish."""
        session_id = self._session_id
        if not session_id:
            raise MindmapError("No active session to apply mindmap delta")
        async with self._cycle_lock:
            if session_id != self._session_id:
                raise MindmapError("Session changed before mindmap delta could be applied")
            self._cycle_epoch = self._epoch
            merged = merge_delta(self._graph, delta)
            merged["metadata"]["sessionId"] = session_id
            graph = summarize_older_nodes(merged, self.settings.max_nodes)
            self._commit(graph)
            await self._persist(session_id, graph)
        return copy.deepcopy(graph)

    async def save_current(self) -> None:
        if not self._session_id:
            raise PersistenceError("", "No active session to save mindmap")
        await self._persist(self._session_id, self._graph, force=True)

    async def load_from_persistence(self, session_id: str) -> Graph | None:
        if self.persistence is None:
            return None
        graph = await self.persistence.load_graph(session_id)
        if graph is not None and session_id == self._session_id:
            self._graph = graph  # type: ignore[assignment]
        return copy.deepcopy(graph) if graph is not None else None

    async def _persist(self, session_id: str, graph: Graph, *, force: bool = False) -> None:
        if self.persistence is None or not (self.autosave or force):
            return
        try:
            await self.persistence.save(session_id, graph)
        except PersistenceError as e:
            log_important("mindmap.persist.error", level=logging.ERROR, session_id=session_id, error=e)
            self._publish_status(session_id, "error", e.kind, str(e))
            raise

    # ------------------------------------------------------------------
    # Events
    # ------------------------------------------------------------------

    def _commit(self, graph: Graph) -> None:
        self._graph = graph
        self.events.publish(
            {"type": "mindmap_update", "session_id": self._session_id, "mindmap": copy.deepcopy(graph)}
        )

    def _publish_status(self, session_id: str, status: str, kind: str, message: str) -> None:
        self.events.publish(
            {
                "type": "mindmap_status",
                "session_id": session_id,
                "status": status,
                "kind": kind,
                "message": message,
            }
        )
