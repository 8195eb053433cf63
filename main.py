import asyncio
import json
import os
import socket
import sys
import logging
import faulthandler
from contextlib import asynccontextmanager, suppress

import uvicorn
from fastapi import FastAPI, WebSocket, Request
from fastapi.responses import JSONResponse
from starlette.websockets import WebSocketDisconnect

from backend.events import EventBus
from backend.important_log import important_logger, log_important
from backend.llm import LLMClient
from backend.mindmap_errors import MindmapError, PersistenceError
from backend.mindmap_service import MindmapEngine
from backend.persistence import JsonSummaryRepository, MindmapPersistence
from backend.settings import (
    DEFAULT_CONFIG,
    MindmapSettings,
    _coerce_headers,
    _effective_api_routes,
    _sanitize_config_values,
    get_data_dir,
    load_config,
    save_config,
)
from backend.transcript_store import JsonTranscriptRepository

# Setup Logging
logging.basicConfig(level=logging.INFO, format='%(asctime)s - %(name)s - %(levelname)s - %(message)s')
logger = logging.getLogger("Main")

_NOISY_LOGGERS = (
    "uvicorn.access",
    "openai",
    "httpx",
)

# Best-effort: dump tracebacks on native crashes (segfault/abort).
with suppress(Exception):
    faulthandler.enable(all_threads=True)


def _apply_runtime_log_levels(cfg: dict) -> None:
    verbose = bool((cfg or {}).get("verbose_logging", False))

    # App loggers go to DEBUG in verbose mode; IMPORTANT lines always stay visible.
    level = logging.DEBUG if verbose else logging.INFO
    logger.setLevel(level)
    logging.getLogger("backend").setLevel(level)
    important_logger.setLevel(logging.INFO)

    noisy_level = logging.INFO if verbose else logging.WARNING
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(noisy_level)

    log_important(
        "logging.mode",
        dedupe_key=f"verbose={verbose}",
        dedupe_window_s=0.5,
        verbose=verbose,
        noisy_level=("info" if verbose else "warning"),
    )


# Configuration
config = load_config()
_apply_runtime_log_levels(config)

_DATA_DIR = get_data_dir()

# Global State
llm_client: LLMClient | None = None
event_bus = EventBus()
transcript_repository = JsonTranscriptRepository(_DATA_DIR / "transcripts")
summary_repository = JsonSummaryRepository(_DATA_DIR / "summaries")


def _get_llm_client() -> LLMClient | None:
    return llm_client


def _build_engine(cfg: dict) -> MindmapEngine:
    return MindmapEngine(
        transcripts=transcript_repository,
        llm_provider=_get_llm_client,
        persistence=MindmapPersistence(summary_repository),
        settings=MindmapSettings.from_config(cfg),
        events=event_bus,
        autosave=bool(cfg.get("autosave_enabled", True)),
    )


mindmap_engine = _build_engine(config)
_background_tasks: set[asyncio.Task] = set()


def _apply_mindmap_config(cfg: dict) -> None:
    # Cadence/bounds take effect on the next armed timer.
    mindmap_engine.settings = MindmapSettings.from_config(cfg)
    mindmap_engine.autosave = bool(cfg.get("autosave_enabled", True))


def init_llm_client_from_config() -> None:
    global llm_client

    routes = _effective_api_routes(config)
    if not routes:
        llm_client = None
        log_important(
            "llm.unconfigured",
            level=logging.WARNING,
            dedupe_key="no-api-key",
            dedupe_window_s=30.0,
            provider=config.get("api_provider"),
        )
        return

    fallback_enabled = bool(config.get("api_fallback_enabled", True))
    if not fallback_enabled:
        routes = routes[:1]

    first = routes[0]
    model = str(first.get("model") or "")
    base_url = str(first.get("base_url") or "")
    extra_headers = _coerce_headers(first.get("api_extra_headers"))
    fallback_routes = [
        {
            "provider": str(r.get("provider") or "custom"),
            "api_key": str(r.get("api_key") or ""),
            "base_url": str(r.get("base_url") or ""),
            "model": str(r.get("model") or ""),
            "api_extra_headers": _coerce_headers(r.get("api_extra_headers")),
        }
        for r in routes[1:]
    ]
    signature = {
        "fallback_enabled": fallback_enabled,
        "routes": [
            {
                "provider": str(r.get("provider") or "custom"),
                "base_url": str(r.get("base_url") or ""),
                "model": str(r.get("model") or ""),
                "api_key": str(r.get("api_key") or ""),
                "api_extra_headers": _coerce_headers(r.get("api_extra_headers")),
            }
            for r in routes
        ],
    }

    if llm_client is not None and llm_client.get_config_signature() == signature:
        return

    llm_client = LLMClient(
        api_key=str(first.get("api_key") or ""),
        base_url=base_url,
        model=model,
        default_headers=extra_headers,
        provider=str(first.get("provider") or "custom"),
        fallback_routes=fallback_routes,
        failover_enabled=fallback_enabled,
    )
    llm_client.set_config_signature(signature)
    log_important(
        "llm.configured",
        provider=first.get("provider"),
        model=model,
        base_url=base_url,
        extra_headers=len(extra_headers or {}),
        fallback_enabled=fallback_enabled,
        routes=len(routes),
    )


@asynccontextmanager
async def lifespan(app: FastAPI):
    logger.info("Server starting...")
    log_important("server.starting")
    init_llm_client_from_config()
    yield
    logger.info("Shutting down...")
    log_important("server.stopping")
    await mindmap_engine.stop()
    if mindmap_engine.session_id and config.get("autosave_enabled", True):
        with suppress(PersistenceError):
            await mindmap_engine.save_current()


app = FastAPI(lifespan=lifespan)


async def _ws_send_json(
    websocket: WebSocket,
    payload: dict,
    send_lock: asyncio.Lock | None = None,
) -> bool:
    try:
        if send_lock is None:
            await websocket.send_json(payload)
        else:
            async with send_lock:
                await websocket.send_json(payload)
        return True
    except Exception:
        return False


async def _read_json_object(request: Request) -> dict | JSONResponse:
    try:
        data = await request.json()
    except Exception:
        return JSONResponse({"status": "error", "message": "Invalid JSON"}, status_code=400)
    if not isinstance(data, dict):
        return JSONResponse({"status": "error", "message": "JSON body must be an object"}, status_code=400)
    return data


# ============================================
# SETTINGS
# ============================================

@app.get("/api/settings")
def get_settings():
    return {"status": "ok", "config": config}


@app.post("/api/settings")
async def update_settings(request: Request):
    global config
    data = await _read_json_object(request)
    if isinstance(data, JSONResponse):
        return data

    prev_config = dict(config)
    config = _sanitize_config_values(data, base=config)
    try:
        save_config(config)
    except Exception as e:
        return JSONResponse({"status": "error", "message": f"Failed to save settings: {e}"}, status_code=500)

    _apply_runtime_log_levels(config)
    init_llm_client_from_config()
    _apply_mindmap_config(config)
    changed = [k for k in config.keys() if config.get(k) != prev_config.get(k)]
    changed_list = ",".join(changed[:12]) + (",..." if len(changed) > 12 else "")
    log_important(
        "settings.updated",
        changed_count=len(changed),
        changed_keys=(changed_list or "-"),
    )
    return {"status": "ok", "config": config}


@app.post("/api/settings/reset")
def api_reset_settings():
    """Reset settings to defaults and persist to disk."""
    global config

    config = _sanitize_config_values({}, base=DEFAULT_CONFIG)
    try:
        save_config(config)
    except Exception as e:
        return JSONResponse({"status": "error", "message": f"Failed to save settings: {e}"}, status_code=500)

    _apply_runtime_log_levels(config)
    init_llm_client_from_config()
    _apply_mindmap_config(config)
    log_important("settings.reset")
    return {"status": "ok", "config": config}


# ============================================
# MINDMAP
# ============================================

@app.post("/api/mindmap/session")
async def api_bind_session(request: Request):
    data = await _read_json_object(request)
    if isinstance(data, JSONResponse):
        return data
    session_id = str(data.get("session_id") or "").strip()
    if not session_id:
        return JSONResponse({"status": "error", "message": "session_id is required"}, status_code=400)
    mindmap_engine.bind_session(session_id)
    return {"status": "ok", "session_id": session_id, "mindmap": mindmap_engine.get_current_graph()}


@app.post("/api/mindmap/transcript")
async def api_add_transcript(request: Request):
    data = await _read_json_object(request)
    if isinstance(data, JSONResponse):
        return data
    session_id = mindmap_engine.session_id
    if not session_id:
        return JSONResponse({"status": "error", "message": "No active session"}, status_code=409)
    text = str(data.get("text") or "").strip()
    if not text:
        return JSONResponse({"status": "error", "message": "text is required"}, status_code=400)
    speaker = str(data.get("speaker") or "unknown").strip() or "unknown"

    try:
        turn = await asyncio.to_thread(
            transcript_repository.add_transcript, session_id, speaker, text, data.get("start_at")
        )
    except Exception as e:
        logger.exception("Failed to store transcript")
        return JSONResponse({"status": "error", "message": f"Failed to store transcript: {e}"}, status_code=500)

    if config.get("mindmap_enabled", True):
        mindmap_engine.record_turn(speaker, text)
    return {
        "status": "ok",
        "transcript": {"speaker": turn.speaker, "text": turn.text, "start_at": turn.start_at},
        "pending_turns": mindmap_engine.pending_turns,
    }


@app.get("/api/mindmap")
def api_get_mindmap():
    return {"status": "ok", "mindmap": mindmap_engine.get_current_graph()}


@app.post("/api/mindmap/reset")
def api_reset_mindmap():
    mindmap_engine.reset_session()
    return {"status": "ok", "mindmap": mindmap_engine.get_current_graph()}


@app.get("/api/mindmap/conversation")
def api_get_conversation(max_turns: int | None = None):
    return {
        "status": "ok",
        "session_id": mindmap_engine.session_id,
        "conversation": mindmap_engine.format_conversation(max_turns),
    }


@app.get("/api/mindmap/{session_id}/stored")
async def api_get_stored_mindmap(session_id: str):
    try:
        graph = await mindmap_engine.load_from_persistence(session_id)
    except PersistenceError as e:
        return JSONResponse({"status": "error", "message": str(e)}, status_code=500)
    if graph is None:
        return JSONResponse({"status": "error", "message": "Mindmap not found"}, status_code=404)
    return {"status": "ok", "mindmap": graph}


@app.post("/api/mindmap/delta")
async def api_apply_delta(request: Request):
    data = await _read_json_object(request)
    if isinstance(data, JSONResponse):
        return data
    delta = {"nodes": data.get("nodes") or [], "edges": data.get("edges") or []}
    try:
        graph = await mindmap_engine.apply_delta(delta)
    except PersistenceError as e:
        return JSONResponse(
            {"status": "error", "message": str(e), "mindmap": mindmap_engine.get_current_graph()},
            status_code=500,
        )
    except MindmapError as e:
        return JSONResponse({"status": "error", "message": str(e)}, status_code=409)
    return {"status": "ok", "mindmap": graph}


@app.websocket("/ws/mindmap")
async def mindmap_websocket(websocket: WebSocket):
    await websocket.accept()
    logger.info("WebSocket connected")
    log_important("ws.connected", subscribers=event_bus.subscriber_count + 1)

    send_lock = asyncio.Lock()
    events = event_bus.subscribe()

    async def _forward_events() -> None:
        while True:
            event = await events.get()
            if not await _ws_send_json(websocket, event, send_lock):
                return

    forward_task = asyncio.create_task(_forward_events())
    await _ws_send_json(
        websocket,
        {
            "type": "mindmap_update",
            "session_id": mindmap_engine.session_id,
            "mindmap": mindmap_engine.get_current_graph(),
        },
        send_lock,
    )

    try:
        while True:
            raw = await websocket.receive_text()
            try:
                message = json.loads(raw)
            except json.JSONDecodeError:
                continue
            if not isinstance(message, dict):
                continue
            msg_type = message.get("type")
            if msg_type == "get_mindmap":
                await _ws_send_json(
                    websocket,
                    {
                        "type": "mindmap_update",
                        "session_id": mindmap_engine.session_id,
                        "mindmap": mindmap_engine.get_current_graph(),
                    },
                    send_lock,
                )
            elif msg_type == "refresh_mindmap":
                task = asyncio.create_task(mindmap_engine.run_cycle())
                _background_tasks.add(task)
                task.add_done_callback(_background_tasks.discard)
    except WebSocketDisconnect as e:
        logger.info(f"WebSocket disconnected (code={getattr(e, 'code', None)})")
        log_important("ws.disconnected", code=getattr(e, "code", None))
    except Exception:
        logger.exception("WebSocket crashed")
        log_important("ws.crashed", level=logging.ERROR)
    finally:
        event_bus.unsubscribe(events)
        forward_task.cancel()
        with suppress(BaseException):
            await forward_task


def find_available_port(host: str, preferred_port: int) -> int:
    for port in range(preferred_port, preferred_port + 100):
        with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
            try:
                s.bind((host, port))
                return port
            except OSError:
                continue

    with socket.socket(socket.AF_INET, socket.SOCK_STREAM) as s:
        s.bind((host, 0))
        return int(s.getsockname()[1])


def start_server(host: str, port: int):
    uvicorn.run(app, host=host, port=port, log_level="info")


if __name__ == "__main__":
    try:
        server_host = os.environ.get("AI_ASSISTANT_HOST", "127.0.0.1")
        preferred_port = int(os.environ.get("AI_ASSISTANT_PORT", "8000"))
        server_port = find_available_port(server_host, preferred_port)
        logger.info(f"Starting server on http://{server_host}:{server_port}")
        try:
            start_server(server_host, server_port)
        except KeyboardInterrupt:
            logger.info("Stopping...")
    except Exception as e:
        logger.exception("Fatal error during startup:")
        print(f"\n\nFATAL ERROR: {e}\n")
        sys.exit(1)
