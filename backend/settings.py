import json
import logging
import os
from dataclasses import dataclass
from pathlib import Path

logger = logging.getLogger(__name__)


DEFAULT_CONFIG = {
    # API
    "api_provider": "openai",  # "openai", "openrouter", "gemini", "custom", ...
    "api_key": "",
    "base_url": "https://api.openai.com/v1",
    "model": "gpt-4o-mini",
    "api_extra_headers": {},  # Optional extra headers passed to the OpenAI-compatible client.
    "api_fallback_enabled": True,
    # Ordered fallback routes (each entry mirrors primary API fields).
    # Example:
    # [{"provider":"openrouter","api_key":"...","base_url":"https://openrouter.ai/api/v1","model":"openai/gpt-4o-mini"}]
    "api_routes": [],

    # Mindmap
    "mindmap_enabled": True,
    "mindmap_update_interval_ms": 60000,
    "mindmap_retry_count": 2,
    "mindmap_retry_delay_ms": 2000,
    "mindmap_max_nodes": 200,
    # Turns echoed into prompts built from the rolling conversation log.
    "mindmap_merge_context_turns": 50,

    # Session management
    "autosave_enabled": True,
    "verbose_logging": False,
}

# Environment overrides for the mindmap cadence/bounds (applied after settings.json).
_ENV_OVERRIDES = {
    "MINDMAP_UPDATE_INTERVAL_MS": "mindmap_update_interval_ms",
    "MINDMAP_RETRY_COUNT": "mindmap_retry_count",
    "MINDMAP_RETRY_DELAY_MS": "mindmap_retry_delay_ms",
    "MINDMAP_MAX_NODES": "mindmap_max_nodes",
    "MINDMAP_MERGE_CONTEXT_TURNS": "mindmap_merge_context_turns",
}


_API_PROVIDER_PRESETS: dict[str, dict[str, object]] = {
    "openrouter": {
        "base_url": "https://openrouter.ai/api/v1",
        "model": "openai/gpt-4o-mini",
        "api_key_env": "OPENROUTER_API_KEY",
    },
    "openai": {
        "base_url": "https://api.openai.com/v1",
        "model": "gpt-4o-mini",
        "api_key_env": "OPENAI_API_KEY",
    },
    # Gemini via OpenAI-compatible endpoint.
    "gemini": {
        "base_url": "https://generativelanguage.googleapis.com/v1beta/openai",
        "model": "gemini-2.5-flash",
        "api_key_env": "GEMINI_API_KEY",
    },
    # HF Inference Providers router (OpenAI-compatible).
    "huggingface": {
        "base_url": "https://router.huggingface.co/v1",
        "model": "HuggingFaceTB/SmolLM2-1.7B-Instruct:groq",
        "api_key_envs": ["HF_TOKEN", "HUGGINGFACEHUB_API_TOKEN"],
    },
    "custom": {},
}


def _get_config_path() -> Path:
    configured = os.environ.get("AI_ASSISTANT_CONFIG_PATH")
    if configured:
        return Path(configured).expanduser().resolve()

    base_dir = os.environ.get("APPDATA") or str(Path.home())
    config_dir = Path(base_dir) / "AI Assistant"
    return (config_dir / "settings.json").resolve()


def get_data_dir() -> Path:
    configured = os.environ.get("AI_ASSISTANT_DATA_DIR")
    if configured:
        data_dir = Path(configured).expanduser()
    else:
        base_dir = os.environ.get("APPDATA") or str(Path.home())
        data_dir = Path(base_dir) / "AI Assistant" / "data"
    data_dir.mkdir(parents=True, exist_ok=True)
    return data_dir


def _normalize_api_provider(provider: str | None) -> str:
    p = (provider or "").strip().casefold()
    if not p:
        return "custom"
    p = p.replace("-", "_").replace(" ", "_")
    if p in ("hf", "hugging_face"):
        p = "huggingface"
    if p in ("google", "google_ai", "google_gemini"):
        p = "gemini"
    if p in ("open_router",):
        p = "openrouter"
    if p not in _API_PROVIDER_PRESETS:
        return "custom"
    return p


def _infer_provider_from_base_url(base_url: str | None) -> str:
    u = (base_url or "").strip().casefold()
    if not u:
        return "custom"
    if "openrouter.ai" in u:
        return "openrouter"
    if "api.openai.com" in u:
        return "openai"
    if "router.huggingface.co" in u or "api-inference.huggingface.co" in u:
        return "huggingface"
    if "generativelanguage.googleapis.com" in u:
        return "gemini"
    return "custom"


def _coerce_headers(value: object) -> dict[str, str]:
    if isinstance(value, dict):
        out: dict[str, str] = {}
        for k, v in value.items():
            ks = str(k).strip()
            vs = str(v).strip()
            if ks and vs:
                out[ks] = vs
        return out
    if isinstance(value, str):
        s = value.strip()
        if not s:
            return {}
        try:
            data = json.loads(s)
        except Exception:
            return {}
        return _coerce_headers(data)
    return {}


def _coerce_bool(value: object, default: bool) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, (int, float)):
        return bool(value)
    if isinstance(value, str):
        s = value.strip().lower()
        if s in ("1", "true", "yes", "on", "y"):
            return True
        if s in ("0", "false", "no", "off", "n", ""):
            return False
    return default


def _coerce_str(value: object, default: str, *, strip: bool = True, max_len: int | None = None) -> str:
    if value is None:
        out = default
    elif isinstance(value, str):
        out = value
    else:
        out = str(value)
    if strip:
        out = out.strip()
    if max_len is not None and max_len >= 0:
        out = out[:max_len]
    return out


def _coerce_int_in_range(value: object, default: int, *, min_v: int | None = None, max_v: int | None = None) -> int:
    try:
        out = int(float(value))
    except Exception:
        out = int(default)
    if min_v is not None and out < min_v:
        out = min_v
    if max_v is not None and out > max_v:
        out = max_v
    return out


def _sanitize_api_route_entry(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None

    base_url_raw = _coerce_str(value.get("base_url"), "", max_len=2048)
    provider = _normalize_api_provider(_coerce_str(value.get("provider"), ""))
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider
    preset = _API_PROVIDER_PRESETS.get(provider, {})

    base_url = base_url_raw or str(preset.get("base_url") or "")
    model = _coerce_str(
        value.get("model"),
        str(preset.get("model") or DEFAULT_CONFIG["model"]),
        max_len=512,
    ) or str(DEFAULT_CONFIG["model"])
    api_key = _coerce_str(value.get("api_key"), "", max_len=4096)
    extra_headers = {**_coerce_headers(preset.get("api_extra_headers")), **_coerce_headers(value.get("api_extra_headers"))}
    enabled = _coerce_bool(value.get("enabled"), True)

    if not base_url:
        return None

    return {
        "provider": provider,
        "api_key": api_key,
        "base_url": base_url,
        "model": model,
        "api_extra_headers": extra_headers,
        "enabled": enabled,
    }


def _coerce_api_routes_list(value: object) -> list[dict[str, object]]:
    if not isinstance(value, list):
        return []
    out: list[dict[str, object]] = []
    for raw in value:
        item = _sanitize_api_route_entry(raw)
        if not item:
            continue
        out.append(item)
        if len(out) >= 8:
            break
    return out


def _sanitize_config_values(raw: dict | None, *, base: dict | None = None) -> dict:
    raw_dict = raw if isinstance(raw, dict) else {}
    src: dict[str, object] = {}
    if isinstance(base, dict):
        src.update(base)
    if raw_dict:
        src.update(raw_dict)

    provider = _normalize_api_provider(_coerce_str(src.get("api_provider"), str(DEFAULT_CONFIG["api_provider"])))
    base_url_raw = _coerce_str(src.get("base_url"), str(DEFAULT_CONFIG["base_url"]), max_len=2048)
    inferred_provider = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred_provider != "custom":
        provider = inferred_provider

    out: dict[str, object] = dict(DEFAULT_CONFIG)

    out["api_provider"] = provider
    out["api_key"] = _coerce_str(src.get("api_key"), "", max_len=4096)
    out["base_url"] = base_url_raw or str(DEFAULT_CONFIG["base_url"])
    out["model"] = _coerce_str(src.get("model"), str(DEFAULT_CONFIG["model"]), max_len=512) or str(DEFAULT_CONFIG["model"])
    out["api_extra_headers"] = _coerce_headers(src.get("api_extra_headers"))
    out["api_fallback_enabled"] = _coerce_bool(
        src.get("api_fallback_enabled"),
        bool(DEFAULT_CONFIG["api_fallback_enabled"]),
    )
    out["api_routes"] = _coerce_api_routes_list(src.get("api_routes"))

    out["mindmap_enabled"] = _coerce_bool(src.get("mindmap_enabled"), bool(DEFAULT_CONFIG["mindmap_enabled"]))
    out["mindmap_update_interval_ms"] = _coerce_int_in_range(
        src.get("mindmap_update_interval_ms"), 60000, min_v=1000, max_v=3_600_000
    )
    out["mindmap_retry_count"] = _coerce_int_in_range(src.get("mindmap_retry_count"), 2, min_v=0, max_v=10)
    out["mindmap_retry_delay_ms"] = _coerce_int_in_range(src.get("mindmap_retry_delay_ms"), 2000, min_v=0, max_v=60000)
    out["mindmap_max_nodes"] = _coerce_int_in_range(src.get("mindmap_max_nodes"), 200, min_v=10, max_v=5000)
    out["mindmap_merge_context_turns"] = _coerce_int_in_range(
        src.get("mindmap_merge_context_turns"), 50, min_v=1, max_v=5000
    )

    out["autosave_enabled"] = _coerce_bool(src.get("autosave_enabled"), bool(DEFAULT_CONFIG["autosave_enabled"]))
    out["verbose_logging"] = _coerce_bool(src.get("verbose_logging"), bool(DEFAULT_CONFIG["verbose_logging"]))
    return out


def _env_overrides(environ: dict | None = None) -> dict:
    env = os.environ if environ is None else environ
    out: dict[str, object] = {}
    for env_name, key in _ENV_OVERRIDES.items():
        value = (env.get(env_name) or "").strip()
        if value:
            out[key] = value
    return out


def _resolve_api_key_for_provider(provider: str, explicit_key: object) -> str:
    api_key = _coerce_str(explicit_key, "", max_len=4096)
    if api_key:
        return api_key

    preset = _API_PROVIDER_PRESETS.get(_normalize_api_provider(provider), {})
    env_names = preset.get("api_key_envs")
    if isinstance(env_names, list):
        for env_name in env_names:
            if not isinstance(env_name, str):
                continue
            api_key = (os.environ.get(env_name) or "").strip()
            if api_key:
                return api_key

    env_name = preset.get("api_key_env")
    if isinstance(env_name, str) and env_name:
        api_key = (os.environ.get(env_name) or "").strip()
        if api_key:
            return api_key

    return ""


def _effective_api_route_from_values(values: dict[str, object]) -> dict[str, object]:
    base_url_raw = _coerce_str(values.get("base_url"), "", max_len=2048)
    provider = _normalize_api_provider(_coerce_str(values.get("provider"), ""))
    inferred = _infer_provider_from_base_url(base_url_raw)
    if provider == "custom" and inferred != "custom":
        provider = inferred
    preset = _API_PROVIDER_PRESETS.get(provider, {})

    base_url = (
        base_url_raw
        or (preset.get("base_url") if isinstance(preset.get("base_url"), str) else "")
        or str(DEFAULT_CONFIG["base_url"])
    )
    model = (
        _coerce_str(values.get("model"), "", max_len=512)
        or (preset.get("model") if isinstance(preset.get("model"), str) else "")
        or str(DEFAULT_CONFIG["model"])
    )
    extra_headers = {**_coerce_headers(preset.get("api_extra_headers")), **_coerce_headers(values.get("api_extra_headers"))}
    api_key = _resolve_api_key_for_provider(provider, values.get("api_key"))
    enabled = _coerce_bool(values.get("enabled"), True)

    return {
        "provider": provider,
        "api_key": api_key,
        "base_url": base_url,
        "model": model,
        "api_extra_headers": extra_headers,
        "enabled": enabled,
    }


def _effective_api_routes(cfg: dict) -> list[dict[str, object]]:
    raw_primary = {
        "provider": cfg.get("api_provider"),
        "api_key": cfg.get("api_key"),
        "base_url": cfg.get("base_url"),
        "model": cfg.get("model"),
        "api_extra_headers": cfg.get("api_extra_headers"),
        "enabled": True,
    }
    candidates: list[dict[str, object]] = [_effective_api_route_from_values(raw_primary)]
    for route in _coerce_api_routes_list(cfg.get("api_routes")):
        candidates.append(_effective_api_route_from_values(route))

    out: list[dict[str, object]] = []
    seen: set[tuple[str, str, str, str, str]] = set()
    for item in candidates:
        if not _coerce_bool(item.get("enabled"), True):
            continue
        api_key = _coerce_str(item.get("api_key"), "", max_len=4096)
        if not api_key:
            continue
        base_url = _coerce_str(item.get("base_url"), "", max_len=2048)
        model = _coerce_str(item.get("model"), "", max_len=512)
        provider = _normalize_api_provider(_coerce_str(item.get("provider"), "custom"))
        headers = _coerce_headers(item.get("api_extra_headers"))
        try:
            hdr_sig = json.dumps(headers, sort_keys=True, separators=(",", ":"))
        except Exception:
            hdr_sig = "{}"
        sig = (provider, base_url, model, api_key, hdr_sig)
        if sig in seen:
            continue
        seen.add(sig)
        out.append(
            {
                "provider": provider,
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": headers,
            }
        )
        if len(out) >= 8:
            break

    return out


def load_config(path: Path | None = None, *, environ: dict | None = None) -> dict:
    cfg_path = path or _get_config_path()
    loaded: dict = {}
    try:
        if cfg_path.is_file():
            data = json.loads(cfg_path.read_text(encoding="utf-8"))
            if isinstance(data, dict):
                loaded = data
    except Exception:
        logger.exception("Failed to load settings file")
    loaded = {**loaded, **_env_overrides(environ)}
    return _sanitize_config_values(loaded, base=DEFAULT_CONFIG)


def save_config(cfg: dict, path: Path | None = None) -> None:
    cfg_path = path or _get_config_path()
    clean_cfg = _sanitize_config_values(cfg, base=DEFAULT_CONFIG)
    try:
        cfg_path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = cfg_path.with_suffix(cfg_path.suffix + ".tmp")
        tmp_path.write_text(json.dumps(clean_cfg, indent=2), encoding="utf-8")
        tmp_path.replace(cfg_path)
    except Exception:
        logger.exception("Failed to save settings file")
        raise


@dataclass
class MindmapSettings:
    """Cadence and size bounds for the mindmap engine."""
    update_interval_ms: int = 60000
    retry_count: int = 2
    retry_delay_ms: int = 2000
    max_nodes: int = 200
    merge_context_turns: int = 50

    @classmethod
    def from_config(cls, cfg: dict) -> "MindmapSettings":
        clean = _sanitize_config_values(cfg, base=DEFAULT_CONFIG)
        return cls(
            update_interval_ms=int(clean["mindmap_update_interval_ms"]),
            retry_count=int(clean["mindmap_retry_count"]),
            retry_delay_ms=int(clean["mindmap_retry_delay_ms"]),
            max_nodes=int(clean["mindmap_max_nodes"]),
            merge_context_turns=int(clean["mindmap_merge_context_turns"]),
        )
