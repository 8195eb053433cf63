from openai import AsyncOpenAI
import logging
from dataclasses import dataclass

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ModelCapabilities:
    max_output_tokens: int = 8192
    json_mode: bool = False
    vision: bool = False


# Keyed by (provider, model prefix). Longest matching prefix wins; "" matches any model.
_MODEL_CAPABILITIES: dict[tuple[str, str], ModelCapabilities] = {
    ("openai", ""): ModelCapabilities(max_output_tokens=16384, json_mode=True, vision=False),
    ("openai", "gpt-4o"): ModelCapabilities(max_output_tokens=16384, json_mode=True, vision=True),
    ("openai", "gpt-4.1"): ModelCapabilities(max_output_tokens=16384, json_mode=True, vision=True),
    ("openrouter", ""): ModelCapabilities(max_output_tokens=8192, json_mode=False, vision=False),
    ("openrouter", "openai/"): ModelCapabilities(max_output_tokens=8192, json_mode=True, vision=True),
    ("gemini", ""): ModelCapabilities(max_output_tokens=8192, json_mode=True, vision=True),
}
_DEFAULT_CAPABILITIES = ModelCapabilities()


def model_capabilities(provider: str | None, model: str | None) -> ModelCapabilities:
    p = (provider or "").strip().lower()
    m = (model or "").strip().lower()
    best: ModelCapabilities | None = None
    best_len = -1
    for (cap_provider, prefix), caps in _MODEL_CAPABILITIES.items():
        if cap_provider != p or not m.startswith(prefix):
            continue
        if len(prefix) > best_len:
            best, best_len = caps, len(prefix)
    return best or _DEFAULT_CAPABILITIES


class LLMClient:
    def __init__(
        self,
        api_key,
        base_url="https://api.openai.com/v1",
        model="gpt-4o-mini",
        default_headers=None,
        *,
        provider: str = "primary",
        fallback_routes=None,
        failover_enabled: bool = True,
    ):
        self.failover_enabled = bool(failover_enabled)
        self._active_endpoint_index = 0
        self.endpoints = []
        self._config_signature = None

        self._add_endpoint(
            {
                "provider": provider,
                "api_key": api_key,
                "base_url": base_url,
                "model": model,
                "api_extra_headers": default_headers,
            }
        )
        for route in (fallback_routes or []):
            self._add_endpoint(route)

        if not self.endpoints:
            raise ValueError("LLMClient requires at least one endpoint with an API key.")

        self._refresh_compat_fields()

    def set_config_signature(self, sig) -> None:
        self._config_signature = sig

    def get_config_signature(self):
        return self._config_signature

    def _add_endpoint(self, route: dict) -> None:
        if not isinstance(route, dict):
            return
        api_key = str(route.get("api_key") or "").strip()
        if not api_key:
            return

        base_url = str(route.get("base_url") or "").strip()
        model = str(route.get("model") or "").strip()
        if not base_url or not model:
            return

        headers = route.get("api_extra_headers", route.get("default_headers"))
        if not isinstance(headers, dict):
            headers = {}
        provider = str(route.get("provider") or "custom").strip().lower() or "custom"

        ep = {
            "provider": provider,
            "api_key": api_key,
            "base_url": base_url,
            "model": model,
            "api_extra_headers": headers,
            "client": AsyncOpenAI(
                api_key=api_key,
                base_url=base_url,
                default_headers=headers,
            ),
        }

        # Keep first occurrence by unique connection tuple.
        for cur in self.endpoints:
            if (
                cur.get("base_url") == ep["base_url"]
                and cur.get("model") == ep["model"]
                and cur.get("api_key") == ep["api_key"]
                and cur.get("api_extra_headers") == ep["api_extra_headers"]
            ):
                return

        self.endpoints.append(ep)

    def _refresh_compat_fields(self) -> None:
        idx = self._active_endpoint_index
        if idx < 0 or idx >= len(self.endpoints):
            idx = 0
            self._active_endpoint_index = 0
        ep = self.endpoints[idx]
        self.provider = ep["provider"]
        self.api_key = ep["api_key"]
        self.base_url = ep["base_url"]
        self.default_headers = ep["api_extra_headers"]
        self.model = ep["model"]
        self.client = ep["client"]

    @property
    def capabilities(self) -> ModelCapabilities:
        return model_capabilities(self.provider, self.model)

    async def chat_create(self, **kwargs):
        if not self.endpoints:
            raise RuntimeError("No LLM endpoints configured")

        errors = []
        attempt_count = len(self.endpoints) if self.failover_enabled else 1
        for idx in range(attempt_count):
            ep = self.endpoints[idx]
            req = dict(kwargs)
            req["model"] = ep["model"]
            try:
                resp = await ep["client"].chat.completions.create(**req)
                prev_idx = self._active_endpoint_index
                self._active_endpoint_index = idx
                self._refresh_compat_fields()
                if idx != prev_idx:
                    logger.warning(
                        "LLM failover selected endpoint #%s (%s %s)",
                        idx + 1,
                        ep["provider"],
                        ep["base_url"],
                    )
                return resp
            except Exception as e:
                errors.append(
                    f"#{idx + 1} {ep['provider']} {ep['base_url']} ({ep['model']}): {e}"
                )
                if idx + 1 < attempt_count:
                    logger.warning(
                        "LLM endpoint failed, trying fallback #%s: %s (%s) -> %s",
                        idx + 2,
                        ep["provider"],
                        ep["base_url"],
                        e,
                    )
                continue

        if errors:
            raise RuntimeError("All configured LLM APIs failed. " + " | ".join(errors))
        raise RuntimeError("LLM request failed")

    async def chat(self, messages, *, max_tokens: int | None = None, temperature: float = 0.3, json_mode: bool = False):
        """Single non-streaming completion. Returns the raw SDK response."""
        req = {
            "messages": list(messages),
            "stream": False,
            "temperature": temperature,
        }
        if max_tokens:
            req["max_tokens"] = int(max_tokens)
        if json_mode:
            req["response_format"] = {"type": "json_object"}
        return await self.chat_create(**req)
