"""
Normalization of chat responses into plain text + finish reason.

Providers hand back several incompatible shapes. Each shape gets a small extractor that
probes the object structurally; `normalize_chat_response` walks them in priority order.
Adding a provider shape means adding one extractor to `RESPONSE_EXTRACTORS`.
"""

from __future__ import annotations

import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from backend.mindmap_errors import EmptyResponseError, InvalidStructureError, JsonParseError, NoJsonFoundError

logger = logging.getLogger(__name__)

_TRUNCATION_REASONS = {"length", "max_tokens", "max_output_tokens"}
_FENCE_RE = re.compile(r"```(?:json)?\n?")
_GREEDY_OBJECT_RE = re.compile(r"\{.*\}", re.DOTALL)
EXCERPT_CHARS = 200


@dataclass
class ExtractedText:
    text: str
    finish_reason: str | None = None
    source: str = ""

    @property
    def truncated(self) -> bool:
        return is_truncation_reason(self.finish_reason)


def is_truncation_reason(reason: Any) -> bool:
    return bool(reason) and str(reason).strip().casefold() in _TRUNCATION_REASONS


def _field(obj: Any, name: str) -> Any:
    if obj is None:
        return None
    if isinstance(obj, dict):
        return obj.get(name)
    return getattr(obj, name, None)


def _first(seq: Any) -> Any:
    if isinstance(seq, (list, tuple)) and seq:
        return seq[0]
    return None


def _text_from_content_value(content_val: Any) -> str:
    if isinstance(content_val, str):
        return content_val
    if not isinstance(content_val, list):
        return "" if content_val is None else str(content_val)

    parts: list[str] = []
    for item in content_val:
        if isinstance(item, str):
            parts.append(item)
            continue
        txt = _field(item, "text")
        if isinstance(txt, str) and txt.strip():
            parts.append(txt)
            continue
        # Some SDK/providers nest text payloads under content blocks.
        nested = _field(item, "content")
        if isinstance(nested, str) and nested.strip():
            parts.append(nested)
    return "\n".join(p for p in parts if p).strip()


def _call_text(value: Any) -> str:
    if callable(value):
        try:
            value = value()
        except Exception as e:
            logger.warning(f"Response text() accessor failed: {e}")
            return ""
    if value is None:
        return ""
    return value if isinstance(value, str) else str(value)


def _openai_choice_text(payload: Any) -> tuple[str, str | None] | None:
    choice = _first(_field(payload, "choices"))
    if choice is None:
        return None
    message = _field(choice, "message")
    if message is None:
        return None
    return _text_from_content_value(_field(message, "content")), _field(choice, "finish_reason")


class ContentFieldExtractor:
    """`response.content` as returned by most chat wrappers."""
    name = "content"

    def probe(self, response: Any) -> bool:
        return bool(_field(response, "content"))

    def extract(self, response: Any) -> ExtractedText:
        text = _text_from_content_value(_field(response, "content"))
        finish_reason = None
        raw_choice = _first(_field(_field(response, "raw"), "choices"))
        if raw_choice is not None:
            finish_reason = _field(raw_choice, "finish_reason")
        return ExtractedText(text=text, finish_reason=finish_reason, source=self.name)


class TextFieldExtractor:
    """`response.text` as a plain string or a zero-argument accessor."""
    name = "text"

    def probe(self, response: Any) -> bool:
        return bool(_field(response, "text"))

    def extract(self, response: Any) -> ExtractedText:
        return ExtractedText(text=_call_text(_field(response, "text")), source=self.name)


class RawOpenAIExtractor:
    """Provider-native OpenAI payload under `response.raw`."""
    name = "raw_openai"

    def probe(self, response: Any) -> bool:
        return _openai_choice_text(_field(response, "raw")) is not None

    def extract(self, response: Any) -> ExtractedText:
        text, finish_reason = _openai_choice_text(_field(response, "raw")) or ("", None)
        return ExtractedText(text=text, finish_reason=finish_reason, source=self.name)


class RawGeminiExtractor:
    """Provider-native Gemini payload: `raw.response.text()` or `candidates[0].content.parts`."""
    name = "raw_gemini"

    def probe(self, response: Any) -> bool:
        raw = _field(response, "raw")
        return _field(raw, "response") is not None or bool(_field(raw, "candidates"))

    @staticmethod
    def _candidate_text(candidate: Any) -> str:
        content = _field(candidate, "content")
        if content is None:
            return ""
        if isinstance(content, str):
            return content
        parts = _field(content, "parts")
        if isinstance(parts, (list, tuple)):
            texts = []
            for part in parts:
                if isinstance(part, str):
                    texts.append(part)
                    continue
                txt = _field(part, "text")
                if txt:
                    texts.append(str(txt))
            joined = "".join(t for t in texts if t)
            if joined:
                return joined
        return _call_text(_field(content, "text"))

    def extract(self, response: Any) -> ExtractedText:
        raw = _field(response, "raw")
        text = ""
        finish_reason = None

        inner = _field(raw, "response")
        if inner is not None:
            finish_reason = _field(inner, "finishReason")
            text = _call_text(_field(inner, "text"))
            if not text:
                candidate = _first(_field(inner, "candidates"))
                if candidate is not None:
                    finish_reason = _field(candidate, "finishReason") or finish_reason
                    text = self._candidate_text(candidate)

        if not text:
            candidate = _first(_field(raw, "candidates"))
            if candidate is not None:
                finish_reason = _field(candidate, "finishReason") or finish_reason
                text = self._candidate_text(candidate)

        return ExtractedText(text=text, finish_reason=finish_reason, source=self.name)


class ChatCompletionExtractor:
    """OpenAI SDK `ChatCompletion` objects (or their dict form) passed through unwrapped."""
    name = "chat_completion"

    def probe(self, response: Any) -> bool:
        return _openai_choice_text(response) is not None

    def extract(self, response: Any) -> ExtractedText:
        text, finish_reason = _openai_choice_text(response) or ("", None)
        return ExtractedText(text=text, finish_reason=finish_reason, source=self.name)


RESPONSE_EXTRACTORS = (
    ContentFieldExtractor(),
    TextFieldExtractor(),
    RawOpenAIExtractor(),
    RawGeminiExtractor(),
    ChatCompletionExtractor(),
)


def normalize_chat_response(response: Any) -> ExtractedText:
    """Return the first non-empty text any extractor finds; keeps the first finish reason seen."""
    finish_reason = None
    for extractor in RESPONSE_EXTRACTORS:
        try:
            if not extractor.probe(response):
                continue
            out = extractor.extract(response)
        except Exception as e:
            logger.warning(f"Response extractor {extractor.name} failed: {e}")
            continue
        finish_reason = finish_reason or out.finish_reason
        if out.text:
            out.finish_reason = out.finish_reason or finish_reason
            return out
    return ExtractedText(text="", finish_reason=finish_reason)


def strip_code_fences(text: str) -> str:
    return _FENCE_RE.sub("", text or "").strip()


def _balanced_object(text: str) -> str | None:
    start = text.find("{")
    if start == -1:
        return None
    depth = 0
    for i in range(start, len(text)):
        ch = text[i]
        if ch == "{":
            depth += 1
        elif ch == "}":
            depth -= 1
            if depth == 0:
                return text[start : i + 1]
    return None


def find_json_object(text: str) -> str | None:
    """Greedy first-`{` to last-`}` match."""
    match = _GREEDY_OBJECT_RE.search(text)
    return match.group(0) if match else None


def parse_mindmap_payload(text: str) -> dict:
    """
    Parse model output into a `{"nodes": [...], "edges": [...]}` dict.

    Raises EmptyResponseError, NoJsonFoundError, JsonParseError or InvalidStructureError.
    Missing or non-list `nodes`/`edges` are coerced to empty lists.
    """
    if not text or not text.strip():
        raise EmptyResponseError()

    cleaned = strip_code_fences(text)
    candidate = find_json_object(cleaned)
    if candidate is None:
        raise NoJsonFoundError(cleaned[:EXCERPT_CHARS])

    try:
        data = json.loads(candidate)
    except json.JSONDecodeError as e:
        # Trailing prose with a stray brace breaks the greedy span; retry the first balanced object.
        balanced = _balanced_object(candidate)
        data = None
        if balanced and balanced != candidate:
            try:
                data = json.loads(balanced)
            except json.JSONDecodeError:
                data = None
        if data is None:
            logger.debug(f"Mindmap JSON parse error on: {candidate[:500]}")
            raise JsonParseError(candidate[:EXCERPT_CHARS], str(e)) from e

    if not isinstance(data, dict):
        raise InvalidStructureError(f"Invalid mindmap structure: expected object, got {type(data).__name__}")

    if not isinstance(data.get("nodes"), list):
        data["nodes"] = []
    if not isinstance(data.get("edges"), list):
        data["edges"] = []
    return data
