"""
Structural update generator.

Builds a complete mindmap from the full transcript of a session: format the turns,
prompt the model, normalize whatever response shape comes back and parse the JSON
object out of it. No retries here; the calling cycle owns retry/backoff.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Iterable

from backend.llm import model_capabilities
from backend.mindmap_errors import ConfigurationError, EmptyResponseError, ModelCallError, NoTranscriptContent
from backend.mindmap_types import EDGE_COLOR, EDGE_TYPE, LEVEL_COLORS, LEVEL_SIZES, TranscriptTurn
from backend.response_extraction import normalize_chat_response, parse_mindmap_payload

logger = logging.getLogger(__name__)

MINDMAP_SYSTEM_PROMPT = "You are a mindmap generator. Return only valid JSON."
MINDMAP_TEMPERATURE = 0.3
MAX_LABEL_CHARS = 20

# Epoch seconds above this are almost certainly milliseconds (year ~5138 as seconds).
_MS_THRESHOLD = 100_000_000_000


@dataclass
class GenerationResult:
    nodes: list[dict]
    edges: list[dict]
    finish_reason: str | None = None
    warnings: list[str] = field(default_factory=list)


def _format_timestamp(start_at: Any) -> str | None:
    if start_at is None or start_at == "" or isinstance(start_at, bool):
        return None
    try:
        value = float(start_at)
    except (TypeError, ValueError):
        return None
    if value <= 0:
        return None
    # Seconds first, then milliseconds.
    candidates = (value, value / 1000.0) if value < _MS_THRESHOLD else (value / 1000.0,)
    for seconds in candidates:
        try:
            return datetime.fromtimestamp(seconds).strftime("%H:%M:%S")
        except (OverflowError, OSError, ValueError):
            continue
    return None


def format_transcript(turns: Iterable[Any]) -> str:
    """One line per turn: `[local-time] speaker: text`, `[n]` when the timestamp is unusable."""
    lines = []
    for index, row in enumerate(turns):
        turn = TranscriptTurn.from_row(row)
        stamp = _format_timestamp(turn.start_at) or str(index)
        speaker = (turn.speaker or "").strip() or "unknown"
        lines.append(f"[{stamp}] {speaker}: {(turn.text or '').strip()}")
    return "\n".join(lines)


def transcript_has_content(turns: Iterable[Any]) -> bool:
    return any((TranscriptTurn.from_row(t).text or "").strip() for t in turns)


def build_mindmap_prompt(formatted_transcript: str) -> str:
    return f"""Generate a clear, focused mindmap from this conversation transcript. Prioritize the MOST IMPORTANT topics only.

Conversation Transcript:
{formatted_transcript}

CRITICAL: Focus on the most significant and important topics. Ignore minor details and tangents.

Create a focused mindmap with these rules:
1. Identify ONLY the 3-6 MOST IMPORTANT main topics (level 1) - prioritize topics that are:
   - Central to the conversation
   - Frequently discussed
   - Actionable or decision-critical
   - Thematically significant
2. For each main topic, add ONLY 2-3 KEY subtopics (level 2) - the most relevant points
3. Add level 3 details ONLY if absolutely essential (max 1-2 per subtopic)
4. Keep labels short, clear, and descriptive (max {MAX_LABEL_CHARS} characters)
5. Connect nodes hierarchically: main topics -> subtopics -> details
6. Only create edges between directly related concepts

Node structure (REQUIRED fields):
- id: "node-1", "node-2", etc. (sequential)
- label: short, clear label (max {MAX_LABEL_CHARS} chars) - use the most important keywords
- type: "topic" (level 1), "subtopic" (level 2), or "detail" (level 3)
- level: 1, 2, or 3
- color: "{LEVEL_COLORS[1]}" for topics, "{LEVEL_COLORS[2]}" for subtopics, "{LEVEL_COLORS[3]}" for details
- size: {LEVEL_SIZES[1]} for level 1, {LEVEL_SIZES[2]} for level 2, {LEVEL_SIZES[3]} for level 3

Edge structure (REQUIRED fields):
- id: "edge-1", "edge-2", etc. (sequential)
- from: source node id
- to: target node id
- type: "{EDGE_TYPE}"
- color: "{EDGE_COLOR}"

Return ONLY valid JSON (no markdown, no code blocks, no explanations):
{{
  "nodes": [...],
  "edges": [...]
}}

Remember: Quality over quantity. Focus on the most important topics only. Return only JSON."""


def build_mindmap_messages(formatted_transcript: str) -> list[dict]:
    return [
        {"role": "system", "content": MINDMAP_SYSTEM_PROMPT},
        {"role": "user", "content": build_mindmap_prompt(formatted_transcript)},
    ]


async def generate_mindmap(turns: list[Any], llm_client: Any) -> GenerationResult:
    """
    Produce candidate nodes/edges from every transcript turn of a session.

    Raises ConfigurationError, NoTranscriptContent, ModelCallError, EmptyResponseError,
    NoJsonFoundError, JsonParseError or InvalidStructureError.
    """
    if llm_client is None:
        raise ConfigurationError()

    formatted = format_transcript(turns)
    if not transcript_has_content(turns) or not formatted.strip():
        raise NoTranscriptContent()

    provider = str(getattr(llm_client, "provider", "") or "")
    model = str(getattr(llm_client, "model", "") or "")
    caps = model_capabilities(provider, model)
    messages = build_mindmap_messages(formatted)
    logger.debug(
        f"Mindmap request: provider={provider} model={model} turns={len(turns)} "
        f"prompt_chars={len(messages[1]['content'])} max_tokens={caps.max_output_tokens}"
    )

    try:
        response = await llm_client.chat(
            messages,
            max_tokens=caps.max_output_tokens,
            temperature=MINDMAP_TEMPERATURE,
            json_mode=caps.json_mode,
        )
    except Exception as e:
        raise ModelCallError(str(e)) from e

    extracted = normalize_chat_response(response)
    warnings: list[str] = []
    if extracted.truncated:
        msg = f"LLM hit output token limit ({extracted.finish_reason}); mindmap may be incomplete."
        logger.warning(msg)
        warnings.append(msg)
    elif extracted.finish_reason:
        logger.debug(f"Mindmap finish reason: {extracted.finish_reason}")

    if not extracted.text:
        raise EmptyResponseError(extracted.finish_reason)

    data = parse_mindmap_payload(extracted.text)
    logger.info(f"Generated mindmap candidate: {len(data['nodes'])} nodes, {len(data['edges'])} edges")
    return GenerationResult(
        nodes=data["nodes"],
        edges=data["edges"],
        finish_reason=extracted.finish_reason,
        warnings=warnings,
    )
