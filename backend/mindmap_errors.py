"""Error kinds raised while building and storing conversation mindmaps."""


class MindmapError(Exception):
    """Base exception for mindmap operations."""
    kind = "mindmap_error"
    retryable = False


class ConfigurationError(MindmapError):
    """Raised when no model route / API key is configured."""
    kind = "configuration"

    def __init__(self, message: str = "AI model or API key not configured. Configure an LLM provider in settings."):
        super().__init__(message)


class NoTranscriptContent(MindmapError):
    """Raised when the session transcript has no usable text."""
    kind = "no_transcript_content"

    def __init__(self, message: str = "No transcript content to generate mindmap from."):
        super().__init__(message)


class TranscriptSourceError(MindmapError):
    """Raised when the transcript rows for a session cannot be read."""
    kind = "transcript_source"


class ModelCallError(MindmapError):
    """Raised when the model request itself fails (network, auth, provider error)."""
    kind = "model_call"
    retryable = True


class EmptyResponseError(MindmapError):
    """Raised when the model response normalizes to empty text."""
    kind = "empty_response"
    retryable = True

    def __init__(self, finish_reason: str | None = None):
        self.finish_reason = finish_reason
        super().__init__(f"LLM returned empty response. Finish reason: {finish_reason or 'unknown'}")


class NoJsonFoundError(MindmapError):
    """Raised when no JSON object can be located in the model output."""
    kind = "no_json_found"
    retryable = True

    def __init__(self, excerpt: str):
        self.excerpt = excerpt
        super().__init__(f"No JSON found in LLM response. Response: {excerpt}")


class JsonParseError(MindmapError):
    """Raised when the located JSON object does not parse."""
    kind = "json_parse"
    retryable = True

    def __init__(self, excerpt: str, parser_message: str):
        self.excerpt = excerpt
        self.parser_message = parser_message
        super().__init__(f"Failed to parse JSON from LLM response: {parser_message}")


class InvalidStructureError(MindmapError):
    """Raised when the parsed JSON is not an object."""
    kind = "invalid_structure"
    retryable = True


class PersistenceError(MindmapError):
    """Raised when the session record cannot be read or written."""
    kind = "persistence"

    def __init__(self, session_id: str, message: str):
        self.session_id = session_id
        super().__init__(f"Mindmap persistence failed for session {session_id}: {message}")
