"""Custom exceptions for Context Shaper."""


class ContextShaperError(Exception):
    """Base exception for Context Shaper."""

    pass


class ConfigurationError(ContextShaperError):
    """Configuration-related errors."""

    pass


class LLMError(ContextShaperError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ConversationFormatError(ContextShaperError):
    """Conversation file could not be parsed."""

    def __init__(self, source: str, message: str):
        super().__init__(f"Invalid conversation '{source}': {message}")
        self.source = source
