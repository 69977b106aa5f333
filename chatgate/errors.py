"""
Shared error types for the message pipeline.

Every error carries a ``user_message`` that is safe to put on the wire.
The exception's own ``str()`` may hold internal detail and is only ever
logged.
"""

GENERIC_ERROR_MESSAGE = "Sorry, something went wrong while processing your message. Please try again."


class ChatGateError(Exception):
    """Base class for pipeline errors."""

    user_message: str = GENERIC_ERROR_MESSAGE

    def __init__(self, message: str = "", user_message: str | None = None):
        super().__init__(message or self.user_message)
        if user_message is not None:
            self.user_message = user_message


class RateLimited(ChatGateError):
    """The user ran out of tokens in one of the rate-limit windows."""

    def __init__(self, retry_after_ms: int, limit_type: str | None = None):
        seconds = max(1, -(-int(retry_after_ms) // 1000))
        super().__init__(
            f"rate limited ({limit_type}), retry in {retry_after_ms}ms",
            user_message=(
                "You've reached your message limit. "
                f"Please wait {seconds} second{'s' if seconds != 1 else ''} before sending another message."
            ),
        )
        self.retry_after_ms = int(retry_after_ms)
        self.limit_type = limit_type


class AttachmentInvalid(ChatGateError):
    """An attachment failed validation; the message proceeds without it."""

    def __init__(self, reason: str, file_name: str = ""):
        super().__init__(f"{file_name or 'attachment'}: {reason}", user_message=reason)
        self.reason = reason
        self.file_name = file_name


class SafetyBlocked(ChatGateError):
    user_message = "Sorry, I cannot respond to this request due to content safety filters."

    def __init__(self, reason: str = ""):
        super().__init__(f"response blocked by safety filter: {reason or 'unspecified'}")
        self.reason = reason


class ExternalApiTimeout(ChatGateError):
    user_message = "The AI is taking too long to respond. Please try again."

    def __init__(self, operation: str, seconds: float):
        super().__init__(f"{operation} timed out after {seconds:g}s")
        self.operation = operation
        self.seconds = seconds


class ToolExecutionError(ChatGateError):
    user_message = "I encountered an error while processing that request. Please try again."

    def __init__(self, tool_name: str, cause: BaseException | None = None):
        super().__init__(f"tool '{tool_name}' failed: {cause!r}")
        self.tool_name = tool_name
        self.cause = cause


class IndexingFailure(ChatGateError):
    """Vector indexing failed. Logged only, never shown to the user."""

    def __init__(self, message_id: str, cause: BaseException | None = None):
        super().__init__(f"indexing {message_id} failed: {cause!r}")
        self.message_id = message_id
        self.cause = cause


class EmbeddingProviderError(RuntimeError):
    """Raised when the embedding provider is unavailable or returns garbage."""
