"""Error taxonomy shared by the normalizer, stream client, relay and server.

Every error renders to the wire shape the browser client already understands::

    {"error": {"type": "...", "message": "...", "details": ...}}
"""

from typing import Any


class ChatError(Exception):
    """Base class for all errors surfaced to the chat client."""

    error_type = "api_error"
    status_code = 500

    def __init__(self, message: str, details: Any = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        """Return the ``{"error": {...}}`` payload for this error."""
        error = {"type": self.error_type, "message": self.message}
        if self.details is not None:
            error["details"] = self.details
        return {"error": error}


class InternalError(ChatError):
    error_type = "internal_error"
    status_code = 500


class AuthenticationError(ChatError):
    error_type = "authentication_error"
    status_code = 401


class ValidationError(ChatError):
    error_type = "invalid_request"
    status_code = 400


class ContentTooLarge(ChatError):
    error_type = "content_too_large"
    status_code = 413


def format_size(num_bytes: int) -> str:
    """Render a byte count for size-limit messages: bytes, then KB, then MB."""
    if num_bytes < 1024:
        return f"{num_bytes} bytes"
    if num_bytes < 1024 * 1024:
        return f"{num_bytes / 1024:.1f}".removesuffix(".0") + "KB"
    return f"{num_bytes / (1024 * 1024):.1f}".removesuffix(".0") + "MB"


class UpstreamApiError(ChatError):
    """The upstream API answered with a non-2xx status or an in-band error event."""

    def __init__(
        self,
        message: str,
        error_type: str = "api_error",
        status_code: int = 502,
        details: Any = None,
    ):
        super().__init__(message, details)
        self.error_type = error_type
        self.status_code = status_code


class OverloadError(UpstreamApiError):
    """Upstream is overloaded. The only kind the stream client retries."""

    def __init__(self, message: str = "Overloaded", details: Any = None):
        super().__init__(message, "overloaded_error", 529, details)


class StreamTimeoutError(ChatError):
    """Relay watchdog or client idle timeout fired."""

    error_type = "timeout_error"
    status_code = 408


class DecodeError(ChatError):
    """A stream frame or upstream body could not be decoded."""

    error_type = "parse_error"
    status_code = 502


class FileProcessingError(ChatError):
    """Normalization of one uploaded file failed. Scoped to that file only."""

    error_type = "file_processing_error"
    status_code = 422

    def __init__(self, file_name: str, message: str, details: Any = None):
        super().__init__(f"{file_name}: {message}", details)
        self.file_name = file_name


class FileEmpty(FileProcessingError):
    def __init__(self, file_name: str):
        super().__init__(file_name, "The file is empty")


class ConversationNotFound(ChatError):
    error_type = "not_found"
    status_code = 404


class ConflictError(ChatError):
    """Optimistic version check failed on a conversation append."""

    error_type = "conflict"
    status_code = 409


OVERLOAD_MESSAGES = {"overloaded", "overloaded_error"}


def error_from_payload(payload: dict) -> ChatError | None:
    """Classify a decoded stream or response payload as an error, if it is one.

    Upstream and relay emit errors in a few overlapping shapes::

        {"type": "error", "error": {"type": "overloaded_error", "message": "Overloaded"}}
        {"error": {"type": "timeout_error", "message": "..."}}
        {"error": "Streaming error: ..."}
        {"type": "error", "message": "..."}

    All of them collapse into one exception. Returns ``None`` for ordinary events.
    """
    if not isinstance(payload, dict):
        return None
    if "error" not in payload and payload.get("type") != "error":
        return None

    raw = payload.get("error")
    if isinstance(raw, dict):
        error_type = str(raw.get("type") or "api_error")
        message = str(raw.get("message") or payload.get("message") or "Unknown error in the API")
        details = raw.get("details")
    elif raw:
        error_type = "api_error"
        message = str(raw)
        details = None
    else:
        error_type = "api_error"
        message = str(payload.get("message") or "Unknown error in the API")
        details = None

    if error_type == "overloaded_error" or message.strip().lower() in OVERLOAD_MESSAGES:
        return OverloadError(message, details)
    if error_type == "timeout_error":
        return StreamTimeoutError(message, details)
    if error_type == "authentication_error":
        return AuthenticationError(message, details)
    return UpstreamApiError(message, error_type, details=details)
