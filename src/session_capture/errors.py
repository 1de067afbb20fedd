"""Error taxonomy shared by the capture pipeline."""
from __future__ import annotations


class SessionCaptureError(RuntimeError):
    """Base class for recoverable pipeline failures."""

    code = "session-capture-error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.code)


class CaptureUnavailable(SessionCaptureError):
    """Raised when no capture API is present on this host."""

    code = "capture-unavailable"


class AcquisitionCancelled(SessionCaptureError):
    """Raised when the user declines source selection."""

    code = "acquisition-cancelled"


class StreamEnded(SessionCaptureError):
    """Raised when the captured source was revoked or closed externally."""

    code = "source-ended"


class EncoderUnsupported(SessionCaptureError):
    """Raised when none of the candidate encodings is accepted."""

    code = "encoder-unsupported"


class PersistenceFailure(SessionCaptureError):
    """Raised when the durable store rejects a read or write."""

    code = "persistence-failure"


class ExportFailure(SessionCaptureError):
    """Raised when a session archive cannot be produced."""

    code = "export-failure"


class SessionNotFound(ExportFailure):
    """Raised when an export is requested for an unknown session."""

    code = "session-not-found"


class MessageDeliveryFailure(SessionCaptureError):
    """Raised when a message cannot be handed to its target context."""

    code = "message-delivery-failure"


class IllegalTransition(SessionCaptureError, ValueError):
    """Raised when a session status change is not part of the lifecycle."""

    code = "illegal-transition"


def error_code(exc: BaseException) -> str:
    """Return the stable code for *exc*, falling back to its class name."""

    code = getattr(exc, "code", None)
    if isinstance(code, str) and code:
        return code
    return type(exc).__name__


__all__ = [
    "AcquisitionCancelled",
    "CaptureUnavailable",
    "EncoderUnsupported",
    "ExportFailure",
    "IllegalTransition",
    "MessageDeliveryFailure",
    "PersistenceFailure",
    "SessionCaptureError",
    "SessionNotFound",
    "StreamEnded",
    "error_code",
]
