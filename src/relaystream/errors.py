"""Exceptions raised while opening or consuming a response stream."""


class StreamError(Exception):
    """Base for all relaystream errors."""


class TransportError(StreamError):
    """The byte source could not be opened or failed while being read.

    Args:
        message: Human-readable description.
        status_code: HTTP status of the failed request, when known.
    """

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ProtocolError(StreamError):
    """The producer sent an explicit ``error`` event."""

    def __init__(self, error_type: str, detail: str):
        super().__init__(f"{error_type}: {detail}")
        self.error_type = error_type
        self.detail = detail


class StreamCancelled(StreamError):
    """A cancellation token fired while the pipeline was suspended."""
