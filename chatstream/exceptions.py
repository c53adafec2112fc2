from __future__ import annotations


class ChatStreamError(Exception):
    """Base error for the streaming query client."""


class StreamTransportError(ChatStreamError):
    """The stream could not be opened or broke off before it finished."""

    def __init__(self, message: str, *, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code

