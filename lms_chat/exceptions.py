"""Chat-core exceptions.

Repositories raise these instead of leaking httpx errors; services catch
them at the call site and keep the last known state.
"""

from typing import Optional


class ChatApiError(Exception):
    """A REST call to the LMS backend failed."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = status_code


class SendMessageError(ChatApiError):
    """The backend did not accept an outgoing message."""


class ClearHistoryError(ChatApiError):
    """Clearing a conversation's history failed; nothing was changed locally."""


class MalformedEventError(ValueError):
    """A live event could not be parsed or has no resolvable sender/recipient."""
