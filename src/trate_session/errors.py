"""
Exception hierarchy for trate-session.

Only ``LLMError`` subclasses ever reach the caller of a send. Persistence and
compaction errors are recovered from inside the session.
"""


class SessionError(Exception):
    """Base class for all session errors."""


class LLMError(SessionError):
    """The remote completion call failed."""


class TransportError(LLMError):
    """Network failure or timeout talking to the remote endpoint."""


class ProtocolError(LLMError):
    """Non-success status or a response body that could not be used."""

    def __init__(self, message: str, status_code: int | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is None:
            return base
        return f"{base} (status={self.status_code}, body={self.body!r})"


class PersistenceError(SessionError):
    """Reading or writing stored session state failed."""


class PersistenceDecodeError(PersistenceError):
    """Stored session state is corrupt or has an unexpected shape."""


class CompactionFailure(SessionError):
    """A summarization call did not produce a usable summary."""


class SessionClosedError(SessionError):
    """The session was closed and accepts no further turns."""
