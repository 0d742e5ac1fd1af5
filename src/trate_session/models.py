"""
Data model for a single conversation session.
"""

from dataclasses import dataclass, field
from enum import Enum


class Role(str, Enum):
    """Author of a conversation turn."""
    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Turn:
    """One message in the conversation."""

    role: Role
    text: str

    @classmethod
    def user(cls, text: str) -> "Turn":
        return cls(Role.USER, text)

    @classmethod
    def assistant(cls, text: str) -> "Turn":
        return cls(Role.ASSISTANT, text)

    @classmethod
    def system(cls, text: str) -> "Turn":
        return cls(Role.SYSTEM, text)


@dataclass(frozen=True)
class UsageSample:
    """Token counts reported by the remote endpoint for a single call.

    ``total_tokens`` falls back to ``input_tokens + output_tokens`` when the
    endpoint does not report it.
    """

    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int | None = None

    def __post_init__(self) -> None:
        if self.input_tokens < 0 or self.output_tokens < 0:
            raise ValueError("Token counts must be non-negative")
        if self.total_tokens is None:
            object.__setattr__(self, "total_tokens", self.input_tokens + self.output_tokens)
        elif self.total_tokens < 0:
            raise ValueError("Token counts must be non-negative")


@dataclass
class SessionState:
    """Persisted session state: summary, recent turns and lifetime counters."""

    summary: str = ""
    last_messages: list[Turn] = field(default_factory=list)
    total_input_tokens: int = 0
    total_output_tokens: int = 0
    total_tokens: int = 0


@dataclass(frozen=True)
class SessionStats:
    """Usage figures for the current process only."""

    last_request_input_tokens: int = 0
    last_response_output_tokens: int = 0
    session_total_tokens: int = 0
