"""
Session state persistence.

The session state is stored as one JSON document under a fixed key in a
key-value store. Reading is forgiving: unknown fields are ignored, missing
or null fields take their defaults, and a corrupt document yields a fresh
empty state instead of an error.
"""

import os
import tempfile
from abc import ABC, abstractmethod
from pathlib import Path

import structlog
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from ..errors import PersistenceDecodeError, PersistenceError
from ..models import Role, SessionState, Turn

logger = structlog.get_logger()

DEFAULT_STATE_KEY = "chat_state_v1"


class KVStore(ABC):
    """Minimal string key-value store."""

    @abstractmethod
    def get(self, key: str) -> str | None:
        pass

    @abstractmethod
    def put(self, key: str, value: str) -> None:
        pass

    @abstractmethod
    def remove(self, key: str) -> None:
        pass


class InMemoryKVStore(KVStore):
    """Dictionary-backed store, used for tests and ephemeral sessions."""

    def __init__(self, data: dict[str, str] | None = None):
        self.data: dict[str, str] = dict(data or {})

    def get(self, key: str) -> str | None:
        return self.data.get(key)

    def put(self, key: str, value: str) -> None:
        self.data[key] = value

    def remove(self, key: str) -> None:
        self.data.pop(key, None)


class FileKVStore(KVStore):
    """One file per key inside a directory.

    Writes go through a temporary file and ``os.replace`` so a crash never
    leaves a half-written value behind.
    """

    def __init__(self, directory: str | Path):
        self.directory = Path(directory).expanduser()

    def _path(self, key: str) -> Path:
        return self.directory / f"{key}.json"

    def get(self, key: str) -> str | None:
        path = self._path(key)
        if not path.exists():
            return None
        try:
            return path.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning("Could not read stored value", key=key, error=str(e))
            return None

    def put(self, key: str, value: str) -> None:
        self.directory.mkdir(parents=True, exist_ok=True)
        fd, tmp_name = tempfile.mkstemp(dir=self.directory, prefix=f".{key}.", suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                f.write(value)
            os.replace(tmp_name, self._path(key))
        except OSError:
            Path(tmp_name).unlink(missing_ok=True)
            raise

    def remove(self, key: str) -> None:
        self._path(key).unlink(missing_ok=True)


class _TurnRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    role: Role
    content: str = ""

    @field_validator("content", mode="before")
    @classmethod
    def _none_to_empty(cls, v):
        return "" if v is None else v


class _StateRecord(BaseModel):
    """Wire format of the stored state."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    summary: str = ""
    last_messages: list[_TurnRecord] = Field(default_factory=list, alias="lastMessages")
    total_input_tokens: int = Field(default=0, ge=0, alias="totalInputTokens")
    total_output_tokens: int = Field(default=0, ge=0, alias="totalOutputTokens")
    total_tokens: int = Field(default=0, ge=0, alias="totalTokens")

    @field_validator("summary", mode="before")
    @classmethod
    def _summary_none(cls, v):
        return "" if v is None else v

    @field_validator("last_messages", mode="before")
    @classmethod
    def _messages_none(cls, v):
        return [] if v is None else v

    @field_validator("total_input_tokens", "total_output_tokens", "total_tokens", mode="before")
    @classmethod
    def _counter_none(cls, v):
        return 0 if v is None else v


def serialize(state: SessionState) -> str:
    """Encode a session state as JSON."""
    record = _StateRecord(
        summary=state.summary,
        last_messages=[_TurnRecord(role=t.role, content=t.text) for t in state.last_messages],
        total_input_tokens=state.total_input_tokens,
        total_output_tokens=state.total_output_tokens,
        total_tokens=state.total_tokens,
    )
    return record.model_dump_json(by_alias=True)


def deserialize(raw: str) -> SessionState:
    """Decode a stored session state.

    Raises:
        PersistenceDecodeError: if the document is not valid JSON or has the wrong shape
    """
    try:
        record = _StateRecord.model_validate_json(raw)
    except ValidationError as e:
        raise PersistenceDecodeError(f"Invalid session state: {e.error_count()} error(s)") from e

    return SessionState(
        summary=record.summary,
        last_messages=[Turn(m.role, m.content) for m in record.last_messages],
        total_input_tokens=record.total_input_tokens,
        total_output_tokens=record.total_output_tokens,
        total_tokens=record.total_tokens,
    )


class SessionStateStore:
    """Loads and saves ``SessionState`` under a single key."""

    def __init__(self, kv: KVStore | None = None, key: str = DEFAULT_STATE_KEY):
        self.kv = kv or InMemoryKVStore()
        self.key = key

    def load(self) -> SessionState:
        """Load stored state, falling back to an empty state."""
        try:
            raw = self.kv.get(self.key)
        except Exception as e:
            logger.error("Reading session state failed", key=self.key, error=str(e))
            return SessionState()

        if raw is None or not raw.strip():
            return SessionState()

        try:
            return deserialize(raw)
        except PersistenceDecodeError as e:
            logger.warning("Stored session state is corrupt, starting fresh", key=self.key, error=str(e))
            return SessionState()

    def save(self, state: SessionState) -> None:
        """Write state.

        Raises:
            PersistenceError: if the underlying store fails
        """
        try:
            self.kv.put(self.key, serialize(state))
        except Exception as e:
            raise PersistenceError(f"Could not save session state: {e}") from e

    def clear(self) -> None:
        try:
            self.kv.remove(self.key)
        except Exception as e:
            raise PersistenceError(f"Could not clear session state: {e}") from e
