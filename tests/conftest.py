"""
Shared fixtures for session tests.
"""

import asyncio
from typing import Sequence

import pytest

from trate_session.llm.base import BaseLLM, LLMResponse
from trate_session.models import Turn, UsageSample
from trate_session.session import InMemoryKVStore, SessionStateStore

CHAT_MODEL = "chat-model"
SUMMARY_MODEL = "summary-model"


class ScriptedLLM(BaseLLM):
    """In-process LLM that answers chat and summary requests predictably.

    Summary calls can be held back with ``summary_gate`` to observe the
    session while a compaction is in flight.
    """

    def __init__(self):
        super().__init__(api_key="test-key", model=CHAT_MODEL)
        self.requests: list[tuple[str, list[Turn], float | None]] = []
        self.chat_calls = 0
        self.summary_calls = 0
        self.chat_error: Exception | None = None
        self.summary_error: Exception | None = None
        self.summary_gate: asyncio.Event | None = None
        self.on_summary = None

    @property
    def provider_name(self) -> str:
        return "scripted"

    @property
    def chat_requests(self) -> list[list[Turn]]:
        return [turns for model, turns, _ in self.requests if model != SUMMARY_MODEL]

    async def complete(
        self,
        model: str,
        turns: Sequence[Turn],
        temperature: float | None = None,
    ) -> LLMResponse:
        self.requests.append((model, list(turns), temperature))

        if model == SUMMARY_MODEL:
            self.summary_calls += 1
            call = self.summary_calls
            if self.summary_gate is not None:
                await self.summary_gate.wait()
            if self.on_summary is not None:
                self.on_summary(call)
            if self.summary_error is not None:
                raise self.summary_error
            return LLMResponse(text=f"- summary #{call}", usage=UsageSample(50, 10))

        self.chat_calls += 1
        if self.chat_error is not None:
            raise self.chat_error
        return LLMResponse(text=f"reply {self.chat_calls}", usage=UsageSample(100, 20, 120))


@pytest.fixture
def llm() -> ScriptedLLM:
    return ScriptedLLM()


@pytest.fixture
def kv() -> InMemoryKVStore:
    return InMemoryKVStore()


@pytest.fixture
def state_store(kv) -> SessionStateStore:
    return SessionStateStore(kv)
