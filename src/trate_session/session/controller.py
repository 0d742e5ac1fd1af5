"""
Session controller: one linear conversation with a rolling summary.

The controller owns the history window and the summary. For every user turn it:
1. Starts a background compaction when the window has no room for another
   exchange, clearing the window right away so the new turn starts a fresh one
2. Appends the user turn and persists
3. Sends summary + window to the chat model
4. Records usage, appends the reply and persists

Listeners registered with ``subscribe`` receive an immutable
``SessionSnapshot`` after every change, from whatever task made it.
"""

import asyncio
from dataclasses import dataclass
from typing import Callable

import structlog

from ..config import DEFAULT_SYSTEM_PROMPT, Settings
from ..errors import LLMError, PersistenceError, SessionClosedError
from ..llm.base import BaseLLM
from ..models import SessionState, SessionStats, Turn, UsageSample
from .compaction import CompactionResult, CompactionStatus, CompactionWorker
from .persistence import SessionStateStore
from .summary import SummarySnapshot, SummaryStore
from .usage import ModelPricing, UsageLedger, cost_estimate, get_pricing
from .window import HistoryWindow

logger = structlog.get_logger()

# Room needed in the window for one user turn plus its reply
EXCHANGE_TURNS = 2


@dataclass(frozen=True)
class TurnResult:
    """Reply to a user turn."""

    reply_text: str
    usage: UsageSample | None
    cost_usd: float = 0.0


@dataclass(frozen=True)
class SessionSnapshot:
    """Observable session state at one point in time."""

    turns: tuple[Turn, ...]
    summary: str
    stats: SessionStats
    is_compacting: bool
    compactions: int
    total_tokens: int

    @property
    def has_summary(self) -> bool:
        return bool(self.summary)

    @property
    def summary_length(self) -> int:
        return len(self.summary)


SessionListener = Callable[[SessionSnapshot], None]


class SessionController:
    """Orchestrates window, summary, compaction, usage and persistence."""

    def __init__(
        self,
        llm: BaseLLM,
        state_store: SessionStateStore | None = None,
        model: str | None = None,
        summary_model: str | None = None,
        temperature: float | None = 0.7,
        window_size: int = 6,
        system_prompt: str = DEFAULT_SYSTEM_PROMPT,
        summary_language: str = "English",
        summary_max_words: int = 150,
        pricing: dict[str, ModelPricing] | None = None,
    ):
        if window_size < EXCHANGE_TURNS:
            raise ValueError(f"window_size must be at least {EXCHANGE_TURNS}")

        self.llm = llm
        self.state_store = state_store or SessionStateStore()
        self.model = model or llm.model
        self.temperature = temperature
        self.system_prompt = system_prompt
        self.pricing = pricing

        state = self.state_store.load()
        self.window = HistoryWindow(window_size, state.last_messages)
        self.summary = SummaryStore(state.summary)
        self.ledger = UsageLedger(
            total_input_tokens=state.total_input_tokens,
            total_output_tokens=state.total_output_tokens,
            total_tokens=state.total_tokens,
        )
        self.compactor = CompactionWorker(
            llm,
            model=summary_model or self.model,
            ledger=self.ledger,
            language=summary_language,
            max_words=summary_max_words,
        )

        self._compaction_task: asyncio.Task | None = None
        self._listeners: list[SessionListener] = []
        self._closed = False

        logger.info(
            "Session loaded",
            turns=len(self.window),
            summary_chars=len(state.summary),
            model=self.model,
        )

    @classmethod
    def from_settings(
        cls,
        llm: BaseLLM,
        settings: Settings,
        state_store: SessionStateStore | None = None,
    ) -> "SessionController":
        """Build a controller from application settings."""
        llm_config = settings.get_llm_config()
        return cls(
            llm=llm,
            state_store=state_store,
            model=llm_config.model,
            summary_model=llm_config.summary_model,
            temperature=settings.temperature,
            window_size=settings.window_size,
            system_prompt=settings.system_prompt,
            summary_language=settings.summary_language,
            summary_max_words=settings.summary_max_words,
        )

    # Observation

    @property
    def is_compacting(self) -> bool:
        return self.compactor.is_running

    @property
    def closed(self) -> bool:
        return self._closed

    def snapshot(self) -> SessionSnapshot:
        return SessionSnapshot(
            turns=self.window.snapshot(),
            summary=self.summary.value,
            stats=self.ledger.stats,
            is_compacting=self.is_compacting,
            compactions=self.compactor.runs,
            total_tokens=self.ledger.total_tokens,
        )

    def subscribe(self, listener: SessionListener) -> Callable[[], None]:
        """Register a state-change listener. Returns an unsubscribe callable."""
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _notify(self) -> None:
        if not self._listeners:
            return
        snapshot = self.snapshot()
        for listener in list(self._listeners):
            try:
                listener(snapshot)
            except Exception as e:
                logger.error("Session listener failed", error=str(e))

    # Persistence

    def _state(self) -> SessionState:
        return SessionState(
            summary=self.summary.value,
            last_messages=list(self.window.snapshot()),
            total_input_tokens=self.ledger.total_input_tokens,
            total_output_tokens=self.ledger.total_output_tokens,
            total_tokens=self.ledger.total_tokens,
        )

    def _persist(self) -> None:
        """Best-effort save; failures never block the conversation."""
        if self._closed:
            return
        try:
            self.state_store.save(self._state())
        except PersistenceError as e:
            logger.error("Persisting session state failed", error=str(e))

    # Compaction

    def _maybe_start_compaction(self) -> bool:
        """Dispatch compaction if the window cannot take another exchange."""
        if self.window.remaining >= EXCHANGE_TURNS:
            return False

        if self.is_compacting:
            logger.info("Window full but compaction already running, skipping")
            return False

        turns = self.window.snapshot()
        summary_snapshot = self.summary.read()
        self.window.clear()
        self._persist()

        # Marked running before the task is scheduled so a second send
        # arriving before the task starts cannot dispatch again
        self.compactor.status = CompactionStatus.RUNNING
        self._compaction_task = asyncio.create_task(
            self._run_compaction(summary_snapshot, turns),
            name="session-compaction",
        )
        self._compaction_task.add_done_callback(self._on_compaction_done)
        self._notify()
        return True

    def _on_compaction_done(self, task: asyncio.Task) -> None:
        # A task cancelled before it started never ran the worker
        if task.cancelled() and self.compactor.is_running:
            logger.warning("Compaction cancelled before it started")
            self.compactor.status = CompactionStatus.FAILED
            if not self._closed:
                self._notify()

    async def _run_compaction(
        self,
        summary_snapshot: SummarySnapshot,
        turns: tuple[Turn, ...],
    ) -> CompactionResult:
        result = await self.compactor.run(self.summary, summary_snapshot, turns)
        if self._closed:
            return result
        if result.success:
            self._persist()
        self._notify()
        return result

    async def wait_for_compaction(self) -> CompactionResult | None:
        """Await the in-flight compaction, if any."""
        task = self._compaction_task
        if task is None:
            return None
        return await task

    # Conversation

    def build_request(self) -> list[Turn]:
        """System turn (instructions + summary) followed by the current window."""
        system_text = self.system_prompt
        summary = self.summary.value
        if summary:
            system_text = f"{system_text}\n\nSummary of the earlier conversation:\n{summary}"
        return [Turn.system(system_text), *self.window.snapshot()]

    async def send_user_turn(self, text: str) -> TurnResult:
        """Send one user message and return the assistant's reply.

        Raises:
            SessionClosedError: if the session was closed
            LLMError: if the chat request fails; the user turn stays in the window
        """
        if self._closed:
            raise SessionClosedError("Session is closed")

        self._maybe_start_compaction()

        self.window.append(Turn.user(text))
        self._persist()
        self._notify()

        temperature = self.temperature
        if temperature is not None and not self.llm.supports_temperature(self.model):
            temperature = None

        try:
            response = await self.llm.complete(self.model, self.build_request(), temperature=temperature)
        except LLMError as e:
            logger.error("Chat request failed", model=self.model, error=str(e))
            self._notify()
            raise

        self.ledger.record_call(response.usage)

        if self._closed:
            return TurnResult(response.text, response.usage, self._cost(response.usage))

        self.window.append(Turn.assistant(response.text))
        self._persist()
        self._notify()

        return TurnResult(response.text, response.usage, self._cost(response.usage))

    def _cost(self, usage: UsageSample | None) -> float:
        return cost_estimate(usage, get_pricing(self.model, self.pricing))

    def reset(self) -> None:
        """Forget the conversation: window, summary and stored state."""
        self.window.clear()
        self.summary.reset()
        self.ledger.reset_lifetime()
        try:
            self.state_store.clear()
        except PersistenceError as e:
            logger.error("Clearing session state failed", error=str(e))
        logger.info("Session reset")
        self._notify()

    def close(self) -> None:
        """Dispose the session. An in-flight compaction finishes as a no-op."""
        if self._closed:
            return
        self._closed = True
        self.summary.dispose()
        self._listeners.clear()
        logger.info("Session closed", compacting=self.is_compacting)
