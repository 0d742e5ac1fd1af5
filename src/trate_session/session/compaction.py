"""
Conversation Compaction - Background summarization of the history window.

When the window fills up, the controller hands a snapshot of it to the
``CompactionWorker`` together with the summary as it stood at that moment.
The worker asks a lightweight model to fold the snapshot into the summary
and commits the result with a compare-and-set against the summary store.

Reconciliation:
- If the summary changed while the first call was running, the worker
  summarizes the same snapshot once more against the current summary and
  commits that unconditionally. At most two remote calls per trigger.
- Any failure leaves the existing summary in place.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Sequence

import structlog

from ..errors import CompactionFailure
from ..llm.base import BaseLLM
from ..models import Role, Turn, UsageSample
from .summary import SummarySnapshot, SummaryStore
from .usage import UsageLedger

logger = structlog.get_logger()

SUMMARY_INSTRUCTIONS = """You maintain a running summary of a conversation between a user and an assistant.
Merge the existing summary and the new dialogue fragment into one updated summary.

Rules:
- Write in {language}.
- Use short bullet points, at most {max_words} words in total.
- Preserve facts, names, numbers, user preferences, decisions and constraints.
- Drop small talk and anything superseded by later messages.
- Never invent information that is not in the summary or the dialogue.
- Output only the bullet list."""


class CompactionStatus(str, Enum):
    """Lifecycle of a compaction run."""
    IDLE = "idle"
    RUNNING = "running"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass
class CompactionResult:
    """Result of a compaction operation."""

    status: CompactionStatus
    summary: str = ""
    compacted_turns: int = 0
    calls: int = 0
    retried: bool = False
    error: str | None = None

    @property
    def success(self) -> bool:
        return self.status == CompactionStatus.COMMITTED


def build_transcript(turns: Sequence[Turn]) -> str:
    """Render turns as a plain ``ROLE: text`` transcript."""
    return "\n".join(
        f"{turn.role.value.upper()}: {turn.text}"
        for turn in turns
        if turn.role != Role.SYSTEM
    )


def build_summary_request(
    summary: str,
    turns: Sequence[Turn],
    language: str = "English",
    max_words: int = 150,
) -> list[Turn]:
    """Build the turns sent to the summarization model."""
    existing = summary.strip() or "(empty)"
    prompt = f"""Existing summary:
{existing}

New dialogue fragment:
{build_transcript(turns)}

Updated summary:"""

    return [
        Turn.system(SUMMARY_INSTRUCTIONS.format(language=language, max_words=max_words)),
        Turn.user(prompt),
    ]


class CompactionWorker:
    """Folds window snapshots into the rolling summary.

    Only one run may be active at a time; callers check ``is_running``
    before dispatching.
    """

    def __init__(
        self,
        llm: BaseLLM,
        model: str,
        ledger: UsageLedger | None = None,
        language: str = "English",
        max_words: int = 150,
    ):
        self.llm = llm
        self.model = model
        self.ledger = ledger
        self.language = language
        self.max_words = max_words
        self.status = CompactionStatus.IDLE
        self.runs = 0

    @property
    def is_running(self) -> bool:
        return self.status == CompactionStatus.RUNNING

    async def summarize(self, summary: str, turns: Sequence[Turn]) -> tuple[str, UsageSample | None]:
        """One summarization call.

        Raises:
            LLMError: if the remote call fails
            CompactionFailure: if the model returns an empty summary
        """
        request = build_summary_request(summary, turns, self.language, self.max_words)
        response = await self.llm.complete(self.model, request, temperature=None)

        if self.ledger is not None:
            self.ledger.record_call(response.usage)

        text = response.text.strip()
        if not text:
            raise CompactionFailure("Summarization returned an empty summary")
        return text, response.usage

    async def run(
        self,
        store: SummaryStore,
        snapshot: SummarySnapshot,
        turns: Sequence[Turn],
    ) -> CompactionResult:
        """Summarize ``turns`` into the store. Never raises."""
        self.status = CompactionStatus.RUNNING
        self.runs += 1
        calls = 0

        logger.info(
            "Starting conversation compaction",
            turns=len(turns),
            summary_chars=len(snapshot.value),
            generation=snapshot.generation,
        )

        try:
            calls += 1
            new_summary, _ = await self.summarize(snapshot.value, turns)

            if store.compare_and_set(snapshot.generation, new_summary):
                return self._finish(CompactionResult(
                    status=CompactionStatus.COMMITTED,
                    summary=new_summary,
                    compacted_turns=len(turns),
                    calls=calls,
                ))

            if store.disposed:
                raise CompactionFailure("Summary store was disposed during compaction")

            current = store.read()
            logger.info(
                "Summary changed during compaction, reconciling",
                expected=snapshot.generation,
                current=current.generation,
            )

            calls += 1
            new_summary, _ = await self.summarize(current.value, turns)

            if not store.set(new_summary):
                raise CompactionFailure("Summary store was disposed during compaction")

            return self._finish(CompactionResult(
                status=CompactionStatus.COMMITTED,
                summary=new_summary,
                compacted_turns=len(turns),
                calls=calls,
                retried=True,
            ))

        except Exception as e:
            logger.error(
                "Compaction failed, keeping previous summary",
                error=str(e),
                lost_turns=len(turns),
            )
            return self._finish(CompactionResult(
                status=CompactionStatus.FAILED,
                compacted_turns=len(turns),
                calls=calls,
                error=str(e),
            ))

        finally:
            # Cancellation skips both returns above
            if self.status == CompactionStatus.RUNNING:
                logger.warning("Compaction cancelled, keeping previous summary", lost_turns=len(turns))
                self.status = CompactionStatus.FAILED

    def _finish(self, result: CompactionResult) -> CompactionResult:
        self.status = result.status
        if result.success:
            logger.info(
                "Compaction complete",
                compacted=result.compacted_turns,
                summary_chars=len(result.summary),
                calls=result.calls,
                retried=result.retried,
            )
        return result
