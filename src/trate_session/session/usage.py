"""
Token usage accounting and cost estimates.

All completion calls of a session, chat replies and summarization alike,
report into one ``UsageLedger``.
"""

import threading
from dataclasses import dataclass

import structlog

from ..models import SessionStats, UsageSample

logger = structlog.get_logger()


@dataclass(frozen=True)
class ModelPricing:
    """Prices in USD per million tokens."""

    input_price_per_million: float
    output_price_per_million: float


# Longest matching prefix wins, so dated snapshots resolve to their family
DEFAULT_PRICING: dict[str, ModelPricing] = {
    "gpt-4o-mini": ModelPricing(0.15, 0.60),
    "gpt-4o": ModelPricing(2.50, 10.00),
    "gpt-4.1-nano": ModelPricing(0.10, 0.40),
    "gpt-4.1-mini": ModelPricing(0.40, 1.60),
    "gpt-4.1": ModelPricing(2.00, 8.00),
    "o4-mini": ModelPricing(1.10, 4.40),
    "claude-sonnet-4": ModelPricing(3.00, 15.00),
    "claude-3-5-haiku": ModelPricing(0.80, 4.00),
}


def get_pricing(
    model: str,
    pricing: dict[str, ModelPricing] | None = None,
) -> ModelPricing | None:
    """Find pricing for a model by longest prefix, ignoring a provider prefix."""
    table = DEFAULT_PRICING if pricing is None else pricing
    name = model.rsplit("/", 1)[-1]
    matches = [prefix for prefix in table if name.startswith(prefix)]
    if not matches:
        return None
    return table[max(matches, key=len)]


def cost_estimate(usage: UsageSample | None, pricing: ModelPricing | None) -> float:
    """Estimated USD cost of one call. Zero when usage or pricing is unknown."""
    if usage is None or pricing is None:
        return 0.0
    return (
        usage.input_tokens / 1e6 * pricing.input_price_per_million
        + usage.output_tokens / 1e6 * pricing.output_price_per_million
    )


class UsageLedger:
    """Running token totals.

    ``stats`` covers this process only. The lifetime counters are seeded from
    persisted state and keep growing across restarts.
    """

    def __init__(
        self,
        total_input_tokens: int = 0,
        total_output_tokens: int = 0,
        total_tokens: int = 0,
    ):
        self._last_input = 0
        self._last_output = 0
        self._session_total = 0
        self.calls = 0
        self.total_input_tokens = total_input_tokens
        self.total_output_tokens = total_output_tokens
        self.total_tokens = total_tokens
        self._lock = threading.Lock()

    def record_call(self, usage: UsageSample | None) -> None:
        """Add one call's usage. A call without usage counts as zero tokens."""
        usage = usage or UsageSample()
        total = usage.total_tokens
        if total is None:
            total = usage.input_tokens + usage.output_tokens

        with self._lock:
            self.calls += 1
            self._last_input = usage.input_tokens
            self._last_output = usage.output_tokens
            self._session_total += total
            self.total_input_tokens += usage.input_tokens
            self.total_output_tokens += usage.output_tokens
            self.total_tokens += total

        logger.debug(
            "Usage recorded",
            input_tokens=usage.input_tokens,
            output_tokens=usage.output_tokens,
            session_total=self._session_total,
        )

    def reset_lifetime(self) -> None:
        with self._lock:
            self.total_input_tokens = 0
            self.total_output_tokens = 0
            self.total_tokens = 0

    @property
    def stats(self) -> SessionStats:
        with self._lock:
            return SessionStats(
                last_request_input_tokens=self._last_input,
                last_response_output_tokens=self._last_output,
                session_total_tokens=self._session_total,
            )
