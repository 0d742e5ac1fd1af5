"""
Base classes for LLM providers.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Sequence

from ..models import Turn, UsageSample

# Model families that reject a sampling temperature
NO_TEMPERATURE_PREFIXES = ("o1", "o3", "o4", "gpt-5")


@dataclass
class LLMResponse:
    """Response from an LLM."""

    text: str
    usage: UsageSample | None = None
    model: str = ""
    stop_reason: str | None = None
    raw_response: Any = None


class BaseLLM(ABC):
    """Base class for LLM providers.

    Providers expose a single ``complete`` call. SDK failures are translated
    to ``TransportError`` or ``ProtocolError`` before they leave the provider.
    """

    def __init__(
        self,
        api_key: str,
        model: str,
        base_url: str | None = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
    ):
        self.api_key = api_key
        self.model = model
        self.base_url = base_url
        self.max_tokens = max_tokens
        self.timeout = timeout

    def supports_temperature(self, model: str) -> bool:
        """Whether a temperature may be sent for this model."""
        name = model.rsplit("/", 1)[-1].lower()
        return not name.startswith(NO_TEMPERATURE_PREFIXES)

    @abstractmethod
    async def complete(
        self,
        model: str,
        turns: Sequence[Turn],
        temperature: float | None = None,
    ) -> LLMResponse:
        """Run one completion over the ordered turns."""
        pass

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Get the provider name."""
        pass
