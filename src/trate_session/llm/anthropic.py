"""
Anthropic Claude LLM provider.
"""

from typing import Any, Sequence

import anthropic
import httpx
import structlog

from ..errors import ProtocolError, TransportError
from ..models import Role, Turn, UsageSample
from .base import BaseLLM, LLMResponse

logger = structlog.get_logger()


class AnthropicLLM(BaseLLM):
    """Anthropic Claude LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "claude-sonnet-4-20250514",
        base_url: str | None = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
        max_retries: int = 2,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(api_key, model, base_url, max_tokens, timeout)
        self.client = anthropic.AsyncAnthropic(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
            http_client=http_client,
        )

    @property
    def provider_name(self) -> str:
        return "anthropic"

    def _convert_turns(self, turns: Sequence[Turn]) -> tuple[str | None, list[dict[str, Any]]]:
        """Split out the system prompt and convert the rest to Anthropic format.

        Claude expects alternating roles, so consecutive turns from the same
        author (e.g. a user turn left behind by a failed send) are merged.
        """
        system_parts: list[str] = []
        converted: list[dict[str, Any]] = []

        for turn in turns:
            if turn.role == Role.SYSTEM:
                system_parts.append(turn.text)
                continue

            if converted and converted[-1]["role"] == turn.role.value:
                converted[-1]["content"] += "\n\n" + turn.text
            else:
                converted.append({"role": turn.role.value, "content": turn.text})

        system = "\n\n".join(system_parts) if system_parts else None
        return system, converted

    async def complete(
        self,
        model: str,
        turns: Sequence[Turn],
        temperature: float | None = None,
    ) -> LLMResponse:
        """Generate a response from Claude."""
        system, converted_messages = self._convert_turns(turns)

        kwargs: dict[str, Any] = {
            "model": model,
            "max_tokens": self.max_tokens,
            "messages": converted_messages,
        }

        if system:
            kwargs["system"] = system

        if temperature is not None:
            kwargs["temperature"] = min(temperature, 1.0)

        try:
            response = await self.client.messages.create(**kwargs)
        except anthropic.APIStatusError as e:
            logger.error("Anthropic API error", status=e.status_code, error=str(e))
            raise ProtocolError(
                "Anthropic request failed",
                status_code=e.status_code,
                body=e.response.text,
            ) from e
        except anthropic.APIConnectionError as e:
            logger.error("Anthropic connection error", error=str(e))
            raise TransportError(f"Could not reach Anthropic: {e}") from e
        except anthropic.APIResponseValidationError as e:
            logger.error("Anthropic response validation error", error=str(e))
            raise ProtocolError(
                "Anthropic returned an unexpected response",
                status_code=e.status_code,
                body=e.response.text,
            ) from e

        content = "".join(block.text for block in response.content if block.type == "text")

        return LLMResponse(
            text=content.strip(),
            usage=UsageSample(
                input_tokens=response.usage.input_tokens,
                output_tokens=response.usage.output_tokens,
            ),
            model=response.model,
            stop_reason=response.stop_reason,
            raw_response=response,
        )
