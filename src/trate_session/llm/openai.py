"""
OpenAI GPT LLM provider (also works with OpenRouter and compatible APIs).
"""

from typing import Any, Sequence

import httpx
import openai
import structlog

from ..errors import ProtocolError, TransportError
from ..models import Turn, UsageSample
from .base import BaseLLM, LLMResponse

logger = structlog.get_logger()


class OpenAILLM(BaseLLM):
    """OpenAI GPT LLM provider."""

    def __init__(
        self,
        api_key: str,
        model: str = "gpt-4o",
        base_url: str | None = None,
        max_tokens: int = 1024,
        timeout: float = 60.0,
        max_retries: int = 2,
        http_client: httpx.AsyncClient | None = None,
    ):
        super().__init__(api_key, model, base_url, max_tokens, timeout)
        self.client = openai.AsyncOpenAI(
            api_key=api_key,
            base_url=base_url,
            timeout=timeout,
            max_retries=max_retries,
            http_client=http_client,
        )

    @property
    def provider_name(self) -> str:
        return "openai"

    def _convert_turns(self, turns: Sequence[Turn]) -> list[dict[str, Any]]:
        """Convert turns to OpenAI chat format."""
        return [{"role": turn.role.value, "content": turn.text} for turn in turns]

    async def complete(
        self,
        model: str,
        turns: Sequence[Turn],
        temperature: float | None = None,
    ) -> LLMResponse:
        """Generate a response from GPT."""
        kwargs: dict[str, Any] = {
            "model": model,
            "messages": self._convert_turns(turns),
        }

        if self.supports_temperature(model):
            kwargs["max_tokens"] = self.max_tokens
            if temperature is not None:
                kwargs["temperature"] = temperature
        else:
            kwargs["max_completion_tokens"] = self.max_tokens

        try:
            response = await self.client.chat.completions.create(**kwargs)
        except openai.APIStatusError as e:
            logger.error("OpenAI API error", status=e.status_code, error=str(e))
            raise ProtocolError(
                "OpenAI request failed",
                status_code=e.status_code,
                body=e.response.text,
            ) from e
        except openai.APIConnectionError as e:
            logger.error("OpenAI connection error", error=str(e))
            raise TransportError(f"Could not reach OpenAI: {e}") from e
        except openai.APIResponseValidationError as e:
            logger.error("OpenAI response validation error", error=str(e))
            raise ProtocolError(
                "OpenAI returned an unexpected response",
                status_code=e.status_code,
                body=e.response.text,
            ) from e

        if not response.choices:
            raise ProtocolError("OpenAI response contained no choices", status_code=200)

        choice = response.choices[0]
        usage = None
        if response.usage:
            usage = UsageSample(
                input_tokens=response.usage.prompt_tokens or 0,
                output_tokens=response.usage.completion_tokens or 0,
                total_tokens=response.usage.total_tokens,
            )

        return LLMResponse(
            text=(choice.message.content or "").strip(),
            usage=usage,
            model=response.model,
            stop_reason=choice.finish_reason,
            raw_response=response,
        )
