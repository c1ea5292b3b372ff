"""Anthropic Messages API client for the persona chat.

Every request runs inside the ``anthropic`` circuit breaker.  A chat turn
makes up to two calls (visible reasoning, then the answer); both share a
single guarded operation so the breaker counts the turn once.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence

import anthropic
from anthropic.types import Message
import httpx

from src.core.config import Settings
from src.core.errors import BackendUnavailableError, OperationTimeoutError, ProviderResponseError
from src.models.schemas import ChatMessage, PersonaReply
from src.resilience.circuit_breaker import CircuitBreakerRegistry

logger = logging.getLogger(__name__)

SERVICE_NAME = "anthropic"

# LLM calls are slow; trip sooner than the process default
BREAKER_CONFIG = {"timeout_ms": 30000, "error_threshold": 3}

THINKING_MAX_TOKENS = 512

THINKING_INSTRUCTIONS = (
    "You are now writing your visible thinking for the visitor to read. "
    "Describe your actual reasoning about this conversation in 1-3 sentences."
)


def _leading_text(message: Message) -> str | None:
    if message.content and message.content[0].type == "text":
        return message.content[0].text
    return None


class AnthropicClient:
    """Persona chat client guarded by a circuit breaker.

    Args:
        settings: Provider credentials and model selection.
        registry: Shared breaker registry.
        client:   Optional pre-built ``httpx.AsyncClient`` handed to the SDK
                  (tests inject a mock transport here).
    """

    def __init__(
        self,
        settings: Settings,
        registry: CircuitBreakerRegistry,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        self._model = settings.ANTHROPIC_MODEL
        self._breaker = registry.get_or_create(SERVICE_NAME, BREAKER_CONFIG)
        # Retries would hide failures from the breaker
        self._client = anthropic.AsyncAnthropic(
            api_key=settings.ANTHROPIC_API_KEY,
            base_url=settings.ANTHROPIC_BASE_URL,
            default_headers={"anthropic-version": settings.ANTHROPIC_VERSION},
            max_retries=0,
            http_client=client,
        )

    async def _create_message(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        max_tokens: int,
    ) -> Message:
        timeout_ms = self._breaker.config.timeout_ms
        try:
            return await self._client.messages.create(
                model=self._model,
                max_tokens=max_tokens,
                system=system_prompt,
                messages=[{"role": m.role, "content": m.content} for m in messages],
                timeout=timeout_ms / 1000,
            )
        except anthropic.APITimeoutError:
            raise OperationTimeoutError(SERVICE_NAME, timeout_ms) from None
        except anthropic.APIConnectionError as exc:
            raise BackendUnavailableError(SERVICE_NAME, str(exc) or "Connection failed") from exc
        except anthropic.APIStatusError as exc:
            raise ProviderResponseError(SERVICE_NAME, exc.status_code, exc.message[:200]) from exc

    async def chat(
        self,
        system_prompt: str,
        messages: Sequence[ChatMessage],
        *,
        show_thinking: bool = True,
        max_tokens: int = 2048,
    ) -> PersonaReply:
        """Send the conversation and return the persona's reply.

        Raises:
            BreakerOpenError: The provider's circuit is open.
            OperationTimeoutError: The turn exceeded the breaker deadline.
            BackendUnavailableError: The provider could not be reached.
            ProviderResponseError: The provider rejected or garbled the call.
        """

        async def _turn() -> PersonaReply:
            thinking: str | None = None
            if show_thinking:
                reasoning = await self._create_message(
                    f"{system_prompt}\n\n{THINKING_INSTRUCTIONS}",
                    messages,
                    THINKING_MAX_TOKENS,
                )
                thinking = _leading_text(reasoning)

            answer = await self._create_message(system_prompt, messages, max_tokens)
            text = _leading_text(answer)
            if text is None:
                raise ProviderResponseError(SERVICE_NAME, detail="Unexpected response type from model")
            return PersonaReply(
                message=text,
                thinking=thinking,
                tokens_used=answer.usage.input_tokens + answer.usage.output_tokens,
            )

        return await self._breaker.execute(_turn)

    async def close(self) -> None:
        await self._client.close()
