"""OpenAI (and OpenAI-compatible) translation backend."""

import time
from typing import AsyncIterator, Optional

import openai
from openai import AsyncOpenAI

from subtrans.core.exceptions import (
    ContentSafetyBlocked,
    InvalidCredential,
    OutputTooLarge,
    ProviderTimeout,
    TranslationError,
    TransportError,
    classify_status,
)
from ..base import TranslationBackend, TranslationRequest, TranslationResponse


class OpenAIBackend(TranslationBackend):
    """
    Chat-completions backend.

    Works against api.openai.com and any server speaking the same protocol
    (Gemini, DeepSeek, OpenRouter, xAI, Mistral, local gateways) through ``base_url``.
    """

    supports_streaming = True

    MODELS = {
        "gpt-4o": {"max_output_tokens": 16384},
        "gpt-4o-mini": {"max_output_tokens": 16384},
        "gpt-4.1": {"max_output_tokens": 32768},
        "gpt-4.1-mini": {"max_output_tokens": 32768},
        "deepseek-chat": {"max_output_tokens": 8192},
        "gemini-2.0-flash": {"max_output_tokens": 8192},
        "gemini-2.5-flash": {"max_output_tokens": 65536},
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "gpt-4o-mini",
        base_url: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        provider: str = "openai"
    ):
        super().__init__(api_key, model)
        self.provider = provider
        self.base_url = base_url
        self.max_output_tokens = max_output_tokens or self.MODELS.get(model, {}).get("max_output_tokens", 8192)

        if self.api_key:
            client_kwargs = {"api_key": self.api_key, "max_retries": 0}
            if base_url:
                client_kwargs["base_url"] = base_url
            # retries and rotation are owned by the orchestrator
            self.async_client = AsyncOpenAI(**client_kwargs)
        else:
            self.async_client = None

    def _build_messages(self, request: TranslationRequest):
        """System prompt carries all instructions, the user message only the payload."""
        messages = []
        if request.system_prompt:
            messages.append({"role": "system", "content": request.system_prompt})
        messages.append({"role": "user", "content": request.text})
        return messages

    def _params(self, request: TranslationRequest):
        return {
            "model": self.model,
            "messages": self._build_messages(request),
            "temperature": request.temperature,
            "max_tokens": request.max_output_tokens or self.max_output_tokens,
        }

    def _classify(self, error: Exception) -> TranslationError:
        if isinstance(error, openai.APITimeoutError):
            return ProviderTimeout(f"{self.provider} request timed out", provider=self.provider, original_error=error)
        if isinstance(error, openai.APIConnectionError):
            return TransportError(f"{self.provider} connection failed: {error}", provider=self.provider, original_error=error)
        status = getattr(error, "status_code", None)
        code = getattr(error, "code", None)
        message = f"{code}: {error}" if code else str(error)
        return classify_status(status, message, provider=self.provider, original_error=error)

    def _check_finish(self, finish_reason: Optional[str]) -> None:
        if finish_reason == "length":
            raise OutputTooLarge(f"{self.provider} response truncated at max_tokens", provider=self.provider)
        if finish_reason == "content_filter":
            raise ContentSafetyBlocked(f"{self.provider} content filter triggered", provider=self.provider)

    async def translate(self, request: TranslationRequest) -> TranslationResponse:
        """Translate one batch payload in a single call."""
        if not self.async_client:
            raise InvalidCredential(f"{self.provider} API key not configured", provider=self.provider)

        start_time = time.time()
        try:
            response = await self.async_client.chat.completions.create(**self._params(request))
        except openai.APIError as e:
            raise self._classify(e) from e

        if not response.choices:
            raise TransportError(f"{self.provider} returned no choices", provider=self.provider)

        choice = response.choices[0]
        self._check_finish(choice.finish_reason)

        return TranslationResponse(
            text=choice.message.content or "",
            backend=self.provider,
            model=self.model,
            tokens_used=response.usage.total_tokens if response.usage else 0,
            latency=time.time() - start_time,
            finish_reason=choice.finish_reason,
        )

    async def stream(self, request: TranslationRequest) -> AsyncIterator[str]:
        """Yield content deltas as they arrive."""
        if not self.async_client:
            raise InvalidCredential(f"{self.provider} API key not configured", provider=self.provider)

        try:
            stream = await self.async_client.chat.completions.create(**self._params(request), stream=True)
            async for chunk in stream:
                if not chunk.choices:
                    continue
                choice = chunk.choices[0]
                if choice.delta and choice.delta.content:
                    yield choice.delta.content
                self._check_finish(choice.finish_reason)
        except openai.APIError as e:
            raise self._classify(e) from e
