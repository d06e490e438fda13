"""Anthropic Claude translation backend."""

import time
from typing import AsyncIterator, Optional

import anthropic
from anthropic import AsyncAnthropic

from subtrans.core.exceptions import (
    ContentSafetyBlocked,
    InvalidCredential,
    OutputTooLarge,
    ProviderTimeout,
    TranslationError,
    TransportError,
    classify_status,
)
from subtrans.utils.logger import get_logger
from ..base import TranslationBackend, TranslationRequest, TranslationResponse

logger = get_logger(__name__)


class AnthropicBackend(TranslationBackend):
    """Anthropic Claude-based translation backend."""

    supports_streaming = True

    MODELS = {
        "claude-3-5-haiku-latest": {"max_output_tokens": 8192},
        "claude-3-5-sonnet-latest": {"max_output_tokens": 8192},
        "claude-sonnet-4-0": {"max_output_tokens": 64000},
    }

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: str = "claude-3-5-haiku-latest",
        base_url: Optional[str] = None,
        max_output_tokens: Optional[int] = None,
        provider: str = "anthropic"
    ):
        super().__init__(api_key, model)
        self.provider = provider
        self.max_output_tokens = max_output_tokens or self.MODELS.get(model, {}).get("max_output_tokens", 8192)

        if self.api_key:
            client_kwargs = {"api_key": self.api_key, "max_retries": 0}
            if base_url:
                # the SDK appends /v1 itself
                if base_url.endswith("/v1"):
                    base_url = base_url[:-3]
                elif base_url.endswith("/v1/"):
                    base_url = base_url[:-4]
                client_kwargs["base_url"] = base_url
                logger.info(f"Using custom Anthropic API endpoint: {base_url}")
            self.async_client = AsyncAnthropic(**client_kwargs)
        else:
            self.async_client = None

    def _params(self, request: TranslationRequest):
        params = {
            "model": self.model,
            "max_tokens": request.max_output_tokens or self.max_output_tokens,
            "temperature": request.temperature,
            "messages": [{"role": "user", "content": request.text}],
        }
        if request.system_prompt:
            params["system"] = request.system_prompt
        return params

    def _classify(self, error: Exception) -> TranslationError:
        if isinstance(error, anthropic.APITimeoutError):
            return ProviderTimeout("Anthropic request timed out", provider=self.provider, original_error=error)
        if isinstance(error, anthropic.APIConnectionError):
            return TransportError(f"Anthropic connection failed: {error}", provider=self.provider, original_error=error)
        status = getattr(error, "status_code", None)
        return classify_status(status, str(error), provider=self.provider, original_error=error)

    def _check_stop(self, stop_reason: Optional[str]) -> None:
        if stop_reason == "max_tokens":
            raise OutputTooLarge("Anthropic response hit max_tokens", provider=self.provider)
        if stop_reason == "refusal":
            raise ContentSafetyBlocked("Anthropic refused the content", provider=self.provider)

    async def translate(self, request: TranslationRequest) -> TranslationResponse:
        if not self.async_client:
            raise InvalidCredential("Anthropic API key not configured", provider=self.provider)

        start_time = time.time()
        try:
            response = await self.async_client.messages.create(**self._params(request))
        except anthropic.APIError as e:
            raise self._classify(e) from e

        self._check_stop(response.stop_reason)
        text = "".join(block.text for block in response.content if block.type == "text")

        return TranslationResponse(
            text=text,
            backend=self.provider,
            model=self.model,
            tokens_used=response.usage.input_tokens + response.usage.output_tokens,
            latency=time.time() - start_time,
            finish_reason=response.stop_reason,
        )

    async def stream(self, request: TranslationRequest) -> AsyncIterator[str]:
        if not self.async_client:
            raise InvalidCredential("Anthropic API key not configured", provider=self.provider)

        try:
            async with self.async_client.messages.stream(**self._params(request)) as stream:
                async for text in stream.text_stream:
                    yield text
                final = await stream.get_final_message()
        except anthropic.APIError as e:
            raise self._classify(e) from e

        self._check_stop(final.stop_reason)
