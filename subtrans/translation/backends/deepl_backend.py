"""DeepL translation backend (REST API over httpx)."""

import time
from typing import Optional

import httpx

from subtrans.core.exceptions import InvalidCredential, ProviderTimeout, TransportError, classify_status
from ..base import TranslationBackend, TranslationRequest, TranslationResponse

# DeepL rejects the bare EN/PT codes as targets
_TARGET_ALIASES = {"EN": "EN-US", "PT": "PT-PT"}


class DeepLBackend(TranslationBackend):
    """
    DeepL machine translation.

    DeepL takes no instructions, so the system prompt is ignored and the
    payload is sent as one text with newlines kept as sentence boundaries.
    The tagged workflow is the best fit: its ``<s>`` tags are handled as
    XML and survive translation untouched.
    """

    FREE_URL = "https://api-free.deepl.com"
    PRO_URL = "https://api.deepl.com"

    def __init__(
        self,
        api_key: Optional[str] = None,
        model: Optional[str] = "quality_optimized",
        base_url: Optional[str] = None,
        timeout: float = 60.0,
        provider: str = "deepl",
        transport: Optional[httpx.AsyncBaseTransport] = None
    ):
        super().__init__(api_key, model)
        self.provider = provider
        self.timeout = timeout
        self.transport = transport
        if base_url:
            self.base_url = base_url.rstrip("/")
        elif api_key and api_key.lower().endswith(":fx"):
            self.base_url = self.FREE_URL
        else:
            self.base_url = self.PRO_URL

    @staticmethod
    def _target_code(lang: str) -> str:
        code = (lang or "").strip().upper()
        return _TARGET_ALIASES.get(code, code)

    @staticmethod
    def _source_code(lang: str) -> Optional[str]:
        if not lang or lang.lower() in ("auto", "detect"):
            return None
        return lang.strip().split("-")[0].upper()

    def _payload(self, request: TranslationRequest):
        payload = {
            "text": [request.text],
            "target_lang": self._target_code(request.target_lang),
            "preserve_formatting": True,
            "split_sentences": "nonewlines",
        }
        source = self._source_code(request.source_lang)
        if source:
            payload["source_lang"] = source
        if self.model:
            payload["model_type"] = self.model
        if "<s id=" in request.text:
            payload["tag_handling"] = "xml"
        return payload

    async def translate(self, request: TranslationRequest) -> TranslationResponse:
        if not self.api_key:
            raise InvalidCredential("DeepL API key not configured", provider=self.provider)

        start_time = time.time()
        headers = {"Authorization": f"DeepL-Auth-Key {self.api_key}"}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(
                    f"{self.base_url}/v2/translate",
                    json=self._payload(request),
                    headers=headers,
                )
        except httpx.TimeoutException as e:
            raise ProviderTimeout("DeepL request timed out", provider=self.provider, original_error=e) from e
        except httpx.HTTPError as e:
            raise TransportError(f"DeepL request failed: {e}", provider=self.provider, original_error=e) from e

        if response.status_code >= 400:
            raise classify_status(response.status_code, response.text, provider=self.provider)

        try:
            data = response.json()
        except ValueError as e:
            raise TransportError("DeepL returned a non-JSON response", provider=self.provider, original_error=e) from e

        translations = (data.get("translations") if isinstance(data, dict) else None) or []
        if not translations:
            raise TransportError("No translation returned from DeepL", provider=self.provider)

        return TranslationResponse(
            text="\n".join(t.get("text", "") for t in translations),
            backend=self.provider,
            model=self.model,
            latency=time.time() - start_time,
            finish_reason="stop",
            metadata={"detected_source_language": translations[0].get("detected_source_language")},
        )
