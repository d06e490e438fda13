"""
Base translation backend interface.
All translation providers must inherit from TranslationBackend.
"""

import hashlib
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import AsyncIterator, Dict, List, Optional


@dataclass
class TranslationRequest:
    """Request for translation of one serialized batch."""
    text: str
    source_lang: str
    target_lang: str
    system_prompt: Optional[str] = None
    temperature: float = 0.0
    max_output_tokens: Optional[int] = None  # backend default when None


@dataclass
class TranslationResponse:
    """Response from translation backend."""
    text: str
    backend: str
    model: Optional[str]
    tokens_used: int = 0
    latency: float = 0.0
    finish_reason: Optional[str] = None  # "stop", "length", ...
    metadata: Dict = field(default_factory=dict)


class TranslationBackend(ABC):
    """Abstract base class for translation backends."""

    supports_streaming = False

    def __init__(self, api_key: Optional[str] = None, model: Optional[str] = None):
        self.api_key = api_key
        self.model = model
        self.name = self.__class__.__name__

    @abstractmethod
    async def translate(self, request: TranslationRequest) -> TranslationResponse:
        """
        Translate text asynchronously.

        Args:
            request: Translation request with text and parameters

        Returns:
            TranslationResponse with the full translated text

        Raises:
            TranslationError: classified provider failure
        """

    async def stream(self, request: TranslationRequest) -> AsyncIterator[str]:
        """
        Yield the translation incrementally.

        Backends without native streaming yield the whole response once.
        """
        response = await self.translate(request)
        yield response.text

    def is_available(self) -> bool:
        """Check if backend is available and configured."""
        return self.api_key is not None

    def get_info(self) -> Dict:
        """Get backend information."""
        return {
            "name": self.name,
            "model": self.model,
            "available": self.is_available(),
            "streaming": self.supports_streaming,
        }


def credential_id(api_key: Optional[str]) -> str:
    """Short stable identifier of an API key that is safe to log and store."""
    if not api_key:
        return "anonymous"
    return hashlib.sha256(api_key.encode("utf-8")).hexdigest()[:12]


@dataclass(eq=False)
class ProviderHandle:
    """A (provider implementation, credential) pair."""
    provider: str
    backend: TranslationBackend
    credential: str = "anonymous"
    is_fallback: bool = False

    @property
    def handle_id(self) -> str:
        return f"{self.provider}/{self.credential}"

    async def translate(self, request: TranslationRequest) -> TranslationResponse:
        return await self.backend.translate(request)

    def stream(self, request: TranslationRequest) -> AsyncIterator[str]:
        return self.backend.stream(request)

    def __repr__(self) -> str:
        return f"ProviderHandle({self.handle_id})"


def handle_ids(handles: List[ProviderHandle]) -> List[str]:
    return [h.handle_id for h in handles]
