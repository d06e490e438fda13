"""
Exception hierarchy for SubTrans.

Provider failures are classified into a small taxonomy so the rotation
manager can update key health and the orchestrator can decide between
retrying, rotating and falling back.
"""

from __future__ import annotations
from typing import Optional, Dict, Any, List


class SubTransError(Exception):
    """Base exception for all SubTrans errors."""

    def __init__(
        self,
        message: str,
        details: Optional[Dict[str, Any]] = None,
        recoverable: bool = False,
        suggestion: Optional[str] = None
    ):
        """
        Initialize error.

        Args:
            message: Human-readable error message
            details: Additional error details
            recoverable: Whether error can be recovered from
            suggestion: Suggested fix or workaround
        """
        super().__init__(message)
        self.message = message
        self.details = details or {}
        self.recoverable = recoverable
        self.suggestion = suggestion

    def to_dict(self) -> Dict[str, Any]:
        """Convert error to dictionary for JSON serialization."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "details": self.details,
            "recoverable": self.recoverable,
            "suggestion": self.suggestion
        }

    def __str__(self) -> str:
        result = self.message
        if self.suggestion:
            result += f"\nSuggestion: {self.suggestion}"
        return result


class TranslationError(SubTransError):
    """
    A classified failure of a single provider call.

    Attributes:
        error_type: Taxonomy name surfaced in error records
        counts_against_key: Whether the failure feeds the credential's health
        retry_same_key: Whether retrying the same credential is worthwhile
    """

    error_type = "TranslationError"
    counts_against_key = False
    retry_same_key = False

    def __init__(
        self,
        message: str,
        provider: Optional[str] = None,
        status_code: Optional[int] = None,
        original_error: Optional[Exception] = None,
        details: Optional[Dict[str, Any]] = None
    ):
        details = dict(details or {})
        details.update({
            "provider": provider,
            "status_code": status_code,
            "original_error": str(original_error) if original_error else None,
        })
        super().__init__(message, details, recoverable=True)
        self.provider = provider
        self.status_code = status_code
        self.original_error = original_error

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["error_type"] = self.error_type
        return data


class RateLimited(TranslationError):
    """Provider answered 429 / too many requests."""
    error_type = "RateLimited"
    counts_against_key = True


class QuotaExceeded(TranslationError):
    """Credential has no remaining quota."""
    error_type = "QuotaExceeded"
    counts_against_key = True


class InvalidCredential(TranslationError):
    """Provider rejected the API key (401 / 403)."""
    error_type = "InvalidCredential"
    counts_against_key = True


class ContentSafetyBlocked(TranslationError):
    """Provider refused the content (safety filter, recitation, prohibited content)."""
    error_type = "ContentSafetyBlocked"


class ResponseCountMismatch(TranslationError):
    """Provider response did not cover every entry of the batch."""
    error_type = "ResponseCountMismatch"
    counts_against_key = True


class ProviderTimeout(TranslationError):
    """The provider call exceeded the configured timeout."""
    error_type = "Timeout"
    retry_same_key = True


class TransportError(TranslationError):
    """Network failure or 5xx from the provider."""
    error_type = "TransportError"
    retry_same_key = True


class OutputTooLarge(TranslationError):
    """Response hit the provider's own output size limit."""
    error_type = "OutputTooLarge"


class AllProvidersExhausted(SubTransError):
    """Every configured provider and credential failed for a batch."""

    error_type = "AllProvidersExhausted"

    def __init__(self, batch_number: int, attempts: List[str], last_error: Optional[Exception] = None):
        message = (
            f"All providers exhausted at batch {batch_number} "
            f"after {len(attempts)} attempt(s)"
        )
        if last_error is not None:
            message += f": {last_error}"
        details = {
            "batch": batch_number,
            "attempts": attempts,
            "last_error": last_error.to_dict() if isinstance(last_error, SubTransError) else (
                str(last_error) if last_error else None
            ),
        }
        suggestion = (
            "Check the provider API keys and quotas, or configure a fallback provider. "
            "The failure is cached briefly; resubmit after it expires."
        )
        super().__init__(message, details, recoverable=False, suggestion=suggestion)
        self.batch_number = batch_number
        self.attempts = attempts
        self.last_error = last_error

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["error_type"] = self.error_type
        return data


class ConcurrencyLimitReached(SubTransError):
    """The user already has the maximum number of jobs running."""

    error_type = "ConcurrencyLimitReached"

    def __init__(self, user_id: str, limit: int):
        super().__init__(
            f"User {user_id} already has {limit} translation job(s) running",
            details={"user_id": user_id, "limit": limit},
            recoverable=True,
            suggestion="Wait for a running translation to finish and try again.",
        )
        self.user_id = user_id
        self.limit = limit

    def to_dict(self) -> Dict[str, Any]:
        data = super().to_dict()
        data["error_type"] = self.error_type
        return data


class ConfigurationError(SubTransError):
    """Raised when configuration is invalid."""

    def __init__(
        self,
        message: str,
        config_key: Optional[str] = None,
        invalid_value: Optional[Any] = None,
        valid_values: Optional[List[Any]] = None
    ):
        """
        Initialize configuration error.

        Args:
            message: Error message
            config_key: Configuration key that's invalid
            invalid_value: Invalid value provided
            valid_values: List of valid values
        """
        details = {
            "config_key": config_key,
            "invalid_value": invalid_value,
            "valid_values": valid_values
        }

        suggestion = None
        if config_key and valid_values:
            suggestion = f"Valid values for {config_key}: {', '.join(map(str, valid_values))}"
        elif config_key:
            suggestion = f"Check configuration for '{config_key}'"

        super().__init__(message, details, recoverable=True, suggestion=suggestion)
        self.config_key = config_key
        self.invalid_value = invalid_value
        self.valid_values = valid_values


class CacheError(SubTransError):
    """Raised when cache operations fail."""

    def __init__(
        self,
        message: str,
        cache_type: Optional[str] = None,
        operation: Optional[str] = None
    ):
        details = {
            "cache_type": cache_type,
            "operation": operation
        }
        suggestion = "Check disk space and permissions for the cache directory."

        super().__init__(message, details, recoverable=True, suggestion=suggestion)
        self.cache_type = cache_type
        self.operation = operation


_SAFETY_MARKERS = ("PROHIBITED_CONTENT", "RECITATION", "SAFETY", "content_filter", "content policy")
_SIZE_MARKERS = ("MAX_TOKENS", "maximum token", "maximum context length", "too long")
_QUOTA_MARKERS = ("quota", "insufficient_quota", "billing", "credit balance")


def classify_status(
    status_code: Optional[int],
    message: str = "",
    provider: Optional[str] = None,
    original_error: Optional[Exception] = None
) -> TranslationError:
    """
    Map an HTTP status and provider message onto the error taxonomy.

    Message markers win over the bare status code, since providers report
    quota exhaustion as 429 and safety refusals as 400 or 403.

    Args:
        status_code: HTTP status if the failure had a response
        message: Provider error message
        provider: Provider name for error details
        original_error: The underlying exception

    Returns:
        A TranslationError subclass instance (not raised)
    """
    text = message or ""
    lowered = text.lower()
    kwargs = {"provider": provider, "status_code": status_code, "original_error": original_error}

    if any(marker.lower() in lowered for marker in _SAFETY_MARKERS):
        return ContentSafetyBlocked(text or "Content blocked by provider", **kwargs)
    if any(marker.lower() in lowered for marker in _SIZE_MARKERS):
        return OutputTooLarge(text or "Provider output limit reached", **kwargs)
    # DeepL answers 456 when the character quota is used up
    if status_code == 456 or any(marker in lowered for marker in _QUOTA_MARKERS):
        return QuotaExceeded(text or "Quota exceeded", **kwargs)
    if status_code == 429:
        return RateLimited(text or "Rate limited", **kwargs)
    if status_code in (408, 504):
        return ProviderTimeout(text or "Provider timed out", **kwargs)
    if status_code in (401, 403):
        return InvalidCredential(text or "Credential rejected", **kwargs)
    if status_code is None or status_code >= 500:
        return TransportError(text or "Transport failure", **kwargs)
    return TransportError(text or f"HTTP {status_code}", **kwargs)
