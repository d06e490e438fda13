"""
Pipeline configuration.

All numeric defaults here are product-tuned starting points, not
invariants; every one of them can be overridden from YAML or code.
"""

from __future__ import annotations
from dataclasses import dataclass, field, fields
from typing import List, Dict, Optional, Any


@dataclass
class ProviderConfig:
    """One translation provider and the credentials it may rotate across."""
    name: str  # openai, anthropic, deepl, or any OpenAI-compatible alias
    model: Optional[str] = None
    api_keys: List[str] = field(default_factory=list)
    base_url: Optional[str] = None
    token_budget: int = 12000  # soft cap for one batch request
    max_output_tokens: Optional[int] = None  # per-model default of the backend when None

    def signature(self) -> Dict[str, Any]:
        """Identity of the provider setup for fingerprints; excludes credentials."""
        return {"name": self.name, "model": self.model, "base_url": self.base_url}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ProviderConfig":
        keys = data.get("api_keys") or []
        if isinstance(keys, str):
            keys = [k.strip() for k in keys.split(",") if k.strip()]
        if data.get("api_key"):
            keys = [data["api_key"]] + list(keys)
        return cls(
            name=data["name"],
            model=data.get("model"),
            api_keys=list(keys),
            base_url=data.get("base_url"),
            token_budget=int(data.get("token_budget", 12000)),
            max_output_tokens=int(data["max_output_tokens"]) if data.get("max_output_tokens") else None,
        )


@dataclass
class PipelineConfig:
    """Complete configuration for the translation pipeline."""

    # Providers
    providers: List[ProviderConfig] = field(default_factory=list)
    fallback_provider: Optional[ProviderConfig] = None

    # Batch planning
    max_batch_entries: int = 100

    # Checkpoints / partial delivery
    first_checkpoint: int = 30
    checkpoint_step: int = 75
    save_debounce_seconds: float = 3.0
    min_save_delta: int = 10
    partial_ttl: float = 3600.0
    final_ttl: Optional[float] = None  # None = keep forever
    error_ttl: float = 900.0

    # Alignment & recovery
    mismatch_threshold: float = 0.30
    full_retry_count: int = 1
    unresolved_marker: str = "[UNTRANSLATED]"

    # Key health
    key_error_threshold: int = 5
    key_error_window: float = 3600.0
    key_cooldown: float = 3600.0
    health_cache_ttl: float = 2.0

    # Calls
    call_timeout: float = 300.0
    max_retries_per_credential: int = 2
    retry_backoff_base: float = 2.0
    temperature: float = 0.0

    # Jobs
    max_concurrent_jobs_per_user: int = 3
    concurrency_slot_ttl: float = 7200.0
    poll_interval: float = 2.0
    translation_memory: bool = True

    # Storage / logging
    cache_dir: str = ".cache/subtrans"
    log_level: str = "INFO"
    log_file: Optional[str] = None

    def validate(self) -> List[str]:
        """Validate configuration and return any issues."""
        issues = []

        if not self.providers:
            issues.append("at least one provider must be configured")
        for provider in self.providers + ([self.fallback_provider] if self.fallback_provider else []):
            if not provider.api_keys:
                issues.append(f"provider '{provider.name}' has no API keys")
            if provider.token_budget < 100:
                issues.append(f"provider '{provider.name}' token_budget is too small")

        if self.max_batch_entries < 1:
            issues.append("max_batch_entries must be at least 1")
        if self.first_checkpoint < 1 or self.checkpoint_step < 1:
            issues.append("first_checkpoint and checkpoint_step must be positive")
        if not 0 <= self.mismatch_threshold <= 1:
            issues.append("mismatch_threshold must be between 0 and 1")
        if self.full_retry_count < 0:
            issues.append("full_retry_count must be non-negative")
        if self.key_error_threshold < 1:
            issues.append("key_error_threshold must be at least 1")
        if self.max_concurrent_jobs_per_user < 1:
            issues.append("max_concurrent_jobs_per_user must be at least 1")
        if self.call_timeout <= 0:
            issues.append("call_timeout must be positive")

        return issues

    def provider_signature(self) -> List[Dict[str, Any]]:
        signature = [p.signature() for p in self.providers]
        if self.fallback_provider:
            signature.append({"fallback": self.fallback_provider.signature()})
        return signature

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "PipelineConfig":
        """Build a config from a plain mapping, ignoring unknown keys."""
        data = dict(data or {})
        providers = [ProviderConfig.from_dict(p) for p in data.pop("providers", []) or []]
        fallback = data.pop("fallback_provider", None)
        known = {f.name for f in fields(cls)}
        kwargs = {k: v for k, v in data.items() if k in known}
        return cls(
            providers=providers,
            fallback_provider=ProviderConfig.from_dict(fallback) if fallback else None,
            **kwargs
        )
