"""Configuration loading and management."""

import os
import yaml
from dataclasses import asdict
from pathlib import Path
from typing import Dict, Any, Optional

from subtrans.core.config import PipelineConfig, ProviderConfig
from subtrans.core.exceptions import ConfigurationError

# provider name -> environment variable holding one or more comma-separated keys
ENV_KEY_MAPPINGS = {
    "openai": "OPENAI_API_KEY",
    "anthropic": "ANTHROPIC_API_KEY",
    "deepl": "DEEPL_API_KEY",
    "deepseek": "DEEPSEEK_API_KEY",
    "gemini": "GEMINI_API_KEY",
    "openrouter": "OPENROUTER_API_KEY",
    "xai": "XAI_API_KEY",
    "mistral": "MISTRAL_API_KEY",
}


def load_config(config_path: Optional[str] = None) -> PipelineConfig:
    """
    Load configuration from YAML file.

    Args:
        config_path: Path to config file (defaults to configs/default.yaml
            when present, built-in defaults otherwise)

    Returns:
        Pipeline configuration with environment overrides applied
    """
    if config_path is None:
        possible_paths = [
            Path("configs/default.yaml"),
            Path(__file__).parent.parent.parent / "configs" / "default.yaml"
        ]

        for path in possible_paths:
            if path.exists():
                config_path = str(path)
                break
        else:
            return PipelineConfig.from_dict(override_with_env(get_default_config()))

    config_path = Path(config_path)
    if not config_path.exists():
        raise FileNotFoundError(f"Config file not found: {config_path}")

    with open(config_path, 'r') as f:
        raw = yaml.safe_load(f) or {}

    if not isinstance(raw, dict):
        raise ConfigurationError(f"Config file {config_path} must contain a mapping")

    return PipelineConfig.from_dict(override_with_env(raw))


def save_config(config: PipelineConfig, config_path: str) -> None:
    """
    Save configuration to YAML file. API keys are not written.

    Args:
        config: Pipeline configuration
        config_path: Output path
    """
    data = asdict(config)
    for provider in data.get("providers", []):
        provider["api_keys"] = []
    if data.get("fallback_provider"):
        data["fallback_provider"]["api_keys"] = []

    config_path = Path(config_path)
    config_path.parent.mkdir(parents=True, exist_ok=True)

    with open(config_path, 'w') as f:
        yaml.dump(data, f, default_flow_style=False, sort_keys=False)


def _split_keys(value: str):
    return [k.strip() for k in value.split(",") if k.strip()]


def override_with_env(config: Dict[str, Any]) -> Dict[str, Any]:
    """Override config with environment variables."""
    config = dict(config)

    providers = [dict(p) for p in config.get("providers", []) or []]
    fallback = dict(config["fallback_provider"]) if config.get("fallback_provider") else None

    for provider in providers + ([fallback] if fallback else []):
        env_var = ENV_KEY_MAPPINGS.get(provider.get("name", ""))
        value = os.getenv(env_var) if env_var else None
        if value and not provider.get("api_keys") and not provider.get("api_key"):
            provider["api_keys"] = _split_keys(value)

    config["providers"] = providers
    config["fallback_provider"] = fallback

    if os.getenv("SUBTRANS_CACHE_DIR"):
        config["cache_dir"] = os.getenv("SUBTRANS_CACHE_DIR")
    if os.getenv("SUBTRANS_LOG_LEVEL"):
        config["log_level"] = os.getenv("SUBTRANS_LOG_LEVEL")

    return config


def get_default_config() -> Dict[str, Any]:
    """Get default configuration."""
    defaults = asdict(PipelineConfig())
    defaults["providers"] = [asdict(ProviderConfig(name="openai", model="gpt-4o-mini"))]
    defaults["fallback_provider"] = None
    return defaults
