"""Pytest configuration and fixtures."""

import sys
from pathlib import Path

# Add project root and the tests directory to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))
sys.path.insert(0, str(Path(__file__).parent))

import pytest

from fixtures.fake_backend import FakeProviderFarm, make_entries


@pytest.fixture
def entries():
    """Twelve short subtitle cues."""
    return make_entries(12)


@pytest.fixture
def memory_store():
    """Fresh in-process cache store."""
    from subtrans.utils.cache import MemoryCacheStore
    return MemoryCacheStore()


@pytest.fixture
def farm():
    """Scripted provider factory shared by all credentials."""
    return FakeProviderFarm()


@pytest.fixture
def pipeline_config():
    """Two-credential configuration tuned for fast tests."""
    from subtrans.core.config import PipelineConfig, ProviderConfig
    return PipelineConfig(
        providers=[ProviderConfig(name="fake", model="fake-model", api_keys=["key-a", "key-b"])],
        max_batch_entries=10,
        save_debounce_seconds=0.0,
        retry_backoff_base=0.0,
        poll_interval=0.01,
        translation_memory=False,
    )
