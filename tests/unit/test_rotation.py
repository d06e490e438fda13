"""
Tests for key health accounting and credential rotation.
"""

import pytest

from fixtures.fake_backend import FakeBackend
from subtrans.core.exceptions import ContentSafetyBlocked, RateLimited, TransportError
from subtrans.core.models import RotationMode
from subtrans.core.rotation import KeyHealthStore, RotationManager
from subtrans.translation.base import ProviderHandle, credential_id
from subtrans.utils.cache import MemoryCacheStore


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


def make_handle(key, provider="fake", is_fallback=False):
    return ProviderHandle(provider, FakeBackend(api_key=key), credential_id(key), is_fallback)


def rate_limited():
    return RateLimited("429 Too Many Requests", provider="fake", status_code=429)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def store():
    return MemoryCacheStore()


@pytest.fixture
def health(store, clock):
    return KeyHealthStore(store, error_threshold=5, error_window=3600, cooldown=3600, cache_ttl=0, clock=clock)


class TestKeyHealthStore:
    def test_threshold_starts_cooldown(self, health):
        handle = make_handle("key-a")
        for _ in range(4):
            health.record_failure(handle)
        assert health.get(handle).error_count == 4
        assert not health.is_cooling(handle)

        state = health.record_failure(handle)

        assert health.is_cooling(handle)
        assert state.error_count == 0

    def test_cooldown_expires(self, health, clock):
        handle = make_handle("key-a")
        for _ in range(5):
            health.record_failure(handle)

        clock.advance(3599)
        assert health.is_cooling(handle)
        clock.advance(2)
        assert not health.is_cooling(handle)

    def test_window_restarts_after_expiry(self, health, clock):
        handle = make_handle("key-a")
        for _ in range(4):
            health.record_failure(handle)

        clock.advance(3601)
        state = health.record_failure(handle)

        assert state.error_count == 1
        assert state.window_start == clock.now
        assert not health.is_cooling(handle)

    def test_success_resets_error_count(self, health):
        handle = make_handle("key-a")
        for _ in range(3):
            health.record_failure(handle)

        health.record_success(handle)

        assert health.get(handle).error_count == 0

    def test_success_keeps_active_cooldown(self, health):
        handle = make_handle("key-a")
        for _ in range(5):
            health.record_failure(handle)
        health.record_failure(handle)

        health.record_success(handle)

        assert health.is_cooling(handle)

    def test_health_is_shared_through_the_store(self, store, clock):
        """Two processes (two health stores) over one cache see the same counts."""
        first = KeyHealthStore(store, cache_ttl=0, clock=clock)
        second = KeyHealthStore(store, cache_ttl=0, clock=clock)
        handle = make_handle("key-a")

        for _ in range(5):
            first.record_failure(handle)

        assert second.is_cooling(handle)

    def test_health_key_never_contains_the_raw_key(self):
        handle = make_handle("sk-secret-value")
        assert "sk-secret-value" not in KeyHealthStore.key_for(handle)


class TestRotationManager:
    def test_round_robin(self, health, store):
        handles = [make_handle(k) for k in ("key-a", "key-b", "key-c")]
        rotation = RotationManager(handles, health, store)

        picked = [rotation.select().backend.api_key for _ in range(6)]

        assert picked == ["key-a", "key-b", "key-c", "key-a", "key-b", "key-c"]

    def test_cooling_credential_is_skipped(self, health, store):
        handles = [make_handle(k) for k in ("key-a", "key-b", "key-c")]
        rotation = RotationManager(handles, health, store)
        for _ in range(5):
            rotation.report_failure(handles[1], rate_limited())

        picked = {rotation.select().backend.api_key for _ in range(10)}

        assert picked == {"key-a", "key-c"}

    def test_all_cooling_still_selects(self, health, store):
        handles = [make_handle(k) for k in ("key-a", "key-b")]
        rotation = RotationManager(handles, health, store)
        for handle in handles:
            for _ in range(5):
                rotation.report_failure(handle, rate_limited())

        assert rotation.select() in handles

    def test_exclude_every_handle(self, health, store):
        handles = [make_handle(k) for k in ("key-a", "key-b")]
        rotation = RotationManager(handles, health, store)

        assert rotation.select(exclude=[h.handle_id for h in handles]) is None
        assert rotation.select(exclude=[handles[0].handle_id]) is handles[1]

    def test_per_request_mode_sticks_until_failure(self, health, store):
        handles = [make_handle(k) for k in ("key-a", "key-b")]
        rotation = RotationManager(handles, health, store, mode=RotationMode.PER_REQUEST)

        first = rotation.select()
        assert rotation.select() is first
        assert rotation.select() is first

        rotation.report_failure(first, TransportError("connection reset", provider="fake"))

        assert rotation.select() is not first

    def test_content_safety_does_not_count_against_key(self, health, store):
        handle = make_handle("key-a")
        rotation = RotationManager([handle], health, store)

        for _ in range(10):
            rotation.report_failure(handle, ContentSafetyBlocked("blocked", provider="fake"))

        assert store.get(KeyHealthStore.key_for(handle)) is None
        assert not health.is_cooling(handle)

    def test_fallback_activation(self, health, store):
        primary = [make_handle("key-a")]
        fallback = [make_handle("fb-key", provider="backup", is_fallback=True)]
        rotation = RotationManager(primary, health, store, fallback=fallback)

        assert rotation.activate_fallback()
        assert rotation.pool == fallback
        assert rotation.select() is fallback[0]
        assert not rotation.activate_fallback()

    def test_no_fallback_configured(self, health, store):
        rotation = RotationManager([make_handle("key-a")], health, store)
        assert not rotation.activate_fallback()

    def test_counter_is_shared_between_jobs(self, health, store):
        """Two jobs over the same pool continue each other's rotation."""
        handles = [make_handle(k) for k in ("key-a", "key-b")]
        job_one = RotationManager(handles, health, store)
        job_two = RotationManager(handles, health, store)

        assert job_one.select() is handles[0]
        assert job_two.select() is handles[1]

    def test_requires_handles(self, health, store):
        with pytest.raises(ValueError):
            RotationManager([], health, store)
