"""
Tests for the checkpoint save policy and the partial/final record writer.
"""

import pytest

from fixtures.fake_backend import make_entries
from subtrans.core.checkpoint import (
    IN_PROGRESS_END,
    IN_PROGRESS_TEXT,
    CheckpointCache,
    SkipReason,
    build_partial_text,
    error_key,
    final_key,
    lookup,
    partial_key,
)
from subtrans.core.exceptions import AllProvidersExhausted, CacheError, RateLimited
from subtrans.core.models import FinalRecord
from subtrans.utils.cache import MemoryCacheStore

FP = "f" * 64


class RecordingStore(MemoryCacheStore):
    """Remembers the translated_count of every partial record written."""

    def __init__(self):
        super().__init__()
        self.partial_counts = []

    def update(self, key, fn, ttl=None):
        value = super().update(key, fn, ttl)
        if key.startswith("partial:"):
            self.partial_counts.append(value["translated_count"])
        return value


class UnreadableFinalStore(MemoryCacheStore):
    def get(self, key):
        if key.startswith("final:"):
            return None
        return super().get(key)


class BrokenStore(MemoryCacheStore):
    def update(self, key, fn, ttl=None):
        raise OSError("disk full")


def make_cache(store, schedule=(30, 105, 180), total=180, **kwargs):
    kwargs.setdefault("debounce_seconds", 3.0)
    kwargs.setdefault("min_delta", 10)
    return CheckpointCache(store, FP, total, list(schedule), clock=lambda: 0.0, **kwargs)


def final_record(count=180):
    return FinalRecord(merged_text="done", translated_count=count, total_entries=count)


class TestSavePolicy:
    @pytest.mark.asyncio
    async def test_skip_reasons(self, memory_store):
        cache = make_cache(memory_store)

        assert cache.evaluate(20, now=0).reason is SkipReason.CHECKPOINT_NOT_REACHED
        assert cache.evaluate(30, now=0).save
        await cache.save(30, "partial", now=0)

        assert cache.evaluate(25, now=1).reason is SkipReason.STALE_UPDATE
        assert cache.evaluate(30, now=1).reason is SkipReason.ALREADY_SAVED
        assert cache.evaluate(50, now=1).reason is SkipReason.CHECKPOINT_NOT_REACHED
        assert cache.evaluate(110, now=1).reason is SkipReason.DEBOUNCE_WINDOW
        assert cache.evaluate(110, now=5).save

        assert cache.skips[SkipReason.DEBOUNCE_WINDOW] == 1
        await cache.close()

    @pytest.mark.asyncio
    async def test_insufficient_delta(self, memory_store):
        cache = make_cache(memory_store, schedule=(30, 35, 180))
        await cache.save(30, "partial", now=0)

        decision = cache.evaluate(36, now=10)

        assert not decision.save
        assert decision.reason is SkipReason.INSUFFICIENT_DELTA
        await cache.close()

    @pytest.mark.asyncio
    async def test_final_flush_ignores_debounce_and_schedule(self, memory_store):
        cache = make_cache(memory_store)
        await cache.save(30, "partial", now=0)

        decision = cache.evaluate(180, now=0.5)
        assert decision.save and decision.final

        await cache.save(180, "complete", now=0.5)
        assert cache.evaluate(180, now=10).reason is SkipReason.ALREADY_SAVED
        await cache.close()

    @pytest.mark.asyncio
    async def test_schedule_pointer_skips_passed_checkpoints(self, memory_store):
        cache = make_cache(memory_store)
        assert cache.next_checkpoint == 30

        await cache.save(120, "partial", now=0)

        assert cache.next_checkpoint == 180
        await cache.close()


class TestWriter:
    @pytest.mark.asyncio
    async def test_writes_land_in_save_order(self):
        store = RecordingStore()
        cache = make_cache(store)

        for count in (30, 105, 180):
            await cache.save(count, f"text {count}", now=count)
        await cache.flush()

        assert store.partial_counts == [30, 105, 180]
        assert store.get(partial_key(FP))["translated_count"] == 180
        assert store.get(partial_key(FP))["saved_at_sequence"] == 3
        await cache.close()

    @pytest.mark.asyncio
    async def test_never_regresses_stored_progress(self, memory_store):
        """A record from another writer with more progress is left alone."""
        memory_store.set(partial_key(FP), {
            "kind": "partial",
            "merged_text": "ahead",
            "translated_count": 150,
            "total_entries": 180,
            "saved_at_sequence": 9,
        })
        cache = make_cache(memory_store)

        await cache.save(30, "behind", now=0)
        await cache.flush()

        stored = memory_store.get(partial_key(FP))
        assert stored["translated_count"] == 150
        assert stored["merged_text"] == "ahead"
        await cache.close()

    @pytest.mark.asyncio
    async def test_save_failure_is_not_fatal(self):
        cache = make_cache(BrokenStore())

        await cache.save(30, "partial", now=0)
        await cache.flush()

        assert cache.saved_counts == [30]
        await cache.close()

    @pytest.mark.asyncio
    async def test_refresh_extends_partial(self, memory_store):
        cache = make_cache(memory_store, partial_ttl=10)
        await cache.save(30, "partial", now=0)
        await cache.flush()

        cache.refresh()

        assert memory_store.get(partial_key(FP)) is not None
        await cache.close()


class TestFinalize:
    @pytest.mark.asyncio
    async def test_final_replaces_partial(self, memory_store):
        cache = make_cache(memory_store)
        await cache.save(30, "partial", now=0)

        await cache.finalize(final_record())

        assert memory_store.get(partial_key(FP)) is None
        stored = memory_store.get(final_key(FP))
        assert stored["is_complete"]
        assert stored["translated_count"] == 180

    @pytest.mark.asyncio
    async def test_unverified_final_keeps_partial(self):
        store = UnreadableFinalStore()
        cache = make_cache(store)
        await cache.save(30, "partial", now=0)

        with pytest.raises(CacheError):
            await cache.finalize(final_record())

        assert store.get(partial_key(FP))["translated_count"] == 30
        await cache.close()

    @pytest.mark.asyncio
    async def test_write_error_replaces_partial(self, memory_store):
        cache = make_cache(memory_store)
        await cache.save(30, "partial", now=0)
        error = AllProvidersExhausted(2, ["fake/a", "fake/b"], RateLimited("429", provider="fake"))

        record = await cache.write_error(error)

        assert record.error_type == "AllProvidersExhausted"
        stored = memory_store.get(error_key(FP))
        assert stored["kind"] == "error"
        assert stored["details"]["attempts"] == ["fake/a", "fake/b"]
        assert memory_store.get(partial_key(FP)) is None


class TestPartialText:
    def test_in_progress_cue(self):
        entries = make_entries(2)
        text = build_partial_text(entries, total_entries=5)

        assert text.endswith(f"3\n00:00:03,000 --> {IN_PROGRESS_END}\n{IN_PROGRESS_TEXT}\n")
        assert text.startswith("1\n00:00:00,000 --> 00:00:01,000\nLine 1\n\n")

    def test_complete_has_no_notice(self):
        text = build_partial_text(make_entries(2), total_entries=2)
        assert IN_PROGRESS_TEXT not in text

    def test_nothing_translated_yet(self):
        text = build_partial_text([], total_entries=5)
        assert text == f"1\n00:00:00,000 --> {IN_PROGRESS_END}\n{IN_PROGRESS_TEXT}\n"


class TestLookup:
    def test_final_then_error_then_partial(self, memory_store):
        memory_store.set(partial_key(FP), {"kind": "partial"})
        memory_store.set(error_key(FP), {"kind": "error"})
        memory_store.set(final_key(FP), {"kind": "final"})

        assert lookup(memory_store, FP)["kind"] == "final"
        memory_store.delete(final_key(FP))
        assert lookup(memory_store, FP)["kind"] == "error"
        memory_store.delete(error_key(FP))
        assert lookup(memory_store, FP)["kind"] == "partial"
        memory_store.delete(partial_key(FP))
        assert lookup(memory_store, FP) is None
