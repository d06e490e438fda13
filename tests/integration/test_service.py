"""
End-to-end tests of TranslationService over scripted providers.

Every test runs the real planner, executor, rotation, recovery and
checkpoint code; only the provider backends are fakes.
"""

import asyncio

import pytest

from fixtures.fake_backend import FakeProviderFarm, make_entries
from subtrans.core.checkpoint import IN_PROGRESS_TEXT, final_key
from subtrans.core.config import ProviderConfig
from subtrans.core.exceptions import ConfigurationError, InvalidCredential, RateLimited, TransportError
from subtrans.core.models import JobOptions, JobState, WorkflowMode
from subtrans.core.orchestrator import TranslationJob, TranslationService, inflight_key, user_jobs_key
from subtrans.core.rotation import RotationManager
from subtrans.utils.cache import MemoryCacheStore


class RecordingStore(MemoryCacheStore):
    """Keeps every partial record written, in write order, and every key added."""

    def __init__(self):
        super().__init__()
        self.partials = []
        self.added = []

    def add(self, key, value, ttl=None):
        self.added.append(key)
        return super().add(key, value, ttl)

    def update(self, key, fn, ttl=None):
        value = super().update(key, fn, ttl)
        if key.startswith("partial:"):
            self.partials.append(value)
        return value


def make_service(config, farm, store=None):
    return TranslationService(config, store=store or MemoryCacheStore(), backend_factory=farm)


async def collect(service, entries, options=None, user_id="anonymous"):
    return [p async for p in service.submit_job(entries, "en", "fr", options, user_id=user_id)]


class TestBasicTranslation:
    @pytest.mark.asyncio
    async def test_complete_translation(self, pipeline_config, farm, entries):
        service = make_service(pipeline_config, farm)

        events = await collect(service, entries)

        last = events[-1]
        assert last.is_complete and not last.failed
        assert last.translated_count == last.total_entries == 12
        assert "[fr] Line 12" in last.merged_text
        assert IN_PROGRESS_TEXT not in last.merged_text
        assert events[0].translated_count == 0
        # 12 entries, 10 per batch
        assert farm.call_count == 2

    @pytest.mark.asyncio
    async def test_resubmitting_returns_cached_result(self, pipeline_config, farm, entries):
        service = make_service(pipeline_config, farm)
        first = await service.translate(entries, "en", "fr")
        calls = farm.call_count

        events = await collect(service, entries)

        assert len(events) == 1
        assert events[0].merged_text == first.merged_text
        assert farm.call_count == calls

    @pytest.mark.asyncio
    async def test_final_record_contents(self, pipeline_config, farm, entries):
        store = MemoryCacheStore()
        service = make_service(pipeline_config, farm, store)

        result = await service.translate(entries, "en", "fr")

        record = store.get(final_key(result.fingerprint))
        assert record["unresolved_count"] == 0
        assert sum(record["provider_summary"].values()) == 2
        assert service.lookup(result.fingerprint).is_complete

    def test_requires_a_provider(self, pipeline_config, farm):
        pipeline_config.providers = []
        with pytest.raises(ConfigurationError):
            make_service(pipeline_config, farm)


class TestDeduplication:
    @pytest.mark.asyncio
    async def test_concurrent_identical_requests_share_one_job(self, pipeline_config, entries):
        farm = FakeProviderFarm(delay=0.02)
        service = make_service(pipeline_config, farm)
        batch = make_entries(25)

        first, second = await asyncio.gather(
            service.translate(batch, "en", "fr"),
            service.translate(batch, "en", "fr"),
        )

        assert first.is_complete and second.is_complete
        assert first.merged_text == second.merged_text
        assert farm.call_count == 3

    @pytest.mark.asyncio
    async def test_other_process_is_followed_through_the_cache(self, pipeline_config):
        """A second service over the same store polls instead of translating again."""
        store = MemoryCacheStore()
        owner_farm = FakeProviderFarm(delay=0.02)
        follower_farm = FakeProviderFarm()
        owner = make_service(pipeline_config, owner_farm, store)
        follower = make_service(pipeline_config, follower_farm, store)
        batch = make_entries(25)

        running = asyncio.create_task(owner.translate(batch, "en", "fr"))
        await asyncio.sleep(0.01)
        followed = await follower.translate(batch, "en", "fr")
        owned = await running

        assert followed.is_complete
        assert followed.merged_text == owned.merged_text
        assert follower_farm.call_count == 0
        assert owner_farm.call_count == 3

    @pytest.mark.asyncio
    async def test_abandoned_caller_does_not_stop_the_job(self, pipeline_config, farm, entries):
        service = make_service(pipeline_config, farm)

        stream = service.submit_job(entries, "en", "fr")
        first = await stream.__anext__()
        await stream.aclose()
        await service.wait_for_jobs()

        assert first.translated_count == 0
        progress = service.lookup(first.fingerprint)
        assert progress.is_complete
        assert progress.translated_count == 12


class TestCheckpoints:
    @pytest.mark.asyncio
    async def test_partials_follow_the_schedule(self, pipeline_config, farm):
        """180 entries in batches of 60: saves at 60 (past 30), 120 (past 105) and 180."""
        pipeline_config.max_batch_entries = 60
        store = RecordingStore()
        service = make_service(pipeline_config, farm, store)

        result = await service.translate(make_entries(180), "en", "fr")

        assert [p["translated_count"] for p in store.partials] == [60, 120, 180]
        assert IN_PROGRESS_TEXT in store.partials[0]["merged_text"]
        assert "[fr] Line 60" in store.partials[0]["merged_text"]
        assert "[fr] Line 61" not in store.partials[0]["merged_text"]
        assert result.is_complete
        assert store.get(f"partial:{result.fingerprint}") is None

    @pytest.mark.asyncio
    async def test_progress_events_are_monotonic(self, pipeline_config, farm):
        service = make_service(pipeline_config, farm)

        events = await collect(service, make_entries(35))

        counts = [e.translated_count for e in events]
        assert counts == [0, 10, 20, 30, 35]


class TestProviderFailures:
    @pytest.mark.asyncio
    async def test_transient_error_retries_same_key(self, pipeline_config, farm):
        farm.configure("key-a", errors=[TransportError("connection reset", provider="fake")])
        service = make_service(pipeline_config, farm)

        result = await service.translate(make_entries(5), "en", "fr")

        assert result.is_complete
        assert farm.calls_for("key-a") == 2
        assert farm.calls_for("key-b") == 0

    @pytest.mark.asyncio
    async def test_rate_limit_rotates_to_next_key(self, pipeline_config, farm):
        farm.configure("key-a", errors=[RateLimited("429", provider="fake", status_code=429)])
        service = make_service(pipeline_config, farm)

        result = await service.translate(make_entries(5), "en", "fr")

        assert result.is_complete
        assert farm.calls_for("key-a") == 1
        assert farm.calls_for("key-b") == 1

    @pytest.mark.asyncio
    async def test_fallback_provider(self, pipeline_config, farm, entries):
        pipeline_config.fallback_provider = ProviderConfig(name="backup", model="backup-model", api_keys=["fb-key"])
        for key in ("key-a", "key-b"):
            farm.configure(key, fail_with=lambda: InvalidCredential("bad key", provider="fake", status_code=401))
        service = make_service(pipeline_config, farm)

        result = await service.translate(entries, "en", "fr")

        assert result.is_complete
        assert farm.calls_for("key-a") == 1
        assert farm.calls_for("key-b") == 1
        assert farm.calls_for("fb-key") == 2

    @pytest.mark.asyncio
    async def test_all_providers_exhausted(self, pipeline_config, farm, entries):
        for key in ("key-a", "key-b"):
            farm.configure(key, fail_with=lambda: RateLimited("429", provider="fake", status_code=429))
        service = make_service(pipeline_config, farm)

        result = await service.translate(entries, "en", "fr")

        assert result.failed
        assert result.error["error_type"] == "AllProvidersExhausted"
        assert result.error["details"]["attempts"]
        calls = farm.call_count

        cached = await service.translate(entries, "en", "fr")

        assert cached.failed
        assert cached.error["error_type"] == "AllProvidersExhausted"
        assert farm.call_count == calls


class TestMismatchRecovery:
    @pytest.mark.asyncio
    async def test_missing_entry_is_recovered(self, pipeline_config):
        farm = FakeProviderFarm(drop_keys={2}, drop_calls=1)
        service = make_service(pipeline_config, farm)

        result = await service.translate(make_entries(5), "en", "fr")

        assert result.is_complete
        assert "[fr] Line 2" in result.merged_text
        assert farm.call_count == 2
        # the resubmission carries only the missing entry
        assert farm.log[-1][1].text == "1. Line 2"

    @pytest.mark.asyncio
    async def test_unrecoverable_entry_is_marked(self, pipeline_config):
        farm = FakeProviderFarm(workflow=WorkflowMode.TAGGED, drop_keys={2}, drop_calls=10)
        store = MemoryCacheStore()
        service = make_service(pipeline_config, farm, store)
        options = JobOptions(workflow=WorkflowMode.TAGGED)

        result = await service.translate(make_entries(5), "en", "fr", options)

        assert result.is_complete
        assert "[UNTRANSLATED] Line 2" in result.merged_text
        assert "[fr] Line 3" in result.merged_text
        assert store.get(final_key(result.fingerprint))["unresolved_count"] == 1
        # first call, targeted resubmission, one full retry
        assert farm.call_count == 3


class TestConcurrencyCap:
    @pytest.mark.asyncio
    async def test_second_job_for_same_user_is_rejected(self, pipeline_config):
        pipeline_config.max_concurrent_jobs_per_user = 1
        farm = FakeProviderFarm(delay=0.05)
        store = MemoryCacheStore()
        service = make_service(pipeline_config, farm, store)

        running = asyncio.create_task(service.translate(make_entries(5), "en", "fr", user_id="alice"))
        await asyncio.sleep(0.01)

        rejected = await service.translate(make_entries(6), "en", "fr", user_id="alice")
        other_user = await service.translate(make_entries(7), "en", "fr", user_id="bob")
        finished = await running

        assert rejected.failed
        assert rejected.error["error_type"] == "ConcurrencyLimitReached"
        assert other_user.is_complete
        assert finished.is_complete
        assert store.get(user_jobs_key("alice")) == 0

    @pytest.mark.asyncio
    async def test_rejection_is_not_cached(self, pipeline_config):
        pipeline_config.max_concurrent_jobs_per_user = 1
        farm = FakeProviderFarm(delay=0.05)
        service = make_service(pipeline_config, farm)
        batch = make_entries(6)

        running = asyncio.create_task(service.translate(make_entries(5), "en", "fr", user_id="alice"))
        await asyncio.sleep(0.01)
        rejected = await service.translate(batch, "en", "fr", user_id="alice")
        await running

        retried = await service.translate(batch, "en", "fr", user_id="alice")

        assert rejected.failed
        assert retried.is_complete

    @pytest.mark.asyncio
    async def test_rejected_request_never_marks_itself_in_flight(self, pipeline_config):
        pipeline_config.max_concurrent_jobs_per_user = 1
        farm = FakeProviderFarm(delay=0.05)
        store = RecordingStore()
        service = make_service(pipeline_config, farm, store)
        batch = make_entries(6)
        rejected_marker = inflight_key(service.fingerprint(batch, "en", "fr"))

        running = asyncio.create_task(service.translate(make_entries(5), "en", "fr", user_id="alice"))
        await asyncio.sleep(0.01)
        rejected = await service.translate(batch, "en", "fr", user_id="alice")
        await running

        assert rejected.failed
        assert rejected_marker not in store.added
        assert len([key for key in store.added if key.startswith("inflight:")]) == 1


class TestStreaming:
    @pytest.mark.asyncio
    async def test_streaming_reports_progress_inside_batches(self, pipeline_config):
        farm = FakeProviderFarm(chunk_size=8)
        service = make_service(pipeline_config, farm)

        events = await collect(service, make_entries(12), JobOptions(streaming=True))

        counts = [e.translated_count for e in events]
        assert counts == sorted(counts)
        assert any(count % 10 for count in counts[:-1])
        assert events[-1].is_complete
        assert "[fr] Line 12" in events[-1].merged_text


class TestTranslationMemory:
    @pytest.mark.asyncio
    async def test_known_lines_are_not_sent_again(self, pipeline_config, farm):
        pipeline_config.translation_memory = True
        service = make_service(pipeline_config, farm)

        await service.translate(make_entries(5), "en", "fr")
        result = await service.translate(make_entries(6), "en", "fr")

        assert result.is_complete
        assert "[fr] Line 1" in result.merged_text
        assert farm.call_count == 2
        assert farm.log[-1][1].text == "1. Line 6"


class TestTranslationJob:
    @pytest.mark.asyncio
    async def test_state_transitions(self, pipeline_config, farm, entries):
        farm.configure("key-a", errors=[RateLimited("429", provider="fake", status_code=429)])
        store = MemoryCacheStore()
        service = make_service(pipeline_config, farm, store)
        rotation = RotationManager(service.primary_handles, service.health, store)
        fingerprint = service.fingerprint(entries, "en", "fr")
        job = TranslationJob(fingerprint, entries, "en", "fr", JobOptions(), pipeline_config, store, rotation)

        final = await job.run()

        assert final.is_complete
        assert job.transitions[0] is JobState.PLANNING
        assert job.transitions[-1] is JobState.COMPLETE
        for state in (JobState.SELECT_CREDENTIAL, JobState.CALL, JobState.ROTATE,
                      JobState.ALIGN, JobState.MERGE, JobState.CHECKPOINT):
            assert state in job.transitions
        assert sum(job.provider_summary.values()) == 2
