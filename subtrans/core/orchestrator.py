"""
Job orchestration.

``TranslationService`` is the public entry point: it fingerprints a
request, answers from the cache when it can, deduplicates concurrent
requests and enforces the per-user job cap. Each accepted request runs
as one ``TranslationJob`` task whose batch loop is an explicit state
machine:

    PLANNING -> (SELECT_CREDENTIAL -> CALL -> [RETRY | ROTATE | FALLBACK]
    -> ALIGN -> [RECOVER] -> MERGE -> CHECKPOINT)* -> COMPLETE | FAILED
"""

import asyncio
import time
from dataclasses import replace
from typing import AsyncIterator, Callable, Dict, List, Optional, Sequence, Set, Tuple

from subtrans.core.alignment import MismatchRecovery, apply_translations
from subtrans.core.checkpoint import CheckpointCache, build_partial_text, lookup
from subtrans.core.config import PipelineConfig, ProviderConfig
from subtrans.core.exceptions import (
    AllProvidersExhausted,
    ConcurrencyLimitReached,
    ConfigurationError,
    ResponseCountMismatch,
    SubTransError,
    TranslationError,
)
from subtrans.core.executor import CallExecutor
from subtrans.core.models import (
    AlignmentResult,
    Batch,
    FinalRecord,
    JobOptions,
    JobProgress,
    JobState,
    SubtitleEntry,
    make_fingerprint,
)
from subtrans.core.planner import BatchPlanner, build_checkpoint_schedule
from subtrans.core.rotation import KeyHealthStore, RotationManager
from subtrans.sources.srt import format_srt
from subtrans.translation.backends import create_backend
from subtrans.translation.base import ProviderHandle, credential_id
from subtrans.translation.workflows import get_workflow
from subtrans.utils.cache import CacheStore, DiskCacheStore, TranslationMemory
from subtrans.utils.logger import get_logger

logger = get_logger(__name__)


def inflight_key(fingerprint: str) -> str:
    return f"inflight:{fingerprint}"


def user_jobs_key(user_id: str) -> str:
    return f"userjobs:{user_id}"


class TranslationJob:
    """One translation request, from planning to the final record."""

    def __init__(
        self,
        fingerprint: str,
        entries: Sequence[SubtitleEntry],
        source_lang: str,
        target_lang: str,
        options: JobOptions,
        config: PipelineConfig,
        store: CacheStore,
        rotation: RotationManager,
        memory: Optional[TranslationMemory] = None,
        heartbeat: Optional[Callable[[], None]] = None
    ):
        self.fingerprint = fingerprint
        self.entries = list(entries)
        self.source_lang = source_lang
        self.target_lang = target_lang
        self.options = options
        self.config = config
        self.rotation = rotation
        self.memory = memory
        self.heartbeat = heartbeat

        self.workflow = get_workflow(options.workflow)
        budgets = [p.token_budget for p in config.providers]
        if config.fallback_provider:
            budgets.append(config.fallback_provider.token_budget)
        self.planner = BatchPlanner(self.workflow, min(budgets), config.max_batch_entries)
        self.executor = CallExecutor(
            self.workflow,
            self.planner,
            source_lang,
            target_lang,
            custom_prompt=options.custom_prompt,
            streaming=options.streaming,
            timeout=config.call_timeout,
            temperature=config.temperature,
        )
        self.recovery = MismatchRecovery(
            threshold=config.mismatch_threshold,
            full_retry_count=config.full_retry_count,
            marker=config.unresolved_marker,
        )
        self.checkpoint = CheckpointCache(
            store,
            fingerprint,
            len(self.entries),
            build_checkpoint_schedule(config.first_checkpoint, config.checkpoint_step, len(self.entries)),
            debounce_seconds=config.save_debounce_seconds,
            min_delta=config.min_save_delta,
            partial_ttl=config.partial_ttl,
            final_ttl=config.final_ttl,
            error_ttl=config.error_ttl,
        )

        self.state: Optional[JobState] = None
        self.transitions: List[JobState] = []
        self.provider_summary: Dict[str, int] = {}
        self.latest: Optional[JobProgress] = None
        self.done = False
        self._merged: List[SubtitleEntry] = []
        self._unresolved: Set[int] = set()
        self._subscribers: List[asyncio.Queue] = []

    @property
    def short_id(self) -> str:
        return self.fingerprint[:12]

    @property
    def total(self) -> int:
        return len(self.entries)

    # -- progress fan-out -------------------------------------------------

    async def subscribe(self) -> AsyncIterator[JobProgress]:
        """Progress events of this job; starts with the latest one already published."""
        queue: asyncio.Queue = asyncio.Queue()
        if self.latest is not None:
            queue.put_nowait(self.latest)
        if self.done:
            queue.put_nowait(None)
        else:
            self._subscribers.append(queue)
        try:
            while True:
                progress = await queue.get()
                if progress is None:
                    return
                yield progress
                if progress.is_complete or progress.failed:
                    return
        finally:
            if queue in self._subscribers:
                self._subscribers.remove(queue)

    def _publish(self, progress: JobProgress) -> None:
        self.latest = progress
        for queue in self._subscribers:
            queue.put_nowait(progress)

    def _progress(self, entries: Optional[List[SubtitleEntry]] = None) -> JobProgress:
        entries = self._merged if entries is None else entries
        return JobProgress(
            fingerprint=self.fingerprint,
            translated_count=len(entries),
            total_entries=self.total,
            merged_text=build_partial_text(entries, self.total),
        )

    def _transition(self, state: JobState) -> None:
        self.state = state
        self.transitions.append(state)
        logger.debug(f"Job {self.short_id}: {state.value}")

    # -- main loop --------------------------------------------------------

    async def run(self) -> Optional[JobProgress]:
        """Run the job to completion; failures end up as an ErrorRecord, never raised."""
        try:
            await self._run()
        except AllProvidersExhausted as e:
            logger.error(f"Job {self.short_id} failed: {e.message}")
            await self._fail(e)
        except Exception as e:
            logger.exception(f"Job {self.short_id} failed unexpectedly")
            if not isinstance(e, SubTransError):
                e = SubTransError(f"{type(e).__name__}: {e}", details={"exception": type(e).__name__})
            await self._fail(e)
        finally:
            self.done = True
            for queue in self._subscribers:
                queue.put_nowait(None)
        return self.latest

    async def _run(self) -> None:
        self._transition(JobState.PLANNING)
        batches = self.planner.plan(self.entries)
        memorized = self.memory.lookup(self.entries, self.target_lang) if self.memory else {}
        logger.info(
            f"Job {self.short_id}: {self.total} entries in {len(batches)} batches "
            f"({self.workflow.mode.value}, {len(memorized)} from translation memory)"
        )
        self._publish(self._progress())

        for batch in batches:
            pending = [entry for entry in batch.entries if entry.index not in memorized]
            if not pending:
                result = AlignmentResult()
            elif len(pending) == len(batch):
                result = await self._translate_batch(batch)
            else:
                result = await self._translate_batch(self.planner.make_batch(pending, batch.number))

            self._merge(batch, result, memorized)

            self._transition(JobState.CHECKPOINT)
            await self._maybe_save(self._merged)
            if self.heartbeat:
                self.heartbeat()
            self.checkpoint.refresh()
            if len(self._merged) < self.total:
                self._publish(self._progress())

        final = FinalRecord(
            merged_text=format_srt(self._merged),
            translated_count=len(self._merged),
            total_entries=self.total,
            unresolved_count=len(self._unresolved),
            provider_summary=dict(self.provider_summary),
        )
        await self.checkpoint.finalize(final)
        self._transition(JobState.COMPLETE)
        self._publish(JobProgress.from_record(self.fingerprint, final.to_dict()))

    async def _fail(self, error: SubTransError) -> None:
        self._transition(JobState.FAILED)
        record = await self.checkpoint.write_error(error)
        progress = JobProgress.from_record(self.fingerprint, record.to_dict())
        progress.translated_count = len(self._merged)
        progress.total_entries = self.total
        self._publish(progress)

    async def _maybe_save(self, entries: List[SubtitleEntry]) -> None:
        decision = self.checkpoint.evaluate(len(entries))
        if decision.save:
            await self.checkpoint.save(len(entries), build_partial_text(entries, self.total))

    # -- one batch --------------------------------------------------------

    async def _translate_batch(self, batch: Batch) -> AlignmentResult:
        """Select, call, rotate and fall back until the batch is translated or nothing is left to try."""
        tried: Set[str] = set()
        attempts: List[str] = []
        last_error: Optional[TranslationError] = None

        while True:
            self._transition(JobState.SELECT_CREDENTIAL)
            handle = self.rotation.select(exclude=tried)
            if handle is None:
                self._transition(JobState.FALLBACK)
                if self.rotation.activate_fallback():
                    continue
                raise AllProvidersExhausted(batch.number, attempts, last_error)

            tried.add(handle.handle_id)
            result, error = await self._call_with_retries(batch, handle, attempts)
            if result is not None:
                return await self._reconcile(batch, handle, result)
            last_error = error
            self._transition(JobState.ROTATE)

    async def _call_with_retries(
        self,
        batch: Batch,
        handle: ProviderHandle,
        attempts: List[str]
    ) -> Tuple[Optional[AlignmentResult], Optional[TranslationError]]:
        on_progress = None
        if self.options.streaming:
            async def on_progress(partial: AlignmentResult) -> None:
                await self._on_stream_progress(batch, partial)

        max_retries = self.config.max_retries_per_credential
        for attempt in range(max_retries + 1):
            self._transition(JobState.CALL)
            attempts.append(handle.handle_id)
            try:
                return await self.executor.execute(batch, handle, on_progress), None
            except TranslationError as e:
                self.rotation.report_failure(handle, e)
                logger.warning(
                    f"Batch {batch.number} failed on {handle.handle_id} "
                    f"(attempt {attempt + 1}): {e.error_type}: {e.message}"
                )
                if not e.retry_same_key or attempt >= max_retries:
                    return None, e
                self._transition(JobState.RETRY)
                delay = self.config.retry_backoff_base * (2 ** attempt)
                if delay > 0:
                    await asyncio.sleep(delay)
        return None, None

    async def _reconcile(self, batch: Batch, handle: ProviderHandle, result: AlignmentResult) -> AlignmentResult:
        self._transition(JobState.ALIGN)
        if result.missing:
            self.rotation.report_failure(handle, ResponseCountMismatch(
                f"{len(result.missing)} of {len(batch)} entries missing from batch {batch.number}",
                provider=handle.provider,
                details={"missing": sorted(result.missing)},
            ))
            self._transition(JobState.RECOVER)

            async def resubmit(entries: List[SubtitleEntry]) -> AlignmentResult:
                return await self.executor.execute(self.planner.make_batch(entries, batch.number), handle)

            result = await self.recovery.reconcile(batch.entries, result, resubmit)
        else:
            self.rotation.report_success(handle)

        self.provider_summary[handle.handle_id] = self.provider_summary.get(handle.handle_id, 0) + 1
        return result

    def _merge(self, batch: Batch, result: AlignmentResult, memorized: Dict[int, str]) -> None:
        self._transition(JobState.MERGE)
        for entry in batch.entries:
            if entry.index in memorized:
                self._merged.append(replace(entry, text=memorized[entry.index]))
                continue
            start, end = result.timings.get(entry.index, (entry.start_time, entry.end_time))
            text = result.resolved[entry.index]
            self._merged.append(replace(entry, text=text, start_time=start, end_time=end))
            if entry.index in result.unresolved:
                self._unresolved.add(entry.index)
            elif self.memory:
                self.memory.remember(entry.text, self.target_lang, text)

    async def _on_stream_progress(self, batch: Batch, partial: AlignmentResult) -> None:
        entries = self._merged + apply_translations(batch.entries, partial)
        await self._maybe_save(entries)
        self._publish(self._progress(entries))


class TranslationService:
    """
    Submits, deduplicates and tracks translation jobs.

    Jobs keep running when the caller stops listening; their result is
    then picked up from the cache by the next request with the same
    fingerprint.
    """

    def __init__(
        self,
        config: PipelineConfig,
        store: Optional[CacheStore] = None,
        backend_factory: Optional[Callable] = None,
        clock: Callable[[], float] = time.time
    ):
        if not config.providers:
            raise ConfigurationError("At least one translation provider must be configured", config_key="providers")
        for issue in config.validate():
            logger.warning(f"Configuration: {issue}")

        self.config = config
        self.store = store if store is not None else DiskCacheStore(config.cache_dir)
        self.backend_factory = backend_factory or create_backend
        self.health = KeyHealthStore(
            self.store,
            error_threshold=config.key_error_threshold,
            error_window=config.key_error_window,
            cooldown=config.key_cooldown,
            cache_ttl=config.health_cache_ttl,
            clock=clock,
        )
        self.memory = TranslationMemory(self.store) if config.translation_memory else None
        self.primary_handles = self._build_handles(config.providers)
        self.fallback_handles = (
            self._build_handles([config.fallback_provider], is_fallback=True) if config.fallback_provider else []
        )
        self._jobs: Dict[str, TranslationJob] = {}
        self._tasks: Set[asyncio.Task] = set()

    def _build_handles(self, providers: List[ProviderConfig], is_fallback: bool = False) -> List[ProviderHandle]:
        handles = []
        for provider in providers:
            for api_key in provider.api_keys or [None]:
                backend = self.backend_factory(
                    provider.name,
                    api_key=api_key,
                    model=provider.model,
                    base_url=provider.base_url,
                    max_output_tokens=provider.max_output_tokens,
                )
                handles.append(ProviderHandle(provider.name, backend, credential_id(api_key), is_fallback))
        return handles

    def fingerprint(
        self,
        entries: Sequence[SubtitleEntry],
        source_lang: str,
        target_lang: str,
        options: Optional[JobOptions] = None
    ) -> str:
        return make_fingerprint(
            list(entries), source_lang, target_lang, options or JobOptions(), self.config.provider_signature()
        )

    async def submit_job(
        self,
        entries: Sequence[SubtitleEntry],
        source_lang: str,
        target_lang: str,
        options: Optional[JobOptions] = None,
        user_id: str = "anonymous"
    ) -> AsyncIterator[JobProgress]:
        """
        Translate ``entries`` and stream progress.

        A stored final or error record is returned as-is. A job already
        running for the same fingerprint is joined instead of started
        again, in this process directly and across processes by polling
        the cache.

        Yields:
            JobProgress events; the last one is complete or carries an error
        """
        options = options or JobOptions()
        fingerprint = self.fingerprint(entries, source_lang, target_lang, options)

        record = lookup(self.store, fingerprint)
        if record and record.get("kind") in ("final", "error"):
            logger.info(f"Job {fingerprint[:12]}: returning cached {record['kind']} record")
            yield JobProgress.from_record(fingerprint, record)
            return

        job = self._jobs.get(fingerprint)
        if job is not None:
            logger.info(f"Job {fingerprint[:12]}: attaching to running job")
        elif self.store.get(inflight_key(fingerprint)) is not None:
            async for progress in self._follow_other_process(fingerprint):
                yield progress
            return
        else:
            # take the user slot before publishing the in-flight marker
            slot_key = user_jobs_key(user_id)
            running = self.store.incr(slot_key, 1, ttl=self.config.concurrency_slot_ttl)
            if running > self.config.max_concurrent_jobs_per_user:
                self.store.incr(slot_key, -1, ttl=self.config.concurrency_slot_ttl)
                error = ConcurrencyLimitReached(user_id, self.config.max_concurrent_jobs_per_user)
                logger.warning(error.message)
                yield JobProgress(fingerprint, total_entries=len(entries), error=error.to_dict())
                return

            if not self.store.add(inflight_key(fingerprint), user_id, ttl=self.config.concurrency_slot_ttl):
                self.store.incr(slot_key, -1, ttl=self.config.concurrency_slot_ttl)
                async for progress in self._follow_other_process(fingerprint):
                    yield progress
                return

            job = self._start_job(fingerprint, entries, source_lang, target_lang, options, user_id)

        async for progress in job.subscribe():
            yield progress

    async def _follow_other_process(self, fingerprint: str) -> AsyncIterator[JobProgress]:
        logger.info(f"Job {fingerprint[:12]}: running in another process, polling the cache")
        async for progress in self._poll(fingerprint):
            yield progress

    def _start_job(self, fingerprint, entries, source_lang, target_lang, options, user_id) -> TranslationJob:
        ttl = self.config.concurrency_slot_ttl

        def heartbeat():
            self.store.touch(user_jobs_key(user_id), ttl)
            self.store.touch(inflight_key(fingerprint), ttl)

        rotation = RotationManager(
            self.primary_handles,
            self.health,
            self.store,
            fallback=self.fallback_handles,
            mode=options.rotation_mode,
        )
        job = TranslationJob(
            fingerprint, entries, source_lang, target_lang, options, self.config,
            self.store, rotation, memory=self.memory, heartbeat=heartbeat,
        )
        self._jobs[fingerprint] = job
        task = asyncio.create_task(self._run_job(job, user_id))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return job

    async def _run_job(self, job: TranslationJob, user_id: str) -> None:
        try:
            await job.run()
        finally:
            self._jobs.pop(job.fingerprint, None)
            self._release(job.fingerprint, user_id)

    def _release(self, fingerprint: str, user_id: str) -> None:
        slot_key = user_jobs_key(user_id)
        try:
            if self.store.incr(slot_key, -1, ttl=self.config.concurrency_slot_ttl) < 0:
                # the slot expired while the job ran
                self.store.set(slot_key, 0, ttl=self.config.concurrency_slot_ttl)
            self.store.delete(inflight_key(fingerprint))
        except Exception as e:
            logger.warning(f"Could not release job slot for {user_id}: {e}")

    async def _poll(self, fingerprint: str) -> AsyncIterator[JobProgress]:
        """Follow a job owned by another process through its cache records."""
        last: Optional[JobProgress] = None
        while True:
            record = lookup(self.store, fingerprint)
            if record:
                progress = JobProgress.from_record(fingerprint, record)
                finished = progress.is_complete or progress.failed
                if last is None or finished or progress.translated_count != last.translated_count:
                    last = progress
                    yield progress
                if finished:
                    return
            if self.store.get(inflight_key(fingerprint)) is None:
                logger.warning(f"Job {fingerprint[:12]} stopped without a result; resubmit to retry")
                return
            await asyncio.sleep(self.config.poll_interval)

    async def translate(
        self,
        entries: Sequence[SubtitleEntry],
        source_lang: str,
        target_lang: str,
        options: Optional[JobOptions] = None,
        user_id: str = "anonymous"
    ) -> Optional[JobProgress]:
        """Run a job to the end and return its last progress event."""
        last = None
        async for progress in self.submit_job(entries, source_lang, target_lang, options, user_id):
            last = progress
        return last

    def lookup(self, fingerprint: str) -> Optional[JobProgress]:
        """Current state of a job as seen by pollers."""
        record = lookup(self.store, fingerprint)
        return JobProgress.from_record(fingerprint, record) if record else None

    async def wait_for_jobs(self) -> None:
        """Wait for every job started by this service, including abandoned ones."""
        if self._tasks:
            await asyncio.gather(*list(self._tasks))

    def close(self) -> None:
        self.store.close()
