"""
Partial delivery and checkpoint cache.

Decides when a job's progress is saved as a PartialRecord and writes it
through a per-job queue drained by a single writer task, so saves land in
the order they were made. Completion promotes the partial to a
FinalRecord: write, read back, and only then delete the partial.
"""

import asyncio
import time
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Sequence

from subtrans.core.exceptions import CacheError, SubTransError
from subtrans.core.models import ErrorRecord, FinalRecord, PartialRecord, SubtitleEntry
from subtrans.sources.srt import format_srt
from subtrans.utils.cache import CacheStore
from subtrans.utils.logger import get_logger

logger = get_logger(__name__)

IN_PROGRESS_TEXT = "TRANSLATION IN PROGRESS\nReload this subtitle later to get more"
IN_PROGRESS_END = "04:00:00,000"


def partial_key(fingerprint: str) -> str:
    return f"partial:{fingerprint}"


def final_key(fingerprint: str) -> str:
    return f"final:{fingerprint}"


def error_key(fingerprint: str) -> str:
    return f"error:{fingerprint}"


def lookup(store: CacheStore, fingerprint: str) -> Optional[Dict[str, Any]]:
    """Most authoritative record for a job: final, then error, then partial."""
    for key in (final_key(fingerprint), error_key(fingerprint), partial_key(fingerprint)):
        record = store.get(key)
        if record:
            return record
    return None


def build_partial_text(entries: Sequence[SubtitleEntry], total_entries: int) -> str:
    """
    SubRip text of the entries translated so far.

    While the job is unfinished a last cue runs from the end of the last
    translated entry to 04:00:00 telling viewers to reload later.
    """
    entries = list(entries)
    if len(entries) >= total_entries:
        return format_srt(entries)
    start = entries[-1].end_time if entries else "00:00:00,000"
    notice = SubtitleEntry(
        index=len(entries) + 1,
        start_time=start,
        end_time=IN_PROGRESS_END,
        text=IN_PROGRESS_TEXT,
    )
    return format_srt(entries + [notice])


class SkipReason(Enum):
    CHECKPOINT_NOT_REACHED = "checkpoint_not_reached"
    DEBOUNCE_WINDOW = "debounce_window"
    INSUFFICIENT_DELTA = "insufficient_delta"
    STALE_UPDATE = "stale_update"
    ALREADY_SAVED = "already_saved"


@dataclass
class SaveDecision:
    save: bool
    reason: Optional[SkipReason] = None
    final: bool = False


class CheckpointCache:
    """Save policy and ordered writer for one job's partial progress."""

    def __init__(
        self,
        store: CacheStore,
        fingerprint: str,
        total_entries: int,
        schedule: List[int],
        debounce_seconds: float = 3.0,
        min_delta: int = 10,
        partial_ttl: Optional[float] = 3600.0,
        final_ttl: Optional[float] = None,
        error_ttl: Optional[float] = 900.0,
        clock: Callable[[], float] = time.monotonic
    ):
        self.store = store
        self.fingerprint = fingerprint
        self.total_entries = total_entries
        self.schedule = list(schedule)
        self.debounce_seconds = debounce_seconds
        self.min_delta = min_delta
        self.partial_ttl = partial_ttl
        self.final_ttl = final_ttl
        self.error_ttl = error_ttl
        self.clock = clock

        self._next_checkpoint = 0
        self._last_seen = 0
        self._last_saved_count = 0
        self._last_saved_at: Optional[float] = None
        self._final_saved = False
        self._sequence = 0
        self.saved_counts: List[int] = []
        self.skips: Dict[SkipReason, int] = {reason: 0 for reason in SkipReason}

        self._queue: asyncio.Queue = asyncio.Queue()
        self._writer: Optional[asyncio.Task] = None

    @property
    def next_checkpoint(self) -> Optional[int]:
        if self._next_checkpoint < len(self.schedule):
            return self.schedule[self._next_checkpoint]
        return None

    def evaluate(self, translated_count: int, now: Optional[float] = None) -> SaveDecision:
        """
        Decide whether progress at ``translated_count`` should be saved.

        The final flush (all entries translated) always saves, once.
        Otherwise the next scheduled checkpoint must be reached, the
        debounce interval must have passed and at least ``min_delta`` new
        entries must be present.
        """
        now = self.clock() if now is None else now

        if translated_count >= self.total_entries > 0 and not self._final_saved:
            return SaveDecision(True, final=True)

        if translated_count < self._last_seen:
            return self._skip(SkipReason.STALE_UPDATE, translated_count)
        self._last_seen = translated_count

        if self._final_saved or (self.saved_counts and translated_count <= self._last_saved_count):
            return self._skip(SkipReason.ALREADY_SAVED, translated_count)

        target = self.next_checkpoint
        if target is None or translated_count < target:
            return self._skip(SkipReason.CHECKPOINT_NOT_REACHED, translated_count)

        if self._last_saved_at is not None and now - self._last_saved_at < self.debounce_seconds:
            return self._skip(SkipReason.DEBOUNCE_WINDOW, translated_count)

        if translated_count - self._last_saved_count < self.min_delta:
            return self._skip(SkipReason.INSUFFICIENT_DELTA, translated_count)

        return SaveDecision(True)

    def _skip(self, reason: SkipReason, translated_count: int) -> SaveDecision:
        self.skips[reason] += 1
        logger.debug(f"Checkpoint skipped at {translated_count}/{self.total_entries}: {reason.value}")
        return SaveDecision(False, reason)

    async def save(self, translated_count: int, merged_text: str, now: Optional[float] = None) -> None:
        """Queue a PartialRecord write and advance the schedule past ``translated_count``."""
        now = self.clock() if now is None else now
        self._sequence += 1
        record = PartialRecord(
            merged_text=merged_text,
            translated_count=translated_count,
            total_entries=self.total_entries,
            saved_at_sequence=self._sequence,
        )

        self._last_seen = max(self._last_seen, translated_count)
        self._last_saved_count = translated_count
        self._last_saved_at = now
        self.saved_counts.append(translated_count)
        if translated_count >= self.total_entries:
            self._final_saved = True
        while self._next_checkpoint < len(self.schedule) and self.schedule[self._next_checkpoint] <= translated_count:
            self._next_checkpoint += 1

        if self._writer is None:
            self._writer = asyncio.create_task(self._write_loop())
        await self._queue.put(record)
        logger.info(
            f"Checkpoint {self._sequence} queued: {translated_count}/{self.total_entries} entries"
        )

    async def _write_loop(self) -> None:
        while True:
            record = await self._queue.get()
            try:
                if record is None:
                    return
                await asyncio.to_thread(self._write_partial, record)
            finally:
                self._queue.task_done()

    def _write_partial(self, record: PartialRecord) -> None:
        def newest(current):
            # never regress what pollers can already see
            if current and current.get("kind") == "partial":
                stored = (current.get("translated_count", 0), current.get("saved_at_sequence", 0))
                if stored > (record.translated_count, record.saved_at_sequence):
                    return current
            return record.to_dict()

        try:
            self.store.update(partial_key(self.fingerprint), newest, ttl=self.partial_ttl)
        except Exception as e:
            logger.warning(f"Partial save failed for {self.fingerprint[:12]}: {e}. Continuing.")

    async def flush(self) -> None:
        """Wait until every queued write has reached the store."""
        if self._writer is not None:
            await self._queue.join()

    async def close(self) -> None:
        if self._writer is None:
            return
        await self._queue.put(None)
        await self._writer
        self._writer = None

    def refresh(self) -> None:
        """Extend the partial record's TTL while the job is still running."""
        try:
            self.store.touch(partial_key(self.fingerprint), self.partial_ttl)
        except Exception as e:
            logger.warning(f"Could not refresh partial TTL: {e}")

    async def finalize(self, final: FinalRecord) -> None:
        """
        Promote the job to a FinalRecord.

        The partial is deleted only after the final record reads back, so
        a concurrent reader always finds one of the two.

        Raises:
            CacheError: the final record could not be verified; the partial is kept
        """
        await self.flush()
        await asyncio.to_thread(self._write_final, final)
        await self.close()
        logger.info(
            f"Final record stored for {self.fingerprint[:12]}: {final.translated_count}/{final.total_entries} "
            f"entries, {final.unresolved_count} unresolved"
        )

    def _write_final(self, final: FinalRecord) -> None:
        key = final_key(self.fingerprint)
        try:
            self.store.set(key, final.to_dict(), ttl=self.final_ttl)
            stored = self.store.get(key)
        except Exception as e:
            raise CacheError(f"Failed to write final record: {e}", cache_type="checkpoint", operation="finalize") from e

        if not stored or not stored.get("is_complete") or stored.get("translated_count") != final.translated_count:
            raise CacheError(
                f"Final record for {self.fingerprint[:12]} did not read back; keeping partial",
                cache_type="checkpoint",
                operation="verify",
            )
        self.store.delete(partial_key(self.fingerprint))

    async def write_error(self, error: SubTransError) -> ErrorRecord:
        """Replace the job's progress with a short-lived ErrorRecord."""
        data = error.to_dict()
        record = ErrorRecord(
            error_type=data.get("error_type", error.__class__.__name__),
            message=error.message,
            details=data.get("details", {}),
        )
        await self.flush()
        await self.close()
        try:
            await asyncio.to_thread(self._write_error, record)
        except Exception as e:
            logger.error(f"Could not store error record for {self.fingerprint[:12]}: {e}")
        return record

    def _write_error(self, record: ErrorRecord) -> None:
        self.store.set(error_key(self.fingerprint), record.to_dict(), ttl=self.error_ttl)
        self.store.delete(partial_key(self.fingerprint))
