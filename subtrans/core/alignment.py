"""
Alignment of provider responses onto subtitle entries, and recovery of
entries the provider left out.
"""

from dataclasses import replace
from enum import Enum
from typing import Awaitable, Callable, Dict, List, Sequence

from subtrans.core.exceptions import TranslationError
from subtrans.core.models import AlignmentResult, SubtitleEntry
from subtrans.translation.output_cleaner import clean_entry_text
from subtrans.translation.workflows import ParsedItem, Workflow
from subtrans.utils.logger import get_logger

logger = get_logger(__name__)

Resubmit = Callable[[List[SubtitleEntry]], Awaitable[AlignmentResult]]


def align(
    entries: Sequence[SubtitleEntry],
    items: Sequence[ParsedItem],
    workflow: Workflow
) -> AlignmentResult:
    """
    Match parsed items back to the batch entries.

    Identity first: ordinal keys address the n-th entry of the batch,
    index keys address the entry with that subtitle index. Workflows
    without identity are matched by position. Unknown keys and repeated
    keys (after the first) are ignored; blank translations count as
    missing.

    Args:
        entries: Source entries of the batch, in order
        items: Parsed provider output
        workflow: Workflow that produced ``items``

    Returns:
        AlignmentResult keyed by subtitle index
    """
    result = AlignmentResult()

    if workflow.key_mode == "ordinal":
        lookup = {pos: entry for pos, entry in enumerate(entries, start=1)}
        pairs = [(lookup.get(item.key), item) for item in items]
    elif workflow.key_mode == "index":
        lookup = {entry.index: entry for entry in entries}
        pairs = [(lookup.get(item.key), item) for item in items]
    else:
        pairs = list(zip(entries, items))
        if len(items) != len(entries):
            logger.debug(f"Positional alignment: {len(items)} items for {len(entries)} entries")

    for entry, item in pairs:
        if entry is None or entry.index in result.resolved:
            continue
        text = clean_entry_text(item.text)
        if not text:
            continue
        result.resolved[entry.index] = text
        if workflow.trusts_provider_timing and item.start_time and item.end_time:
            result.timings[entry.index] = (item.start_time.replace('.', ','), item.end_time.replace('.', ','))

    result.missing = {entry.index for entry in entries} - set(result.resolved)
    return result


def apply_translations(entries: Sequence[SubtitleEntry], result: AlignmentResult) -> List[SubtitleEntry]:
    """
    Build translated entries in source order.

    Timecodes come from the source unless the result carries provider
    timings. Entries without a translation are omitted.
    """
    translated = []
    for entry in entries:
        text = result.resolved.get(entry.index)
        if text is None:
            continue
        start, end = result.timings.get(entry.index, (entry.start_time, entry.end_time))
        translated.append(replace(entry, text=text, start_time=start, end_time=end))
    return translated


class RecoveryAction(Enum):
    NONE = "none"
    TARGETED = "targeted"
    FULL_RETRY = "full_retry"


def plan_recovery(result: AlignmentResult, batch_size: int, threshold: float = 0.30) -> RecoveryAction:
    """Targeted resubmission for small gaps, full-batch retry for large ones."""
    if not result.missing or batch_size <= 0:
        return RecoveryAction.NONE
    if len(result.missing) / batch_size <= threshold:
        return RecoveryAction.TARGETED
    return RecoveryAction.FULL_RETRY


class MismatchRecovery:
    """Repairs undersized responses and marks whatever stays untranslated."""

    def __init__(self, threshold: float = 0.30, full_retry_count: int = 1, marker: str = "[UNTRANSLATED]"):
        self.threshold = threshold
        self.full_retry_count = full_retry_count
        self.marker = marker
        self.actions: List[RecoveryAction] = []

    async def reconcile(
        self,
        entries: Sequence[SubtitleEntry],
        result: AlignmentResult,
        resubmit: Resubmit
    ) -> AlignmentResult:
        """
        Recover missing entries of one batch.

        A targeted resubmission of only the missing entries is tried once;
        full-batch retries run up to ``full_retry_count`` times. Provider
        errors raised by a recovery call stop recovery; they never fail
        the batch. Whatever is still missing afterwards is filled with the
        marked source text.

        Args:
            entries: Source entries of the batch
            result: Alignment of the first response (updated in place)
            resubmit: Coroutine translating a list of entries

        Returns:
            Complete AlignmentResult (no missing entries)
        """
        targeted_done = False
        full_retries = 0

        while result.missing:
            action = plan_recovery(result, len(entries), self.threshold)
            if action is RecoveryAction.TARGETED and not targeted_done:
                targeted_done = True
                subset = [entry for entry in entries if entry.index in result.missing]
            elif full_retries < self.full_retry_count:
                action = RecoveryAction.FULL_RETRY
                full_retries += 1
                subset = list(entries)
            else:
                break

            self.actions.append(action)
            logger.info(
                f"{action.value} recovery: {len(result.missing)}/{len(entries)} entries missing, "
                f"resubmitting {len(subset)}"
            )
            try:
                result.merge(await resubmit(subset))
            except TranslationError as e:
                logger.warning(f"Recovery call failed ({e.error_type}): {e.message}")
                break

        if result.missing:
            self.fill_unresolved(entries, result)
        return result

    def fill_unresolved(self, entries: Sequence[SubtitleEntry], result: AlignmentResult) -> AlignmentResult:
        """Replace missing translations with the source text behind a visible marker."""
        sources: Dict[int, SubtitleEntry] = {entry.index: entry for entry in entries}
        for index in sorted(result.missing):
            result.resolved[index] = self.mark(sources[index].text)
            result.unresolved.add(index)
        logger.warning(f"{len(result.missing)} entries left untranslated: {sorted(result.missing)}")
        result.missing = set()
        return result

    def mark(self, text: str) -> str:
        return f"{self.marker} {text}"
