"""
Batch planning.

Splits the entry sequence into token-bounded batches and derives the
checkpoint schedule. Both are deterministic so a resubmitted job sees the
same batch boundaries.
"""

import math
from typing import List, Sequence

from subtrans.core.models import Batch, SubtitleEntry
from subtrans.translation.workflows import Workflow
from subtrans.utils.logger import get_logger

logger = get_logger(__name__)


def estimate_tokens(text: str) -> int:
    """Conservative token estimate: ~3 characters per token plus 10% for structure."""
    if not text:
        return 0
    approx = math.ceil(len(text) / 3)
    return approx + math.ceil(approx / 10)


def build_checkpoint_schedule(first: int, step: int, total: int) -> List[int]:
    """
    Target translated-entry counts at which partial progress is saved.

    ``[first, first + step, ...]`` capped at ``total``; the last target is
    always ``total`` itself.

    >>> build_checkpoint_schedule(30, 75, 180)
    [30, 105, 180]
    """
    if total <= 0:
        return []
    if first < 1 or step < 1:
        raise ValueError("first and step must be positive")

    schedule = []
    target = first
    while target < total:
        schedule.append(target)
        target += step
    schedule.append(total)
    return schedule


class BatchPlanner:
    """Greedy token-bounded batching for one workflow and provider budget."""

    # separator and framing overhead per entry inside a batch payload
    ENTRY_OVERHEAD_TOKENS = 2

    def __init__(self, workflow: Workflow, token_budget: int, max_batch_entries: int = 100):
        if token_budget < 1:
            raise ValueError("token_budget must be positive")
        if max_batch_entries < 1:
            raise ValueError("max_batch_entries must be positive")
        self.workflow = workflow
        self.token_budget = token_budget
        self.max_batch_entries = max_batch_entries

    def entry_cost(self, entry: SubtitleEntry) -> int:
        return estimate_tokens(self.workflow.format([entry])) + self.ENTRY_OVERHEAD_TOKENS

    def plan(self, entries: Sequence[SubtitleEntry]) -> List[Batch]:
        """
        Split entries into batches under the soft token budget.

        The budget is an estimate; an entry that alone exceeds it still
        gets a batch of its own, and the executor's halving rule deals
        with providers that reject a batch as too large.
        """
        batches: List[Batch] = []
        current: List[SubtitleEntry] = []
        current_cost = 0

        for entry in entries:
            cost = self.entry_cost(entry)
            if current and (
                current_cost + cost > self.token_budget
                or len(current) >= self.max_batch_entries
            ):
                batches.append(self.make_batch(current, len(batches) + 1))
                current, current_cost = [], 0
            current.append(entry)
            current_cost += cost

        if current:
            batches.append(self.make_batch(current, len(batches) + 1))

        logger.debug(
            f"Planned {len(batches)} batches for {len(entries)} entries "
            f"(budget {self.token_budget} tokens, max {self.max_batch_entries} entries)"
        )
        return batches

    def make_batch(self, entries: Sequence[SubtitleEntry], number: int) -> Batch:
        """Format an arbitrary contiguous slice of entries as a batch."""
        payload = self.workflow.format(entries)
        return Batch(
            number=number,
            entries=tuple(entries),
            payload=payload,
            estimated_tokens=estimate_tokens(payload),
        )
