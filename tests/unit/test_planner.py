"""
Tests for batch planning and the checkpoint schedule.
"""

import pytest

from fixtures.fake_backend import make_entries
from subtrans.core.models import SubtitleEntry
from subtrans.core.planner import BatchPlanner, build_checkpoint_schedule, estimate_tokens
from subtrans.translation.workflows import NumberedWorkflow, TaggedWorkflow


class TestEstimateTokens:
    def test_empty_text(self):
        assert estimate_tokens("") == 0

    def test_three_chars_per_token_plus_overhead(self):
        assert estimate_tokens("abc") == 2
        assert estimate_tokens("x" * 30) == 11
        assert estimate_tokens("x" * 300) == 110


class TestCheckpointSchedule:
    def test_documented_example(self):
        assert build_checkpoint_schedule(30, 75, 180) == [30, 105, 180]

    def test_total_is_always_last(self):
        assert build_checkpoint_schedule(30, 75, 200) == [30, 105, 180, 200]

    def test_total_on_a_step_boundary(self):
        assert build_checkpoint_schedule(30, 75, 105) == [30, 105]

    def test_small_job(self):
        assert build_checkpoint_schedule(30, 75, 20) == [20]

    def test_empty_job(self):
        assert build_checkpoint_schedule(30, 75, 0) == []

    def test_rejects_non_positive_step(self):
        with pytest.raises(ValueError):
            build_checkpoint_schedule(30, 0, 100)


class TestBatchPlanner:
    def test_coverage_without_gaps_or_overlaps(self):
        """Batch index ranges together cover 1..N exactly once."""
        entries = make_entries(250)
        batches = BatchPlanner(NumberedWorkflow(), token_budget=100000, max_batch_entries=100).plan(entries)

        assert [len(b) for b in batches] == [100, 100, 50]
        covered = [index for batch in batches for index in batch.indices]
        assert covered == list(range(1, 251))
        for previous, current in zip(batches, batches[1:]):
            assert current.first_index == previous.last_index + 1

    def test_deterministic(self):
        entries = make_entries(80)
        planner = BatchPlanner(TaggedWorkflow(), token_budget=300, max_batch_entries=100)
        first = planner.plan(entries)
        second = planner.plan(entries)
        assert [(b.indices, b.payload) for b in first] == [(b.indices, b.payload) for b in second]

    def test_respects_token_budget(self):
        entries = make_entries(60)
        planner = BatchPlanner(NumberedWorkflow(), token_budget=60, max_batch_entries=100)
        batches = planner.plan(entries)

        assert len(batches) > 1
        for batch in batches:
            cost = sum(planner.entry_cost(entry) for entry in batch.entries)
            assert cost <= 60 or len(batch) == 1

    def test_oversized_entry_gets_its_own_batch(self):
        entries = make_entries(3) + [SubtitleEntry(4, "00:00:10,000", "00:00:11,000", "x" * 1000)] + make_entries(2, start=5)
        batches = BatchPlanner(NumberedWorkflow(), token_budget=100).plan(entries)

        lone = [b for b in batches if 4 in b.indices]
        assert len(lone) == 1
        assert lone[0].indices == [4]
        assert [i for b in batches for i in b.indices] == [1, 2, 3, 4, 5, 6]

    def test_empty_input(self):
        assert BatchPlanner(NumberedWorkflow(), token_budget=1000).plan([]) == []

    def test_batches_are_numbered_in_order(self):
        batches = BatchPlanner(NumberedWorkflow(), token_budget=100000, max_batch_entries=4).plan(make_entries(10))
        assert [b.number for b in batches] == [1, 2, 3]

    def test_make_batch_renumbers_numbered_payload(self):
        """A sub-batch starts counting from 1 again; identity comes from the entries."""
        planner = BatchPlanner(NumberedWorkflow(), token_budget=1000)
        batch = planner.make_batch(make_entries(2, start=7), number=3)

        assert batch.payload == "1. Line 7\n\n2. Line 8"
        assert batch.indices == [7, 8]
        assert batch.number == 3
        assert batch.estimated_tokens == estimate_tokens(batch.payload)
