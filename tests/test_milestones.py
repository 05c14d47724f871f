"""Tests for take-profit milestone tracking."""

from datetime import datetime, timezone

import pytest

from trade_engine.milestones import MilestoneTracker, TakeProfitLadder
from trade_engine.models import Position


def make_position(entry_value: float = 1.0, targets_hit=None) -> Position:
    now = datetime(2025, 1, 1, tzinfo=timezone.utc)
    return Position(
        id="p1",
        agent_id="agent-1",
        token_mint="mint",
        quantity=100.0,
        entry_value_native=entry_value,
        opened_at=now,
        updated_at=now,
        targets_hit=list(targets_hit or []),
    )


@pytest.fixture
def tracker():
    return MilestoneTracker(TakeProfitLadder([1.5, 2.0, 3.0]))


class TestTakeProfitLadder:

    def test_default_ladder(self):
        assert list(TakeProfitLadder().targets) == [1.5, 2.0, 3.0]

    @pytest.mark.parametrize("targets", [[], [2.0, 1.5], [1.5, 1.5], [0, 2.0], [-1.0]])
    def test_invalid_ladders_rejected(self, targets):
        with pytest.raises(ValueError):
            TakeProfitLadder(targets)


class TestMilestoneTracker:

    def test_below_first_target(self, tracker):
        progress = tracker.evaluate(make_position(), 1.2)

        assert progress.current_multiplier == pytest.approx(1.2)
        assert progress.targets_hit == []
        assert progress.next_target == 1.5
        assert progress.progress == pytest.approx(0.4)

    def test_first_target_hit(self, tracker):
        progress = tracker.evaluate(make_position(), 1.75)

        assert progress.targets_hit == [0]
        assert progress.newly_hit == [0]
        assert progress.next_target == 2.0
        assert progress.progress == pytest.approx(0.5)

    def test_double_hits_first_target_only(self, tracker):
        progress = tracker.evaluate(make_position(entry_value=0.01), 0.02)

        assert progress.current_multiplier == pytest.approx(2.0)
        assert 0 in progress.targets_hit
        assert progress.targets_hit == [0, 1]
        assert progress.next_target == 3.0

    def test_ratchet_keeps_targets_after_retrace(self, tracker):
        position = make_position()
        peak = tracker.evaluate(position, 2.1)
        assert peak.targets_hit == [0, 1]
        position.targets_hit = peak.targets_hit

        retrace = tracker.evaluate(position, 1.6)

        assert retrace.targets_hit == [0, 1]
        assert retrace.newly_hit == []
        assert retrace.next_target == 3.0
        assert retrace.progress == 0.0

    def test_progress_uses_last_hit_threshold(self, tracker):
        progress = tracker.evaluate(make_position(targets_hit=[0, 1]), 2.5)

        assert progress.next_target == 3.0
        assert progress.progress == pytest.approx(0.5)

    def test_all_targets_hit(self, tracker):
        progress = tracker.evaluate(make_position(), 3.5)

        assert progress.targets_hit == [0, 1, 2]
        assert progress.next_target is None
        assert progress.progress == 1.0

    def test_zero_entry_value_guarded(self, tracker):
        progress = tracker.evaluate(make_position(entry_value=0.0), 5.0)

        assert progress.current_multiplier == 0.0
        assert progress.targets_hit == []
        assert progress.progress == 0.0

    def test_loss_clamps_progress_to_zero(self, tracker):
        progress = tracker.evaluate(make_position(), 0.5)

        assert progress.progress == 0.0

    def test_evaluate_does_not_mutate_position(self, tracker):
        position = make_position()

        tracker.evaluate(position, 2.5)

        assert position.targets_hit == []
