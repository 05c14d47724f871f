"""
Take-profit milestone tracking.

A position's multiplier (current value / entry value) is checked against an
ascending ladder of targets. Targets, once hit, stay hit: a retrace below a
threshold does not remove it.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

from trade_engine.models import Position

DEFAULT_TP_LADDER = (1.5, 2.0, 3.0)


class TakeProfitLadder:
    """Strictly ascending multiplier thresholds."""

    def __init__(self, targets: Iterable[float] = DEFAULT_TP_LADDER):
        values = [float(t) for t in targets]
        if not values:
            raise ValueError("Take-profit ladder needs at least one target")
        if any(t <= 0 for t in values):
            raise ValueError("Take-profit targets must be positive")
        if any(b <= a for a, b in zip(values, values[1:])):
            raise ValueError(f"Take-profit targets must be strictly ascending: {values}")
        self._targets = tuple(values)

    @property
    def targets(self) -> Sequence[float]:
        return self._targets

    def __len__(self) -> int:
        return len(self._targets)

    def __getitem__(self, index: int) -> float:
        return self._targets[index]

    def __repr__(self) -> str:
        return f"TakeProfitLadder({list(self._targets)})"


@dataclass
class MilestoneProgress:
    current_multiplier: float
    targets_hit: List[int]                 # Ladder indices, ascending
    newly_hit: List[int] = field(default_factory=list)
    next_target: Optional[float] = None
    progress: float = 0.0                  # 0..1 toward next_target

    def to_dict(self) -> Dict[str, Any]:
        return {
            "current_multiplier": self.current_multiplier,
            "targets_hit": list(self.targets_hit),
            "newly_hit": list(self.newly_hit),
            "next_target": self.next_target,
            "progress": self.progress,
        }


class MilestoneTracker:
    """Evaluates positions against a TakeProfitLadder. Pure: never mutates the position."""

    def __init__(self, ladder: TakeProfitLadder = None):
        self.ladder = ladder or TakeProfitLadder()

    def evaluate(self, position: Position, current_value_native: float) -> MilestoneProgress:
        if position.entry_value_native > 0:
            multiplier = current_value_native / position.entry_value_native
        else:
            multiplier = 0.0

        already = {i for i in position.targets_hit if 0 <= i < len(self.ladder)}
        newly_hit = [
            i for i, target in enumerate(self.ladder.targets)
            if i not in already and multiplier >= target
        ]
        hit = sorted(already.union(newly_hit))

        remaining = [i for i in range(len(self.ladder)) if i not in hit]
        if not remaining:
            return MilestoneProgress(multiplier, hit, newly_hit, None, 1.0)

        next_index = remaining[0]
        next_target = self.ladder[next_index]
        below = [self.ladder[i] for i in hit if i < next_index]
        previous = max(below) if below else 1.0

        span = next_target - previous
        if span > 0:
            progress = (multiplier - previous) / span
        else:
            progress = 1.0 if multiplier >= next_target else 0.0

        return MilestoneProgress(
            current_multiplier=multiplier,
            targets_hit=hit,
            newly_hit=newly_hit,
            next_target=next_target,
            progress=min(max(progress, 0.0), 1.0),
        )
