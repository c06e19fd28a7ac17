"""
Scheduling conflict detection for planned deliveries.

Two planned deliveries whose scheduled times are less than the conflict
window apart compete for the same loading slot at the plant. Conflicts are
informational: they feed the board's alert list and never block a
transition.
"""
import logging
from dataclasses import dataclass
from typing import Iterable, Optional

from dispatch_board.core.config import settings
from dispatch_board.models.delivery import DeliveryRecord, WorkflowState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SchedulingConflict:
    """A pair of planned deliveries scheduled too close together."""

    first: DeliveryRecord
    second: DeliveryRecord
    gap_minutes: int

    @property
    def record_ids(self) -> frozenset[str]:
        return frozenset({self.first.id, self.second.id})

    def to_dict(self) -> dict:
        return {
            "first_id": self.first.id,
            "second_id": self.second.id,
            "first_time": self.first.scheduled_time_label,
            "second_time": self.second.scheduled_time_label,
            "gap_minutes": self.gap_minutes,
        }


def _minutes(record: DeliveryRecord) -> int:
    return record.scheduled_time.hour * 60 + record.scheduled_time.minute


def detect_conflicts(
    deliveries: Iterable[DeliveryRecord],
    window_minutes: Optional[int] = None,
) -> list[SchedulingConflict]:
    """
    Report every pair of planned, timed deliveries closer than the window.

    Sweep over deliveries sorted by time: for each one, walk forward while
    the gap stays under the window. Every qualifying pair is reported, not
    just neighbours, so the result equals the all-pairs comparison.

    Args:
        deliveries: Records of one day (any state; non-planned are ignored)
        window_minutes: Collision window, default CONFLICT_WINDOW_MINUTES

    Returns:
        Conflicts ordered by the first record's time
    """
    window = settings.CONFLICT_WINDOW_MINUTES if window_minutes is None else window_minutes

    timed = sorted(
        (
            d for d in deliveries
            if d.state is WorkflowState.PLANNED and d.scheduled_time is not None
        ),
        key=lambda d: (_minutes(d), d.id),
    )

    conflicts: list[SchedulingConflict] = []
    for i, first in enumerate(timed):
        start = _minutes(first)
        for second in timed[i + 1:]:
            gap = _minutes(second) - start
            if gap >= window:
                break
            conflicts.append(SchedulingConflict(first=first, second=second, gap_minutes=gap))

    if conflicts:
        logger.debug(f"{len(conflicts)} scheduling conflict(s) among {len(timed)} planned deliveries")

    return conflicts


def conflicting_ids(conflicts: Iterable[SchedulingConflict]) -> set[str]:
    """Ids of every delivery involved in at least one conflict."""
    ids: set[str] = set()
    for conflict in conflicts:
        ids |= conflict.record_ids
    return ids
