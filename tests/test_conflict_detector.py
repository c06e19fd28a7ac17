"""
Tests for scheduling conflict detection.
"""
from datetime import time

from conftest import make_record

from dispatch_board.models.delivery import WorkflowState
from dispatch_board.services.conflict_detector import conflicting_ids, detect_conflicts


def planned(record_id: str, hour: int, minute: int = 0, **kwargs):
    return make_record(id=record_id, scheduled_time=time(hour, minute), **kwargs)


class TestDetectConflicts:
    """Tests for detect_conflicts."""

    def test_fourteen_minutes_is_a_conflict(self):
        conflicts = detect_conflicts([planned("A", 9, 0), planned("B", 9, 14)])
        assert len(conflicts) == 1
        assert conflicts[0].gap_minutes == 14
        assert conflicts[0].record_ids == frozenset({"A", "B"})

    def test_fifteen_minutes_is_not_a_conflict(self):
        assert detect_conflicts([planned("A", 9, 0), planned("B", 9, 15)]) == []

    def test_same_time_conflicts(self):
        conflicts = detect_conflicts([planned("A", 9, 0), planned("B", 9, 0)])
        assert len(conflicts) == 1
        assert conflicts[0].gap_minutes == 0

    def test_every_close_pair_reported(self):
        """09:00, 09:10, 09:20 -> (A,B), (B,C); A and C are 20 min apart."""
        conflicts = detect_conflicts(
            [planned("C", 9, 20), planned("A", 9, 0), planned("B", 9, 10)]
        )
        pairs = {(c.first.id, c.second.id) for c in conflicts}
        assert pairs == {("A", "B"), ("B", "C")}

    def test_cluster_reports_all_pairs(self):
        conflicts = detect_conflicts(
            [planned("A", 9, 0), planned("B", 9, 5), planned("C", 9, 10)]
        )
        pairs = {(c.first.id, c.second.id) for c in conflicts}
        assert pairs == {("A", "B"), ("A", "C"), ("B", "C")}

    def test_only_planned_records_count(self):
        records = [
            planned("A", 9, 0),
            planned("B", 9, 5, state=WorkflowState.LOADING),
            planned("C", 9, 5, state=WorkflowState.PENDING_VALIDATION),
        ]
        assert detect_conflicts(records) == []

    def test_untimed_records_ignored(self):
        records = [planned("A", 9, 0), make_record(id="B", scheduled_time=None)]
        assert detect_conflicts(records) == []

    def test_custom_window(self):
        records = [planned("A", 9, 0), planned("B", 9, 25)]
        assert len(detect_conflicts(records, window_minutes=30)) == 1

    def test_conflicting_ids(self):
        conflicts = detect_conflicts(
            [planned("A", 9, 0), planned("B", 9, 5), planned("C", 14, 0)]
        )
        assert conflicting_ids(conflicts) == {"A", "B"}

    def test_to_dict(self):
        conflict = detect_conflicts([planned("A", 9, 0), planned("B", 9, 5)])[0]
        assert conflict.to_dict() == {
            "first_id": "A",
            "second_id": "B",
            "first_time": "09:00",
            "second_time": "09:05",
            "gap_minutes": 5,
        }
