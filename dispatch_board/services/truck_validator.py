"""
Truck assignment validation and suggestion.

Registry status alone is not enough: a truck marked Available that already
carries another active delivery the same day is treated as unavailable to
prevent double-booking.
"""
import enum
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Iterable, Optional

from dispatch_board.core.config import settings
from dispatch_board.models.delivery import DeliveryRecord
from dispatch_board.models.truck import TruckRecord, TruckStatus


class UnavailableReason(str, enum.Enum):
    """Why a truck cannot take a delivery."""

    ON_MISSION = "on_mission"
    MAINTENANCE = "maintenance"
    OUT_OF_SERVICE = "out_of_service"
    DOUBLE_BOOKED = "double_booked"
    UNKNOWN_TRUCK = "unknown_truck"


_STATUS_REASONS = {
    TruckStatus.ON_MISSION: UnavailableReason.ON_MISSION,
    TruckStatus.MAINTENANCE: UnavailableReason.MAINTENANCE,
    TruckStatus.OUT_OF_SERVICE: UnavailableReason.OUT_OF_SERVICE,
}


@dataclass(frozen=True)
class TruckAvailability:
    """Validator verdict for one truck and one delivery."""

    truck_id: str
    available: bool
    reason: Optional[UnavailableReason] = None
    conflicting_record_id: Optional[str] = None

    @classmethod
    def ok(cls, truck_id: str) -> "TruckAvailability":
        return cls(truck_id=truck_id, available=True)

    @classmethod
    def unavailable(
        cls,
        truck_id: str,
        reason: UnavailableReason,
        conflicting_record_id: Optional[str] = None,
    ) -> "TruckAvailability":
        return cls(
            truck_id=truck_id,
            available=False,
            reason=reason,
            conflicting_record_id=conflicting_record_id,
        )


def same_day_assignments(
    day_deliveries: Iterable[DeliveryRecord],
    exclude_record_id: Optional[str] = None,
) -> dict[str, str]:
    """Map truck id -> record id for active deliveries holding a truck."""
    assignments: dict[str, str] = {}
    for delivery in day_deliveries:
        if delivery.id == exclude_record_id or not delivery.truck_id:
            continue
        if delivery.state.is_active:
            assignments.setdefault(delivery.truck_id, delivery.id)
    return assignments


def validate_truck(
    trucks: Iterable[TruckRecord],
    truck_id: str,
    record: Optional[DeliveryRecord] = None,
    day_deliveries: Iterable[DeliveryRecord] = (),
) -> TruckAvailability:
    """
    Check whether ``truck_id`` may be assigned to ``record``.

    The record's current truck always validates (idempotent re-assignment).

    Args:
        trucks: Full truck registry
        truck_id: Target truck
        record: Delivery receiving the truck, if any
        day_deliveries: All deliveries of the record's day

    Returns:
        TruckAvailability verdict
    """
    if record is not None and record.truck_id == truck_id:
        return TruckAvailability.ok(truck_id)

    truck = next((t for t in trucks if t.id == truck_id), None)
    if truck is None:
        return TruckAvailability.unavailable(truck_id, UnavailableReason.UNKNOWN_TRUCK)

    if truck.status is not TruckStatus.AVAILABLE:
        return TruckAvailability.unavailable(truck_id, _STATUS_REASONS[truck.status])

    holders = same_day_assignments(
        day_deliveries,
        exclude_record_id=record.id if record is not None else None,
    )
    if truck_id in holders:
        return TruckAvailability.unavailable(
            truck_id,
            UnavailableReason.DOUBLE_BOOKED,
            conflicting_record_id=holders[truck_id],
        )

    return TruckAvailability.ok(truck_id)


@dataclass
class TruckSuggestion:
    """Scored candidate truck for a delivery."""

    truck: TruckRecord
    score: int
    reasons: list[str] = field(default_factory=list)

    @property
    def is_optimal(self) -> bool:
        return self.score >= 90


def suggest_trucks(
    record: DeliveryRecord,
    trucks: Iterable[TruckRecord],
    day_deliveries: Iterable[DeliveryRecord] = (),
) -> list[TruckSuggestion]:
    """
    Rank candidate trucks for a delivery, best first.

    Candidates are Available trucks plus the current assignee. Score starts
    at 50 and rewards a tight capacity fit, a truck free for the day, a
    driver on record and keeping the current assignment.
    """
    busy = same_day_assignments(day_deliveries, exclude_record_id=record.id)
    default_capacity = Decimal(str(settings.DEFAULT_TRUCK_CAPACITY_M3))

    suggestions: list[TruckSuggestion] = []
    for truck in trucks:
        is_current = truck.id == record.truck_id
        if truck.status is not TruckStatus.AVAILABLE and not is_current:
            continue

        score = 50
        reasons: list[str] = []

        capacity = truck.capacity_m3 or default_capacity
        if capacity >= record.volume_m3:
            if capacity - record.volume_m3 <= 2:
                score += 30
                reasons.append("optimal_capacity")
            else:
                score += 15
                reasons.append("sufficient_capacity")
        else:
            score -= 20
            reasons.append("insufficient_capacity")

        if truck.id not in busy:
            score += 20
            reasons.append("free_today")
        else:
            score -= 10
            reasons.append("already_assigned")

        if truck.driver_name:
            score += 10
            reasons.append("driver_assigned")

        if is_current:
            score += 5
            reasons.append("current_assignment")

        suggestions.append(TruckSuggestion(truck=truck, score=score, reasons=reasons))

    suggestions.sort(key=lambda s: (-s.score, s.truck.id))
    return suggestions
