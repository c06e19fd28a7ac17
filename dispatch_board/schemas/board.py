"""
Board response schemas.
"""

from datetime import date, datetime
from decimal import Decimal
from typing import Optional

from pydantic import BaseModel

from dispatch_board.models.client import CreditStatus
from dispatch_board.models.delivery import DeliveryRecord, WorkflowState
from dispatch_board.models.truck import TruckRecord, TruckStatus
from dispatch_board.services.board import BoardSnapshot
from dispatch_board.services.conflict_detector import SchedulingConflict


class DeliveryResponse(BaseModel):
    """Delivery as shown on a board card."""

    id: str
    client_id: str
    client_name: Optional[str] = None
    formula_id: str
    volume_m3: Decimal
    delivery_date: date
    state: WorkflowState
    scheduled_time: Optional[str] = None
    truck_id: Optional[str] = None
    purchase_order_id: Optional[str] = None
    departed_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    technical_validated_by: Optional[str] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    credit_status: Optional[CreditStatus] = None
    has_conflict: bool = False

    @classmethod
    def from_record(
        cls,
        record: DeliveryRecord,
        credit_status: Optional[CreditStatus] = None,
        has_conflict: bool = False,
    ) -> "DeliveryResponse":
        return cls(
            id=record.id,
            client_id=record.client_id,
            client_name=record.client_name,
            formula_id=record.formula_id,
            volume_m3=record.volume_m3,
            delivery_date=record.delivery_date,
            state=record.state,
            scheduled_time=record.scheduled_time_label,
            truck_id=record.truck_id,
            purchase_order_id=record.purchase_order_id,
            departed_at=record.departed_at,
            arrived_at=record.arrived_at,
            returned_at=record.returned_at,
            technical_validated_by=record.technical_validated_by,
            cancelled_by=record.cancelled_by,
            cancelled_at=record.cancelled_at,
            credit_status=credit_status,
            has_conflict=has_conflict,
        )


class TruckResponse(BaseModel):
    """Truck in the fleet panel."""

    id: str
    status: TruckStatus
    plate: Optional[str] = None
    driver_name: Optional[str] = None
    capacity_m3: Optional[Decimal] = None

    @classmethod
    def from_record(cls, truck: TruckRecord) -> "TruckResponse":
        return cls(
            id=truck.id,
            status=truck.status,
            plate=truck.plate,
            driver_name=truck.driver_name,
            capacity_m3=truck.capacity_m3,
        )


class ConflictResponse(BaseModel):
    first_id: str
    second_id: str
    first_time: Optional[str]
    second_time: Optional[str]
    gap_minutes: int

    @classmethod
    def from_conflict(cls, conflict: SchedulingConflict) -> "ConflictResponse":
        return cls(**conflict.to_dict())


class BoardResponse(BaseModel):
    """Full board for one day."""

    board_date: date
    sequence: int
    loaded_at: datetime
    stale: bool
    error: Optional[str] = None
    total_volume_m3: Decimal
    deliveries: list[DeliveryResponse]
    trucks: list[TruckResponse]
    categories: dict[str, list[str]]
    counts: dict[str, int]
    conflicts: list[ConflictResponse]
    credit_statuses: dict[str, CreditStatus]

    @classmethod
    def from_snapshot(cls, snapshot: BoardSnapshot) -> "BoardResponse":
        flagged = snapshot.conflicting_ids
        return cls(
            board_date=snapshot.board_date,
            sequence=snapshot.sequence,
            loaded_at=snapshot.loaded_at,
            stale=snapshot.stale,
            error=snapshot.error,
            total_volume_m3=snapshot.total_volume_m3,
            deliveries=[
                DeliveryResponse.from_record(
                    d,
                    credit_status=snapshot.credit_statuses.get(d.client_id),
                    has_conflict=d.id in flagged,
                )
                for d in snapshot.deliveries
            ],
            trucks=[TruckResponse.from_record(t) for t in snapshot.trucks],
            categories={
                name: [r.id for r in records]
                for name, records in snapshot.categories.buckets().items()
            },
            counts=snapshot.categories.counts(),
            conflicts=[ConflictResponse.from_conflict(c) for c in snapshot.conflicts],
            credit_statuses=snapshot.credit_statuses,
        )
