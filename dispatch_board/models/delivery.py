"""
Delivery record (bon de livraison) and its workflow state.
"""

import enum
from dataclasses import dataclass, fields, replace
from datetime import date, datetime, time
from decimal import Decimal, InvalidOperation
from typing import Any, Optional

from dispatch_board.core.clock import format_time_of_day, parse_time_of_day
from dispatch_board.core.exceptions import MalformedRecordException


class WorkflowState(str, enum.Enum):
    """Position of a delivery in the production -> delivery -> billing pipeline."""

    PENDING_VALIDATION = "en_attente_validation"
    PLANNED = "planification"
    LOADING = "production"
    TECHNICAL_VALIDATION = "validation_technique"
    EN_ROUTE = "en_livraison"
    DELIVERED = "livre"
    INVOICED = "facture"
    CANCELLED = "annule"

    @property
    def is_terminal(self) -> bool:
        return self in (WorkflowState.INVOICED, WorkflowState.CANCELLED)

    @property
    def is_active(self) -> bool:
        return not self.is_terminal

    @property
    def is_pre_en_route(self) -> bool:
        return self in _PRE_EN_ROUTE

    @property
    def rank(self) -> int:
        """Position along the pipeline, used to spot regressions between snapshots."""
        return _RANKS[self]


_PRE_EN_ROUTE = frozenset(
    {
        WorkflowState.PENDING_VALIDATION,
        WorkflowState.PLANNED,
        WorkflowState.LOADING,
        WorkflowState.TECHNICAL_VALIDATION,
    }
)

_RANKS = {
    WorkflowState.PENDING_VALIDATION: 0,
    WorkflowState.PLANNED: 1,
    WorkflowState.LOADING: 2,
    WorkflowState.TECHNICAL_VALIDATION: 3,
    WorkflowState.EN_ROUTE: 4,
    WorkflowState.DELIVERED: 5,
    WorkflowState.INVOICED: 6,
    WorkflowState.CANCELLED: 7,
}


def _parse_datetime(value: Any) -> Optional[datetime]:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))


@dataclass(frozen=True)
class DeliveryRecord:
    """
    One delivery order tracked through production and transport.

    Records are immutable snapshots of the system of record; workflow
    transitions produce a patch and the next fetch brings the new state.
    """

    id: str
    client_id: str
    formula_id: str
    volume_m3: Decimal
    delivery_date: date
    state: WorkflowState
    scheduled_time: Optional[time] = None
    truck_id: Optional[str] = None
    client_name: Optional[str] = None
    purchase_order_id: Optional[str] = None

    # Stamped by workflow transitions only
    departed_at: Optional[datetime] = None
    arrived_at: Optional[datetime] = None
    returned_at: Optional[datetime] = None
    technical_validated_by: Optional[str] = None
    technical_validated_at: Optional[datetime] = None
    cancelled_by: Optional[str] = None
    cancelled_at: Optional[datetime] = None

    # Billing
    invoice_generated: bool = False
    wait_time_billable: bool = False

    created_at: Optional[datetime] = None

    def __post_init__(self):
        if not isinstance(self.volume_m3, Decimal) or self.volume_m3 <= 0:
            raise MalformedRecordException(
                "delivery", self.id, f"volume must be positive, got {self.volume_m3}"
            )

    def __repr__(self) -> str:
        return f"<DeliveryRecord {self.id} {self.state.value}>"

    @property
    def scheduled_time_label(self) -> Optional[str]:
        return format_time_of_day(self.scheduled_time)

    def scheduled_at(self, tz=None) -> Optional[datetime]:
        """Scheduled moment on the delivery date, or None without a time."""
        if self.scheduled_time is None:
            return None
        return datetime.combine(self.delivery_date, self.scheduled_time, tzinfo=tz)

    def with_changes(self, **changes) -> "DeliveryRecord":
        return replace(self, **changes)

    @classmethod
    def from_row(cls, row: dict) -> "DeliveryRecord":
        """
        Build a record from a backend row.

        Raises:
            MalformedRecordException: If the row violates record invariants.
        """
        record_id = row.get("bl_id")
        try:
            state = WorkflowState(row.get("workflow_status"))
        except ValueError:
            raise MalformedRecordException(
                "delivery", record_id, f"unknown workflow status {row.get('workflow_status')!r}"
            )

        try:
            volume = Decimal(str(row.get("volume_m3")))
            scheduled = parse_time_of_day(row.get("heure_prevue"))
            delivery_date = date.fromisoformat(str(row["date_livraison"]))
            departed = _parse_datetime(row.get("heure_depart_centrale"))
            arrived = _parse_datetime(row.get("heure_arrivee_chantier"))
            returned = _parse_datetime(row.get("heure_retour_centrale"))
            validated_at = _parse_datetime(row.get("validated_at"))
            cancelled_at = _parse_datetime(row.get("annule_at"))
            created = _parse_datetime(row.get("created_at"))
        except (InvalidOperation, ValueError, KeyError, TypeError) as e:
            raise MalformedRecordException("delivery", record_id, str(e))

        client = row.get("clients") or {}
        return cls(
            id=record_id,
            client_id=row.get("client_id"),
            client_name=client.get("nom_client"),
            formula_id=row.get("formule_id"),
            volume_m3=volume,
            delivery_date=delivery_date,
            state=state,
            scheduled_time=scheduled,
            truck_id=row.get("camion_assigne"),
            purchase_order_id=row.get("bc_id"),
            departed_at=departed,
            arrived_at=arrived,
            returned_at=returned,
            technical_validated_by=row.get("validated_by"),
            technical_validated_at=validated_at,
            cancelled_by=row.get("annule_par"),
            cancelled_at=cancelled_at,
            invoice_generated=bool(row.get("facture_generee")),
            wait_time_billable=bool(row.get("temps_attente_facturable")),
            created_at=created,
        )


# Field name on the domain record -> column in the hosted backend
DELIVERY_COLUMNS = {
    "id": "bl_id",
    "purchase_order_id": "bc_id",
    "formula_id": "formule_id",
    "delivery_date": "date_livraison",
    "state": "workflow_status",
    "scheduled_time": "heure_prevue",
    "truck_id": "camion_assigne",
    "departed_at": "heure_depart_centrale",
    "arrived_at": "heure_arrivee_chantier",
    "returned_at": "heure_retour_centrale",
    "technical_validated_by": "validated_by",
    "technical_validated_at": "validated_at",
    "cancelled_by": "annule_par",
    "cancelled_at": "annule_at",
    "invoice_generated": "facture_generee",
    "wait_time_billable": "temps_attente_facturable",
}

# Joined from other tables, never written
_READ_ONLY_FIELDS = frozenset({"client_name"})


def patch_to_row(patch: dict) -> dict:
    """Translate a domain patch into backend column values."""
    row: dict[str, Any] = {}
    for key, value in patch.items():
        if key in _READ_ONLY_FIELDS:
            continue
        column = DELIVERY_COLUMNS.get(key, key)
        if isinstance(value, WorkflowState):
            value = value.value
        elif isinstance(value, (datetime, date)):
            value = value.isoformat()
        elif isinstance(value, time):
            value = format_time_of_day(value)
        elif isinstance(value, Decimal):
            value = float(value)
        row[column] = value
        if key == "truck_id":
            # the backend keeps the mixer-truck column in sync
            row["toupie_assignee"] = value
        if key == "technical_validated_by" and value is not None:
            row["validation_technique"] = True
    return row


def record_to_row(record: DeliveryRecord) -> dict:
    """Full backend row for inserting ``record``."""
    return patch_to_row({f.name: getattr(record, f.name) for f in fields(record)})
