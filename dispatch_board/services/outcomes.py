"""
Typed results of board actions.

Every workflow operation returns one of these instead of raising, so the
presentation layer can pick a remediation per kind (request approval,
supply a justification, pick another truck). Blocked outcomes leave the
store unchanged, except CompensationFailed whose delete already happened;
``mutated`` tells the board whether to publish and re-fetch.
"""
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Optional, Union

from dispatch_board.models.client import CreditStatus
from dispatch_board.models.delivery import DeliveryRecord, WorkflowState
from dispatch_board.services.truck_validator import UnavailableReason


@dataclass(frozen=True)
class Outcome:
    """Base class for action results."""

    code = "outcome"
    ok = False
    mutated = False

    def to_dict(self) -> dict[str, Any]:
        return {"code": self.code, "ok": self.ok}


@dataclass(frozen=True)
class Success(Outcome):
    """Transition applied; ``record`` reflects the written patch."""

    record: DeliveryRecord
    patch: dict = field(default_factory=dict)
    warnings: tuple[str, ...] = ()

    code = "success"
    ok = True
    mutated = True

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            record_id=self.record.id,
            state=self.record.state.value,
            warnings=list(self.warnings),
        )
        return data


@dataclass(frozen=True)
class Deleted(Outcome):
    """Record removed (reject)."""

    record_id: str
    purchase_order_id: Optional[str] = None

    code = "deleted"
    ok = True
    mutated = True

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(record_id=self.record_id, purchase_order_id=self.purchase_order_id)
        return data


@dataclass(frozen=True)
class DataUnavailable(Outcome):
    """The system of record could not be read."""

    message: str = "Dispatch data is temporarily unavailable"

    code = "data_unavailable"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["message"] = self.message
        return data


@dataclass(frozen=True)
class CreditBlocked(Outcome):
    """Client credit does not allow the transition without an override."""

    record_id: str
    client_id: str
    credit_status: CreditStatus
    balance: Decimal
    credit_limit: Decimal
    client_name: Optional[str] = None
    approval_request_id: Optional[str] = None

    code = "credit_blocked"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            record_id=self.record_id,
            client_id=self.client_id,
            client_name=self.client_name,
            credit_status=self.credit_status.value,
            balance=str(self.balance),
            credit_limit=str(self.credit_limit),
            approval_request_id=self.approval_request_id,
        )
        return data


@dataclass(frozen=True)
class JustificationRequired(Outcome):
    """Night-window start without a long enough justification."""

    record_id: str
    min_length: int
    provided_length: int = 0

    code = "justification_required"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            record_id=self.record_id,
            min_length=self.min_length,
            provided_length=self.provided_length,
        )
        return data


@dataclass(frozen=True)
class MissingPrerequisite(Outcome):
    """Fields that must be set before the transition."""

    record_id: str
    missing: tuple[str, ...]

    code = "missing_prerequisite"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(record_id=self.record_id, missing=list(self.missing))
        return data


@dataclass(frozen=True)
class TruckUnavailable(Outcome):
    """Assignment rejected by the truck validator."""

    record_id: str
    truck_id: str
    reason: UnavailableReason
    conflicting_record_id: Optional[str] = None

    code = "truck_unavailable"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            record_id=self.record_id,
            truck_id=self.truck_id,
            reason=self.reason.value,
            conflicting_record_id=self.conflicting_record_id,
        )
        return data


@dataclass(frozen=True)
class InvalidTime(Outcome):
    """Supplied value is not a time of day."""

    record_id: str
    value: str

    code = "invalid_time"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(record_id=self.record_id, value=self.value)
        return data


@dataclass(frozen=True)
class CompensationFailed(Outcome):
    """Record deleted but the purchase-order reversal did not complete."""

    record_id: str
    purchase_order_id: str
    message: str

    code = "compensation_failed"
    mutated = True

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            record_id=self.record_id,
            purchase_order_id=self.purchase_order_id,
            message=self.message,
        )
        return data


@dataclass(frozen=True)
class PermissionDenied(Outcome):
    """Actor's role does not allow the action."""

    record_id: str
    action: str
    role: str

    code = "permission_denied"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(record_id=self.record_id, action=self.action, role=self.role)
        return data


@dataclass(frozen=True)
class IllegalTransition(Outcome):
    """Action not allowed from the record's current state."""

    record_id: str
    action: str
    current_state: WorkflowState

    code = "illegal_transition"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(
            record_id=self.record_id,
            action=self.action,
            current_state=self.current_state.value,
        )
        return data


@dataclass(frozen=True)
class RecordNotFound(Outcome):
    """No record with that id on the active board."""

    record_id: str

    code = "record_not_found"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["record_id"] = self.record_id
        return data


@dataclass(frozen=True)
class StoreWriteFailed(Outcome):
    """The system of record refused or missed the write."""

    record_id: str
    message: str

    code = "store_write_failed"

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(record_id=self.record_id, message=self.message)
        return data


@dataclass(frozen=True)
class ApprovalRequested(Outcome):
    """Override request opened (or already open) for a blocked record."""

    record_id: str
    request_id: str
    status: str

    code = "approval_requested"
    ok = True

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data.update(record_id=self.record_id, request_id=self.request_id, status=self.status)
        return data


Blocked = Union[
    DataUnavailable,
    CreditBlocked,
    JustificationRequired,
    MissingPrerequisite,
    TruckUnavailable,
    InvalidTime,
    CompensationFailed,
    PermissionDenied,
    IllegalTransition,
    RecordNotFound,
    StoreWriteFailed,
]

ActionResult = Union[Success, Deleted, ApprovalRequested, Blocked]


@dataclass(frozen=True)
class BulkResult:
    """Per-record outcomes of a bulk action, in board order."""

    results: tuple[ActionResult, ...] = ()

    @property
    def applied(self) -> int:
        return sum(1 for r in self.results if r.ok)

    @property
    def blocked(self) -> int:
        return len(self.results) - self.applied

    def to_dict(self) -> dict[str, Any]:
        return {
            "applied": self.applied,
            "blocked": self.blocked,
            "results": [r.to_dict() for r in self.results],
        }
