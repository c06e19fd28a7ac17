"""
Action request/response schemas.
"""

from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

from dispatch_board.models.approval import OverrideToken
from dispatch_board.schemas.board import TruckResponse
from dispatch_board.services.truck_validator import TruckSuggestion


class OverrideCode(BaseModel):
    """Approval code obtained from management, if any."""

    approval_request_id: Optional[str] = None
    approval_code: Optional[str] = Field(None, min_length=4, max_length=4, pattern=r"^\d{4}$")

    def token(self) -> Optional[OverrideToken]:
        if self.approval_request_id and self.approval_code:
            return OverrideToken(request_id=self.approval_request_id, code=self.approval_code)
        return None


class ConfirmRequest(OverrideCode):
    """Confirm a pending delivery."""


class StartProductionRequest(OverrideCode):
    """Start loading; night starts need a justification."""

    justification: Optional[str] = Field(None, max_length=1000)


class AssignTruckRequest(BaseModel):
    truck_id: str = Field(..., min_length=1)


class ScheduleRequest(BaseModel):
    """New time ("HH:MM", "H:MM", "HH:MM:SS", "HHhMM"); blank clears."""

    scheduled_time: Optional[str] = None


class ActionResponse(BaseModel):
    """Outcome of a board action."""

    code: str
    ok: bool
    record_id: Optional[str] = None
    details: dict[str, Any] = Field(default_factory=dict)
    board_sequence: Optional[int] = None

    @classmethod
    def from_outcome(cls, outcome, board_sequence: Optional[int] = None) -> "ActionResponse":
        data = outcome.to_dict()
        code = data.pop("code")
        ok = data.pop("ok")
        record_id = data.pop("record_id", None)
        return cls(
            code=code,
            ok=ok,
            record_id=record_id,
            details=data,
            board_sequence=board_sequence,
        )


class BulkActionResponse(BaseModel):
    """Outcome of a bulk action, one entry per record."""

    applied: int
    blocked: int
    results: list[ActionResponse]
    board_sequence: Optional[int] = None

    @classmethod
    def from_bulk(cls, bulk, board_sequence: Optional[int] = None) -> "BulkActionResponse":
        return cls(
            applied=bulk.applied,
            blocked=bulk.blocked,
            results=[ActionResponse.from_outcome(r) for r in bulk.results],
            board_sequence=board_sequence,
        )


class ApprovalCodeResponse(BaseModel):
    """Code issued to the approver, to be read back to the operator."""

    request_id: str
    code: str
    expires_at: Optional[datetime] = None


class TruckSuggestionResponse(BaseModel):
    truck: TruckResponse
    score: int
    optimal: bool
    reasons: list[str]

    @classmethod
    def from_suggestion(cls, suggestion: TruckSuggestion) -> "TruckSuggestionResponse":
        return cls(
            truck=TruckResponse.from_record(suggestion.truck),
            score=suggestion.score,
            optimal=suggestion.is_optimal,
            reasons=suggestion.reasons,
        )
