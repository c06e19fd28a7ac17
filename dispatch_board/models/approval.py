"""
Out-of-band credit override approval (CEO emergency code).
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Optional
from uuid import uuid4


class ApprovalStatus(str, enum.Enum):
    """Lifecycle of an override request."""

    PENDING = "pending"
    APPROVED = "approved"
    USED = "used"
    EXPIRED = "expired"
    LOCKED = "locked"  # too many wrong codes


@dataclass
class ApprovalRequest:
    """
    Request for a one-time override code.

    Created when a transition is blocked by credit; an approver issues a
    short code which the requesting operator supplies on retry.
    """

    record_id: str
    client_id: str
    requested_by: str
    id: str = field(default_factory=lambda: uuid4().hex)
    status: ApprovalStatus = ApprovalStatus.PENDING
    client_name: Optional[str] = None
    balance: Optional[Decimal] = None
    credit_limit: Optional[Decimal] = None
    code: Optional[str] = field(default=None, repr=False)
    approved_by: Optional[str] = None
    expires_at: Optional[datetime] = None
    attempts: int = 0
    created_at: Optional[datetime] = None

    @property
    def is_open(self) -> bool:
        return self.status in (ApprovalStatus.PENDING, ApprovalStatus.APPROVED)


@dataclass(frozen=True)
class OverrideToken:
    """Approval request handle plus the code the approver issued."""

    request_id: str
    code: str
