"""
Audit entries and system alerts emitted by the workflow engine.
"""
import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional


class AuditAction(str, enum.Enum):
    """Audited board actions."""

    CONFIRM = "delivery.confirm"
    REJECT = "delivery.reject"
    START_PRODUCTION = "delivery.start_production"
    VALIDATE_TECHNICAL = "delivery.validate_technical"
    DISPATCH = "delivery.dispatch"
    RECORD_ARRIVAL = "delivery.record_arrival"
    MARK_DELIVERED = "delivery.mark_delivered"
    ASSIGN_TRUCK = "delivery.assign_truck"
    SET_SCHEDULED_TIME = "delivery.set_scheduled_time"
    CANCEL = "delivery.cancel"
    REQUEST_APPROVAL = "approval.request"
    APPROVE_OVERRIDE = "approval.approve"


class AlertSeverity(str, enum.Enum):
    """Alert levels understood by the alert sink."""

    INFO = "info"
    WARNING = "warning"
    CRITICAL = "critical"


class AlertType:
    """Alert type tags."""

    MIDNIGHT_PROTOCOL = "midnight_protocol"
    CREDIT_OVERRIDE_REQUEST = "credit_override_request"


@dataclass
class AuditEntry:
    """One audited action."""

    action: AuditAction
    record_id: str
    actor_id: str
    occurred_at: datetime
    details: dict[str, Any] = field(default_factory=dict)


@dataclass
class SystemAlert:
    """Alert raised towards the war room."""

    alert_type: str
    severity: AlertSeverity
    message: str
    reference_id: str
    title: Optional[str] = None
    recipient_role: Optional[str] = None
