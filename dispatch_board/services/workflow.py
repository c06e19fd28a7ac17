"""
Workflow engine for delivery records.

Every board action goes through here. The engine checks permission, the
transition table, prerequisites, credit and the night window; only when all
pass does it write a patch to the delivery store. Blocked actions return a
typed outcome and leave the store untouched.

Pipeline:
    PendingValidation -> Planned -> Loading -> (TechnicalValidation) ->
    EnRoute -> Delivered -> Invoiced
    PendingValidation -> rejected (record deleted)
    Planned | Loading | TechnicalValidation -> Cancelled (CEO only)

Each transition names the roles allowed to take it; CEO and supervisor
hold every transition except Cancel.
Invoicing is done by the billing module; the engine only recognises it.
"""
import enum
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Optional, Sequence

from dispatch_board.core.clock import (
    Clock,
    in_hour_window,
    local_now,
    parse_time_of_day,
    plant_timezone,
)
from dispatch_board.core.config import settings
from dispatch_board.core.exceptions import (
    DataUnavailableException,
    StoreWriteException,
)
from dispatch_board.core.metrics import NIGHT_STARTS_TOTAL, record_outcome
from dispatch_board.models.actor import MANAGEMENT_ROLES, Actor, UserRole
from dispatch_board.models.approval import OverrideToken
from dispatch_board.models.audit import (
    AlertSeverity,
    AlertType,
    AuditAction,
    AuditEntry,
    SystemAlert,
)
from dispatch_board.models.client import ClientCreditSnapshot, CreditStatus
from dispatch_board.models.delivery import DeliveryRecord, WorkflowState
from dispatch_board.models.purchase_order import PurchaseOrderStatus
from dispatch_board.models.truck import TruckRecord
from dispatch_board.services.credit_gate import evaluate_credit
from dispatch_board.services.outcomes import (
    ActionResult,
    CompensationFailed,
    CreditBlocked,
    Deleted,
    IllegalTransition,
    InvalidTime,
    JustificationRequired,
    MissingPrerequisite,
    PermissionDenied,
    StoreWriteFailed,
    Success,
    TruckUnavailable,
)
from dispatch_board.services.truck_validator import validate_truck
from dispatch_board.stores.interfaces import (
    AlertSink,
    ApprovalTokenService,
    AuditSink,
    DeliveryStore,
    PurchaseOrderStore,
)

logger = logging.getLogger(__name__)


class Action(str, enum.Enum):
    """Board actions handled by the engine."""

    CONFIRM = "confirm"
    REJECT = "reject"
    START_PRODUCTION = "start_production"
    VALIDATE_TECHNICAL = "validate_technical"
    DISPATCH = "dispatch"
    RECORD_ARRIVAL = "record_arrival"
    MARK_DELIVERED = "mark_delivered"
    INVOICE = "invoice"
    ASSIGN_TRUCK = "assign_truck"
    SET_SCHEDULED_TIME = "set_scheduled_time"
    CANCEL = "cancel"


@dataclass(frozen=True)
class Transition:
    """
    Allowed source states, resulting state and roles of an action.

    ``target`` None means the action edits the record without moving it.
    ``roles`` None means any role with write access.
    """

    sources: frozenset[WorkflowState]
    target: Optional[WorkflowState] = None
    deletes: bool = False
    roles: Optional[frozenset[UserRole]] = None


_PRE_EN_ROUTE = frozenset(s for s in WorkflowState if s.is_pre_en_route)

PRODUCTION_ROLES = MANAGEMENT_ROLES | {UserRole.OPERATIONS_DIRECTOR}
TECHNICAL_ROLES = MANAGEMENT_ROLES | {UserRole.TECHNICAL_MANAGER}
DELIVERY_ROLES = MANAGEMENT_ROLES | {UserRole.OPERATIONS_DIRECTOR, UserRole.FRONTDESK}
BILLING_ROLES = MANAGEMENT_ROLES | {UserRole.FRONTDESK}

TRANSITIONS: dict[Action, Transition] = {
    Action.CONFIRM: Transition(
        frozenset({WorkflowState.PENDING_VALIDATION}), WorkflowState.PLANNED
    ),
    Action.REJECT: Transition(
        frozenset({WorkflowState.PENDING_VALIDATION}), deletes=True
    ),
    Action.START_PRODUCTION: Transition(
        frozenset({WorkflowState.PLANNED}),
        WorkflowState.LOADING,
        roles=PRODUCTION_ROLES,
    ),
    Action.VALIDATE_TECHNICAL: Transition(
        frozenset({WorkflowState.LOADING}),
        WorkflowState.TECHNICAL_VALIDATION,
        roles=TECHNICAL_ROLES,
    ),
    Action.DISPATCH: Transition(
        frozenset({WorkflowState.LOADING, WorkflowState.TECHNICAL_VALIDATION}),
        WorkflowState.EN_ROUTE,
        roles=TECHNICAL_ROLES,
    ),
    Action.RECORD_ARRIVAL: Transition(frozenset({WorkflowState.EN_ROUTE})),
    Action.MARK_DELIVERED: Transition(
        frozenset({WorkflowState.EN_ROUTE}),
        WorkflowState.DELIVERED,
        roles=DELIVERY_ROLES,
    ),
    Action.INVOICE: Transition(
        frozenset({WorkflowState.DELIVERED}),
        WorkflowState.INVOICED,
        roles=BILLING_ROLES,
    ),
    Action.ASSIGN_TRUCK: Transition(_PRE_EN_ROUTE),
    Action.SET_SCHEDULED_TIME: Transition(
        frozenset({WorkflowState.PENDING_VALIDATION, WorkflowState.PLANNED})
    ),
    Action.CANCEL: Transition(
        frozenset(
            {
                WorkflowState.PLANNED,
                WorkflowState.LOADING,
                WorkflowState.TECHNICAL_VALIDATION,
            }
        ),
        WorkflowState.CANCELLED,
        roles=frozenset({UserRole.CEO}),
    ),
}

_AUDIT_ACTIONS = {
    Action.CONFIRM: AuditAction.CONFIRM,
    Action.REJECT: AuditAction.REJECT,
    Action.START_PRODUCTION: AuditAction.START_PRODUCTION,
    Action.VALIDATE_TECHNICAL: AuditAction.VALIDATE_TECHNICAL,
    Action.DISPATCH: AuditAction.DISPATCH,
    Action.RECORD_ARRIVAL: AuditAction.RECORD_ARRIVAL,
    Action.MARK_DELIVERED: AuditAction.MARK_DELIVERED,
    Action.ASSIGN_TRUCK: AuditAction.ASSIGN_TRUCK,
    Action.SET_SCHEDULED_TIME: AuditAction.SET_SCHEDULED_TIME,
    Action.CANCEL: AuditAction.CANCEL,
}


class OverrideMethod(str, enum.Enum):
    """How a non-green credit standing was let through."""

    NONE = "none"
    ROLE = "role"
    APPROVAL_CODE = "approval_code"


@dataclass
class _CreditCheck:
    status: CreditStatus
    method: Optional[OverrideMethod] = None
    blocked: Optional[CreditBlocked] = None
    details: dict[str, Any] = field(default_factory=dict)


def is_night(moment: datetime) -> bool:
    """Whether ``moment`` falls in the night production window (plant time)."""
    if moment.tzinfo is not None:
        moment = moment.astimezone(plant_timezone())
    return in_hour_window(
        moment,
        settings.NIGHT_WINDOW_START_HOUR,
        settings.NIGHT_WINDOW_END_HOUR,
    )


def recognize_invoiced(record: DeliveryRecord) -> DeliveryRecord:
    """Map a delivered record billed outside the board to Invoiced."""
    if record.state is WorkflowState.DELIVERED and record.invoice_generated:
        return record.with_changes(state=WorkflowState.INVOICED)
    return record


class WorkflowEngine:
    """
    Applies board actions to delivery records.

    Holds no per-record state: callers pass the record as last fetched and
    the engine writes a patch, so the board's next fetch is the truth.
    """

    def __init__(
        self,
        deliveries: DeliveryStore,
        purchase_orders: PurchaseOrderStore,
        audit: AuditSink,
        alerts: AlertSink,
        approvals: Optional[ApprovalTokenService] = None,
        clock: Clock = local_now,
    ):
        self.deliveries = deliveries
        self.purchase_orders = purchase_orders
        self.audit = audit
        self.alerts = alerts
        self.approvals = approvals
        self.clock = clock

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    async def confirm(
        self,
        record: DeliveryRecord,
        actor: Actor,
        credit: ClientCreditSnapshot,
        token: Optional[OverrideToken] = None,
    ) -> ActionResult:
        """PendingValidation -> Planned, gated by credit."""
        action = Action.CONFIRM
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        check = await self._check_credit(record, actor, credit, token)
        if check.blocked:
            return self._finish(action, check.blocked)

        result = await self._apply(
            action,
            record,
            actor,
            {"state": WorkflowState.PLANNED},
            audit_details={
                "credit_status": check.status.value,
                "override_method": check.method.value,
                **check.details,
            },
        )
        await self._restore_unused_code(result, check, token)
        return self._finish(action, result)

    async def reject(self, record: DeliveryRecord, actor: Actor) -> ActionResult:
        """
        Delete a pending record and give its volume back to the purchase order.

        The deletion is not rolled back if the purchase-order update fails;
        the caller gets CompensationFailed and the order needs a manual fix.
        """
        action = Action.REJECT
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        try:
            await self.deliveries.delete(record.id)
        except StoreWriteException as e:
            logger.warning(f"Delete of {record.id} failed: {e.message}")
            return self._finish(action, StoreWriteFailed(record_id=record.id, message=e.message))

        await self._record_audit(
            action,
            record,
            actor,
            {"purchase_order_id": record.purchase_order_id, "volume_m3": str(record.volume_m3)},
        )

        if not record.purchase_order_id:
            return self._finish(action, Deleted(record_id=record.id))

        result = await self._compensate_purchase_order(record)
        return self._finish(action, result)

    async def start_production(
        self,
        record: DeliveryRecord,
        actor: Actor,
        credit: ClientCreditSnapshot,
        justification: Optional[str] = None,
        token: Optional[OverrideToken] = None,
    ) -> ActionResult:
        """
        Planned -> Loading.

        Needs a scheduled time and a truck, an acceptable credit standing and,
        inside the night window, a written justification. A night start
        raises a critical alert for management.
        """
        action = Action.START_PRODUCTION
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        missing = []
        if record.scheduled_time is None:
            missing.append("scheduled_time")
        if not record.truck_id:
            missing.append("truck_id")
        if missing:
            return self._finish(
                action, MissingPrerequisite(record_id=record.id, missing=tuple(missing))
            )

        now = self.clock()
        night = is_night(now)
        text = (justification or "").strip()

        credit_status = evaluate_credit(credit)
        if credit_status is not CreditStatus.GREEN and not actor.can_override_credit and token is None:
            return self._finish(action, await self._credit_blocked(record, actor, credit, credit_status))

        if night and len(text) < settings.MIN_JUSTIFICATION_LENGTH:
            return self._finish(
                action,
                JustificationRequired(
                    record_id=record.id,
                    min_length=settings.MIN_JUSTIFICATION_LENGTH,
                    provided_length=len(text),
                ),
            )

        # Consumed last so a code is not burnt by a later rejection
        check = await self._check_credit(record, actor, credit, token)
        if check.blocked:
            return self._finish(action, check.blocked)

        details: dict[str, Any] = {
            "credit_status": check.status.value,
            "override_method": check.method.value,
            "night_window": night,
            **check.details,
        }
        if night:
            details["justification"] = text

        result = await self._apply(
            action,
            record,
            actor,
            {"state": WorkflowState.LOADING, "departed_at": now},
            audit_details=details,
        )
        await self._restore_unused_code(result, check, token)

        if night and isinstance(result, Success):
            NIGHT_STARTS_TOTAL.inc()
            await self._raise_alert(
                SystemAlert(
                    alert_type=AlertType.MIDNIGHT_PROTOCOL,
                    severity=AlertSeverity.CRITICAL,
                    title="Night production start",
                    message=(
                        f"Delivery {record.id} ({record.volume_m3} m3) started at "
                        f"{now:%H:%M} by {actor.display_name or actor.id}. "
                        f"Justification: {text}"
                    ),
                    reference_id=record.id,
                    recipient_role="ceo",
                )
            )

        return self._finish(action, result)

    async def validate_technical(self, record: DeliveryRecord, actor: Actor) -> ActionResult:
        """Loading -> TechnicalValidation, by the quality team."""
        action = Action.VALIDATE_TECHNICAL
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        result = await self._apply(
            action,
            record,
            actor,
            {
                "state": WorkflowState.TECHNICAL_VALIDATION,
                "technical_validated_by": actor.id,
                "technical_validated_at": self.clock(),
            },
        )
        return self._finish(action, result)

    async def dispatch(self, record: DeliveryRecord, actor: Actor) -> ActionResult:
        """Loading / TechnicalValidation -> EnRoute."""
        action = Action.DISPATCH
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        if not record.truck_id:
            return self._finish(action, MissingPrerequisite(record_id=record.id, missing=("truck_id",)))

        result = await self._apply(action, record, actor, {"state": WorkflowState.EN_ROUTE})
        return self._finish(action, result)

    async def record_arrival(self, record: DeliveryRecord, actor: Actor) -> ActionResult:
        """Stamp the arrival on site; later calls keep the first stamp."""
        action = Action.RECORD_ARRIVAL
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        if record.arrived_at is not None:
            return self._finish(action, Success(record=record))

        result = await self._apply(action, record, actor, {"arrived_at": self.clock()})
        return self._finish(action, result)

    async def mark_delivered(self, record: DeliveryRecord, actor: Actor) -> ActionResult:
        """EnRoute -> Delivered; stamps the truck's return."""
        action = Action.MARK_DELIVERED
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        result = await self._apply(
            action,
            record,
            actor,
            {"state": WorkflowState.DELIVERED, "returned_at": self.clock()},
        )
        return self._finish(action, result)

    async def assign_truck(
        self,
        record: DeliveryRecord,
        actor: Actor,
        truck_id: str,
        trucks: Sequence[TruckRecord],
        day_deliveries: Sequence[DeliveryRecord] = (),
    ) -> ActionResult:
        """Assign a truck to a record not yet on the road."""
        action = Action.ASSIGN_TRUCK
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        availability = validate_truck(trucks, truck_id, record, day_deliveries)
        if not availability.available:
            return self._finish(
                action,
                TruckUnavailable(
                    record_id=record.id,
                    truck_id=truck_id,
                    reason=availability.reason,
                    conflicting_record_id=availability.conflicting_record_id,
                ),
            )

        if record.truck_id == truck_id:
            return self._finish(action, Success(record=record))

        result = await self._apply(
            action,
            record,
            actor,
            {"truck_id": truck_id},
            audit_details={"previous_truck_id": record.truck_id},
        )
        return self._finish(action, result)

    async def set_scheduled_time(
        self,
        record: DeliveryRecord,
        actor: Actor,
        value: Optional[str],
    ) -> ActionResult:
        """Set or clear (blank input) the scheduled time."""
        action = Action.SET_SCHEDULED_TIME
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        try:
            scheduled = parse_time_of_day(value)
        except ValueError:
            return self._finish(action, InvalidTime(record_id=record.id, value=str(value)))

        if scheduled == record.scheduled_time:
            return self._finish(action, Success(record=record))

        result = await self._apply(
            action,
            record,
            actor,
            {"scheduled_time": scheduled},
            audit_details={"previous": record.scheduled_time_label},
        )
        return self._finish(action, result)

    async def cancel(self, record: DeliveryRecord, actor: Actor) -> ActionResult:
        """Cancel a record not yet on the road; stamps who cancelled and when."""
        action = Action.CANCEL
        blocked = self._guard(action, record, actor)
        if blocked:
            return self._finish(action, blocked)

        result = await self._apply(
            action,
            record,
            actor,
            {
                "state": WorkflowState.CANCELLED,
                "cancelled_by": actor.id,
                "cancelled_at": self.clock(),
            },
        )
        return self._finish(action, result)

    # ------------------------------------------------------------------
    # Guards
    # ------------------------------------------------------------------

    def _guard(self, action: Action, record: DeliveryRecord, actor: Actor):
        """Permission then transition-table check; None when allowed."""
        transition = TRANSITIONS[action]
        if actor.is_read_only or (
            transition.roles is not None and actor.role not in transition.roles
        ):
            return PermissionDenied(record_id=record.id, action=action.value, role=actor.role.value)

        if record.state not in transition.sources:
            return IllegalTransition(
                record_id=record.id,
                action=action.value,
                current_state=record.state,
            )
        return None

    async def _check_credit(
        self,
        record: DeliveryRecord,
        actor: Actor,
        credit: ClientCreditSnapshot,
        token: Optional[OverrideToken],
    ) -> _CreditCheck:
        status = evaluate_credit(credit)
        if status is CreditStatus.GREEN:
            return _CreditCheck(status=status, method=OverrideMethod.NONE)

        if actor.can_override_credit:
            return _CreditCheck(status=status, method=OverrideMethod.ROLE)

        if token is not None and self.approvals is not None:
            if await self.approvals.consume(token.request_id, token.code, record.id):
                return _CreditCheck(
                    status=status,
                    method=OverrideMethod.APPROVAL_CODE,
                    details={"approval_request_id": token.request_id},
                )
            logger.info(f"Override code rejected for {record.id} (request {token.request_id})")

        return _CreditCheck(
            status=status,
            blocked=await self._credit_blocked(record, actor, credit, status, token),
        )

    async def _credit_blocked(
        self,
        record: DeliveryRecord,
        actor: Actor,
        credit: ClientCreditSnapshot,
        status: CreditStatus,
        token: Optional[OverrideToken] = None,
    ) -> CreditBlocked:
        request_id = None
        if token is not None and self.approvals is not None:
            # A code from another record's request does not stand for this one
            existing = await self.approvals.get(token.request_id)
            if existing is not None and existing.record_id == record.id:
                request_id = existing.id
        elif token is not None:
            request_id = token.request_id
        if request_id is None and self.approvals is not None:
            request = await self.approvals.request(
                record.id,
                record.client_id,
                actor,
                context={
                    "client_name": credit.client_name or record.client_name,
                    "balance": credit.balance,
                    "credit_limit": credit.credit_limit,
                },
            )
            request_id = request.id

        return CreditBlocked(
            record_id=record.id,
            client_id=record.client_id,
            client_name=credit.client_name or record.client_name,
            credit_status=status,
            balance=credit.balance,
            credit_limit=credit.credit_limit,
            approval_request_id=request_id,
        )

    # ------------------------------------------------------------------
    # Writes and side effects
    # ------------------------------------------------------------------

    async def _apply(
        self,
        action: Action,
        record: DeliveryRecord,
        actor: Actor,
        patch: dict[str, Any],
        audit_details: Optional[dict[str, Any]] = None,
    ) -> ActionResult:
        try:
            updated = await self.deliveries.update(record.id, patch)
        except StoreWriteException as e:
            logger.warning(f"{action.value} on {record.id} not written: {e.message}")
            return StoreWriteFailed(record_id=record.id, message=e.message)

        await self._record_audit(action, record, actor, {"patch": _describe(patch), **(audit_details or {})})
        return Success(record=updated, patch=patch)

    async def _restore_unused_code(
        self,
        result: ActionResult,
        check: _CreditCheck,
        token: Optional[OverrideToken],
    ) -> None:
        """Give a consumed code back when the transition it paid for was not written."""
        if not isinstance(result, StoreWriteFailed) or check.method is not OverrideMethod.APPROVAL_CODE:
            return
        try:
            await self.approvals.release(token.request_id)
        except (DataUnavailableException, StoreWriteException) as e:
            logger.warning(f"Override {token.request_id} not restored after failed write: {e.message}")

    async def _compensate_purchase_order(self, record: DeliveryRecord) -> ActionResult:
        po_id = record.purchase_order_id
        try:
            order = await self.purchase_orders.get(po_id)
            if order is None:
                return CompensationFailed(
                    record_id=record.id,
                    purchase_order_id=po_id,
                    message="purchase order not found",
                )

            delivered = max(Decimal("0"), order.delivered_volume_m3 - record.volume_m3)
            await self.purchase_orders.update(
                po_id,
                {
                    "delivered_volume_m3": delivered,
                    "remaining_volume_m3": order.volume_m3 - delivered,
                    "delivery_count": max(0, order.delivery_count - 1),
                    "status": PurchaseOrderStatus.READY_FOR_PRODUCTION,
                },
            )
        except (DataUnavailableException, StoreWriteException) as e:
            logger.error(f"Purchase order {po_id} not compensated after rejecting {record.id}: {e.message}")
            return CompensationFailed(record_id=record.id, purchase_order_id=po_id, message=e.message)

        logger.info(f"Purchase order {po_id} credited back {record.volume_m3} m3")
        return Deleted(record_id=record.id, purchase_order_id=po_id)

    async def _record_audit(
        self,
        action: Action,
        record: DeliveryRecord,
        actor: Actor,
        details: dict[str, Any],
    ) -> None:
        entry = AuditEntry(
            action=_AUDIT_ACTIONS[action],
            record_id=record.id,
            actor_id=actor.id,
            occurred_at=self.clock(),
            details={"role": actor.role.value, "from_state": record.state.value, **details},
        )
        try:
            await self.audit.record(entry)
        except Exception as e:
            logger.warning(f"Audit entry for {action.value} on {record.id} lost: {e}")

    async def _raise_alert(self, alert: SystemAlert) -> None:
        try:
            await self.alerts.raise_alert(alert)
        except Exception as e:
            logger.warning(f"Alert {alert.alert_type} for {alert.reference_id} lost: {e}")

    def _finish(self, action: Action, outcome: ActionResult) -> ActionResult:
        record_outcome(action.value, outcome.code)
        if outcome.ok:
            logger.info(f"{action.value} applied to {_record_id(outcome)}")
        else:
            logger.info(f"{action.value} blocked on {_record_id(outcome)}: {outcome.code}")
        return outcome


def _record_id(outcome: ActionResult) -> Optional[str]:
    if isinstance(outcome, Success):
        return outcome.record.id
    return getattr(outcome, "record_id", None)


def _describe(patch: dict[str, Any]) -> dict[str, Any]:
    """JSON-friendly copy of a patch for the audit trail."""
    described = {}
    for key, value in patch.items():
        if isinstance(value, enum.Enum):
            value = value.value
        elif hasattr(value, "isoformat"):
            value = value.isoformat()
        described[key] = value
    return described
