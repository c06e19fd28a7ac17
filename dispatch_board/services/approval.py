"""
Credit override approval codes.

An operator blocked by credit asks for an override; the approver (CEO)
gets an alert, approves, and reads a 4-digit code back to the operator who
supplies it on retry. Codes expire, work once and only for the record they
were requested for; a request locks after too many wrong codes.
"""
import asyncio
import logging
import secrets
from datetime import timedelta
from typing import Any, Optional

from dispatch_board.core.clock import Clock, local_now
from dispatch_board.core.config import settings
from dispatch_board.core.exceptions import (
    ApprovalRequestNotFoundException,
    AuthorizationException,
    ValidationException,
)
from dispatch_board.models.actor import Actor, Capability
from dispatch_board.models.approval import ApprovalRequest, ApprovalStatus
from dispatch_board.models.audit import AlertSeverity, AlertType, SystemAlert
from dispatch_board.stores.interfaces import AlertSink

logger = logging.getLogger(__name__)


def generate_code() -> str:
    """Random 4-digit code, leading zeros kept."""
    return f"{secrets.randbelow(10000):04d}"


def override_request_alert(request: ApprovalRequest, actor: Actor) -> SystemAlert:
    """Alert asking management to approve ``request``."""
    return SystemAlert(
        alert_type=AlertType.CREDIT_OVERRIDE_REQUEST,
        severity=AlertSeverity.WARNING,
        title="Credit override requested",
        message=(
            f"{actor.display_name or actor.id} requests a credit override "
            f"for {request.client_name or request.client_id} "
            f"(balance {request.balance}, limit {request.credit_limit})"
        ),
        reference_id=request.id,
        recipient_role="ceo",
    )


async def notify_approver(
    alerts: Optional[AlertSink],
    request: ApprovalRequest,
    actor: Actor,
) -> None:
    if alerts is None:
        return
    try:
        await alerts.raise_alert(override_request_alert(request, actor))
    except Exception as e:
        logger.warning(f"Approval alert for {request.id} lost: {e}")


class InMemoryApprovalService:
    """
    Approval requests held in process memory.

    Good for a single API worker; requests are lost on restart, which only
    means the operator asks again.
    """

    def __init__(
        self,
        alerts: Optional[AlertSink] = None,
        clock: Clock = local_now,
        ttl_minutes: Optional[int] = None,
        max_attempts: Optional[int] = None,
    ):
        self.alerts = alerts
        self.clock = clock
        self.ttl = timedelta(
            minutes=settings.APPROVAL_CODE_TTL_MINUTES if ttl_minutes is None else ttl_minutes
        )
        self.max_attempts = settings.APPROVAL_MAX_ATTEMPTS if max_attempts is None else max_attempts
        self._requests: dict[str, ApprovalRequest] = {}
        self._lock = asyncio.Lock()

    async def request(
        self,
        record_id: str,
        client_id: str,
        actor: Actor,
        context: Optional[dict[str, Any]] = None,
    ) -> ApprovalRequest:
        """Open a request for ``record_id``, or return the one still open."""
        context = context or {}
        async with self._lock:
            self._prune()
            for existing in self._requests.values():
                self._expire(existing)
                if existing.record_id == record_id and existing.is_open:
                    return existing

            request = ApprovalRequest(
                record_id=record_id,
                client_id=client_id,
                requested_by=actor.id,
                client_name=context.get("client_name"),
                balance=context.get("balance"),
                credit_limit=context.get("credit_limit"),
                created_at=self.clock(),
            )
            self._requests[request.id] = request

        logger.info(f"Override requested for {record_id} by {actor.id} (request {request.id})")

        await notify_approver(self.alerts, request, actor)

        return request

    async def approve(self, request_id: str, approver: Actor) -> str:
        """
        Issue the code for a pending request.

        Raises:
            ApprovalRequestNotFoundException: Unknown request
            AuthorizationException: Approver may not approve overrides
            ValidationException: Request is no longer pending
        """
        if not approver.can(Capability.APPROVE_OVERRIDES):
            raise AuthorizationException(
                message="Only management can approve credit overrides",
                details={"role": approver.role.value},
            )

        async with self._lock:
            request = self._get(request_id)
            self._expire(request)
            if request.status is not ApprovalStatus.PENDING:
                raise ValidationException(
                    message=f"Approval request is {request.status.value}",
                    details={"request_id": request_id, "status": request.status.value},
                )

            request.code = generate_code()
            request.status = ApprovalStatus.APPROVED
            request.approved_by = approver.id
            request.expires_at = self.clock() + self.ttl

        logger.info(f"Override {request_id} approved by {approver.id}")
        return request.code

    async def consume(self, request_id: str, code: str, record_id: str) -> bool:
        """Accept ``code`` once for ``record_id``; wrong codes count towards the lock."""
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None:
                return False

            if request.record_id != record_id:
                logger.warning(
                    f"Override {request_id} was issued for {request.record_id}, not {record_id}"
                )
                return False

            self._expire(request)
            if request.status is not ApprovalStatus.APPROVED:
                return False

            if not secrets.compare_digest(str(code).strip(), request.code or ""):
                request.attempts += 1
                if request.attempts >= self.max_attempts:
                    request.status = ApprovalStatus.LOCKED
                    logger.warning(f"Override {request_id} locked after {request.attempts} wrong codes")
                return False

            request.status = ApprovalStatus.USED

        logger.info(f"Override {request_id} used for {request.record_id}")
        return True

    async def release(self, request_id: str) -> None:
        async with self._lock:
            request = self._requests.get(request_id)
            if request is None or request.status is not ApprovalStatus.USED:
                return
            request.status = ApprovalStatus.APPROVED
            self._expire(request)
        logger.info(f"Override {request_id} released for {request.record_id}")

    async def get(self, request_id: str) -> Optional[ApprovalRequest]:
        request = self._requests.get(request_id)
        if request is not None:
            self._expire(request)
        return request

    def _get(self, request_id: str) -> ApprovalRequest:
        request = self._requests.get(request_id)
        if request is None:
            raise ApprovalRequestNotFoundException(request_id)
        return request

    def _expire(self, request: ApprovalRequest) -> None:
        if (
            request.status is ApprovalStatus.APPROVED
            and request.expires_at is not None
            and self.clock() >= request.expires_at
        ):
            request.status = ApprovalStatus.EXPIRED

    def _prune(self) -> None:
        """Forget closed requests older than the code lifetime."""
        now = self.clock()
        stale = []
        for request_id, request in self._requests.items():
            self._expire(request)
            if (
                not request.is_open
                and request.created_at is not None
                and now - request.created_at >= self.ttl
            ):
                stale.append(request_id)
        for request_id in stale:
            del self._requests[request_id]
