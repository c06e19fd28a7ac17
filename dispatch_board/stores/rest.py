"""
Hosted backend client (PostgREST dialect).

The ERP keeps its tables in a hosted Postgres exposed through PostgREST:
- bons_livraison_reels: delivery records
- flotte: trucks
- clients / factures: credit standing
- bons_commande: purchase orders
- audit_logs / alertes_systeme: audit trail and war-room alerts
- ceo_emergency_codes: credit override approvals

Transport or HTTP errors on reads raise DataUnavailableException; on writes
StoreWriteException.
"""
import logging
import secrets
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Any, Iterable, Optional

import httpx

from dispatch_board.core.clock import Clock, local_now
from dispatch_board.core.config import settings
from dispatch_board.core.exceptions import (
    ApprovalRequestNotFoundException,
    AuthorizationException,
    DataUnavailableException,
    MalformedRecordException,
    StoreWriteException,
    ValidationException,
)
from dispatch_board.core.metrics import track_external_request
from dispatch_board.models.actor import Actor, Capability
from dispatch_board.models.approval import ApprovalRequest, ApprovalStatus
from dispatch_board.models.audit import AuditEntry, SystemAlert
from dispatch_board.models.client import ClientCreditSnapshot
from dispatch_board.models.delivery import DeliveryRecord, patch_to_row, record_to_row
from dispatch_board.models.purchase_order import PurchaseOrder, purchase_order_patch_to_row
from dispatch_board.models.truck import TruckRecord
from dispatch_board.services.approval import generate_code, notify_approver
from dispatch_board.services.credit_gate import default_snapshot, has_overdue_invoice
from dispatch_board.stores.interfaces import AlertSink

logger = logging.getLogger(__name__)

UNPAID_INVOICE_STATUSES = ("emise", "envoyee", "retard")


def _in(values: Iterable[str]) -> str:
    """PostgREST ``in`` filter value."""
    return "in.(" + ",".join(f'"{v}"' for v in values) + ")"


class BackendClient:
    """
    Thin async client for the PostgREST endpoint.

    A single ``httpx.AsyncClient`` is shared by all stores; pass one in to
    plug a custom transport.
    """

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        timeout: Optional[float] = None,
        client: Optional[httpx.AsyncClient] = None,
    ):
        self.base_url = (base_url or settings.BACKEND_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.BACKEND_API_KEY
        self.timeout = httpx.Timeout(timeout or settings.BACKEND_TIMEOUT_SECONDS, connect=5.0)
        self._client = client

    def _get_headers(self) -> dict[str, str]:
        """Get request headers with authentication."""
        return {
            "apikey": self.api_key,
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
            "Accept": "application/json",
        }

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(base_url=self.base_url, timeout=self.timeout)
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    async def _request(
        self,
        method: str,
        table: str,
        params: Optional[dict] = None,
        data: Optional[Any] = None,
        prefer: Optional[str] = None,
    ) -> Any:
        """Make API request; returns decoded JSON or None for empty bodies."""
        headers = self._get_headers()
        if prefer:
            headers["Prefer"] = prefer

        response = await self._get_client().request(
            method=method,
            url=f"{self.base_url}/{table}",
            headers=headers,
            json=data,
            params=params,
        )
        response.raise_for_status()
        if not response.content:
            return None
        return response.json()

    async def health_check(self) -> bool:
        """Check if the backend answers."""
        try:
            await self._request("GET", "flotte", params={"select": "id", "limit": "1"})
            return True
        except httpx.HTTPError:
            return False

    async def select(self, table: str, params: dict) -> list[dict]:
        try:
            return await self._request("GET", table, params=params) or []
        except httpx.HTTPError as e:
            logger.warning(f"Backend read from {table} failed: {e}")
            raise DataUnavailableException(
                message=f"Could not read {table}",
                details={"table": table, "error": str(e)},
            )

    async def write(
        self,
        method: str,
        table: str,
        params: Optional[dict] = None,
        data: Optional[Any] = None,
    ) -> list[dict]:
        try:
            return await self._request(
                method, table, params=params, data=data, prefer="return=representation"
            ) or []
        except httpx.HTTPError as e:
            logger.warning(f"Backend {method} on {table} failed: {e}")
            raise StoreWriteException(
                message=f"Could not write {table}",
                details={"table": table, "error": str(e)},
            )


class RestDeliveryStore:
    table = "bons_livraison_reels"
    select_columns = "*,clients(nom_client)"

    def __init__(self, backend: BackendClient):
        self.backend = backend

    @track_external_request("backend", "list_deliveries")
    async def list_by_date(self, day: date) -> list[DeliveryRecord]:
        rows = await self.backend.select(
            self.table,
            {
                "select": self.select_columns,
                "date_livraison": f"eq.{day.isoformat()}",
                "order": "heure_prevue.asc.nullslast",
            },
        )
        return [DeliveryRecord.from_row(row) for row in rows]

    @track_external_request("backend", "get_delivery")
    async def get(self, record_id: str) -> Optional[DeliveryRecord]:
        rows = await self.backend.select(
            self.table,
            {"select": self.select_columns, "bl_id": f"eq.{record_id}"},
        )
        return DeliveryRecord.from_row(rows[0]) if rows else None

    @track_external_request("backend", "update_delivery")
    async def update(self, record_id: str, patch: dict[str, Any]) -> DeliveryRecord:
        rows = await self.backend.write(
            "PATCH",
            self.table,
            params={"bl_id": f"eq.{record_id}", "select": self.select_columns},
            data=patch_to_row(patch),
        )
        if not rows:
            raise StoreWriteException(
                message=f"Delivery '{record_id}' no longer exists",
                details={"record_id": record_id},
            )
        return DeliveryRecord.from_row(rows[0])

    @track_external_request("backend", "delete_delivery")
    async def delete(self, record_id: str) -> None:
        await self.backend.write("DELETE", self.table, params={"bl_id": f"eq.{record_id}"})

    @track_external_request("backend", "create_delivery")
    async def create(self, record: DeliveryRecord) -> DeliveryRecord:
        rows = await self.backend.write(
            "POST",
            self.table,
            params={"select": self.select_columns},
            data=record_to_row(record),
        )
        return DeliveryRecord.from_row(rows[0]) if rows else record


class RestTruckStore:
    table = "flotte"

    def __init__(self, backend: BackendClient):
        self.backend = backend

    @track_external_request("backend", "list_trucks")
    async def list(self) -> list[TruckRecord]:
        rows = await self.backend.select(
            self.table,
            {
                "select": "id_camion,immatriculation,chauffeur,telephone_chauffeur,statut,capacite_m3",
                "type": "eq.Toupie",
                "order": "id_camion.asc",
            },
        )
        return [TruckRecord.from_row(row) for row in rows]


class RestClientStore:
    """Credit standing from ``clients`` plus unpaid ``factures``."""

    def __init__(self, backend: BackendClient, clock: Clock = local_now):
        self.backend = backend
        self.clock = clock

    @track_external_request("backend", "credit_snapshots")
    async def get_credit_snapshots(
        self, client_ids: Iterable[str]
    ) -> dict[str, ClientCreditSnapshot]:
        ids = sorted({c for c in client_ids if c})
        if not ids:
            return {}

        rows = await self.backend.select(
            "clients",
            {
                "select": "client_id,nom_client,solde_du,limite_credit_dh,credit_bloque",
                "client_id": _in(ids),
            },
        )
        overdue = await self._clients_with_overdue_invoices(ids)

        snapshots = {client_id: default_snapshot(client_id) for client_id in ids}
        for row in rows:
            client_id = row.get("client_id")
            try:
                balance = Decimal(str(row.get("solde_du") or 0))
                limit_value = row.get("limite_credit_dh")
                limit = (
                    Decimal(str(limit_value))
                    if limit_value is not None
                    else Decimal(str(settings.DEFAULT_CREDIT_LIMIT))
                )
            except ArithmeticError as e:
                raise MalformedRecordException("client", client_id, str(e))

            snapshots[client_id] = ClientCreditSnapshot(
                client_id=client_id,
                client_name=row.get("nom_client"),
                balance=balance,
                credit_limit=limit,
                hard_blocked=bool(row.get("credit_bloque")),
                has_overdue_invoice=client_id in overdue,
            )
        return snapshots

    async def has_overdue_invoice(self, client_id: str) -> bool:
        return client_id in await self._clients_with_overdue_invoices([client_id])

    async def _clients_with_overdue_invoices(self, client_ids: list[str]) -> set[str]:
        rows = await self.backend.select(
            "factures",
            {
                "select": "client_id,date_facture",
                "client_id": _in(client_ids),
                "statut": _in(UNPAID_INVOICE_STATUSES),
            },
        )
        today = self.clock().date()
        dates: dict[str, list[date]] = {}
        for row in rows:
            if row.get("date_facture"):
                dates.setdefault(row["client_id"], []).append(
                    date.fromisoformat(str(row["date_facture"])[:10])
                )
        return {c for c, issued in dates.items() if has_overdue_invoice(issued, today)}


class RestPurchaseOrderStore:
    table = "bons_commande"
    select_columns = "bc_id,volume_m3,volume_livre,nb_livraisons,statut"

    def __init__(self, backend: BackendClient):
        self.backend = backend

    @track_external_request("backend", "get_purchase_order")
    async def get(self, po_id: str) -> Optional[PurchaseOrder]:
        rows = await self.backend.select(
            self.table, {"select": self.select_columns, "bc_id": f"eq.{po_id}"}
        )
        return PurchaseOrder.from_row(rows[0]) if rows else None

    @track_external_request("backend", "update_purchase_order")
    async def update(self, po_id: str, patch: dict[str, Any]) -> PurchaseOrder:
        rows = await self.backend.write(
            "PATCH",
            self.table,
            params={"bc_id": f"eq.{po_id}", "select": self.select_columns},
            data=purchase_order_patch_to_row(patch),
        )
        if not rows:
            raise StoreWriteException(message=f"Purchase order '{po_id}' not found")
        return PurchaseOrder.from_row(rows[0])


class RestAuditSink:
    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def record(self, entry: AuditEntry) -> None:
        await self.backend.write(
            "POST",
            "audit_logs",
            data={
                "action_type": entry.action.value,
                "table_name": RestDeliveryStore.table,
                "record_id": entry.record_id,
                "user_id": entry.actor_id,
                "description": f"{entry.action.value} on {entry.record_id}",
                "new_data": entry.details,
                "created_at": entry.occurred_at.isoformat(),
            },
        )


class RestAlertSink:
    def __init__(self, backend: BackendClient):
        self.backend = backend

    async def raise_alert(self, alert: SystemAlert) -> None:
        await self.backend.write(
            "POST",
            "alertes_systeme",
            data={
                "type_alerte": alert.alert_type,
                "niveau": alert.severity.value,
                "titre": alert.title or alert.alert_type,
                "message": alert.message,
                "reference_id": alert.reference_id,
                "reference_table": RestDeliveryStore.table,
                "destinataire_role": alert.recipient_role,
            },
        )


class RestApprovalService:
    """
    Override approvals persisted in ``ceo_emergency_codes``.

    Rows move pending -> approved -> used; expiry and the wrong-code lock
    are written back so every API worker sees them.
    """

    table = "ceo_emergency_codes"

    def __init__(
        self,
        backend: BackendClient,
        alerts: Optional[AlertSink] = None,
        clock: Clock = local_now,
    ):
        self.backend = backend
        self.alerts = alerts
        self.clock = clock
        self.ttl = timedelta(minutes=settings.APPROVAL_CODE_TTL_MINUTES)
        self.max_attempts = settings.APPROVAL_MAX_ATTEMPTS

    def _from_row(self, row: dict) -> ApprovalRequest:
        expires = row.get("expires_at")
        created = row.get("created_at")
        request = ApprovalRequest(
            id=str(row["id"]),
            record_id=row.get("bl_id"),
            client_id=row.get("client_id"),
            requested_by=row.get("requested_by"),
            status=ApprovalStatus(row.get("status", "pending")),
            code=row.get("code"),
            approved_by=row.get("approved_by"),
            attempts=int(row.get("attempts") or 0),
            expires_at=_parse_ts(expires),
            created_at=_parse_ts(created),
        )
        return request

    async def _set(self, request_id: str, values: dict) -> None:
        await self.backend.write("PATCH", self.table, params={"id": f"eq.{request_id}"}, data=values)

    async def _expire(self, request: ApprovalRequest) -> ApprovalRequest:
        if (
            request.status is ApprovalStatus.APPROVED
            and request.expires_at is not None
            and self.clock() >= request.expires_at
        ):
            request.status = ApprovalStatus.EXPIRED
            await self._set(request.id, {"status": ApprovalStatus.EXPIRED.value})
        return request

    async def get(self, request_id: str) -> Optional[ApprovalRequest]:
        rows = await self.backend.select(self.table, {"select": "*", "id": f"eq.{request_id}"})
        if not rows:
            return None
        return await self._expire(self._from_row(rows[0]))

    async def request(
        self,
        record_id: str,
        client_id: str,
        actor: Actor,
        context: Optional[dict[str, Any]] = None,
    ) -> ApprovalRequest:
        context = context or {}
        rows = await self.backend.select(
            self.table,
            {
                "select": "*",
                "bl_id": f"eq.{record_id}",
                "status": _in((ApprovalStatus.PENDING.value, ApprovalStatus.APPROVED.value)),
            },
        )
        for row in rows:
            existing = await self._expire(self._from_row(row))
            if existing.is_open:
                return existing

        client_name = context.get("client_name") or client_id
        created = await self.backend.write(
            "POST",
            self.table,
            data={
                "bl_id": record_id,
                "client_id": client_id,
                "requested_by": actor.id,
                "reason": f"Credit override for {client_name}",
                "status": ApprovalStatus.PENDING.value,
                "code": "0000",
            },
        )
        if not created:
            raise StoreWriteException(message="Approval request was not created")
        request = self._from_row(created[0])
        request.client_name = context.get("client_name")
        request.balance = context.get("balance")
        request.credit_limit = context.get("credit_limit")
        logger.info(f"Override requested for {record_id} by {actor.id} (request {request.id})")
        await notify_approver(self.alerts, request, actor)
        return request

    async def approve(self, request_id: str, approver: Actor) -> str:
        if not approver.can(Capability.APPROVE_OVERRIDES):
            raise AuthorizationException(
                message="Only management can approve credit overrides",
                details={"role": approver.role.value},
            )
        request = await self.get(request_id)
        if request is None:
            raise ApprovalRequestNotFoundException(request_id)
        if request.status is not ApprovalStatus.PENDING:
            raise ValidationException(
                message=f"Approval request is {request.status.value}",
                details={"request_id": request_id, "status": request.status.value},
            )

        code = generate_code()
        await self._set(
            request_id,
            {
                "status": ApprovalStatus.APPROVED.value,
                "code": code,
                "approved_by": approver.id,
                "expires_at": (self.clock() + self.ttl).isoformat(),
            },
        )
        logger.info(f"Override {request_id} approved by {approver.id}")
        return code

    async def consume(self, request_id: str, code: str, record_id: str) -> bool:
        request = await self.get(request_id)
        if request is None or request.status is not ApprovalStatus.APPROVED:
            return False

        if request.record_id != record_id:
            logger.warning(f"Override {request_id} was issued for {request.record_id}, not {record_id}")
            return False

        code = str(code).strip()
        if not secrets.compare_digest(code, request.code or ""):
            attempts = request.attempts + 1
            values: dict[str, Any] = {"attempts": attempts}
            if attempts >= self.max_attempts:
                values["status"] = ApprovalStatus.LOCKED.value
                logger.warning(f"Override {request_id} locked after {attempts} wrong codes")
            await self._set(request_id, values)
            return False

        # Only the request that still reads approved flips it to used
        rows = await self.backend.write(
            "PATCH",
            self.table,
            params={
                "id": f"eq.{request_id}",
                "bl_id": f"eq.{record_id}",
                "status": f"eq.{ApprovalStatus.APPROVED.value}",
                "code": f"eq.{code}",
            },
            data={"status": ApprovalStatus.USED.value, "used_at": self.clock().isoformat()},
        )
        if not rows:
            logger.info(f"Override {request_id} already used")
            return False

        logger.info(f"Override {request_id} used for {request.record_id}")
        return True

    async def release(self, request_id: str) -> None:
        await self.backend.write(
            "PATCH",
            self.table,
            params={"id": f"eq.{request_id}", "status": f"eq.{ApprovalStatus.USED.value}"},
            data={"status": ApprovalStatus.APPROVED.value, "used_at": None},
        )
        logger.info(f"Override {request_id} released")


def _parse_ts(value: Any) -> Optional[datetime]:
    if not value:
        return None
    return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
