"""
Contracts for the system of record and its side channels.

The dispatch core never talks to a database directly: deliveries, trucks,
clients and purchase orders live in the hosted backend, and these protocols
describe the operations the board needs.

Error contract shared by every store:
- reads that cannot reach the backend raise DataUnavailableException
- writes that are refused or lost raise StoreWriteException
- a missing row is ``None``, not an error
"""
from datetime import date
from typing import Any, Awaitable, Callable, Iterable, Optional, Protocol

from dispatch_board.models.actor import Actor
from dispatch_board.models.approval import ApprovalRequest
from dispatch_board.models.audit import AuditEntry, SystemAlert
from dispatch_board.models.change import ChangeNotification
from dispatch_board.models.client import ClientCreditSnapshot
from dispatch_board.models.delivery import DeliveryRecord
from dispatch_board.models.purchase_order import PurchaseOrder
from dispatch_board.models.truck import TruckRecord


class DeliveryStore(Protocol):
    """Delivery records (bons de livraison)."""

    async def list_by_date(self, day: date) -> list[DeliveryRecord]:
        ...

    async def get(self, record_id: str) -> Optional[DeliveryRecord]:
        ...

    async def update(self, record_id: str, patch: dict[str, Any]) -> DeliveryRecord:
        ...

    async def delete(self, record_id: str) -> None:
        ...

    async def create(self, record: DeliveryRecord) -> DeliveryRecord:
        ...


class TruckStore(Protocol):
    """Mixer-truck registry."""

    async def list(self) -> list[TruckRecord]:
        ...


class ClientStore(Protocol):
    """Client credit standing."""

    async def get_credit_snapshots(
        self, client_ids: Iterable[str]
    ) -> dict[str, ClientCreditSnapshot]:
        ...

    async def has_overdue_invoice(self, client_id: str) -> bool:
        ...


class PurchaseOrderStore(Protocol):
    """Purchase orders (bons de commande) that deliveries draw volume from."""

    async def get(self, po_id: str) -> Optional[PurchaseOrder]:
        ...

    async def update(self, po_id: str, patch: dict[str, Any]) -> PurchaseOrder:
        ...


class AuditSink(Protocol):
    async def record(self, entry: AuditEntry) -> None:
        ...


class AlertSink(Protocol):
    async def raise_alert(self, alert: SystemAlert) -> None:
        ...


class ApprovalTokenService(Protocol):
    """
    One-time override codes issued by an approver.

    ``request`` is idempotent per record while a request is still open.
    ``consume`` accepts a code once, and only for the record the request was
    opened for; wrong codes count towards the lock. ``release`` hands a
    consumed code back when the write it unlocked did not happen.
    """

    async def request(
        self,
        record_id: str,
        client_id: str,
        actor: Actor,
        context: Optional[dict[str, Any]] = None,
    ) -> ApprovalRequest:
        ...

    async def approve(self, request_id: str, approver: Actor) -> str:
        ...

    async def consume(self, request_id: str, code: str, record_id: str) -> bool:
        ...

    async def release(self, request_id: str) -> None:
        ...

    async def get(self, request_id: str) -> Optional[ApprovalRequest]:
        ...


ChangeCallback = Callable[[ChangeNotification], Awaitable[None]]


class Subscription(Protocol):
    async def unsubscribe(self) -> None:
        ...


class ChangeFeed(Protocol):
    """Date-scoped notifications that deliveries changed."""

    async def subscribe(self, day: date, callback: ChangeCallback) -> Subscription:
        ...

    async def publish(self, notification: ChangeNotification) -> None:
        ...
