"""
In-memory stores for tests and local runs.

Each store keeps its rows in a dict and follows the same error contract as
the hosted backend client. ``fail_reads`` / ``fail_writes`` make a store
behave like an unreachable backend.
"""
import logging
from dataclasses import fields, replace
from datetime import date
from decimal import Decimal
from typing import Any, Iterable, Optional

from dispatch_board.core.exceptions import DataUnavailableException, StoreWriteException
from dispatch_board.models.audit import AuditEntry, SystemAlert
from dispatch_board.models.client import ClientCreditSnapshot
from dispatch_board.models.delivery import DeliveryRecord
from dispatch_board.models.purchase_order import PurchaseOrder
from dispatch_board.models.truck import TruckRecord
from dispatch_board.services.credit_gate import default_snapshot

logger = logging.getLogger(__name__)


class _FailureSwitch:
    fail_reads: bool = False
    fail_writes: bool = False

    def _check_read(self, what: str) -> None:
        if self.fail_reads:
            raise DataUnavailableException(message=f"{what} unavailable")

    def _check_write(self, what: str) -> None:
        if self.fail_writes:
            raise StoreWriteException(message=f"{what} write refused")


class InMemoryDeliveryStore(_FailureSwitch):
    """Deliveries keyed by id."""

    def __init__(self, records: Iterable[DeliveryRecord] = ()):
        self.records: dict[str, DeliveryRecord] = {r.id: r for r in records}
        self._fields = {f.name for f in fields(DeliveryRecord)}

    async def list_by_date(self, day: date) -> list[DeliveryRecord]:
        self._check_read("deliveries")
        return sorted(
            (r for r in self.records.values() if r.delivery_date == day),
            key=lambda r: (r.scheduled_time is None, r.scheduled_time, r.id),
        )

    async def get(self, record_id: str) -> Optional[DeliveryRecord]:
        self._check_read("deliveries")
        return self.records.get(record_id)

    async def update(self, record_id: str, patch: dict[str, Any]) -> DeliveryRecord:
        self._check_write("delivery")
        record = self.records.get(record_id)
        if record is None:
            raise StoreWriteException(
                message=f"Delivery '{record_id}' no longer exists",
                details={"record_id": record_id},
            )
        unknown = set(patch) - self._fields
        if unknown:
            raise StoreWriteException(message=f"Unknown delivery fields: {sorted(unknown)}")

        updated = record.with_changes(**patch)
        self.records[record_id] = updated
        return updated

    async def delete(self, record_id: str) -> None:
        self._check_write("delivery")
        self.records.pop(record_id, None)

    async def create(self, record: DeliveryRecord) -> DeliveryRecord:
        self._check_write("delivery")
        self.records[record.id] = record
        return record


class InMemoryTruckStore(_FailureSwitch):
    def __init__(self, trucks: Iterable[TruckRecord] = ()):
        self.trucks: dict[str, TruckRecord] = {t.id: t for t in trucks}

    async def list(self) -> list[TruckRecord]:
        self._check_read("trucks")
        return sorted(self.trucks.values(), key=lambda t: t.id)


class InMemoryClientStore(_FailureSwitch):
    """Credit snapshots; unknown clients get the default standing."""

    def __init__(self, snapshots: Iterable[ClientCreditSnapshot] = ()):
        self.snapshots: dict[str, ClientCreditSnapshot] = {s.client_id: s for s in snapshots}

    async def get_credit_snapshots(
        self, client_ids: Iterable[str]
    ) -> dict[str, ClientCreditSnapshot]:
        self._check_read("clients")
        return {
            client_id: self.snapshots.get(client_id) or default_snapshot(client_id)
            for client_id in set(client_ids)
        }

    async def has_overdue_invoice(self, client_id: str) -> bool:
        self._check_read("invoices")
        snapshot = self.snapshots.get(client_id)
        return bool(snapshot and snapshot.has_overdue_invoice)


class InMemoryPurchaseOrderStore(_FailureSwitch):
    def __init__(self, orders: Iterable[PurchaseOrder] = ()):
        self.orders: dict[str, PurchaseOrder] = {o.id: o for o in orders}

    async def get(self, po_id: str) -> Optional[PurchaseOrder]:
        self._check_read("purchase orders")
        return self.orders.get(po_id)

    async def update(self, po_id: str, patch: dict[str, Any]) -> PurchaseOrder:
        self._check_write("purchase order")
        order = self.orders.get(po_id)
        if order is None:
            raise StoreWriteException(message=f"Purchase order '{po_id}' not found")

        # remaining volume is derived on the model
        changes = {k: v for k, v in patch.items() if k != "remaining_volume_m3"}
        if "delivered_volume_m3" in changes:
            changes["delivered_volume_m3"] = Decimal(str(changes["delivered_volume_m3"]))

        updated = replace(order, **changes)
        self.orders[po_id] = updated
        return updated


class InMemoryAuditSink(_FailureSwitch):
    def __init__(self):
        self.entries: list[AuditEntry] = []

    async def record(self, entry: AuditEntry) -> None:
        self._check_write("audit log")
        self.entries.append(entry)


class InMemoryAlertSink(_FailureSwitch):
    def __init__(self):
        self.alerts: list[SystemAlert] = []

    async def raise_alert(self, alert: SystemAlert) -> None:
        self._check_write("alerts")
        logger.info(f"[{alert.severity.value}] {alert.alert_type}: {alert.message}")
        self.alerts.append(alert)
