"""
Pytest configuration and fixtures.
"""
from datetime import date, datetime, time
from decimal import Decimal
from zoneinfo import ZoneInfo

import pytest

from dispatch_board.models.actor import Actor, UserRole
from dispatch_board.models.client import ClientCreditSnapshot
from dispatch_board.models.delivery import DeliveryRecord, WorkflowState
from dispatch_board.models.purchase_order import PurchaseOrder
from dispatch_board.models.truck import TruckRecord, TruckStatus
from dispatch_board.services.approval import InMemoryApprovalService
from dispatch_board.services.workflow import WorkflowEngine
from dispatch_board.stores.memory import (
    InMemoryAlertSink,
    InMemoryAuditSink,
    InMemoryClientStore,
    InMemoryDeliveryStore,
    InMemoryPurchaseOrderStore,
    InMemoryTruckStore,
)

PLANT_TZ = ZoneInfo("Africa/Casablanca")
BOARD_DATE = date(2024, 3, 1)


class FixedClock:
    """Settable clock for deterministic tests."""

    def __init__(self, now: datetime):
        self.now = now

    def __call__(self) -> datetime:
        return self.now

    def set(self, hour: int, minute: int = 0) -> None:
        self.now = datetime.combine(self.now.date(), time(hour, minute), tzinfo=PLANT_TZ)


def make_record(**overrides) -> DeliveryRecord:
    """Delivery record with sensible defaults."""
    values = {
        "id": "BL-001",
        "client_id": "CLI-1",
        "client_name": "Chantier Atlas",
        "formula_id": "F-B25",
        "volume_m3": Decimal("8"),
        "delivery_date": BOARD_DATE,
        "state": WorkflowState.PLANNED,
        "scheduled_time": time(9, 0),
        "truck_id": None,
        "purchase_order_id": None,
    }
    values.update(overrides)
    return DeliveryRecord(**values)


def make_truck(truck_id: str = "T-01", status: TruckStatus = TruckStatus.AVAILABLE, **kwargs) -> TruckRecord:
    return TruckRecord(id=truck_id, status=status, **kwargs)


def make_credit(
    client_id: str = "CLI-1",
    balance: str = "1000",
    limit: str = "50000",
    **kwargs,
) -> ClientCreditSnapshot:
    return ClientCreditSnapshot(
        client_id=client_id,
        balance=Decimal(balance),
        credit_limit=Decimal(limit),
        **kwargs,
    )


# ============================================================
# Clock
# ============================================================


@pytest.fixture
def clock():
    """Plant clock at 10:00 on the board date."""
    return FixedClock(datetime(2024, 3, 1, 10, 0, tzinfo=PLANT_TZ))


# ============================================================
# Actors
# ============================================================


@pytest.fixture
def frontdesk():
    """Write access plus credit override."""
    return Actor(id="u-front", role=UserRole.FRONTDESK, display_name="Front Desk")


@pytest.fixture
def operator():
    """Batching plant operator: records arrivals, no override."""
    return Actor(id="u-central", role=UserRole.CENTRALISTE, display_name="Centraliste")


@pytest.fixture
def ops_director():
    """Runs production and deliveries."""
    return Actor(id="u-ops", role=UserRole.OPERATIONS_DIRECTOR)


@pytest.fixture
def technician():
    return Actor(id="u-tech", role=UserRole.TECHNICAL_MANAGER)


@pytest.fixture
def auditor():
    return Actor(id="u-audit", role=UserRole.AUDITOR)


@pytest.fixture
def ceo():
    return Actor(id="u-ceo", role=UserRole.CEO, display_name="CEO")


# ============================================================
# Stores
# ============================================================


@pytest.fixture
def delivery_store():
    return InMemoryDeliveryStore()


@pytest.fixture
def truck_store():
    return InMemoryTruckStore(
        [
            make_truck("T-01", driver_name="Said", capacity_m3=Decimal("8")),
            make_truck("T-02", capacity_m3=Decimal("12")),
            make_truck("T-03", status=TruckStatus.MAINTENANCE),
        ]
    )


@pytest.fixture
def client_store():
    return InMemoryClientStore(
        [
            make_credit("CLI-1"),
            make_credit("CLI-RED", balance="60000", limit="50000", client_name="Over Limit"),
            make_credit("CLI-BLK", hard_blocked=True),
        ]
    )


@pytest.fixture
def purchase_order_store():
    return InMemoryPurchaseOrderStore(
        [
            PurchaseOrder(
                id="BC-1",
                volume_m3=Decimal("40"),
                delivered_volume_m3=Decimal("16"),
                delivery_count=2,
                status="en_cours",
            )
        ]
    )


@pytest.fixture
def audit_sink():
    return InMemoryAuditSink()


@pytest.fixture
def alert_sink():
    return InMemoryAlertSink()


@pytest.fixture
def approvals(alert_sink, clock):
    return InMemoryApprovalService(alerts=alert_sink, clock=clock)


@pytest.fixture
def engine(delivery_store, purchase_order_store, audit_sink, alert_sink, approvals, clock):
    return WorkflowEngine(
        deliveries=delivery_store,
        purchase_orders=purchase_order_store,
        audit=audit_sink,
        alerts=alert_sink,
        approvals=approvals,
        clock=clock,
    )
