"""
Purchase order (bon de commande) aggregating deliveries.
"""
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


class PurchaseOrderStatus:
    """Status values the dispatch core writes."""

    READY_FOR_PRODUCTION = "pret_production"


@dataclass(frozen=True)
class PurchaseOrder:
    """Only the fields the reject compensation touches."""

    id: str
    volume_m3: Decimal
    delivered_volume_m3: Decimal = Decimal("0")
    delivery_count: int = 0
    status: Optional[str] = None

    @property
    def remaining_volume_m3(self) -> Decimal:
        return self.volume_m3 - self.delivered_volume_m3

    @classmethod
    def from_row(cls, row: dict) -> "PurchaseOrder":
        return cls(
            id=row.get("bc_id"),
            volume_m3=Decimal(str(row.get("volume_m3") or 0)),
            delivered_volume_m3=Decimal(str(row.get("volume_livre") or 0)),
            delivery_count=int(row.get("nb_livraisons") or 0),
            status=row.get("statut"),
        )


PURCHASE_ORDER_COLUMNS = {
    "delivered_volume_m3": "volume_livre",
    "remaining_volume_m3": "volume_restant",
    "delivery_count": "nb_livraisons",
    "status": "statut",
}


def purchase_order_patch_to_row(patch: dict) -> dict:
    """Translate a purchase-order patch into backend column values."""
    row = {}
    for key, value in patch.items():
        if isinstance(value, Decimal):
            value = float(value)
        row[PURCHASE_ORDER_COLUMNS.get(key, key)] = value
    return row
