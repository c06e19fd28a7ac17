"""
Fleet truck (toupie) as seen by the dispatch board.
"""
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional

from dispatch_board.core.exceptions import MalformedRecordException


class TruckStatus(str, enum.Enum):
    """Registry status owned by the fleet module."""

    AVAILABLE = "Disponible"
    ON_MISSION = "En Mission"
    MAINTENANCE = "Maintenance"
    OUT_OF_SERVICE = "Hors Service"


@dataclass(frozen=True)
class TruckRecord:
    """Mixer truck with its registry status."""

    id: str
    status: TruckStatus
    plate: Optional[str] = None
    driver_name: Optional[str] = None
    driver_phone: Optional[str] = None
    capacity_m3: Optional[Decimal] = None

    def __repr__(self) -> str:
        return f"<TruckRecord {self.id} ({self.status.value})>"

    @classmethod
    def from_row(cls, row: dict) -> "TruckRecord":
        truck_id = row.get("id_camion")
        try:
            status = TruckStatus(row.get("statut"))
        except ValueError:
            raise MalformedRecordException(
                "truck", truck_id, f"unknown status {row.get('statut')!r}"
            )
        capacity = row.get("capacite_m3")
        return cls(
            id=truck_id,
            status=status,
            plate=row.get("immatriculation"),
            driver_name=row.get("chauffeur"),
            driver_phone=row.get("telephone_chauffeur"),
            capacity_m3=Decimal(str(capacity)) if capacity is not None else None,
        )
