"""
Client financial standing used by the credit gate.
"""
import enum
from dataclasses import dataclass
from decimal import Decimal
from typing import Optional


class CreditStatus(str, enum.Enum):
    """Dispatch classification of a client."""

    GREEN = "green"
    RED = "red"  # amber / restricted
    BLOCKED = "blocked"


@dataclass(frozen=True)
class ClientCreditSnapshot:
    """Per-client standing, refreshed on every board load."""

    client_id: str
    balance: Decimal
    credit_limit: Decimal
    hard_blocked: bool = False
    has_overdue_invoice: bool = False
    client_name: Optional[str] = None

    @property
    def overrun(self) -> Decimal:
        """Amount above the credit limit (zero when within)."""
        return max(Decimal("0"), self.balance - self.credit_limit)
