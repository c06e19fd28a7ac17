"""
Credit gate: single source of truth for a client's dispatch standing.

Balances move outside this system (payments, new invoices), so statuses are
recomputed from the snapshot of the current board load and never cached
across loads.
"""
from datetime import date, timedelta
from decimal import Decimal
from typing import Iterable, Mapping, Optional

from dispatch_board.core.config import settings
from dispatch_board.models.client import ClientCreditSnapshot, CreditStatus


def evaluate_credit(snapshot: ClientCreditSnapshot) -> CreditStatus:
    """
    Classify a client for dispatch.

    - BLOCKED: hard-block flag set, whatever the balance
    - GREEN: balance within limit and no overdue invoice
    - RED: anything else
    """
    if snapshot.hard_blocked:
        return CreditStatus.BLOCKED
    if snapshot.balance <= snapshot.credit_limit and not snapshot.has_overdue_invoice:
        return CreditStatus.GREEN
    return CreditStatus.RED


def default_snapshot(client_id: str, client_name: Optional[str] = None) -> ClientCreditSnapshot:
    """Standing assumed for a client the credit store knows nothing about."""
    return ClientCreditSnapshot(
        client_id=client_id,
        client_name=client_name,
        balance=Decimal("0"),
        credit_limit=Decimal(str(settings.DEFAULT_CREDIT_LIMIT)),
    )


def credit_statuses(
    snapshots: Mapping[str, ClientCreditSnapshot],
) -> dict[str, CreditStatus]:
    """Evaluate every snapshot of a board load."""
    return {client_id: evaluate_credit(s) for client_id, s in snapshots.items()}


def has_overdue_invoice(
    unpaid_invoice_dates: Iterable[date],
    today: date,
    overdue_days: Optional[int] = None,
) -> bool:
    """
    Whether any unpaid invoice is older than the overdue threshold.

    Args:
        unpaid_invoice_dates: Issue dates of the client's unpaid invoices
        today: Reference day (plant time zone)
        overdue_days: Threshold in days, default OVERDUE_INVOICE_DAYS
    """
    days = settings.OVERDUE_INVOICE_DAYS if overdue_days is None else overdue_days
    cutoff = today - timedelta(days=days)
    return any(issued < cutoff for issued in unpaid_invoice_dates)
