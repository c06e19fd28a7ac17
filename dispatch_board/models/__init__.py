"""
Domain models.
"""
from dispatch_board.models.actor import Actor, Capability, UserRole
from dispatch_board.models.approval import ApprovalRequest, ApprovalStatus, OverrideToken
from dispatch_board.models.audit import (
    AlertSeverity,
    AlertType,
    AuditAction,
    AuditEntry,
    SystemAlert,
)
from dispatch_board.models.change import ChangeKind, ChangeNotification
from dispatch_board.models.client import ClientCreditSnapshot, CreditStatus
from dispatch_board.models.delivery import DeliveryRecord, WorkflowState
from dispatch_board.models.purchase_order import PurchaseOrder, PurchaseOrderStatus
from dispatch_board.models.truck import TruckRecord, TruckStatus

__all__ = [
    "Actor",
    "Capability",
    "UserRole",
    "ApprovalRequest",
    "ApprovalStatus",
    "OverrideToken",
    "AlertSeverity",
    "AlertType",
    "AuditAction",
    "AuditEntry",
    "SystemAlert",
    "ChangeKind",
    "ChangeNotification",
    "ClientCreditSnapshot",
    "CreditStatus",
    "DeliveryRecord",
    "WorkflowState",
    "PurchaseOrder",
    "PurchaseOrderStatus",
    "TruckRecord",
    "TruckStatus",
]
