"""
Services module.

Business logic of the dispatch board:
- Credit gate for client standing
- Conflict detector for the day's schedule
- Truck validator and suggestions
- Workflow engine for the delivery lifecycle
- Board controller keeping each day's snapshot fresh
"""
from dispatch_board.services.conflict_detector import SchedulingConflict, detect_conflicts
from dispatch_board.services.credit_gate import evaluate_credit
from dispatch_board.services.truck_validator import suggest_trucks, validate_truck
from dispatch_board.services.workflow import Action, WorkflowEngine

__all__ = [
    "Action",
    "SchedulingConflict",
    "WorkflowEngine",
    "detect_conflicts",
    "evaluate_credit",
    "suggest_trucks",
    "validate_truck",
]
