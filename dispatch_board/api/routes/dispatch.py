"""
Dispatch board routes.

Board reads, workflow actions, override approvals, truck suggestions and
the live board WebSocket.

Blocked actions are not errors: they come back with the outcome code in
the body and a status that tells the client what kind of remediation is
needed (409 for business rules, 400 for bad input, 403 for role).
"""

import asyncio
import logging
from datetime import date, datetime
from typing import Optional

from fastapi import (
    APIRouter,
    Depends,
    Query,
    WebSocket,
    WebSocketDisconnect,
    status,
)
from fastapi.responses import JSONResponse

from dispatch_board.api.deps import actor_from_headers, get_actor, get_approvals, get_registry
from dispatch_board.core.config import settings
from dispatch_board.core.exceptions import (
    AppException,
    DataUnavailableException,
    DeliveryNotFoundException,
)
from dispatch_board.core.sentry import capture_exception
from dispatch_board.models.actor import Actor
from dispatch_board.schemas.actions import (
    ActionResponse,
    ApprovalCodeResponse,
    AssignTruckRequest,
    BulkActionResponse,
    ConfirmRequest,
    ScheduleRequest,
    StartProductionRequest,
    TruckSuggestionResponse,
)
from dispatch_board.schemas.board import BoardResponse
from dispatch_board.services.board import BoardRegistry, DispatchBoardController
from dispatch_board.services.outcomes import ActionResult
from dispatch_board.services.realtime.websocket_manager import board_topic, manager
from dispatch_board.stores.interfaces import ApprovalTokenService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/dispatch", tags=["Dispatch"])

OUTCOME_STATUS = {
    "success": status.HTTP_200_OK,
    "deleted": status.HTTP_200_OK,
    "approval_requested": status.HTTP_200_OK,
    "credit_blocked": status.HTTP_409_CONFLICT,
    "justification_required": status.HTTP_409_CONFLICT,
    "missing_prerequisite": status.HTTP_409_CONFLICT,
    "truck_unavailable": status.HTTP_409_CONFLICT,
    "illegal_transition": status.HTTP_409_CONFLICT,
    "invalid_time": status.HTTP_400_BAD_REQUEST,
    "permission_denied": status.HTTP_403_FORBIDDEN,
    "record_not_found": status.HTTP_404_NOT_FOUND,
    "data_unavailable": status.HTTP_502_BAD_GATEWAY,
    "store_write_failed": status.HTTP_502_BAD_GATEWAY,
    "compensation_failed": status.HTTP_502_BAD_GATEWAY,
}


def _respond(outcome: ActionResult, board: DispatchBoardController) -> JSONResponse:
    sequence = board.snapshot.sequence if board.snapshot is not None else None
    body = ActionResponse.from_outcome(outcome, board_sequence=sequence)
    return JSONResponse(
        status_code=OUTCOME_STATUS.get(outcome.code, status.HTTP_200_OK),
        content=body.model_dump(mode="json"),
    )


async def _board_for(registry: BoardRegistry, record_id: str) -> DispatchBoardController:
    board = await registry.find_record(record_id)
    if board is None:
        raise DeliveryNotFoundException(record_id)
    return board


def _board_body(board: DispatchBoardController) -> BoardResponse:
    if board.snapshot is None:
        raise DataUnavailableException()
    return BoardResponse.from_snapshot(board.snapshot)


# ============================================================
# Board
# ============================================================


@router.get("/board/{board_date}", response_model=BoardResponse)
async def get_board(
    board_date: date,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    """Current snapshot of a day's board (may be stale, see ``stale``)."""
    board = await registry.get(board_date)
    return _board_body(board)


@router.post("/board/{board_date}/refresh", response_model=BoardResponse)
async def refresh_board(
    board_date: date,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    """Force a re-fetch of the day."""
    board = await registry.get(board_date)
    await board.refresh("manual")
    return _board_body(board)


@router.post("/board/{board_date}/confirm-pending", response_model=BulkActionResponse)
async def confirm_all_pending(
    board_date: date,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    """Confirm every delivery waiting for validation; blocked ones are listed."""
    board = await registry.get(board_date)
    if board.snapshot is None:
        raise DataUnavailableException()
    bulk = await board.confirm_all_pending(actor)
    return BulkActionResponse.from_bulk(bulk, board_sequence=board.snapshot.sequence)


# ============================================================
# Workflow actions
# ============================================================


@router.post("/deliveries/{record_id}/confirm")
async def confirm_delivery(
    record_id: str,
    payload: Optional[ConfirmRequest] = None,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    board = await _board_for(registry, record_id)
    token = payload.token() if payload else None
    return _respond(await board.confirm(record_id, actor, token), board)


@router.post("/deliveries/{record_id}/reject")
async def reject_delivery(
    record_id: str,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    board = await _board_for(registry, record_id)
    return _respond(await board.reject(record_id, actor), board)


@router.post("/deliveries/{record_id}/cancel")
async def cancel_delivery(
    record_id: str,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    """Cancel a delivery before it leaves the plant (CEO only)."""
    board = await _board_for(registry, record_id)
    return _respond(await board.cancel(record_id, actor), board)


@router.post("/deliveries/{record_id}/start-production")
async def start_production(
    record_id: str,
    payload: Optional[StartProductionRequest] = None,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    board = await _board_for(registry, record_id)
    justification = payload.justification if payload else None
    token = payload.token() if payload else None
    return _respond(
        await board.start_production(record_id, actor, justification, token),
        board,
    )


@router.post("/deliveries/{record_id}/validate-technical")
async def validate_technical(
    record_id: str,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    board = await _board_for(registry, record_id)
    return _respond(await board.validate_technical(record_id, actor), board)


@router.post("/deliveries/{record_id}/dispatch")
async def dispatch_delivery(
    record_id: str,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    board = await _board_for(registry, record_id)
    return _respond(await board.dispatch(record_id, actor), board)


@router.post("/deliveries/{record_id}/arrival")
async def record_arrival(
    record_id: str,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    board = await _board_for(registry, record_id)
    return _respond(await board.record_arrival(record_id, actor), board)


@router.post("/deliveries/{record_id}/delivered")
async def mark_delivered(
    record_id: str,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    board = await _board_for(registry, record_id)
    return _respond(await board.mark_delivered(record_id, actor), board)


@router.post("/deliveries/{record_id}/truck")
async def assign_truck(
    record_id: str,
    payload: AssignTruckRequest,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    board = await _board_for(registry, record_id)
    return _respond(await board.assign_truck(record_id, actor, payload.truck_id), board)


@router.post("/deliveries/{record_id}/schedule")
async def set_scheduled_time(
    record_id: str,
    payload: ScheduleRequest,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    board = await _board_for(registry, record_id)
    return _respond(
        await board.set_scheduled_time(record_id, actor, payload.scheduled_time),
        board,
    )


@router.post("/deliveries/{record_id}/approval-request")
async def request_approval(
    record_id: str,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    """Ask management for a one-time credit override code."""
    board = await _board_for(registry, record_id)
    return _respond(await board.request_approval(record_id, actor), board)


# ============================================================
# Approvals
# ============================================================


@router.post("/approvals/{request_id}/approve", response_model=ApprovalCodeResponse)
async def approve_override(
    request_id: str,
    actor: Actor = Depends(get_actor),
    approvals: ApprovalTokenService = Depends(get_approvals),
):
    """Issue the override code; management roles only."""
    code = await approvals.approve(request_id, actor)
    request = await approvals.get(request_id)
    return ApprovalCodeResponse(
        request_id=request_id,
        code=code,
        expires_at=request.expires_at if request else None,
    )


# ============================================================
# Trucks
# ============================================================


@router.get(
    "/trucks/suggestions/{record_id}",
    response_model=list[TruckSuggestionResponse],
)
async def truck_suggestions(
    record_id: str,
    actor: Actor = Depends(get_actor),
    registry: BoardRegistry = Depends(get_registry),
):
    """Candidate trucks for a delivery, best first."""
    board = await _board_for(registry, record_id)
    return [
        TruckSuggestionResponse.from_suggestion(s)
        for s in board.suggest_trucks(record_id)
    ]


# ============================================================
# Live board
# ============================================================


@router.websocket("/board/{board_date}/ws")
async def board_websocket(
    websocket: WebSocket,
    board_date: date,
    actor_id: Optional[str] = Query(None),
    role: Optional[str] = Query(None),
):
    """
    Live board for one day.

    Message types (client -> server):
    - ping: Keep-alive
    - refresh: Force a re-fetch

    Message types (server -> client):
    - board: Full board snapshot, sent on connect and after every change
    - pong: Response to ping
    - heartbeat: Sent after WS_HEARTBEAT_INTERVAL seconds of client silence
    """
    try:
        actor = actor_from_headers(
            actor_id or websocket.headers.get("x-actor-id"),
            role or websocket.headers.get("x-actor-role"),
        )
    except AppException as e:
        logger.warning(f"WebSocket rejected: {e.message}")
        await websocket.close(code=status.WS_1008_POLICY_VIOLATION)
        return

    registry: BoardRegistry = websocket.app.state.registry
    board = await registry.get(board_date)
    topic = board_topic(board_date)
    registry.watch(board_date)

    await manager.connect(websocket, topic)
    logger.info(f"WebSocket connected: {actor.id} on {topic}")

    if board.snapshot is not None:
        await websocket.send_json(board_message(board.snapshot))

    try:
        while True:
            try:
                data = await asyncio.wait_for(
                    websocket.receive_json(), timeout=settings.WS_HEARTBEAT_INTERVAL
                )
            except asyncio.TimeoutError:
                await websocket.send_json({"type": "heartbeat", "ts": datetime.utcnow().isoformat()})
                continue
            msg_type = data.get("type")

            if msg_type == "ping":
                await websocket.send_json({"type": "pong", "ts": datetime.utcnow().isoformat()})

            elif msg_type == "refresh":
                await board.refresh("manual")

    except WebSocketDisconnect:
        manager.disconnect(websocket)
        logger.info(f"WebSocket disconnected: {actor.id} from {topic}")
    except Exception as e:
        logger.error(f"WebSocket error for {actor.id}: {e}")
        capture_exception(e, tags={"topic": topic, "actor": actor.id})
        manager.disconnect(websocket)
    finally:
        registry.unwatch(board_date)


def board_message(snapshot) -> dict:
    return {
        "type": "board",
        "board": BoardResponse.from_snapshot(snapshot).model_dump(mode="json"),
    }


async def broadcast_snapshot(snapshot) -> None:
    """Board listener pushing every applied snapshot to its screens."""
    await manager.broadcast(board_message(snapshot), board_topic(snapshot.board_date))
