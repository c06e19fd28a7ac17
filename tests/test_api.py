"""
API endpoint tests against in-memory stores.
"""
from datetime import time

import pytest
import pytest_asyncio
from conftest import BOARD_DATE, make_credit, make_record, make_truck
from fastapi.testclient import TestClient
from httpx import ASGITransport, AsyncClient
from starlette.websockets import WebSocketDisconnect

from dispatch_board.main import Components, create_app
from dispatch_board.models.delivery import WorkflowState
from dispatch_board.services.approval import InMemoryApprovalService
from dispatch_board.services.realtime.change_feed import InMemoryChangeFeed
from dispatch_board.stores.memory import (
    InMemoryAlertSink,
    InMemoryAuditSink,
    InMemoryClientStore,
    InMemoryDeliveryStore,
    InMemoryPurchaseOrderStore,
    InMemoryTruckStore,
)

BOARD_URL = f"/api/v1/dispatch/board/{BOARD_DATE.isoformat()}"
CONFIRM_PENDING_URL = f"{BOARD_URL}/confirm-pending"
DELIVERIES_URL = "/api/v1/dispatch/deliveries"

OPERATOR = {"X-Actor-Id": "u-central", "X-Actor-Role": "centraliste"}
AUDITOR = {"X-Actor-Id": "u-audit", "X-Actor-Role": "auditeur"}
CEO = {"X-Actor-Id": "u-ceo", "X-Actor-Role": "ceo"}
OPS_DIRECTOR = {"X-Actor-Id": "u-ops", "X-Actor-Role": "directeur_operationnel"}
TECHNICIAN = {"X-Actor-Id": "u-tech", "X-Actor-Role": "resp_technique"}

NIGHT_PROOF_JUSTIFICATION = "Coulage dalle urgent, client sur site"


@pytest.fixture
def components():
    alerts = InMemoryAlertSink()
    return Components(
        deliveries=InMemoryDeliveryStore(
            [
                make_record(id="BL-001", state=WorkflowState.PENDING_VALIDATION),
                make_record(
                    id="BL-002",
                    client_id="CLI-RED",
                    client_name="Over Limit",
                    state=WorkflowState.PENDING_VALIDATION,
                    scheduled_time=time(11, 0),
                ),
                make_record(
                    id="BL-003",
                    client_id="CLI-RED",
                    client_name="Over Limit",
                    truck_id="T-01",
                    scheduled_time=time(13, 0),
                ),
                make_record(id="BL-004", scheduled_time=time(15, 0)),
            ]
        ),
        trucks=InMemoryTruckStore([make_truck("T-01"), make_truck("T-02")]),
        clients=InMemoryClientStore(
            [
                make_credit("CLI-1"),
                make_credit("CLI-RED", balance="60000", limit="50000", client_name="Over Limit"),
            ]
        ),
        purchase_orders=InMemoryPurchaseOrderStore(),
        audit=InMemoryAuditSink(),
        alerts=alerts,
        approvals=InMemoryApprovalService(alerts=alerts),
        feed=InMemoryChangeFeed(),
    )


@pytest_asyncio.fixture
async def client(components):
    """Client bound to an app running its lifespan."""
    app = create_app(components)
    async with app.router.lifespan_context(app):
        async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
            yield ac


class TestHealthEndpoints:
    """Tests for health check endpoints."""

    @pytest.mark.asyncio
    async def test_health_check(self, client: AsyncClient):
        response = await client.get("/api/v1/health")
        assert response.status_code == 200
        assert response.json()["status"] == "healthy"

    @pytest.mark.asyncio
    async def test_detailed_health_lists_boards(self, client: AsyncClient):
        await client.get(BOARD_URL, headers=OPERATOR)

        response = await client.get("/api/v1/health/detailed")

        data = response.json()
        assert data["status"] == "healthy"
        assert data["checks"]["backend"] == "healthy"
        assert data["boards"] == ["2024-03-01"]


class TestBoardEndpoints:
    """Tests for board reads."""

    @pytest.mark.asyncio
    async def test_requires_actor(self, client: AsyncClient):
        response = await client.get(BOARD_URL)

        assert response.status_code == 401
        assert response.json()["error"]["code"] == "AUTHENTICATION_FAILED"

    @pytest.mark.asyncio
    async def test_unknown_role(self, client: AsyncClient):
        response = await client.get(
            BOARD_URL, headers={"X-Actor-Id": "u-x", "X-Actor-Role": "janitor"}
        )
        assert response.status_code == 401

    @pytest.mark.asyncio
    async def test_get_board(self, client: AsyncClient):
        response = await client.get(BOARD_URL, headers=OPERATOR)

        assert response.status_code == 200
        data = response.json()
        assert data["board_date"] == "2024-03-01"
        assert data["stale"] is False
        assert [d["id"] for d in data["deliveries"]] == ["BL-001", "BL-002", "BL-003", "BL-004"]
        assert data["credit_statuses"]["CLI-RED"] == "red"
        assert data["deliveries"][0]["scheduled_time"] == "09:00"
        assert data["counts"]["pending_validation"] == 2
        assert data["categories"]["to_produce"] == ["BL-003", "BL-004"]

    @pytest.mark.asyncio
    async def test_refresh(self, client: AsyncClient):
        first = (await client.get(BOARD_URL, headers=OPERATOR)).json()

        response = await client.post(f"{BOARD_URL}/refresh", headers=OPERATOR)

        assert response.status_code == 200
        assert response.json()["sequence"] > first["sequence"]

    @pytest.mark.asyncio
    async def test_invalid_date(self, client: AsyncClient):
        response = await client.get("/api/v1/dispatch/board/not-a-date", headers=OPERATOR)
        assert response.status_code == 422


class TestWorkflowEndpoints:
    """Tests for workflow actions."""

    @pytest.mark.asyncio
    async def test_confirm(self, client: AsyncClient, components):
        response = await client.post(f"{DELIVERIES_URL}/BL-001/confirm", headers=OPERATOR)

        assert response.status_code == 200
        data = response.json()
        assert data["code"] == "success"
        assert data["ok"] is True
        assert data["details"]["state"] == "planification"
        assert components.deliveries.records["BL-001"].state == WorkflowState.PLANNED

    @pytest.mark.asyncio
    async def test_read_only_role(self, client: AsyncClient, components):
        response = await client.post(f"{DELIVERIES_URL}/BL-001/confirm", headers=AUDITOR)

        assert response.status_code == 403
        assert response.json()["code"] == "permission_denied"
        assert components.deliveries.records["BL-001"].state == WorkflowState.PENDING_VALIDATION

    @pytest.mark.asyncio
    async def test_unknown_record(self, client: AsyncClient):
        response = await client.post(f"{DELIVERIES_URL}/BL-404/confirm", headers=OPERATOR)

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "DELIVERY_NOT_FOUND"

    @pytest.mark.asyncio
    async def test_illegal_transition(self, client: AsyncClient):
        response = await client.post(f"{DELIVERIES_URL}/BL-004/dispatch", headers=TECHNICIAN)

        assert response.status_code == 409
        assert response.json()["code"] == "illegal_transition"

    @pytest.mark.asyncio
    async def test_credit_override_flow(self, client: AsyncClient, components):
        blocked = await client.post(f"{DELIVERIES_URL}/BL-002/confirm", headers=OPERATOR)

        assert blocked.status_code == 409
        body = blocked.json()
        assert body["code"] == "credit_blocked"
        request_id = body["details"]["approval_request_id"]
        assert request_id

        approved = await client.post(f"/api/v1/dispatch/approvals/{request_id}/approve", headers=CEO)
        assert approved.status_code == 200
        code = approved.json()["code"]

        confirmed = await client.post(
            f"{DELIVERIES_URL}/BL-002/confirm",
            headers=OPERATOR,
            json={"approval_request_id": request_id, "approval_code": code},
        )

        assert confirmed.status_code == 200
        assert components.deliveries.records["BL-002"].state == WorkflowState.PLANNED

    @pytest.mark.asyncio
    async def test_only_management_approves(self, client: AsyncClient):
        blocked = (await client.post(f"{DELIVERIES_URL}/BL-002/confirm", headers=OPERATOR)).json()
        request_id = blocked["details"]["approval_request_id"]

        response = await client.post(
            f"/api/v1/dispatch/approvals/{request_id}/approve", headers=OPERATOR
        )

        assert response.status_code == 403
        assert response.json()["error"]["code"] == "PERMISSION_DENIED"

    @pytest.mark.asyncio
    async def test_approve_unknown_request(self, client: AsyncClient):
        response = await client.post("/api/v1/dispatch/approvals/nope/approve", headers=CEO)
        assert response.status_code == 404

    @pytest.mark.asyncio
    async def test_start_production_with_override_code(self, client: AsyncClient, components):
        blocked = await client.post(
            f"{DELIVERIES_URL}/BL-003/start-production",
            headers=OPS_DIRECTOR,
            json={"justification": NIGHT_PROOF_JUSTIFICATION},
        )
        assert blocked.status_code == 409
        request_id = blocked.json()["details"]["approval_request_id"]
        code = (
            await client.post(f"/api/v1/dispatch/approvals/{request_id}/approve", headers=CEO)
        ).json()["code"]

        response = await client.post(
            f"{DELIVERIES_URL}/BL-003/start-production",
            headers=OPS_DIRECTOR,
            json={
                "justification": NIGHT_PROOF_JUSTIFICATION,
                "approval_request_id": request_id,
                "approval_code": code,
            },
        )

        assert response.status_code == 200
        assert components.deliveries.records["BL-003"].state == WorkflowState.LOADING

    @pytest.mark.asyncio
    async def test_malformed_code_rejected_by_schema(self, client: AsyncClient):
        response = await client.post(
            f"{DELIVERIES_URL}/BL-002/confirm",
            headers=OPERATOR,
            json={"approval_request_id": "x", "approval_code": "12ab"},
        )
        assert response.status_code == 422

    @pytest.mark.asyncio
    async def test_start_production_missing_truck(self, client: AsyncClient):
        response = await client.post(
            f"{DELIVERIES_URL}/BL-004/start-production",
            headers=OPS_DIRECTOR,
            json={"justification": NIGHT_PROOF_JUSTIFICATION},
        )

        assert response.status_code == 409
        assert response.json()["code"] == "missing_prerequisite"

    @pytest.mark.asyncio
    async def test_start_production_needs_production_role(self, client: AsyncClient, components):
        response = await client.post(
            f"{DELIVERIES_URL}/BL-004/start-production",
            headers=OPERATOR,
            json={"justification": NIGHT_PROOF_JUSTIFICATION},
        )

        assert response.status_code == 403
        data = response.json()
        assert data["code"] == "permission_denied"
        assert data["details"]["action"] == "start_production"
        assert components.deliveries.records["BL-004"].state == WorkflowState.PLANNED

    @pytest.mark.asyncio
    async def test_set_scheduled_time(self, client: AsyncClient, components):
        response = await client.post(
            f"{DELIVERIES_URL}/BL-004/schedule",
            headers=OPERATOR,
            json={"scheduled_time": "16h30"},
        )

        assert response.status_code == 200
        assert components.deliveries.records["BL-004"].scheduled_time == time(16, 30)

    @pytest.mark.asyncio
    async def test_invalid_time(self, client: AsyncClient):
        response = await client.post(
            f"{DELIVERIES_URL}/BL-004/schedule",
            headers=OPERATOR,
            json={"scheduled_time": "25:99"},
        )

        assert response.status_code == 400
        assert response.json()["code"] == "invalid_time"

    @pytest.mark.asyncio
    async def test_assign_truck(self, client: AsyncClient, components):
        response = await client.post(
            f"{DELIVERIES_URL}/BL-004/truck", headers=OPERATOR, json={"truck_id": "T-02"}
        )

        assert response.status_code == 200
        assert components.deliveries.records["BL-004"].truck_id == "T-02"

    @pytest.mark.asyncio
    async def test_reject(self, client: AsyncClient, components):
        response = await client.post(f"{DELIVERIES_URL}/BL-001/reject", headers=OPERATOR)

        assert response.status_code == 200
        assert response.json()["code"] == "deleted"
        assert "BL-001" not in components.deliveries.records


    @pytest.mark.asyncio
    async def test_cancel(self, client: AsyncClient, components):
        response = await client.post(f"{DELIVERIES_URL}/BL-004/cancel", headers=CEO)

        assert response.status_code == 200
        assert response.json()["details"]["state"] == "annule"
        record = components.deliveries.records["BL-004"]
        assert record.state == WorkflowState.CANCELLED
        assert record.cancelled_by == "u-ceo"

    @pytest.mark.asyncio
    async def test_cancel_ceo_only(self, client: AsyncClient, components):
        response = await client.post(f"{DELIVERIES_URL}/BL-004/cancel", headers=OPS_DIRECTOR)

        assert response.status_code == 403
        assert components.deliveries.records["BL-004"].state == WorkflowState.PLANNED

    @pytest.mark.asyncio
    async def test_confirm_all_pending(self, client: AsyncClient, components):
        response = await client.post(CONFIRM_PENDING_URL, headers=OPERATOR)

        assert response.status_code == 200
        data = response.json()
        assert data["applied"] == 1
        assert data["blocked"] == 1
        codes = {r["record_id"]: r["code"] for r in data["results"]}
        assert codes == {"BL-001": "success", "BL-002": "credit_blocked"}
        assert data["board_sequence"] is not None
        assert components.deliveries.records["BL-001"].state == WorkflowState.PLANNED
        assert components.deliveries.records["BL-002"].state == WorkflowState.PENDING_VALIDATION

    @pytest.mark.asyncio
    async def test_confirm_all_pending_read_only(self, client: AsyncClient, components):
        response = await client.post(CONFIRM_PENDING_URL, headers=AUDITOR)

        assert response.status_code == 200
        assert response.json()["applied"] == 0
        assert components.deliveries.records["BL-001"].state == WorkflowState.PENDING_VALIDATION

class TestTruckSuggestions:
    """Tests for truck suggestions."""

    @pytest.mark.asyncio
    async def test_suggestions(self, client: AsyncClient):
        response = await client.get("/api/v1/dispatch/trucks/suggestions/BL-004", headers=OPERATOR)

        assert response.status_code == 200
        suggestions = response.json()
        assert {s["truck"]["id"] for s in suggestions} <= {"T-01", "T-02"}
        assert suggestions[0]["score"] >= suggestions[-1]["score"]


class TestBoardWebSocket:
    """Tests for the live board WebSocket."""

    def test_snapshot_on_connect_and_ping(self, components):
        app = create_app(components)
        with TestClient(app) as test_client:
            url = f"{BOARD_URL}/ws?actor_id=u-central&role=centraliste"
            with test_client.websocket_connect(url) as websocket:
                message = websocket.receive_json()
                assert message["type"] == "board"
                assert message["board"]["board_date"] == "2024-03-01"

                websocket.send_json({"type": "ping"})
                assert websocket.receive_json()["type"] == "pong"
                assert app.state.registry._watchers[BOARD_DATE] == 1

    def test_rejects_missing_actor(self, components):
        app = create_app(components)
        with TestClient(app) as test_client:
            with pytest.raises(WebSocketDisconnect):
                with test_client.websocket_connect(f"{BOARD_URL}/ws") as websocket:
                    websocket.receive_json()
