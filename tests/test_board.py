"""
Tests for the dispatch board controller.

Tests cover:
- categorize buckets and production lookahead
- load_day derivations
- Reconciliation: last-fetch-wins, stale on failure, debounced push,
  changes arriving while a fetch is in flight
- Date switching and change-feed subscriptions
- Board actions, bulk confirm and cancel
- The registry and idle eviction
"""
import asyncio
import logging
from datetime import date, datetime, time, timedelta
from unittest.mock import AsyncMock

import pytest
from conftest import BOARD_DATE, PLANT_TZ, make_record

from dispatch_board.core.exceptions import MalformedRecordException
from dispatch_board.models.change import ChangeKind, ChangeNotification
from dispatch_board.models.client import CreditStatus
from dispatch_board.models.delivery import WorkflowState
from dispatch_board.services.board import (
    BoardRegistry,
    DispatchBoardController,
    categorize,
    load_day,
)
from dispatch_board.services.outcomes import (
    ApprovalRequested,
    BulkResult,
    CompensationFailed,
    CreditBlocked,
    DataUnavailable,
    PermissionDenied,
    RecordNotFound,
    Success,
)
from dispatch_board.services.realtime.change_feed import InMemoryChangeFeed
from dispatch_board.stores.memory import InMemoryDeliveryStore

NEXT_DAY = date(2024, 3, 2)


class GatedDeliveryStore(InMemoryDeliveryStore):
    """Delivery store whose reads can be held until a gate opens."""

    def __init__(self, records=()):
        super().__init__(records)
        self.gates: list[asyncio.Event] = []

    async def list_by_date(self, day):
        if self.gates:
            gate = self.gates.pop(0)
            await gate.wait()
        return await super().list_by_date(day)


class LaggingDeliveryStore(GatedDeliveryStore):
    """Reads the rows first, then holds the answer until a gate opens."""

    async def list_by_date(self, day):
        rows = await InMemoryDeliveryStore.list_by_date(self, day)
        if self.gates:
            gate = self.gates.pop(0)
            await gate.wait()
        return rows


class MalformedDeliveryStore(InMemoryDeliveryStore):
    async def list_by_date(self, day):
        raise MalformedRecordException("delivery", "BL-BAD", "unknown workflow status 'x'")


@pytest.fixture
def feed():
    return InMemoryChangeFeed()


@pytest.fixture
def delivery_store():
    return GatedDeliveryStore(
        [
            make_record(id="BL-001", state=WorkflowState.PENDING_VALIDATION),
            make_record(id="BL-002", scheduled_time=time(9, 0), truck_id="T-01"),
            make_record(id="BL-003", scheduled_time=time(9, 10), client_id="CLI-RED"),
            make_record(id="BL-004", state=WorkflowState.DELIVERED, invoice_generated=True),
            make_record(id="BL-100", delivery_date=NEXT_DAY),
        ]
    )


@pytest.fixture
def make_board(delivery_store, truck_store, client_store, engine, feed, clock):
    boards = []

    def _make(**kwargs):
        options = {"feed": feed, "clock": clock, "poll_interval": 3600, "debounce_ms": 20}
        options.update(kwargs)
        board = DispatchBoardController(
            BOARD_DATE, delivery_store, truck_store, client_store, engine, **options
        )
        boards.append(board)
        return board

    yield _make

    for board in boards:
        board._running = False
        for task in [board._poll_task, *board._push_tasks]:
            if task is not None:
                task.cancel()


class TestCategorize:
    """Tests for categorize."""

    NOW = datetime(2024, 3, 1, 10, 0, tzinfo=PLANT_TZ)

    def test_state_buckets(self):
        records = [
            make_record(id="P", state=WorkflowState.PENDING_VALIDATION),
            make_record(id="L", state=WorkflowState.LOADING),
            make_record(id="V", state=WorkflowState.TECHNICAL_VALIDATION),
            make_record(id="E", state=WorkflowState.EN_ROUTE),
            make_record(id="D", state=WorkflowState.DELIVERED),
            make_record(id="I", state=WorkflowState.INVOICED),
        ]

        categories = categorize(records, self.NOW)

        assert [r.id for r in categories.pending_validation] == ["P"]
        assert [r.id for r in categories.loading] == ["L", "V"]
        assert [r.id for r in categories.en_route] == ["E"]
        assert [r.id for r in categories.to_invoice] == ["D"]
        assert [r.id for r in categories.invoiced] == ["I"]

    def test_production_lookahead(self):
        records = [
            make_record(id="late", scheduled_time=time(8, 0)),
            make_record(id="soon", scheduled_time=time(11, 30)),
            make_record(id="edge", scheduled_time=time(12, 0)),
            make_record(id="later", scheduled_time=time(12, 1)),
            make_record(id="untimed", scheduled_time=None),
        ]

        categories = categorize(records, self.NOW)

        assert [r.id for r in categories.to_produce] == ["late", "soon", "edge", "untimed"]
        assert categories.counts()["to_produce"] == 4

    def test_custom_lookahead(self):
        records = [make_record(id="later", scheduled_time=time(13, 0))]
        assert len(categorize(records, self.NOW, lookahead_hours=4).to_produce) == 1


class TestLoadDay:
    """Tests for load_day."""

    @pytest.mark.asyncio
    async def test_derived_fields(self, delivery_store, truck_store, client_store, clock):
        snapshot = await load_day(BOARD_DATE, delivery_store, truck_store, client_store, clock())

        assert [d.id for d in snapshot.deliveries] == ["BL-001", "BL-002", "BL-004", "BL-003"]
        assert snapshot.get("BL-004").state == WorkflowState.INVOICED
        assert snapshot.credit_statuses["CLI-RED"] == CreditStatus.RED
        assert snapshot.credit_statuses["CLI-1"] == CreditStatus.GREEN
        assert snapshot.conflicting_ids == {"BL-002", "BL-003"}
        assert len(snapshot.trucks) == 3
        assert snapshot.total_volume_m3 == 32

    @pytest.mark.asyncio
    async def test_unknown_client_gets_default(self, truck_store, client_store, clock):
        store = InMemoryDeliveryStore([make_record(client_id="CLI-NEW")])

        snapshot = await load_day(BOARD_DATE, store, truck_store, client_store, clock())

        assert snapshot.credit_statuses["CLI-NEW"] == CreditStatus.GREEN


class TestReconciliation:
    """Tests for refresh, staleness and push notifications."""

    @pytest.mark.asyncio
    async def test_refresh_notifies_listeners(self, make_board):
        board = make_board()
        listener = AsyncMock()
        board.add_listener(listener)

        snapshot = await board.refresh()

        assert snapshot.sequence == 1
        assert snapshot.stale is False
        listener.assert_awaited_once_with(snapshot)

    @pytest.mark.asyncio
    async def test_last_fetch_wins(self, make_board, delivery_store):
        board = make_board()
        gate = asyncio.Event()
        delivery_store.gates.append(gate)

        slow = asyncio.create_task(board.refresh("poll"))
        await asyncio.sleep(0)
        fast = await board.refresh("push")
        gate.set()
        result = await slow

        assert fast.sequence == 2
        assert board.snapshot is fast
        assert result is fast

    @pytest.mark.asyncio
    async def test_failed_fetch_keeps_last_snapshot(self, make_board, delivery_store):
        board = make_board()
        good = await board.refresh()
        delivery_store.fail_reads = True

        result = await board.refresh("poll")

        assert result.stale is True
        assert result.error == "deliveries unavailable"
        assert [d.id for d in result.deliveries] == [d.id for d in good.deliveries]

    @pytest.mark.asyncio
    async def test_recovers_after_failure(self, make_board, delivery_store):
        board = make_board()
        delivery_store.fail_reads = True
        first = await board.refresh()
        assert first.stale is True
        assert first.deliveries == []

        delivery_store.fail_reads = False
        second = await board.refresh()

        assert second.stale is False
        assert second.error is None

    @pytest.mark.asyncio
    async def test_malformed_data_raises(self, truck_store, client_store, engine, clock):
        board = DispatchBoardController(
            BOARD_DATE, MalformedDeliveryStore(), truck_store, client_store, engine, clock=clock
        )

        with pytest.raises(MalformedRecordException):
            await board.refresh()

        assert board.snapshot.stale is True
        assert board.snapshot.error == "malformed data"

    @pytest.mark.asyncio
    async def test_regression_logged_and_external_wins(self, make_board, delivery_store, caplog):
        board = make_board()
        delivery_store.records["BL-002"] = delivery_store.records["BL-002"].with_changes(
            state=WorkflowState.LOADING
        )
        await board.refresh()
        delivery_store.records["BL-002"] = delivery_store.records["BL-002"].with_changes(
            state=WorkflowState.PLANNED
        )

        with caplog.at_level(logging.WARNING, logger="dispatch_board.services.board"):
            snapshot = await board.refresh()

        assert snapshot.get("BL-002").state == WorkflowState.PLANNED
        assert "moved back" in caplog.text

    @pytest.mark.asyncio
    async def test_burst_collapses_into_one_fetch(self, make_board):
        board = make_board(debounce_ms=30)
        board.refresh = AsyncMock()

        for _ in range(5):
            await board.on_change(ChangeNotification(board_date=BOARD_DATE, origin="other"))
        await asyncio.sleep(0.1)

        board.refresh.assert_awaited_once_with("push")

    @pytest.mark.asyncio
    async def test_ignores_other_dates_and_own_changes(self, make_board):
        board = make_board(debounce_ms=0)
        board.refresh = AsyncMock()

        await board.on_change(ChangeNotification(board_date=NEXT_DAY))
        await board.on_change(ChangeNotification(board_date=BOARD_DATE, origin=board.instance_id))
        await asyncio.sleep(0.05)

        board.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_change_during_fetch_triggers_another(
        self, truck_store, client_store, engine, feed, clock
    ):
        store = LaggingDeliveryStore(
            [make_record(id="BL-001", state=WorkflowState.PENDING_VALIDATION)]
        )
        board = DispatchBoardController(
            BOARD_DATE, store, truck_store, client_store, engine,
            feed=feed, clock=clock, poll_interval=3600, debounce_ms=10,
        )
        await board.refresh()
        gate = asyncio.Event()
        store.gates.append(gate)

        await board.on_change(ChangeNotification(board_date=BOARD_DATE, origin="other"))
        await asyncio.sleep(0.05)
        # the push fetch has read the old rows and is still waiting
        store.records["BL-001"] = store.records["BL-001"].with_changes(state=WorkflowState.PLANNED)
        await board.on_change(ChangeNotification(board_date=BOARD_DATE, origin="other"))
        gate.set()
        await asyncio.sleep(0.1)

        assert board.snapshot.get("BL-001").state == WorkflowState.PLANNED
        await board.stop()

    @pytest.mark.asyncio
    async def test_stop_cancels_pending_push(self, make_board):
        board = make_board(debounce_ms=1000)
        board.refresh = AsyncMock()

        await board.on_change(ChangeNotification(board_date=BOARD_DATE, origin="other"))
        await board.stop()

        assert board._push_tasks == set()
        board.refresh.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_push_from_another_board(self, make_board, operator):
        """A mutation on one screen refreshes every other screen on the day."""
        first = make_board()
        second = make_board()
        await first.start()
        await second.start()

        result = await first.confirm("BL-001", operator)
        await asyncio.sleep(0.1)

        assert isinstance(result, Success)
        assert second.snapshot.get("BL-001").state == WorkflowState.PLANNED
        await first.stop()
        await second.stop()

    @pytest.mark.asyncio
    async def test_polling(self, make_board):
        board = make_board(poll_interval=0.01)
        await board.start()
        await asyncio.sleep(0.1)
        await board.stop()

        assert board.snapshot.sequence > 1
        assert board._poll_task is None


class TestLifecycle:
    """Tests for start, stop and switch_date."""

    @pytest.mark.asyncio
    async def test_start_subscribes_and_loads(self, make_board, feed):
        board = make_board()

        await board.start()

        assert board.snapshot is not None
        assert len(feed.subscribers[BOARD_DATE]) == 1
        await board.stop()
        assert BOARD_DATE not in feed.subscribers

    @pytest.mark.asyncio
    async def test_switch_date(self, make_board, feed):
        board = make_board()
        await board.start()

        snapshot = await board.switch_date(NEXT_DAY)

        assert snapshot.board_date == NEXT_DAY
        assert [d.id for d in snapshot.deliveries] == ["BL-100"]
        assert BOARD_DATE not in feed.subscribers
        assert len(feed.subscribers[NEXT_DAY]) == 1
        await board.stop()

    @pytest.mark.asyncio
    async def test_switch_drops_in_flight_fetch(self, make_board, delivery_store):
        board = make_board()
        gate = asyncio.Event()
        delivery_store.gates.append(gate)

        old = asyncio.create_task(board.refresh())
        await asyncio.sleep(0)
        await board.switch_date(NEXT_DAY)
        gate.set()
        await old

        assert board.snapshot.board_date == NEXT_DAY


class TestBoardActions:
    """Tests for controller actions."""

    @pytest.mark.asyncio
    async def test_action_before_load(self, make_board, operator):
        board = make_board()
        assert isinstance(await board.confirm("BL-001", operator), DataUnavailable)

    @pytest.mark.asyncio
    async def test_unknown_record(self, make_board, operator):
        board = make_board()
        await board.refresh()

        result = await board.confirm("BL-404", operator)

        assert isinstance(result, RecordNotFound)

    @pytest.mark.asyncio
    async def test_success_publishes_and_refreshes(self, make_board, operator, feed):
        board = make_board()
        await board.refresh()

        result = await board.confirm("BL-001", operator)

        assert isinstance(result, Success)
        assert feed.published == 1
        assert board.snapshot.sequence == 2
        assert board.snapshot.get("BL-001").state == WorkflowState.PLANNED

    @pytest.mark.asyncio
    async def test_blocked_action_does_not_publish(self, make_board, auditor, feed):
        board = make_board()
        await board.refresh()

        await board.confirm("BL-001", auditor)

        assert feed.published == 0
        assert board.snapshot.sequence == 1

    @pytest.mark.asyncio
    async def test_credit_comes_from_snapshot(self, make_board, ops_director):
        board = make_board()
        await board.refresh()
        await board.assign_truck("BL-003", ops_director, "T-02")

        result = await board.start_production("BL-003", ops_director)

        assert result.code == "credit_blocked"
        assert result.client_name == "Over Limit"

    @pytest.mark.asyncio
    async def test_failed_compensation_still_reconciles(
        self, make_board, operator, feed, delivery_store, purchase_order_store
    ):
        delivery_store.records["BL-009"] = make_record(
            id="BL-009", state=WorkflowState.PENDING_VALIDATION, purchase_order_id="BC-1"
        )
        received = []

        async def on_change(notification):
            received.append(notification)

        await feed.subscribe(BOARD_DATE, on_change)
        board = make_board()
        await board.refresh()
        purchase_order_store.fail_writes = True

        result = await board.reject("BL-009", operator)

        assert isinstance(result, CompensationFailed)
        assert board.snapshot.get("BL-009") is None
        assert board.snapshot.sequence == 2
        assert feed.published == 1
        assert received[-1].kind == ChangeKind.DELETE
        assert received[-1].record_id == "BL-009"

    @pytest.mark.asyncio
    async def test_cancel(self, make_board, ceo, feed):
        board = make_board()
        await board.refresh()

        result = await board.cancel("BL-002", ceo)

        assert isinstance(result, Success)
        assert feed.published == 1
        cancelled = board.snapshot.get("BL-002")
        assert cancelled.state == WorkflowState.CANCELLED
        assert cancelled not in board.snapshot.categories.to_produce
        assert "BL-002" not in board.snapshot.conflicting_ids

    @pytest.mark.asyncio
    async def test_cancel_refused_to_operator(self, make_board, operator, feed):
        board = make_board()
        await board.refresh()

        result = await board.cancel("BL-002", operator)

        assert isinstance(result, PermissionDenied)
        assert feed.published == 0

    @pytest.mark.asyncio
    async def test_confirm_all_pending(self, make_board, operator, feed, delivery_store):
        delivery_store.records["BL-005"] = make_record(
            id="BL-005", state=WorkflowState.PENDING_VALIDATION, client_id="CLI-RED"
        )
        board = make_board()
        await board.refresh()

        bulk = await board.confirm_all_pending(operator)

        assert isinstance(bulk, BulkResult)
        assert bulk.applied == 1
        assert bulk.blocked == 1
        assert {r.to_dict()["record_id"] for r in bulk.results} == {"BL-001", "BL-005"}
        assert any(isinstance(r, CreditBlocked) for r in bulk.results)
        assert feed.published == 1
        assert board.snapshot.sequence == 2
        assert board.snapshot.get("BL-001").state == WorkflowState.PLANNED
        assert board.snapshot.get("BL-005").state == WorkflowState.PENDING_VALIDATION

    @pytest.mark.asyncio
    async def test_confirm_all_pending_nothing_applied(self, make_board, auditor, feed):
        board = make_board()
        await board.refresh()

        bulk = await board.confirm_all_pending(auditor)

        assert bulk.applied == 0
        assert bulk.to_dict()["blocked"] == 1
        assert feed.published == 0
        assert board.snapshot.sequence == 1

    @pytest.mark.asyncio
    async def test_confirm_all_pending_before_load(self, make_board, operator):
        board = make_board()

        bulk = await board.confirm_all_pending(operator)

        assert isinstance(bulk.results[0], DataUnavailable)

    @pytest.mark.asyncio
    async def test_request_approval(self, make_board, operator):
        board = make_board()
        await board.refresh()

        first = await board.request_approval("BL-003", operator)
        second = await board.request_approval("BL-003", operator)

        assert isinstance(first, ApprovalRequested)
        assert first.status == "pending"
        assert first.request_id == second.request_id

    @pytest.mark.asyncio
    async def test_suggest_trucks(self, make_board):
        board = make_board()
        await board.refresh()

        suggestions = board.suggest_trucks("BL-003")

        assert [s.truck.id for s in suggestions] == ["T-02", "T-01"]
        assert board.suggest_trucks("BL-404") == []


class TestBoardRegistry:
    """Tests for BoardRegistry."""

    @pytest.fixture
    def registry(self, delivery_store, truck_store, client_store, engine, feed, clock):
        return BoardRegistry(
            delivery_store, truck_store, client_store, engine,
            feed=feed, clock=clock, idle_minutes=15,
        )

    @pytest.mark.asyncio
    async def test_one_board_per_day(self, registry):
        first = await registry.get(BOARD_DATE)
        again = await registry.get(BOARD_DATE)

        assert first is again
        assert first.snapshot is not None
        await registry.stop_all()
        assert registry.boards == {}

    @pytest.mark.asyncio
    async def test_find_record_loads_its_day(self, registry):
        board = await registry.find_record("BL-100")

        assert board.board_date == NEXT_DAY
        assert board.snapshot.get("BL-100") is not None
        assert await registry.find_record("BL-404") is None
        await registry.stop_all()

    @pytest.mark.asyncio
    async def test_listener_attached(self, delivery_store, truck_store, client_store, engine, clock):
        listener = AsyncMock()
        registry = BoardRegistry(
            delivery_store, truck_store, client_store, engine, clock=clock, on_snapshot=listener
        )

        board = await registry.get(BOARD_DATE)

        listener.assert_awaited_once_with(board.snapshot)
        await registry.stop_all()

    @pytest.mark.asyncio
    async def test_idle_board_evicted(self, registry, clock, feed):
        board = await registry.get(BOARD_DATE)
        clock.now += timedelta(minutes=14)
        assert await registry.evict_idle() == []

        clock.now += timedelta(minutes=1)
        evicted = await registry.evict_idle()

        assert evicted == [BOARD_DATE]
        assert registry.boards == {}
        assert board._poll_task is None
        assert BOARD_DATE not in feed.subscribers

    @pytest.mark.asyncio
    async def test_use_keeps_board(self, registry, clock):
        await registry.get(BOARD_DATE)
        clock.now += timedelta(minutes=10)
        await registry.find_record("BL-001")
        clock.now += timedelta(minutes=10)

        assert await registry.evict_idle() == []
        await registry.stop_all()

    @pytest.mark.asyncio
    async def test_watched_board_kept(self, registry, clock):
        await registry.get(BOARD_DATE)
        registry.watch(BOARD_DATE)
        clock.now += timedelta(hours=2)

        assert await registry.evict_idle() == []

        registry.unwatch(BOARD_DATE)
        clock.now += timedelta(minutes=15)
        assert await registry.evict_idle() == [BOARD_DATE]

    @pytest.mark.asyncio
    async def test_evicted_day_reloads(self, registry, clock):
        first = await registry.get(BOARD_DATE)
        clock.now += timedelta(hours=1)
        await registry.evict_idle()

        second = await registry.get(BOARD_DATE)

        assert second is not first
        assert second.snapshot is not None
        await registry.stop_all()

    @pytest.mark.asyncio
    async def test_sweep_runs_in_background(
        self, delivery_store, truck_store, client_store, engine, clock
    ):
        registry = BoardRegistry(
            delivery_store, truck_store, client_store, engine,
            clock=clock, idle_minutes=1, sweep_interval=0.01,
        )
        await registry.start()
        await registry.get(BOARD_DATE)
        clock.now += timedelta(minutes=5)
        await asyncio.sleep(0.1)

        assert registry.boards == {}
        await registry.stop_all()
        assert registry._sweep_task is None
