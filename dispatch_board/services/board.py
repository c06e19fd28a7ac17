"""
Dispatch board controller.

Keeps one delivery day on screen in sync with the system of record and
routes operator actions to the workflow engine.

Reconciliation triggers:
- a polling loop (POLL_INTERVAL_SECONDS)
- change-feed notifications for the active day, debounced
- every successful local mutation

Every fetch takes a sequence number; a result older than the last applied
one is dropped (last-fetch-wins). A failed fetch keeps the last good
snapshot and flags it stale.
"""
import asyncio
import logging
import time
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timedelta
from decimal import Decimal
from typing import Awaitable, Callable, Optional
from uuid import uuid4

from dispatch_board.core.clock import Clock, local_now
from dispatch_board.core.config import settings
from dispatch_board.core.exceptions import DataUnavailableException, MalformedRecordException
from dispatch_board.core.metrics import record_reconciliation, update_board_gauges
from dispatch_board.core.sentry import capture_exception
from dispatch_board.models.actor import Actor
from dispatch_board.models.approval import OverrideToken
from dispatch_board.models.change import ChangeKind, ChangeNotification
from dispatch_board.models.client import ClientCreditSnapshot, CreditStatus
from dispatch_board.models.delivery import DeliveryRecord, WorkflowState
from dispatch_board.models.truck import TruckRecord
from dispatch_board.services.conflict_detector import (
    SchedulingConflict,
    conflicting_ids,
    detect_conflicts,
)
from dispatch_board.services.credit_gate import credit_statuses, default_snapshot
from dispatch_board.services.outcomes import (
    ActionResult,
    ApprovalRequested,
    BulkResult,
    CompensationFailed,
    DataUnavailable,
    Deleted,
    RecordNotFound,
)
from dispatch_board.services.truck_validator import TruckSuggestion, suggest_trucks
from dispatch_board.services.workflow import WorkflowEngine, recognize_invoiced
from dispatch_board.stores.interfaces import (
    ChangeFeed,
    ClientStore,
    DeliveryStore,
    Subscription,
    TruckStore,
)

logger = logging.getLogger(__name__)

BoardListener = Callable[["BoardSnapshot"], Awaitable[None]]


@dataclass
class BoardCategories:
    """Kanban columns of the board."""

    pending_validation: list[DeliveryRecord] = field(default_factory=list)
    to_produce: list[DeliveryRecord] = field(default_factory=list)
    loading: list[DeliveryRecord] = field(default_factory=list)
    en_route: list[DeliveryRecord] = field(default_factory=list)
    to_invoice: list[DeliveryRecord] = field(default_factory=list)
    invoiced: list[DeliveryRecord] = field(default_factory=list)

    def counts(self) -> dict[str, int]:
        return {name: len(records) for name, records in self.buckets().items()}

    def buckets(self) -> dict[str, list[DeliveryRecord]]:
        return {
            "pending_validation": self.pending_validation,
            "to_produce": self.to_produce,
            "loading": self.loading,
            "en_route": self.en_route,
            "to_invoice": self.to_invoice,
            "invoiced": self.invoiced,
        }


def categorize(
    deliveries: list[DeliveryRecord],
    now: datetime,
    lookahead_hours: Optional[int] = None,
) -> BoardCategories:
    """
    Sort records into board columns.

    A Planned record shows under "to produce" when it has no time yet, is
    late, or is due within the lookahead; later ones only appear on the
    timeline.
    """
    hours = settings.PRODUCTION_LOOKAHEAD_HOURS if lookahead_hours is None else lookahead_hours
    horizon = now + timedelta(hours=hours)
    categories = BoardCategories()

    for record in deliveries:
        state = record.state
        if state is WorkflowState.PENDING_VALIDATION:
            categories.pending_validation.append(record)
        elif state is WorkflowState.PLANNED:
            scheduled = record.scheduled_at(now.tzinfo)
            if scheduled is None or scheduled <= horizon:
                categories.to_produce.append(record)
        elif state in (WorkflowState.LOADING, WorkflowState.TECHNICAL_VALIDATION):
            categories.loading.append(record)
        elif state is WorkflowState.EN_ROUTE:
            categories.en_route.append(record)
        elif state is WorkflowState.DELIVERED:
            categories.to_invoice.append(record)
        elif state is WorkflowState.INVOICED:
            categories.invoiced.append(record)

    return categories


@dataclass
class BoardSnapshot:
    """Everything the board shows for one day, as of one fetch."""

    board_date: date
    deliveries: list[DeliveryRecord]
    trucks: list[TruckRecord]
    credit: dict[str, ClientCreditSnapshot]
    credit_statuses: dict[str, CreditStatus]
    conflicts: list[SchedulingConflict]
    categories: BoardCategories
    loaded_at: datetime
    sequence: int = 0
    stale: bool = False
    error: Optional[str] = None

    def get(self, record_id: str) -> Optional[DeliveryRecord]:
        return next((d for d in self.deliveries if d.id == record_id), None)

    def credit_for(self, record: DeliveryRecord) -> ClientCreditSnapshot:
        return self.credit.get(record.client_id) or default_snapshot(
            record.client_id, record.client_name
        )

    @property
    def conflicting_ids(self) -> set[str]:
        return conflicting_ids(self.conflicts)

    @property
    def total_volume_m3(self) -> Decimal:
        return sum((d.volume_m3 for d in self.deliveries), Decimal("0"))

    @classmethod
    def empty(cls, board_date: date, loaded_at: datetime) -> "BoardSnapshot":
        return cls(
            board_date=board_date,
            deliveries=[],
            trucks=[],
            credit={},
            credit_statuses={},
            conflicts=[],
            categories=BoardCategories(),
            loaded_at=loaded_at,
        )


async def load_day(
    board_date: date,
    deliveries: DeliveryStore,
    trucks: TruckStore,
    clients: ClientStore,
    now: datetime,
) -> BoardSnapshot:
    """
    Fetch and derive a full board snapshot.

    Raises:
        DataUnavailableException: Any store could not be read; nothing is
            returned partially.
        MalformedRecordException: A persisted row violates record rules.
    """
    records, fleet = await asyncio.gather(
        deliveries.list_by_date(board_date),
        trucks.list(),
    )
    records = [recognize_invoiced(r) for r in records]
    credit = await clients.get_credit_snapshots({r.client_id for r in records})

    return BoardSnapshot(
        board_date=board_date,
        deliveries=records,
        trucks=fleet,
        credit=credit,
        credit_statuses=credit_statuses(credit),
        conflicts=detect_conflicts(records),
        categories=categorize(records, now),
        loaded_at=now,
    )


class DispatchBoardController:
    """
    Live board for one delivery day.

    ``start()`` loads the day, subscribes to the change feed and begins
    polling; ``stop()`` cancels all background work.
    """

    def __init__(
        self,
        board_date: date,
        deliveries: DeliveryStore,
        trucks: TruckStore,
        clients: ClientStore,
        engine: WorkflowEngine,
        feed: Optional[ChangeFeed] = None,
        clock: Clock = local_now,
        poll_interval: Optional[float] = None,
        debounce_ms: Optional[int] = None,
    ):
        self.board_date = board_date
        self.deliveries = deliveries
        self.trucks = trucks
        self.clients = clients
        self.engine = engine
        self.feed = feed
        self.clock = clock
        self.poll_interval = settings.POLL_INTERVAL_SECONDS if poll_interval is None else poll_interval
        self.debounce = (
            settings.NOTIFICATION_DEBOUNCE_MS if debounce_ms is None else debounce_ms
        ) / 1000

        self.instance_id = uuid4().hex
        self.snapshot: Optional[BoardSnapshot] = None
        self.listeners: list[BoardListener] = []

        self._fetch_seq = 0
        self._applied_seq = 0
        self._poll_task: Optional[asyncio.Task] = None
        self._push_tasks: set[asyncio.Task] = set()
        self._push_pending = False
        self._subscription: Optional[Subscription] = None
        self._running = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def start(self) -> None:
        if self._running:
            return
        self._running = True
        await self._subscribe()
        await self.refresh("initial")
        self._poll_task = asyncio.create_task(self._poll_loop())
        logger.info(f"Board {self.board_date} started (poll every {self.poll_interval}s)")

    async def stop(self) -> None:
        self._running = False
        tasks = list(self._push_tasks)
        if self._poll_task is not None:
            tasks.append(self._poll_task)
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        self._poll_task = None
        self._push_tasks.clear()
        self._push_pending = False
        await self._unsubscribe()
        logger.info(f"Board {self.board_date} stopped")

    def add_listener(self, listener: BoardListener) -> None:
        self.listeners.append(listener)

    def remove_listener(self, listener: BoardListener) -> None:
        if listener in self.listeners:
            self.listeners.remove(listener)

    async def switch_date(self, board_date: date) -> Optional[BoardSnapshot]:
        """Show another day; in-flight fetches of the old day are dropped."""
        if board_date == self.board_date:
            return self.snapshot
        await self._unsubscribe()
        self.board_date = board_date
        self.snapshot = None
        await self._subscribe()
        return await self.refresh("switch")

    # ------------------------------------------------------------------
    # Reconciliation
    # ------------------------------------------------------------------

    async def refresh(self, trigger: str = "manual") -> Optional[BoardSnapshot]:
        """
        Re-fetch the active day.

        Returns the snapshot in effect afterwards, which may be an older,
        stale one if the fetch failed or was superseded.
        """
        self._fetch_seq += 1
        seq = self._fetch_seq
        board_date = self.board_date
        started = time.perf_counter()

        try:
            snapshot = await load_day(
                board_date, self.deliveries, self.trucks, self.clients, self.clock()
            )
        except DataUnavailableException as e:
            record_reconciliation(trigger, False, time.perf_counter() - started)
            logger.warning(f"Board {board_date} refresh ({trigger}) failed: {e.message}")
            await self._mark_stale(seq, board_date, e.message)
            return self.snapshot
        except MalformedRecordException:
            record_reconciliation(trigger, False, time.perf_counter() - started)
            logger.exception(f"Board {board_date} refresh ({trigger}) hit malformed data")
            await self._mark_stale(seq, board_date, "malformed data")
            raise

        record_reconciliation(trigger, True, time.perf_counter() - started)

        if board_date != self.board_date or seq < self._applied_seq:
            logger.debug(f"Discarding superseded fetch #{seq} for {board_date}")
            return self.snapshot

        self._warn_regressions(self.snapshot, snapshot)
        snapshot.sequence = seq
        self._applied_seq = seq
        self.snapshot = snapshot
        update_board_gauges(board_date.isoformat(), len(snapshot.conflicts), False)
        await self._notify_listeners(snapshot)
        return snapshot

    async def on_change(self, notification: ChangeNotification) -> None:
        """
        Change-feed callback; bursts collapse into one fetch.

        Only notifications arriving during the debounce wait are collapsed.
        One arriving while the fetch is in flight schedules another fetch,
        since the running one may have read the rows before that change.
        """
        if notification.board_date != self.board_date:
            return
        if notification.origin == self.instance_id:
            return
        if self._push_pending:
            return
        self._push_pending = True
        task = asyncio.create_task(self._debounced_refresh())
        self._push_tasks.add(task)
        task.add_done_callback(self._push_tasks.discard)

    async def _debounced_refresh(self) -> None:
        try:
            await asyncio.sleep(self.debounce)
        finally:
            self._push_pending = False
        try:
            await self.refresh("push")
        except MalformedRecordException as e:
            logger.debug(f"Push refresh of {self.board_date} aborted: {e.message}")

    async def _poll_loop(self) -> None:
        while self._running:
            try:
                await asyncio.sleep(self.poll_interval)
                await self.refresh("poll")
            except asyncio.CancelledError:
                break
            except MalformedRecordException:
                continue

    async def _mark_stale(self, seq: int, board_date: date, error: str) -> None:
        if board_date != self.board_date or seq < self._applied_seq:
            return
        base = self.snapshot or BoardSnapshot.empty(board_date, self.clock())
        self.snapshot = replace(base, stale=True, error=error)
        update_board_gauges(board_date.isoformat(), len(self.snapshot.conflicts), True)
        await self._notify_listeners(self.snapshot)

    def _warn_regressions(
        self,
        previous: Optional[BoardSnapshot],
        current: BoardSnapshot,
    ) -> None:
        if previous is None or previous.board_date != current.board_date:
            return
        before = {d.id: d.state for d in previous.deliveries}
        for record in current.deliveries:
            old = before.get(record.id)
            if old is not None and record.state.rank < old.rank:
                logger.warning(
                    f"Delivery {record.id} moved back from {old.value} to "
                    f"{record.state.value}; keeping the stored state"
                )

    async def _notify_listeners(self, snapshot: BoardSnapshot) -> None:
        for listener in list(self.listeners):
            try:
                await listener(snapshot)
            except Exception as e:
                logger.error(f"Board listener failed: {e}", exc_info=True)

    async def _subscribe(self) -> None:
        if self.feed is not None:
            self._subscription = await self.feed.subscribe(self.board_date, self.on_change)

    async def _unsubscribe(self) -> None:
        if self._subscription is not None:
            await self._subscription.unsubscribe()
            self._subscription = None

    # ------------------------------------------------------------------
    # Actions
    # ------------------------------------------------------------------

    def _lookup(self, record_id: str):
        if self.snapshot is None:
            return None, DataUnavailable()
        record = self.snapshot.get(record_id)
        if record is None:
            return None, RecordNotFound(record_id=record_id)
        return record, None

    async def _after(self, outcome: ActionResult, record: DeliveryRecord) -> ActionResult:
        if not outcome.mutated:
            return outcome
        deleted = isinstance(outcome, (Deleted, CompensationFailed))
        await self._reconcile_after_write(
            record.delivery_date,
            ChangeKind.DELETE if deleted else ChangeKind.UPDATE,
            record.id,
        )
        return outcome

    async def _reconcile_after_write(
        self,
        board_date: date,
        kind: ChangeKind,
        record_id: Optional[str] = None,
    ) -> None:
        if self.feed is not None:
            await self.feed.publish(
                ChangeNotification(
                    board_date=board_date,
                    kind=kind,
                    record_id=record_id,
                    origin=self.instance_id,
                )
            )
        try:
            await self.refresh("mutation")
        except MalformedRecordException as e:
            # the write stands; the board shows the last good snapshot
            logger.debug(f"Post-mutation refresh of {self.board_date} aborted: {e.message}")

    async def confirm(
        self,
        record_id: str,
        actor: Actor,
        token: Optional[OverrideToken] = None,
    ) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.confirm(record, actor, self.snapshot.credit_for(record), token)
        return await self._after(outcome, record)

    async def reject(self, record_id: str, actor: Actor) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.reject(record, actor)
        return await self._after(outcome, record)

    async def start_production(
        self,
        record_id: str,
        actor: Actor,
        justification: Optional[str] = None,
        token: Optional[OverrideToken] = None,
    ) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.start_production(
            record, actor, self.snapshot.credit_for(record), justification, token
        )
        return await self._after(outcome, record)

    async def validate_technical(self, record_id: str, actor: Actor) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.validate_technical(record, actor)
        return await self._after(outcome, record)

    async def dispatch(self, record_id: str, actor: Actor) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.dispatch(record, actor)
        return await self._after(outcome, record)

    async def record_arrival(self, record_id: str, actor: Actor) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.record_arrival(record, actor)
        return await self._after(outcome, record)

    async def mark_delivered(self, record_id: str, actor: Actor) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.mark_delivered(record, actor)
        return await self._after(outcome, record)

    async def assign_truck(self, record_id: str, actor: Actor, truck_id: str) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.assign_truck(
            record, actor, truck_id, self.snapshot.trucks, self.snapshot.deliveries
        )
        return await self._after(outcome, record)

    async def set_scheduled_time(
        self,
        record_id: str,
        actor: Actor,
        value: Optional[str],
    ) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.set_scheduled_time(record, actor, value)
        return await self._after(outcome, record)

    async def cancel(self, record_id: str, actor: Actor) -> ActionResult:
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        outcome = await self.engine.cancel(record, actor)
        return await self._after(outcome, record)

    async def confirm_all_pending(self, actor: Actor) -> BulkResult:
        """
        Confirm every record waiting for validation.

        Each record goes through the credit gate on its own; blocked ones
        stay pending and come back in the result. One notification and one
        re-fetch follow the whole batch.
        """
        if self.snapshot is None:
            return BulkResult(results=(DataUnavailable(),))

        snapshot = self.snapshot
        results = []
        for record in list(snapshot.categories.pending_validation):
            results.append(
                await self.engine.confirm(record, actor, snapshot.credit_for(record))
            )

        bulk = BulkResult(results=tuple(results))
        logger.info(
            f"Bulk confirm on {self.board_date} by {actor.id}: "
            f"{bulk.applied} confirmed, {bulk.blocked} blocked"
        )
        if any(r.mutated for r in results):
            await self._reconcile_after_write(snapshot.board_date, ChangeKind.UPDATE)
        return bulk

    async def request_approval(self, record_id: str, actor: Actor) -> ActionResult:
        """Open (or return the open) credit override request for a record."""
        record, missing = self._lookup(record_id)
        if missing:
            return missing
        if self.engine.approvals is None:
            return DataUnavailable(message="Override approvals are not configured")

        credit = self.snapshot.credit_for(record)
        request = await self.engine.approvals.request(
            record.id,
            record.client_id,
            actor,
            context={
                "client_name": credit.client_name or record.client_name,
                "balance": credit.balance,
                "credit_limit": credit.credit_limit,
            },
        )
        return ApprovalRequested(
            record_id=record.id,
            request_id=request.id,
            status=request.status.value,
        )

    def suggest_trucks(self, record_id: str) -> list[TruckSuggestion]:
        record, missing = self._lookup(record_id)
        if missing:
            return []
        return suggest_trucks(record, self.snapshot.trucks, self.snapshot.deliveries)


class BoardRegistry:
    """
    One controller per displayed day, started on first use.

    The HTTP layer asks the registry for a day's board; every board shares
    the same stores, engine and change feed. A board nobody has asked for
    during ``idle_minutes`` and with no live screen is stopped and dropped;
    the next request for its day starts a fresh one.
    """

    def __init__(
        self,
        deliveries: DeliveryStore,
        trucks: TruckStore,
        clients: ClientStore,
        engine: WorkflowEngine,
        feed: Optional[ChangeFeed] = None,
        clock: Clock = local_now,
        on_snapshot: Optional[BoardListener] = None,
        idle_minutes: Optional[int] = None,
        sweep_interval: Optional[float] = None,
    ):
        self.deliveries = deliveries
        self.trucks = trucks
        self.clients = clients
        self.engine = engine
        self.feed = feed
        self.clock = clock
        self.on_snapshot = on_snapshot
        self.idle = timedelta(
            minutes=settings.BOARD_IDLE_MINUTES if idle_minutes is None else idle_minutes
        )
        self.sweep_interval = (
            settings.BOARD_SWEEP_INTERVAL_SECONDS if sweep_interval is None else sweep_interval
        )
        self.boards: dict[date, DispatchBoardController] = {}
        self._last_used: dict[date, datetime] = {}
        self._watchers: dict[date, int] = {}
        self._sweep_task: Optional[asyncio.Task] = None
        self._lock = asyncio.Lock()

    async def start(self) -> None:
        if self._sweep_task is None:
            self._sweep_task = asyncio.create_task(self._sweep_loop())

    async def get(self, board_date: date) -> DispatchBoardController:
        async with self._lock:
            board = self.boards.get(board_date)
            if board is None:
                board = DispatchBoardController(
                    board_date,
                    self.deliveries,
                    self.trucks,
                    self.clients,
                    self.engine,
                    feed=self.feed,
                    clock=self.clock,
                )
                if self.on_snapshot is not None:
                    board.add_listener(self.on_snapshot)
                self.boards[board_date] = board
                await board.start()
            self._last_used[board_date] = self.clock()
            return board

    async def find_record(self, record_id: str) -> Optional[DispatchBoardController]:
        """Board currently showing ``record_id``, loading its day if needed."""
        for board in list(self.boards.values()):
            if board.snapshot is not None and board.snapshot.get(record_id) is not None:
                self._last_used[board.board_date] = self.clock()
                return board

        record = await self.deliveries.get(record_id)
        if record is None:
            return None
        board = await self.get(record.delivery_date)
        if board.snapshot is None or board.snapshot.get(record_id) is None:
            await board.refresh("lookup")
        return board

    def watch(self, board_date: date) -> None:
        """A live screen opened on ``board_date``; its board is kept."""
        self._watchers[board_date] = self._watchers.get(board_date, 0) + 1

    def unwatch(self, board_date: date) -> None:
        remaining = self._watchers.get(board_date, 0) - 1
        if remaining > 0:
            self._watchers[board_date] = remaining
        else:
            self._watchers.pop(board_date, None)
        self._last_used[board_date] = self.clock()

    async def evict_idle(self) -> list[date]:
        """Stop boards idle for longer than ``idle`` with no live screen."""
        now = self.clock()
        async with self._lock:
            idle = [
                board_date
                for board_date in self.boards
                if not self._watchers.get(board_date)
                and now - self._last_used.get(board_date, now) >= self.idle
            ]
            for board_date in idle:
                board = self.boards.pop(board_date)
                self._last_used.pop(board_date, None)
                await board.stop()

        if idle:
            logger.info(f"Evicted idle boards: {', '.join(d.isoformat() for d in idle)}")
        return idle

    async def _sweep_loop(self) -> None:
        while True:
            try:
                await asyncio.sleep(self.sweep_interval)
                await self.evict_idle()
            except asyncio.CancelledError:
                break
            except Exception as e:
                capture_exception(e, tags={"component": "board_registry"})

    async def stop_all(self) -> None:
        if self._sweep_task is not None:
            self._sweep_task.cancel()
            await asyncio.gather(self._sweep_task, return_exceptions=True)
            self._sweep_task = None
        for board in list(self.boards.values()):
            await board.stop()
        self.boards.clear()
        self._last_used.clear()
