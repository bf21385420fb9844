"""
Courier live queue

The queue holds every parent order that is READY_FOR_PICKUP and has no
courier. It is seeded from a snapshot query and then kept current by applying
change events; apply_event() is a pure reducer so any event sequence can be
replayed deterministically. LiveQueueSession is the thin adapter that wires a
projection to the change feed for one connected courier.
"""
import asyncio
import logging
from typing import Callable, Dict, Iterable, List, Mapping, Optional

from sqlalchemy.orm import sessionmaker
from starlette.concurrency import run_in_threadpool

from marketplace_orders.models.order import ParentOrderStatus, to_row
from marketplace_orders.services.change_feed import (
    DELETE, INSERT, UPDATE, ChangeEvent, ChangeFeed, Subscription
)
from marketplace_orders.services.order_service import OrderService

logger = logging.getLogger(__name__)

QUEUE_TABLE = "parent_orders"

Row = Dict[str, object]
QueueState = Dict[str, Row]

_WAKE = object()


def is_queue_member(row: Optional[Mapping]) -> bool:
    """Ready for pickup and not yet claimed"""
    if not row:
        return False
    return row.get("status") == ParentOrderStatus.READY_FOR_PICKUP.value and row.get("delivery_user_id") is None


def apply_event(state: Mapping[str, Row], change: ChangeEvent) -> QueueState:
    """
    Apply one change event to a queue state and return the new state.

    The input mapping is never mutated. Duplicate events and unknown ids are
    no-ops; each row is reconciled by its own latest event.
    """
    new_state = dict(state)
    if change.table != QUEUE_TABLE:
        return new_state

    if change.event_type == INSERT:
        row = change.new or {}
        row_id = _require_id(row, change)
        if is_queue_member(row) and row_id not in new_state:
            new_state[row_id] = dict(row)

    elif change.event_type == UPDATE:
        row = change.new or {}
        row_id = _require_id(row, change)
        if is_queue_member(row):
            new_state[row_id] = dict(row)
        else:
            new_state.pop(row_id, None)

    elif change.event_type == DELETE:
        row_id = _require_id(change.old or {}, change)
        new_state.pop(row_id, None)

    else:
        raise ValueError(f"Unknown event type {change.event_type!r}")

    return new_state


def replay(changes: Iterable[ChangeEvent], state: Optional[Mapping[str, Row]] = None) -> QueueState:
    """Fold a sequence of events over a starting state"""
    current = dict(state or {})
    for change in changes:
        current = apply_event(current, change)
    return current


def _require_id(row: Mapping, change: ChangeEvent) -> str:
    row_id = row.get("id")
    if not row_id:
        raise ValueError(f"{change.event_type} event #{change.sequence} carries no row id")
    return row_id


class LiveQueueProjection:
    """Keyed view of the live queue for one courier session"""

    def __init__(self, rows: Optional[Iterable[Row]] = None):
        self._state: QueueState = {}
        self.applied = 0
        self.skipped = 0
        if rows is not None:
            self.seed(rows)

    def seed(self, rows: Iterable[Row]):
        """Replace the state with the members of a snapshot"""
        self._state = {row["id"]: dict(row) for row in rows if is_queue_member(row)}

    def reset(self, rows: Iterable[Row]):
        """Discard local state and reseed; the only recovery from a stream gap"""
        previous = len(self._state)
        self.seed(rows)
        logger.info(f"Live queue resynced: {previous} -> {len(self._state)} orders")

    def apply(self, change: ChangeEvent) -> bool:
        """
        Apply an event; returns True when membership or content changed.

        A bad event is logged and skipped so the subscription keeps running.
        """
        try:
            new_state = apply_event(self._state, change)
        except Exception as e:
            self.skipped += 1
            logger.warning(f"Skipping live queue event #{change.sequence}: {e}")
            return False
        self.applied += 1
        changed = new_state != self._state
        self._state = new_state
        return changed

    @property
    def state(self) -> QueueState:
        return dict(self._state)

    def ids(self) -> set:
        return set(self._state)

    def entries(self) -> List[Row]:
        """Oldest ready order first"""
        return sorted(
            self._state.values(),
            key=lambda row: (str(row.get("created_at") or ""), str(row["id"]))
        )

    def __len__(self) -> int:
        return len(self._state)

    def __contains__(self, order_id: object) -> bool:
        return order_id in self._state


def load_live_queue_rows(session_factory: sessionmaker) -> List[Row]:
    """Run the snapshot query in its own session"""
    db = session_factory()
    try:
        return [to_row(order) for order in OrderService.get_live_queue_snapshot(db)]
    finally:
        db.close()


class LiveQueueSession:
    """
    Live queue for one connected courier

    Change events may be published from any thread; they are handed to the
    session's event loop and buffered in a bounded queue. Overflowing the
    buffer is treated as a stream gap and answered with a fresh snapshot.
    """

    def __init__(
        self,
        feed: ChangeFeed,
        load_snapshot: Callable[[], List[Row]],
        max_pending: int = 500,
        resync_seconds: float = 60.0,
        channel: str = "live-queue"
    ):
        self.feed = feed
        self.load_snapshot = load_snapshot
        self.max_pending = max_pending
        self.resync_seconds = resync_seconds
        self.channel = channel
        self.projection = LiveQueueProjection()
        self.gap_detected = False
        self.closed = False
        self.resyncs = 0
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._pending: Optional[asyncio.Queue] = None
        self._subscription: Optional[Subscription] = None

    async def open(self) -> List[Row]:
        """Subscribe, then seed from a snapshot; returns the initial entries"""
        self._loop = asyncio.get_running_loop()
        self._pending = asyncio.Queue(maxsize=self.max_pending)
        # Subscribing first means nothing committed after the snapshot is missed
        self._subscription = self.feed.subscribe(self.channel, QUEUE_TABLE, self._on_change)
        await self.resync()
        return self.projection.entries()

    async def resync(self):
        """Drop buffered events and local state, then reload the snapshot"""
        self._drain()
        self.gap_detected = False
        rows = await run_in_threadpool(self.load_snapshot)
        self.projection.reset(rows)
        self.resyncs += 1

    def request_resync(self):
        """Ask the session to reload on its next wake-up"""
        self.gap_detected = True
        self._wake()

    async def next_update(self) -> Optional[str]:
        """
        Wait until the projection changes.

        Returns "event" or "resync", or None once the session is closed.
        """
        while not self.closed:
            if self.gap_detected:
                await self.resync()
                return "resync"

            try:
                change = await asyncio.wait_for(self._pending.get(), timeout=self.resync_seconds)
            except asyncio.TimeoutError:
                # Periodic full resync heals anything the feed never delivered
                await self.resync()
                return "resync"

            changed = self._apply(change)
            while not self._pending.empty():
                changed = self._apply(self._pending.get_nowait()) or changed

            if self.closed:
                break
            if changed and not self.gap_detected:
                return "event"
        return None

    def close(self):
        """Release the feed registration; no event is processed afterwards"""
        if self.closed:
            return
        self.closed = True
        if self._subscription is not None:
            self._subscription.unsubscribe()
            self._subscription = None
        self._wake()

    def _apply(self, change) -> bool:
        if change is _WAKE or self.closed:
            return False
        return self.projection.apply(change)

    def _on_change(self, change: ChangeEvent):
        # Runs on the publishing thread; only hands the event over
        if self.closed:
            return
        self._loop.call_soon_threadsafe(self._enqueue, change)

    def _enqueue(self, change):
        if self.closed:
            return
        try:
            self._pending.put_nowait(change)
        except asyncio.QueueFull:
            if not self.gap_detected:
                logger.warning(
                    f"Live queue buffer full ({self.max_pending}) on {self.channel}; "
                    f"resyncing from snapshot"
                )
            self.gap_detected = True

    def _wake(self):
        if self._pending is None:
            return
        try:
            self._pending.put_nowait(_WAKE)
        except asyncio.QueueFull:
            pass

    def _drain(self):
        if self._pending is None:
            return
        while not self._pending.empty():
            self._pending.get_nowait()
