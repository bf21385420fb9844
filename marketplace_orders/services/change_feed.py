"""
Change feed for parent orders and sub-orders

Row changes are captured from SQLAlchemy flushes, held on the session until
the transaction commits, then published to subscribers in flush order.
Rolled-back work never reaches the feed.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from itertools import count
from typing import Any, Callable, Dict, List, Optional
from sqlalchemy import event, inspect
from sqlalchemy.orm import Session, sessionmaker
from marketplace_orders.models.order import ParentOrder, SubOrder, jsonable_value, to_row
import logging
import threading

logger = logging.getLogger(__name__)

INSERT = "INSERT"
UPDATE = "UPDATE"
DELETE = "DELETE"

_PENDING_KEY = "pending_changes"
_TRACKED = (ParentOrder, SubOrder)


@dataclass(frozen=True)
class ChangeEvent:
    """One row change, in the shape the live queue and notifier consume"""
    event_type: str
    table: str
    new: Optional[Dict[str, Any]] = None
    old: Optional[Dict[str, Any]] = None
    sequence: int = 0
    committed_at: Optional[datetime] = None

    @property
    def row_id(self) -> Optional[str]:
        row = self.new or self.old or {}
        return row.get("id")


class Subscription:
    """A registration on the feed; unsubscribe() stops delivery synchronously"""

    def __init__(
        self,
        feed: "ChangeFeed",
        channel: str,
        table: str,
        callback: Callable[[ChangeEvent], None],
        filters: Optional[Dict[str, Any]] = None
    ):
        self.feed = feed
        self.channel = channel
        self.table = table
        self.callback = callback
        self.filters = filters or {}
        self.active = True
        self._lock = threading.RLock()

    def matches(self, change: ChangeEvent) -> bool:
        if change.table != self.table:
            return False
        if not self.filters:
            return True
        row = change.new if change.event_type != DELETE else change.old
        row = row or {}
        return all(row.get(column) == value for column, value in self.filters.items())

    def deliver(self, change: ChangeEvent):
        # Holding the lock while calling back means unsubscribe() waits for an
        # in-flight delivery, and nothing is delivered once it returns
        with self._lock:
            if not self.active:
                return
            self.callback(change)

    def unsubscribe(self):
        self.feed.remove(self)
        with self._lock:
            self.active = False
        logger.info(f"Unsubscribed channel {self.channel} from {self.table}")


class ChangeFeed:
    """In-process pub/sub of committed row changes"""

    def __init__(self):
        self._subscriptions: List[Subscription] = []
        self._lock = threading.Lock()
        self._sequence = count(1)
        self.published = 0

    def subscribe(
        self,
        channel: str,
        table: str,
        callback: Callable[[ChangeEvent], None],
        filters: Optional[Dict[str, Any]] = None
    ) -> Subscription:
        """
        Register a callback for changes on a table

        Args:
            channel: Name used in logs (e.g. "live-queue")
            table: "parent_orders" or "orders"
            callback: Called once per matching event; must not block
            filters: Optional column equality filters on the changed row
        """
        subscription = Subscription(self, channel, table, callback, filters)
        with self._lock:
            self._subscriptions.append(subscription)
        logger.info(f"Channel {channel} subscribed to {table} (filters={filters or {}})")
        return subscription

    def remove(self, subscription: Subscription):
        with self._lock:
            if subscription in self._subscriptions:
                self._subscriptions.remove(subscription)

    @property
    def subscriber_count(self) -> int:
        with self._lock:
            return len(self._subscriptions)

    def publish(self, change: ChangeEvent) -> ChangeEvent:
        """Stamp a sequence number and fan the event out"""
        with self._lock:
            change = ChangeEvent(
                event_type=change.event_type,
                table=change.table,
                new=change.new,
                old=change.old,
                sequence=next(self._sequence),
                committed_at=change.committed_at or datetime.now(timezone.utc)
            )
            targets = [s for s in self._subscriptions if s.matches(change)]
            self.published += 1

        for subscription in targets:
            try:
                subscription.deliver(change)
            except Exception as e:
                logger.error(
                    f"Subscriber {subscription.channel} failed on event "
                    f"#{change.sequence} ({change.event_type} {change.table}): {e}",
                    exc_info=True
                )
        return change

    def attach(self, session_factory: sessionmaker):
        """Install change capture on every session the factory creates"""
        event.listen(session_factory, "after_flush", _capture_flush)
        event.listen(session_factory, "after_commit", self._publish_pending)
        event.listen(session_factory, "after_transaction_end", _discard_pending)
        logger.info("Change capture attached to session factory")

    def detach(self, session_factory: sessionmaker):
        event.remove(session_factory, "after_flush", _capture_flush)
        event.remove(session_factory, "after_commit", self._publish_pending)
        event.remove(session_factory, "after_transaction_end", _discard_pending)

    def _publish_pending(self, session: Session):
        pending = session.info.pop(_PENDING_KEY, [])
        if not pending:
            return
        committed_at = datetime.now(timezone.utc)
        for change in pending:
            self.publish(ChangeEvent(
                event_type=change.event_type,
                table=change.table,
                new=change.new,
                old=change.old,
                committed_at=committed_at
            ))


def record_change(
    session: Session,
    event_type: str,
    obj: Any,
    old: Optional[Dict[str, Any]] = None
):
    """
    Queue a change for publication at commit

    Used for writes that bypass the unit of work (Core conditional updates).
    """
    new = None if event_type == DELETE else to_row(obj)
    if event_type == DELETE and old is None:
        old = to_row(obj)
    session.info.setdefault(_PENDING_KEY, []).append(
        ChangeEvent(event_type=event_type, table=obj.__tablename__, new=new, old=old)
    )


def _old_row(obj: Any) -> Dict[str, Any]:
    state = inspect(obj)
    row = to_row(obj)
    for attr in state.mapper.column_attrs:
        history = state.attrs[attr.key].history
        if history.has_changes():
            # A NULL original shows up as an empty deleted list
            row[attr.key] = jsonable_value(history.deleted[0]) if history.deleted else None
    return row


def _capture_flush(session: Session, flush_context):
    pending = session.info.setdefault(_PENDING_KEY, [])
    for obj in session.new:
        if isinstance(obj, _TRACKED):
            pending.append(ChangeEvent(INSERT, obj.__tablename__, new=to_row(obj)))
    for obj in session.dirty:
        if isinstance(obj, _TRACKED) and session.is_modified(obj, include_collections=False):
            pending.append(ChangeEvent(UPDATE, obj.__tablename__, new=to_row(obj), old=_old_row(obj)))
    for obj in session.deleted:
        if isinstance(obj, _TRACKED):
            pending.append(ChangeEvent(DELETE, obj.__tablename__, old=to_row(obj)))


def _discard_pending(session: Session, transaction):
    # Fires after after_commit, so anything left here never committed
    if transaction.parent is not None:
        return
    dropped = session.info.pop(_PENDING_KEY, [])
    if dropped:
        logger.debug(f"Discarded {len(dropped)} uncommitted change(s) on rollback")
