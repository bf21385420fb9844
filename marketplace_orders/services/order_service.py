# marketplace_orders/services/order_service.py
"""
Order business logic

Every sub-order status write re-derives the parent status in the same
transaction, under a row lock on the parent, so sibling updates from
different shops cannot interleave into a stale parent status.
"""
from dataclasses import dataclass
from datetime import datetime, timezone
from sqlalchemy import func, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session
from marketplace_orders.models.order import (
    ParentOrder, SubOrder, OrderItem, OrderStatusHistory,
    ParentOrderStatus, SubOrderStatus, to_row
)
from marketplace_orders.models.schemas import ParentOrderCreate, OrderItemCreate
from marketplace_orders.services.aggregation import (
    TERMINAL_STATUSES, can_transition, derive_parent_status, is_terminal
)
from marketplace_orders.services.change_feed import UPDATE, record_change
from marketplace_orders.services.errors import (
    AggregationError, InvalidTransitionError, OrderOwnershipError,
    StoreUnavailableError, store_errors
)
from typing import Dict, List, Optional, Tuple
from opentelemetry import trace
import logging
import secrets
import string
import time

logger = logging.getLogger(__name__)
tracer = trace.get_tracer(__name__)

_NUMBER_ALPHABET = string.ascii_uppercase + string.digits

# Courier-side transitions on the parent
_DELIVERY_TRANSITIONS = {
    ParentOrderStatus.READY_FOR_PICKUP: ParentOrderStatus.OUT_FOR_DELIVERY,
    ParentOrderStatus.OUT_FOR_DELIVERY: ParentOrderStatus.DELIVERED,
}


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def generate_order_number() -> str:
    """PO-<epoch ms>-<6 random chars>"""
    suffix = "".join(secrets.choice(_NUMBER_ALPHABET) for _ in range(6))
    return f"PO-{int(time.time() * 1000)}-{suffix}"


@dataclass
class ClaimOutcome:
    """Result of a courier claim"""
    success: bool
    message: str
    order: Optional[ParentOrder] = None


class OrderService:
    """Order service for business logic"""

    def __init__(self, max_shops_per_order: int = 5):
        self.max_shops_per_order = max_shops_per_order

    def create_parent_order(self, db: Session, order_data: ParentOrderCreate) -> ParentOrder:
        """
        Checkout: create one parent order and one sub-order per shop

        Process:
        1. Group cart lines by shop (first-seen order is the pickup order)
        2. Calculate totals
        3. Create parent, sub-orders, items and PLACED history rows
        4. Commit as one unit of work
        """
        with tracer.start_as_current_span("order_service.create_parent_order") as span:
            span.set_attribute("user.id", order_data.user_id)
            span.set_attribute("items.count", len(order_data.items))

            groups: Dict[str, List[OrderItemCreate]] = {}
            for item in order_data.items:
                groups.setdefault(item.shop_id, []).append(item)

            if len(groups) > self.max_shops_per_order:
                raise ValueError(
                    f"An order can include at most {self.max_shops_per_order} shops "
                    f"(got {len(groups)})"
                )

            subtotal = round(sum(item.price * item.quantity for item in order_data.items), 2)
            total = round(
                subtotal + order_data.total_delivery_fee + order_data.platform_fee - order_data.discount,
                2
            )
            if total < 0:
                raise ValueError("Discount exceeds order total")

            order_number = generate_order_number()
            parent = ParentOrder(
                order_number=order_number,
                user_id=order_data.user_id,
                status=ParentOrderStatus.PLACED,
                subtotal=subtotal,
                total_delivery_fee=order_data.total_delivery_fee,
                platform_fee=order_data.platform_fee,
                discount=order_data.discount,
                total=total,
                route_km=order_data.route_km,
                route_minutes=order_data.route_minutes,
                pickup_sequence=list(groups.keys()),
                customer_name=order_data.customer_name,
                customer_phone=order_data.customer_phone,
                delivery_address=order_data.delivery_address,
                delivery_notes=order_data.delivery_notes,
                payment_method=order_data.payment_method
            )

            for index, (shop_id, items) in enumerate(groups.items()):
                suborder = SubOrder(
                    order_number=f"{order_number}-{index + 1:02d}",
                    shop_id=shop_id,
                    user_id=order_data.user_id,
                    status=SubOrderStatus.PLACED,
                    subtotal=round(sum(i.price * i.quantity for i in items), 2),
                    pickup_sequence_index=index
                )
                for item in items:
                    suborder.items.append(OrderItem(
                        product_id=item.product_id,
                        product_name=item.product_name,
                        quantity=item.quantity,
                        price=item.price,
                        subtotal=round(item.price * item.quantity, 2)
                    ))
                suborder.status_history.append(OrderStatusHistory(
                    status=SubOrderStatus.PLACED,
                    notes="Order placed",
                    created_by=order_data.user_id
                ))
                parent.suborders.append(suborder)

            db.add(parent)
            _commit(db, "create parent order")
            db.refresh(parent)

            span.set_attribute("order.id", parent.id)
            span.set_attribute("order.shops", len(groups))
            logger.info(
                f"Parent order {parent.order_number} created with {len(groups)} sub-order(s), "
                f"total={parent.total}"
            )

            return parent

    @staticmethod
    def get_parent_order(db: Session, parent_id: str) -> Optional[ParentOrder]:
        """Get parent order by ID"""
        with tracer.start_as_current_span("order_service.get_parent_order") as span:
            span.set_attribute("order.id", parent_id)
            with store_errors("get parent order"):
                return db.query(ParentOrder).filter(ParentOrder.id == parent_id).first()

    @staticmethod
    def get_parent_order_by_number(db: Session, order_number: str) -> Optional[ParentOrder]:
        """Get parent order by its human-readable number"""
        with store_errors("get parent order by number"):
            return db.query(ParentOrder).filter(ParentOrder.order_number == order_number).first()

    @staticmethod
    def get_parent_orders(
        db: Session,
        skip: int = 0,
        limit: int = 100,
        status: Optional[ParentOrderStatus] = None,
        user_id: Optional[str] = None,
        delivery_user_id: Optional[str] = None,
        unassigned: Optional[bool] = None
    ) -> Tuple[List[ParentOrder], int]:
        """Get list of parent orders with filters, newest first"""
        with tracer.start_as_current_span("order_service.get_parent_orders") as span:
            query = db.query(ParentOrder)

            if status:
                query = query.filter(ParentOrder.status == status)
                span.set_attribute("filter.status", status.value)
            if user_id:
                query = query.filter(ParentOrder.user_id == user_id)
            if delivery_user_id:
                query = query.filter(ParentOrder.delivery_user_id == delivery_user_id)
            if unassigned is True:
                query = query.filter(ParentOrder.delivery_user_id.is_(None))
            elif unassigned is False:
                query = query.filter(ParentOrder.delivery_user_id.isnot(None))

            with store_errors("list parent orders"):
                total = query.count()
                orders = (
                    query.order_by(ParentOrder.created_at.desc())
                    .offset(skip)
                    .limit(limit)
                    .all()
                )

            span.set_attribute("orders.total", total)
            return orders, total

    @staticmethod
    def get_suborder(db: Session, order_id: str) -> Optional[SubOrder]:
        """Get sub-order by ID"""
        with store_errors("get sub-order"):
            return db.query(SubOrder).filter(SubOrder.id == order_id).first()

    @staticmethod
    def get_suborder_by_number(db: Session, order_number: str) -> Optional[SubOrder]:
        with store_errors("get sub-order by number"):
            return db.query(SubOrder).filter(SubOrder.order_number == order_number).first()

    @staticmethod
    def get_shop_orders(
        db: Session,
        shop_id: str,
        skip: int = 0,
        limit: int = 100,
        status: Optional[SubOrderStatus] = None
    ) -> Tuple[List[SubOrder], int]:
        """Sub-orders for one shop's dashboard, newest first"""
        query = db.query(SubOrder).filter(SubOrder.shop_id == shop_id)
        if status:
            query = query.filter(SubOrder.status == status)

        with store_errors("list shop orders"):
            total = query.count()
            orders = query.order_by(SubOrder.created_at.desc()).offset(skip).limit(limit).all()
        return orders, total

    @staticmethod
    def get_live_queue_snapshot(db: Session) -> List[ParentOrder]:
        """Ready, unassigned parent orders, oldest first"""
        with tracer.start_as_current_span("order_service.live_queue_snapshot") as span:
            with store_errors("live queue snapshot"):
                orders = (
                    db.query(ParentOrder)
                    .filter(ParentOrder.status == ParentOrderStatus.READY_FOR_PICKUP)
                    .filter(ParentOrder.delivery_user_id.is_(None))
                    .order_by(ParentOrder.created_at.asc(), ParentOrder.id.asc())
                    .all()
                )
            span.set_attribute("orders.returned", len(orders))
            return orders

    @staticmethod
    def sync_parent_status(db: Session, parent: ParentOrder) -> ParentOrderStatus:
        """
        Re-derive the parent status from the current sub-order statuses

        Must run inside the caller's transaction, after the parent row lock.
        """
        try:
            db.flush()
            statuses = [
                row[0] for row in
                db.query(SubOrder.status).filter(SubOrder.parent_order_id == parent.id).all()
            ]
            derived = derive_parent_status(statuses, parent.status)
        except (SQLAlchemyError, ValueError) as e:
            logger.error(f"Aggregation failed for parent order {parent.id}: {e}", exc_info=True)
            raise AggregationError(f"Could not derive status for parent order {parent.id}") from e

        if derived != parent.status:
            logger.info(
                f"Parent order {parent.order_number} status: "
                f"{parent.status.value} -> {derived.value}"
            )
            parent.status = derived
            parent.updated_at = _utcnow()
        return derived

    @staticmethod
    def update_suborder_status(
        db: Session,
        order_id: str,
        status: SubOrderStatus,
        shop_id: str,
        notes: Optional[str] = None
    ) -> Optional[SubOrder]:
        """
        Shop-side status change with parent re-derivation

        Raises:
            OrderOwnershipError: shop_id does not own the sub-order
            InvalidTransitionError: the transition is not allowed
            AggregationError: parent status could not be derived
        """
        with tracer.start_as_current_span("order_service.update_suborder_status") as span:
            span.set_attribute("order.id", order_id)
            span.set_attribute("status.new", status.value)
            span.set_attribute("shop.id", shop_id)

            try:
                with store_errors("update sub-order status"):
                    suborder = OrderService.get_suborder(db, order_id)
                    if not suborder:
                        return None

                    parent = _lock_parent(db, suborder.parent_order_id)
                    suborder = (
                        db.query(SubOrder)
                        .filter(SubOrder.id == order_id)
                        .with_for_update()
                        .populate_existing()
                        .one()
                    )

                    if suborder.shop_id != shop_id:
                        raise OrderOwnershipError(
                            f"Shop {shop_id} does not own order {suborder.order_number}"
                        )
                    if not can_transition(suborder.status, status):
                        raise InvalidTransitionError(
                            f"Cannot change order {suborder.order_number} "
                            f"from {suborder.status.value} to {status.value}"
                        )

                    old_status = suborder.status
                    suborder.status = status
                    suborder.updated_at = _utcnow()
                    suborder.status_history.append(OrderStatusHistory(
                        status=status,
                        notes=notes,
                        created_by=shop_id
                    ))

                    parent_status = OrderService.sync_parent_status(db, parent)
                    db.commit()
            except Exception:
                db.rollback()
                raise

            db.refresh(suborder)
            span.set_attribute("status.old", old_status.value)
            span.set_attribute("parent.status", parent_status.value)
            logger.info(
                f"Order {suborder.order_number} status updated: {old_status.value} -> {status.value} "
                f"(parent {parent_status.value})"
            )

            return suborder

    @staticmethod
    def claim_parent_order(db: Session, parent_id: str, courier_id: str) -> Optional[ClaimOutcome]:
        """
        Courier claims a ready, unassigned order

        The write only succeeds while delivery_user_id is still NULL, so of
        two concurrent claims exactly one wins. Losing is reported, not raised.
        """
        with tracer.start_as_current_span("order_service.claim_parent_order") as span:
            span.set_attribute("order.id", parent_id)
            span.set_attribute("courier.id", courier_id)

            try:
                with store_errors("claim parent order"):
                    result = db.execute(
                        update(ParentOrder)
                        .where(ParentOrder.id == parent_id)
                        .where(ParentOrder.delivery_user_id.is_(None))
                        .where(ParentOrder.status == ParentOrderStatus.READY_FOR_PICKUP)
                        .values(delivery_user_id=courier_id, updated_at=_utcnow())
                        .execution_options(synchronize_session=False)
                    )

                    if result.rowcount != 1:
                        db.rollback()
                        parent = OrderService.get_parent_order(db, parent_id)
                        if parent is None:
                            return None
                        span.set_attribute("claim.success", False)
                        logger.info(
                            f"Claim of {parent.order_number} by courier {courier_id} lost: "
                            f"status={parent.status.value}, courier={parent.delivery_user_id}"
                        )
                        return ClaimOutcome(False, "Order is no longer available", parent)

                    parent = (
                        db.query(ParentOrder)
                        .filter(ParentOrder.id == parent_id)
                        .populate_existing()
                        .one()
                    )
                    old_row = to_row(parent)
                    old_row["delivery_user_id"] = None
                    record_change(db, UPDATE, parent, old=old_row)
                    db.commit()
            except Exception:
                db.rollback()
                raise

            db.refresh(parent)
            span.set_attribute("claim.success", True)
            logger.info(f"Order {parent.order_number} claimed by courier {courier_id}")
            return ClaimOutcome(True, "Order claimed", parent)

    @staticmethod
    def update_parent_delivery_status(
        db: Session,
        parent_id: str,
        status: ParentOrderStatus,
        courier_id: str
    ) -> Optional[ParentOrder]:
        """
        Courier-side transitions: picked up (OUT_FOR_DELIVERY) and DELIVERED

        Delivery marks every open sub-order DELIVERED and re-derives the
        parent, which lands on DELIVERED or PARTIALLY_CANCELLED.
        """
        with tracer.start_as_current_span("order_service.update_delivery_status") as span:
            span.set_attribute("order.id", parent_id)
            span.set_attribute("status.new", status.value)

            try:
                with store_errors("update delivery status"):
                    parent = _lock_parent(db, parent_id)
                    if parent is None:
                        return None

                    if parent.delivery_user_id != courier_id:
                        raise OrderOwnershipError(
                            f"Courier {courier_id} is not assigned to order {parent.order_number}"
                        )
                    if _DELIVERY_TRANSITIONS.get(parent.status) != status:
                        raise InvalidTransitionError(
                            f"Cannot change order {parent.order_number} "
                            f"from {parent.status.value} to {status.value}"
                        )

                    old_status = parent.status
                    now = _utcnow()
                    if status == ParentOrderStatus.OUT_FOR_DELIVERY:
                        parent.status = status
                        parent.updated_at = now
                    else:
                        for suborder in parent.suborders:
                            if suborder.status in (SubOrderStatus.DELIVERED, SubOrderStatus.CANCELLED):
                                continue
                            suborder.status = SubOrderStatus.DELIVERED
                            suborder.updated_at = now
                            suborder.status_history.append(OrderStatusHistory(
                                status=SubOrderStatus.DELIVERED,
                                notes="Delivered to customer",
                                created_by=courier_id
                            ))
                        parent.delivered_at = now
                        OrderService.sync_parent_status(db, parent)

                    db.commit()
            except Exception:
                db.rollback()
                raise

            db.refresh(parent)
            logger.info(
                f"Order {parent.order_number} delivery status: "
                f"{old_status.value} -> {parent.status.value} (courier {courier_id})"
            )
            return parent

    @staticmethod
    def cancel_parent_order(
        db: Session,
        parent_id: str,
        notes: Optional[str] = None,
        cancelled_by: Optional[str] = None
    ) -> Optional[ParentOrder]:
        """Force-cancel a parent order and every open sub-order"""
        with tracer.start_as_current_span("order_service.cancel_parent_order") as span:
            span.set_attribute("order.id", parent_id)

            try:
                with store_errors("cancel parent order"):
                    parent = _lock_parent(db, parent_id)
                    if parent is None:
                        return None

                    if is_terminal(parent.status):
                        raise InvalidTransitionError(
                            f"Order {parent.order_number} is already {parent.status.value}"
                        )

                    now = _utcnow()
                    for suborder in parent.suborders:
                        if suborder.status in (SubOrderStatus.DELIVERED, SubOrderStatus.CANCELLED):
                            continue
                        suborder.status = SubOrderStatus.CANCELLED
                        suborder.updated_at = now
                        suborder.status_history.append(OrderStatusHistory(
                            status=SubOrderStatus.CANCELLED,
                            notes=notes or "Parent order cancelled",
                            created_by=cancelled_by
                        ))
                    parent.status = ParentOrderStatus.CANCELLED
                    parent.updated_at = now
                    db.commit()
            except Exception:
                db.rollback()
                raise

            db.refresh(parent)
            logger.warning(f"Order {parent.order_number} cancelled (by {cancelled_by or 'system'})")
            return parent

    @staticmethod
    def get_courier_active_orders(db: Session, courier_id: str) -> List[ParentOrder]:
        """Orders assigned to a courier that are still open, newest first"""
        with store_errors("courier active orders"):
            return (
                db.query(ParentOrder)
                .filter(ParentOrder.delivery_user_id == courier_id)
                .filter(ParentOrder.status.notin_(list(TERMINAL_STATUSES)))
                .order_by(ParentOrder.created_at.desc())
                .all()
            )

    @staticmethod
    def get_courier_history(db: Session, courier_id: str, limit: int = 50) -> List[ParentOrder]:
        """Closed orders for a courier, most recently updated first"""
        with store_errors("courier history"):
            return (
                db.query(ParentOrder)
                .filter(ParentOrder.delivery_user_id == courier_id)
                .filter(ParentOrder.status.in_(list(TERMINAL_STATUSES)))
                .order_by(ParentOrder.updated_at.desc())
                .limit(limit)
                .all()
            )

    @staticmethod
    def get_courier_stats(db: Session, courier_id: str, now: Optional[datetime] = None) -> Tuple[float, int]:
        """Delivery fees earned and orders delivered since the start of the month"""
        now = now or _utcnow()
        month_start = now.replace(day=1, hour=0, minute=0, second=0, microsecond=0)

        with store_errors("courier stats"):
            earnings, delivered = (
                db.query(
                    func.coalesce(func.sum(ParentOrder.total_delivery_fee), 0.0),
                    func.count(ParentOrder.id)
                )
                .filter(ParentOrder.delivery_user_id == courier_id)
                .filter(ParentOrder.status == ParentOrderStatus.DELIVERED)
                .filter(ParentOrder.delivered_at >= month_start)
                .one()
            )
        return float(earnings), int(delivered)


def _lock_parent(db: Session, parent_id: str) -> Optional[ParentOrder]:
    """SELECT ... FOR UPDATE on the parent row, refreshing any cached copy"""
    return (
        db.query(ParentOrder)
        .filter(ParentOrder.id == parent_id)
        .with_for_update()
        .populate_existing()
        .first()
    )


def _commit(db: Session, operation: str):
    try:
        with store_errors(operation):
            db.commit()
    except StoreUnavailableError:
        db.rollback()
        logger.error(f"{operation} failed: store unavailable")
        raise
