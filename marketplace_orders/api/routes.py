# marketplace_orders/api/routes.py
"""
FastAPI routes for Order Hub
"""
from fastapi import APIRouter, Depends, HTTPException, Query, WebSocket, WebSocketDisconnect, status
from functools import partial
from sqlalchemy.orm import Session, sessionmaker
from marketplace_orders.db.database import get_db, get_session_factory
from marketplace_orders.services.order_service import OrderService
from marketplace_orders.services.change_feed import ChangeFeed
from marketplace_orders.services.diagnostics import DiagnosticsService
from marketplace_orders.services.errors import InvalidTransitionError, OrderOwnershipError
from marketplace_orders.services.live_queue import LiveQueueSession, load_live_queue_rows
from marketplace_orders.models.schemas import (
    CancelRequest,
    ClaimRequest,
    ClaimResult,
    CourierStats,
    DeliveryStatusUpdate,
    DesyncScanResponse,
    LiveQueueResponse,
    OrderInspection,
    ParentOrderCreate,
    ParentOrderListResponse,
    ParentOrderResponse,
    ParentOrderSummary,
    SubOrderResponse,
    SubOrderStatusUpdate,
    SubOrderWithParentResponse,
)
from marketplace_orders.models.order import ParentOrderStatus, SubOrderStatus
from marketplace_orders.config import settings
from typing import List, Optional
import asyncio
import logging

logger = logging.getLogger(__name__)

# Create router
router = APIRouter(prefix="/api/v1", tags=["orders"])

# Change feed (will be initialized in main.py)
change_feed: Optional[ChangeFeed] = None


def get_change_feed() -> ChangeFeed:
    """Dependency for the change feed"""
    return change_feed


def get_order_service() -> OrderService:
    """Dependency for Order Service"""
    return OrderService(max_shops_per_order=settings.max_shops_per_order)


def _not_found(what: str, order_id: str) -> HTTPException:
    logger.warning(f"{what} {order_id} not found")
    return HTTPException(
        status_code=status.HTTP_404_NOT_FOUND,
        detail=f"{what} with id {order_id} not found"
    )


def _rejected(e: Exception) -> HTTPException:
    if isinstance(e, OrderOwnershipError):
        logger.warning(f"Forbidden: {e}")
        return HTTPException(status_code=status.HTTP_403_FORBIDDEN, detail=str(e))
    logger.warning(f"Rejected: {e}")
    return HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


# ---------------------------------------------------------------------------
# Parent orders
# ---------------------------------------------------------------------------

@router.post(
    "/parent-orders",
    response_model=ParentOrderResponse,
    status_code=status.HTTP_201_CREATED
)
def create_parent_order(
    order: ParentOrderCreate,
    db: Session = Depends(get_db),
    order_service: OrderService = Depends(get_order_service)
):
    """
    Checkout: create a parent order split into one sub-order per shop

    - **user_id**: Customer ID (required)
    - **items**: Cart lines, each with its **shop_id** (at least one required)
    - **total_delivery_fee**, **platform_fee**, **discount**: fee snapshot
    - **route_km**, **route_minutes**: routing snapshot (optional)
    """
    logger.info(f"Creating parent order for user {order.user_id}")

    try:
        return order_service.create_parent_order(db, order)
    except ValueError as e:
        logger.error(f"Validation error: {e}")
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail=str(e))


@router.get("/parent-orders", response_model=ParentOrderListResponse)
def list_parent_orders(
    skip: int = Query(0, ge=0, description="Number of items to skip"),
    limit: int = Query(100, ge=1, le=1000, description="Max items to return"),
    status_filter: Optional[ParentOrderStatus] = Query(None, alias="status", description="Filter by status"),
    user_id: Optional[str] = Query(None, description="Filter by customer"),
    delivery_user_id: Optional[str] = Query(None, description="Filter by courier"),
    unassigned: Optional[bool] = Query(None, description="Only orders without (true) or with (false) a courier"),
    db: Session = Depends(get_db)
):
    """List parent orders, newest first"""
    orders, total = OrderService.get_parent_orders(
        db=db,
        skip=skip,
        limit=limit,
        status=status_filter,
        user_id=user_id,
        delivery_user_id=delivery_user_id,
        unassigned=unassigned
    )

    return ParentOrderListResponse(
        total=total,
        orders=[ParentOrderSummary.model_validate(order) for order in orders],
        page=skip // limit + 1,
        page_size=limit
    )


@router.get("/parent-orders/{parent_id}", response_model=ParentOrderResponse)
def get_parent_order(parent_id: str, db: Session = Depends(get_db)):
    """Get a parent order with its sub-orders"""
    parent = OrderService.get_parent_order(db, parent_id)
    if not parent:
        raise _not_found("Parent order", parent_id)
    return parent


@router.post("/parent-orders/{parent_id}/claim", response_model=ClaimResult)
def claim_parent_order(
    parent_id: str,
    claim: ClaimRequest,
    db: Session = Depends(get_db)
):
    """
    Courier claims a ready order

    Losing a race to another courier returns **success: false**; refresh the
    live queue instead of retrying.
    """
    logger.info(f"Courier {claim.courier_id} claiming parent order {parent_id}")

    outcome = OrderService.claim_parent_order(db, parent_id, claim.courier_id)
    if outcome is None:
        raise _not_found("Parent order", parent_id)

    return ClaimResult(
        success=outcome.success,
        message=outcome.message,
        order=ParentOrderSummary.model_validate(outcome.order) if outcome.order else None
    )


@router.patch("/parent-orders/{parent_id}/status", response_model=ParentOrderResponse)
def update_delivery_status(
    parent_id: str,
    status_update: DeliveryStatusUpdate,
    db: Session = Depends(get_db)
):
    """
    Courier-side status change

    Available statuses:
    - OUT_FOR_DELIVERY (from READY_FOR_PICKUP)
    - DELIVERED (from OUT_FOR_DELIVERY)
    """
    try:
        parent = OrderService.update_parent_delivery_status(
            db,
            parent_id,
            status_update.status,
            status_update.courier_id
        )
    except (InvalidTransitionError, OrderOwnershipError) as e:
        raise _rejected(e)

    if not parent:
        raise _not_found("Parent order", parent_id)
    return parent


@router.post("/parent-orders/{parent_id}/cancel", response_model=ParentOrderResponse)
def cancel_parent_order(
    parent_id: str,
    cancel: Optional[CancelRequest] = None,
    db: Session = Depends(get_db)
):
    """Cancel a parent order and all its open sub-orders"""
    cancel = cancel or CancelRequest()
    try:
        parent = OrderService.cancel_parent_order(db, parent_id, cancel.notes, cancel.cancelled_by)
    except InvalidTransitionError as e:
        raise _rejected(e)

    if not parent:
        raise _not_found("Parent order", parent_id)
    return parent


# ---------------------------------------------------------------------------
# Sub-orders (shop side)
# ---------------------------------------------------------------------------

@router.get("/orders/{order_id}", response_model=SubOrderWithParentResponse)
def get_suborder(order_id: str, db: Session = Depends(get_db)):
    """Get a sub-order with its parent"""
    suborder = OrderService.get_suborder(db, order_id)
    if not suborder:
        raise _not_found("Order", order_id)
    return suborder


@router.patch("/orders/{order_id}/status", response_model=SubOrderWithParentResponse)
def update_suborder_status(
    order_id: str,
    status_update: SubOrderStatusUpdate,
    db: Session = Depends(get_db)
):
    """
    Shop updates its sub-order; the parent status is re-derived in the same transaction

    Allowed transitions:
    - PLACED -> CONFIRMED | CANCELLED
    - CONFIRMED -> PREPARING | CANCELLED
    - PREPARING -> READY_FOR_PICKUP | CANCELLED
    - READY_FOR_PICKUP -> CANCELLED

    DELIVERED is set by the courier (PATCH /parent-orders/{id}/status).
    """
    logger.info(f"Shop {status_update.shop_id} updating order {order_id} to {status_update.status.value}")

    try:
        suborder = OrderService.update_suborder_status(
            db,
            order_id,
            status_update.status,
            status_update.shop_id,
            status_update.notes
        )
    except (InvalidTransitionError, OrderOwnershipError) as e:
        raise _rejected(e)

    if not suborder:
        raise _not_found("Order", order_id)
    return suborder


@router.get("/shops/{shop_id}/orders", response_model=List[SubOrderResponse])
def get_shop_orders(
    shop_id: str,
    skip: int = Query(0, ge=0),
    limit: int = Query(100, ge=1, le=1000),
    status_filter: Optional[SubOrderStatus] = Query(None, alias="status"),
    db: Session = Depends(get_db)
):
    """Sub-orders for a shop dashboard"""
    orders, _ = OrderService.get_shop_orders(db, shop_id, skip=skip, limit=limit, status=status_filter)
    return orders


# ---------------------------------------------------------------------------
# Couriers
# ---------------------------------------------------------------------------

@router.get("/couriers/{courier_id}/orders", response_model=List[ParentOrderResponse])
def get_courier_orders(courier_id: str, db: Session = Depends(get_db)):
    """Open orders assigned to a courier"""
    return OrderService.get_courier_active_orders(db, courier_id)


@router.get("/couriers/{courier_id}/history", response_model=List[ParentOrderSummary])
def get_courier_history(
    courier_id: str,
    limit: int = Query(50, ge=1, le=500),
    db: Session = Depends(get_db)
):
    """Delivered and cancelled orders for a courier"""
    return OrderService.get_courier_history(db, courier_id, limit=limit)


@router.get("/couriers/{courier_id}/stats", response_model=CourierStats)
def get_courier_stats(courier_id: str, db: Session = Depends(get_db)):
    """Earnings and delivered count for the current month"""
    earnings, count = OrderService.get_courier_stats(db, courier_id)
    return CourierStats(courier_id=courier_id, monthly_earnings=earnings, monthly_count=count)


# ---------------------------------------------------------------------------
# Live queue
# ---------------------------------------------------------------------------

@router.get("/live-queue", response_model=LiveQueueResponse)
def get_live_queue(db: Session = Depends(get_db)):
    """Ready, unassigned parent orders, oldest first"""
    orders = OrderService.get_live_queue_snapshot(db)
    return LiveQueueResponse(
        total=len(orders),
        orders=[ParentOrderSummary.model_validate(order) for order in orders]
    )


def _queue_message(reason: str, entries: list) -> dict:
    return {"type": "queue", "reason": reason, "total": len(entries), "orders": entries}


async def _listen_for_commands(websocket: WebSocket, queue_session: LiveQueueSession):
    """Client messages: "resync" reloads the snapshot; disconnect tears down"""
    try:
        while True:
            message = await websocket.receive_text()
            if message.strip().lower() == "resync":
                queue_session.request_resync()
    except WebSocketDisconnect:
        queue_session.close()


@router.websocket("/live-queue/ws")
async def live_queue_socket(
    websocket: WebSocket,
    session_factory: sessionmaker = Depends(get_session_factory),
    feed: ChangeFeed = Depends(get_change_feed)
):
    """
    Live queue stream for couriers

    Sends the full queue on connect and after every change:
    {"type": "queue", "reason": "snapshot" | "event" | "resync", "orders": [...]}
    """
    await websocket.accept()
    queue_session = LiveQueueSession(
        feed,
        partial(load_live_queue_rows, session_factory),
        max_pending=settings.live_queue_max_pending,
        resync_seconds=settings.live_queue_resync_seconds
    )
    listener = None

    try:
        entries = await queue_session.open()
        await websocket.send_json(_queue_message("snapshot", entries))
        listener = asyncio.create_task(_listen_for_commands(websocket, queue_session))

        while True:
            reason = await queue_session.next_update()
            if reason is None:
                break
            await websocket.send_json(_queue_message(reason, queue_session.projection.entries()))
    except WebSocketDisconnect:
        logger.info("Live queue client disconnected")
    finally:
        queue_session.close()
        if listener is not None:
            listener.cancel()


# ---------------------------------------------------------------------------
# Diagnostics
# ---------------------------------------------------------------------------

@router.get("/diagnostics/desync", response_model=DesyncScanResponse, tags=["diagnostics"])
def scan_desync(
    limit: int = Query(settings.diagnostics_recent_limit, ge=1, le=1000),
    db: Session = Depends(get_db)
):
    """Recent parent orders whose stored status disagrees with their sub-orders"""
    return DiagnosticsService.find_desynced_orders(db, limit=limit)


@router.get("/diagnostics/orders/{order_number}", response_model=OrderInspection, tags=["diagnostics"])
def inspect_order(order_number: str, db: Session = Depends(get_db)):
    """Look up an order number as a sub-order or parent and check its status"""
    inspection = DiagnosticsService.inspect_order(db, order_number)
    if not inspection:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No order with number {order_number}"
        )
    return inspection
