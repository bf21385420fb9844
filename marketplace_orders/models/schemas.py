# marketplace_orders/models/schemas.py
"""
Pydantic schemas for Order Hub
"""
from pydantic import BaseModel, Field, ConfigDict
from typing import Any, List, Optional
from datetime import datetime
from marketplace_orders.models.order import ParentOrderStatus, SubOrderStatus


class OrderItemCreate(BaseModel):
    """Schema for one cart line at checkout"""
    shop_id: str = Field(..., min_length=1, description="Shop that fulfils this line")
    product_id: str = Field(..., min_length=1, description="Product ID")
    product_name: str = Field(..., min_length=1, max_length=255)
    quantity: int = Field(..., gt=0, description="Quantity")
    price: float = Field(..., ge=0, description="Unit price at checkout")


class OrderItemResponse(BaseModel):
    """Schema for order item response"""
    id: int
    product_id: str
    product_name: str
    quantity: int
    price: float
    subtotal: float

    model_config = ConfigDict(from_attributes=True)


class ParentOrderCreate(BaseModel):
    """Schema for checkout: one parent order fanned out per shop"""
    user_id: str = Field(..., min_length=1)
    customer_name: str = Field(..., min_length=1, max_length=255)
    customer_phone: str = Field(..., min_length=3, max_length=32)
    delivery_address: str = Field(..., min_length=1, max_length=500)
    delivery_notes: Optional[str] = None
    payment_method: str = "CASH"
    total_delivery_fee: float = Field(0.0, ge=0)
    platform_fee: float = Field(0.0, ge=0)
    discount: float = Field(0.0, ge=0)
    route_km: Optional[float] = Field(None, ge=0)
    route_minutes: Optional[float] = Field(None, ge=0)
    items: List[OrderItemCreate] = Field(..., min_length=1, description="At least one item required")


class StatusHistoryResponse(BaseModel):
    """Schema for a sub-order status history row"""
    status: SubOrderStatus
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime

    model_config = ConfigDict(from_attributes=True)


class SubOrderStatusUpdate(BaseModel):
    """Schema for a shop updating its sub-order"""
    status: SubOrderStatus
    shop_id: str = Field(..., min_length=1, description="Acting shop; must own the order")
    notes: Optional[str] = None


class ParentOrderSummary(BaseModel):
    """Parent order without nested sub-orders (also the live-queue entry shape)"""
    id: str
    order_number: str
    user_id: str
    status: ParentOrderStatus
    delivery_user_id: Optional[str] = None
    subtotal: float
    total_delivery_fee: float
    platform_fee: float
    discount: float
    total: float
    route_km: Optional[float] = None
    route_minutes: Optional[float] = None
    pickup_sequence: Optional[Any] = None
    customer_name: str
    customer_phone: str
    delivery_address: str
    delivery_notes: Optional[str] = None
    payment_method: str
    delivered_at: Optional[datetime] = None
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SubOrderResponse(BaseModel):
    """Schema for sub-order response"""
    id: str
    order_number: str
    parent_order_id: str
    shop_id: str
    status: SubOrderStatus
    subtotal: float
    pickup_sequence_index: int
    items: List[OrderItemResponse] = []
    status_history: List[StatusHistoryResponse] = []
    created_at: datetime
    updated_at: Optional[datetime] = None

    model_config = ConfigDict(from_attributes=True)


class SubOrderWithParentResponse(SubOrderResponse):
    """Sub-order with its parent expanded"""
    parent: Optional[ParentOrderSummary] = None


class ParentOrderResponse(ParentOrderSummary):
    """Parent order with its sub-orders expanded"""
    suborders: List[SubOrderResponse] = []


class ParentOrderListResponse(BaseModel):
    """Schema for list of parent orders"""
    total: int
    orders: List[ParentOrderSummary]
    page: int
    page_size: int


class ClaimRequest(BaseModel):
    """Courier claiming a ready order"""
    courier_id: str = Field(..., min_length=1)


class ClaimResult(BaseModel):
    """Outcome of a claim; losing a race is not an error"""
    success: bool
    message: str
    order: Optional[ParentOrderSummary] = None


class DeliveryStatusUpdate(BaseModel):
    """Courier-side parent transition"""
    status: ParentOrderStatus
    courier_id: str = Field(..., min_length=1)


class CancelRequest(BaseModel):
    """Forced cancellation of a whole parent order"""
    notes: Optional[str] = None
    cancelled_by: Optional[str] = None


class CourierStats(BaseModel):
    """Monthly courier earnings"""
    courier_id: str
    monthly_earnings: float
    monthly_count: int


class LiveQueueResponse(BaseModel):
    """Snapshot of ready, unassigned parent orders"""
    total: int
    orders: List[ParentOrderSummary]


class DesyncReport(BaseModel):
    """Stored parent status compared with the status derived from its sub-orders"""
    parent_order_id: str
    order_number: str
    stored_status: ParentOrderStatus
    derived_status: ParentOrderStatus
    suborder_statuses: List[SubOrderStatus]
    in_sync: bool
    visible_in_live_queue: bool
    created_at: Optional[datetime] = None


class DesyncScanResponse(BaseModel):
    """Result of scanning recent parent orders"""
    scanned: int
    desynced: int
    reports: List[DesyncReport]


class OrderInspection(BaseModel):
    """What an order number resolves to"""
    order_number: str
    suborder: Optional[SubOrderResponse] = None
    parent: Optional[ParentOrderSummary] = None
    report: Optional[DesyncReport] = None

