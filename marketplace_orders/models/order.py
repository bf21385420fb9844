# marketplace_orders/models/order.py
"""
Order database models

A parent order is one checkout; it owns one sub-order per shop in the cart.
"""
from sqlalchemy import (
    Column, Integer, String, Float, DateTime, Text, JSON,
    Enum as SQLEnum, ForeignKey, inspect
)
from sqlalchemy.orm import relationship
from marketplace_orders.db.database import Base
from datetime import datetime, timezone
from typing import Any, Dict
import enum
import uuid


def _uuid() -> str:
    return str(uuid.uuid4())


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class ParentOrderStatus(str, enum.Enum):
    """Parent order status, derived from the sub-order statuses"""
    PLACED = "PLACED"
    PROCESSING = "PROCESSING"
    PARTIALLY_READY = "PARTIALLY_READY"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    OUT_FOR_DELIVERY = "OUT_FOR_DELIVERY"
    DELIVERED = "DELIVERED"
    PARTIALLY_CANCELLED = "PARTIALLY_CANCELLED"
    CANCELLED = "CANCELLED"


class SubOrderStatus(str, enum.Enum):
    """Per-shop order status, mutated by the owning shop"""
    PLACED = "PLACED"
    CONFIRMED = "CONFIRMED"
    PREPARING = "PREPARING"
    READY_FOR_PICKUP = "READY_FOR_PICKUP"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"


class ParentOrder(Base):
    """Parent order model"""
    __tablename__ = "parent_orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_number = Column(String(64), unique=True, nullable=False, index=True)
    user_id = Column(String(64), nullable=False, index=True)
    status = Column(
        SQLEnum(ParentOrderStatus, name="parent_order_status"),
        default=ParentOrderStatus.PLACED,
        nullable=False,
        index=True
    )

    # Money
    subtotal = Column(Float, nullable=False, default=0.0)
    total_delivery_fee = Column(Float, nullable=False, default=0.0)
    platform_fee = Column(Float, nullable=False, default=0.0)
    discount = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False, default=0.0)

    # Routing snapshot taken at checkout
    route_km = Column(Float, nullable=True)
    route_minutes = Column(Float, nullable=True)
    pickup_sequence = Column(JSON, nullable=True)

    # Customer info
    customer_name = Column(String(255), nullable=False)
    customer_phone = Column(String(32), nullable=False)
    delivery_address = Column(String(500), nullable=False)
    delivery_notes = Column(Text, nullable=True)
    payment_method = Column(String(32), nullable=False, default="CASH")

    # Courier
    delivery_user_id = Column(String(64), nullable=True, index=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False, index=True)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    suborders = relationship(
        "SubOrder",
        back_populates="parent",
        cascade="all, delete-orphan",
        order_by="SubOrder.pickup_sequence_index"
    )

    def __repr__(self):
        return f"<ParentOrder(id={self.id}, number={self.order_number}, status={self.status})>"


class SubOrder(Base):
    """Sub-order model: one shop's portion of a parent order"""
    __tablename__ = "orders"

    id = Column(String(36), primary_key=True, default=_uuid)
    order_number = Column(String(80), unique=True, nullable=False, index=True)
    parent_order_id = Column(String(36), ForeignKey("parent_orders.id"), nullable=False, index=True)
    shop_id = Column(String(64), nullable=False, index=True)
    user_id = Column(String(64), nullable=False)
    status = Column(
        SQLEnum(SubOrderStatus, name="order_status"),
        default=SubOrderStatus.PLACED,
        nullable=False
    )
    subtotal = Column(Float, nullable=False, default=0.0)
    pickup_sequence_index = Column(Integer, nullable=False, default=0)

    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)
    updated_at = Column(DateTime(timezone=True), default=_utcnow, onupdate=_utcnow, nullable=False)

    parent = relationship("ParentOrder", back_populates="suborders")
    items = relationship("OrderItem", back_populates="order", cascade="all, delete-orphan")
    status_history = relationship(
        "OrderStatusHistory",
        back_populates="order",
        cascade="all, delete-orphan",
        order_by="OrderStatusHistory.id"
    )

    def __repr__(self):
        return f"<SubOrder(id={self.id}, shop={self.shop_id}, status={self.status})>"


class OrderItem(Base):
    """Order item model"""
    __tablename__ = "order_items"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    product_id = Column(String(64), nullable=False, index=True)
    product_name = Column(String(255), nullable=False)
    quantity = Column(Integer, nullable=False)
    price = Column(Float, nullable=False)
    subtotal = Column(Float, nullable=False)

    created_at = Column(DateTime(timezone=True), default=_utcnow)

    order = relationship("SubOrder", back_populates="items")

    def __repr__(self):
        return f"<OrderItem(id={self.id}, product_id={self.product_id}, qty={self.quantity})>"


class OrderStatusHistory(Base):
    """Audit trail of sub-order status changes"""
    __tablename__ = "order_status_history"

    id = Column(Integer, primary_key=True, index=True)
    order_id = Column(String(36), ForeignKey("orders.id"), nullable=False, index=True)
    status = Column(SQLEnum(SubOrderStatus, name="order_status"), nullable=False)
    notes = Column(Text, nullable=True)
    created_by = Column(String(64), nullable=True)
    created_at = Column(DateTime(timezone=True), default=_utcnow, nullable=False)

    order = relationship("SubOrder", back_populates="status_history")


def to_row(obj: Any) -> Dict[str, Any]:
    """
    Column values of a mapped object as a JSON-friendly dict.

    Reads the already-loaded state only, so it is safe inside flush events.
    """
    state = inspect(obj)
    row = {}
    for attr in state.mapper.column_attrs:
        row[attr.key] = jsonable_value(state.dict.get(attr.key))
    return row


def jsonable_value(value: Any) -> Any:
    if isinstance(value, enum.Enum):
        return value.value
    if isinstance(value, datetime):
        return value.isoformat()
    return value
