import os

os.environ.setdefault("OTEL_ENABLED", "false")
os.environ.setdefault("LOG_FORMAT", "text")
os.environ.setdefault("DATABASE_URL", "sqlite://")

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from marketplace_orders.api import routes
from marketplace_orders.db.database import Base, get_db, get_session_factory
from marketplace_orders.models.order import SubOrderStatus
from marketplace_orders.models.schemas import ParentOrderCreate
from marketplace_orders.services.change_feed import ChangeFeed
from marketplace_orders.services.order_service import OrderService

# Shop-side path from PLACED up to READY_FOR_PICKUP
SHOP_PATH = [
    SubOrderStatus.CONFIRMED,
    SubOrderStatus.PREPARING,
    SubOrderStatus.READY_FOR_PICKUP,
]


@pytest.fixture
def engine():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool
    )
    Base.metadata.create_all(bind=engine)
    yield engine
    Base.metadata.drop_all(bind=engine)
    engine.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@pytest.fixture
def feed(session_factory):
    feed = ChangeFeed()
    feed.attach(session_factory)
    yield feed
    feed.detach(session_factory)


@pytest.fixture
def db(session_factory, feed):
    session = session_factory()
    yield session
    session.close()


@pytest.fixture
def checkout_payload():
    def build(shops=("shop-a", "shop-b"), user_id="cust-1", **overrides):
        payload = {
            "user_id": user_id,
            "customer_name": "Rami Haddad",
            "customer_phone": "0599000111",
            "delivery_address": "12 Market Street",
            "total_delivery_fee": 12.5,
            "platform_fee": 1.0,
            "route_km": 4.2,
            "items": [
                {
                    "shop_id": shop_id,
                    "product_id": f"prod-{index}",
                    "product_name": f"Product {index}",
                    "quantity": 2,
                    "price": 5.0
                }
                for index, shop_id in enumerate(shops)
            ]
        }
        payload.update(overrides)
        return payload
    return build


@pytest.fixture
def make_order(db, checkout_payload):
    """Create a parent order through checkout"""
    def create(shops=("shop-a", "shop-b"), **overrides):
        data = ParentOrderCreate(**checkout_payload(shops=shops, **overrides))
        return OrderService(max_shops_per_order=5).create_parent_order(db, data)
    return create


@pytest.fixture
def advance(db):
    """Walk a sub-order along the shop path up to a target status"""
    def move(suborder, target: SubOrderStatus):
        result = None
        path = SHOP_PATH
        if suborder.status in SHOP_PATH:
            path = SHOP_PATH[SHOP_PATH.index(suborder.status) + 1:]
        for status in path:
            result = OrderService.update_suborder_status(db, suborder.id, status, suborder.shop_id)
            if status == target:
                break
        return result
    return move


@pytest.fixture
def make_ready_order(make_order, advance, db):
    """A parent order whose sub-orders are all READY_FOR_PICKUP"""
    def create(shops=("shop-a",), **overrides):
        parent = make_order(shops=shops, **overrides)
        for suborder in list(parent.suborders):
            advance(suborder, SubOrderStatus.READY_FOR_PICKUP)
        db.refresh(parent)
        return parent
    return create


@pytest.fixture
def client(session_factory, feed):
    from marketplace_orders.main import app

    def override_get_db():
        session = session_factory()
        try:
            yield session
        finally:
            session.close()

    app.dependency_overrides[get_db] = override_get_db
    app.dependency_overrides[get_session_factory] = lambda: session_factory
    app.dependency_overrides[routes.get_change_feed] = lambda: feed

    yield TestClient(app)

    app.dependency_overrides.clear()
