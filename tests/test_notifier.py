"""Courier "order ready" notifications"""
import json
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor

import httpx
import pytest

from marketplace_orders.models.order import SubOrderStatus
from marketplace_orders.services.change_feed import INSERT, UPDATE, ChangeEvent
from marketplace_orders.services.notifier import CourierNotifier, NotificationSettings
from marketplace_orders.services.order_service import OrderService


class ImmediateExecutor:
    """Runs submitted work inline so tests see the result straight away"""

    def submit(self, fn, *args, **kwargs):
        future = Future()
        future.set_result(fn(*args, **kwargs))
        return future

    def shutdown(self, wait=True, cancel_futures=False):
        pass


ENABLED = NotificationSettings(
    enabled=True,
    bot_token="test-token",
    courier_chat_ids=("1001", "1002"),
    api_base_url="https://telegram.test"
)


@pytest.fixture
def sent():
    return []


@pytest.fixture
def notifier_factory(session_factory, sent):
    created = []

    def build(notification_settings=ENABLED, status_code=200, executor=None, on_request=None):
        def handler(request):
            if on_request is not None:
                on_request(request)
            sent.append(request)
            return httpx.Response(status_code, json={"ok": status_code == 200})

        notifier = CourierNotifier(
            notification_settings,
            session_factory,
            client=httpx.Client(transport=httpx.MockTransport(handler)),
            executor=executor or ImmediateExecutor()
        )
        created.append(notifier)
        return notifier

    yield build
    for notifier in created:
        notifier.stop()


def test_ready_suborder_notifies_every_courier(feed, make_order, advance, notifier_factory, sent):
    notifier = notifier_factory()
    notifier.start(feed)

    parent = make_order(shops=("shop-a",))
    advance(parent.suborders[0], SubOrderStatus.READY_FOR_PICKUP)

    assert len(sent) == 2
    assert str(sent[0].url) == "https://telegram.test/bottest-token/sendMessage"
    bodies = [json.loads(request.content) for request in sent]
    assert [body["chat_id"] for body in bodies] == ["1001", "1002"]
    assert parent.order_number in bodies[0]["text"]
    assert notifier.get_stats()["notifications_sent"] == 2


def test_earlier_transitions_do_not_notify(feed, make_order, advance, notifier_factory, sent):
    notifier_factory().start(feed)
    parent = make_order(shops=("shop-a",))
    advance(parent.suborders[0], SubOrderStatus.PREPARING)
    assert sent == []


def test_claimed_parent_is_skipped(db, make_ready_order, notifier_factory, sent):
    notifier = notifier_factory()
    parent = make_ready_order()
    OrderService.claim_parent_order(db, parent.id, "courier-1")

    assert notifier.notify_ready(parent.id) is False
    assert sent == []
    assert notifier.get_stats()["notifications_skipped"] == 1


def test_disabled_notifier_does_nothing(feed, make_order, advance, notifier_factory, sent):
    notifier = notifier_factory(NotificationSettings())
    notifier.start(feed)
    assert not notifier.is_enabled()

    parent = make_order(shops=("shop-a",))
    advance(parent.suborders[0], SubOrderStatus.READY_FOR_PICKUP)
    assert sent == []


def test_missing_chat_ids_disable_notifier(notifier_factory):
    settings = NotificationSettings(enabled=True, bot_token="test-token")
    assert not notifier_factory(settings).is_enabled()


def test_failed_sends_are_counted(notifier_factory, sent):
    notifier = notifier_factory(status_code=500)
    assert notifier.broadcast("hello") is False
    assert len(sent) == 2
    assert notifier.get_stats()["notifications_failed"] == 2


def test_stop_waits_for_running_broadcast(notifier_factory, sent):
    started = threading.Event()

    def slow_send(request):
        started.set()
        time.sleep(0.2)

    notifier = notifier_factory(executor=ThreadPoolExecutor(max_workers=1), on_request=slow_send)
    future = notifier._executor.submit(notifier.broadcast, "hello")
    assert started.wait(timeout=5)

    notifier.stop()

    assert future.result(timeout=5) is True
    assert len(sent) == 2
    assert notifier.get_stats()["notifications_sent"] == 2
    assert notifier.get_stats()["notifications_failed"] == 0


def test_ready_transition_detection():
    ready = {"id": "S1", "parent_order_id": "P1", "status": "READY_FOR_PICKUP"}
    assert CourierNotifier.is_ready_transition(ChangeEvent(INSERT, "orders", new=ready))
    assert CourierNotifier.is_ready_transition(
        ChangeEvent(UPDATE, "orders", new=ready, old={**ready, "status": "PREPARING"})
    )
    assert not CourierNotifier.is_ready_transition(ChangeEvent(UPDATE, "orders", new=ready, old=ready))
    assert not CourierNotifier.is_ready_transition(
        ChangeEvent(UPDATE, "orders", new={**ready, "status": "DELIVERED"}, old=ready)
    )


def test_settings_from_app_settings():
    from marketplace_orders.config import Settings

    app_settings = Settings(
        notifications_enabled=True,
        telegram_bot_token="abc",
        courier_chat_ids=["1", "2"]
    )
    notification_settings = NotificationSettings.from_settings(app_settings)
    assert notification_settings.enabled
    assert notification_settings.courier_chat_ids == ("1", "2")
