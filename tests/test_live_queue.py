"""Live queue reducer, projection and per-connection session"""
import asyncio
import random

from marketplace_orders.models.order import SubOrderStatus
from marketplace_orders.services.change_feed import DELETE, INSERT, UPDATE, ChangeEvent, ChangeFeed
from marketplace_orders.services.live_queue import (
    LiveQueueProjection, LiveQueueSession, apply_event, is_queue_member,
    load_live_queue_rows, replay
)
from marketplace_orders.services.order_service import OrderService

READY = "READY_FOR_PICKUP"


def row(order_id, status=READY, courier=None, created_at="2026-01-01T10:00:00", **extra):
    data = {"id": order_id, "status": status, "delivery_user_id": courier, "created_at": created_at}
    data.update(extra)
    return data


def insert(data, seq=0):
    return ChangeEvent(INSERT, "parent_orders", new=data, sequence=seq)


def upd(data, old=None, seq=0):
    return ChangeEvent(UPDATE, "parent_orders", new=data, old=old, sequence=seq)


def delete(data, seq=0):
    return ChangeEvent(DELETE, "parent_orders", old=data, sequence=seq)


def test_membership_rule():
    assert is_queue_member(row("a"))
    assert not is_queue_member(row("a", courier="courier123"))
    assert not is_queue_member(row("a", status="PARTIALLY_READY"))
    assert not is_queue_member(None)


def test_empty_courier_id_counts_as_assigned():
    assert not is_queue_member(row("a", courier=""))
    state = apply_event({"A": row("A")}, upd(row("A", courier="")))
    assert "A" not in state


def test_assignment_removes_order():
    state = {"A": row("A")}
    state = apply_event(state, upd(row("A", courier="courier123")))
    assert "A" not in state


def test_duplicate_insert_keeps_one_entry():
    state = apply_event({}, insert(row("A")))
    again = apply_event(state, insert(row("A")))
    assert len(again) == 1
    assert again == state


def test_insert_of_non_member_is_ignored():
    assert apply_event({}, insert(row("A", status="PLACED"))) == {}


def test_update_upserts_members():
    state = apply_event({}, upd(row("A")))
    assert set(state) == {"A"}
    refreshed = apply_event(state, upd(row("A", total=42.0)))
    assert refreshed["A"]["total"] == 42.0
    assert len(refreshed) == 1


def test_status_moving_past_ready_removes_order():
    state = {"A": row("A")}
    assert apply_event(state, upd(row("A", status="OUT_FOR_DELIVERY"))) == {}


def test_delete_and_unknown_ids_are_noops():
    state = {"A": row("A")}
    assert apply_event(state, delete(row("B"))) == state
    assert apply_event(state, upd(row("B", courier="c1"))) == state
    assert apply_event(state, delete(row("A"))) == {}
    assert apply_event({}, delete(row("A"))) == {}


def test_apply_event_does_not_mutate_input():
    state = {"A": row("A")}
    apply_event(state, delete(row("A")))
    assert "A" in state


def test_other_tables_are_ignored():
    change = ChangeEvent(UPDATE, "orders", new={"id": "S1", "status": READY})
    assert apply_event({}, change) == {}


def test_interleaved_rows_reconcile_independently():
    events = [
        insert(row("A", status="PLACED")),
        insert(row("B", status="PLACED")),
        upd(row("B")),
        upd(row("A")),
        upd(row("B", courier="c1")),
        upd(row("A", total=10.0)),
    ]
    state = replay(events)
    assert set(state) == {"A"}
    assert state["A"]["total"] == 10.0


def test_replay_membership_matches_latest_row_state():
    rng = random.Random(7)
    statuses = ["PLACED", "PROCESSING", "PARTIALLY_READY", READY, "OUT_FOR_DELIVERY", "DELIVERED"]
    ids = [f"order-{i}" for i in range(8)]

    for _ in range(50):
        latest = {}
        events = []
        for seq in range(40):
            order_id = rng.choice(ids)
            if order_id in latest and rng.random() < 0.15:
                events.append(delete(latest.pop(order_id), seq))
                continue
            data = row(order_id, status=rng.choice(statuses), courier=rng.choice([None, None, "c1"]))
            events.append((upd if order_id in latest else insert)(data, seq))
            latest[order_id] = data
            if rng.random() < 0.1:
                # duplicated delivery of the same event
                events.append(events[-1])

        expected = {order_id for order_id, data in latest.items() if is_queue_member(data)}
        assert set(replay(events)) == expected


def test_projection_seed_filters_and_orders_fifo():
    projection = LiveQueueProjection([
        row("late", created_at="2026-01-01T12:00:00"),
        row("early", created_at="2026-01-01T09:00:00"),
        row("taken", courier="c1"),
    ])
    assert [entry["id"] for entry in projection.entries()] == ["early", "late"]
    assert "taken" not in projection
    assert len(projection) == 2


def test_projection_skips_bad_events():
    projection = LiveQueueProjection([row("A")])
    assert projection.apply(ChangeEvent(UPDATE, "parent_orders", new={"status": READY})) is False
    assert projection.apply(ChangeEvent("TRUNCATE", "parent_orders", new=row("B"))) is False
    assert projection.skipped == 2
    assert projection.apply(insert(row("B"))) is True
    assert projection.ids() == {"A", "B"}


def test_projection_reports_unchanged_state():
    projection = LiveQueueProjection([row("A")])
    assert projection.apply(insert(row("A"))) is False
    assert projection.apply(delete(row("Z"))) is False


def test_snapshot_query_returns_ready_unassigned_oldest_first(db, make_order, make_ready_order):
    first = make_ready_order()
    second = make_ready_order()
    make_order()
    claimed = make_ready_order()
    OrderService.claim_parent_order(db, claimed.id, "courier-9")

    snapshot = OrderService.get_live_queue_snapshot(db)
    assert [order.id for order in snapshot] == [first.id, second.id]


def test_load_live_queue_rows(session_factory, make_ready_order):
    parent = make_ready_order()
    rows = load_live_queue_rows(session_factory)
    assert [r["id"] for r in rows] == [parent.id]
    assert rows[0]["status"] == READY


def test_snapshot_and_events_agree_on_empty_courier(db, feed, session_factory, make_ready_order):
    parent = make_ready_order()
    received = []
    feed.subscribe("test", "parent_orders", received.append)

    parent.delivery_user_id = ""
    db.commit()

    assert load_live_queue_rows(session_factory) == []
    assert replay(received, {parent.id: row(parent.id)}) == {}


def _session(feed, rows, **kwargs):
    return LiveQueueSession(feed, lambda: [dict(r) for r in rows], **kwargs)


def test_session_seeds_and_applies_feed_events():
    async def scenario():
        feed = ChangeFeed()
        session = _session(feed, [row("A")])
        entries = await session.open()
        assert [e["id"] for e in entries] == ["A"]

        feed.publish(insert(row("B", created_at="2026-01-02T10:00:00")))
        assert await session.next_update() == "event"
        assert session.projection.ids() == {"A", "B"}

        feed.publish(upd(row("A", courier="courier123")))
        assert await session.next_update() == "event"
        assert session.projection.ids() == {"B"}
        session.close()

    asyncio.run(scenario())


def test_session_close_releases_subscription_synchronously():
    async def scenario():
        feed = ChangeFeed()
        session = _session(feed, [])
        await session.open()
        assert feed.subscriber_count == 1

        session.close()
        assert feed.subscriber_count == 0
        feed.publish(insert(row("A")))
        assert await session.next_update() is None
        assert len(session.projection) == 0

    asyncio.run(scenario())


def test_session_resyncs_from_snapshot_after_buffer_overflow():
    async def scenario():
        feed = ChangeFeed()
        store = [row("A")]
        session = _session(feed, store, max_pending=2)
        await session.open()

        # The store moved on while the buffer overflowed
        store[:] = [row("C"), row("D")]
        for order_id in ("X1", "X2", "X3", "X4"):
            feed.publish(insert(row(order_id)))
        await asyncio.sleep(0)

        assert session.gap_detected
        assert await session.next_update() == "resync"
        assert session.projection.ids() == {"C", "D"}
        assert session.resyncs == 2
        session.close()

    asyncio.run(scenario())


def test_session_periodic_resync():
    async def scenario():
        feed = ChangeFeed()
        store = [row("A")]
        session = _session(feed, store, resync_seconds=0.01)
        await session.open()
        store[:] = []
        assert await session.next_update() == "resync"
        assert len(session.projection) == 0
        session.close()

    asyncio.run(scenario())


def test_session_resync_on_request():
    async def scenario():
        feed = ChangeFeed()
        store = [row("A")]
        session = _session(feed, store)
        await session.open()
        store.append(row("B"))
        session.request_resync()
        assert await session.next_update() == "resync"
        assert session.projection.ids() == {"A", "B"}
        session.close()

    asyncio.run(scenario())


def test_session_follows_committed_store_changes(session_factory, db, feed, make_order, advance):
    async def scenario():
        parent = make_order(shops=("shop-a",))
        session = LiveQueueSession(feed, lambda: load_live_queue_rows(session_factory))
        assert await session.open() == []

        advance(parent.suborders[0], SubOrderStatus.READY_FOR_PICKUP)
        # PLACED -> CONFIRMED -> PREPARING -> READY: only the last one changes membership
        assert await session.next_update() == "event"
        assert session.projection.ids() == {parent.id}

        OrderService.claim_parent_order(db, parent.id, "courier-1")
        assert await session.next_update() == "event"
        assert len(session.projection) == 0
        session.close()

    asyncio.run(scenario())
