import asyncio
import pytest
import uuid
from sqlalchemy.exc import OperationalError
from courier_dispatch.models.assignment import AssignmentStatus, REASON_EXPIRED, REASON_SUPERSEDED
from courier_dispatch.models.order import OrderStatus
from courier_dispatch.models.outcomes import (
    AcceptStatus,
    CompletionStatus,
    DispatchStatus,
    RejectStatus,
    RoundState,
)
from courier_dispatch.services.assignment_engine import AssignmentEngine
from courier_dispatch.services.notification_service import NotificationType


async def statuses(engine, order_id) -> dict:
    return {row.courier_id: row.status for row in await engine.ledger.list_for_order(order_id)}


@pytest.mark.asyncio
async def test_dispatch_offers_top_three_by_rating(engine, make_ready_order, make_courier):
    best = await make_courier(km_north=3.0, rating=4.9)
    good = await make_courier(km_north=1.0, rating=4.7)
    fair = await make_courier(km_north=2.0, rating=4.0)
    await make_courier(km_north=0.5, rating=3.2)
    order_id = await make_ready_order()

    result = await engine.dispatch(order_id)

    assert result.status == DispatchStatus.OFFERED
    assert result.round_number == 0
    assert result.radius_km == 5.0
    assert result.offered == [best, good, fair]
    assert set((await statuses(engine, order_id)).values()) == {AssignmentStatus.PENDING}
    for courier_id in result.offered:
        assert await engine.offer_store.is_live(order_id, courier_id)


@pytest.mark.asyncio
async def test_dispatch_prefers_idle_couriers(engine, make_ready_order, make_courier):
    busy = await make_courier(km_north=1.0, rating=5.0)
    other_order = await make_ready_order()
    assert (await engine.dispatch(other_order)).offered == [busy]

    idle = [await make_courier(km_north=2.0, rating=3.5) for _ in range(3)]
    order_id = await make_ready_order()
    result = await engine.dispatch(order_id)

    assert set(result.offered) == set(idle)


@pytest.mark.asyncio
async def test_dispatch_widens_radius_when_too_few_nearby(engine, make_ready_order, make_courier):
    near = await make_courier(km_north=2.0)
    wider = [await make_courier(km_north=8.0), await make_courier(km_north=9.0)]
    await make_courier(km_north=14.0)
    order_id = await make_ready_order()

    searched = []
    find_nearby = engine.geo_index.find_nearby

    async def spy(origin, radius_km):
        searched.append(radius_km)
        return await find_nearby(origin, radius_km)

    engine.geo_index.find_nearby = spy
    result = await engine.dispatch(order_id)

    assert searched == [5.0, 10.0]
    assert result.status == DispatchStatus.OFFERED
    assert result.radius_km == 10.0
    assert set(result.offered) == {near, *wider}


@pytest.mark.asyncio
async def test_dispatch_with_no_couriers(engine, make_ready_order, make_courier, notifications):
    await make_courier(km_north=25.0)
    order_id = await make_ready_order()

    result = await engine.dispatch(order_id)
    await notifications.drain()

    assert result.status == DispatchStatus.NO_COURIERS_AVAILABLE
    assert result.radius_km == 10.0
    assert await engine.ledger.list_for_order(order_id) == []
    assert await engine.round_state(order_id) == RoundState.IDLE
    assert [t for t, _ in notifications.received] == [NotificationType.NO_COURIERS_AVAILABLE]


@pytest.mark.asyncio
async def test_dispatch_twice_is_refused(engine, make_ready_order, make_courier):
    await make_courier()
    order_id = await make_ready_order()

    assert (await engine.dispatch(order_id)).status == DispatchStatus.OFFERED
    again = await engine.dispatch(order_id)

    assert again.status == DispatchStatus.ALREADY_OFFERED
    assert len(await engine.ledger.list_for_order(order_id)) == 1


@pytest.fixture
def make_worker(config, session_factory, clock):
    """Another engine on the same database, standing in for a second process."""
    def _make():
        return AssignmentEngine.from_config(config, session_factory, clock=clock)
    return _make


async def stale_count(order_id):
    return 0


async def stale_offers(order_id):
    return False


@pytest.mark.asyncio
async def test_dispatch_refused_while_another_worker_has_live_offers(engine, make_worker, make_ready_order, make_courier):
    first = await make_courier(km_north=1.0)
    order_id = await make_ready_order()
    assert (await engine.dispatch(order_id)).offered == [first]
    await make_courier(km_north=1.5)

    # The other worker read the pending count before this round committed.
    other = make_worker()
    other.ledger.pending_count = stale_count
    result = await other.dispatch(order_id)

    assert result.status == DispatchStatus.ALREADY_OFFERED
    assert await engine.offer_store.is_live(order_id, first)
    assert len(await engine.ledger.list_for_order(order_id)) == 1


@pytest.mark.asyncio
async def test_concurrent_round_is_withdrawn_and_first_round_stays_live(engine, make_worker, make_ready_order, make_courier):
    first = await make_courier(km_north=1.0)
    order_id = await make_ready_order()
    assert (await engine.dispatch(order_id)).offered == [first]
    second = await make_courier(km_north=1.5)

    # Both pre-checks ran before the first round committed; opening offers is what collides.
    other = make_worker()
    other.ledger.pending_count = stale_count
    other.offer_store.has_live_offers = stale_offers
    result = await other.dispatch(order_id)

    assert result.status == DispatchStatus.ALREADY_OFFERED
    withdrawn = await engine.ledger.get(order_id, second)
    assert withdrawn.status == AssignmentStatus.CANCELLED
    assert withdrawn.rejection_reason == REASON_SUPERSEDED
    assert not await engine.offer_store.is_live(order_id, second)
    assert await engine.ledger.current_round(order_id) == 0
    assert await engine.round_state(order_id) == RoundState.OFFERED

    assert await engine.offer_store.is_live(order_id, first)
    assert (await engine.accept(order_id, first)).status == AcceptStatus.WON


@pytest.mark.asyncio
async def test_dispatch_unknown_order(engine):
    result = await engine.dispatch(uuid.uuid4())

    assert result.status == DispatchStatus.ORDER_NOT_FOUND


@pytest.mark.asyncio
async def test_dispatch_order_not_ready(engine, order_service, make_courier):
    await make_courier()
    created = await order_service.create_order("Rohan Mehta", "Khan Market, New Delhi", 28.6002, 77.2270)

    result = await engine.dispatch(uuid.UUID(created["id"]))

    assert result.status == DispatchStatus.NOT_DISPATCHABLE


@pytest.mark.asyncio
async def test_dispatch_after_win(engine, make_ready_order, make_courier):
    courier_id = await make_courier()
    order_id = await make_ready_order()
    await engine.dispatch(order_id)
    await engine.accept(order_id, courier_id)

    result = await engine.dispatch(order_id)

    assert result.status == DispatchStatus.ALREADY_ASSIGNED


@pytest.mark.asyncio
async def test_dispatch_store_outage_asks_for_requeue(engine, make_ready_order, make_courier):
    await make_courier()
    order_id = await make_ready_order()
    calls = []

    async def broken(origin, radius_km):
        calls.append(radius_km)
        raise OperationalError("SELECT courier_locations", {}, ConnectionError("connection reset"))

    engine.geo_index.find_nearby = broken
    result = await engine.dispatch(order_id)

    assert result.status == DispatchStatus.FAILED
    assert result.message == "assignment failed, requeue"
    assert len(calls) == 3
    assert await engine.ledger.list_for_order(order_id) == []


@pytest.mark.asyncio
async def test_concurrent_accepts_have_one_winner(engine, make_ready_order, make_courier, order_service):
    for km in (1.0, 2.0, 3.0):
        await make_courier(km_north=km)
    order_id = await make_ready_order()
    offered = (await engine.dispatch(order_id)).offered

    results = await asyncio.gather(*(engine.accept(order_id, courier_id) for courier_id in offered))

    winners = [r for r in results if r.status == AcceptStatus.WON]
    assert len(winners) == 1
    assert all(r.status == AcceptStatus.TOO_LATE for r in results if not r.won)
    winner = winners[0].courier_id
    assert set(winners[0].cancelled) == set(offered) - {winner}

    rows = await statuses(engine, order_id)
    assert list(rows.values()).count(AssignmentStatus.ACCEPTED) == 1
    assert rows[winner] == AssignmentStatus.ACCEPTED
    assert not await engine.offer_store.has_live_offers(order_id)

    order = await order_service.get_order(order_id)
    assert order["status"] == OrderStatus.ASSIGNED.value
    assert order["assigned_courier_id"] == str(winner)


@pytest.mark.asyncio
async def test_accepts_from_separate_workers_have_one_winner(engine, make_worker, make_ready_order, make_courier):
    for km in (1.0, 2.0, 3.0):
        await make_courier(km_north=km)
    order_id = await make_ready_order()
    offered = (await engine.dispatch(order_id)).offered
    workers = [make_worker() for _ in offered]

    results = await asyncio.gather(*(
        worker.accept(order_id, courier_id) for worker, courier_id in zip(workers, offered)
    ))

    assert [r.status for r in results].count(AcceptStatus.WON) == 1
    assert all(r.status == AcceptStatus.TOO_LATE for r in results if not r.won)
    rows = await statuses(engine, order_id)
    assert list(rows.values()).count(AssignmentStatus.ACCEPTED) == 1
    assert AssignmentStatus.PENDING not in rows.values()


@pytest.mark.asyncio
async def test_late_reject_is_recorded_as_expiry(engine, make_ready_order, make_courier, clock):
    first = await make_courier(km_north=1.0)
    second = await make_courier(km_north=2.0)
    order_id = await make_ready_order()
    await engine.dispatch(order_id)

    clock.advance(minutes=2, seconds=5)
    result = await engine.reject(order_id, first, reason="too far")

    assert result.status == RejectStatus.ALREADY_RESOLVED
    for courier_id in (first, second):
        row = await engine.ledger.get(order_id, courier_id)
        assert row.status == AssignmentStatus.REJECTED
        assert row.rejection_reason == REASON_EXPIRED
    # Both offers lapsed, so the round is exhausted and the wider search runs.
    assert result.redispatch.round_number == 1
    assert result.redispatch.status == DispatchStatus.NO_COURIERS_AVAILABLE


@pytest.mark.asyncio
async def test_accept_at_expiry_is_too_late(engine, make_ready_order, make_courier, clock):
    courier_id = await make_courier()
    order_id = await make_ready_order()
    await engine.dispatch(order_id)

    clock.advance(minutes=2)
    result = await engine.accept(order_id, courier_id)

    assert result.status == AcceptStatus.TOO_LATE
    assert not await engine.ledger.has_winner(order_id)


@pytest.mark.asyncio
async def test_accept_without_offer(engine, make_ready_order, make_courier):
    await make_courier()
    outsider = await make_courier(km_north=30.0)
    order_id = await make_ready_order()
    await engine.dispatch(order_id)

    result = await engine.accept(order_id, outsider)

    assert result.status == AcceptStatus.NOT_FOUND


@pytest.mark.asyncio
async def test_all_rejections_redispatch_once(engine, make_ready_order, make_courier, notifications):
    first_round = [await make_courier(km_north=km) for km in (1.0, 2.0, 3.0)]
    second_round = [await make_courier(km_north=km) for km in (8.0, 12.0)]
    order_id = await make_ready_order()
    await engine.dispatch(order_id)

    results = [await engine.reject(order_id, courier_id) for courier_id in first_round]

    assert all(r.status == RejectStatus.ACKNOWLEDGED for r in results)
    assert results[0].redispatch is None and results[1].redispatch is None
    redispatch = results[2].redispatch
    assert redispatch.status == DispatchStatus.OFFERED
    assert redispatch.round_number == 1
    assert redispatch.radius_km == 15.0
    assert set(redispatch.offered) == set(second_round)

    final = [await engine.reject(order_id, courier_id) for courier_id in second_round]
    await notifications.drain()

    assert all(r.redispatch is None for r in final)
    assert await engine.ledger.current_round(order_id) == 1
    assert await engine.round_state(order_id) == RoundState.ALL_DECLINED
    capped = [p for t, p in notifications.received if t == NotificationType.NO_COURIERS_AVAILABLE]
    assert capped[-1]["reason"] == "escalation cap reached"


@pytest.mark.asyncio
async def test_reject_outcomes(engine, make_ready_order, make_courier):
    first = await make_courier(km_north=1.0)
    second = await make_courier(km_north=2.0)
    order_id = await make_ready_order()
    await engine.dispatch(order_id)

    assert (await engine.reject(order_id, uuid.uuid4())).status == RejectStatus.NOT_FOUND
    await engine.accept(order_id, first)

    assert (await engine.reject(order_id, second)).status == RejectStatus.ALREADY_RESOLVED
    assert (await engine.reject(order_id, first)).status == RejectStatus.ALREADY_RESOLVED


@pytest.mark.asyncio
async def test_rejection_reason_is_recorded(engine, make_ready_order, make_courier):
    courier_id = await make_courier()
    await make_courier(km_north=2.0)
    order_id = await make_ready_order()
    await engine.dispatch(order_id)

    await engine.reject(order_id, courier_id, reason="vehicle breakdown")
    row = await engine.ledger.get(order_id, courier_id)

    assert row.rejection_reason == "vehicle breakdown"
    assert not await engine.offer_store.is_live(order_id, courier_id)


@pytest.mark.asyncio
async def test_expiry_sweep_redispatches(engine, make_ready_order, make_courier, clock, notifications):
    first = await make_courier(km_north=1.0)
    later = await make_courier(km_north=12.0)
    order_id = await make_ready_order()
    assert (await engine.dispatch(order_id)).offered == [first]

    clock.advance(minutes=1)
    assert (await engine.expire_overdue()).expired == 0
    assert await engine.round_state(order_id) == RoundState.OFFERED

    clock.advance(minutes=1)
    assert await engine.round_state(order_id) == RoundState.EXPIRED
    sweep = await engine.expire_overdue()
    await notifications.drain()

    assert sweep.expired == 1
    assert sweep.orders == [order_id]
    assert [r.offered for r in sweep.redispatched] == [[later]]
    assert (await engine.ledger.get(order_id, first)).status == AssignmentStatus.REJECTED
    expired_events = [p for t, p in notifications.received if t == NotificationType.OFFER_EXPIRED]
    assert expired_events == [{"order_id": str(order_id), "courier_id": str(first)}]


@pytest.mark.asyncio
async def test_dispatch_expires_stale_round_first(engine, make_ready_order, make_courier, clock):
    first = await make_courier(km_north=1.0)
    order_id = await make_ready_order()
    await engine.dispatch(order_id)
    clock.advance(minutes=3)
    second = await make_courier(km_north=1.5)

    result = await engine.dispatch(order_id)

    assert result.status == DispatchStatus.OFFERED
    assert result.round_number == 1
    assert result.offered == [second]
    assert (await engine.ledger.get(order_id, first)).status == AssignmentStatus.REJECTED


@pytest.mark.asyncio
async def test_round_state_through_a_round(engine, make_ready_order, make_courier):
    courier_id = await make_courier()
    order_id = await make_ready_order()

    assert await engine.round_state(order_id) == RoundState.IDLE
    await engine.dispatch(order_id)
    assert await engine.round_state(order_id) == RoundState.OFFERED
    await engine.accept(order_id, courier_id)
    assert await engine.round_state(order_id) == RoundState.RESOLVED


@pytest.mark.asyncio
async def test_pick_up_and_delivery(engine, make_ready_order, make_courier, order_service):
    winner = await make_courier(km_north=1.0, rating=5.0)
    loser = await make_courier(km_north=1.0, rating=4.0)
    order_id = await make_ready_order()
    await engine.dispatch(order_id)
    await engine.accept(order_id, winner)

    assert await engine.complete(order_id, loser) == CompletionStatus.NOT_ASSIGNED
    assert await engine.complete(order_id, uuid.uuid4()) == CompletionStatus.NOT_FOUND

    assert await engine.mark_picked_up(order_id, winner) == CompletionStatus.DONE
    assert (await order_service.get_order(order_id))["status"] == OrderStatus.PICKED_UP.value

    assert await engine.complete(order_id, winner) == CompletionStatus.DONE
    assert (await order_service.get_order(order_id))["status"] == OrderStatus.DELIVERED.value
    assert (await engine.ledger.get(order_id, winner)).status == AssignmentStatus.COMPLETED
    assert await engine.complete(order_id, winner) == CompletionStatus.NOT_ASSIGNED


@pytest.mark.asyncio
async def test_win_notifies_winner_and_losers(engine, make_ready_order, make_courier, notifications):
    couriers = [await make_courier(km_north=km) for km in (1.0, 2.0)]
    order_id = await make_ready_order()
    await engine.dispatch(order_id)
    await engine.accept(order_id, couriers[0])
    await notifications.drain()

    kinds = [t for t, _ in notifications.received]
    assert kinds.count(NotificationType.OFFER_OPENED) == 2
    assert kinds.count(NotificationType.COURIER_WON) == 1
    cancelled = [p["courier_id"] for t, p in notifications.received if t == NotificationType.OFFER_CANCELLED]
    assert cancelled == [str(couriers[1])]


@pytest.mark.asyncio
async def test_failing_subscriber_does_not_break_dispatch(engine, make_ready_order, make_courier, notifications):
    @notifications.subscribe
    async def broken(notification_type, payload):
        raise RuntimeError("push gateway unavailable")

    await make_courier()
    order_id = await make_ready_order()

    result = await engine.dispatch(order_id)
    await notifications.drain()

    assert result.status == DispatchStatus.OFFERED
    assert [t for t, _ in notifications.received] == [NotificationType.OFFER_OPENED]


@pytest.mark.asyncio
async def test_search_radii_per_round(engine):
    assert engine.search_radii(0) == (5.0, 10.0)
    assert engine.search_radii(1) == (10.0, 15.0)
    assert engine.search_radii(5) == (10.0, 15.0)
