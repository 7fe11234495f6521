"""
Delivery assignment engine.

One matching round per order at a time:

    IDLE -> SEARCHING -> OFFERED -> RESOLVED | ALL_DECLINED | EXPIRED

``dispatch`` searches for couriers around the pickup point, ranks them and
offers the order to the top K at once. ``accept``, ``reject`` and the expiry
sweep resolve the round against the assignment ledger. When every offer of a
round has been declined or has expired, the order is dispatched once more
with a wider search radius.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import replace
from datetime import timedelta

from courier_dispatch.core.errors import OfferAlreadyOpen, StoreFailure
from courier_dispatch.core.retry import StoreRetry
from courier_dispatch.core.time_utils import utcnow
from courier_dispatch.models.assignment import AssignmentStatus, REASON_EXPIRED, REASON_SUPERSEDED
from courier_dispatch.models.order import OrderStatus
from courier_dispatch.models.outcomes import (
    AcceptResult,
    AcceptStatus,
    CompletionStatus,
    DispatchResult,
    DispatchStatus,
    RejectResult,
    RejectStatus,
    RoundState,
    SweepResult,
)
from courier_dispatch.services.geo_index import GeoIndex
from courier_dispatch.services.ledger import AssignmentLedger, WINNING_STATUSES
from courier_dispatch.services.notification_service import NotificationService, NotificationType
from courier_dispatch.services.offer_store import OfferStore
from courier_dispatch.services.order_service import OrderService
from courier_dispatch.services.ranker import rank

logger = logging.getLogger(__name__)

ASSIGNED_ORDER_STATUSES = (OrderStatus.ASSIGNED, OrderStatus.PICKED_UP, OrderStatus.DELIVERED)


class AssignmentEngine:
    def __init__(
        self,
        geo_index: GeoIndex,
        ledger: AssignmentLedger,
        offer_store: OfferStore,
        order_service: OrderService,
        notifications: NotificationService = None,
        radii_km=(5.0, 10.0, 15.0),
        max_offers: int = 3,
        offer_ttl: timedelta = timedelta(minutes=2),
        max_escalations: int = 1,
        retry: StoreRetry = None,
        clock=utcnow,
    ):
        self.geo_index = geo_index
        self.ledger = ledger
        self.offer_store = offer_store
        self.order_service = order_service
        self.notifications = notifications or NotificationService()
        self.radii_km = tuple(radii_km)
        self.max_offers = max_offers
        self.offer_ttl = offer_ttl
        self.max_escalations = max_escalations
        self.retry = retry or StoreRetry()
        self.clock = clock
        self._locks = {}
        self._lock_users = {}
        self._searching = set()

    @classmethod
    def from_config(cls, config, session_factory, notifications: NotificationService = None, clock=utcnow):
        return cls(
            geo_index=GeoIndex(
                session_factory,
                freshness_seconds=config.LOCATION_FRESHNESS_SECONDS,
                default_rating=config.DEFAULT_COURIER_RATING,
                clock=clock,
            ),
            ledger=AssignmentLedger(session_factory),
            offer_store=OfferStore(session_factory, clock=clock),
            order_service=OrderService(session_factory),
            notifications=notifications,
            radii_km=config.SEARCH_RADII_KM,
            max_offers=config.MAX_OFFERS,
            offer_ttl=timedelta(seconds=config.OFFER_TTL_SECONDS),
            max_escalations=config.MAX_ESCALATIONS,
            retry=StoreRetry(config.STORE_RETRY_ATTEMPTS, config.STORE_RETRY_BACKOFF_SECONDS),
            clock=clock,
        )

    @asynccontextmanager
    async def _order_lock(self, order_id):
        # Advisory only: the ledger's conditional writes decide races across processes.
        lock = self._locks.setdefault(order_id, asyncio.Lock())
        self._lock_users[order_id] = self._lock_users.get(order_id, 0) + 1
        try:
            async with lock:
                yield
        finally:
            self._lock_users[order_id] -= 1
            if not self._lock_users[order_id]:
                del self._lock_users[order_id]
                del self._locks[order_id]

    def search_radii(self, round_number: int) -> tuple:
        """Radii tried by a round: its escalation step and the next one."""
        start = min(round_number, self.max_escalations, len(self.radii_km) - 1)
        return self.radii_km[start:start + 2]

    # Dispatch

    async def dispatch(self, order_id) -> DispatchResult:
        async with self._order_lock(order_id):
            try:
                return await self._dispatch_locked(order_id)
            except StoreFailure as e:
                logger.error(f"Dispatch of order {order_id} failed, requeue: {str(e)}")
                return DispatchResult(order_id, DispatchStatus.FAILED, message="assignment failed, requeue")

    async def _dispatch_locked(self, order_id) -> DispatchResult:
        status = await self.retry.run("load order status", self.order_service.get_status, order_id)
        if status is None:
            logger.warning(f"Dispatch requested for unknown order {order_id}")
            return DispatchResult(order_id, DispatchStatus.ORDER_NOT_FOUND, message="order not found")
        if status in ASSIGNED_ORDER_STATUSES or await self.retry.run("check winner", self.ledger.has_winner, order_id):
            return DispatchResult(order_id, DispatchStatus.ALREADY_ASSIGNED, message="order already assigned")
        if status != OrderStatus.READY:
            return DispatchResult(order_id, DispatchStatus.NOT_DISPATCHABLE, message=f"order is {status.value}")

        await self._expire_locked(order_id, self.clock())
        if await self.retry.run("count pending", self.ledger.pending_count, order_id):
            return DispatchResult(order_id, DispatchStatus.ALREADY_OFFERED, message="a matching round is in flight")
        if await self.retry.run("check offers", self.offer_store.has_live_offers, order_id):
            return DispatchResult(order_id, DispatchStatus.ALREADY_OFFERED, message="a matching round is in flight")

        last_round = await self.retry.run("load round", self.ledger.current_round, order_id)
        round_number = 0 if last_round is None else last_round + 1

        self._searching.add(order_id)
        try:
            candidates, radius_km = await self._find_candidates(order_id, round_number)
        finally:
            self._searching.discard(order_id)

        if not candidates:
            logger.warning(f"No available couriers for order {order_id} within {radius_km}km (round {round_number})")
            self.notifications.publish(NotificationType.NO_COURIERS_AVAILABLE, order_id=str(order_id), round=round_number)
            return DispatchResult(
                order_id, DispatchStatus.NO_COURIERS_AVAILABLE, round_number=round_number,
                radius_km=radius_km, message="no couriers available, retry later",
            )

        loads = await self.retry.run("count courier load", self.ledger.active_counts, [c.courier_id for c in candidates])
        ranked = rank(replace(c, active_assignments=loads.get(c.courier_id, 0)) for c in candidates)
        top = ranked[:self.max_offers]

        now = self.clock()
        expires_at = now + self.offer_ttl
        created = []
        for candidate in top:
            try:
                row = await self.retry.run(
                    "create pending assignment", self.ledger.create_pending,
                    order_id, candidate.courier_id, round_number, now, expires_at,
                )
            except StoreFailure:
                continue
            if row is not None:
                created.append(candidate.courier_id)

        if not created:
            return DispatchResult(order_id, DispatchStatus.FAILED, round_number=round_number,
                                  radius_km=radius_km, message="assignment failed, requeue")

        try:
            await self.retry.run("open offers", self.offer_store.open_offers, order_id, created, self.offer_ttl)
        except OfferAlreadyOpen:
            logger.warning(f"Offers for order {order_id} opened concurrently elsewhere, withdrawing round {round_number}")
            try:
                await self.retry.run("withdraw assignments", self.ledger.withdraw, order_id, created, now)
            except StoreFailure:
                logger.error(f"Pending rows of order {order_id} left for the expiry sweep")
            return DispatchResult(order_id, DispatchStatus.ALREADY_OFFERED, round_number=round_number,
                                  message="a matching round is in flight")
        except StoreFailure:
            # Rows without offers cannot be accepted; the sweep expires them.
            return DispatchResult(order_id, DispatchStatus.FAILED, round_number=round_number,
                                  radius_km=radius_km, message="assignment failed, requeue")

        for courier_id in created:
            self.notifications.publish(
                NotificationType.OFFER_OPENED,
                order_id=str(order_id), courier_id=str(courier_id), expires_at=expires_at.isoformat(),
            )
        logger.info(f"Order {order_id} offered to {len(created)} couriers within {radius_km}km (round {round_number})")
        return DispatchResult(order_id, DispatchStatus.OFFERED, round_number=round_number,
                              radius_km=radius_km, offered=created)

    async def _find_candidates(self, order_id, round_number: int) -> tuple:
        pickup = await self.retry.run("load pickup location", self.order_service.get_pickup_location, order_id)
        already_offered = await self.retry.run("load offered couriers", self.ledger.offered_courier_ids, order_id)

        candidates, radius_km = [], None
        for radius_km in self.search_radii(round_number):
            found = await self.retry.run("find nearby couriers", self.geo_index.find_nearby, pickup, radius_km)
            candidates = [c for c in found if c.courier_id not in already_offered]
            if len(candidates) >= self.max_offers:
                break
            logger.info(f"Only {len(candidates)} couriers within {radius_km}km of order {order_id}")
        return candidates, radius_km

    # Resolution

    async def accept(self, order_id, courier_id) -> AcceptResult:
        async with self._order_lock(order_id):
            if not await self.retry.run("check offer", self.offer_store.is_live, order_id, courier_id):
                row = await self.retry.run("load assignment", self.ledger.get, order_id, courier_id)
                outcome = AcceptStatus.NOT_FOUND if row is None else AcceptStatus.TOO_LATE
                logger.info(f"Accept by courier {courier_id} on order {order_id}: {outcome.value}")
                return AcceptResult(order_id, courier_id, outcome)

            won, cancelled = await self.retry.run(
                "accept assignment", self.ledger.try_accept, order_id, courier_id, self.clock()
            )
            if not won:
                logger.info(f"Accept by courier {courier_id} on order {order_id}: too late")
                return AcceptResult(order_id, courier_id, AcceptStatus.TOO_LATE)

            # The ledger has committed the winner; the steps below are follow-up.
            try:
                await self.retry.run("close offers", self.offer_store.close_all, order_id)
            except StoreFailure:
                logger.warning(f"Offers for order {order_id} left to expire on their own")
            try:
                await self.retry.run("assign order", self.order_service.set_assigned_courier, order_id, courier_id)
            except StoreFailure:
                logger.error(f"Order {order_id} won by courier {courier_id} but order record not updated")

            self.notifications.publish(NotificationType.COURIER_WON, order_id=str(order_id), courier_id=str(courier_id))
            for loser in cancelled:
                self.notifications.publish(NotificationType.OFFER_CANCELLED, order_id=str(order_id), courier_id=str(loser))
            return AcceptResult(order_id, courier_id, AcceptStatus.WON, cancelled=cancelled)

    async def reject(self, order_id, courier_id, reason: str = None) -> RejectResult:
        reason = reason or "declined"
        async with self._order_lock(order_id):
            # A decline that arrives after the TTL is recorded as an expiry.
            expired = await self._expire_locked(order_id, self.clock())
            changed = await self.retry.run(
                "reject assignment", self.ledger.reject, order_id, courier_id, reason, self.clock()
            )
            if not changed:
                row = await self.retry.run("load assignment", self.ledger.get, order_id, courier_id)
                outcome = RejectStatus.NOT_FOUND if row is None else RejectStatus.ALREADY_RESOLVED
                redispatch = await self._redispatch_if_exhausted(order_id) if expired else None
                return RejectResult(order_id, courier_id, outcome, redispatch=redispatch)

            try:
                await self.retry.run("close offer", self.offer_store.close, order_id, courier_id)
            except StoreFailure:
                logger.warning(f"Offer of courier {courier_id} on order {order_id} left to expire")
            redispatch = await self._redispatch_if_exhausted(order_id)
            return RejectResult(order_id, courier_id, RejectStatus.ACKNOWLEDGED, redispatch=redispatch)

    async def expire_overdue(self) -> SweepResult:
        """Expire every PENDING row past its TTL and re-dispatch exhausted orders."""
        result = SweepResult()
        order_ids = await self.retry.run("find overdue offers", self.ledger.orders_with_overdue, self.clock())
        for order_id in order_ids:
            async with self._order_lock(order_id):
                expired = await self._expire_locked(order_id, self.clock())
                if not expired:
                    continue
                result.expired += len(expired)
                result.orders.append(order_id)
                redispatch = await self._redispatch_if_exhausted(order_id)
                if redispatch is not None:
                    result.redispatched.append(redispatch)
        await self.retry.run("purge expired offers", self.offer_store.purge_expired)
        return result

    async def _expire_locked(self, order_id, now) -> list:
        expired = await self.retry.run("expire offers", self.ledger.expire_overdue, now, order_id)
        for expired_order_id, courier_id in expired:
            self.notifications.publish(
                NotificationType.OFFER_EXPIRED, order_id=str(expired_order_id), courier_id=str(courier_id)
            )
        return expired

    async def _redispatch_if_exhausted(self, order_id):
        if await self.retry.run("count pending", self.ledger.pending_count, order_id):
            return None
        if await self.retry.run("check winner", self.ledger.has_winner, order_id):
            return None

        last_round = await self.retry.run("load round", self.ledger.current_round, order_id) or 0
        if last_round >= self.max_escalations:
            logger.warning(f"Every offer for order {order_id} declined after {last_round + 1} rounds; escalation cap reached")
            self.notifications.publish(
                NotificationType.NO_COURIERS_AVAILABLE, order_id=str(order_id), round=last_round, reason="escalation cap reached"
            )
            return None

        logger.warning(f"Every offer for order {order_id} declined, re-dispatching with a wider radius")
        try:
            return await self._dispatch_locked(order_id)
        except StoreFailure as e:
            logger.error(f"Re-dispatch of order {order_id} failed, requeue: {str(e)}")
            return DispatchResult(order_id, DispatchStatus.FAILED, message="assignment failed, requeue")

    # Delivery progress

    async def mark_picked_up(self, order_id, courier_id) -> CompletionStatus:
        async with self._order_lock(order_id):
            changed = await self.retry.run(
                "record pick-up", self.ledger.mark_picked_up, order_id, courier_id, self.clock()
            )
            if not changed:
                return await self._completion_failure(order_id, courier_id)
            await self.retry.run(
                "advance order", self.order_service.advance_assigned_order,
                order_id, courier_id, OrderStatus.ASSIGNED, OrderStatus.PICKED_UP,
            )
            return CompletionStatus.DONE

    async def complete(self, order_id, courier_id) -> CompletionStatus:
        async with self._order_lock(order_id):
            changed = await self.retry.run(
                "complete assignment", self.ledger.complete, order_id, courier_id, self.clock()
            )
            if not changed:
                return await self._completion_failure(order_id, courier_id)
            for source in (OrderStatus.PICKED_UP, OrderStatus.ASSIGNED):
                if await self.retry.run(
                    "advance order", self.order_service.advance_assigned_order,
                    order_id, courier_id, source, OrderStatus.DELIVERED,
                ):
                    break
            return CompletionStatus.DONE

    async def _completion_failure(self, order_id, courier_id) -> CompletionStatus:
        row = await self.retry.run("load assignment", self.ledger.get, order_id, courier_id)
        return CompletionStatus.NOT_FOUND if row is None else CompletionStatus.NOT_ASSIGNED

    # Introspection

    async def round_state(self, order_id) -> RoundState:
        if order_id in self._searching:
            return RoundState.SEARCHING
        rows = await self.retry.run("load assignments", self.ledger.list_for_order, order_id)
        rows = [row for row in rows if row.rejection_reason != REASON_SUPERSEDED]
        if not rows:
            return RoundState.IDLE
        if any(row.status in WINNING_STATUSES for row in rows):
            return RoundState.RESOLVED

        latest = max(row.round_number for row in rows)
        current = [row for row in rows if row.round_number == latest]
        now = self.clock()
        if any(row.status == AssignmentStatus.PENDING and row.expires_at > now for row in current):
            return RoundState.OFFERED

        def timed_out(row):
            if row.status == AssignmentStatus.PENDING:
                return True
            return row.status == AssignmentStatus.REJECTED and row.rejection_reason == REASON_EXPIRED

        if all(timed_out(row) for row in current):
            return RoundState.EXPIRED
        return RoundState.ALL_DECLINED

    async def run_expiry_sweeper(self, interval_seconds: int = 15):
        """Expire overdue offers every ``interval_seconds``."""
        while True:
            await asyncio.sleep(interval_seconds)
            try:
                sweep = await self.expire_overdue()
                if sweep.expired:
                    reoffered = sum(1 for result in sweep.redispatched if result.ok)
                    logger.info(f"Expiry sweep: {sweep.expired} offers expired across {len(sweep.orders)} orders, {reoffered} re-offered")
            except Exception as e:
                logger.error(f"Expiry sweep failed: {str(e)}", exc_info=True)
