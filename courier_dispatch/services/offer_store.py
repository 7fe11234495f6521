from sqlalchemy import select, delete, func
from sqlalchemy.exc import IntegrityError
from courier_dispatch.models.offer import Offer
from courier_dispatch.core.errors import OfferAlreadyOpen
from courier_dispatch.core.time_utils import utcnow
import logging
from datetime import timedelta

logger = logging.getLogger(__name__)


class OfferStore:
    """Outstanding offers per order, each with a hard expiry.

    Liveness is always evaluated against ``expires_at``, so an offer stops
    being honourable once its TTL has elapsed even if nothing ever deletes
    the row. The assignment ledger stays the source of truth; this store can
    be wiped at any time without losing an assignment.
    """

    def __init__(self, session_factory, clock=utcnow):
        self.session_factory = session_factory
        self.clock = clock

    async def open_offers(self, order_id, courier_ids: list, ttl: timedelta) -> list:
        now = self.clock()
        expires_at = now + ttl
        async with self.session_factory() as session:
            try:
                live = await session.execute(
                    select(func.count(Offer.id))
                    .where(Offer.order_id == order_id)
                    .where(Offer.expires_at > now)
                )
                if live.scalar_one() > 0:
                    raise OfferAlreadyOpen(order_id)

                # Dead offers from an earlier round would collide on (order, courier).
                await session.execute(
                    delete(Offer)
                    .where(Offer.order_id == order_id)
                    .where(Offer.expires_at <= now)
                )
                offers = [
                    Offer(order_id=order_id, courier_id=courier_id, opened_at=now, expires_at=expires_at)
                    for courier_id in courier_ids
                ]
                session.add_all(offers)
                await session.commit()
            except IntegrityError as e:
                # A concurrent open_offers committed first on (order, courier).
                await session.rollback()
                raise OfferAlreadyOpen(order_id) from e
            except Exception:
                await session.rollback()
                raise
        logger.info(f"Opened {len(courier_ids)} offers for order {order_id}, expiring at {expires_at.isoformat()}")
        return offers

    async def is_live(self, order_id, courier_id) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Offer.id)
                .where(Offer.order_id == order_id)
                .where(Offer.courier_id == courier_id)
                .where(Offer.expires_at > self.clock())
            )
            return result.first() is not None

    async def has_live_offers(self, order_id) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Offer.id)
                .where(Offer.order_id == order_id)
                .where(Offer.expires_at > self.clock())
                .limit(1)
            )
            return result.first() is not None

    async def close(self, order_id, courier_id) -> int:
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    delete(Offer)
                    .where(Offer.order_id == order_id)
                    .where(Offer.courier_id == courier_id)
                )
                await session.commit()
                return result.rowcount
            except Exception:
                await session.rollback()
                raise

    async def close_all(self, order_id) -> int:
        """Remove every offer of the order. Safe to call repeatedly."""
        async with self.session_factory() as session:
            try:
                result = await session.execute(delete(Offer).where(Offer.order_id == order_id))
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        if result.rowcount:
            logger.info(f"Closed {result.rowcount} offers for order {order_id}")
        return result.rowcount

    async def purge_expired(self) -> int:
        async with self.session_factory() as session:
            try:
                result = await session.execute(delete(Offer).where(Offer.expires_at <= self.clock()))
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        if result.rowcount:
            logger.debug(f"Purged {result.rowcount} expired offers")
        return result.rowcount
