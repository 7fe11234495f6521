from sqlalchemy import select, update, func, or_
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import aliased
from courier_dispatch.models.assignment import (
    Assignment,
    AssignmentStatus,
    ACTIVE_STATUSES,
    REASON_ASSIGNED_ELSEWHERE,
    REASON_EXPIRED,
    REASON_SUPERSEDED,
)
from courier_dispatch.models.assignment_state import AssignmentEvent, next_status, source_statuses
import logging
from typing import Optional

logger = logging.getLogger(__name__)

WINNING_STATUSES = (AssignmentStatus.ACCEPTED, AssignmentStatus.COMPLETED)


class AssignmentLedger:
    """Durable assignment rows; the only authority on who owns an order.

    Every status change is a single guarded UPDATE whose affected-row count
    tells whether the transition happened. Nothing here reads a status and
    then writes it back unguarded.
    """

    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def create_pending(self, order_id, courier_id, round_number: int, assigned_at, expires_at) -> Optional[Assignment]:
        async with self.session_factory() as session:
            assignment = Assignment(
                order_id=order_id,
                courier_id=courier_id,
                round_number=round_number,
                status=AssignmentStatus.PENDING,
                assigned_at=assigned_at,
                expires_at=expires_at,
            )
            session.add(assignment)
            try:
                await session.commit()
            except IntegrityError:
                await session.rollback()
                logger.warning(f"Courier {courier_id} already holds an assignment row for order {order_id}")
                return None
            logger.info(f"Pending assignment {assignment.id} created for courier {courier_id} on order {order_id} (round {round_number})")
            return assignment

    async def try_accept(self, order_id, courier_id, now) -> tuple:
        """Atomically make ``courier_id`` the winner of ``order_id``.

        Returns ``(won, cancelled_courier_ids)``. Sibling PENDING rows are
        cancelled in the same transaction as the winning update.
        """
        target = next_status(AssignmentStatus.PENDING, AssignmentEvent.ACCEPT)
        cancelled = next_status(AssignmentStatus.PENDING, AssignmentEvent.CANCEL)
        sibling = aliased(Assignment)
        winner_exists = (
            select(sibling.id)
            .where(sibling.order_id == order_id)
            .where(sibling.status.in_(WINNING_STATUSES))
            .exists()
        )

        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Assignment)
                    .where(Assignment.order_id == order_id)
                    .where(Assignment.courier_id == courier_id)
                    .where(Assignment.status.in_(source_statuses(AssignmentEvent.ACCEPT)))
                    .where(Assignment.expires_at > now)
                    .where(~winner_exists)
                    .values(status=target, accepted_at=now)
                    .execution_options(synchronize_session=False)
                )
                if result.rowcount != 1:
                    await session.rollback()
                    return False, []

                losers = (await session.execute(
                    select(Assignment.courier_id)
                    .where(Assignment.order_id == order_id)
                    .where(Assignment.status == AssignmentStatus.PENDING)
                )).scalars().all()
                if losers:
                    await session.execute(
                        update(Assignment)
                        .where(Assignment.order_id == order_id)
                        .where(Assignment.status == AssignmentStatus.PENDING)
                        .values(status=cancelled, cancelled_at=now, rejection_reason=REASON_ASSIGNED_ELSEWHERE)
                        .execution_options(synchronize_session=False)
                    )
                await session.commit()
            except IntegrityError:
                # Another process committed a winner between our check and write.
                await session.rollback()
                logger.warning(f"Accept by courier {courier_id} on order {order_id} lost on unique index")
                return False, []

        logger.info(f"Courier {courier_id} won order {order_id}; cancelled {len(losers)} sibling offers")
        return True, list(losers)

    async def _transition(self, order_id, courier_id, source: AssignmentStatus, event: AssignmentEvent,
                          live_at=None, **values) -> bool:
        target = next_status(source, event)
        stmt = (
            update(Assignment)
            .where(Assignment.order_id == order_id)
            .where(Assignment.courier_id == courier_id)
            .where(Assignment.status == source)
        )
        if live_at is not None:
            stmt = stmt.where(Assignment.expires_at > live_at)
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    stmt.values(status=target, **values).execution_options(synchronize_session=False)
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        return result.rowcount == 1

    async def reject(self, order_id, courier_id, reason: str, now) -> bool:
        """Decline a PENDING row that has not expired yet."""
        changed = await self._transition(
            order_id, courier_id, AssignmentStatus.PENDING, AssignmentEvent.REJECT,
            live_at=now, rejected_at=now, rejection_reason=reason,
        )
        if changed:
            logger.info(f"Courier {courier_id} rejected order {order_id}: {reason}")
        return changed

    async def mark_picked_up(self, order_id, courier_id, now) -> bool:
        return await self._transition(
            order_id, courier_id, AssignmentStatus.ACCEPTED, AssignmentEvent.PICK_UP,
            picked_up_at=now,
        )

    async def complete(self, order_id, courier_id, now) -> bool:
        changed = await self._transition(
            order_id, courier_id, AssignmentStatus.ACCEPTED, AssignmentEvent.COMPLETE,
            completed_at=now,
        )
        if changed:
            logger.info(f"Assignment for order {order_id} completed by courier {courier_id}")
        return changed

    async def withdraw(self, order_id, courier_ids, now) -> int:
        """Cancel PENDING rows that never got an offer, e.g. a round that lost to a concurrent one."""
        courier_ids = list(courier_ids)
        if not courier_ids:
            return 0
        target = next_status(AssignmentStatus.PENDING, AssignmentEvent.CANCEL)
        async with self.session_factory() as session:
            try:
                result = await session.execute(
                    update(Assignment)
                    .where(Assignment.order_id == order_id)
                    .where(Assignment.courier_id.in_(courier_ids))
                    .where(Assignment.status == AssignmentStatus.PENDING)
                    .values(status=target, cancelled_at=now, rejection_reason=REASON_SUPERSEDED)
                    .execution_options(synchronize_session=False)
                )
                await session.commit()
            except Exception:
                await session.rollback()
                raise
        logger.warning(f"Withdrew {result.rowcount} pending assignments for order {order_id}")
        return result.rowcount

    async def expire_overdue(self, now, order_id=None) -> list:
        """Move PENDING rows past their expiry to REJECTED("expired").

        Returns the ``(order_id, courier_id)`` pairs this call expired.
        """
        target = next_status(AssignmentStatus.PENDING, AssignmentEvent.EXPIRE)
        query = (
            select(Assignment.id)
            .where(Assignment.status.in_(source_statuses(AssignmentEvent.EXPIRE)))
            .where(Assignment.expires_at <= now)
        )
        if order_id is not None:
            query = query.where(Assignment.order_id == order_id)

        async with self.session_factory() as session:
            try:
                ids = (await session.execute(query)).scalars().all()
                if not ids:
                    return []
                await session.execute(
                    update(Assignment)
                    .where(Assignment.id.in_(ids))
                    .where(Assignment.status == AssignmentStatus.PENDING)
                    .values(status=target, rejected_at=now, rejection_reason=REASON_EXPIRED)
                    .execution_options(synchronize_session=False)
                )
                expired = (await session.execute(
                    select(Assignment.order_id, Assignment.courier_id)
                    .where(Assignment.id.in_(ids))
                    .where(Assignment.status == target)
                    .where(Assignment.rejection_reason == REASON_EXPIRED)
                    .where(Assignment.rejected_at == now)
                )).all()
                await session.commit()
            except Exception:
                await session.rollback()
                raise

        logger.info(f"Expired {len(expired)} overdue offers")
        return [(row.order_id, row.courier_id) for row in expired]

    async def get(self, order_id, courier_id) -> Optional[Assignment]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Assignment)
                .where(Assignment.order_id == order_id)
                .where(Assignment.courier_id == courier_id)
            )
            return result.scalars().first()

    async def list_for_order(self, order_id) -> list:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Assignment)
                .where(Assignment.order_id == order_id)
                .order_by(Assignment.round_number, Assignment.assigned_at)
            )
            return list(result.scalars().all())

    async def list_for_courier(self, courier_id, statuses=None) -> list:
        query = select(Assignment).where(Assignment.courier_id == courier_id)
        if statuses:
            query = query.where(Assignment.status.in_(statuses))
        async with self.session_factory() as session:
            result = await session.execute(query.order_by(Assignment.assigned_at.desc()))
            return list(result.scalars().all())

    async def pending_count(self, order_id) -> int:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.count(Assignment.id))
                .where(Assignment.order_id == order_id)
                .where(Assignment.status == AssignmentStatus.PENDING)
            )
            return result.scalar_one()

    async def has_winner(self, order_id) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Assignment.id)
                .where(Assignment.order_id == order_id)
                .where(Assignment.status.in_(WINNING_STATUSES))
                .limit(1)
            )
            return result.first() is not None

    async def current_round(self, order_id) -> Optional[int]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(func.max(Assignment.round_number))
                .where(Assignment.order_id == order_id)
                .where(or_(Assignment.rejection_reason.is_(None), Assignment.rejection_reason != REASON_SUPERSEDED))
            )
            return result.scalar_one_or_none()

    async def offered_courier_ids(self, order_id) -> set:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Assignment.courier_id).where(Assignment.order_id == order_id)
            )
            return set(result.scalars().all())

    async def active_counts(self, courier_ids) -> dict:
        """PENDING + ACCEPTED rows per courier; couriers with none map to 0."""
        courier_ids = list(courier_ids)
        counts = {courier_id: 0 for courier_id in courier_ids}
        if not courier_ids:
            return counts
        async with self.session_factory() as session:
            result = await session.execute(
                select(Assignment.courier_id, func.count(Assignment.id))
                .where(Assignment.courier_id.in_(courier_ids))
                .where(Assignment.status.in_(ACTIVE_STATUSES))
                .group_by(Assignment.courier_id)
            )
            for courier_id, count in result.all():
                counts[courier_id] = count
        return counts

    async def orders_with_overdue(self, now) -> list:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Assignment.order_id)
                .where(Assignment.status == AssignmentStatus.PENDING)
                .where(Assignment.expires_at <= now)
                .distinct()
            )
            return list(result.scalars().all())
