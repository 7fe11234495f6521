from sqlalchemy import select, update
from courier_dispatch.models.order import Order, OrderStatus
from courier_dispatch.models.snapshots import GeoPoint
import logging
from typing import Optional

logger = logging.getLogger(__name__)

READY_FROM = (OrderStatus.PLACED, OrderStatus.CONFIRMED, OrderStatus.PREPARING)


def order_to_dict(order: Order) -> dict:
    return {
        "id": str(order.id),
        "customer_name": order.customer_name,
        "address": order.address,
        "pickup_latitude": order.pickup_latitude,
        "pickup_longitude": order.pickup_longitude,
        "assigned_courier_id": str(order.assigned_courier_id) if order.assigned_courier_id else None,
        "status": order.status.value,
    }


class OrderService:
    def __init__(self, session_factory):
        self.session_factory = session_factory

    async def create_order(self, customer_name: str, address: str, pickup_latitude: float, pickup_longitude: float) -> dict:
        async with self.session_factory() as session:
            try:
                if not -90 <= pickup_latitude <= 90 or not -180 <= pickup_longitude <= 180:
                    logger.warning(f"Order creation with invalid pickup coordinates: ({pickup_latitude}, {pickup_longitude})")
                    return {"error": "Invalid pickup coordinates", "status": 400}

                order = Order(
                    customer_name=customer_name,
                    address=address,
                    pickup_latitude=pickup_latitude,
                    pickup_longitude=pickup_longitude,
                    status=OrderStatus.PLACED
                )
                session.add(order)
                await session.commit()
                await session.refresh(order)
                logger.info(f"Order created successfully: {order.id}")
                return order_to_dict(order)
            except Exception as e:
                await session.rollback()
                logger.error(f"Order creation failed: {str(e)}", exc_info=True)
                return {"error": f"Failed to create order: {str(e)}", "status": 500}

    async def get_order(self, order_id) -> dict:
        async with self.session_factory() as session:
            try:
                result = await session.execute(select(Order).where(Order.id == order_id))
                order = result.scalars().first()
                if not order:
                    return {"error": "Order not found", "status": 404}
                return order_to_dict(order)
            except Exception as e:
                logger.error(f"Failed to load order {order_id}: {str(e)}", exc_info=True)
                return {"error": "Failed to load order", "status": 500}

    async def mark_ready(self, order_id) -> dict:
        """Kitchen handed the order over; it can now be dispatched."""
        async with self.session_factory() as session:
            try:
                result = await session.execute(select(Order).where(Order.id == order_id))
                order = result.scalars().first()
                if not order:
                    return {"error": "Order not found", "status": 404}
                if order.status == OrderStatus.READY:
                    return order_to_dict(order)
                if order.status not in READY_FROM:
                    logger.warning(f"Order {order_id} cannot become ready from {order.status.value}")
                    return {"error": f"Order is {order.status.value}", "status": 409}
                order.status = OrderStatus.READY
                await session.commit()
                logger.info(f"Order {order_id} is ready for pickup")
                return order_to_dict(order)
            except Exception as e:
                await session.rollback()
                logger.error(f"Failed to mark order {order_id} ready: {str(e)}", exc_info=True)
                return {"error": "Failed to update order", "status": 500}

    # The calls below are used by the assignment engine; store errors propagate
    # so the engine can retry them.

    async def get_status(self, order_id) -> Optional[OrderStatus]:
        async with self.session_factory() as session:
            result = await session.execute(select(Order.status).where(Order.id == order_id))
            return result.scalar_one_or_none()

    async def get_pickup_location(self, order_id) -> Optional[GeoPoint]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(Order.pickup_latitude, Order.pickup_longitude).where(Order.id == order_id)
            )
            row = result.first()
            if row is None:
                return None
            return GeoPoint(latitude=row.pickup_latitude, longitude=row.pickup_longitude)

    async def set_assigned_courier(self, order_id, courier_id) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id)
                .where(Order.status == OrderStatus.READY)
                .values(status=OrderStatus.ASSIGNED, assigned_courier_id=courier_id)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount == 1:
            logger.info(f"Order {order_id} assigned to courier {courier_id}")
            return True
        logger.warning(f"Order {order_id} was not READY when courier {courier_id} won it")
        return False

    async def advance_assigned_order(self, order_id, courier_id, source: OrderStatus, target: OrderStatus) -> bool:
        async with self.session_factory() as session:
            result = await session.execute(
                update(Order)
                .where(Order.id == order_id)
                .where(Order.assigned_courier_id == courier_id)
                .where(Order.status == source)
                .values(status=target)
                .execution_options(synchronize_session=False)
            )
            await session.commit()
        if result.rowcount == 1:
            logger.info(f"Order {order_id} status updated to {target.value}")
            return True
        return False
