from sqlalchemy import select
from courier_dispatch.models.courier import Courier, CourierLocation
from courier_dispatch.models.snapshots import CourierSnapshot
from courier_dispatch.core.time_utils import utcnow
import logging
from typing import Optional

logger = logging.getLogger(__name__)


def courier_to_dict(courier: Courier) -> dict:
    return {
        "id": str(courier.id),
        "name": courier.name,
        "phone": courier.phone,
        "rating": courier.rating,
        "is_online": courier.is_online,
        "is_active": courier.is_active,
    }


class CourierService:
    def __init__(self, session_factory, default_rating: float = 4.5, clock=utcnow):
        self.session_factory = session_factory
        self.default_rating = default_rating
        self.clock = clock

    async def create_courier(self, name: str, phone: str, rating: Optional[float] = None) -> dict:
        async with self.session_factory() as session:
            try:
                if rating is not None and not 0 <= rating <= 5:
                    logger.warning(f"Courier creation with out-of-range rating: {rating}")
                    return {"error": "Rating must be between 0 and 5", "status": 400}

                courier = Courier(
                    name=name,
                    phone=phone,
                    rating=rating,
                    is_active=True,
                    is_online=False
                )
                session.add(courier)
                await session.commit()
                await session.refresh(courier)
                logger.info(f"Courier created successfully: {name}")
                return courier_to_dict(courier)
            except Exception as e:
                await session.rollback()
                logger.error(f"Courier creation failed: {str(e)}", exc_info=True)
                return {"error": f"Failed to create courier: {str(e)}", "status": 500}

    async def update_location(self, courier_id, latitude: float, longitude: float, accuracy_meters: Optional[float] = None) -> dict:
        """Record a location ping; a ping also marks the courier online."""
        async with self.session_factory() as session:
            try:
                if not -90 <= latitude <= 90 or not -180 <= longitude <= 180:
                    return {"error": "Invalid coordinates", "status": 400}

                result = await session.execute(select(Courier).where(Courier.id == courier_id))
                courier = result.scalars().first()
                if not courier or not courier.is_active:
                    logger.warning(f"Location ping for unknown or inactive courier: {courier_id}")
                    return {"error": "Courier not found", "status": 404}

                recorded_at = self.clock()
                session.add(CourierLocation(
                    courier_id=courier.id,
                    latitude=latitude,
                    longitude=longitude,
                    accuracy_meters=accuracy_meters,
                    recorded_at=recorded_at
                ))
                courier.is_online = True
                await session.commit()
                logger.debug(f"Location updated for courier {courier_id}: ({latitude}, {longitude})")
                return {
                    "courier_id": str(courier.id),
                    "latitude": latitude,
                    "longitude": longitude,
                    "recorded_at": recorded_at.isoformat(),
                    "is_online": True
                }
            except Exception as e:
                await session.rollback()
                logger.error(f"Location update failed for courier {courier_id}: {str(e)}", exc_info=True)
                return {"error": "Failed to update location", "status": 500}

    async def go_offline(self, courier_id) -> dict:
        async with self.session_factory() as session:
            try:
                result = await session.execute(select(Courier).where(Courier.id == courier_id))
                courier = result.scalars().first()
                if not courier:
                    return {"error": "Courier not found", "status": 404}
                courier.is_online = False
                await session.commit()
                logger.info(f"Courier {courier_id} went offline")
                return {"message": "Courier is offline", "courier_id": str(courier.id)}
            except Exception as e:
                await session.rollback()
                logger.error(f"Failed to take courier {courier_id} offline: {str(e)}", exc_info=True)
                return {"error": "Failed to update courier", "status": 500}

    async def get_courier_snapshot(self, courier_id) -> Optional[CourierSnapshot]:
        async with self.session_factory() as session:
            courier = (await session.execute(
                select(Courier).where(Courier.id == courier_id)
            )).scalars().first()
            if not courier:
                return None
            location = (await session.execute(
                select(CourierLocation)
                .where(CourierLocation.courier_id == courier_id)
                .order_by(CourierLocation.recorded_at.desc())
                .limit(1)
            )).scalars().first()

        return CourierSnapshot(
            courier_id=courier.id,
            latitude=location.latitude if location else None,
            longitude=location.longitude if location else None,
            recorded_at=location.recorded_at if location else None,
            rating=courier.rating if courier.rating is not None else self.default_rating,
            online=courier.is_online and courier.is_active,
        )
