from sqlalchemy import select, func, and_
from courier_dispatch.models.courier import Courier, CourierLocation
from courier_dispatch.models.snapshots import CourierSnapshot, GeoPoint
from courier_dispatch.core.time_utils import utcnow
import logging
import math
from datetime import timedelta

logger = logging.getLogger(__name__)

EARTH_RADIUS_KM = 6371.0
KM_PER_DEGREE = EARTH_RADIUS_KM * math.pi / 180


def haversine(lat1: float, lon1: float, lat2: float, lon2: float) -> float:
    """Calculate distance between two points in kilometers using Haversine formula."""
    lat1, lon1, lat2, lon2 = map(math.radians, [lat1, lon1, lat2, lon2])
    dlat = lat2 - lat1
    dlon = lon2 - lon1
    a = math.sin(dlat / 2) ** 2 + math.cos(lat1) * math.cos(lat2) * math.sin(dlon / 2) ** 2
    c = 2 * math.asin(math.sqrt(min(1.0, a)))
    return EARTH_RADIUS_KM * c


def bounding_box(origin: GeoPoint, radius_km: float) -> tuple:
    """Lat/lon box that contains every point within ``radius_km`` of ``origin``.

    Returns (min_lat, max_lat, min_lon, max_lon); the longitude bounds are None
    when the box would wrap the antimeridian or touch a pole.
    """
    dlat = radius_km / KM_PER_DEGREE
    min_lat = max(-90.0, origin.latitude - dlat)
    max_lat = min(90.0, origin.latitude + dlat)
    cos_lat = math.cos(math.radians(max(abs(min_lat), abs(max_lat))))
    if cos_lat < 1e-6:
        return min_lat, max_lat, None, None
    dlon = radius_km / (KM_PER_DEGREE * cos_lat)
    min_lon = origin.longitude - dlon
    max_lon = origin.longitude + dlon
    if min_lon < -180.0 or max_lon > 180.0:
        return min_lat, max_lat, None, None
    return min_lat, max_lat, min_lon, max_lon


class GeoIndex:
    """Finds online couriers with a fresh position near a point.

    Reads the latest row of ``courier_locations`` per courier. Store errors
    propagate to the caller; an empty list always means "nobody in range".
    """

    def __init__(self, session_factory, freshness_seconds: int = 300, default_rating: float = 4.5, clock=utcnow):
        self.session_factory = session_factory
        self.freshness = timedelta(seconds=freshness_seconds)
        self.default_rating = default_rating
        self.clock = clock

    async def find_nearby(self, origin: GeoPoint, radius_km: float) -> list:
        cutoff = self.clock() - self.freshness
        min_lat, max_lat, min_lon, max_lon = bounding_box(origin, radius_km)

        latest = (
            select(
                CourierLocation.courier_id.label("courier_id"),
                func.max(CourierLocation.recorded_at).label("recorded_at"),
            )
            .group_by(CourierLocation.courier_id)
            .subquery()
        )
        stmt = (
            select(Courier, CourierLocation)
            .join(latest, latest.c.courier_id == Courier.id)
            .join(
                CourierLocation,
                and_(
                    CourierLocation.courier_id == latest.c.courier_id,
                    CourierLocation.recorded_at == latest.c.recorded_at,
                ),
            )
            .where(Courier.is_active.is_(True))
            .where(Courier.is_online.is_(True))
            .where(CourierLocation.recorded_at >= cutoff)
            .where(CourierLocation.latitude.between(min_lat, max_lat))
        )
        if min_lon is not None:
            stmt = stmt.where(CourierLocation.longitude.between(min_lon, max_lon))

        async with self.session_factory() as session:
            rows = (await session.execute(stmt)).all()

        candidates = {}
        for courier, location in rows:
            distance = haversine(origin.latitude, origin.longitude, location.latitude, location.longitude)
            if distance > radius_km:
                continue
            # Two pings with the same timestamp: keep one.
            candidates[courier.id] = CourierSnapshot(
                courier_id=courier.id,
                latitude=location.latitude,
                longitude=location.longitude,
                recorded_at=location.recorded_at,
                rating=courier.rating if courier.rating is not None else self.default_rating,
                online=True,
                distance_km=distance,
            )

        logger.debug(f"{len(candidates)} couriers within {radius_km}km of ({origin.latitude}, {origin.longitude})")
        return list(candidates.values())
