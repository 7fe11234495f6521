from dataclasses import dataclass
from datetime import datetime
from typing import Any, Optional


@dataclass(frozen=True)
class GeoPoint:
    latitude: float
    longitude: float


@dataclass(frozen=True)
class CourierSnapshot:
    """Point-in-time view of a courier, passed by value into ranking."""

    courier_id: Any
    latitude: float
    longitude: float
    recorded_at: Optional[datetime]
    rating: float
    online: bool = True
    active_assignments: int = 0
    distance_km: Optional[float] = None

    def to_dict(self) -> dict:
        return {
            "courier_id": str(self.courier_id),
            "latitude": self.latitude,
            "longitude": self.longitude,
            "recorded_at": self.recorded_at.isoformat() if self.recorded_at else None,
            "rating": self.rating,
            "online": self.online,
            "active_assignments": self.active_assignments,
            "distance_km": round(self.distance_km, 3) if self.distance_km is not None else None,
        }
