from sqlalchemy import Boolean, Column, DateTime, Float, ForeignKey, Index, String, Uuid
from courier_dispatch.models.base_model import BaseModel
from courier_dispatch.core.time_utils import utcnow


class Courier(BaseModel):
    __tablename__ = 'couriers'

    name = Column(String, nullable=False, index=True)
    phone = Column(String, nullable=False)
    rating = Column(Float, nullable=True)
    is_active = Column(Boolean, nullable=False, default=True)
    is_online = Column(Boolean, nullable=False, default=False, index=True)


class CourierLocation(BaseModel):
    """Append-only location pings; the newest row is the courier's position."""

    __tablename__ = 'courier_locations'
    __table_args__ = (
        Index('ix_courier_locations_courier_recorded', 'courier_id', 'recorded_at'),
    )

    courier_id = Column(Uuid(as_uuid=True), ForeignKey('couriers.id'), nullable=False)
    latitude = Column(Float, nullable=False)
    longitude = Column(Float, nullable=False)
    accuracy_meters = Column(Float, nullable=True)
    recorded_at = Column(DateTime, nullable=False, default=utcnow, index=True)
