from sqlalchemy import Column, String, Float, ForeignKey, Enum, Uuid
from enum import Enum as PyEnum
from courier_dispatch.models.base_model import BaseModel


class OrderStatus(PyEnum):
    PLACED = "placed"
    CONFIRMED = "confirmed"
    PREPARING = "preparing"
    READY = "ready"
    ASSIGNED = "assigned"
    PICKED_UP = "picked_up"
    DELIVERED = "delivered"
    CANCELLED = "cancelled"


class Order(BaseModel):
    __tablename__ = 'orders'

    customer_name = Column(String, nullable=False, index=True)
    address = Column(String, nullable=False)
    pickup_latitude = Column(Float, nullable=False)
    pickup_longitude = Column(Float, nullable=False)
    assigned_courier_id = Column(Uuid(as_uuid=True), ForeignKey('couriers.id'), nullable=True, index=True)
    status = Column(Enum(OrderStatus), nullable=False, default=OrderStatus.PLACED, index=True)
