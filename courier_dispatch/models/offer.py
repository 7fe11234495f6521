from sqlalchemy import Column, DateTime, UniqueConstraint, Uuid
from courier_dispatch.models.base_model import BaseModel


class Offer(BaseModel):
    __tablename__ = 'offers'
    __table_args__ = (
        UniqueConstraint('order_id', 'courier_id', name='uq_offers_order_courier'),
    )

    order_id = Column(Uuid(as_uuid=True), nullable=False, index=True)
    courier_id = Column(Uuid(as_uuid=True), nullable=False)
    opened_at = Column(DateTime, nullable=False)
    expires_at = Column(DateTime, nullable=False, index=True)
