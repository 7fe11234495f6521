import uuid
from sqlalchemy import Column, DateTime, Uuid
from sqlalchemy.orm import declarative_base
from courier_dispatch.core.time_utils import utcnow

Base = declarative_base()


class BaseModel(Base):
    __abstract__ = True

    id = Column(Uuid(as_uuid=True), primary_key=True, default=uuid.uuid4)
    created_at = Column(DateTime, nullable=False, default=utcnow)
    updated_at = Column(DateTime, nullable=False, default=utcnow, onupdate=utcnow)
