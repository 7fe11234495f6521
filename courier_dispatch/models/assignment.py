from sqlalchemy import Column, DateTime, Integer, String, ForeignKey, Enum, Index, UniqueConstraint, Uuid, text
from enum import Enum as PyEnum
from courier_dispatch.models.base_model import BaseModel
from courier_dispatch.core.time_utils import utcnow


class AssignmentStatus(PyEnum):
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    REJECTED = "REJECTED"
    CANCELLED = "CANCELLED"
    COMPLETED = "COMPLETED"


ACTIVE_STATUSES = (AssignmentStatus.PENDING, AssignmentStatus.ACCEPTED)

REASON_EXPIRED = "expired"
REASON_ASSIGNED_ELSEWHERE = "order assigned to another courier"
REASON_SUPERSEDED = "superseded by a concurrent round"


class Assignment(BaseModel):
    """One offer to one courier for one order. Rows are never deleted."""

    __tablename__ = 'assignments'
    __table_args__ = (
        UniqueConstraint('order_id', 'courier_id', name='uq_assignments_order_courier'),
        Index('ix_assignments_courier_status', 'courier_id', 'status'),
        # At most one winner per order, enforced by the database.
        Index(
            'uq_assignments_order_accepted',
            'order_id',
            unique=True,
            postgresql_where=text("status = 'ACCEPTED'"),
            sqlite_where=text("status = 'ACCEPTED'"),
        ),
    )

    order_id = Column(Uuid(as_uuid=True), ForeignKey('orders.id'), nullable=False, index=True)
    courier_id = Column(Uuid(as_uuid=True), ForeignKey('couriers.id'), nullable=False)
    round_number = Column(Integer, nullable=False, default=0)
    status = Column(Enum(AssignmentStatus), nullable=False, default=AssignmentStatus.PENDING, index=True)
    assigned_at = Column(DateTime, nullable=False, default=utcnow)
    expires_at = Column(DateTime, nullable=False)
    accepted_at = Column(DateTime, nullable=True)
    rejected_at = Column(DateTime, nullable=True)
    cancelled_at = Column(DateTime, nullable=True)
    picked_up_at = Column(DateTime, nullable=True)
    completed_at = Column(DateTime, nullable=True)
    rejection_reason = Column(String, nullable=True)

    def to_dict(self) -> dict:
        return {
            "assignment_id": str(self.id),
            "order_id": str(self.order_id),
            "courier_id": str(self.courier_id),
            "round": self.round_number,
            "status": self.status.value,
            "assigned_at": self.assigned_at.isoformat() if self.assigned_at else None,
            "expires_at": self.expires_at.isoformat() if self.expires_at else None,
            "accepted_at": self.accepted_at.isoformat() if self.accepted_at else None,
            "rejected_at": self.rejected_at.isoformat() if self.rejected_at else None,
            "cancelled_at": self.cancelled_at.isoformat() if self.cancelled_at else None,
            "picked_up_at": self.picked_up_at.isoformat() if self.picked_up_at else None,
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "rejection_reason": self.rejection_reason,
        }
