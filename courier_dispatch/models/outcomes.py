from dataclasses import dataclass, field
from enum import Enum as PyEnum
from typing import Any, List, Optional


class RoundState(PyEnum):
    IDLE = "idle"
    SEARCHING = "searching"
    OFFERED = "offered"
    RESOLVED = "resolved"
    ALL_DECLINED = "all_declined"
    EXPIRED = "expired"


class DispatchStatus(PyEnum):
    OFFERED = "offered"
    NO_COURIERS_AVAILABLE = "no_couriers_available"
    ALREADY_OFFERED = "already_offered"
    ALREADY_ASSIGNED = "already_assigned"
    NOT_DISPATCHABLE = "not_dispatchable"
    ORDER_NOT_FOUND = "order_not_found"
    FAILED = "failed"


class AcceptStatus(PyEnum):
    WON = "won"
    TOO_LATE = "too_late"
    NOT_FOUND = "not_found"


class RejectStatus(PyEnum):
    ACKNOWLEDGED = "acknowledged"
    ALREADY_RESOLVED = "already_resolved"
    NOT_FOUND = "not_found"


class CompletionStatus(PyEnum):
    DONE = "done"
    NOT_ASSIGNED = "not_assigned"
    NOT_FOUND = "not_found"


@dataclass
class DispatchResult:
    order_id: Any
    status: DispatchStatus
    round_number: int = 0
    radius_km: Optional[float] = None
    offered: List[Any] = field(default_factory=list)
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.status is DispatchStatus.OFFERED

    def to_dict(self) -> dict:
        return {
            "order_id": str(self.order_id),
            "status": self.status.value,
            "round": self.round_number,
            "radius_km": self.radius_km,
            "offered": [str(courier_id) for courier_id in self.offered],
            "message": self.message,
        }


@dataclass
class AcceptResult:
    order_id: Any
    courier_id: Any
    status: AcceptStatus
    cancelled: List[Any] = field(default_factory=list)

    @property
    def won(self) -> bool:
        return self.status is AcceptStatus.WON

    def to_dict(self) -> dict:
        return {
            "order_id": str(self.order_id),
            "courier_id": str(self.courier_id),
            "status": self.status.value,
        }


@dataclass
class RejectResult:
    order_id: Any
    courier_id: Any
    status: RejectStatus
    redispatch: Optional[DispatchResult] = None

    def to_dict(self) -> dict:
        return {
            "order_id": str(self.order_id),
            "courier_id": str(self.courier_id),
            "status": self.status.value,
            "redispatch": self.redispatch.to_dict() if self.redispatch else None,
        }


@dataclass
class SweepResult:
    expired: int = 0
    orders: List[Any] = field(default_factory=list)
    redispatched: List[DispatchResult] = field(default_factory=list)
