"""
Assignment lifecycle as a transition table.

Key   : (current status, event)
Value : next status

Pairs missing from the table are invalid moves. REJECTED, CANCELLED and
COMPLETED are terminal.
"""

from enum import Enum as PyEnum
from courier_dispatch.core.errors import InvalidTransition
from courier_dispatch.models.assignment import AssignmentStatus


class AssignmentEvent(PyEnum):
    ACCEPT = "accept"
    REJECT = "reject"
    EXPIRE = "expire"
    CANCEL = "cancel"
    PICK_UP = "pick_up"
    COMPLETE = "complete"


TRANSITIONS = {
    (AssignmentStatus.PENDING, AssignmentEvent.ACCEPT): AssignmentStatus.ACCEPTED,
    (AssignmentStatus.PENDING, AssignmentEvent.REJECT): AssignmentStatus.REJECTED,
    (AssignmentStatus.PENDING, AssignmentEvent.EXPIRE): AssignmentStatus.REJECTED,
    (AssignmentStatus.PENDING, AssignmentEvent.CANCEL): AssignmentStatus.CANCELLED,
    # Pick-up is recorded as a timestamp; the row stays ACCEPTED.
    (AssignmentStatus.ACCEPTED, AssignmentEvent.PICK_UP): AssignmentStatus.ACCEPTED,
    (AssignmentStatus.ACCEPTED, AssignmentEvent.COMPLETE): AssignmentStatus.COMPLETED,
    (AssignmentStatus.ACCEPTED, AssignmentEvent.CANCEL): AssignmentStatus.CANCELLED,
}


def next_status(status: AssignmentStatus, event: AssignmentEvent) -> AssignmentStatus:
    try:
        return TRANSITIONS[(status, event)]
    except KeyError:
        raise InvalidTransition(status, event) from None


def source_statuses(event: AssignmentEvent) -> tuple:
    """Statuses a row must be in for ``event`` to apply; used as SQL guards."""
    return tuple(
        status for status in AssignmentStatus
        if (status, event) in TRANSITIONS
    )
