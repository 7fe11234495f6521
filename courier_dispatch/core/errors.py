class DispatchError(Exception):
    """Base class for dispatch engine failures."""


class StoreFailure(DispatchError):
    """A backing store stayed unreachable after the retry budget was spent."""

    def __init__(self, operation: str, attempts: int, cause: Exception = None):
        self.operation = operation
        self.attempts = attempts
        self.cause = cause
        super().__init__(f"{operation} failed after {attempts} attempt(s): {cause}")


class OfferAlreadyOpen(DispatchError):
    """Live offers already exist for the order."""

    def __init__(self, order_id):
        self.order_id = order_id
        super().__init__(f"Offers already open for order {order_id}")


class InvalidTransition(DispatchError):
    """An assignment status does not accept the given event."""

    def __init__(self, status, event):
        self.status = status
        self.event = event
        super().__init__(f"No transition from {status.value} on {event.value}")
