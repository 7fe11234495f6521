import asyncio
import logging
from sqlalchemy.exc import InterfaceError, OperationalError
from sqlalchemy.exc import TimeoutError as PoolTimeoutError
from courier_dispatch.core.errors import StoreFailure

logger = logging.getLogger(__name__)

TRANSIENT_ERRORS = (OperationalError, InterfaceError, PoolTimeoutError, ConnectionError)


class StoreRetry:
    """Runs store calls with bounded exponential backoff on transient errors."""

    def __init__(self, attempts: int = 3, backoff_seconds: float = 0.2):
        self.attempts = max(1, attempts)
        self.backoff_seconds = backoff_seconds

    async def run(self, description: str, operation, *args, **kwargs):
        for attempt in range(1, self.attempts + 1):
            try:
                return await operation(*args, **kwargs)
            except TRANSIENT_ERRORS as e:
                if attempt == self.attempts:
                    logger.error(f"{description} failed after {attempt} attempts: {str(e)}", exc_info=True)
                    raise StoreFailure(description, attempt, e) from e
                delay = self.backoff_seconds * (2 ** (attempt - 1))
                logger.warning(f"{description} failed (attempt {attempt}/{self.attempts}), retrying in {delay:.2f}s: {str(e)}")
                await asyncio.sleep(delay)
