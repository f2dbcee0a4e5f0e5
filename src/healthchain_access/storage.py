"""Transaction and deadline handling shared by all stores."""

import asyncio
import logging
from contextlib import asynccontextmanager

import asyncpg

from .errors import DeadlineExceededError, StorageError

logger = logging.getLogger(__name__)

STORAGE_EXCEPTIONS = (asyncpg.PostgresError, asyncpg.InterfaceError, OSError)


@asynccontextmanager
async def storage_operation(
    conn: asyncpg.Connection,
    operation: str,
    timeout: float | None = None,
):
    """Run a block as one transaction bounded by an optional deadline.

    The deadline covers the statements inside the block. COMMIT runs after
    the deadline scope has closed, so a commit that reached the server is
    never reported as a timeout. Domain errors raised inside the block roll
    the transaction back and propagate unchanged. Driver failures become
    ``StorageError`` and an elapsed deadline becomes
    ``DeadlineExceededError``; in both cases nothing the block wrote is
    committed. Nested use inside an outer ``storage_operation`` becomes a
    savepoint.
    """
    try:
        async with conn.transaction():
            async with asyncio.timeout(timeout):
                yield conn
    except TimeoutError as e:
        logger.warning("Deadline of %ss exceeded during %s", timeout, operation)
        raise DeadlineExceededError(f"{operation} exceeded deadline of {timeout}s") from e
    except STORAGE_EXCEPTIONS as e:
        logger.error("Storage failure during %s: %s", operation, e)
        raise StorageError(f"{operation} failed: {e}") from e


@asynccontextmanager
async def read_operation(operation: str, timeout: float | None = None):
    """Bound a read-only query with a deadline and wrap driver failures."""
    try:
        async with asyncio.timeout(timeout):
            yield
    except TimeoutError as e:
        raise DeadlineExceededError(f"{operation} exceeded deadline of {timeout}s") from e
    except STORAGE_EXCEPTIONS as e:
        logger.error("Storage failure during %s: %s", operation, e)
        raise StorageError(f"{operation} failed: {e}") from e
