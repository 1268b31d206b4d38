"""
Unit of Work.

One atomic scope per business operation. Rows read-then-written inside the
scope are locked with SELECT ... FOR UPDATE; unique-key races and lock
conflicts abort the scope and the whole operation is retried.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Any, Awaitable, Callable, Optional

from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from backend.app.core.config import settings

logger = logging.getLogger("loyalty.uow")


def lock_for_update(query):
    """
    Apply row-level locking for read-then-write rows.

    NOTE: SQLite ignores SELECT ... FOR UPDATE, PostgreSQL honors it.
    """
    return query.with_for_update()


class UnitOfWork:

    def __init__(
        self,
        session_factory: async_sessionmaker,
        attempts: Optional[int] = None,
        backoff_base: float = 0.05,
    ):
        self.session_factory = session_factory
        self.attempts = attempts or settings.db_conflict_retries
        self.backoff_base = backoff_base

    @asynccontextmanager
    async def atomic(self):
        """Yield a session inside one transaction. Commit on success, rollback on any error."""
        async with self.session_factory() as session:
            async with session.begin():
                yield session

    async def run(self, operation: Callable[[AsyncSession], Awaitable[Any]]) -> Any:
        """
        Execute `operation(session)` atomically, retrying on storage conflicts.

        Retries on IntegrityError (unique key race on first insert) and
        OperationalError (deadlocks, lock timeouts). Domain errors propagate
        on the first attempt.
        """
        for attempt in range(self.attempts):
            try:
                async with self.atomic() as session:
                    return await operation(session)
            except (IntegrityError, OperationalError) as exc:
                if attempt >= self.attempts - 1:
                    raise
                logger.info(
                    "Storage conflict (%s), retrying attempt %d/%d",
                    type(exc).__name__, attempt + 2, self.attempts
                )
                await asyncio.sleep(self.backoff_base * (2 ** attempt))
