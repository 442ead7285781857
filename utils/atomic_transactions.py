"""Atomic transaction utilities for ledger operations"""

import logging
import time
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

logger = logging.getLogger(__name__)

# Unique index guarding ledger idempotency (see models.Transaction)
REFERENCE_UNIQUE_INDEX = "ux_transactions_reference"


@asynccontextmanager
async def async_atomic_transaction(
    session_factory: async_sessionmaker,
    operation: str = "ledger_operation",
) -> AsyncGenerator[AsyncSession, None]:
    """
    Open a session and run the body as one all-or-nothing database transaction.

    Commits when the body finishes, rolls back on any exception and re-raises it,
    so a failed step never leaves a half-applied balance change behind.
    """
    start = time.monotonic()
    async with session_factory() as session:
        try:
            async with session.begin():
                yield session
        except Exception as e:
            logger.warning(f"↩️ ATOMIC_ROLLBACK: {operation} rolled back: {type(e).__name__}: {e}")
            raise
        finally:
            elapsed_ms = (time.monotonic() - start) * 1000
            if elapsed_ms > 1000:
                logger.warning(f"🐌 SLOW_TRANSACTION: {operation} took {elapsed_ms:.0f}ms")


def is_reference_conflict(error: IntegrityError, column: Optional[str] = "reference") -> bool:
    """True when an IntegrityError came from the unique transaction reference index"""
    message = str(getattr(error, "orig", error)).lower()
    return REFERENCE_UNIQUE_INDEX in message or (
        column is not None and f"transactions.{column}" in message
    )
