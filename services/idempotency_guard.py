"""
Idempotency Guard - at most one ledger mutation per reference

The check runs inside the caller's atomic unit, before the balance is touched.
The unique index on transactions.reference backs it up for the case where two
writers pass the check concurrently: the loser's insert fails and its whole unit
rolls back.
"""

import logging
from typing import Optional

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from models import Transaction
from utils.atomic_transactions import is_reference_conflict
from utils.exceptions import DuplicateReference, ValidationError

logger = logging.getLogger(__name__)

MAX_REFERENCE_LENGTH = 128


class IdempotencyGuard:
    """Reference-keyed duplicate protection for ledger mutations"""

    @staticmethod
    def validate_reference(reference: str) -> str:
        if not isinstance(reference, str) or not reference.strip():
            raise ValidationError("Transaction reference is required")
        reference = reference.strip()
        if len(reference) > MAX_REFERENCE_LENGTH:
            raise ValidationError(f"Transaction reference longer than {MAX_REFERENCE_LENGTH} characters")
        return reference

    @staticmethod
    async def find_existing(session: AsyncSession, reference: str) -> Optional[Transaction]:
        result = await session.execute(select(Transaction).where(Transaction.reference == reference))
        return result.scalar_one_or_none()

    @classmethod
    async def ensure_unused(cls, session: AsyncSession, reference: str) -> None:
        """
        Raise DuplicateReference if a transaction with this reference exists.

        Must be called inside the same atomic unit as the mutation it protects.
        """
        existing = await cls.find_existing(session, reference)
        if existing is not None:
            logger.info(
                f"🔁 IDEMPOTENCY_HIT: reference={reference} already recorded "
                f"(user={existing.user_id}, type={existing.transaction_type})"
            )
            raise DuplicateReference(reference)

    @staticmethod
    def raise_if_reference_conflict(error: IntegrityError, reference: str) -> None:
        """Map a lost race on the unique reference index to DuplicateReference; other errors are left to the caller"""
        if is_reference_conflict(error):
            logger.info(f"🔁 IDEMPOTENCY_RACE: concurrent insert for reference={reference} lost")
            raise DuplicateReference(reference) from error
