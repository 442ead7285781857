"""
Wallet Ledger - the only component allowed to move a user's balance

Each credit/debit is one atomic database unit:
    reference check -> conditional balance update -> transaction insert
If any step fails the unit rolls back and the balance is untouched. The balance
check for debits is part of the UPDATE itself (balance >= amount), so two
concurrent debits can never both pass on the same funds.
A wallet-to-wallet transfer writes both legs in one such unit.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from config import Config
from models import Transaction, TransactionStatus, TransactionType, Wallet, WalletStatus
from services.idempotency_guard import IdempotencyGuard
from utils.amount_normalizer import format_naira
from utils.atomic_transactions import async_atomic_transaction, is_reference_conflict
from utils.exceptions import DuplicateReference, InsufficientFunds, ValidationError, WalletNotActive
from utils.transaction_metadata import (
    RefundMetadata,
    TransactionMetadata,
    TransferMetadata,
    build_metadata,
    metadata_envelope,
)

logger = logging.getLogger(__name__)

MetadataInput = Union[TransactionMetadata, Dict[str, Any], None]

# Administrative wallet status transitions; ledger operations never change status
ALLOWED_STATUS_TRANSITIONS = {
    WalletStatus.ACTIVE: {WalletStatus.SUSPENDED, WalletStatus.CLOSED},
    WalletStatus.SUSPENDED: {WalletStatus.ACTIVE},
    WalletStatus.CLOSED: set(),
}


# ============================================================================
# RESULT TYPES
# ============================================================================

@dataclass
class LedgerResult:
    balance: int
    transaction: Transaction

    def to_dict(self) -> Dict[str, Any]:
        return {"balance": self.balance, "transaction": serialize_transaction(self.transaction)}


@dataclass
class TransferResult:
    reference: str
    amount: int
    sender_balance: int
    recipient_balance: int
    debit: Transaction
    credit: Transaction

    def to_dict(self) -> Dict[str, Any]:
        return {
            "reference": self.reference,
            "amount": self.amount,
            "balance": self.sender_balance,
            "debit": serialize_transaction(self.debit),
        }


@dataclass
class BalanceInfo:
    user_id: str
    balance: int
    currency: str
    status: str

    def to_dict(self) -> Dict[str, Any]:
        return {"user_id": self.user_id, "balance": self.balance, "currency": self.currency, "status": self.status}


@dataclass
class IntegrityReport:
    user_id: str
    wallet_balance: int
    computed_balance: int
    difference: int
    transaction_count: int
    snapshot_breaks: List[str] = field(default_factory=list)
    is_valid: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            "user_id": self.user_id,
            "wallet_balance": self.wallet_balance,
            "computed_balance": self.computed_balance,
            "difference": self.difference,
            "transaction_count": self.transaction_count,
            "snapshot_breaks": list(self.snapshot_breaks),
            "is_valid": self.is_valid,
        }


@dataclass
class TransactionPage:
    transactions: List[Transaction]
    page: int
    limit: int
    total: int

    @property
    def pages(self) -> int:
        return (self.total + self.limit - 1) // self.limit if self.total else 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "transactions": [serialize_transaction(tx) for tx in self.transactions],
            "pagination": {"page": self.page, "limit": self.limit, "total": self.total, "pages": self.pages},
        }


@dataclass
class WalletStats:
    balance: int
    currency: str
    status: str
    total_credits: int
    total_debits: int
    transaction_count: int
    recent_transactions: List[Transaction]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "balance": self.balance,
            "currency": self.currency,
            "status": self.status,
            "total_credits": self.total_credits,
            "total_debits": self.total_debits,
            "transaction_count": self.transaction_count,
            "recent_transactions": [serialize_transaction(tx) for tx in self.recent_transactions],
        }


def serialize_transaction(tx: Transaction) -> Dict[str, Any]:
    return {
        "reference": tx.reference,
        "user_id": tx.user_id,
        "type": tx.transaction_type,
        "amount": tx.amount,
        "currency": tx.currency,
        "status": tx.status,
        "balance_before": tx.balance_before,
        "balance_after": tx.balance_after,
        "description": tx.description,
        "metadata": tx.extra_data,
        "created_at": tx.created_at.isoformat() if tx.created_at else None,
    }


# ============================================================================
# LEDGER
# ============================================================================

class WalletLedger:
    """Wallet balance and transaction history with atomic, idempotent mutations"""

    def __init__(self, session_factory: async_sessionmaker, currency: Optional[str] = None):
        self.session_factory = session_factory
        self.currency = currency or Config.DEFAULT_CURRENCY

    # ------------------------------------------------------------------
    # Validation
    # ------------------------------------------------------------------

    @staticmethod
    def _validate_user_id(user_id: Union[str, int]) -> str:
        if isinstance(user_id, bool) or user_id is None:
            raise ValidationError("user_id is required")
        user_id = str(user_id).strip()
        if not user_id:
            raise ValidationError("user_id is required")
        return user_id

    @staticmethod
    def _validate_amount(amount: int) -> int:
        # Amounts reach the ledger already normalized to integer kobo
        if isinstance(amount, bool) or not isinstance(amount, int):
            raise ValidationError(f"Amount must be integer kobo, got {amount!r}")
        if amount <= 0:
            raise ValidationError(f"Amount must be positive, got {amount}")
        return amount

    @staticmethod
    def _coerce_type(transaction_type: Union[TransactionType, str]) -> TransactionType:
        if isinstance(transaction_type, TransactionType):
            return transaction_type
        try:
            return TransactionType(transaction_type)
        except ValueError as e:
            raise ValidationError(f"Unknown transaction type: {transaction_type!r}") from e

    # ------------------------------------------------------------------
    # Wallet access
    # ------------------------------------------------------------------

    async def _select_wallet(self, session: AsyncSession, user_id: str) -> Optional[Wallet]:
        result = await session.execute(select(Wallet).where(Wallet.user_id == user_id))
        return result.scalar_one_or_none()

    async def _load_or_create_wallet(self, session: AsyncSession, user_id: str) -> Wallet:
        wallet = await self._select_wallet(session, user_id)
        if wallet is not None:
            return wallet

        try:
            async with session.begin_nested():
                wallet = Wallet(
                    user_id=user_id,
                    balance=0,
                    currency=self.currency,
                    status=WalletStatus.ACTIVE.value,
                )
                session.add(wallet)
            logger.info(f"👛 WALLET_CREATED: user={user_id} currency={self.currency}")
            return wallet
        except IntegrityError:
            # Created concurrently by another request
            wallet = await self._select_wallet(session, user_id)
            if wallet is None:
                raise
            return wallet

    async def get_or_create_wallet(self, user_id: Union[str, int]) -> Wallet:
        """Return the user's wallet, creating an empty active one on first access"""
        user_id = self._validate_user_id(user_id)
        async with async_atomic_transaction(self.session_factory, f"get_or_create_wallet:{user_id}") as session:
            return await self._load_or_create_wallet(session, user_id)

    async def get_balance(self, user_id: Union[str, int]) -> BalanceInfo:
        wallet = await self.get_or_create_wallet(user_id)
        return BalanceInfo(
            user_id=wallet.user_id,
            balance=wallet.balance,
            currency=wallet.currency,
            status=wallet.status,
        )

    async def set_wallet_status(self, user_id: Union[str, int], status: Union[WalletStatus, str]) -> Wallet:
        """
        Administrative status change (suspend, reactivate, close).

        Closed is terminal. Credit and debit only read the status, they never change it.
        """
        user_id = self._validate_user_id(user_id)
        try:
            target = status if isinstance(status, WalletStatus) else WalletStatus(status)
        except ValueError as e:
            raise ValidationError(f"Unknown wallet status: {status!r}") from e

        async with async_atomic_transaction(self.session_factory, f"set_wallet_status:{user_id}") as session:
            wallet = await self._load_or_create_wallet(session, user_id)
            current = WalletStatus(wallet.status)
            if target == current:
                return wallet
            if target not in ALLOWED_STATUS_TRANSITIONS[current]:
                raise ValidationError(f"Wallet status cannot change from {current.value} to {target.value}")

            wallet.status = target.value
            await session.flush()
            logger.warning(f"🔒 WALLET_STATUS_CHANGED: user={user_id} {current.value} -> {target.value}")
            return wallet

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    async def credit(
        self,
        user_id: Union[str, int],
        amount: int,
        transaction_type: Union[TransactionType, str],
        reference: str,
        metadata: MetadataInput = None,
        description: Optional[str] = None,
    ) -> LedgerResult:
        """
        Credit a wallet exactly once for a reference.

        Args:
            user_id: Owner of the wallet (created on first access)
            amount: Positive amount in kobo
            transaction_type: Ledger transaction type
            reference: Globally unique idempotency key
            metadata: Typed metadata for the transaction type, or a dict of its fields
            description: Optional human-readable narration

        Returns:
            LedgerResult with the new balance and the recorded transaction

        Raises:
            ValidationError, DuplicateReference, WalletNotActive
        """
        return await self._apply(user_id, amount, transaction_type, reference, metadata, description, sign=1)

    async def debit(
        self,
        user_id: Union[str, int],
        amount: int,
        transaction_type: Union[TransactionType, str],
        reference: str,
        metadata: MetadataInput = None,
        description: Optional[str] = None,
    ) -> LedgerResult:
        """
        Debit a wallet exactly once for a reference; the transaction is recorded with a negative amount.

        Raises:
            ValidationError, DuplicateReference, WalletNotActive, InsufficientFunds
        """
        return await self._apply(user_id, amount, transaction_type, reference, metadata, description, sign=-1)

    async def refund(
        self,
        user_id: Union[str, int],
        amount: int,
        original_reference: str,
        reason: Optional[str] = None,
    ) -> LedgerResult:
        """Compensating credit for a failed purchase, under its own reference"""
        original_reference = IdempotencyGuard.validate_reference(original_reference)
        return await self.credit(
            user_id,
            amount,
            TransactionType.REFUND,
            refund_reference(original_reference),
            RefundMetadata(original_reference=original_reference, reason=reason),
            description=f"Refund for {original_reference}",
        )

    async def _apply(
        self,
        user_id: Union[str, int],
        amount: int,
        transaction_type: Union[TransactionType, str],
        reference: str,
        metadata: MetadataInput,
        description: Optional[str],
        sign: int,
    ) -> LedgerResult:
        user_id = self._validate_user_id(user_id)
        amount = self._validate_amount(amount)
        tx_type = self._coerce_type(transaction_type)
        reference = IdempotencyGuard.validate_reference(reference)
        typed_metadata = build_metadata(tx_type, metadata)
        operation = "credit" if sign > 0 else "debit"
        delta = sign * amount

        try:
            async with async_atomic_transaction(self.session_factory, f"{operation}:{reference}") as session:
                await IdempotencyGuard.ensure_unused(session, reference)
                wallet = await self._load_or_create_wallet(session, user_id)
                result = await self._post_entry(session, wallet, tx_type, reference, delta, typed_metadata, description)
        except IntegrityError as e:
            IdempotencyGuard.raise_if_reference_conflict(e, reference)
            raise

        icon = "✅" if sign > 0 else "💸"
        logger.info(
            f"{icon} WALLET_{operation.upper()}: user={user_id} {format_naira(amount)} "
            f"type={tx_type.value} ref={reference} balance={format_naira(result.balance)}"
        )
        return result

    async def _post_entry(
        self,
        session: AsyncSession,
        wallet: Wallet,
        tx_type: TransactionType,
        reference: str,
        delta: int,
        metadata: TransactionMetadata,
        description: Optional[str],
    ) -> LedgerResult:
        """Balance update plus its ledger row, inside the caller's atomic unit"""
        balance_after = await self._update_balance(session, wallet, delta)
        transaction = Transaction(
            reference=reference,
            user_id=wallet.user_id,
            wallet_id=wallet.id,
            transaction_type=tx_type.value,
            amount=delta,
            currency=wallet.currency,
            status=TransactionStatus.COMPLETED.value,
            balance_before=balance_after - delta,
            balance_after=balance_after,
            description=description,
            extra_data=metadata_envelope(tx_type, metadata),
        )
        session.add(transaction)
        await session.flush()
        return LedgerResult(balance=balance_after, transaction=transaction)

    async def transfer(
        self,
        sender_id: Union[str, int],
        recipient_id: Union[str, int],
        amount: int,
        reference: str,
        note: Optional[str] = None,
    ) -> TransferResult:
        """
        Move `amount` kobo from one wallet to another in a single atomic unit.

        The sender's leg is recorded under `{reference}-out` and the recipient's
        under `{reference}-in`. Either both legs are written or neither is.

        Raises:
            ValidationError: self-transfer, bad amount/reference, or no recipient wallet
            DuplicateReference: the transfer reference was used before
            InsufficientFunds, WalletNotActive: from either leg; nothing is written
        """
        sender_id = self._validate_user_id(sender_id)
        recipient_id = self._validate_user_id(recipient_id)
        if sender_id == recipient_id:
            raise ValidationError("Cannot transfer to the same wallet")
        amount = self._validate_amount(amount)
        reference = IdempotencyGuard.validate_reference(reference)
        out_reference, in_reference = transfer_references(reference)
        IdempotencyGuard.validate_reference(out_reference)
        if note is not None and not isinstance(note, str):
            raise ValidationError("Transfer note must be a string")
        description = note or "Wallet transfer"

        try:
            async with async_atomic_transaction(self.session_factory, f"transfer:{reference}") as session:
                try:
                    await IdempotencyGuard.ensure_unused(session, out_reference)
                    await IdempotencyGuard.ensure_unused(session, in_reference)
                except DuplicateReference:
                    raise DuplicateReference(reference)

                recipient = await self._select_wallet(session, recipient_id)
                if recipient is None:
                    raise ValidationError(f"Recipient wallet not found: {recipient_id}")
                sender = await self._load_or_create_wallet(session, sender_id)

                legs = [
                    (sender, out_reference, -amount, TransferMetadata(
                        transfer_reference=reference, direction="out", counterparty_user_id=recipient_id, note=note,
                    )),
                    (recipient, in_reference, amount, TransferMetadata(
                        transfer_reference=reference, direction="in", counterparty_user_id=sender_id, note=note,
                    )),
                ]
                # Lock wallet rows in id order so opposite transfers cannot deadlock
                posted = {}
                for wallet, leg_reference, delta, metadata in sorted(legs, key=lambda leg: leg[0].id):
                    posted[leg_reference] = await self._post_entry(
                        session, wallet, TransactionType.TRANSFER, leg_reference, delta, metadata, description
                    )
        except IntegrityError as e:
            if is_reference_conflict(e):
                logger.info(f"🔁 IDEMPOTENCY_RACE: concurrent transfer for reference={reference} lost")
                raise DuplicateReference(reference) from e
            raise

        debit, credit = posted[out_reference], posted[in_reference]
        logger.info(
            f"🔀 WALLET_TRANSFER: {sender_id} -> {recipient_id} {format_naira(amount)} ref={reference} "
            f"sender_balance={format_naira(debit.balance)}"
        )
        return TransferResult(
            reference=reference,
            amount=amount,
            sender_balance=debit.balance,
            recipient_balance=credit.balance,
            debit=debit.transaction,
            credit=credit.transaction,
        )

    async def _update_balance(self, session: AsyncSession, wallet: Wallet, delta: int) -> int:
        """
        Single conditional UPDATE ... RETURNING; the row lock it takes is held until commit.

        The active-status and sufficient-funds conditions live in the WHERE clause so
        they are evaluated against the locked row, not an earlier read.
        """
        conditions = [Wallet.id == wallet.id, Wallet.status == WalletStatus.ACTIVE.value]
        if delta < 0:
            conditions.append(Wallet.balance >= -delta)

        result = await session.execute(
            update(Wallet)
            .where(*conditions)
            .values(balance=Wallet.balance + delta)
            .returning(Wallet.balance)
            .execution_options(synchronize_session=False)
        )
        new_balance = result.scalar_one_or_none()
        if new_balance is not None:
            return new_balance

        current = (
            await session.execute(select(Wallet.balance, Wallet.status).where(Wallet.id == wallet.id))
        ).one()
        if current.status != WalletStatus.ACTIVE.value:
            logger.warning(f"⚠️ WALLET_NOT_ACTIVE: user={wallet.user_id} status={current.status}")
            raise WalletNotActive(wallet.user_id, current.status)

        logger.warning(
            f"⚠️ INSUFFICIENT_FUNDS: user={wallet.user_id} balance={format_naira(current.balance)} "
            f"requested={format_naira(-delta)}"
        )
        raise InsufficientFunds(balance=current.balance, requested=-delta)

    # ------------------------------------------------------------------
    # Queries
    # ------------------------------------------------------------------

    async def get_transaction(self, reference: str) -> Optional[Transaction]:
        async with self.session_factory() as session:
            return await IdempotencyGuard.find_existing(session, reference)

    async def get_transactions(
        self,
        user_id: Union[str, int],
        page: int = 1,
        limit: int = 20,
        transaction_type: Optional[Union[TransactionType, str]] = None,
        status: Optional[Union[TransactionStatus, str]] = None,
        start_date: Optional[datetime] = None,
        end_date: Optional[datetime] = None,
    ) -> TransactionPage:
        """Newest-first transaction history with optional type/status/date filters"""
        user_id = self._validate_user_id(user_id)
        if page < 1 or not 1 <= limit <= 100:
            raise ValidationError("page must be >= 1 and limit between 1 and 100")

        conditions = [Transaction.user_id == user_id]
        if transaction_type is not None:
            conditions.append(Transaction.transaction_type == self._coerce_type(transaction_type).value)
        if status is not None:
            status_value = status.value if isinstance(status, TransactionStatus) else str(status)
            conditions.append(Transaction.status == status_value)
        if start_date is not None:
            conditions.append(Transaction.created_at >= start_date)
        if end_date is not None:
            conditions.append(Transaction.created_at <= end_date)

        async with self.session_factory() as session:
            total = (
                await session.execute(select(func.count(Transaction.id)).where(*conditions))
            ).scalar_one()
            rows = (
                await session.execute(
                    select(Transaction)
                    .where(*conditions)
                    .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                    .offset((page - 1) * limit)
                    .limit(limit)
                )
            ).scalars().all()

        return TransactionPage(transactions=list(rows), page=page, limit=limit, total=total)

    async def get_wallet_stats(self, user_id: Union[str, int]) -> WalletStats:
        wallet = await self.get_or_create_wallet(user_id)
        completed = [Transaction.user_id == wallet.user_id, Transaction.status == TransactionStatus.COMPLETED.value]

        async with self.session_factory() as session:
            credits, debits, count = (
                await session.execute(
                    select(
                        func.coalesce(func.sum(Transaction.amount).filter(Transaction.amount > 0), 0),
                        func.coalesce(func.sum(Transaction.amount).filter(Transaction.amount < 0), 0),
                        func.count(Transaction.id),
                    ).where(*completed)
                )
            ).one()
            recent = (
                await session.execute(
                    select(Transaction)
                    .where(Transaction.user_id == wallet.user_id)
                    .order_by(Transaction.created_at.desc(), Transaction.id.desc())
                    .limit(5)
                )
            ).scalars().all()

        return WalletStats(
            balance=wallet.balance,
            currency=wallet.currency,
            status=wallet.status,
            total_credits=int(credits),
            total_debits=abs(int(debits)),
            transaction_count=int(count),
            recent_transactions=list(recent),
        )

    async def verify_integrity(self, user_id: Union[str, int]) -> IntegrityReport:
        """
        Recompute the balance from completed transactions and compare with the stored balance.

        Also walks the balance_before/balance_after snapshots in insertion order and
        reports any entry that does not continue from the previous one.
        """
        user_id = self._validate_user_id(user_id)
        async with self.session_factory() as session:
            wallet = await self._select_wallet(session, user_id)
            rows = (
                await session.execute(
                    select(Transaction)
                    .where(
                        Transaction.user_id == user_id,
                        Transaction.status == TransactionStatus.COMPLETED.value,
                    )
                    .order_by(Transaction.id)
                )
            ).scalars().all()

        wallet_balance = wallet.balance if wallet else 0
        computed = sum(tx.amount for tx in rows)
        difference = wallet_balance - computed

        breaks = []
        running = 0
        for tx in rows:
            if tx.balance_before != running or tx.balance_after != tx.balance_before + tx.amount:
                breaks.append(tx.reference)
            running = tx.balance_after

        is_valid = abs(difference) <= Config.INTEGRITY_TOLERANCE_KOBO and not breaks
        report = IntegrityReport(
            user_id=user_id,
            wallet_balance=wallet_balance,
            computed_balance=computed,
            difference=difference,
            transaction_count=len(rows),
            snapshot_breaks=breaks,
            is_valid=is_valid,
        )
        if not is_valid:
            logger.error(
                f"🚨 WALLET_INTEGRITY_FAILED: user={user_id} stored={wallet_balance} "
                f"computed={computed} breaks={len(breaks)}"
            )
        return report


def refund_reference(original_reference: str) -> str:
    return f"refund-{original_reference}"


def transfer_references(reference: str):
    """(sender leg, recipient leg) references for a transfer"""
    return f"{reference}-out", f"{reference}-in"


_wallet_ledger: Optional[WalletLedger] = None


def get_wallet_ledger() -> WalletLedger:
    """Process-wide ledger bound to the application session factory"""
    global _wallet_ledger
    if _wallet_ledger is None:
        from database import AsyncSessionLocal
        _wallet_ledger = WalletLedger(AsyncSessionLocal)
    return _wallet_ledger
