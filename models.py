"""
Wallet Ledger - Database Schema
===============================

Schema for the wallet ledger and payment gateway reconciliation subsystem:
- One wallet per user holding a single NGN balance in kobo
- Append-only transaction ledger keyed by a globally unique reference
- Provider-issued virtual accounts for push-to-wallet bank transfers
- Gateway funding attempts (payments) and the webhook event ledger

Balances and amounts are integers in the smallest currency unit (kobo).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import List, Optional
from sqlalchemy import (
    BigInteger, Boolean, CheckConstraint, DateTime, ForeignKey, Index, Integer,
    JSON, String, Text, UniqueConstraint
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


class Base(DeclarativeBase):
    """Base class for all database models"""
    pass


# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in development and tests)
JSONType = JSON().with_variant(JSONB(), "postgresql")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _in_clause(column: str, enum_cls) -> str:
    values = ", ".join(f"'{member.value}'" for member in enum_cls)
    return f"{column} IN ({values})"


# ============================================================================
# ENUMS - Business Logic Constants
# ============================================================================

class WalletStatus(Enum):
    """Wallet status, changed only by administrative action"""
    ACTIVE = "active"
    SUSPENDED = "suspended"
    CLOSED = "closed"


class TransactionType(Enum):
    """Ledger transaction types"""
    DEPOSIT = "deposit"
    WITHDRAWAL = "withdrawal"
    BILL_PAYMENT = "bill_payment"
    REFUND = "refund"
    VIRTUAL_ACCOUNT_CREDIT = "virtual_account_credit"
    TRANSFER = "transfer"


class TransactionStatus(Enum):
    """Ledger transaction status"""
    PENDING = "pending"
    COMPLETED = "completed"
    FAILED = "failed"
    REVERSED = "reversed"


class VirtualAccountStatus(Enum):
    """Reserved account status"""
    ACTIVE = "active"
    INACTIVE = "inactive"


class PaymentStatus(Enum):
    """Gateway funding attempt status"""
    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    AMOUNT_MISMATCH = "amount_mismatch"


class PaymentGateway(Enum):
    """Supported payment gateways"""
    PAYSTACK = "paystack"
    MONNIFY = "monnify"


class WebhookEventStatus(Enum):
    """Processing state of a recorded webhook event"""
    PROCESSING = "processing"
    COMPLETED = "completed"
    DUPLICATE = "duplicate"
    IGNORED = "ignored"
    UNRESOLVED = "unresolved"
    FAILED = "failed"


# ============================================================================
# CORE ENTITIES
# ============================================================================

class Wallet(Base):
    """Single-currency wallet, one per user, created lazily and never deleted"""
    __tablename__ = 'wallets'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True, index=True)
    balance: Mapped[int] = mapped_column(BigInteger, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(3), nullable=False, default="NGN")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WalletStatus.ACTIVE.value)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=utcnow, nullable=True)

    transactions: Mapped[List["Transaction"]] = relationship(back_populates="wallet", lazy="raise")

    __table_args__ = (
        CheckConstraint('balance >= 0', name='ck_wallet_balance_non_negative'),
        CheckConstraint(_in_clause('status', WalletStatus), name='ck_wallet_status_valid'),
    )

    def __repr__(self):
        return f"<Wallet user={self.user_id} balance={self.balance} status={self.status}>"


class Transaction(Base):
    """Append-only ledger entry; amount is signed (credits positive, debits negative)"""
    __tablename__ = 'transactions'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(128), nullable=False)

    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    wallet_id: Mapped[int] = mapped_column(Integer, ForeignKey('wallets.id'), nullable=False, index=True)
    transaction_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=TransactionStatus.COMPLETED.value)

    # Snapshots taken inside the same atomic unit as the balance change
    balance_before: Mapped[int] = mapped_column(BigInteger, nullable=False)
    balance_after: Mapped[int] = mapped_column(BigInteger, nullable=False)

    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    extra_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)  # versioned metadata envelope

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=utcnow, nullable=True)

    wallet: Mapped["Wallet"] = relationship(back_populates="transactions")

    __table_args__ = (
        # IDEMPOTENCY: reference is unique across the whole ledger, regardless of user
        Index('ux_transactions_reference', 'reference', unique=True),
        CheckConstraint('amount <> 0', name='ck_transaction_amount_non_zero'),
        CheckConstraint(_in_clause('transaction_type', TransactionType), name='ck_transaction_type_valid'),
        CheckConstraint(_in_clause('status', TransactionStatus), name='ck_transaction_status_valid'),
        Index('ix_transactions_user_created', 'user_id', 'created_at'),
        Index('ix_transactions_user_type_status', 'user_id', 'transaction_type', 'status'),
    )


class VirtualAccount(Base):
    """Provider-reserved bank account(s) dedicated to one user"""
    __tablename__ = 'virtual_accounts'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    account_reference: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    account_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    customer_email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=VirtualAccountStatus.ACTIVE.value)
    extra_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=utcnow, nullable=True)

    accounts: Mapped[List["VirtualAccountNumber"]] = relationship(
        back_populates="virtual_account", lazy="selectin", cascade="all, delete-orphan"
    )

    __table_args__ = (
        CheckConstraint(_in_clause('status', VirtualAccountStatus), name='ck_virtual_account_status_valid'),
        Index('ix_virtual_accounts_user_status', 'user_id', 'status'),
    )


class VirtualAccountNumber(Base):
    """One bank account number issued under a virtual account"""
    __tablename__ = 'virtual_account_numbers'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    virtual_account_id: Mapped[int] = mapped_column(
        Integer, ForeignKey('virtual_accounts.id'), nullable=False, index=True
    )
    bank_name: Mapped[str] = mapped_column(String(100), nullable=False)
    bank_code: Mapped[Optional[str]] = mapped_column(String(10), nullable=True)
    account_number: Mapped[str] = mapped_column(String(20), nullable=False)
    account_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)

    virtual_account: Mapped["VirtualAccount"] = relationship(back_populates="accounts")

    __table_args__ = (
        # Reconciler hot path: transfer notification -> account number -> user
        Index('ux_virtual_account_numbers_account_number', 'account_number', unique=True),
    )


# ============================================================================
# SUPPORTING ENTITIES
# ============================================================================

class Payment(Base):
    """A wallet funding attempt through a payment gateway checkout"""
    __tablename__ = 'payments'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    reference: Mapped[str] = mapped_column(String(128), nullable=False, unique=True, index=True)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    gateway: Mapped[str] = mapped_column(String(20), nullable=False)
    amount: Mapped[int] = mapped_column(BigInteger, nullable=False)  # requested amount, kobo
    currency: Mapped[str] = mapped_column(String(3), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=PaymentStatus.PENDING.value)

    gateway_reference: Mapped[Optional[str]] = mapped_column(String(128), nullable=True)
    payment_url: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    channel: Mapped[Optional[str]] = mapped_column(String(50), nullable=True)
    verified_amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    verified_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    wallet_credited: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    extra_data: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    updated_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), onupdate=utcnow, nullable=True)

    __table_args__ = (
        CheckConstraint('amount > 0', name='ck_payment_amount_positive'),
        CheckConstraint(_in_clause('status', PaymentStatus), name='ck_payment_status_valid'),
        CheckConstraint(_in_clause('gateway', PaymentGateway), name='ck_payment_gateway_valid'),
        Index('ix_payments_user_status', 'user_id', 'status'),
    )


class WebhookEventLedger(Base):
    """Audit record of inbound webhook deliveries, one row per distinct event"""
    __tablename__ = 'webhook_event_ledger'

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    event_provider: Mapped[str] = mapped_column(String(50), nullable=False, index=True)
    event_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(64), nullable=False)
    reference_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)
    amount: Mapped[Optional[int]] = mapped_column(BigInteger, nullable=True)
    user_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default=WebhookEventStatus.PROCESSING.value)
    delivery_count: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    payload: Mapped[Optional[dict]] = mapped_column(JSONType, nullable=True)
    processing_result: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, nullable=False)
    completed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        UniqueConstraint('event_provider', 'event_id', name='uq_webhook_event_provider_id'),
        Index('ix_webhook_event_ledger_provider_status', 'event_provider', 'status'),
        Index('ix_webhook_event_ledger_created_status', 'created_at', 'status'),
    )
