"""
Tests for the wallet ledger: atomic credit/debit, idempotency, history and integrity
"""

import asyncio

import pytest
from sqlalchemy import func, select, update
from sqlalchemy.exc import InvalidRequestError

from models import Transaction, TransactionType, Wallet, WalletStatus
from services.wallet_ledger import refund_reference, transfer_references
from utils.exceptions import (
    DuplicateReference,
    InsufficientFunds,
    ValidationError,
    WalletNotActive,
)
from utils.transaction_metadata import BillPaymentMetadata, DepositMetadata


async def count_transactions(session_factory, reference=None):
    async with session_factory() as session:
        query = select(func.count(Transaction.id))
        if reference is not None:
            query = query.where(Transaction.reference == reference)
        return (await session.execute(query)).scalar_one()


class TestCreditAndDebit:

    @pytest.mark.asyncio
    async def test_new_wallet_starts_empty_and_active(self, ledger):
        info = await ledger.get_balance("user-1")
        assert info.balance == 0
        assert info.currency == "NGN"
        assert info.status == WalletStatus.ACTIVE.value

    @pytest.mark.asyncio
    async def test_credit_then_debit(self, ledger):
        credit = await ledger.credit(
            "user-1", 500000, TransactionType.DEPOSIT, "FUND_1", DepositMetadata(gateway="paystack")
        )
        assert credit.balance == 500000
        assert credit.transaction.balance_before == 0
        assert credit.transaction.balance_after == 500000
        assert credit.transaction.extra_data == {"type": "deposit", "version": 1, "data": {"gateway": "paystack"}}

        debit = await ledger.debit(
            "user-1",
            150000,
            TransactionType.BILL_PAYMENT,
            "BILL_1",
            BillPaymentMetadata(service_type="airtime"),
        )
        assert debit.balance == 350000
        assert debit.transaction.amount == -150000
        assert debit.transaction.balance_before == 500000
        assert debit.transaction.balance_after == 350000
        assert (await ledger.get_balance("user-1")).balance == 350000

    @pytest.mark.asyncio
    async def test_debit_exact_balance_reaches_zero(self, ledger):
        await ledger.credit("user-1", 1000, TransactionType.DEPOSIT, "FUND_1")
        result = await ledger.debit("user-1", 1000, TransactionType.WITHDRAWAL, "WD_1")
        assert result.balance == 0

    @pytest.mark.asyncio
    async def test_insufficient_funds_leaves_no_trace(self, ledger, session_factory):
        await ledger.credit("user-1", 1000, TransactionType.DEPOSIT, "FUND_1")

        with pytest.raises(InsufficientFunds) as exc_info:
            await ledger.debit("user-1", 1001, TransactionType.WITHDRAWAL, "WD_1")

        assert exc_info.value.balance == 1000
        assert exc_info.value.requested == 1001
        assert (await ledger.get_balance("user-1")).balance == 1000
        assert await count_transactions(session_factory, "WD_1") == 0

    @pytest.mark.asyncio
    async def test_debit_on_missing_wallet_is_insufficient(self, ledger):
        with pytest.raises(InsufficientFunds):
            await ledger.debit("new-user", 100, TransactionType.WITHDRAWAL, "WD_1")

    @pytest.mark.asyncio
    @pytest.mark.parametrize("amount", [0, -100, 10.5, "100", True])
    async def test_invalid_amounts_rejected(self, ledger, amount):
        with pytest.raises(ValidationError):
            await ledger.credit("user-1", amount, TransactionType.DEPOSIT, "FUND_X")

    @pytest.mark.asyncio
    async def test_invalid_reference_and_type_rejected(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.credit("user-1", 100, TransactionType.DEPOSIT, "")
        with pytest.raises(ValidationError):
            await ledger.credit("user-1", 100, TransactionType.DEPOSIT, "R" * 129)
        with pytest.raises(ValidationError):
            await ledger.credit("user-1", 100, "loan", "FUND_1")

    @pytest.mark.asyncio
    async def test_metadata_must_match_type(self, ledger, session_factory):
        with pytest.raises(ValidationError):
            await ledger.credit("user-1", 100, TransactionType.DEPOSIT, "FUND_1", {"bogus": "x"})
        assert await count_transactions(session_factory) == 0


class TestIdempotency:

    @pytest.mark.asyncio
    async def test_duplicate_reference_rejected_without_balance_change(self, ledger, session_factory):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")

        with pytest.raises(DuplicateReference) as exc_info:
            await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")

        assert exc_info.value.reference == "FUND_1"
        assert (await ledger.get_balance("user-1")).balance == 5000
        assert await count_transactions(session_factory, "FUND_1") == 1

    @pytest.mark.asyncio
    async def test_reference_is_global_across_users(self, ledger):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        with pytest.raises(DuplicateReference):
            await ledger.credit("user-2", 5000, TransactionType.DEPOSIT, "FUND_1")
        assert (await ledger.get_balance("user-2")).balance == 0

    @pytest.mark.asyncio
    async def test_concurrent_duplicate_credits_apply_once(self, ledger, session_factory):
        results = await asyncio.gather(
            *(ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_RACE") for _ in range(5)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        assert len(successes) == 1
        assert all(isinstance(r, DuplicateReference) for r in results if isinstance(r, Exception))
        assert (await ledger.get_balance("user-1")).balance == 5000
        assert await count_transactions(session_factory, "FUND_RACE") == 1


class TestConcurrency:

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, ledger):
        await ledger.credit("user-1", 10000, TransactionType.DEPOSIT, "FUND_1")

        results = await asyncio.gather(
            *(ledger.debit("user-1", 3000, TransactionType.WITHDRAWAL, f"WD_{i}") for i in range(5)),
            return_exceptions=True,
        )

        successes = [r for r in results if not isinstance(r, Exception)]
        failures = [r for r in results if isinstance(r, Exception)]
        assert len(successes) == 3
        assert all(isinstance(f, InsufficientFunds) for f in failures)
        assert (await ledger.get_balance("user-1")).balance == 1000

    @pytest.mark.asyncio
    async def test_concurrent_mixed_mutations_keep_integrity(self, ledger):
        await ledger.credit("user-1", 50000, TransactionType.DEPOSIT, "FUND_0")

        operations = []
        for i in range(10):
            operations.append(ledger.credit("user-1", 1000, TransactionType.DEPOSIT, f"FUND_{i + 1}"))
            operations.append(ledger.debit("user-1", 2000, TransactionType.WITHDRAWAL, f"WD_{i}"))
        await asyncio.gather(*operations)

        assert (await ledger.get_balance("user-1")).balance == 50000 + 10 * 1000 - 10 * 2000
        report = await ledger.verify_integrity("user-1")
        assert report.is_valid
        assert report.snapshot_breaks == []

    @pytest.mark.asyncio
    async def test_concurrent_first_access_creates_one_wallet(self, ledger, session_factory):
        await asyncio.gather(*(ledger.get_or_create_wallet("user-1") for _ in range(5)))
        async with session_factory() as session:
            count = (
                await session.execute(select(func.count(Wallet.id)).where(Wallet.user_id == "user-1"))
            ).scalar_one()
        assert count == 1


class TestWalletStatus:

    @pytest.mark.asyncio
    async def test_suspended_wallet_rejects_credit_and_debit(self, ledger, session_factory):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.set_wallet_status("user-1", WalletStatus.SUSPENDED)

        with pytest.raises(WalletNotActive) as exc_info:
            await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_2")
        assert exc_info.value.status == "suspended"
        with pytest.raises(WalletNotActive):
            await ledger.debit("user-1", 100, TransactionType.WITHDRAWAL, "WD_1")

        assert (await ledger.get_balance("user-1")).balance == 5000
        assert await count_transactions(session_factory) == 1

    @pytest.mark.asyncio
    async def test_reactivated_wallet_accepts_mutations(self, ledger):
        await ledger.set_wallet_status("user-1", WalletStatus.SUSPENDED)
        await ledger.set_wallet_status("user-1", "active")
        result = await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        assert result.balance == 5000

    @pytest.mark.asyncio
    async def test_closed_is_terminal(self, ledger):
        await ledger.set_wallet_status("user-1", WalletStatus.CLOSED)
        with pytest.raises(ValidationError):
            await ledger.set_wallet_status("user-1", WalletStatus.ACTIVE)
        with pytest.raises(WalletNotActive):
            await ledger.credit("user-1", 100, TransactionType.DEPOSIT, "FUND_1")

    @pytest.mark.asyncio
    async def test_unknown_status_rejected(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.set_wallet_status("user-1", "frozen")


class TestRefund:

    @pytest.mark.asyncio
    async def test_refund_credits_under_derived_reference(self, ledger):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.debit("user-1", 2000, TransactionType.BILL_PAYMENT, "BILL_1")

        refund = await ledger.refund("user-1", 2000, "BILL_1", reason="provider timeout")

        assert refund.balance == 5000
        assert refund.transaction.reference == refund_reference("BILL_1") == "refund-BILL_1"
        assert refund.transaction.transaction_type == TransactionType.REFUND.value
        assert refund.transaction.extra_data["data"] == {
            "original_reference": "BILL_1",
            "reason": "provider timeout",
        }

    @pytest.mark.asyncio
    async def test_refund_is_idempotent(self, ledger):
        await ledger.credit("user-1", 2000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.refund("user-1", 500, "BILL_1")
        with pytest.raises(DuplicateReference):
            await ledger.refund("user-1", 500, "BILL_1")
        assert (await ledger.get_balance("user-1")).balance == 2500


class TestTransfer:

    @pytest.mark.asyncio
    async def test_transfer_writes_both_legs(self, ledger):
        await ledger.credit("user-1", 10000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.credit("user-2", 500, TransactionType.DEPOSIT, "FUND_2")

        result = await ledger.transfer("user-1", "user-2", 4000, "TRF_1", note="rent share")

        assert result.sender_balance == 6000
        assert result.recipient_balance == 4500
        assert transfer_references("TRF_1") == ("TRF_1-out", "TRF_1-in")
        debit = await ledger.get_transaction("TRF_1-out")
        credit = await ledger.get_transaction("TRF_1-in")
        assert (debit.user_id, debit.amount, debit.transaction_type) == ("user-1", -4000, TransactionType.TRANSFER.value)
        assert (credit.user_id, credit.amount, credit.transaction_type) == ("user-2", 4000, TransactionType.TRANSFER.value)
        assert debit.extra_data["data"] == {
            "transfer_reference": "TRF_1",
            "direction": "out",
            "counterparty_user_id": "user-2",
            "note": "rent share",
        }
        assert credit.extra_data["data"]["counterparty_user_id"] == "user-1"
        assert (await ledger.verify_integrity("user-1")).is_valid
        assert (await ledger.verify_integrity("user-2")).is_valid

    @pytest.mark.asyncio
    async def test_insufficient_funds_writes_neither_leg(self, ledger, session_factory):
        await ledger.credit("user-1", 1000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.credit("user-2", 500, TransactionType.DEPOSIT, "FUND_2")

        with pytest.raises(InsufficientFunds):
            await ledger.transfer("user-1", "user-2", 4000, "TRF_1")

        assert (await ledger.get_balance("user-1")).balance == 1000
        assert (await ledger.get_balance("user-2")).balance == 500
        assert await count_transactions(session_factory) == 2

    @pytest.mark.asyncio
    async def test_suspended_recipient_rolls_back_sender_leg(self, ledger, session_factory):
        await ledger.credit("user-1", 10000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.credit("user-2", 500, TransactionType.DEPOSIT, "FUND_2")
        await ledger.set_wallet_status("user-2", WalletStatus.SUSPENDED)

        with pytest.raises(WalletNotActive):
            await ledger.transfer("user-1", "user-2", 4000, "TRF_1")

        assert (await ledger.get_balance("user-1")).balance == 10000
        assert await ledger.get_transaction("TRF_1-out") is None
        assert await count_transactions(session_factory) == 2

    @pytest.mark.asyncio
    async def test_repeated_reference_moves_money_once(self, ledger):
        await ledger.credit("user-1", 10000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.credit("user-2", 500, TransactionType.DEPOSIT, "FUND_2")
        await ledger.transfer("user-1", "user-2", 4000, "TRF_1")

        with pytest.raises(DuplicateReference) as exc_info:
            await ledger.transfer("user-1", "user-2", 4000, "TRF_1")

        assert exc_info.value.reference == "TRF_1"
        assert (await ledger.get_balance("user-1")).balance == 6000
        assert (await ledger.get_balance("user-2")).balance == 4500

    @pytest.mark.asyncio
    async def test_concurrent_repeats_apply_once(self, ledger, session_factory):
        await ledger.credit("user-1", 10000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.credit("user-2", 500, TransactionType.DEPOSIT, "FUND_2")

        results = await asyncio.gather(
            *(ledger.transfer("user-1", "user-2", 4000, "TRF_1") for _ in range(5)),
            return_exceptions=True,
        )

        assert sum(1 for r in results if not isinstance(r, Exception)) == 1
        assert all(isinstance(r, DuplicateReference) for r in results if isinstance(r, Exception))
        assert (await ledger.get_balance("user-1")).balance == 6000
        assert await count_transactions(session_factory) == 4

    @pytest.mark.asyncio
    async def test_opposite_transfers_settle(self, ledger):
        await ledger.credit("user-1", 10000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.credit("user-2", 10000, TransactionType.DEPOSIT, "FUND_2")

        await asyncio.gather(
            *(ledger.transfer("user-1", "user-2", 100, f"TRF_A{i}") for i in range(5)),
            *(ledger.transfer("user-2", "user-1", 300, f"TRF_B{i}") for i in range(5)),
        )

        assert (await ledger.get_balance("user-1")).balance == 11000
        assert (await ledger.get_balance("user-2")).balance == 9000

    @pytest.mark.asyncio
    async def test_self_transfer_and_unknown_recipient_rejected(self, ledger, session_factory):
        await ledger.credit("user-1", 10000, TransactionType.DEPOSIT, "FUND_1")

        with pytest.raises(ValidationError, match="same wallet"):
            await ledger.transfer("user-1", "user-1", 100, "TRF_1")
        with pytest.raises(ValidationError, match="Recipient wallet not found"):
            await ledger.transfer("user-1", "user-9", 100, "TRF_2")
        with pytest.raises(ValidationError):
            await ledger.transfer("user-1", "user-2", 0, "TRF_3")

        assert await count_transactions(session_factory) == 1


class TestQueries:

    @pytest.mark.asyncio
    async def test_transactions_paginated_newest_first(self, ledger):
        for i in range(25):
            await ledger.credit("user-1", 100 + i, TransactionType.DEPOSIT, f"FUND_{i:02d}")

        first = await ledger.get_transactions("user-1", page=1, limit=10)
        last = await ledger.get_transactions("user-1", page=3, limit=10)

        assert first.total == 25
        assert first.pages == 3
        assert [tx.reference for tx in first.transactions][:2] == ["FUND_24", "FUND_23"]
        assert len(last.transactions) == 5
        assert last.transactions[-1].reference == "FUND_00"
        assert first.to_dict()["pagination"] == {"page": 1, "limit": 10, "total": 25, "pages": 3}

    @pytest.mark.asyncio
    async def test_transactions_filtered_by_type(self, ledger):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.debit("user-1", 1000, TransactionType.BILL_PAYMENT, "BILL_1")
        await ledger.credit("user-2", 5000, TransactionType.DEPOSIT, "FUND_2")

        page = await ledger.get_transactions("user-1", transaction_type="bill_payment")
        assert [tx.reference for tx in page.transactions] == ["BILL_1"]

    @pytest.mark.asyncio
    async def test_limit_is_bounded(self, ledger):
        with pytest.raises(ValidationError):
            await ledger.get_transactions("user-1", limit=101)
        with pytest.raises(ValidationError):
            await ledger.get_transactions("user-1", page=0)

    @pytest.mark.asyncio
    async def test_wallet_stats(self, ledger):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.credit("user-1", 3000, TransactionType.VIRTUAL_ACCOUNT_CREDIT, "VA_TX_1")
        await ledger.debit("user-1", 2000, TransactionType.BILL_PAYMENT, "BILL_1")

        stats = await ledger.get_wallet_stats("user-1")

        assert stats.balance == 6000
        assert stats.total_credits == 8000
        assert stats.total_debits == 2000
        assert stats.transaction_count == 3
        assert len(stats.recent_transactions) == 3

    @pytest.mark.asyncio
    async def test_get_transaction_by_reference(self, ledger):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        assert (await ledger.get_transaction("FUND_1")).amount == 5000
        assert await ledger.get_transaction("missing") is None

    @pytest.mark.asyncio
    async def test_wallet_history_is_never_lazy_loaded(self, ledger, session_factory):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        async with session_factory() as session:
            wallet = (await session.execute(select(Wallet).where(Wallet.user_id == "user-1"))).scalar_one()
            with pytest.raises(InvalidRequestError):
                wallet.transactions


class TestIntegrity:

    @pytest.mark.asyncio
    async def test_consistent_wallet_is_valid(self, ledger):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.debit("user-1", 1500, TransactionType.WITHDRAWAL, "WD_1")

        report = await ledger.verify_integrity("user-1")

        assert report.is_valid
        assert report.wallet_balance == report.computed_balance == 3500
        assert report.transaction_count == 2

    @pytest.mark.asyncio
    async def test_balance_tampered_outside_ledger_is_detected(self, ledger, session_factory):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        async with session_factory() as session:
            await session.execute(update(Wallet).where(Wallet.user_id == "user-1").values(balance=9999))
            await session.commit()

        report = await ledger.verify_integrity("user-1")

        assert not report.is_valid
        assert report.difference == 9999 - 5000

    @pytest.mark.asyncio
    async def test_broken_snapshot_chain_is_detected(self, ledger, session_factory):
        await ledger.credit("user-1", 5000, TransactionType.DEPOSIT, "FUND_1")
        await ledger.credit("user-1", 1000, TransactionType.DEPOSIT, "FUND_2")
        async with session_factory() as session:
            await session.execute(
                update(Transaction).where(Transaction.reference == "FUND_2").values(balance_before=4000)
            )
            await session.commit()

        report = await ledger.verify_integrity("user-1")

        assert not report.is_valid
        assert report.snapshot_breaks == ["FUND_2"]

    @pytest.mark.asyncio
    async def test_user_without_wallet_is_trivially_valid(self, ledger):
        report = await ledger.verify_integrity("nobody")
        assert report.is_valid
        assert report.transaction_count == 0
