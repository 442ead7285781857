"""
Virtual Account Reconciler

Maps a bank transfer into a reserved account to its owner's wallet and credits
it once. The reservation call and the bank's notification are not ordered, so an
unknown account number is retried under an injected RetryPolicy before giving up
with AccountNotFound.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Dict, List, Optional

from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError, OperationalError
from sqlalchemy.ext.asyncio import async_sessionmaker

from models import (
    Transaction,
    TransactionStatus,
    TransactionType,
    VirtualAccount,
    VirtualAccountNumber,
    VirtualAccountStatus,
    WebhookEventStatus,
    utcnow,
)
from services.gateways.base import ReservedAccount, mask_account_number
from services.wallet_ledger import LedgerResult, WalletLedger
from services.webhook_event_ledger import WebhookEventRecorder
from utils.amount_normalizer import format_naira
from utils.atomic_transactions import async_atomic_transaction
from utils.exceptions import AccountNotFound, AlreadyProcessed, DuplicateReference, ValidationError
from utils.retry_policy import RetryPolicy
from utils.transaction_metadata import VirtualAccountCreditMetadata

logger = logging.getLogger(__name__)


class _AccountNotVisibleYet(Exception):
    """Internal signal for the retry loop"""


@dataclass(frozen=True)
class TransferNotification:
    """A push transfer into a reserved account; amount in kobo"""
    account_number: str
    amount: int
    reference: str
    sender: Dict[str, Optional[str]] = field(default_factory=dict)
    gateway: Optional[str] = None
    paid_on: Optional[str] = None


@dataclass
class ReconcileOutcome:
    user_id: str
    reference: str
    amount: int
    balance: int
    transaction: Any = None


@dataclass
class AccountActivity:
    user_id: str
    account_reference: str
    account_numbers: List[str]
    credit_count: int
    credited_total: int


@dataclass
class ReconciliationReport:
    since: datetime
    accounts: List[AccountActivity]
    unresolved_events: List[Dict[str, Any]]
    mismatched_credits: List[Dict[str, Any]]

    @property
    def total_credited(self) -> int:
        return sum(account.credited_total for account in self.accounts)

    @property
    def is_clean(self) -> bool:
        return not self.unresolved_events and not self.mismatched_credits

    def to_dict(self) -> Dict[str, Any]:
        return {
            "since": self.since.isoformat(),
            "total_credited": self.total_credited,
            "is_clean": self.is_clean,
            "accounts": [account.__dict__ for account in self.accounts],
            "unresolved_events": self.unresolved_events,
            "mismatched_credits": self.mismatched_credits,
        }


class VirtualAccountReconciler:
    """Credits wallets from reserved-account transfers and audits those credits"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: WalletLedger,
        retry_policy: Optional[RetryPolicy] = None,
        event_recorder: Optional[WebhookEventRecorder] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.retry_policy = retry_policy or RetryPolicy.for_virtual_account_lookup()
        self.event_recorder = event_recorder or WebhookEventRecorder(session_factory)

    # ------------------------------------------------------------------
    # Account registry
    # ------------------------------------------------------------------

    async def register_account(self, user_id: str, gateway: str, reserved: ReservedAccount) -> VirtualAccount:
        """Persist a reservation returned by a gateway; an already-stored reference is returned as is"""
        try:
            async with async_atomic_transaction(self.session_factory, f"register_virtual_account:{user_id}") as session:
                account = VirtualAccount(
                    user_id=user_id,
                    gateway=gateway,
                    account_reference=reserved.account_reference,
                    account_name=reserved.account_name,
                    customer_email=reserved.customer_email,
                    status=VirtualAccountStatus.ACTIVE.value,
                    extra_data={"provider_response": reserved.raw} if reserved.raw else None,
                    accounts=[
                        VirtualAccountNumber(
                            bank_name=item.bank_name,
                            bank_code=item.bank_code,
                            account_number=item.account_number,
                            account_name=item.account_name,
                        )
                        for item in reserved.accounts
                    ],
                )
                session.add(account)
        except IntegrityError:
            existing = await self.get_by_reference(reserved.account_reference)
            if existing is None:
                raise
            logger.info(f"🏦 VIRTUAL_ACCOUNT_EXISTS: reference={reserved.account_reference}")
            return existing

        logger.info(
            f"🏦 VIRTUAL_ACCOUNT_REGISTERED: user={user_id} gateway={gateway} "
            f"accounts={[mask_account_number(a.account_number) for a in reserved.accounts]}"
        )
        return account

    async def get_by_reference(self, account_reference: str) -> Optional[VirtualAccount]:
        async with self.session_factory() as session:
            result = await session.execute(
                select(VirtualAccount).where(VirtualAccount.account_reference == account_reference)
            )
            return result.scalar_one_or_none()

    async def get_user_account(self, user_id: str) -> Optional[VirtualAccount]:
        """The user's most recent active virtual account"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(VirtualAccount)
                .where(
                    VirtualAccount.user_id == user_id,
                    VirtualAccount.status == VirtualAccountStatus.ACTIVE.value,
                )
                .order_by(VirtualAccount.id.desc())
                .limit(1)
            )
            return result.scalar_one_or_none()

    async def set_account_status(self, account_reference: str, status: VirtualAccountStatus) -> None:
        async with async_atomic_transaction(self.session_factory, f"virtual_account_status:{account_reference}") as session:
            result = await session.execute(
                update(VirtualAccount)
                .where(VirtualAccount.account_reference == account_reference)
                .values(status=status.value, updated_at=utcnow())
                .execution_options(synchronize_session=False)
            )
            if result.rowcount == 0:
                raise ValidationError(f"Unknown virtual account reference: {account_reference}")
        logger.info(f"🏦 VIRTUAL_ACCOUNT_STATUS: {account_reference} -> {status.value}")

    async def find_by_account_number(self, account_number: str) -> Optional[VirtualAccount]:
        """Active virtual account owning a bank account number (indexed lookup)"""
        async with self.session_factory() as session:
            result = await session.execute(
                select(VirtualAccount)
                .join(VirtualAccountNumber, VirtualAccountNumber.virtual_account_id == VirtualAccount.id)
                .where(
                    VirtualAccountNumber.account_number == account_number,
                    VirtualAccount.status == VirtualAccountStatus.ACTIVE.value,
                )
            )
            return result.scalars().first()

    async def resolve_owner(self, account_number: str) -> str:
        """User id behind an account number, retrying while the reservation may not be stored yet

        A locked or briefly unreachable database (OperationalError) is retried too
        and re-raised once attempts run out.
        """

        async def attempt() -> VirtualAccount:
            account = await self.find_by_account_number(account_number)
            if account is None:
                raise _AccountNotVisibleYet(account_number)
            return account

        try:
            account = await self.retry_policy.run(
                attempt,
                retry_on=(_AccountNotVisibleYet, OperationalError),
                description=f"virtual account lookup {mask_account_number(account_number)}",
            )
        except _AccountNotVisibleYet:
            logger.error(
                f"❌ VIRTUAL_ACCOUNT_NOT_FOUND: {mask_account_number(account_number)} "
                f"after {self.retry_policy.max_attempts} attempts"
            )
            raise AccountNotFound(account_number, self.retry_policy.max_attempts)
        return account.user_id

    # ------------------------------------------------------------------
    # Crediting
    # ------------------------------------------------------------------

    async def credit_from_transfer(self, notification: TransferNotification) -> ReconcileOutcome:
        """
        Credit the owner of the receiving account exactly once per transfer reference.

        Raises:
            ValidationError: missing account number, reference or non-positive amount
            AccountNotFound: the account number is unknown after all retries
            AlreadyProcessed: the reference was credited before (expected for repeat webhooks)
        """
        if not notification.account_number:
            raise ValidationError("Transfer notification has no account number")
        if not notification.reference:
            raise ValidationError("Transfer notification has no reference")
        if isinstance(notification.amount, bool) or not isinstance(notification.amount, int) or notification.amount <= 0:
            raise ValidationError(f"Transfer amount must be positive kobo, got {notification.amount!r}")

        user_id = await self.resolve_owner(notification.account_number)

        if await self.ledger.get_transaction(notification.reference) is not None:
            logger.info(f"🔁 VIRTUAL_ACCOUNT_DUPLICATE: reference={notification.reference} already credited")
            raise AlreadyProcessed(notification.reference)

        metadata = VirtualAccountCreditMetadata(
            gateway=notification.gateway,
            account_number=notification.account_number,
            bank_name=notification.sender.get("destination_bank_name"),
            sender_account_name=notification.sender.get("account_name"),
            sender_account_number=notification.sender.get("account_number"),
            sender_bank_name=notification.sender.get("bank_name"),
            paid_on=notification.paid_on,
        )
        try:
            result: LedgerResult = await self.ledger.credit(
                user_id,
                notification.amount,
                TransactionType.VIRTUAL_ACCOUNT_CREDIT,
                notification.reference,
                metadata,
                description=f"Bank transfer to {mask_account_number(notification.account_number)}",
            )
        except DuplicateReference as e:
            # Lost a race with a concurrent delivery of the same transfer
            raise AlreadyProcessed(notification.reference) from e

        logger.info(
            f"✅ VIRTUAL_ACCOUNT_CREDIT: user={user_id} {format_naira(notification.amount)} "
            f"ref={notification.reference} account={mask_account_number(notification.account_number)}"
        )
        return ReconcileOutcome(
            user_id=user_id,
            reference=notification.reference,
            amount=notification.amount,
            balance=result.balance,
            transaction=result.transaction,
        )

    # ------------------------------------------------------------------
    # Reconciliation report
    # ------------------------------------------------------------------

    async def reconcile(self, days: int = 7, now: Optional[datetime] = None) -> ReconciliationReport:
        """
        Summarize virtual account credits over the last `days` days.

        Lists transfer webhooks that never produced a credit (unknown account or
        failure) and credits whose receiving account does not belong to the
        credited user.
        """
        if days < 1:
            raise ValidationError("days must be at least 1")
        since = (now or utcnow()) - timedelta(days=days)

        async with self.session_factory() as session:
            accounts = (
                await session.execute(
                    select(VirtualAccount).where(VirtualAccount.status == VirtualAccountStatus.ACTIVE.value)
                )
            ).scalars().all()
            credits = (
                await session.execute(
                    select(Transaction).where(
                        Transaction.transaction_type == TransactionType.VIRTUAL_ACCOUNT_CREDIT.value,
                        Transaction.status == TransactionStatus.COMPLETED.value,
                        Transaction.created_at >= since,
                    )
                )
            ).scalars().all()
            numbers = (await session.execute(select(VirtualAccountNumber))).scalars().all()

        owner_by_number = {}
        account_by_id = {account.id: account for account in accounts}
        for number in numbers:
            account = account_by_id.get(number.virtual_account_id)
            if account is not None:
                owner_by_number[number.account_number] = account.user_id

        activity = []
        for account in accounts:
            account_numbers = {number.account_number for number in account.accounts}
            own_credits = [
                tx for tx in credits
                if tx.user_id == account.user_id and _credited_account(tx) in account_numbers
            ]
            activity.append(
                AccountActivity(
                    user_id=account.user_id,
                    account_reference=account.account_reference,
                    account_numbers=[mask_account_number(n) for n in sorted(account_numbers)],
                    credit_count=len(own_credits),
                    credited_total=sum(tx.amount for tx in own_credits),
                )
            )

        mismatched = []
        for tx in credits:
            credited_account = _credited_account(tx)
            if owner_by_number.get(credited_account) != tx.user_id:
                mismatched.append(
                    {
                        "reference": tx.reference,
                        "user_id": tx.user_id,
                        "amount": tx.amount,
                        "account_number": mask_account_number(credited_account),
                    }
                )

        events = await self.event_recorder.list_by_status(
            [WebhookEventStatus.UNRESOLVED, WebhookEventStatus.FAILED], since=since
        )
        unresolved = [
            {
                "provider": event.event_provider,
                "event_id": event.event_id,
                "reference": event.reference_id,
                "amount": event.amount,
                "status": event.status,
                "delivery_count": event.delivery_count,
                "error": event.error_message,
            }
            for event in events
        ]

        report = ReconciliationReport(
            since=since, accounts=activity, unresolved_events=unresolved, mismatched_credits=mismatched
        )
        log = logger.info if report.is_clean else logger.warning
        log(
            f"📊 VIRTUAL_ACCOUNT_RECONCILIATION: {len(activity)} accounts, "
            f"{format_naira(report.total_credited)} credited since {since:%Y-%m-%d}, "
            f"{len(unresolved)} unresolved events, {len(mismatched)} mismatched credits"
        )
        return report


def _credited_account(tx: Transaction) -> Optional[str]:
    envelope = tx.extra_data or {}
    return (envelope.get("data") or {}).get("account_number")
