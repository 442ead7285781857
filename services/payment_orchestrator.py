"""
Payment Orchestrator - the entry point request handlers use to move money in

Selects the gateway adapter, normalizes user-facing naira amounts, and drives
the ledger only on a positive verified signal: a direct verify response or a
signature-validated webhook. A gateway timeout is an unknown outcome and never
mutates the wallet.
"""

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, List, Optional, TypeVar, Union

import orjson
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import async_sessionmaker

from config import Config
from models import Payment, PaymentStatus, TransactionType, VirtualAccount, WebhookEventStatus, utcnow
from services.gateways.base import (
    Bank,
    CanonicalStatus,
    GatewayAdapter,
    GatewayTransactionResult,
    WebhookEvent,
    WebhookEventKind,
)
from services.signature_verifier import SignatureVerifier
from services.virtual_account_reconciler import TransferNotification, VirtualAccountReconciler
from services.wallet_ledger import LedgerResult, WalletLedger
from services.webhook_event_ledger import WebhookEventRecorder, webhook_event_id
from utils.amount_normalizer import AmountNormalizer, AmountUnit, format_naira
from utils.atomic_transactions import async_atomic_transaction
from utils.exceptions import (
    AccountNotFound,
    AlreadyProcessed,
    AmountMismatch,
    DuplicateReference,
    GatewayRejected,
    GatewayUnavailable,
    SignatureInvalid,
    ValidationError,
    WalletLedgerError,
)
from utils.retry_policy import RetryPolicy
from utils.transaction_metadata import DepositMetadata

logger = logging.getLogger(__name__)
T = TypeVar('T')


# ============================================================================
# REQUEST / RESULT TYPES
# ============================================================================

@dataclass
class InitializePaymentRequest:
    """Wallet funding request; amount is in naira as entered by the user"""
    user_id: str
    email: str
    amount: Union[int, str, Decimal]
    customer_name: Optional[str] = None
    reference: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)


@dataclass
class InitializeResult:
    checkout_url: str
    reference: str
    gateway: str
    amount: int

    def to_dict(self) -> Dict[str, Any]:
        return {"checkout_url": self.checkout_url, "reference": self.reference, "gateway": self.gateway, "amount": self.amount}


@dataclass
class VerificationOutcome:
    success: bool
    status: str
    reference: str
    amount: int
    balance: Optional[int] = None
    already_credited: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "success": self.success,
            "status": self.status,
            "reference": self.reference,
            "amount": self.amount,
            "balance": self.balance,
            "already_credited": self.already_credited,
        }


@dataclass
class WebhookOutcome:
    """What happened to a webhook delivery; every status here is acknowledged with HTTP 200"""
    status: str  # credited | already_processed | ignored | failed | unresolved | amount_mismatch
    gateway: str
    event_type: str
    reference: Optional[str] = None
    amount: Optional[int] = None
    user_id: Optional[str] = None
    balance: Optional[int] = None
    message: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "status": self.status,
            "gateway": self.gateway,
            "event_type": self.event_type,
            "reference": self.reference,
            "amount": self.amount,
            "message": self.message,
        }


@dataclass
class ReplayReport:
    """Result of re-running webhook events that ended unresolved or failed"""
    attempted: int = 0
    outcomes: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def still_unresolved(self) -> int:
        return sum(1 for outcome in self.outcomes if outcome["status"] in _REPLAY_OPEN_STATUSES)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "attempted": self.attempted,
            "resolved": self.attempted - self.still_unresolved,
            "still_unresolved": self.still_unresolved,
            "outcomes": list(self.outcomes),
        }


@dataclass
class ChargeResult:
    balance: int
    reference: str
    fulfilment: Any = None


_WEBHOOK_LEDGER_STATUS = {
    "credited": WebhookEventStatus.COMPLETED,
    "failed": WebhookEventStatus.COMPLETED,
    "already_processed": WebhookEventStatus.DUPLICATE,
    "ignored": WebhookEventStatus.IGNORED,
    "unresolved": WebhookEventStatus.UNRESOLVED,
    "amount_mismatch": WebhookEventStatus.FAILED,
}

# Replay outcomes that still need attention
_REPLAY_OPEN_STATUSES = ("unresolved", "amount_mismatch", "error", "skipped")


def generate_payment_reference(prefix: str = "FUND") -> str:
    return f"{prefix}_{uuid.uuid4().hex[:20].upper()}"


def _parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """Gateway timestamps are ISO-8601 (Paystack) or 'YYYY-MM-DD HH:MM:SS.f' (Monnify)"""
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value).replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unparsed gateway timestamp: {value}")
        return None


# ============================================================================
# ORCHESTRATOR
# ============================================================================

class PaymentOrchestrator:
    """Facade over gateway adapters, the wallet ledger and the virtual account reconciler"""

    def __init__(
        self,
        session_factory: async_sessionmaker,
        ledger: WalletLedger,
        adapters: Dict[str, GatewayAdapter],
        reconciler: Optional[VirtualAccountReconciler] = None,
        signature_verifier: Optional[SignatureVerifier] = None,
        verify_policy: Optional[RetryPolicy] = None,
        event_recorder: Optional[WebhookEventRecorder] = None,
    ):
        self.session_factory = session_factory
        self.ledger = ledger
        self.adapters = dict(adapters)
        self.event_recorder = event_recorder or WebhookEventRecorder(session_factory)
        self.reconciler = reconciler or VirtualAccountReconciler(
            session_factory, ledger, event_recorder=self.event_recorder
        )
        self.signature_verifier = signature_verifier or SignatureVerifier()
        self.verify_policy = verify_policy or RetryPolicy.for_verify_polling()

    def _adapter(self, gateway_id: str) -> GatewayAdapter:
        adapter = self.adapters.get((gateway_id or "").lower())
        if adapter is None:
            raise ValidationError(f"Unsupported payment gateway: {gateway_id!r}")
        return adapter

    # ------------------------------------------------------------------
    # Payment records
    # ------------------------------------------------------------------

    async def get_payment(self, reference: str) -> Optional[Payment]:
        async with self.session_factory() as session:
            result = await session.execute(select(Payment).where(Payment.reference == reference))
            return result.scalar_one_or_none()

    async def _update_payment(self, reference: str, **values: Any) -> Payment:
        async with async_atomic_transaction(self.session_factory, f"payment_update:{reference}") as session:
            payment = (
                await session.execute(select(Payment).where(Payment.reference == reference))
            ).scalar_one()
            for key, value in values.items():
                setattr(payment, key, value)
            await session.flush()
            return payment

    # ------------------------------------------------------------------
    # Initialize
    # ------------------------------------------------------------------

    async def initialize(self, gateway_id: str, request: InitializePaymentRequest) -> InitializeResult:
        """
        Start a wallet funding checkout.

        Validation happens before any I/O. A pending Payment row is written before
        the gateway call so a later webhook or verify can find the requesting user.
        """
        adapter = self._adapter(gateway_id)
        if not request.user_id:
            raise ValidationError("user_id is required")
        if not request.email or "@" not in request.email:
            raise ValidationError("A valid email is required")

        amount = AmountNormalizer.to_canonical(request.amount, AmountUnit.MAJOR)
        minimum = AmountNormalizer.to_canonical(Config.MIN_FUNDING_AMOUNT_NGN, AmountUnit.MAJOR)
        maximum = AmountNormalizer.to_canonical(Config.MAX_FUNDING_AMOUNT_NGN, AmountUnit.MAJOR)
        if not minimum <= amount <= maximum:
            raise ValidationError(
                f"Amount must be between {format_naira(minimum)} and {format_naira(maximum)}"
            )

        reference = request.reference or generate_payment_reference()
        try:
            async with async_atomic_transaction(self.session_factory, f"payment_create:{reference}") as session:
                session.add(
                    Payment(
                        reference=reference,
                        user_id=str(request.user_id),
                        gateway=adapter.name,
                        amount=amount,
                        currency=Config.DEFAULT_CURRENCY,
                        status=PaymentStatus.PENDING.value,
                        extra_data={"email": request.email, **request.metadata},
                    )
                )
        except IntegrityError as e:
            raise DuplicateReference(reference) from e

        gateway_metadata = {"user_id": str(request.user_id), **request.metadata}
        if request.customer_name:
            gateway_metadata["customer_name"] = request.customer_name

        try:
            initialized = await adapter.initialize_transaction(request.email, amount, reference, gateway_metadata)
        except GatewayRejected as e:
            await self._update_payment(reference, status=PaymentStatus.FAILED.value)
            logger.error(f"❌ PAYMENT_INIT_REJECTED: {adapter.name} ref={reference}: {e.message}")
            raise
        except GatewayUnavailable:
            # Outcome unknown; the gateway deduplicates by reference so the Payment stays pending
            logger.error(f"❌ PAYMENT_INIT_UNAVAILABLE: {adapter.name} ref={reference}")
            raise

        await self._update_payment(
            reference,
            payment_url=initialized.checkout_url,
            gateway_reference=initialized.gateway_reference,
        )
        logger.info(
            f"💳 PAYMENT_INITIALIZED: user={request.user_id} {format_naira(amount)} "
            f"gateway={adapter.name} ref={reference}"
        )
        return InitializeResult(
            checkout_url=initialized.checkout_url, reference=reference, gateway=adapter.name, amount=amount
        )

    # ------------------------------------------------------------------
    # Verify
    # ------------------------------------------------------------------

    async def verify(self, gateway_id: str, reference: str) -> VerificationOutcome:
        """
        Verify a funding payment with the gateway and credit the wallet on success.

        Raises:
            ValidationError: unknown reference or gateway
            GatewayUnavailable: the gateway stayed unreachable for every polling attempt
            AmountMismatch: the verified amount differs from the requested amount
        """
        adapter = self._adapter(gateway_id)
        payment = await self.get_payment(reference)
        if payment is None:
            raise ValidationError(f"Unknown payment reference: {reference}")
        if payment.gateway != adapter.name:
            raise ValidationError(f"Payment {reference} was not made through {adapter.name}")

        if payment.wallet_credited:
            return VerificationOutcome(
                success=True,
                status=PaymentStatus.SUCCESS.value,
                reference=reference,
                amount=payment.verified_amount or payment.amount,
                already_credited=True,
            )

        # Read-only call: safe to poll while the gateway is unreachable
        result: GatewayTransactionResult = await self.verify_policy.run(
            lambda: adapter.verify_transaction(reference),
            retry_on=(GatewayUnavailable,),
            description=f"{adapter.name} verify {reference}",
        )
        return await self._settle_payment(
            payment,
            result.status,
            result.amount,
            paid_at=result.paid_at,
            channel=result.channel,
            gateway_reference=result.gateway_reference,
        )

    async def _settle_payment(
        self,
        payment: Payment,
        status: CanonicalStatus,
        amount: int,
        paid_at: Optional[str] = None,
        channel: Optional[str] = None,
        gateway_reference: Optional[str] = None,
    ) -> VerificationOutcome:
        reference = payment.reference

        if status is CanonicalStatus.PENDING:
            logger.info(f"⏳ PAYMENT_PENDING: ref={reference}")
            return VerificationOutcome(success=False, status=PaymentStatus.PENDING.value, reference=reference, amount=amount)

        if status is CanonicalStatus.FAILED:
            if not payment.wallet_credited:
                await self._update_payment(reference, status=PaymentStatus.FAILED.value, verified_at=utcnow())
            logger.warning(f"⚠️ PAYMENT_FAILED: ref={reference}")
            return VerificationOutcome(success=False, status=PaymentStatus.FAILED.value, reference=reference, amount=amount)

        if abs(amount - payment.amount) > Config.AMOUNT_MISMATCH_TOLERANCE_KOBO:
            await self._update_payment(
                reference,
                status=PaymentStatus.AMOUNT_MISMATCH.value,
                verified_amount=amount,
                verified_at=utcnow(),
            )
            logger.error(
                f"🚨 PAYMENT_AMOUNT_MISMATCH: ref={reference} expected={format_naira(payment.amount)} "
                f"verified={format_naira(amount)}"
            )
            raise AmountMismatch(reference, expected=payment.amount, actual=amount)

        metadata = DepositMetadata(
            gateway=payment.gateway,
            gateway_reference=gateway_reference,
            channel=channel,
            paid_at=paid_at,
        )
        balance = None
        already_credited = False
        try:
            credit: LedgerResult = await self.ledger.credit(
                payment.user_id,
                amount,
                TransactionType.DEPOSIT,
                reference,
                metadata,
                description=f"Wallet funding via {payment.gateway}",
            )
            balance = credit.balance
        except DuplicateReference:
            # Verify and webhook raced; the other path already credited this reference
            already_credited = True

        await self._update_payment(
            reference,
            status=PaymentStatus.SUCCESS.value,
            wallet_credited=True,
            verified_amount=amount,
            verified_at=utcnow(),
            paid_at=_parse_timestamp(paid_at),
            channel=channel,
            gateway_reference=gateway_reference or payment.gateway_reference,
        )
        return VerificationOutcome(
            success=True,
            status=PaymentStatus.SUCCESS.value,
            reference=reference,
            amount=amount,
            balance=balance,
            already_credited=already_credited,
        )

    # ------------------------------------------------------------------
    # Webhooks
    # ------------------------------------------------------------------

    async def handle_webhook(
        self,
        gateway_id: str,
        signature_header: Optional[str],
        raw_body: bytes,
    ) -> WebhookOutcome:
        """
        Authenticate, parse and apply a gateway webhook.

        Raises:
            SignatureInvalid: rejected before parsing; nothing is recorded or credited
            ValidationError: unknown gateway or malformed payload
        """
        adapter = self._adapter(gateway_id)
        if not self.signature_verifier.verify(adapter.name, signature_header, raw_body):
            raise SignatureInvalid(f"Invalid webhook signature for {adapter.name}")

        try:
            payload = orjson.loads(raw_body)
        except orjson.JSONDecodeError as e:
            raise ValidationError(f"Malformed {adapter.name} webhook body") from e

        event = adapter.parse_webhook_event(payload)
        event_id = webhook_event_id(event.event_type, event.reference, raw_body)
        await self.event_recorder.record_received(
            adapter.name, event_id, event.event_type, event.reference, event.amount, payload
        )
        return await self._process_event(adapter, event_id, event)

    async def _process_event(self, adapter: GatewayAdapter, event_id: str, event: WebhookEvent) -> WebhookOutcome:
        """Apply a parsed event and record its outcome in the webhook ledger"""
        try:
            outcome = await self._dispatch(adapter, event)
        except AccountNotFound as e:
            outcome = WebhookOutcome(
                status="unresolved",
                gateway=adapter.name,
                event_type=event.event_type,
                reference=event.reference,
                amount=event.amount,
                message=e.message,
            )
        except AmountMismatch as e:
            outcome = WebhookOutcome(
                status="amount_mismatch",
                gateway=adapter.name,
                event_type=event.event_type,
                reference=event.reference,
                amount=event.amount,
                message=e.message,
            )
        except Exception as e:
            await self.event_recorder.mark(
                adapter.name, event_id, WebhookEventStatus.FAILED, error=f"{type(e).__name__}: {e}"
            )
            raise

        await self.event_recorder.mark(
            adapter.name,
            event_id,
            _WEBHOOK_LEDGER_STATUS[outcome.status],
            result=outcome.status,
            error=outcome.message if outcome.status in ("unresolved", "amount_mismatch") else None,
            user_id=outcome.user_id,
        )
        logger.info(
            f"📬 WEBHOOK_PROCESSED: {adapter.name} {event.event_type} ref={event.reference} -> {outcome.status}"
        )
        return outcome

    async def retry_unresolved(self, since: Optional[datetime] = None) -> ReplayReport:
        """
        Re-run webhook events that ended unresolved or failed.

        Each stored payload is parsed again and applied as if redelivered. The
        transaction reference still decides idempotency, so an event credited in
        the meantime comes back as already_processed and is marked duplicate.
        """
        stored_events = await self.event_recorder.list_by_status(
            [WebhookEventStatus.UNRESOLVED, WebhookEventStatus.FAILED], since=since
        )
        report = ReplayReport()
        for stored in stored_events:
            report.attempted += 1
            entry = {"gateway": stored.event_provider, "event_id": stored.event_id, "reference": stored.reference_id}

            adapter = self.adapters.get(stored.event_provider)
            if adapter is None or not stored.payload:
                logger.warning(f"⚠️ WEBHOOK_REPLAY_SKIPPED: {stored.event_provider} {stored.event_id}")
                report.outcomes.append({**entry, "status": "skipped", "message": "No adapter or stored payload"})
                continue

            try:
                event = adapter.parse_webhook_event(stored.payload)
                outcome = await self._process_event(adapter, stored.event_id, event)
            except WalletLedgerError as e:
                logger.warning(f"⚠️ WEBHOOK_REPLAY_ERROR: {stored.event_provider} {stored.event_id}: {e.message}")
                report.outcomes.append({**entry, "status": "error", "message": e.message})
                continue
            report.outcomes.append({**entry, "status": outcome.status, "message": outcome.message})

        logger.info(
            f"🔁 WEBHOOK_REPLAY_COMPLETE: attempted={report.attempted} still_unresolved={report.still_unresolved}"
        )
        return report

    async def _dispatch(self, adapter: GatewayAdapter, event: WebhookEvent) -> WebhookOutcome:
        base = dict(gateway=adapter.name, event_type=event.event_type, reference=event.reference, amount=event.amount)

        if event.kind is WebhookEventKind.TRANSFER_RECEIVED:
            notification = TransferNotification(
                account_number=event.account_number,
                amount=event.amount,
                reference=event.reference,
                sender=event.sender,
                gateway=adapter.name,
                paid_on=event.paid_at,
            )
            try:
                credited = await self.reconciler.credit_from_transfer(notification)
            except AlreadyProcessed:
                return WebhookOutcome(status="already_processed", **base)
            return WebhookOutcome(status="credited", user_id=credited.user_id, balance=credited.balance, **base)

        if event.kind is WebhookEventKind.OTHER:
            return WebhookOutcome(status="ignored", **base)

        payment = await self.get_payment(event.reference)
        if payment is None or payment.gateway != adapter.name:
            logger.warning(f"⚠️ WEBHOOK_UNKNOWN_PAYMENT: {adapter.name} ref={event.reference}")
            return WebhookOutcome(status="unresolved", message="No matching payment for reference", **base)

        if event.kind is WebhookEventKind.PAYMENT_FAILED:
            await self._settle_payment(payment, CanonicalStatus.FAILED, event.amount or 0)
            return WebhookOutcome(status="failed", user_id=payment.user_id, **base)

        if payment.wallet_credited:
            return WebhookOutcome(status="already_processed", user_id=payment.user_id, **base)

        settled = await self._settle_payment(
            payment, CanonicalStatus.SUCCESS, event.amount, paid_at=event.paid_at, channel=event.channel
        )
        status = "already_processed" if settled.already_credited else "credited"
        return WebhookOutcome(status=status, user_id=payment.user_id, balance=settled.balance, **base)

    # ------------------------------------------------------------------
    # Virtual accounts and banks
    # ------------------------------------------------------------------

    async def reserve_virtual_account(
        self,
        gateway_id: str,
        user_id: str,
        customer_name: str,
        customer_email: str,
    ) -> VirtualAccount:
        """Return the user's active virtual account, reserving one with the gateway if needed"""
        adapter = self._adapter(gateway_id)
        if not adapter.supports_reserved_accounts:
            raise ValidationError(f"{adapter.name} does not support reserved accounts")

        existing = await self.reconciler.get_user_account(user_id)
        if existing is not None:
            return existing

        reserved = await adapter.reserve_account(
            user_id, {"customer_name": customer_name, "customer_email": customer_email}
        )
        return await self.reconciler.register_account(user_id, adapter.name, reserved)

    async def get_virtual_account(self, user_id: str) -> Optional[VirtualAccount]:
        return await self.reconciler.get_user_account(user_id)

    async def list_banks(self, gateway_id: str) -> List[Bank]:
        return await self._adapter(gateway_id).list_banks()

    async def resolve_account(self, gateway_id: str, account_number: str, bank_code: str) -> Dict[str, str]:
        """Look up the account name behind a NUBAN through the gateway"""
        adapter = self._adapter(gateway_id)
        account_number = (account_number or "").strip()
        bank_code = (bank_code or "").strip()
        if len(account_number) != 10 or not account_number.isdigit():
            raise ValidationError("account_number must be 10 digits")
        if not bank_code:
            raise ValidationError("bank_code is required")
        return await adapter.resolve_account(account_number, bank_code)

    # ------------------------------------------------------------------
    # Wallet spend with compensation
    # ------------------------------------------------------------------

    async def charge_wallet(
        self,
        user_id: str,
        amount: int,
        transaction_type: Union[TransactionType, str],
        reference: str,
        fulfil: Callable[[], Awaitable[T]],
        metadata: Any = None,
        description: Optional[str] = None,
    ) -> ChargeResult:
        """
        Debit the wallet, then run the external fulfilment (bill payment, gift card, ...).

        Validation and insufficient funds are raised before `fulfil` runs. If
        fulfilment fails definitively, a compensating refund is credited under
        `refund-{reference}` and the original error is re-raised.

        GatewayUnavailable means the provider may or may not have delivered; the
        debit stands and the error is re-raised for later verification.
        """
        debit = await self.ledger.debit(user_id, amount, transaction_type, reference, metadata, description)
        try:
            fulfilment = await fulfil()
        except GatewayUnavailable as e:
            logger.error(
                f"⚠️ FULFILMENT_OUTCOME_UNKNOWN: ref={reference} {e.message}; debit kept pending verification"
            )
            raise
        except Exception as e:
            logger.error(f"❌ FULFILMENT_FAILED: ref={reference} {type(e).__name__}: {e}; refunding")
            try:
                await self.ledger.refund(user_id, amount, reference, reason=f"{type(e).__name__}: {e}"[:255])
            except DuplicateReference:
                logger.warning(f"⚠️ REFUND_EXISTS: ref={reference} was already refunded")
            raise

        return ChargeResult(balance=debit.balance, reference=reference, fulfilment=fulfilment)


_payment_orchestrator: Optional[PaymentOrchestrator] = None


def get_payment_orchestrator() -> PaymentOrchestrator:
    """Process-wide orchestrator bound to the application database and configured gateways"""
    global _payment_orchestrator
    if _payment_orchestrator is None:
        from database import AsyncSessionLocal
        from services.gateways.registry import build_gateway_adapters
        from services.wallet_ledger import get_wallet_ledger

        _payment_orchestrator = PaymentOrchestrator(
            session_factory=AsyncSessionLocal,
            ledger=get_wallet_ledger(),
            adapters=build_gateway_adapters(),
        )
    return _payment_orchestrator
