#!/usr/bin/env python3
"""
Paystack Payment Service for NGN wallet funding
Static secret-key authentication; amounts are exchanged in kobo
"""

import logging
from typing import Any, Callable, Dict, List, Optional
from urllib.parse import quote

from config import Config
from services.gateways.base import (
    Bank,
    CanonicalStatus,
    GatewayAdapter,
    GatewayTransactionResult,
    InitializedTransaction,
    WebhookEvent,
    WebhookEventKind,
    as_text,
)
from utils.amount_normalizer import AmountNormalizer, AmountUnit
from utils.exceptions import GatewayRejected, ValidationError

logger = logging.getLogger(__name__)

PAYSTACK_STATUS_MAP = {
    "success": CanonicalStatus.SUCCESS,
    "failed": CanonicalStatus.FAILED,
    "abandoned": CanonicalStatus.FAILED,
    "cancelled": CanonicalStatus.FAILED,
    "reversed": CanonicalStatus.FAILED,
    "pending": CanonicalStatus.PENDING,
    "ongoing": CanonicalStatus.PENDING,
    "processing": CanonicalStatus.PENDING,
    "queued": CanonicalStatus.PENDING,
}

DEFAULT_CHANNELS = ["card", "bank", "ussd", "bank_transfer"]


def map_paystack_status(status: Optional[str]) -> CanonicalStatus:
    # Unknown statuses never count as paid
    return PAYSTACK_STATUS_MAP.get((status or "").lower(), CanonicalStatus.FAILED)


class PaystackService(GatewayAdapter):
    """Paystack adapter: checkout initialization, verification, banks and webhook parsing"""

    name = "paystack"
    native_unit = AmountUnit.MINOR
    supports_reserved_accounts = False

    def __init__(
        self,
        secret_key: Optional[str] = None,
        base_url: Optional[str] = None,
        callback_url: Optional[str] = None,
        timeout: Optional[float] = None,
        http_session_factory: Optional[Callable[..., Any]] = None,
    ):
        super().__init__(base_url or Config.PAYSTACK_BASE_URL, timeout, http_session_factory)
        self.secret_key = secret_key if secret_key is not None else Config.PAYSTACK_SECRET_KEY
        self.callback_url = callback_url if callback_url is not None else Config.PAYSTACK_CALLBACK_URL

        if not self.secret_key:
            logger.warning("PAYSTACK_SECRET_KEY not configured - Paystack payments will not work")

    def is_configured(self) -> bool:
        return bool(self.secret_key)

    async def _call(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
    ) -> Any:
        """Authenticated call returning the `data` member of Paystack's {status, message, data} envelope"""
        if not self.is_configured():
            raise GatewayRejected(self.name, "Paystack is not configured")

        _, payload = await self._request(
            method,
            path,
            headers={"Authorization": f"Bearer {self.secret_key}"},
            json=json,
            params=params,
        )
        if not payload.get("status"):
            raise GatewayRejected(self.name, payload.get("message") or "request unsuccessful")
        return payload.get("data")

    async def initialize_transaction(
        self,
        payer_email: str,
        amount: int,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
        callback_url: Optional[str] = None,
    ) -> InitializedTransaction:
        body = {
            "email": payer_email,
            "amount": AmountNormalizer.from_canonical(amount, self.native_unit),
            "reference": reference,
            "currency": "NGN",
            "channels": DEFAULT_CHANNELS,
            "metadata": metadata or {},
        }
        callback = callback_url or self.callback_url
        if callback:
            body["callback_url"] = callback

        data = await self._call("POST", "/transaction/initialize", json=body) or {}
        checkout_url = data.get("authorization_url")
        if not checkout_url:
            raise GatewayRejected(self.name, "initialize response has no authorization_url")

        logger.info(f"💳 PAYSTACK_INIT: reference={reference} amount={amount} kobo")
        return InitializedTransaction(
            checkout_url=checkout_url,
            reference=data.get("reference") or reference,
            gateway_reference=data.get("access_code"),
        )

    async def verify_transaction(self, reference: str) -> GatewayTransactionResult:
        data = await self._call("GET", f"/transaction/verify/{quote(reference, safe='')}") or {}
        status = map_paystack_status(data.get("status"))
        amount = AmountNormalizer.to_canonical(data.get("amount") or 0, self.native_unit)

        logger.info(f"🔍 PAYSTACK_VERIFY: reference={reference} status={data.get('status')} -> {status.value}")
        return GatewayTransactionResult(
            success=status is CanonicalStatus.SUCCESS,
            status=status,
            reference=data.get("reference") or reference,
            amount=amount,
            currency=data.get("currency") or "NGN",
            paid_at=as_text(data.get("paid_at") or data.get("paidAt")),
            channel=as_text(data.get("channel")),
            gateway_reference=str(data["id"]) if data.get("id") is not None else None,
            raw=data,
        )

    async def list_banks(self) -> List[Bank]:
        data = await self._call("GET", "/bank", params={"country": "nigeria", "currency": "NGN"}) or []
        return [Bank(name=bank["name"], code=str(bank["code"])) for bank in data if bank.get("code")]

    async def resolve_account(self, account_number: str, bank_code: str) -> Dict[str, str]:
        """Look up the registered name on a bank account"""
        data = await self._call(
            "GET", "/bank/resolve", params={"account_number": account_number, "bank_code": bank_code}
        ) or {}
        return {
            "account_number": data.get("account_number") or account_number,
            "account_name": data.get("account_name"),
            "bank_code": bank_code,
        }

    def parse_webhook_event(self, payload: Dict[str, Any]) -> WebhookEvent:
        """
        Paystack webhook body: {"event": "charge.success", "data": {"reference", "amount" (kobo), ...}}
        """
        if not isinstance(payload, dict) or not isinstance(payload.get("data"), dict):
            raise ValidationError("Paystack webhook has no data object")

        event_type = str(payload.get("event") or "")
        data = payload["data"]
        reference = data.get("reference")

        if event_type == "charge.success":
            kind = WebhookEventKind.PAYMENT_SUCCESS
        elif event_type == "charge.failed":
            kind = WebhookEventKind.PAYMENT_FAILED
        else:
            kind = WebhookEventKind.OTHER

        amount = None
        if kind is not WebhookEventKind.OTHER:
            if not reference:
                raise ValidationError(f"Paystack {event_type} webhook without reference")
            if data.get("amount") is not None:
                amount = AmountNormalizer.to_canonical(data["amount"], self.native_unit)
            elif kind is not WebhookEventKind.PAYMENT_FAILED:
                raise ValidationError(f"Paystack {event_type} webhook without amount")

        return WebhookEvent(
            kind=kind,
            event_type=event_type,
            reference=reference,
            amount=amount,
            paid_at=as_text(data.get("paid_at") or data.get("paidAt")),
            channel=as_text(data.get("channel")),
            raw=payload,
        )
