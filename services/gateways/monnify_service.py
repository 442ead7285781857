#!/usr/bin/env python3
"""
Monnify Payment Service for NGN wallet funding and reserved accounts

Client-credentials authentication: HTTP Basic apiKey:secretKey against
/api/v1/auth/login yields a bearer token, cached per adapter instance in a
TokenCache until shortly before it expires. Monnify amounts are in naira.
"""

import logging
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from config import Config
from services.gateways.base import (
    Bank,
    CanonicalStatus,
    GatewayAdapter,
    GatewayTransactionResult,
    InitializedTransaction,
    ReservedAccount,
    ReservedAccountNumber,
    WebhookEvent,
    WebhookEventKind,
    as_text,
    mask_account_number,
)
from services.gateways.token_cache import TokenCache
from utils.amount_normalizer import AmountNormalizer, AmountUnit
from utils.exceptions import GatewayRejected, ValidationError

logger = logging.getLogger(__name__)

MONNIFY_STATUS_MAP = {
    "PAID": CanonicalStatus.SUCCESS,
    "OVERPAID": CanonicalStatus.SUCCESS,
    "PENDING": CanonicalStatus.PENDING,
    "FAILED": CanonicalStatus.FAILED,
    "CANCELLED": CanonicalStatus.FAILED,
    "EXPIRED": CanonicalStatus.FAILED,
    "PARTIALLY_PAID": CanonicalStatus.FAILED,
    "REVERSED": CanonicalStatus.FAILED,
}

RESERVED_ACCOUNT_PRODUCT = "RESERVED_ACCOUNT"
DEFAULT_TOKEN_LIFETIME_SECONDS = 3600


def map_monnify_status(status: Optional[str]) -> CanonicalStatus:
    return MONNIFY_STATUS_MAP.get((status or "").upper(), CanonicalStatus.FAILED)


def reserved_account_reference(user_id: str) -> str:
    # Deterministic so a retried reservation is deduplicated by Monnify
    return f"VA_{user_id}"


class MonnifyService(GatewayAdapter):
    """Monnify adapter: checkout, verification, reserved accounts, banks and webhook parsing"""

    name = "monnify"
    native_unit = AmountUnit.MAJOR
    supports_reserved_accounts = True

    def __init__(
        self,
        api_key: Optional[str] = None,
        secret_key: Optional[str] = None,
        contract_code: Optional[str] = None,
        base_url: Optional[str] = None,
        redirect_url: Optional[str] = None,
        preferred_banks: Optional[List[str]] = None,
        token_cache: Optional[TokenCache] = None,
        clock: Optional[Callable[[], float]] = None,
        timeout: Optional[float] = None,
        http_session_factory: Optional[Callable[..., Any]] = None,
    ):
        super().__init__(base_url or Config.MONNIFY_BASE_URL, timeout, http_session_factory)
        self.api_key = api_key if api_key is not None else Config.MONNIFY_API_KEY
        self.secret_key = secret_key if secret_key is not None else Config.MONNIFY_SECRET_KEY
        self.contract_code = contract_code if contract_code is not None else Config.MONNIFY_CONTRACT_CODE
        self.redirect_url = redirect_url if redirect_url is not None else Config.MONNIFY_REDIRECT_URL
        self.preferred_banks = list(preferred_banks if preferred_banks is not None else Config.MONNIFY_PREFERRED_BANKS)
        self.token_cache = token_cache or TokenCache(
            clock=clock or time.monotonic,
            refresh_margin=Config.GATEWAY_TOKEN_REFRESH_MARGIN_SECONDS,
            name=self.name,
        )

        if not self.is_configured():
            logger.warning(
                "MONNIFY_API_KEY, MONNIFY_SECRET_KEY or MONNIFY_CONTRACT_CODE not configured - Monnify will not work"
            )

    def is_configured(self) -> bool:
        return bool(self.api_key and self.secret_key and self.contract_code)

    def _unwrap(self, payload: Dict[str, Any]) -> Any:
        """responseBody of Monnify's {requestSuccessful, responseMessage, responseBody} envelope"""
        if not payload.get("requestSuccessful"):
            raise GatewayRejected(self.name, payload.get("responseMessage") or "request unsuccessful")
        return payload.get("responseBody")

    async def _login(self) -> Tuple[str, float]:
        _, payload = await self._request(
            "POST",
            "/api/v1/auth/login",
            auth=aiohttp.BasicAuth(self.api_key, self.secret_key),
        )
        body = self._unwrap(payload) or {}
        token = body.get("accessToken")
        if not token:
            raise GatewayRejected(self.name, "login response has no accessToken")
        expires_in = float(body.get("expiresIn") or DEFAULT_TOKEN_LIFETIME_SECONDS)
        logger.info(f"🔑 MONNIFY_AUTH: access token issued, expires in {expires_in:.0f}s")
        return token, expires_in

    async def _call(
        self,
        method: str,
        path: str,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        retry_unauthorized: bool = True,
    ) -> Any:
        if not self.is_configured():
            raise GatewayRejected(self.name, "Monnify is not configured")

        token = await self.token_cache.get_or_refresh(self._login)
        try:
            _, payload = await self._request(
                method, path, headers={"Authorization": f"Bearer {token}"}, json=json, params=params
            )
        except GatewayRejected as e:
            if e.status_code == 401 and retry_unauthorized:
                # Token revoked or expired early: log in again once
                logger.warning(f"⚠️ MONNIFY_AUTH: bearer token rejected on {path}, refreshing")
                self.token_cache.invalidate()
                return await self._call(method, path, json=json, params=params, retry_unauthorized=False)
            raise
        return self._unwrap(payload)

    async def initialize_transaction(
        self,
        payer_email: str,
        amount: int,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
        customer_name: Optional[str] = None,
        description: Optional[str] = None,
        redirect_url: Optional[str] = None,
    ) -> InitializedTransaction:
        native_amount = AmountNormalizer.from_canonical(amount, self.native_unit)
        metadata = dict(metadata or {})
        customer_name = customer_name or metadata.pop("customer_name", None)
        body = {
            "amount": float(native_amount),
            "customerName": customer_name or payer_email,
            "customerEmail": payer_email,
            "paymentReference": reference,
            "paymentDescription": description or "Wallet funding",
            "currencyCode": "NGN",
            "contractCode": self.contract_code,
            "paymentMethods": ["CARD", "ACCOUNT_TRANSFER"],
            "metaData": metadata,
        }
        redirect = redirect_url or self.redirect_url
        if redirect:
            body["redirectUrl"] = redirect

        data = await self._call("POST", "/api/v1/merchant/transactions/init-transaction", json=body) or {}
        checkout_url = data.get("checkoutUrl")
        if not checkout_url:
            raise GatewayRejected(self.name, "init-transaction response has no checkoutUrl")

        logger.info(f"💳 MONNIFY_INIT: reference={reference} amount=₦{native_amount}")
        return InitializedTransaction(
            checkout_url=checkout_url,
            reference=data.get("paymentReference") or reference,
            gateway_reference=data.get("transactionReference"),
        )

    async def verify_transaction(self, reference: str) -> GatewayTransactionResult:
        data = await self._call(
            "GET", "/api/v1/merchant/transactions/query", params={"paymentReference": reference}
        ) or {}
        raw_status = data.get("paymentStatus")
        status = map_monnify_status(raw_status)
        amount = AmountNormalizer.to_canonical(data.get("amountPaid") or 0, self.native_unit)

        logger.info(f"🔍 MONNIFY_VERIFY: reference={reference} status={raw_status} -> {status.value}")
        return GatewayTransactionResult(
            success=status is CanonicalStatus.SUCCESS,
            status=status,
            reference=data.get("paymentReference") or reference,
            amount=amount,
            currency=data.get("currencyCode") or data.get("currency") or "NGN",
            paid_at=as_text(data.get("paidOn")),
            channel=as_text(data.get("paymentMethod")),
            gateway_reference=as_text(data.get("transactionReference")),
            raw=data,
        )

    async def reserve_account(self, user_id: str, metadata: Optional[Dict[str, Any]] = None) -> ReservedAccount:
        """
        Reserve dedicated bank account numbers for a user.

        Args:
            user_id: Wallet owner
            metadata: customer_name and customer_email (required), account_reference (optional)
        """
        metadata = metadata or {}
        customer_name = metadata.get("customer_name")
        customer_email = metadata.get("customer_email")
        if not customer_name or not customer_email:
            raise ValidationError("customer_name and customer_email are required to reserve an account")

        account_reference = metadata.get("account_reference") or reserved_account_reference(user_id)
        body = {
            "accountReference": account_reference,
            "accountName": customer_name,
            "currencyCode": "NGN",
            "contractCode": self.contract_code,
            "customerEmail": customer_email,
            "customerName": customer_name,
            "getAllAvailableBanks": False,
            "preferredBanks": self.preferred_banks,
        }

        data = await self._call("POST", "/api/v2/bank-transfer/reserved-accounts", json=body) or {}
        accounts = [
            ReservedAccountNumber(
                bank_name=item.get("bankName") or "",
                account_number=str(item["accountNumber"]),
                account_name=item.get("accountName"),
                bank_code=item.get("bankCode"),
            )
            for item in data.get("accounts") or []
            if item.get("accountNumber")
        ]
        if not accounts:
            raise GatewayRejected(self.name, "reserved account response has no accounts")

        logger.info(
            f"🏦 MONNIFY_RESERVED_ACCOUNT: user={user_id} reference={account_reference} "
            f"accounts={[mask_account_number(a.account_number) for a in accounts]}"
        )
        return ReservedAccount(
            account_reference=data.get("accountReference") or account_reference,
            account_name=data.get("accountName") or customer_name,
            customer_email=data.get("customerEmail") or customer_email,
            accounts=accounts,
            raw=data,
        )

    async def list_banks(self) -> List[Bank]:
        data = await self._call("GET", "/api/v1/banks") or []
        return [Bank(name=bank["name"], code=str(bank["code"])) for bank in data if bank.get("code")]

    def parse_webhook_event(self, payload: Dict[str, Any]) -> WebhookEvent:
        """
        Monnify webhook body: {"eventType": "SUCCESSFUL_TRANSACTION", "eventData": {...}}

        Reserved-account transfers carry product.type == RESERVED_ACCOUNT, the
        receiving account in destinationAccountInformation and the sender in
        paymentSourceInformation.
        """
        if not isinstance(payload, dict) or not isinstance(payload.get("eventData"), dict):
            raise ValidationError("Monnify webhook has no eventData object")

        event_type = str(payload.get("eventType") or "")
        data = payload["eventData"]
        reference = data.get("paymentReference") or data.get("transactionReference")
        product = data.get("product") or {}

        if event_type == "SUCCESSFUL_TRANSACTION":
            if product.get("type") == RESERVED_ACCOUNT_PRODUCT:
                kind = WebhookEventKind.TRANSFER_RECEIVED
            else:
                kind = WebhookEventKind.PAYMENT_SUCCESS
        elif event_type == "FAILED_TRANSACTION":
            kind = WebhookEventKind.PAYMENT_FAILED
        else:
            kind = WebhookEventKind.OTHER

        amount = None
        account_number = None
        sender: Dict[str, Optional[str]] = {}
        if kind is not WebhookEventKind.OTHER:
            if not reference:
                raise ValidationError(f"Monnify {event_type} webhook without paymentReference")
            if data.get("amountPaid") is not None:
                amount = AmountNormalizer.to_canonical(data["amountPaid"], self.native_unit)
            elif kind is not WebhookEventKind.PAYMENT_FAILED:
                raise ValidationError(f"Monnify {event_type} webhook without amountPaid")

        if kind is WebhookEventKind.TRANSFER_RECEIVED:
            destination = data.get("destinationAccountInformation") or {}
            account_number = destination.get("accountNumber")
            if not account_number:
                raise ValidationError("Monnify reserved-account webhook without destination account number")
            account_number = str(account_number)
            sources = data.get("paymentSourceInformation") or []
            source = sources[0] if sources and isinstance(sources[0], dict) else {}
            sender = {
                "account_name": as_text(source.get("accountName")),
                "account_number": as_text(source.get("accountNumber")),
                "bank_name": as_text(source.get("bankName") or source.get("bankCode")),
                "destination_bank_name": as_text(destination.get("bankName")),
            }

        return WebhookEvent(
            kind=kind,
            event_type=event_type,
            reference=reference,
            amount=amount,
            paid_at=as_text(data.get("paidOn")),
            channel=as_text(data.get("paymentMethod")),
            account_number=account_number,
            sender=sender,
            raw=payload,
        )
