"""
Gateway Adapter base class

Every payment gateway is wrapped in an adapter with the same contract:
initialize_transaction, verify_transaction, reserve_account, list_banks and
parse_webhook_event. Adapters convert gateway amounts to kobo through
AmountNormalizer and map gateway status vocabularies to CanonicalStatus.

Transport failures (connection errors, timeouts, 5xx, 429) raise
GatewayUnavailable: the payment outcome is unknown and the call may be retried.
A definitive provider answer (4xx, unsuccessful envelope) raises GatewayRejected.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp

from config import Config
from utils.amount_normalizer import AmountUnit
from utils.exceptions import GatewayRejected, GatewayUnavailable, ValidationError

logger = logging.getLogger(__name__)


# ============================================================================
# CANONICAL RESULT TYPES
# ============================================================================

class CanonicalStatus(Enum):
    SUCCESS = "success"
    PENDING = "pending"
    FAILED = "failed"


class WebhookEventKind(Enum):
    PAYMENT_SUCCESS = "payment_success"
    PAYMENT_FAILED = "payment_failed"
    TRANSFER_RECEIVED = "transfer_received"  # push transfer into a reserved account
    OTHER = "other"


@dataclass(frozen=True)
class GatewayTransactionResult:
    """Normalized verify result; amounts in kobo"""
    success: bool
    status: CanonicalStatus
    reference: str
    amount: int
    currency: str = "NGN"
    paid_at: Optional[str] = None
    channel: Optional[str] = None
    gateway_reference: Optional[str] = None
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class InitializedTransaction:
    checkout_url: str
    reference: str
    gateway_reference: Optional[str] = None


@dataclass(frozen=True)
class ReservedAccountNumber:
    bank_name: str
    account_number: str
    account_name: Optional[str] = None
    bank_code: Optional[str] = None


@dataclass(frozen=True)
class ReservedAccount:
    account_reference: str
    account_name: Optional[str]
    customer_email: Optional[str]
    accounts: List[ReservedAccountNumber]
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


@dataclass(frozen=True)
class Bank:
    name: str
    code: str


@dataclass(frozen=True)
class WebhookEvent:
    """A gateway webhook reduced to what the ledger needs; amount in kobo"""
    kind: WebhookEventKind
    event_type: str
    reference: Optional[str] = None
    amount: Optional[int] = None
    paid_at: Optional[str] = None
    channel: Optional[str] = None
    account_number: Optional[str] = None
    sender: Dict[str, Optional[str]] = field(default_factory=dict)
    raw: Dict[str, Any] = field(default_factory=dict, repr=False)


# ============================================================================
# ADAPTER BASE
# ============================================================================

class GatewayAdapter(ABC):
    """Base class for payment gateway integrations"""

    name: str = "gateway"
    native_unit: AmountUnit = AmountUnit.MINOR
    supports_reserved_accounts: bool = False

    def __init__(
        self,
        base_url: str,
        timeout: Optional[float] = None,
        http_session_factory: Optional[Callable[..., Any]] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout or Config.GATEWAY_TIMEOUT_SECONDS)
        self._http_session_factory = http_session_factory or aiohttp.ClientSession
        logger.info(f"🔧 {self.__class__.__name__} initialized for {self.base_url}")

    @abstractmethod
    async def initialize_transaction(
        self,
        payer_email: str,
        amount: int,
        reference: str,
        metadata: Optional[Dict[str, Any]] = None,
    ) -> InitializedTransaction:
        """Start a checkout for `amount` kobo and return the checkout URL"""

    @abstractmethod
    async def verify_transaction(self, reference: str) -> GatewayTransactionResult:
        """Ask the gateway for the outcome of a transaction"""

    @abstractmethod
    async def list_banks(self) -> List[Bank]:
        """Banks the gateway can pay out to or resolve accounts at"""

    @abstractmethod
    def parse_webhook_event(self, payload: Dict[str, Any]) -> WebhookEvent:
        """Reduce a parsed webhook body to a WebhookEvent; ValidationError when malformed"""

    async def reserve_account(self, user_id: str, metadata: Optional[Dict[str, Any]] = None) -> ReservedAccount:
        raise ValidationError(f"{self.name} does not support reserved accounts")

    async def resolve_account(self, account_number: str, bank_code: str) -> Dict[str, str]:
        """Account name lookup for a bank account; not every gateway offers it"""
        raise ValidationError(f"{self.name} does not support account name lookup")

    @abstractmethod
    def is_configured(self) -> bool:
        """True when credentials are present"""

    async def _request(
        self,
        method: str,
        path: str,
        *,
        headers: Optional[Dict[str, str]] = None,
        json: Optional[Dict[str, Any]] = None,
        params: Optional[Dict[str, Any]] = None,
        auth: Optional[aiohttp.BasicAuth] = None,
    ) -> Tuple[int, Dict[str, Any]]:
        """
        Perform one HTTP call and return (status, parsed JSON body).

        Raises:
            GatewayUnavailable: connection error, timeout, 429, 5xx or unreadable body
            GatewayRejected: any other non-2xx status
        """
        url = f"{self.base_url}/{path.lstrip('/')}"
        request_headers = {"Content-Type": "application/json", "Accept": "application/json"}
        request_headers.update(headers or {})

        try:
            async with self._http_session_factory(timeout=self.timeout) as session:
                async with session.request(
                    method, url, headers=request_headers, json=json, params=params, auth=auth
                ) as response:
                    status = response.status
                    try:
                        payload = await response.json(content_type=None)
                    except ValueError:
                        payload = None
        except asyncio.TimeoutError as e:
            logger.error(f"⏱️ {self.name.upper()}_TIMEOUT: {method} {path}")
            raise GatewayUnavailable(self.name, f"timeout calling {method} {path}") from e
        except aiohttp.ClientError as e:
            logger.error(f"❌ {self.name.upper()}_NETWORK_ERROR: {method} {path}: {e}")
            raise GatewayUnavailable(self.name, f"network error calling {method} {path}: {e}") from e

        if status == 429 or status >= 500:
            logger.error(f"❌ {self.name.upper()}_UNAVAILABLE: {method} {path} -> HTTP {status}")
            raise GatewayUnavailable(self.name, f"HTTP {status} from {method} {path}", status_code=status)

        if status >= 400:
            body = payload if isinstance(payload, dict) else {}
            message = body.get("message") or body.get("responseMessage") or f"HTTP {status}"
            logger.warning(f"⚠️ {self.name.upper()}_REJECTED: {method} {path} -> HTTP {status}: {message}")
            raise GatewayRejected(self.name, message, status_code=status)

        if not isinstance(payload, dict):
            raise GatewayUnavailable(self.name, f"unreadable response from {method} {path}", status_code=status)

        logger.debug(f"{self.name} API success: {method} {path}")
        return status, payload


def mask_account_number(account_number: Optional[str]) -> str:
    if not account_number:
        return "****"
    return f"****{account_number[-4:]}"


def as_text(value: Any) -> Optional[str]:
    """Gateway payload scalar as a string for ledger metadata; None stays None"""
    if value is None or isinstance(value, str):
        return value
    return str(value)
