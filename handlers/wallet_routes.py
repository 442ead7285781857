"""
Wallet HTTP routes

Balance, history, funding, transfer and virtual account endpoints. The caller is
identified by the X-User-Id header set by the upstream auth layer. Amounts in
responses are integer kobo; funding requests take naira.
"""

import logging
from datetime import datetime
from typing import Any, Dict, Optional

import orjson
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request

from services.gateways.base import mask_account_number
from services.payment_orchestrator import (
    InitializePaymentRequest,
    PaymentOrchestrator,
    generate_payment_reference,
    get_payment_orchestrator,
)
from services.wallet_ledger import WalletLedger, get_wallet_ledger
from utils.amount_normalizer import AmountNormalizer, AmountUnit
from utils.exceptions import (
    AmountMismatch,
    DuplicateReference,
    GatewayRejected,
    GatewayUnavailable,
    InsufficientFunds,
    ValidationError,
    WalletLedgerError,
    WalletNotActive,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/wallet", tags=["wallet"])

# Most specific first; AlreadyProcessed is a DuplicateReference
_ERROR_STATUS = (
    (ValidationError, 400),
    (InsufficientFunds, 402),
    (WalletNotActive, 403),
    (DuplicateReference, 409),
    (AmountMismatch, 409),
    (GatewayRejected, 502),
    (GatewayUnavailable, 503),
)


def _http_error(error: WalletLedgerError) -> HTTPException:
    for error_type, status_code in _ERROR_STATUS:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=error.message)
    logger.error(f"❌ WALLET_ROUTE_ERROR: {type(error).__name__}: {error.message}")
    return HTTPException(status_code=500, detail="Internal error")


def require_user(x_user_id: Optional[str] = Header(None, alias="X-User-Id")) -> str:
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Missing X-User-Id header")
    return x_user_id.strip()


async def _json_body(request: Request) -> Dict[str, Any]:
    try:
        body = orjson.loads(await request.body())
    except orjson.JSONDecodeError:
        raise HTTPException(status_code=400, detail="Request body must be JSON")
    if not isinstance(body, dict):
        raise HTTPException(status_code=400, detail="Request body must be a JSON object")
    return body


def _serialize_virtual_account(account) -> Dict[str, Any]:
    return {
        "account_reference": account.account_reference,
        "gateway": account.gateway,
        "account_name": account.account_name,
        "status": account.status,
        "accounts": [
            {
                "bank_name": number.bank_name,
                "bank_code": number.bank_code,
                "account_number": number.account_number,
                "account_name": number.account_name,
            }
            for number in account.accounts
        ],
    }


# ============================================================================
# LEDGER QUERIES
# ============================================================================

@router.get("/balance")
async def wallet_balance(
    user_id: str = Depends(require_user),
    ledger: WalletLedger = Depends(get_wallet_ledger),
):
    try:
        return (await ledger.get_balance(user_id)).to_dict()
    except WalletLedgerError as e:
        raise _http_error(e)


@router.get("/transactions")
async def wallet_transactions(
    user_id: str = Depends(require_user),
    ledger: WalletLedger = Depends(get_wallet_ledger),
    page: int = Query(1, ge=1),
    limit: int = Query(20, ge=1, le=100),
    transaction_type: Optional[str] = Query(None, alias="type"),
    status: Optional[str] = Query(None),
    start_date: Optional[datetime] = Query(None),
    end_date: Optional[datetime] = Query(None),
):
    try:
        result = await ledger.get_transactions(
            user_id,
            page=page,
            limit=limit,
            transaction_type=transaction_type,
            status=status,
            start_date=start_date,
            end_date=end_date,
        )
    except WalletLedgerError as e:
        raise _http_error(e)
    return result.to_dict()


@router.get("/stats")
async def wallet_stats(
    user_id: str = Depends(require_user),
    ledger: WalletLedger = Depends(get_wallet_ledger),
):
    try:
        return (await ledger.get_wallet_stats(user_id)).to_dict()
    except WalletLedgerError as e:
        raise _http_error(e)


@router.get("/integrity")
async def wallet_integrity(
    user_id: str = Depends(require_user),
    ledger: WalletLedger = Depends(get_wallet_ledger),
):
    try:
        return (await ledger.verify_integrity(user_id)).to_dict()
    except WalletLedgerError as e:
        raise _http_error(e)


# ============================================================================
# TRANSFERS
# ============================================================================

@router.post("/transfer")
async def transfer_funds(
    request: Request,
    user_id: str = Depends(require_user),
    ledger: WalletLedger = Depends(get_wallet_ledger),
):
    """Send money to another wallet; body: {recipient_id, amount (naira), reference?, note?}"""
    body = await _json_body(request)
    recipient_id = body.get("recipient_id")
    if not recipient_id:
        raise HTTPException(status_code=400, detail="recipient_id is required")
    try:
        amount = AmountNormalizer.to_canonical(body.get("amount"), AmountUnit.MAJOR)
        result = await ledger.transfer(
            user_id,
            recipient_id,
            amount,
            body.get("reference") or generate_payment_reference("TRF"),
            note=body.get("note"),
        )
    except WalletLedgerError as e:
        raise _http_error(e)
    return result.to_dict()


# ============================================================================
# FUNDING
# ============================================================================

@router.post("/fund")
async def fund_wallet(
    request: Request,
    user_id: str = Depends(require_user),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Start a checkout; body: {gateway, amount (naira), email, customer_name?}"""
    body = await _json_body(request)
    try:
        result = await orchestrator.initialize(
            body.get("gateway") or "paystack",
            InitializePaymentRequest(
                user_id=user_id,
                email=body.get("email") or "",
                amount=body.get("amount"),
                customer_name=body.get("customer_name"),
            ),
        )
    except WalletLedgerError as e:
        raise _http_error(e)
    return result.to_dict()


@router.get("/verify/{gateway}/{reference}")
async def verify_funding(
    gateway: str,
    reference: str,
    user_id: str = Depends(require_user),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    payment = await orchestrator.get_payment(reference)
    if payment is None or payment.user_id != user_id:
        raise HTTPException(status_code=404, detail="Payment not found")
    try:
        outcome = await orchestrator.verify(gateway, reference)
    except WalletLedgerError as e:
        raise _http_error(e)
    return outcome.to_dict()


# ============================================================================
# VIRTUAL ACCOUNTS
# ============================================================================

@router.post("/virtual-account")
async def create_virtual_account(
    request: Request,
    user_id: str = Depends(require_user),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Reserve (or return) the caller's dedicated transfer account; body: {customer_name, customer_email, gateway?}"""
    body = await _json_body(request)
    if not body.get("customer_name") or not body.get("customer_email"):
        raise HTTPException(status_code=400, detail="customer_name and customer_email are required")
    try:
        account = await orchestrator.reserve_virtual_account(
            body.get("gateway") or "monnify",
            user_id,
            body["customer_name"],
            body["customer_email"],
        )
    except WalletLedgerError as e:
        raise _http_error(e)

    logger.info(
        f"🏦 VIRTUAL_ACCOUNT_SERVED: user={user_id} "
        f"accounts={[mask_account_number(n.account_number) for n in account.accounts]}"
    )
    return _serialize_virtual_account(account)


@router.get("/virtual-account")
async def get_virtual_account(
    user_id: str = Depends(require_user),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    account = await orchestrator.get_virtual_account(user_id)
    if account is None:
        raise HTTPException(status_code=404, detail="No virtual account")
    return _serialize_virtual_account(account)


@router.get("/banks/{gateway}")
async def list_banks(
    gateway: str,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    try:
        banks = await orchestrator.list_banks(gateway)
    except WalletLedgerError as e:
        raise _http_error(e)
    return {"banks": [{"name": bank.name, "code": bank.code} for bank in banks]}


@router.get("/banks/{gateway}/resolve")
async def resolve_bank_account(
    gateway: str,
    account_number: str = Query(...),
    bank_code: str = Query(...),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    try:
        return await orchestrator.resolve_account(gateway, account_number, bank_code)
    except WalletLedgerError as e:
        raise _http_error(e)
