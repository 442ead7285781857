"""
Operations routes

Reconciliation report and webhook replay for the operations team. Requests
carry the shared ADMIN_API_KEY in the X-Admin-Key header; with no key
configured every request is refused.
"""

import hmac
import logging
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query

from config import Config
from services.payment_orchestrator import PaymentOrchestrator, get_payment_orchestrator
from utils.exceptions import WalletLedgerError

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin/monitoring", tags=["admin"])


def require_admin(x_admin_key: Optional[str] = Header(None, alias="X-Admin-Key")) -> None:
    expected = Config.ADMIN_API_KEY
    if not expected:
        logger.warning("🚫 ADMIN_DISABLED: ADMIN_API_KEY is not configured")
        raise HTTPException(status_code=403, detail="Admin endpoints are disabled")
    if not x_admin_key or not hmac.compare_digest(x_admin_key, expected):
        logger.warning("🚫 ADMIN_KEY_REJECTED")
        raise HTTPException(status_code=403, detail="Invalid admin key")


@router.post("/reconcile", dependencies=[Depends(require_admin)])
async def reconcile_virtual_accounts(
    days: int = Query(Config.RECONCILE_DEFAULT_DAYS, ge=1, le=90),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Virtual account credits, unresolved transfers and mismatched owners over the last `days` days"""
    try:
        report = await orchestrator.reconciler.reconcile(days=days)
    except WalletLedgerError as e:
        raise HTTPException(status_code=400, detail=e.message)
    logger.info(f"📊 ADMIN_RECONCILE: days={days}")
    return report.to_dict()


@router.post("/retry-failed", dependencies=[Depends(require_admin)])
async def retry_failed_webhooks(
    since: Optional[datetime] = Query(None),
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Replay webhook events left unresolved or failed"""
    report = await orchestrator.retry_unresolved(since=since)
    return report.to_dict()
