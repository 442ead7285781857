"""
Payment Gateway Webhook Handlers

Paystack and Monnify post payment and transfer notifications here. The raw body
is handed to the orchestrator untouched because signatures are computed over
the exact bytes the gateway sent.

Response contract:
    401 - signature missing or invalid (nothing recorded, nothing credited)
    400 - malformed payload
    503 - transient failure; the gateway should redeliver
    200 - everything else, including duplicates and unresolved accounts
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, Request

from config import Config
from services.payment_orchestrator import PaymentOrchestrator, get_payment_orchestrator
from utils.exceptions import GatewayUnavailable, SignatureInvalid, ValidationError, WalletNotActive

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/webhooks", tags=["webhooks"])


async def _process_webhook(gateway_id: str, request: Request, orchestrator: PaymentOrchestrator):
    signature = request.headers.get(Config.WEBHOOK_SIGNATURE_HEADERS[gateway_id])
    raw_body = await request.body()
    try:
        outcome = await orchestrator.handle_webhook(gateway_id, signature, raw_body)
    except SignatureInvalid:
        logger.warning(f"🚫 WEBHOOK_SIGNATURE_REJECTED: {gateway_id} from {request.client.host if request.client else 'unknown'}")
        raise HTTPException(status_code=401, detail="Invalid signature")
    except ValidationError as e:
        logger.warning(f"⚠️ WEBHOOK_INVALID_PAYLOAD: {gateway_id}: {e.message}")
        raise HTTPException(status_code=400, detail=e.message)
    except WalletNotActive as e:
        # Acknowledged so the gateway stops retrying; the event ledger keeps the failure
        logger.error(f"❌ WEBHOOK_WALLET_NOT_ACTIVE: {gateway_id}: {e.message}")
        return {"status": "failed", "message": e.message}
    except GatewayUnavailable as e:
        logger.error(f"❌ WEBHOOK_RETRYABLE: {gateway_id}: {e.message}")
        raise HTTPException(status_code=503, detail="Temporarily unavailable")
    except Exception as e:
        logger.error(f"❌ WEBHOOK_ERROR: {gateway_id}: {type(e).__name__}: {e}", exc_info=True)
        raise HTTPException(status_code=503, detail="Temporarily unavailable")

    return outcome.to_dict()


@router.post("/paystack")
async def paystack_webhook(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Paystack charge.success / charge.failed notifications"""
    return await _process_webhook("paystack", request, orchestrator)


@router.post("/monnify")
async def monnify_webhook(
    request: Request,
    orchestrator: PaymentOrchestrator = Depends(get_payment_orchestrator),
):
    """Monnify checkout and reserved-account transfer notifications"""
    return await _process_webhook("monnify", request, orchestrator)
