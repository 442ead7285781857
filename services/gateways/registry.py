"""Gateway adapter construction; one adapter instance (and token cache) per gateway"""

import logging
from typing import Any, Callable, Dict, Optional

from services.gateways.base import GatewayAdapter
from services.gateways.monnify_service import MonnifyService
from services.gateways.paystack_service import PaystackService

logger = logging.getLogger(__name__)


def build_gateway_adapters(
    clock: Optional[Callable[[], float]] = None,
    http_session_factory: Optional[Callable[..., Any]] = None,
) -> Dict[str, GatewayAdapter]:
    adapters: Dict[str, GatewayAdapter] = {
        PaystackService.name: PaystackService(http_session_factory=http_session_factory),
        MonnifyService.name: MonnifyService(clock=clock, http_session_factory=http_session_factory),
    }
    configured = [name for name, adapter in adapters.items() if adapter.is_configured()]
    logger.info(f"🔌 GATEWAYS: {len(configured)}/{len(adapters)} configured ({', '.join(configured) or 'none'})")
    return adapters
