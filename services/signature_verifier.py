"""
Webhook Signature Verification

HMAC over the exact bytes received on the wire. Never re-serialize a parsed body
before hashing: key order and whitespace differ between serializers and a
re-encoded body will not match the gateway's signature.
"""

import hashlib
import hmac
import logging
from dataclasses import dataclass
from typing import Callable, Dict, Mapping, Optional, Tuple

from config import Config
from utils.exceptions import SignatureInvalid

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SigningScheme:
    """How a gateway signs its webhooks"""
    digestmod: Callable = hashlib.sha512
    prefixes: Tuple[str, ...] = ("sha512=",)


# Paystack signs with the secret key, Monnify with the client secret; both HMAC-SHA512 hex
SIGNING_SCHEMES: Dict[str, SigningScheme] = {
    "paystack": SigningScheme(),
    "monnify": SigningScheme(),
}


class SignatureVerifier:
    """Fail-closed webhook signature checks, one shared secret per gateway"""

    def __init__(
        self,
        secrets: Optional[Mapping[str, Optional[str]]] = None,
        schemes: Optional[Mapping[str, SigningScheme]] = None,
    ):
        # Without explicit secrets, read them from Config at call time
        self._secrets = dict(secrets) if secrets is not None else None
        self._schemes = dict(schemes or SIGNING_SCHEMES)

    def _secret_for(self, gateway_id: str) -> Optional[str]:
        if self._secrets is not None:
            return self._secrets.get(gateway_id)
        return Config.webhook_secret(gateway_id)

    @staticmethod
    def _normalize_signature(signature_header: str, prefixes: Tuple[str, ...]) -> str:
        signature = signature_header.strip()
        for prefix in prefixes:
            if signature.lower().startswith(prefix):
                signature = signature[len(prefix):]
                break
        return signature.strip().lower()

    def compute_signature(self, gateway_id: str, raw_body: bytes) -> str:
        """Expected hex signature for a body; raises SignatureInvalid when the gateway has no secret"""
        scheme = self._schemes.get(gateway_id)
        secret = self._secret_for(gateway_id)
        if scheme is None or not secret:
            raise SignatureInvalid(f"No webhook secret configured for {gateway_id}")
        return hmac.new(secret.encode("utf-8"), raw_body, scheme.digestmod).hexdigest()

    def verify(self, gateway_id: str, signature_header: Optional[str], raw_body: bytes) -> bool:
        """
        Validate a webhook signature.

        Args:
            gateway_id: Gateway that sent the webhook
            signature_header: Value of the gateway's signature header
            raw_body: Request body exactly as received

        Returns:
            True only when a secret is configured, a signature is present and it matches
        """
        scheme = self._schemes.get(gateway_id)
        if scheme is None:
            logger.error(f"❌ WEBHOOK_SECURITY: unknown gateway '{gateway_id}'")
            return False

        secret = self._secret_for(gateway_id)
        if not secret:
            logger.error(f"❌ WEBHOOK_SECURITY: no webhook secret configured for {gateway_id}")
            return False

        if not signature_header:
            logger.warning(f"⚠️ WEBHOOK_SECURITY: {gateway_id} webhook without signature header")
            return False

        if not isinstance(raw_body, (bytes, bytearray)):
            logger.error(f"❌ WEBHOOK_SECURITY: {gateway_id} body must be raw bytes, got {type(raw_body).__name__}")
            return False

        expected = hmac.new(secret.encode("utf-8"), bytes(raw_body), scheme.digestmod).hexdigest()
        provided = self._normalize_signature(signature_header, scheme.prefixes)

        if hmac.compare_digest(expected.encode("ascii"), provided.encode("utf-8")):
            logger.info(f"✅ WEBHOOK_SECURITY: {gateway_id} signature verified")
            return True

        logger.critical(f"🚨 WEBHOOK_SECURITY: {gateway_id} signature verification FAILED")
        return False

    def verify_or_raise(self, gateway_id: str, signature_header: Optional[str], raw_body: bytes) -> None:
        if not self.verify(gateway_id, signature_header, raw_body):
            raise SignatureInvalid(f"Invalid webhook signature for {gateway_id}")
