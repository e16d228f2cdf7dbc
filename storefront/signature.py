"""
HMAC-SHA256 request signing for the MoMo wallet protocol.

MoMo signs a raw string of ``key=value`` pairs joined by ``&`` in a field
order fixed by its API documentation (not sorted, not URL-encoded). The same
signer is used for outbound create-payment requests and inbound IPN callbacks.
"""
import hashlib
import hmac
import logging
from typing import Any, Optional, Sequence, Tuple

from .exceptions import ConfigurationError

logger = logging.getLogger(__name__)

Fields = Sequence[Tuple[str, Any]]

CREATE_REQUEST_FIELDS = (
    "accessKey", "amount", "extraData", "ipnUrl", "orderId", "orderInfo",
    "partnerCode", "redirectUrl", "requestId", "requestType",
)

CALLBACK_FIELDS = (
    "accessKey", "amount", "extraData", "message", "orderId", "orderInfo",
    "orderType", "partnerCode", "payType", "requestId", "responseTime",
    "resultCode", "transId",
)


def render_value(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    return str(value)


def raw_signature(fields: Fields) -> str:
    """Build the ``k1=v1&k2=v2`` string in the given order."""
    return "&".join(f"{key}={render_value(value)}" for key, value in fields)


def ordered_fields(names: Sequence[str], values: dict) -> list:
    """Pick ``names`` out of ``values`` in protocol order; absent keys render empty."""
    return [(name, values.get(name)) for name in names]


class Signer:
    """
    Signs and verifies ordered field lists with a shared secret.

    Args:
        secret_key: Shared secret issued by the provider
    """

    def __init__(self, secret_key: str):
        if not secret_key:
            raise ConfigurationError("A signing secret is required")
        self._key = secret_key.encode("utf-8")

    def sign(self, fields: Fields) -> str:
        """
        Compute the lowercase hex HMAC-SHA256 of the raw signature string.

        Args:
            fields: Ordered (key, value) pairs

        Returns:
            Hex digest
        """
        message = raw_signature(fields).encode("utf-8")
        return hmac.new(self._key, message, hashlib.sha256).hexdigest()

    def verify(self, fields: Fields, provided_signature: Optional[str]) -> bool:
        """
        Check ``provided_signature`` against the signature of ``fields``.

        Uses a constant-time comparison. Never raises: malformed input yields
        False.
        """
        if not isinstance(provided_signature, str) or not provided_signature:
            return False
        try:
            expected = self.sign(fields)
            return hmac.compare_digest(expected, provided_signature)
        except (TypeError, ValueError) as e:
            logger.warning(f"Could not compute signature for verification: {e}")
            return False
