# app/x402/proof.py
"""
X-PAYMENT proof handling.

The proof is a base64-encoded JSON envelope. The gateway treats it as opaque
except for ``payload.transaction``, the base64-encoded signed Solana
transaction the client built against the payment requirements.
"""
import base64
import binascii
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, Mapping, Optional

from solders.transaction import VersionedTransaction
from x402.http import safe_base64_decode, safe_base64_encode

from app.x402.constants import X_PAYMENT_HEADER
from app.x402.errors import PaymentProofError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PaymentProof:
    """A decoded X-PAYMENT header."""
    header: str
    envelope: Dict[str, Any]

    @property
    def payer(self) -> Optional[str]:
        payer = self.envelope.get("payer")
        payload = self.envelope.get("payload")
        if payer is None and isinstance(payload, dict):
            payer = payload.get("payer")
        return payer

    @property
    def transaction_b64(self) -> Optional[str]:
        payload = self.envelope.get("payload")
        if not isinstance(payload, dict):
            return None
        return payload.get("transaction")

    def transaction_bytes(self) -> bytes:
        """Raw signed transaction bytes embedded in the proof."""
        tx_b64 = self.transaction_b64
        if not tx_b64:
            raise PaymentProofError("Payment payload has no transaction")
        try:
            return base64.b64decode(tx_b64, validate=True)
        except (binascii.Error, ValueError) as e:
            raise PaymentProofError(f"Transaction is not valid base64: {e}") from e

    def transaction(self) -> VersionedTransaction:
        """Deserialize the embedded transaction (legacy or v0 message)."""
        tx_bytes = self.transaction_bytes()
        try:
            return VersionedTransaction.from_bytes(tx_bytes)
        except Exception as e:
            raise PaymentProofError(f"Transaction could not be deserialized: {e}") from e


def extract_payment_header(headers: Mapping[str, Any]) -> Optional[str]:
    """
    Find the X-PAYMENT header value.

    Lookup is case-insensitive. Multi-valued headers (a list value, or
    Starlette ``Headers`` with repeated entries) yield their first value.
    Empty values count as absent.
    """
    getlist = getattr(headers, "getlist", None)
    if callable(getlist):
        values = getlist(X_PAYMENT_HEADER)
        return values[0] if values and values[0] else None

    wanted = X_PAYMENT_HEADER.lower()
    for name, value in headers.items():
        if name.lower() != wanted:
            continue
        if isinstance(value, (list, tuple)):
            value = value[0] if value else None
        return value or None
    return None


def decode_payment_header(header_value: str) -> PaymentProof:
    """
    Decode an X-PAYMENT header into a ``PaymentProof``.

    Raises:
        PaymentProofError: If the value is not base64-encoded JSON object.
    """
    try:
        decoded_str = safe_base64_decode(header_value)
        envelope = json.loads(decoded_str)
    except (binascii.Error, UnicodeDecodeError, ValueError) as e:
        logger.warning(f"x402: Failed to decode X-PAYMENT header: {e}")
        raise PaymentProofError(f"Invalid X-PAYMENT header: {e}") from e

    if not isinstance(envelope, dict):
        raise PaymentProofError("X-PAYMENT header must encode a JSON object")

    return PaymentProof(header=header_value, envelope=envelope)


def encode_payment_header(envelope: Dict[str, Any]) -> str:
    """Encode a payment envelope as an X-PAYMENT header value."""
    return safe_base64_encode(json.dumps(envelope))


def build_payment_envelope(
    transaction: bytes,
    network: str,
    payer: Optional[str] = None,
    x402_version: int = 1,
) -> Dict[str, Any]:
    """Assemble the exact-scheme envelope around signed transaction bytes."""
    envelope: Dict[str, Any] = {
        "x402Version": x402_version,
        "scheme": "exact",
        "network": network,
        "payload": {
            "transaction": base64.b64encode(transaction).decode("utf-8"),
        },
    }
    if payer is not None:
        envelope["payer"] = payer
    return envelope
