# app/x402/facilitator.py
"""
Client for the external x402 facilitator.

Three endpoints are used:
- GET  /supported  - discover the fee payer for a (network, "exact") pair
- POST /verify     - check a payment proof against requirements
- POST /settle     - finalize a verified payment on-chain

Transport (request bodies, auth headers, the httpx client) is the x402 SDK's
``HTTPFacilitatorClient``. This module adds what the SDK leaves to callers:

verify() and settle() never raise: transport errors, non-2xx responses and
undecodable proofs come back as negative results carrying
``unexpected_verify_error`` / ``unexpected_settle_error``. The facilitator's
own verdicts pass through with their reasons parsed into ``Reason`` values,
and settle bodies that do not match the canonical shape are read from common
alternative keys.
"""
import logging
from dataclasses import dataclass
from typing import Any, Dict, Optional

import httpx
from pydantic import ValidationError
from starlette.concurrency import run_in_threadpool
from x402.http import FacilitatorConfig, HTTPFacilitatorClient
from x402.schemas import SettleResponse, VerifyResponse
from x402.schemas.v1 import PaymentRequirementsV1

from app.x402.constants import SCHEME_EXACT, X402_VERSION
from app.x402.errors import PaymentProofError, UnsupportedNetworkError
from app.x402.proof import decode_payment_header
from app.x402.reasons import KnownReason, Reason, parse_reason

logger = logging.getLogger(__name__)

DEFAULT_TIMEOUT_SECONDS = 10.0


@dataclass(frozen=True)
class VerifyResult:
    """Outcome of a /verify call."""
    is_valid: bool
    invalid_reason: Optional[Reason] = None
    payer: Optional[str] = None


@dataclass(frozen=True)
class SettleResult:
    """Outcome of a /settle call."""
    success: bool
    transaction: str = ""
    network: str = ""
    error_reason: Optional[Reason] = None
    payer: Optional[str] = None


class _LenientHTTPFacilitatorClient(HTTPFacilitatorClient):
    """SDK facilitator client that hands back /verify and /settle bodies unvalidated."""

    async def post_raw(
        self,
        path: str,
        payload: Dict[str, Any],
        requirements: Dict[str, Any],
    ) -> Any:
        headers = self._get_verify_headers() if path == "/verify" else self._get_settle_headers()
        response = await self._get_async_client().post(
            f"{self.url}{path}",
            headers=headers,
            json=self._build_request_body(X402_VERSION, payload, requirements),
        )
        if response.status_code != 200:
            raise ValueError(f"Facilitator {path} failed ({response.status_code}): {response.text}")
        return response.json()


def _normalize_verify_response(payload: Any) -> VerifyResult:
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected /verify response type: {type(payload).__name__}")

    response = VerifyResponse.model_validate(payload)
    return VerifyResult(
        is_valid=response.is_valid,
        invalid_reason=parse_reason(response.invalid_reason),
        payer=response.payer,
    )


def _normalize_settle_response(payload: Any, network: str) -> SettleResult:
    if not isinstance(payload, dict):
        raise ValueError(f"Unexpected /settle response type: {type(payload).__name__}")

    try:
        response = SettleResponse.model_validate(payload)
        return SettleResult(
            success=response.success,
            transaction=response.transaction or "",
            network=str(response.network),
            error_reason=parse_reason(response.error_reason),
            payer=response.payer,
        )
    except ValidationError:
        # Non-standard facilitator; try alternate key names
        logger.debug(f"x402: Non-canonical /settle response: {payload}")

    tx = (
        payload.get("transaction")
        or payload.get("transactionHash")
        or payload.get("txHash")
        or payload.get("signature")
    )
    error_reason = (
        payload.get("errorReason")
        or payload.get("error_reason")
        or payload.get("error")
    )
    return SettleResult(
        success=bool(payload.get("success", error_reason is None)),
        transaction=str(tx or ""),
        network=str(payload.get("network") or network),
        error_reason=parse_reason(error_reason),
        payer=payload.get("payer"),
    )


class FacilitatorClient:
    """
    Facilitator access for the payment handler.

    Args:
        base_url: Facilitator root URL
        timeout: Per-request timeout in seconds
        http_client: Optional ``httpx.AsyncClient`` for /verify and /settle
    """

    def __init__(
        self,
        base_url: str,
        timeout: float = DEFAULT_TIMEOUT_SECONDS,
        http_client: Optional[httpx.AsyncClient] = None,
    ):
        self.timeout = timeout
        self.transport = _LenientHTTPFacilitatorClient(FacilitatorConfig(
            url=str(base_url),
            timeout=timeout,
            http_client=http_client,
        ))

    @property
    def base_url(self) -> str:
        return self.transport.url

    async def get_fee_payer(self, network: str) -> str:
        """
        Look up the facilitator's fee payer for ``network`` under the exact scheme.

        Raises:
            UnsupportedNetworkError: If the facilitator cannot be reached, does
                not list the network, or lists it without a feePayer.
        """
        try:
            # The SDK's get_supported is synchronous
            supported = await run_in_threadpool(self.transport.get_supported)
        except (httpx.HTTPError, ValueError) as e:
            logger.error(f"x402: Facilitator /supported failed ({self.base_url}): {e}")
            raise UnsupportedNetworkError(
                f"Could not confirm facilitator support for network \"{network}\": {e}"
            ) from e

        for kind in supported.kinds:
            if kind.network == network and kind.scheme == SCHEME_EXACT:
                fee_payer = (kind.extra or {}).get("feePayer")
                if fee_payer:
                    return fee_payer

        raise UnsupportedNetworkError(
            f"Facilitator does not support network \"{network}\" with scheme "
            f"\"{SCHEME_EXACT}\" or feePayer not provided"
        )

    async def _post(self, path: str, payment_header: str, requirements: PaymentRequirementsV1) -> Any:
        proof = decode_payment_header(payment_header)
        return await self.transport.post_raw(
            path,
            proof.envelope,
            requirements.model_dump(by_alias=True, exclude_none=True),
        )

    async def verify(
        self,
        payment_header: str,
        requirements: PaymentRequirementsV1,
    ) -> VerifyResult:
        """POST the proof to /verify; failures become ``unexpected_verify_error``."""
        try:
            payload = await self._post("/verify", payment_header, requirements)
            return _normalize_verify_response(payload)
        except (PaymentProofError, httpx.HTTPError, ValueError) as e:
            logger.error(f"x402: Payment verification failed: {e}")
            return VerifyResult(
                is_valid=False,
                invalid_reason=KnownReason.UNEXPECTED_VERIFY_ERROR,
            )

    async def settle(
        self,
        payment_header: str,
        requirements: PaymentRequirementsV1,
    ) -> SettleResult:
        """POST the proof to /settle; failures become ``unexpected_settle_error``."""
        network = str(requirements.network)
        try:
            payload = await self._post("/settle", payment_header, requirements)
            return _normalize_settle_response(payload, network)
        except (PaymentProofError, httpx.HTTPError, ValueError) as e:
            logger.error(f"x402: Payment settlement failed: {e}")
            return SettleResult(
                success=False,
                transaction="",
                network=network,
                error_reason=KnownReason.UNEXPECTED_SETTLE_ERROR,
            )

    async def aclose(self) -> None:
        await self.transport.aclose()
