# app/api/endpoints/payment.py
from fastapi import APIRouter, Depends, Request
from fastapi.responses import JSONResponse
from json import JSONDecodeError
from typing import Any
import logging

from app.api.models.payment import (
    PaymentErrorResponse,
    PaymentRequest,
    PaymentRequiredResponse,
    PaymentSuccessResponse,
    SessionStatusResponse,
)
from app.x402.constants import X_PAYMENT_RESPONSE_HEADER
from app.x402.handshake import HandshakeEndpoint
from app.x402.sessions import SessionStore

logger = logging.getLogger(__name__)

router = APIRouter()


def get_handshake_endpoint(request: Request) -> HandshakeEndpoint:
    """The endpoint wired at application startup."""
    return request.app.state.handshake


def get_session_store(request: Request) -> SessionStore:
    return request.app.state.session_store


def get_client_ip(request: Request) -> str:
    """Extract client IP from request, handling proxies."""
    forwarded_for = request.headers.get("X-Forwarded-For")
    if forwarded_for:
        # Take the first IP in the chain
        return forwarded_for.split(",")[0].strip()

    real_ip = request.headers.get("X-Real-IP")
    if real_ip:
        return real_ip.strip()

    if request.client:
        return request.client.host

    return "unknown"


@router.post(
    "/payment",
    response_model=PaymentSuccessResponse,
    summary="Pay for the protected resource",
    openapi_extra={
        "requestBody": {
            "content": {"application/json": {"schema": PaymentRequest.model_json_schema()}},
        }
    },
    responses={
        400: {"model": PaymentErrorResponse, "description": "Invalid amount or on-chain failure"},
        402: {"model": PaymentRequiredResponse, "description": "Payment required or rejected"},
        500: {"model": PaymentErrorResponse, "description": "Requirements unavailable or internal error"},
    },
)
async def create_payment(
    request: Request,
    handshake: HandshakeEndpoint = Depends(get_handshake_endpoint),
) -> Any:
    """
    Run the x402 handshake for the requested amount.

    Without an X-PAYMENT header this returns 402 with the payment requirements.
    With one, the payment is verified and settled (or broadcast directly when
    the facilitator cannot settle it) and a session token is returned in the
    body and the X-PAYMENT-RESPONSE header.
    """
    try:
        payload = await request.json()
    except (JSONDecodeError, UnicodeDecodeError):
        # A missing or malformed body is an invalid amount, not a schema error
        payload = {}

    response = await handshake.handle(
        payload,
        request.headers,
        client_ip=get_client_ip(request),
    )
    logger.info(f"x402: Payment handshake finished with {response.status_code}")
    return JSONResponse(
        status_code=response.status_code,
        content=response.body,
        headers=response.headers or None,
    )


@router.get(
    "/payment/session",
    response_model=SessionStatusResponse,
    response_model_exclude_none=True,
    summary="Check a session token",
)
async def get_session_status(
    request: Request,
    session_store: SessionStore = Depends(get_session_store),
) -> SessionStatusResponse:
    """
    Report whether the token in the X-PAYMENT-RESPONSE header was issued by
    this gateway and is still live, with the payment it was granted for.
    """
    token = request.headers.get(X_PAYMENT_RESPONSE_HEADER)
    metadata = session_store.get_metadata(token) if token else None
    if metadata is None:
        return SessionStatusResponse(valid=False)
    return SessionStatusResponse(
        valid=True,
        transaction=metadata.get("transaction"),
        confirmed=metadata.get("confirmed"),
        amount=metadata.get("amount"),
    )
