# app/api/models/payment.py
from pydantic import BaseModel, Field
from typing import Any, Dict, List, Optional, Union


class PaymentRequest(BaseModel):
    """
    Request body for the payment endpoint.

    The amount is a human decimal in the token's display units (e.g. 1.5 USDC).
    It is validated by the handshake itself so that a bad amount is reported
    as 400 with reason ``invalid_amount`` rather than a schema error.
    """
    amount: Optional[Union[float, str]] = Field(
        default=None,
        description="Amount to pay in display units of the token",
        examples=[1.5],
    )


class PaymentSuccessResponse(BaseModel):
    """
    Response model for a granted payment.

    The session token is also returned in the X-PAYMENT-RESPONSE header.
    """
    success: bool = True
    message: str
    sessionToken: str
    transaction: str = Field(description="Settlement transaction or broadcast signature; empty when unconfirmed")
    signature: Optional[str] = Field(default=None, description="Set when the payment was broadcast directly")
    settlement: Optional[str] = Field(default=None, description="'unconfirmed' when accepted without confirmation")


class PaymentRequiredResponse(BaseModel):
    """
    Response model for HTTP 402 Payment Required (x402 version 1).
    """
    x402Version: int
    accepts: List[Dict[str, Any]]
    error: str


class PaymentErrorResponse(BaseModel):
    """
    Response model for a rejected or failed payment.
    """
    error: str
    reason: Optional[str] = None
    detail: Optional[str] = None
    details: Optional[str] = None
    signature: Optional[str] = None
    message: Optional[str] = None


class SessionStatusResponse(BaseModel):
    valid: bool
    transaction: Optional[str] = None
    confirmed: Optional[bool] = None
    amount: Optional[str] = Field(default=None, description="Amount paid in smallest token units")


class HealthResponse(BaseModel):
    status: str
    timestamp: str
