# app/x402/errors.py
"""Exception types raised by the x402 payment path."""


class X402Error(Exception):
    """Base class for x402 payment errors."""

    reason = "x402_error"


class RequirementsError(X402Error):
    """Payment requirements could not be constructed."""

    reason = "requirements_error"


class MissingResourceError(RequirementsError):
    """No resource URL was given directly or through a fallback config."""

    reason = "missing_resource"


class UnsupportedNetworkError(RequirementsError, ValueError):
    """The facilitator does not support the network under the exact scheme."""

    reason = "unsupported_network"


class PaymentProofError(X402Error):
    """The X-PAYMENT header or its embedded transaction could not be decoded."""

    reason = "invalid_payment_header"


class BroadcastError(X402Error):
    """The chain RPC refused or failed to accept a raw transaction."""

    reason = "broadcast_failed"
