# app/x402/requirements.py
"""
Payment requirements construction.

Builds the canonical exact-scheme requirements object a client signs against
and the facilitator verifies against. Amounts are already in the asset's
smallest unit here; ``to_smallest_unit`` is the conversion helper callers use
beforehand.
"""
import logging
from dataclasses import dataclass, field
from decimal import ROUND_FLOOR, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Union

from x402.schemas import AssetAmount
from x402.schemas.v1 import PaymentRequirementsV1

from app.x402.constants import (
    DEFAULT_DESCRIPTION,
    DEFAULT_MAX_TIMEOUT_SECONDS,
    DEFAULT_MIME_TYPE,
    SCHEME_EXACT,
)
from app.x402.errors import MissingResourceError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ResourceConfig:
    """What is being sold: where it lives and how to describe it."""
    resource: Optional[str] = None
    description: Optional[str] = None
    mime_type: Optional[str] = None
    max_timeout_seconds: Optional[int] = None
    output_schema: Dict[str, Any] = field(default_factory=dict)


def to_smallest_unit(amount: Union[str, int, float, Decimal], decimals: int) -> str:
    """
    Convert a human decimal amount to the token's smallest unit.

    Returns ``floor(amount * 10**decimals)`` as a decimal string.

    Raises:
        ValueError: If the amount is not a finite number.
    """
    if isinstance(amount, bool):
        raise ValueError(f"Invalid amount: {amount!r}")
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValueError(f"Invalid amount: {amount!r}") from e
    if not value.is_finite():
        raise ValueError(f"Invalid amount: {amount!r}")

    scaled = (value * (Decimal(10) ** decimals)).to_integral_value(rounding=ROUND_FLOOR)
    return str(int(scaled))


def _validate_amount(amount: str) -> None:
    if not isinstance(amount, str) or not (amount.isascii() and amount.isdigit()):
        raise ValueError(
            f"price.amount must be a non-negative integer string in the asset's smallest unit, got {amount!r}"
        )


def merge_resource_config(
    resource_config: Optional[ResourceConfig],
    fallback_config: Optional[ResourceConfig],
) -> ResourceConfig:
    """Fill unset fields of ``resource_config`` from ``fallback_config``."""
    primary = resource_config or ResourceConfig()
    fallback = fallback_config or ResourceConfig()
    return ResourceConfig(
        resource=primary.resource or fallback.resource,
        description=primary.description or fallback.description,
        mime_type=primary.mime_type or fallback.mime_type,
        max_timeout_seconds=primary.max_timeout_seconds or fallback.max_timeout_seconds,
        output_schema=primary.output_schema or fallback.output_schema,
    )


async def build_requirements(
    price: AssetAmount,
    network: str,
    pay_to: str,
    fee_payer_lookup,
    resource_config: Optional[ResourceConfig] = None,
    fallback_config: Optional[ResourceConfig] = None,
) -> PaymentRequirementsV1:
    """
    Build exact-scheme payment requirements.

    Args:
        price: Amount in smallest units plus the token mint address
        network: Network identifier (e.g. "solana")
        pay_to: Treasury address receiving the payment
        fee_payer_lookup: Async callable ``(network) -> fee payer address``,
            normally ``FacilitatorClient.get_fee_payer``
        resource_config: Per-request resource settings
        fallback_config: Defaults used where ``resource_config`` is silent

    Returns:
        Fully populated PaymentRequirementsV1

    Raises:
        MissingResourceError: If neither config provides a resource URL
        UnsupportedNetworkError: If the facilitator does not support the network
        ValueError: If the price amount is malformed
    """
    _validate_amount(price.amount)

    config = merge_resource_config(resource_config, fallback_config)
    if not config.resource:
        raise MissingResourceError(
            "resource is required: provide it in the resource config or the fallback config"
        )

    fee_payer = await fee_payer_lookup(network)

    return PaymentRequirementsV1(
        scheme=SCHEME_EXACT,
        network=network,
        max_amount_required=price.amount,
        resource=config.resource,
        description=config.description or DEFAULT_DESCRIPTION,
        mime_type=config.mime_type or DEFAULT_MIME_TYPE,
        pay_to=pay_to,
        max_timeout_seconds=config.max_timeout_seconds or DEFAULT_MAX_TIMEOUT_SECONDS,
        asset=price.asset,
        output_schema=dict(config.output_schema),
        extra={"feePayer": fee_payer},
    )


def requirements_to_dict(requirements: PaymentRequirementsV1) -> Dict[str, Any]:
    """Wire (camelCase) form of the requirements."""
    return requirements.model_dump(by_alias=True)
