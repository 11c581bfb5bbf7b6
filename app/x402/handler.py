# app/x402/handler.py
"""
Payment handler: the framework-neutral x402 surface.

Combines the requirements builder with the facilitator client. Callers pass
in raw header mappings and get back plain values, so the same handler serves
a FastAPI route or any other HTTP layer.
"""
import logging
from typing import Any, Dict, Mapping, Optional

from x402.schemas import AssetAmount
from x402.schemas.v1 import PaymentRequirementsV1

from app.x402.constants import (
    X402_VERSION,
    TokenAsset,
    get_default_rpc_url,
    get_default_token_asset,
)
from app.x402.facilitator import (
    DEFAULT_TIMEOUT_SECONDS,
    FacilitatorClient,
    SettleResult,
    VerifyResult,
)
from app.x402.proof import extract_payment_header
from app.x402.requirements import (
    ResourceConfig,
    build_requirements,
    requirements_to_dict,
)

logger = logging.getLogger(__name__)


class PaymentHandler:
    """
    x402 payment handler for one network and treasury.

    Args:
        network: Network identifier ("solana" or "solana-devnet")
        treasury_address: Address that receives payments (payTo)
        facilitator_url: Base URL of the facilitator
        rpc_url: Chain RPC URL; defaults per network
        default_token: Token mint and decimals; defaults per network
        resource_config: Defaults for every requirements object built here
        facilitator_client: Injected client (tests); built from the URL otherwise
    """

    def __init__(
        self,
        network: str,
        treasury_address: str,
        facilitator_url: str,
        rpc_url: Optional[str] = None,
        default_token: Optional[TokenAsset] = None,
        resource_config: Optional[ResourceConfig] = None,
        facilitator_client: Optional[FacilitatorClient] = None,
        facilitator_timeout: Optional[float] = None,
    ):
        self.network = network
        self.treasury_address = treasury_address
        self.facilitator_url = str(facilitator_url)
        self.rpc_url = rpc_url or get_default_rpc_url(network)
        self.default_token = default_token or get_default_token_asset(network)
        self.resource_config = resource_config or ResourceConfig()

        if facilitator_client is None:
            facilitator_client = FacilitatorClient(
                self.facilitator_url,
                timeout=facilitator_timeout or DEFAULT_TIMEOUT_SECONDS,
            )
        self.facilitator_client = facilitator_client

    def extract_payment(self, headers: Mapping[str, Any]) -> Optional[str]:
        """Return the X-PAYMENT header value from any header mapping, or None."""
        return extract_payment_header(headers)

    def price(self, amount: str, asset: Optional[str] = None) -> AssetAmount:
        """Price in smallest units of ``asset`` (the default token if omitted)."""
        return AssetAmount(amount=amount, asset=asset or self.default_token["address"])

    async def create_payment_requirements(
        self,
        price: AssetAmount,
        resource_config: Optional[ResourceConfig] = None,
        resource: Optional[str] = None,
        network: Optional[str] = None,
    ) -> PaymentRequirementsV1:
        """
        Build payment requirements for ``price``.

        ``resource`` overrides the resource URL from either config.
        """
        if resource:
            base = resource_config or ResourceConfig()
            resource_config = ResourceConfig(
                resource=resource,
                description=base.description,
                mime_type=base.mime_type,
                max_timeout_seconds=base.max_timeout_seconds,
                output_schema=base.output_schema,
            )

        return await build_requirements(
            price=price,
            network=network or self.network,
            pay_to=self.treasury_address,
            fee_payer_lookup=self.facilitator_client.get_fee_payer,
            resource_config=resource_config,
            fallback_config=self.resource_config,
        )

    def create_402_response(
        self,
        requirements: PaymentRequirementsV1,
        error: str = "Payment required",
    ) -> Dict[str, Any]:
        """Status and body for an HTTP 402 Payment Required response."""
        return {
            "status": 402,
            "body": {
                "x402Version": X402_VERSION,
                "accepts": [requirements_to_dict(requirements)],
                "error": error,
            },
        }

    async def verify_payment(
        self,
        payment_header: str,
        requirements: PaymentRequirementsV1,
    ) -> VerifyResult:
        return await self.facilitator_client.verify(payment_header, requirements)

    async def settle_payment(
        self,
        payment_header: str,
        requirements: PaymentRequirementsV1,
    ) -> SettleResult:
        return await self.facilitator_client.settle(payment_header, requirements)

    async def aclose(self) -> None:
        """Release the facilitator client's HTTP connections."""
        await self.facilitator_client.aclose()
