# app/x402/handshake.py
"""
The x402 handshake for one paid resource.

Flow:
1. Validate the requested amount (400 before any facilitator call)
2. Build payment requirements for it
3. No X-PAYMENT header -> 402 with the requirements
4. Verify the proof with the facilitator; a rejection for a reason in the
   verify bypass set falls back to the structural acceptance policy
5. Settle with the facilitator (skipped when verification was bypassed and
   configured so); a failure for a reason in the settle bypass set falls
   back to broadcasting the signed transaction directly and polling for
   confirmation
6. Issue a session token on success (200 + X-PAYMENT-RESPONSE header)

A payment granted without facilitator settlement is claimed in the session
store first, so replaying the same X-PAYMENT header is refused.

The endpoint returns ``HandshakeResponse`` values and knows nothing about the
web framework; ``app/api/endpoints/payment.py`` adapts it to FastAPI.
"""
import hashlib
import logging
from dataclasses import dataclass, field
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, FrozenSet, Mapping, Optional, Tuple

from x402.schemas.v1 import PaymentRequirementsV1

from app.x402 import audit
from app.x402.acceptance import (
    AcceptanceDecision,
    StructuralAcceptancePolicy,
    create_acceptance_policy,
)
from app.x402.broadcaster import ChainBroadcaster, SolanaBroadcaster
from app.x402.confirmation import (
    ConfirmationPoller,
    ConfirmationState,
    RetryPolicy,
)
from app.x402.constants import X_PAYMENT_RESPONSE_HEADER
from app.x402.errors import BroadcastError, PaymentProofError, RequirementsError
from app.x402.facilitator import SettleResult, VerifyResult
from app.x402.handler import PaymentHandler
from app.x402.proof import PaymentProof, decode_payment_header
from app.x402.reasons import (
    DEFAULT_SETTLE_BYPASS_REASONS,
    DEFAULT_VERIFY_BYPASS_REASONS,
    KnownReason,
    is_bypassable,
    reason_value,
)
from app.x402.requirements import ResourceConfig, to_smallest_unit
from app.x402.sessions import SessionStore, mint_session_token

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class HandshakeResponse:
    status_code: int
    body: Dict[str, Any]
    headers: Dict[str, str] = field(default_factory=dict)


@dataclass(frozen=True)
class HandshakeConfig:
    """Per-deployment handshake behavior."""
    resource_url: str
    description: str = "Payment required"
    decimals: int = 6
    max_timeout_seconds: Optional[int] = None
    verify_bypass_reasons: FrozenSet[KnownReason] = DEFAULT_VERIFY_BYPASS_REASONS
    settle_bypass_reasons: FrozenSet[KnownReason] = DEFAULT_SETTLE_BYPASS_REASONS
    fallback_broadcast_enabled: bool = True
    skip_facilitator_on_bypass: bool = True


@dataclass
class _Attempt:
    """State carried through one handshake."""
    request_id: str
    client_ip: Optional[str]
    requirements: PaymentRequirementsV1
    payment_header: str
    proof: Optional[PaymentProof] = None
    payer: Optional[str] = None
    bypassed: bool = False


def parse_amount(raw: Any, decimals: int) -> Optional[str]:
    """
    Requested amount in smallest token units, or None if it is unusable.

    Rejects missing, boolean, non-numeric, non-finite and non-positive values,
    and amounts too small to be represented in ``decimals`` places.
    """
    if raw is None or isinstance(raw, bool) or not isinstance(raw, (int, float, str)):
        return None
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return None
    if not value.is_finite() or value <= 0:
        return None

    try:
        token_amount = to_smallest_unit(value, decimals)
    except (ArithmeticError, ValueError):
        return None
    if token_amount == "0":
        return None
    return token_amount


def _error(status_code: int, error: str, reason: Optional[str], **extra: Any) -> HandshakeResponse:
    body: Dict[str, Any] = {"error": error, "reason": reason}
    body.update({key: value for key, value in extra.items() if value is not None})
    return HandshakeResponse(status_code=status_code, body=body)


def _payment_key(attempt: _Attempt) -> str:
    """Identity of a payment: digest of its signed transaction, else of the raw header."""
    material = attempt.payment_header.encode()
    if attempt.proof is not None:
        try:
            material = attempt.proof.transaction_bytes()
        except PaymentProofError:
            logger.debug("x402: No decodable transaction, keying payment on the header")
    return hashlib.sha256(material).hexdigest()


class HandshakeEndpoint:
    """
    Drives the 402 handshake for one protected resource.

    Args:
        handler: Requirements + facilitator access
        session_store: Where issued session tokens are registered
        acceptance_policy: Local check used when verification is bypassed
        config: Resource URL, bypass sets and fallback toggles
        broadcaster: Chain access for the fallback broadcast; None disables it
        retry_policy: Confirmation polling schedule
    """

    def __init__(
        self,
        handler: PaymentHandler,
        session_store: SessionStore,
        acceptance_policy: StructuralAcceptancePolicy,
        config: HandshakeConfig,
        broadcaster: Optional[ChainBroadcaster] = None,
        retry_policy: Optional[RetryPolicy] = None,
    ):
        self.handler = handler
        self.session_store = session_store
        self.acceptance_policy = acceptance_policy
        self.config = config
        self.broadcaster = broadcaster
        self.retry_policy = retry_policy or RetryPolicy()

    async def handle(
        self,
        payload: Any,
        headers: Mapping[str, Any],
        client_ip: Optional[str] = None,
    ) -> HandshakeResponse:
        """Run one handshake. Unexpected faults become a 500 with no session issued."""
        request_id = audit.generate_request_id()
        try:
            return await self._handle(payload, headers, client_ip, request_id)
        except Exception as e:
            logger.exception(f"x402: Unexpected error in payment handshake [{request_id}]: {e}")
            audit.log_error(client_ip, type(e).__name__, str(e), request_id=request_id)
            return _error(500, "Internal server error", "internal_error")

    async def _handle(
        self,
        payload: Any,
        headers: Mapping[str, Any],
        client_ip: Optional[str],
        request_id: str,
    ) -> HandshakeResponse:
        raw_amount = payload.get("amount") if isinstance(payload, dict) else None
        token_amount = parse_amount(raw_amount, self.config.decimals)
        if token_amount is None:
            logger.info(f"x402: Rejecting invalid amount {raw_amount!r}")
            return _error(400, "Invalid amount", "invalid_amount")

        payment_header = self.handler.extract_payment(headers)
        logger.info(
            f"x402: Payment request for {token_amount} units, "
            f"payment header {'present' if payment_header else 'absent'}"
        )

        try:
            requirements = await self.handler.create_payment_requirements(
                self.handler.price(token_amount),
                ResourceConfig(
                    resource=self.config.resource_url,
                    description=self.config.description,
                    max_timeout_seconds=self.config.max_timeout_seconds,
                ),
            )
        except RequirementsError as e:
            logger.error(f"x402: Cannot build payment requirements: {e}")
            audit.log_payment_failed(client_ip, e.reason, "requirements", request_id=request_id)
            return _error(500, "Payment requirements unavailable", e.reason, detail=str(e))

        if not payment_header:
            logger.info(f"x402: No X-PAYMENT header, returning 402 for {token_amount} units")
            audit.log_payment_required_sent(
                client_ip, token_amount, str(requirements.network), requirements.resource,
                request_id=request_id,
            )
            response = self.handler.create_402_response(requirements)
            return HandshakeResponse(status_code=response["status"], body=response["body"])

        attempt = _Attempt(
            request_id=request_id,
            client_ip=client_ip,
            requirements=requirements,
            payment_header=payment_header,
        )
        try:
            attempt.proof = decode_payment_header(payment_header)
            attempt.payer = attempt.proof.payer
        except PaymentProofError:
            # The facilitator gets the raw header regardless and reports on it
            attempt.proof = None

        rejection = await self._verify(attempt)
        if rejection is not None:
            return rejection

        session_token = mint_session_token()
        return await self._settle(attempt, session_token)

    async def _verify(self, attempt: _Attempt) -> Optional[HandshakeResponse]:
        """Returns a rejection response, or None when the payment is accepted."""
        verified: VerifyResult = await self.handler.verify_payment(
            attempt.payment_header, attempt.requirements
        )
        attempt.payer = attempt.payer or verified.payer
        reason = reason_value(verified.invalid_reason)
        audit.log_payment_verified(
            attempt.client_ip, attempt.payer, verified.is_valid, reason,
            request_id=attempt.request_id,
        )

        if verified.is_valid:
            logger.info("x402: Payment verified by facilitator")
            return None

        if not is_bypassable(verified.invalid_reason, self.config.verify_bypass_reasons):
            logger.warning(f"x402: Payment verification failed: {reason}")
            audit.log_payment_failed(
                attempt.client_ip, reason or "unknown", "verify",
                payer=attempt.payer, request_id=attempt.request_id,
            )
            return _error(402, "Invalid payment", reason)

        decision = self._structural_check(attempt)
        if not decision.accepted:
            logger.warning(f"x402: Bypass refused for {reason}: {decision.detail}")
            audit.log_payment_failed(
                attempt.client_ip, reason, "structural_check",
                payer=attempt.payer, request_id=attempt.request_id,
            )
            return _error(402, "Invalid payment", reason, detail=decision.detail)

        logger.warning(f"x402: Facilitator rejected with {reason}, accepted locally: {decision.detail}")
        audit.log_verification_bypassed(
            attempt.client_ip, attempt.payer, reason, self.acceptance_policy.name,
            decision.detail, request_id=attempt.request_id,
        )
        attempt.bypassed = True
        return None

    def _structural_check(self, attempt: _Attempt) -> AcceptanceDecision:
        if attempt.proof is None:
            return AcceptanceDecision(False, "payment header could not be decoded")
        try:
            transaction = attempt.proof.transaction()
        except PaymentProofError as e:
            return AcceptanceDecision(False, str(e))
        return self.acceptance_policy.evaluate(transaction, attempt.requirements)

    async def _settle(self, attempt: _Attempt, session_token: str) -> HandshakeResponse:
        network = str(attempt.requirements.network)
        if attempt.bypassed and self.config.skip_facilitator_on_bypass:
            logger.info("x402: Verification was bypassed, not settling through the facilitator")
            settled = SettleResult(
                success=False,
                transaction="",
                network=network,
                error_reason=KnownReason.SETTLEMENT_SKIPPED,
            )
        else:
            settled = await self.handler.settle_payment(attempt.payment_header, attempt.requirements)

        reason = reason_value(settled.error_reason)
        audit.log_payment_settled(
            attempt.client_ip, attempt.payer, settled.transaction, network,
            settled.success, reason, request_id=attempt.request_id,
        )

        if settled.success:
            logger.info(f"x402: Payment settled by facilitator: {settled.transaction}")
            return self._grant(
                attempt, session_token, "Payment successful",
                transaction=settled.transaction, confirmed=True,
            )

        if not is_bypassable(settled.error_reason, self.config.settle_bypass_reasons):
            logger.warning(f"x402: Payment settlement failed: {reason}")
            audit.log_payment_failed(
                attempt.client_ip, reason or "unknown", "settle",
                payer=attempt.payer, request_id=attempt.request_id,
            )
            return _error(402, "Payment settlement failed", reason)

        # From here the facilitator has not settled; one grant per payment
        payment_key = _payment_key(attempt)
        if not self.session_store.claim_payment(payment_key):
            logger.warning(f"x402: Payment {payment_key[:16]} already used, refusing replay")
            audit.log_payment_failed(
                attempt.client_ip, "payment_already_used", "settle",
                payer=attempt.payer, request_id=attempt.request_id,
            )
            return _error(402, "Payment already used", "payment_already_used")

        if not self.config.fallback_broadcast_enabled or self.broadcaster is None:
            logger.warning(f"x402: Settlement failed with {reason}, accepting without broadcast")
            return self._grant(
                attempt, session_token, "Payment accepted without on-chain confirmation",
                transaction="", confirmed=False, settlement="unconfirmed",
            )

        logger.warning(f"x402: Settlement failed with {reason}, broadcasting transaction directly")
        granted = False
        try:
            response = await self._fallback_broadcast(attempt, session_token)
            granted = response.status_code == 200
            return response
        finally:
            if not granted:
                self.session_store.release_payment(payment_key)

    async def _fallback_broadcast(self, attempt: _Attempt, session_token: str) -> HandshakeResponse:
        try:
            if attempt.proof is None:
                raise PaymentProofError("payment header could not be decoded")
            tx_bytes = attempt.proof.transaction_bytes()
            blockhash = str(attempt.proof.transaction().message.recent_blockhash)
        except PaymentProofError as e:
            logger.error(f"x402: Cannot broadcast payment transaction: {e}")
            audit.log_payment_failed(
                attempt.client_ip, "invalid_transaction", "broadcast",
                payer=attempt.payer, request_id=attempt.request_id,
            )
            return _error(402, "Payment broadcast failed", "invalid_transaction", detail=str(e))

        try:
            signature = await self.broadcaster.send_raw_transaction(tx_bytes)
        except BroadcastError as e:
            audit.log_fallback_broadcast(
                attempt.client_ip, attempt.payer, None, "rejected", str(e),
                request_id=attempt.request_id,
            )
            return _error(402, "Payment broadcast failed", e.reason, detail=str(e))

        outcome = await ConfirmationPoller(self.broadcaster, self.retry_policy).wait(signature, blockhash)
        audit.log_fallback_broadcast(
            attempt.client_ip, attempt.payer, signature, outcome.state.value, outcome.error,
            request_id=attempt.request_id,
        )

        if outcome.state is ConfirmationState.CONFIRMED:
            return self._grant(
                attempt, session_token, "Payment confirmed on-chain",
                transaction=signature, confirmed=True, signature=signature,
            )
        if outcome.state is ConfirmationState.FAILED:
            return _error(
                400, "Transaction failed on-chain", "transaction_failed",
                details=outcome.error, signature=signature,
            )
        if outcome.state is ConfirmationState.EXPIRED:
            return _error(
                400, "Transaction expired", "blockhash_expired",
                signature=signature,
                message="The transaction's blockhash expired before it was confirmed",
            )
        return _error(
            400, "Transaction not confirmed", "not_confirmed",
            signature=signature,
            message=f"Not confirmed after {outcome.attempts} checks; look up the signature to verify",
        )

    def _grant(
        self,
        attempt: _Attempt,
        session_token: str,
        message: str,
        transaction: str,
        confirmed: bool,
        **extra: Any,
    ) -> HandshakeResponse:
        self.session_store.put(session_token, {
            "payer": attempt.payer,
            "transaction": transaction,
            "confirmed": confirmed,
            "resource": attempt.requirements.resource,
            "amount": attempt.requirements.max_amount_required,
        })
        audit.log_session_issued(
            attempt.client_ip, attempt.payer, transaction, confirmed,
            request_id=attempt.request_id,
        )

        body: Dict[str, Any] = {
            "success": True,
            "message": message,
            "sessionToken": session_token,
            "transaction": transaction,
        }
        body.update(extra)
        return HandshakeResponse(
            status_code=200,
            body=body,
            headers={X_PAYMENT_RESPONSE_HEADER: session_token},
        )


def create_handshake_endpoint(
    config_settings: Any,
    session_store: SessionStore,
    facilitator_client: Optional[Any] = None,
    broadcaster: Optional[ChainBroadcaster] = None,
) -> Tuple[HandshakeEndpoint, Optional[ChainBroadcaster]]:
    """
    Wire a HandshakeEndpoint from application settings.

    Returns the endpoint and the broadcaster it owns (None when the fallback
    broadcast is disabled) so the caller can close it at shutdown.
    """
    network = config_settings.X402_NETWORK
    default_token = None
    if config_settings.X402_ASSET_ADDRESS:
        default_token = {
            "address": config_settings.X402_ASSET_ADDRESS,
            "decimals": config_settings.X402_ASSET_DECIMALS,
        }

    handler = PaymentHandler(
        network=network,
        treasury_address=config_settings.X402_TREASURY_ADDRESS,
        facilitator_url=str(config_settings.X402_FACILITATOR_URL),
        rpc_url=config_settings.SOLANA_RPC_URL,
        default_token=default_token,
        facilitator_client=facilitator_client,
        facilitator_timeout=config_settings.X402_FACILITATOR_TIMEOUT_SECONDS,
    )

    if broadcaster is None and config_settings.X402_FALLBACK_BROADCAST_ENABLED:
        broadcaster = SolanaBroadcaster(
            handler.rpc_url,
            max_retries=config_settings.X402_BROADCAST_MAX_RETRIES,
        )

    resource_url = (
        config_settings.X402_PUBLIC_BASE_URL.rstrip("/") + config_settings.X402_RESOURCE_PATH
    )
    endpoint = HandshakeEndpoint(
        handler=handler,
        session_store=session_store,
        acceptance_policy=create_acceptance_policy(
            config_settings.X402_ACCEPTANCE_POLICY,
            config_settings.X402_MIN_INSTRUCTIONS,
        ),
        config=HandshakeConfig(
            resource_url=resource_url,
            description=config_settings.X402_RESOURCE_DESCRIPTION,
            decimals=handler.default_token["decimals"],
            max_timeout_seconds=config_settings.X402_MAX_TIMEOUT_SECONDS,
            fallback_broadcast_enabled=config_settings.X402_FALLBACK_BROADCAST_ENABLED,
            skip_facilitator_on_bypass=config_settings.X402_SKIP_FACILITATOR_ON_BYPASS,
        ),
        broadcaster=broadcaster,
        retry_policy=RetryPolicy(
            attempts=config_settings.X402_CONFIRM_ATTEMPTS,
            interval_seconds=config_settings.X402_CONFIRM_INTERVAL_SECONDS,
        ),
    )
    return endpoint, broadcaster
