# app/x402/confirmation.py
"""
Confirmation polling for broadcast transactions.

Each tick checks, in order: on-chain failure, confirmation, and blockhash
expiry. An expired blockhash gets one last status check before the
transaction is declared dropped. Running out of attempts is reported as
``TIMEOUT``, never as success.
"""
import asyncio
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Awaitable, Callable, Optional

from app.x402.broadcaster import ChainBroadcaster, SignatureStatus

logger = logging.getLogger(__name__)


class ConfirmationState(Enum):
    CONFIRMED = "confirmed"
    FAILED = "failed"
    EXPIRED = "expired"
    TIMEOUT = "timeout"


@dataclass(frozen=True)
class ConfirmationOutcome:
    state: ConfirmationState
    signature: str
    attempts: int
    error: Optional[str] = None

    @property
    def confirmed(self) -> bool:
        return self.state is ConfirmationState.CONFIRMED


@dataclass(frozen=True)
class RetryPolicy:
    """Bounded polling schedule: ``attempts`` ticks, ``interval_seconds`` apart."""
    attempts: int = 30
    interval_seconds: float = 1.0
    sleep: Callable[[float], Awaitable[None]] = field(default=asyncio.sleep, compare=False)

    def __post_init__(self):
        if self.attempts < 1:
            raise ValueError("attempts must be at least 1")
        if self.interval_seconds < 0:
            raise ValueError("interval_seconds must be non-negative")


class ConfirmationPoller:
    """Waits for a signature to reach confirmed/finalized commitment."""

    def __init__(self, broadcaster: ChainBroadcaster, policy: Optional[RetryPolicy] = None):
        self.broadcaster = broadcaster
        self.policy = policy or RetryPolicy()

    async def wait(self, signature: str, blockhash: Optional[str] = None) -> ConfirmationOutcome:
        """
        Poll until the transaction confirms, fails, expires or the budget runs out.

        RPC errors on a tick count as "no status yet"; this never raises.

        Args:
            signature: Transaction signature returned by the broadcast
            blockhash: Recent blockhash embedded in the transaction; expiry is
                not checked when omitted
        """
        for attempt in range(1, self.policy.attempts + 1):
            status = await self._query_status(signature)
            outcome = self._terminal_outcome(status, signature, attempt)
            if outcome is not None:
                return outcome

            if blockhash and await self._blockhash_expired(blockhash):
                logger.warning(f"x402: Blockhash expired for {signature}, final status check")
                status = await self._query_status(signature)
                outcome = self._terminal_outcome(status, signature, attempt)
                if outcome is not None:
                    return outcome
                return ConfirmationOutcome(
                    state=ConfirmationState.EXPIRED,
                    signature=signature,
                    attempts=attempt,
                    error="Transaction expired before confirmation",
                )

            if attempt < self.policy.attempts:
                await self.policy.sleep(self.policy.interval_seconds)

        logger.warning(f"x402: {signature} not confirmed after {self.policy.attempts} attempts")
        return ConfirmationOutcome(
            state=ConfirmationState.TIMEOUT,
            signature=signature,
            attempts=self.policy.attempts,
        )

    async def _query_status(self, signature: str) -> SignatureStatus:
        try:
            return await self.broadcaster.get_signature_status(signature)
        except Exception as e:
            logger.warning(f"x402: Signature status check for {signature} failed: {e}")
            return SignatureStatus()

    async def _blockhash_expired(self, blockhash: str) -> bool:
        try:
            return not await self.broadcaster.is_blockhash_valid(blockhash)
        except Exception as e:
            # Unknown validity; keep polling
            logger.warning(f"x402: Blockhash validity check failed: {e}")
            return False

    @staticmethod
    def _terminal_outcome(status: SignatureStatus, signature: str, attempt: int) -> Optional[ConfirmationOutcome]:
        if status.failed:
            logger.error(f"x402: Transaction {signature} failed on-chain: {status.err}")
            return ConfirmationOutcome(
                state=ConfirmationState.FAILED,
                signature=signature,
                attempts=attempt,
                error=status.err,
            )
        if status.confirmed:
            logger.info(f"x402: Transaction {signature} confirmed after {attempt} attempt(s)")
            return ConfirmationOutcome(
                state=ConfirmationState.CONFIRMED,
                signature=signature,
                attempts=attempt,
            )
        return None
