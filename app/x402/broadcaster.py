# app/x402/broadcaster.py
"""
Direct submission of signed transactions to the Solana RPC.

Used as the fallback when the facilitator cannot settle a payment the
gateway has accepted. Preflight simulation is skipped for latency; the RPC
node rebroadcasts up to ``max_retries`` times.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Protocol

from solana.rpc.async_api import AsyncClient
from solana.rpc.commitment import Confirmed
from solana.rpc.models import TxOpts
from solders.hash import Hash
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from app.x402.errors import BroadcastError

logger = logging.getLogger(__name__)

DEFAULT_MAX_RETRIES = 3


@dataclass(frozen=True)
class SignatureStatus:
    """Chain view of one transaction signature."""
    found: bool = False
    confirmed: bool = False
    err: Optional[str] = None

    @property
    def failed(self) -> bool:
        return self.err is not None


class ChainBroadcaster(Protocol):
    async def send_raw_transaction(self, tx_bytes: bytes) -> str:
        ...

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        ...

    async def is_blockhash_valid(self, blockhash: str) -> bool:
        ...


class SolanaBroadcaster:
    """ChainBroadcaster backed by solana-py's AsyncClient."""

    def __init__(
        self,
        rpc_url: str,
        max_retries: int = DEFAULT_MAX_RETRIES,
        client: Optional[AsyncClient] = None,
    ):
        self.rpc_url = rpc_url
        self.max_retries = max_retries
        self._client = client or AsyncClient(rpc_url)

    async def send_raw_transaction(self, tx_bytes: bytes) -> str:
        """
        Submit signed transaction bytes.

        Returns:
            The transaction signature (base58)

        Raises:
            BroadcastError: If the node rejects the transaction or cannot be reached
        """
        opts = TxOpts(
            skip_preflight=True,
            preflight_commitment=Confirmed,
            max_retries=self.max_retries,
        )
        try:
            result = await self._client.send_raw_transaction(tx_bytes, opts=opts)
        except Exception as e:
            logger.error(f"x402: Broadcast to {self.rpc_url} failed: {e}")
            raise BroadcastError(str(e)) from e

        signature = str(result.value)
        logger.info(f"x402: Transaction broadcast: {signature}")
        return signature

    async def get_signature_status(self, signature: str) -> SignatureStatus:
        result = await self._client.get_signature_statuses([Signature.from_string(signature)])
        status = result.value[0] if result.value else None
        if status is None:
            return SignatureStatus()

        confirmed = status.confirmation_status in (
            TransactionConfirmationStatus.Confirmed,
            TransactionConfirmationStatus.Finalized,
        )
        err = str(status.err) if status.err is not None else None
        return SignatureStatus(found=True, confirmed=confirmed, err=err)

    async def is_blockhash_valid(self, blockhash: str) -> bool:
        result = await self._client.is_blockhash_valid(Hash.from_string(blockhash), commitment=Confirmed)
        return bool(result.value)

    async def close(self) -> None:
        await self._client.close()
