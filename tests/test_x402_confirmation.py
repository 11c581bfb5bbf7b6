# tests/test_x402_confirmation.py
"""
Unit tests for the Solana broadcaster and confirmation polling.
"""
import pytest
from unittest.mock import AsyncMock, MagicMock

from solders.hash import Hash
from solders.signature import Signature
from solders.transaction_status import TransactionConfirmationStatus

from app.x402.broadcaster import SignatureStatus, SolanaBroadcaster
from app.x402.confirmation import (
    ConfirmationPoller,
    ConfirmationState,
    RetryPolicy,
)
from app.x402.errors import BroadcastError

SIGNATURE = str(Signature.default())
BLOCKHASH = str(Hash.default())


def scripted_broadcaster(statuses, blockhash_valid=True):
    broadcaster = MagicMock()
    broadcaster.get_signature_status = AsyncMock(side_effect=statuses)
    if isinstance(blockhash_valid, list):
        broadcaster.is_blockhash_valid = AsyncMock(side_effect=blockhash_valid)
    else:
        broadcaster.is_blockhash_valid = AsyncMock(return_value=blockhash_valid)
    return broadcaster


class TestRetryPolicy:
    """Test polling schedule validation."""

    def test_defaults(self):
        policy = RetryPolicy()
        assert policy.attempts == 30
        assert policy.interval_seconds == 1.0

    @pytest.mark.parametrize("attempts,interval", [(0, 1.0), (-1, 1.0), (3, -0.5)])
    def test_rejects_invalid_schedule(self, attempts, interval):
        with pytest.raises(ValueError):
            RetryPolicy(attempts=attempts, interval_seconds=interval)


@pytest.mark.asyncio
class TestConfirmationPoller:
    """Test confirmation polling outcomes."""

    async def test_confirms_after_pending_ticks(self):
        """Pending statuses are polled until confirmation."""
        sleep = AsyncMock()
        broadcaster = scripted_broadcaster([
            SignatureStatus(),
            SignatureStatus(found=True),
            SignatureStatus(found=True, confirmed=True),
        ])

        outcome = await ConfirmationPoller(broadcaster, RetryPolicy(5, 0.5, sleep)).wait(SIGNATURE, BLOCKHASH)

        assert outcome.state is ConfirmationState.CONFIRMED
        assert outcome.confirmed is True
        assert outcome.attempts == 3
        assert sleep.await_count == 2
        sleep.assert_awaited_with(0.5)

    async def test_failure_is_terminal(self):
        """An on-chain error stops polling immediately."""
        broadcaster = scripted_broadcaster([SignatureStatus(found=True, err="InstructionError(2, Custom(1))")])

        outcome = await ConfirmationPoller(broadcaster, RetryPolicy(5, 0, AsyncMock())).wait(SIGNATURE)

        assert outcome.state is ConfirmationState.FAILED
        assert outcome.error == "InstructionError(2, Custom(1))"
        assert outcome.confirmed is False

    async def test_expired_blockhash(self):
        """An expired blockhash with no status after a final check is expired."""
        broadcaster = scripted_broadcaster([SignatureStatus(), SignatureStatus()], blockhash_valid=False)

        outcome = await ConfirmationPoller(broadcaster, RetryPolicy(5, 0, AsyncMock())).wait(SIGNATURE, BLOCKHASH)

        assert outcome.state is ConfirmationState.EXPIRED
        assert broadcaster.get_signature_status.await_count == 2

    async def test_confirmed_on_final_check_after_expiry(self):
        """A transaction that landed just before expiry is still confirmed."""
        broadcaster = scripted_broadcaster(
            [SignatureStatus(), SignatureStatus(found=True, confirmed=True)],
            blockhash_valid=False,
        )

        outcome = await ConfirmationPoller(broadcaster, RetryPolicy(5, 0, AsyncMock())).wait(SIGNATURE, BLOCKHASH)

        assert outcome.state is ConfirmationState.CONFIRMED

    async def test_timeout_is_not_success(self):
        """Exhausting the budget reports a timeout."""
        sleep = AsyncMock()
        broadcaster = scripted_broadcaster([SignatureStatus()] * 4)

        outcome = await ConfirmationPoller(broadcaster, RetryPolicy(4, 1.0, sleep)).wait(SIGNATURE, BLOCKHASH)

        assert outcome.state is ConfirmationState.TIMEOUT
        assert outcome.confirmed is False
        assert outcome.attempts == 4
        assert broadcaster.get_signature_status.await_count == 4
        # No sleep after the last attempt
        assert sleep.await_count == 3

    async def test_no_blockhash_skips_expiry_check(self):
        broadcaster = scripted_broadcaster([SignatureStatus()] * 2, blockhash_valid=False)

        outcome = await ConfirmationPoller(broadcaster, RetryPolicy(2, 0, AsyncMock())).wait(SIGNATURE)

        assert outcome.state is ConfirmationState.TIMEOUT
        broadcaster.is_blockhash_valid.assert_not_called()

    async def test_status_errors_count_as_pending(self):
        """RPC errors on a tick do not abort polling."""
        broadcaster = scripted_broadcaster([
            ConnectionError("rpc unavailable"),
            SignatureStatus(found=True, confirmed=True),
        ])

        outcome = await ConfirmationPoller(broadcaster, RetryPolicy(5, 0, AsyncMock())).wait(SIGNATURE, BLOCKHASH)

        assert outcome.state is ConfirmationState.CONFIRMED
        assert outcome.attempts == 2

    async def test_persistent_status_errors_time_out(self):
        broadcaster = scripted_broadcaster([ConnectionError("rpc unavailable")] * 3)

        outcome = await ConfirmationPoller(broadcaster, RetryPolicy(3, 0, AsyncMock())).wait(SIGNATURE, BLOCKHASH)

        assert outcome.state is ConfirmationState.TIMEOUT
        assert outcome.signature == SIGNATURE

    async def test_blockhash_check_error_keeps_polling(self):
        """An unanswered validity check is not treated as expiry."""
        broadcaster = scripted_broadcaster(
            [SignatureStatus(), SignatureStatus(found=True, confirmed=True)],
            blockhash_valid=[ConnectionError("rpc unavailable")],
        )

        outcome = await ConfirmationPoller(broadcaster, RetryPolicy(5, 0, AsyncMock())).wait(SIGNATURE, BLOCKHASH)

        assert outcome.state is ConfirmationState.CONFIRMED


@pytest.mark.asyncio
class TestSolanaBroadcaster:
    """Test the solana-py backed broadcaster."""

    async def test_send_raw_transaction(self):
        """Raw bytes are sent without preflight and the signature returned."""
        client = MagicMock()
        client.send_raw_transaction = AsyncMock(return_value=MagicMock(value=Signature.default()))
        broadcaster = SolanaBroadcaster("https://rpc.example.com", max_retries=5, client=client)

        signature = await broadcaster.send_raw_transaction(b"\x01\x02")

        assert signature == SIGNATURE
        args, kwargs = client.send_raw_transaction.call_args
        assert args[0] == b"\x01\x02"
        assert kwargs["opts"].skip_preflight is True
        assert kwargs["opts"].max_retries == 5

    async def test_send_failure_raises_broadcast_error(self):
        client = MagicMock()
        client.send_raw_transaction = AsyncMock(side_effect=RuntimeError("Blockhash not found"))
        broadcaster = SolanaBroadcaster("https://rpc.example.com", client=client)

        with pytest.raises(BroadcastError) as exc_info:
            await broadcaster.send_raw_transaction(b"\x01")
        assert exc_info.value.reason == "broadcast_failed"

    async def test_signature_status_not_found(self):
        client = MagicMock()
        client.get_signature_statuses = AsyncMock(return_value=MagicMock(value=[None]))
        broadcaster = SolanaBroadcaster("https://rpc.example.com", client=client)

        status = await broadcaster.get_signature_status(SIGNATURE)

        assert status == SignatureStatus(found=False, confirmed=False, err=None)

    @pytest.mark.parametrize("commitment,confirmed", [
        (TransactionConfirmationStatus.Processed, False),
        (TransactionConfirmationStatus.Confirmed, True),
        (TransactionConfirmationStatus.Finalized, True),
    ])
    async def test_signature_status_commitment(self, commitment, confirmed):
        """Confirmed and finalized commitments count as confirmed."""
        client = MagicMock()
        client.get_signature_statuses = AsyncMock(
            return_value=MagicMock(value=[MagicMock(confirmation_status=commitment, err=None)])
        )
        broadcaster = SolanaBroadcaster("https://rpc.example.com", client=client)

        status = await broadcaster.get_signature_status(SIGNATURE)

        assert status.found is True
        assert status.confirmed is confirmed
        assert status.failed is False

    async def test_blockhash_validity(self):
        client = MagicMock()
        client.is_blockhash_valid = AsyncMock(return_value=MagicMock(value=False))
        broadcaster = SolanaBroadcaster("https://rpc.example.com", client=client)

        assert await broadcaster.is_blockhash_valid(BLOCKHASH) is False
        assert client.is_blockhash_valid.call_args.args[0] == Hash.default()

    async def test_close(self):
        client = MagicMock()
        client.close = AsyncMock()
        await SolanaBroadcaster("https://rpc.example.com", client=client).close()
        client.close.assert_awaited_once()
