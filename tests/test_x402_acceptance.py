# tests/test_x402_acceptance.py
"""
Unit tests for structural acceptance policies.
"""
import pytest

from solders.transaction import VersionedTransaction
from x402.schemas.v1 import PaymentRequirementsV1

from app.x402.acceptance import (
    InstructionFloorPolicy,
    TreasuryTransferPolicy,
    create_acceptance_policy,
    derive_associated_token_account,
    find_transfer_checked,
)

TREASURY = "Gnu8xZ8yrhEurUiKokWbKJqe6Djdmo3hUHge8NLbtNeH"
USDC_MAINNET = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
USDC_DEVNET = "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU"
OTHER_OWNER = "9WzDXwBbmkg8ZTbNMqUxvQRAyrZzDsGYdLVL9zYtAWWM"


def make_requirements(amount="1000000"):
    return PaymentRequirementsV1(
        scheme="exact",
        network="solana",
        max_amount_required=amount,
        resource="http://localhost:3000/api/payment",
        pay_to=TREASURY,
        max_timeout_seconds=300,
        asset=USDC_MAINNET,
        extra={"feePayer": "2wKupLR9q6wXYppw8Gr2NvWxKBUqm4PPJKkQfoxHDBg4"},
    )


class TestInstructionFloorPolicy:
    """Test the instruction-count floor."""

    @pytest.mark.parametrize("count,accepted", [(1, False), (2, False), (3, True), (4, True), (6, True)])
    def test_floor(self, build_transaction, count, accepted):
        """Transactions with at least three instructions pass."""
        transaction = VersionedTransaction.from_bytes(build_transaction(count))

        decision = InstructionFloorPolicy(3).evaluate(transaction, make_requirements())

        assert decision.accepted is accepted

    def test_custom_floor(self, build_transaction):
        transaction = VersionedTransaction.from_bytes(build_transaction(4))
        assert InstructionFloorPolicy(5).evaluate(transaction, make_requirements()).accepted is False


class TestFindTransferChecked:
    """Test TransferChecked decoding."""

    def test_decodes_transfer(self, build_transfer_transaction, payer_keypair):
        transaction = VersionedTransaction.from_bytes(build_transfer_transaction(1_500_000))

        transfer = find_transfer_checked(transaction)

        assert transfer is not None
        assert transfer.amount == 1_500_000
        assert transfer.decimals == 6
        assert transfer.mint == USDC_MAINNET
        assert transfer.owner == str(payer_keypair.pubkey())
        assert transfer.destination == derive_associated_token_account(TREASURY, USDC_MAINNET)

    def test_no_transfer(self, build_transaction):
        transaction = VersionedTransaction.from_bytes(build_transaction(3))
        assert find_transfer_checked(transaction) is None


class TestTreasuryTransferPolicy:
    """Test the semantic transfer check."""

    def test_accepts_sufficient_transfer(self, build_transfer_transaction):
        transaction = VersionedTransaction.from_bytes(build_transfer_transaction(1_000_000))
        decision = TreasuryTransferPolicy(3).evaluate(transaction, make_requirements())
        assert decision.accepted is True

    def test_rejects_short_amount(self, build_transfer_transaction):
        transaction = VersionedTransaction.from_bytes(build_transfer_transaction(999_999))
        decision = TreasuryTransferPolicy(3).evaluate(transaction, make_requirements())
        assert decision.accepted is False
        assert "below required" in decision.detail

    def test_rejects_wrong_destination(self, build_transfer_transaction):
        """A transfer to anyone but the treasury is refused."""
        transaction = VersionedTransaction.from_bytes(
            build_transfer_transaction(1_000_000, destination_owner=OTHER_OWNER)
        )
        decision = TreasuryTransferPolicy(3).evaluate(transaction, make_requirements())
        assert decision.accepted is False
        assert "treasury" in decision.detail

    def test_rejects_wrong_mint(self, build_transfer_transaction):
        transaction = VersionedTransaction.from_bytes(build_transfer_transaction(1_000_000, mint=USDC_DEVNET))
        decision = TreasuryTransferPolicy(3).evaluate(transaction, make_requirements())
        assert decision.accepted is False
        assert "mint" in decision.detail

    def test_rejects_missing_transfer(self, build_transaction):
        transaction = VersionedTransaction.from_bytes(build_transaction(4))
        decision = TreasuryTransferPolicy(3).evaluate(transaction, make_requirements())
        assert decision.accepted is False

    def test_still_applies_instruction_floor(self, build_transfer_transaction):
        """A lone transfer instruction is below the floor."""
        transaction = VersionedTransaction.from_bytes(build_transfer_transaction(1_000_000, padding=0))
        decision = TreasuryTransferPolicy(3).evaluate(transaction, make_requirements())
        assert decision.accepted is False


class TestCreateAcceptancePolicy:
    """Test policy selection by name."""

    def test_known_names(self):
        assert isinstance(create_acceptance_policy("instruction_floor", 3), InstructionFloorPolicy)
        assert isinstance(create_acceptance_policy("treasury_transfer", 3), TreasuryTransferPolicy)

    def test_unknown_name(self):
        with pytest.raises(ValueError):
            create_acceptance_policy("trust_everything")
