# tests/conftest.py
"""
Shared fixtures for the payment gateway tests.
"""
from typing import List, Optional

import pytest
from solders.hash import Hash
from solders.instruction import AccountMeta, Instruction
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction

from app.core.config import settings
from app.x402.acceptance import derive_associated_token_account
from app.x402.constants import TOKEN_PROGRAM_ADDRESS, TRANSFER_CHECKED_DISCRIMINATOR
from app.x402.proof import build_payment_envelope, encode_payment_header

TREASURY = "Gnu8xZ8yrhEurUiKokWbKJqe6Djdmo3hUHge8NLbtNeH"
USDC_MAINNET = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
FEE_PAYER = "2wKupLR9q6wXYppw8Gr2NvWxKBUqm4PPJKkQfoxHDBg4"
MEMO_PROGRAM = "MemoSq4gqABAXKb96qnH8TysNcWxMyWCqXgDLGmfcHr"


@pytest.fixture(autouse=True)
def disable_audit_log(monkeypatch):
    """Keep tests from appending to the configured audit log.

    Tests that exercise the audit trail patch ``app.x402.audit.settings``
    with a temporary path instead.
    """
    monkeypatch.setattr(settings, "X402_AUDIT_ENABLED", False)


def memo_instructions(payer: Pubkey, count: int) -> List[Instruction]:
    return [
        Instruction(Pubkey.from_string(MEMO_PROGRAM), bytes([i]), [AccountMeta(payer, True, True)])
        for i in range(count)
    ]


def transfer_checked_instruction(
    owner: Pubkey,
    amount: int,
    mint: str = USDC_MAINNET,
    destination_owner: str = TREASURY,
    decimals: int = 6,
) -> Instruction:
    """SPL TransferChecked from the owner's token account to the destination owner's ATA."""
    source = derive_associated_token_account(str(owner), mint)
    destination = derive_associated_token_account(destination_owner, mint)
    data = bytes([TRANSFER_CHECKED_DISCRIMINATOR]) + amount.to_bytes(8, "little") + bytes([decimals])
    return Instruction(
        Pubkey.from_string(TOKEN_PROGRAM_ADDRESS),
        data,
        [
            AccountMeta(Pubkey.from_string(source), False, True),
            AccountMeta(Pubkey.from_string(mint), False, False),
            AccountMeta(Pubkey.from_string(destination), False, True),
            AccountMeta(owner, True, False),
        ],
    )


def sign_transaction(
    keypair: Keypair,
    instructions: List[Instruction],
    blockhash: Optional[Hash] = None,
) -> bytes:
    message = MessageV0.try_compile(
        keypair.pubkey(), instructions, [], blockhash or Hash.new_unique()
    )
    return bytes(VersionedTransaction(message, [keypair]))


@pytest.fixture
def payer_keypair():
    return Keypair()


@pytest.fixture
def build_transaction(payer_keypair):
    """Factory for signed transaction bytes with ``instruction_count`` memo instructions."""
    def _build(instruction_count: int = 3, blockhash: Optional[Hash] = None) -> bytes:
        return sign_transaction(
            payer_keypair,
            memo_instructions(payer_keypair.pubkey(), instruction_count),
            blockhash,
        )
    return _build


@pytest.fixture
def build_payment_header(payer_keypair, build_transaction):
    """Factory for X-PAYMENT header values wrapping a signed transaction."""
    def _build(instruction_count: int = 3, tx_bytes: Optional[bytes] = None) -> str:
        if tx_bytes is None:
            tx_bytes = build_transaction(instruction_count)
        envelope = build_payment_envelope(tx_bytes, "solana", payer=str(payer_keypair.pubkey()))
        return encode_payment_header(envelope)
    return _build


@pytest.fixture
def build_transfer_transaction(payer_keypair):
    """Factory for a signed token transfer padded with memo instructions."""
    def _build(
        amount: int,
        mint: str = USDC_MAINNET,
        destination_owner: str = TREASURY,
        padding: int = 2,
    ) -> bytes:
        instructions = memo_instructions(payer_keypair.pubkey(), padding)
        instructions.append(
            transfer_checked_instruction(payer_keypair.pubkey(), amount, mint, destination_owner)
        )
        return sign_transaction(payer_keypair, instructions)
    return _build
