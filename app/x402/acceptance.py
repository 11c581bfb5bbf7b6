# app/x402/acceptance.py
"""
Structural acceptance of payments the facilitator rejected for a benign reason.

When the facilitator's only objection is a known protocol mismatch (for
instance a wallet adding a create-ATA instruction), the gateway inspects the
signed transaction itself instead of failing closed. The check lives behind
``StructuralAcceptancePolicy`` so it can be tightened without touching the
handshake.
"""
import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Optional

from solders.pubkey import Pubkey
from solders.transaction import VersionedTransaction
from x402.schemas.v1 import PaymentRequirementsV1

from app.x402.constants import (
    ASSOCIATED_TOKEN_PROGRAM_ADDRESS,
    DEFAULT_MIN_INSTRUCTIONS,
    TOKEN_2022_PROGRAM_ADDRESS,
    TOKEN_PROGRAM_ADDRESS,
    TRANSFER_CHECKED_DISCRIMINATOR,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AcceptanceDecision:
    accepted: bool
    detail: str


class StructuralAcceptancePolicy(ABC):
    """Decides whether a decoded transaction is acceptable without the facilitator."""

    name = "structural"

    @abstractmethod
    def evaluate(
        self,
        transaction: VersionedTransaction,
        requirements: PaymentRequirementsV1,
    ) -> AcceptanceDecision:
        ...


class InstructionFloorPolicy(StructuralAcceptancePolicy):
    """
    Accept any transaction with at least ``min_instructions`` instructions.

    This is a heuristic floor. It does not check that the transaction pays the
    treasury the required amount; use ``TreasuryTransferPolicy`` for that.
    """

    name = "instruction_floor"

    def __init__(self, min_instructions: int = DEFAULT_MIN_INSTRUCTIONS):
        self.min_instructions = min_instructions

    def evaluate(self, transaction, requirements):
        count = len(transaction.message.instructions)
        if count >= self.min_instructions:
            return AcceptanceDecision(True, f"{count} instructions (minimum {self.min_instructions})")
        return AcceptanceDecision(False, f"only {count} instructions (minimum {self.min_instructions})")


def derive_associated_token_account(owner: str, mint: str, token_program: str = TOKEN_PROGRAM_ADDRESS) -> str:
    """Associated token account address for ``owner`` and ``mint``."""
    seeds = [
        bytes(Pubkey.from_string(owner)),
        bytes(Pubkey.from_string(token_program)),
        bytes(Pubkey.from_string(mint)),
    ]
    ata, _ = Pubkey.find_program_address(seeds, Pubkey.from_string(ASSOCIATED_TOKEN_PROGRAM_ADDRESS))
    return str(ata)


@dataclass(frozen=True)
class TransferInfo:
    program: str
    source: str
    mint: str
    destination: str
    owner: str
    amount: int
    decimals: int


def find_transfer_checked(transaction: VersionedTransaction) -> Optional[TransferInfo]:
    """First SPL TransferChecked instruction in the transaction, if any."""
    message = transaction.message
    account_keys = list(message.account_keys)
    token_programs = {TOKEN_PROGRAM_ADDRESS, TOKEN_2022_PROGRAM_ADDRESS}

    for ix in message.instructions:
        if ix.program_id_index >= len(account_keys):
            continue
        program = str(account_keys[ix.program_id_index])
        if program not in token_programs:
            continue

        # TransferChecked: [source, mint, destination, owner], data = 12 | u64 amount | u8 decimals
        accounts = list(ix.accounts)
        data = bytes(ix.data)
        if len(accounts) < 4 or len(data) < 10 or data[0] != TRANSFER_CHECKED_DISCRIMINATOR:
            continue
        if max(accounts[:4]) >= len(account_keys):
            continue

        return TransferInfo(
            program=program,
            source=str(account_keys[accounts[0]]),
            mint=str(account_keys[accounts[1]]),
            destination=str(account_keys[accounts[2]]),
            owner=str(account_keys[accounts[3]]),
            amount=int.from_bytes(data[1:9], "little"),
            decimals=data[9],
        )
    return None


class TreasuryTransferPolicy(StructuralAcceptancePolicy):
    """
    Instruction floor plus a semantic check of the token transfer.

    The transaction must carry a TransferChecked of the required mint into the
    treasury's associated token account for at least ``maxAmountRequired``.
    """

    name = "treasury_transfer"

    def __init__(self, min_instructions: int = DEFAULT_MIN_INSTRUCTIONS):
        self.floor = InstructionFloorPolicy(min_instructions)

    def evaluate(self, transaction, requirements):
        floor_decision = self.floor.evaluate(transaction, requirements)
        if not floor_decision.accepted:
            return floor_decision

        transfer = find_transfer_checked(transaction)
        if transfer is None:
            return AcceptanceDecision(False, "no TransferChecked instruction")
        if transfer.mint != requirements.asset:
            return AcceptanceDecision(False, f"mint {transfer.mint} does not match {requirements.asset}")

        expected_destination = derive_associated_token_account(
            requirements.pay_to, requirements.asset, transfer.program
        )
        if transfer.destination != expected_destination:
            return AcceptanceDecision(False, f"destination {transfer.destination} is not the treasury token account")

        required = int(requirements.max_amount_required)
        if transfer.amount < required:
            return AcceptanceDecision(False, f"amount {transfer.amount} below required {required}")

        return AcceptanceDecision(True, f"transfer of {transfer.amount} to treasury")


def create_acceptance_policy(name: str, min_instructions: int = DEFAULT_MIN_INSTRUCTIONS) -> StructuralAcceptancePolicy:
    """Build the policy named in configuration."""
    if name == InstructionFloorPolicy.name:
        return InstructionFloorPolicy(min_instructions)
    if name == TreasuryTransferPolicy.name:
        return TreasuryTransferPolicy(min_instructions)
    raise ValueError(f"Unknown acceptance policy: {name}")
