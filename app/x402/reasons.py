# app/x402/reasons.py
"""
Facilitator verdict reasons.

Facilitators report failures as free-form strings (``invalidReason`` on
/verify, ``errorReason`` on /settle). They are parsed into a closed set of
``KnownReason`` values plus an ``UnknownReason`` wrapper for anything else, so
bypass-set membership is a typed check rather than string matching.
"""
from dataclasses import dataclass
from enum import Enum
from typing import FrozenSet, Optional, Union


class KnownReason(str, Enum):
    """Reasons the gateway recognizes by name."""
    # Protocol disagreements produced by legitimate wallets
    CREATE_ATA_INSTRUCTION = "invalid_exact_svm_payload_transaction_create_ata_instruction"
    INSTRUCTIONS_LENGTH = "invalid_exact_svm_payload_transaction_instructions_length"
    UNKNOWN_FOURTH_INSTRUCTION = "invalid_exact_svm_payload_unknown_fourth_instruction"
    UNKNOWN_FIFTH_INSTRUCTION = "invalid_exact_svm_payload_unknown_fifth_instruction"
    UNKNOWN_SIXTH_INSTRUCTION = "invalid_exact_svm_payload_unknown_sixth_instruction"

    # Facilitator or transport faults
    UNEXPECTED_VERIFY_ERROR = "unexpected_verify_error"
    UNEXPECTED_SETTLE_ERROR = "unexpected_settle_error"

    # Settlement deliberately not sent to the facilitator
    SETTLEMENT_SKIPPED = "settlement_skipped"

    # Hard failures
    TRANSACTION_COULD_NOT_BE_DECODED = "invalid_exact_svm_payload_transaction_could_not_be_decoded"
    AMOUNT_INSUFFICIENT = "invalid_exact_svm_payload_amount_insufficient"
    RECIPIENT_MISMATCH = "invalid_exact_svm_payload_recipient_mismatch"
    MINT_MISMATCH = "invalid_exact_svm_payload_mint_mismatch"
    NO_TRANSFER_INSTRUCTION = "invalid_exact_svm_payload_no_transfer_instruction"
    FEE_PAYER_TRANSFERRING_FUNDS = "invalid_exact_svm_payload_transaction_fee_payer_transferring_funds"
    INSUFFICIENT_FUNDS = "insufficient_funds"
    INVALID_NETWORK = "invalid_network"
    INVALID_SCHEME = "invalid_scheme"


@dataclass(frozen=True)
class UnknownReason:
    """A reason string the gateway has no name for."""
    raw: str

    @property
    def value(self) -> str:
        return self.raw

    def __str__(self) -> str:
        return self.raw


Reason = Union[KnownReason, UnknownReason]

_KNOWN_BY_VALUE = {reason.value: reason for reason in KnownReason}


def parse_reason(raw: Optional[str]) -> Optional[Reason]:
    """Map a facilitator reason string to a ``Reason``; None stays None."""
    if raw is None:
        return None
    known = _KNOWN_BY_VALUE.get(raw)
    if known is not None:
        return known
    return UnknownReason(raw)


def reason_value(reason: Optional[Reason]) -> Optional[str]:
    """The wire string for a reason."""
    if reason is None:
        return None
    return reason.value


def is_bypassable(reason: Optional[Reason], bypass_set: FrozenSet[KnownReason]) -> bool:
    """True when ``reason`` is a known reason in ``bypass_set``."""
    return isinstance(reason, KnownReason) and reason in bypass_set


DEFAULT_VERIFY_BYPASS_REASONS: FrozenSet[KnownReason] = frozenset({
    KnownReason.CREATE_ATA_INSTRUCTION,
    KnownReason.INSTRUCTIONS_LENGTH,
    KnownReason.UNKNOWN_FOURTH_INSTRUCTION,
    KnownReason.UNKNOWN_FIFTH_INSTRUCTION,
    KnownReason.UNKNOWN_SIXTH_INSTRUCTION,
    KnownReason.UNEXPECTED_VERIFY_ERROR,
})

DEFAULT_SETTLE_BYPASS_REASONS: FrozenSet[KnownReason] = DEFAULT_VERIFY_BYPASS_REASONS | frozenset({
    KnownReason.UNEXPECTED_SETTLE_ERROR,
    KnownReason.SETTLEMENT_SKIPPED,
})
