# app/x402/constants.py
"""Protocol constants and per-network defaults for Solana x402 payments."""

from typing import Dict, TypedDict

from app.x402.errors import UnsupportedNetworkError

# x402 protocol constants
X402_VERSION = 1
SCHEME_EXACT = "exact"
X_PAYMENT_HEADER = "X-PAYMENT"
X_PAYMENT_RESPONSE_HEADER = "X-PAYMENT-RESPONSE"

DEFAULT_MAX_TIMEOUT_SECONDS = 300
DEFAULT_MIME_TYPE = "application/json"
DEFAULT_DESCRIPTION = "Payment required"

# Token-program instructions: compute limit, compute price, transfer
DEFAULT_MIN_INSTRUCTIONS = 3

DEFAULT_RPC_URLS: Dict[str, str] = {
    "solana": "https://api.mainnet-beta.solana.com",
    "solana-devnet": "https://api.devnet.solana.com",
}


class TokenAsset(TypedDict):
    address: str
    decimals: int


# USDC mints
DEFAULT_TOKEN_ASSETS: Dict[str, TokenAsset] = {
    "solana": {
        "address": "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v",
        "decimals": 6,
    },
    "solana-devnet": {
        "address": "4zMMC9srt5Ri5X14GAgXhaHii3GnPAEERYPJgZJDncDU",
        "decimals": 6,
    },
}

TOKEN_PROGRAM_ADDRESS = "TokenkegQfeZyiNwAJbNbGKPFXCWuBvf9Ss623VQ5DA"
TOKEN_2022_PROGRAM_ADDRESS = "TokenzQdBNbLqP5VEhdkAS6EPFLC1PHnBqCXEpPxuEb"
ASSOCIATED_TOKEN_PROGRAM_ADDRESS = "ATokenGPvbdGVxr1b2hvZbsiqW5xWH25efTNsLJA8knL"
TRANSFER_CHECKED_DISCRIMINATOR = 12


def get_default_rpc_url(network: str) -> str:
    try:
        return DEFAULT_RPC_URLS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"Unexpected network: {network}") from exc


def get_default_token_asset(network: str) -> TokenAsset:
    try:
        return DEFAULT_TOKEN_ASSETS[network]
    except KeyError as exc:
        raise UnsupportedNetworkError(f"No default token asset for network: {network}") from exc
