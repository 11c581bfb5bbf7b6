# app/x402/__init__.py
"""
x402 Payment Protocol Integration Module.

This module implements the x402 (version 1) HTTP 402 handshake on Solana:
a client asks for a paid resource, gets 402 with payment requirements, and
retries with a signed transaction in the X-PAYMENT header.

Key components:
- requirements: Payment requirements builder
- facilitator: Client for the facilitator's /supported, /verify and /settle
- handler: Framework-neutral payment handler
- acceptance: Local structural checks used when verification is bypassed
- broadcaster / confirmation: Direct broadcast and confirmation polling
- handshake: The handshake state machine behind POST /api/payment
- sessions: Session tokens issued after payment
- audit: Transaction audit logging

Configuration is loaded from environment variables via app.core.config.
"""

__version__ = "0.1.0"
