# app/x402/sessions.py
"""
Session tokens granted after a successful payment.

Tokens have the form ``paid_<epoch-millis>_<9 base36 chars>``. They are
placeholder capability tokens, not an authorization system. Storage sits
behind ``SessionStore`` so the in-memory backend can be swapped for a durable
one; the application creates the store at startup and clears it at shutdown.
"""
import logging
import secrets
import string
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Optional, Set

logger = logging.getLogger(__name__)

SESSION_TOKEN_PREFIX = "paid_"
_BASE36 = string.digits + string.ascii_lowercase


def mint_session_token(now: Optional[float] = None) -> str:
    """Create a new session token from the current time and 9 random base36 chars."""
    millis = int((now if now is not None else time.time()) * 1000)
    suffix = "".join(secrets.choice(_BASE36) for _ in range(9))
    return f"{SESSION_TOKEN_PREFIX}{millis}_{suffix}"


class SessionStore(ABC):
    """Storage for issued session tokens and the payments that bought them."""

    @abstractmethod
    def put(self, token: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        ...

    @abstractmethod
    def exists(self, token: str) -> bool:
        ...

    @abstractmethod
    def get_metadata(self, token: str) -> Optional[Dict[str, Any]]:
        ...

    @abstractmethod
    def claim_payment(self, payment_key: str) -> bool:
        """Atomically mark a payment as used. False if it was already claimed."""
        ...

    @abstractmethod
    def release_payment(self, payment_key: str) -> None:
        ...

    @abstractmethod
    def clear(self) -> None:
        ...


@dataclass
class SessionEntry:
    created_at: float
    metadata: Dict[str, Any] = field(default_factory=dict)


class InMemorySessionStore(SessionStore):
    """
    Process-local session store.

    Tokens expire after ``ttl_seconds`` when set; otherwise they live until
    ``clear()`` or process exit. Claimed payments do not expire. Thread-safe.
    """

    def __init__(
        self,
        ttl_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.ttl_seconds = ttl_seconds
        self._clock = clock
        self._entries: Dict[str, SessionEntry] = {}
        self._claimed: Set[str] = set()
        self._lock = threading.Lock()

    def put(self, token: str, metadata: Optional[Dict[str, Any]] = None) -> None:
        with self._lock:
            self._purge_expired()
            self._entries[token] = SessionEntry(created_at=self._clock(), metadata=dict(metadata or {}))
        logger.debug(f"Session stored: {token}")

    def exists(self, token: str) -> bool:
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                return False
            if self._is_expired(entry):
                del self._entries[token]
                return False
            return True

    def get_metadata(self, token: str) -> Optional[Dict[str, Any]]:
        with self._lock:
            entry = self._entries.get(token)
            if entry is None or self._is_expired(entry):
                return None
            return dict(entry.metadata)

    def claim_payment(self, payment_key: str) -> bool:
        with self._lock:
            if payment_key in self._claimed:
                return False
            self._claimed.add(payment_key)
            return True

    def release_payment(self, payment_key: str) -> None:
        with self._lock:
            self._claimed.discard(payment_key)

    def clear(self) -> None:
        with self._lock:
            count = len(self._entries)
            self._entries.clear()
            self._claimed.clear()
        logger.info(f"Session store cleared ({count} sessions)")

    def __len__(self) -> int:
        with self._lock:
            self._purge_expired()
            return len(self._entries)

    def _is_expired(self, entry: SessionEntry) -> bool:
        if self.ttl_seconds is None:
            return False
        return self._clock() - entry.created_at > self.ttl_seconds

    def _purge_expired(self) -> None:
        if self.ttl_seconds is None:
            return
        expired = [token for token, entry in self._entries.items() if self._is_expired(entry)]
        for token in expired:
            del self._entries[token]
