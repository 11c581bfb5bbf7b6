# tests/test_x402_sessions.py
"""
Unit tests for session tokens and the in-memory session store.
"""
import re
import threading

from app.x402.sessions import InMemorySessionStore, mint_session_token

TOKEN_PATTERN = re.compile(r"^paid_\d+_[0-9a-z]{9}$")


class FakeClock:
    def __init__(self, now=1000.0):
        self.now = now

    def __call__(self):
        return self.now


class TestMintSessionToken:
    """Test session token format."""

    def test_format(self):
        assert TOKEN_PATTERN.match(mint_session_token())

    def test_embeds_millis(self):
        token = mint_session_token(now=1700000000.5)
        assert token.startswith("paid_1700000000500_")

    def test_unique(self):
        tokens = {mint_session_token(now=1.0) for _ in range(1000)}
        assert len(tokens) == 1000


class TestInMemorySessionStore:
    """Test session storage."""

    def test_put_and_exists(self):
        store = InMemorySessionStore()
        store.put("paid_1_abc", {"payer": "Payer111"})

        assert store.exists("paid_1_abc")
        assert not store.exists("paid_2_def")
        assert store.get_metadata("paid_1_abc") == {"payer": "Payer111"}
        assert len(store) == 1

    def test_metadata_is_copied(self):
        store = InMemorySessionStore()
        metadata = {"payer": "Payer111"}
        store.put("t", metadata)
        metadata["payer"] = "changed"

        assert store.get_metadata("t") == {"payer": "Payer111"}

    def test_clear(self):
        store = InMemorySessionStore()
        store.put("a")
        store.put("b")

        store.clear()

        assert not store.exists("a")
        assert len(store) == 0

    def test_claim_payment_once(self):
        """A payment can be claimed once until released."""
        store = InMemorySessionStore()

        assert store.claim_payment("tx-digest") is True
        assert store.claim_payment("tx-digest") is False

        store.release_payment("tx-digest")
        assert store.claim_payment("tx-digest") is True

    def test_clear_forgets_claims(self):
        store = InMemorySessionStore()
        store.claim_payment("tx-digest")

        store.clear()

        assert store.claim_payment("tx-digest") is True

    def test_concurrent_claims(self):
        store = InMemorySessionStore()
        results = []

        def worker():
            results.append(store.claim_payment("tx-digest"))

        threads = [threading.Thread(target=worker) for _ in range(20)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert results.count(True) == 1

    def test_no_ttl_never_expires(self):
        clock = FakeClock()
        store = InMemorySessionStore(clock=clock)
        store.put("t")
        clock.now += 10 ** 9
        assert store.exists("t")

    def test_ttl_expiry(self):
        """Tokens expire once older than the TTL."""
        clock = FakeClock()
        store = InMemorySessionStore(ttl_seconds=60, clock=clock)
        store.put("t")

        clock.now += 60
        assert store.exists("t")

        clock.now += 1
        assert not store.exists("t")
        assert store.get_metadata("t") is None
        assert len(store) == 0

    def test_concurrent_puts(self):
        store = InMemorySessionStore()

        def worker(offset):
            for i in range(200):
                store.put(f"paid_{offset}_{i}")

        threads = [threading.Thread(target=worker, args=(n,)) for n in range(5)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join()

        assert len(store) == 1000
