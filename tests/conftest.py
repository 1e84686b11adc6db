"""
Shared fixtures.

Time is driven by FakeClock so window rollover and block expiry can be
tested without sleeping. The clock starts exactly on an hour boundary.
"""

import pytest

from portalguard.core.keys import KeyDeriver
from portalguard.core.limiter import Limiter
from portalguard.core.policy import PolicyRegistry, RateLimitPolicy
from portalguard.core.storage.memory import InMemoryBackend

# 2023-11-14T22:00:00Z, aligned to minute, quarter-hour and hour windows
START_MS = 3_600_000 * 472_222


class FakeClock:
    def __init__(self, start: int = START_MS) -> None:
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int) -> None:
        self.now += ms


class FakeRequest:
    """Minimal RequestSignals implementation."""

    def __init__(self, headers: dict[str, str] | None = None, peer: str | None = None):
        self.headers = {k.lower(): v for k, v in (headers or {}).items()}
        self.peer = peer

    def get_header(self, name: str) -> str | None:
        return self.headers.get(name.lower())

    def get_peer_address(self) -> str | None:
        return self.peer


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def backend(clock: FakeClock) -> InMemoryBackend:
    """Create a fresh in-memory backend for each test."""
    return InMemoryBackend(clock=clock)


@pytest.fixture
def per_minute_policy() -> RateLimitPolicy:
    return RateLimitPolicy(name="general", window_duration_ms=60_000, max_requests=5)


@pytest.fixture
def auth_policy() -> RateLimitPolicy:
    return RateLimitPolicy(
        name="auth",
        window_duration_ms=900_000,
        max_requests=5,
        block_duration_ms=1_800_000,
    )


@pytest.fixture
def registry(per_minute_policy: RateLimitPolicy, auth_policy: RateLimitPolicy) -> PolicyRegistry:
    return PolicyRegistry([per_minute_policy, auth_policy])


@pytest.fixture
def limiter(backend: InMemoryBackend, registry: PolicyRegistry, clock: FakeClock) -> Limiter:
    # No fingerprint so the identity key is the bare address.
    return Limiter(
        backend,
        registry,
        key_deriver=KeyDeriver(fingerprint_header=None),
        clock=clock,
    )


@pytest.fixture
def request_from():
    def _make(peer: str | None = "1.2.3.4", headers: dict[str, str] | None = None) -> FakeRequest:
        return FakeRequest(headers=headers, peer=peer)

    return _make
