"""
Rate limit key derivation.

The limiter core never sees a framework request object. It reads identity
signals through RequestSignals, which the transport adapter implements.
"""

import hashlib
from typing import TYPE_CHECKING, Protocol, Sequence

import structlog

if TYPE_CHECKING:
    from portalguard.core.policy import RateLimitPolicy

logger = structlog.get_logger()

UNKNOWN_CLIENT = "unknown"


class RequestSignals(Protocol):
    """The two request capabilities key derivation and policies rely on."""

    def get_header(self, name: str) -> str | None: ...

    def get_peer_address(self) -> str | None: ...


def short_hash(value: str, length: int = 8) -> str:
    """Short, stable hex digest. Also used to log keys without exposing them."""
    return hashlib.sha256(value.encode()).hexdigest()[:length]


class KeyDeriver:
    """
    Turns a request's identity signals into a stable rate limit key.

    Address precedence:
        1. trusted edge headers, in the configured order (CDN client IP)
        2. first entry of the forwarded-for header
        3. the direct peer address

    An unresolvable address yields "unknown", so every unidentified caller
    shares one bucket. When a fingerprint header is configured and present,
    a short hash of it is appended to the address.
    """

    def __init__(
        self,
        trusted_edge_headers: Sequence[str] = ("cf-connecting-ip", "x-real-ip"),
        forwarded_for_header: str | None = "x-forwarded-for",
        fingerprint_header: str | None = "user-agent",
    ):
        self.trusted_edge_headers = tuple(trusted_edge_headers)
        self.forwarded_for_header = forwarded_for_header
        self.fingerprint_header = fingerprint_header

    def derive(self, request: RequestSignals, policy: "RateLimitPolicy") -> str:
        if policy.key_generator is not None:
            try:
                key = policy.key_generator(request)
            except Exception as exc:
                logger.warning(
                    "rate_limit.key_generator_failed",
                    policy=policy.name,
                    error=repr(exc),
                )
            else:
                if key:
                    return key
                logger.warning("rate_limit.key_generator_empty", policy=policy.name)

        address = self.client_address(request)
        if address == UNKNOWN_CLIENT:
            return address

        fingerprint = self._fingerprint(request)
        return f"{address}:{fingerprint}" if fingerprint else address

    def client_address(self, request: RequestSignals) -> str:
        for header in self.trusted_edge_headers:
            value = _clean(request.get_header(header))
            if value:
                return value

        if self.forwarded_for_header:
            forwarded = request.get_header(self.forwarded_for_header) or ""
            first = _clean(forwarded.split(",")[0])
            if first:
                return first

        return _clean(request.get_peer_address()) or UNKNOWN_CLIENT

    def _fingerprint(self, request: RequestSignals) -> str | None:
        if not self.fingerprint_header:
            return None
        value = request.get_header(self.fingerprint_header)
        return short_hash(value) if value else None


def _clean(value: str | None) -> str | None:
    if value is None:
        return None
    return value.strip() or None
