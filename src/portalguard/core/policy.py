"""
Admission policies and the registry that names them.

A policy describes one protected surface: how long its window is, how many
requests fit in it and what happens to a caller who goes over. Policies
are immutable and validated when they are built, so a bad configuration
fails at startup rather than on the first request.
"""

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Awaitable, Callable, Iterator

import structlog

from portalguard.core.errors import PolicyMisconfiguration, UnknownPolicyError
from portalguard.core.keys import RequestSignals, short_hash

if TYPE_CHECKING:
    from portalguard.config import Settings

logger = structlog.get_logger()

KeyGenerator = Callable[[RequestSignals], str]
SkipPredicate = Callable[[RequestSignals], bool]
ExceededHook = Callable[[RequestSignals, str], Awaitable[Any] | Any]

MINUTE_MS = 60 * 1000
HOUR_MS = 60 * MINUTE_MS


@dataclass(frozen=True)
class RateLimitPolicy:
    """
    Immutable admission policy for one endpoint class.

    Attributes:
        name: Registry name, also the namespace of every store key.
        window_duration_ms: Length of one fixed window.
        max_requests: Requests allowed per key per window.
        block_duration_ms: Cooldown imposed on a key that exceeds the
            limit. None disables blocking.
        key_generator: Replaces address-based key derivation, e.g. to key
            by authenticated user id.
        skip_predicate: Requests for which it returns True bypass the
            limiter entirely.
        on_exceeded: Called as ``hook(request, key)`` on every denial that
            comes from the counter. Runs detached from the request.
        fail_closed: Deny instead of allow when the store is unavailable.
    """

    name: str
    window_duration_ms: int
    max_requests: int
    block_duration_ms: int | None = None
    key_generator: KeyGenerator | None = None
    skip_predicate: SkipPredicate | None = None
    on_exceeded: ExceededHook | None = None
    fail_closed: bool = False

    def __post_init__(self) -> None:
        if not self.name:
            raise PolicyMisconfiguration("policy name must not be empty")
        if self.window_duration_ms <= 0:
            raise PolicyMisconfiguration(
                f"{self.name}: window_duration_ms must be positive, "
                f"got {self.window_duration_ms}"
            )
        if self.max_requests <= 0:
            raise PolicyMisconfiguration(
                f"{self.name}: max_requests must be positive, got {self.max_requests}"
            )
        if self.block_duration_ms is not None and self.block_duration_ms <= 0:
            raise PolicyMisconfiguration(
                f"{self.name}: block_duration_ms must be positive when set, "
                f"got {self.block_duration_ms}"
            )


class PolicyRegistry:
    """Name -> policy lookup, built once at startup."""

    def __init__(self, policies: list[RateLimitPolicy] | None = None):
        self._policies: dict[str, RateLimitPolicy] = {}
        for policy in policies or []:
            self.register(policy)

    def register(self, policy: RateLimitPolicy) -> RateLimitPolicy:
        if policy.name in self._policies:
            raise PolicyMisconfiguration(f"policy {policy.name!r} is already registered")
        self._policies[policy.name] = policy
        return policy

    def get(self, name: str) -> RateLimitPolicy:
        try:
            return self._policies[name]
        except KeyError:
            raise UnknownPolicyError(name) from None

    def names(self) -> list[str]:
        return list(self._policies)

    def __contains__(self, name: object) -> bool:
        return name in self._policies

    def __iter__(self) -> Iterator[RateLimitPolicy]:
        return iter(self._policies.values())

    def __len__(self) -> int:
        return len(self._policies)


def _log_auth_exceeded(request: RequestSignals, key: str) -> None:
    logger.warning("auth_rate_limit_exceeded", key_hash=short_hash(key, 16))


def bearer_token_bypass(tokens: list[str]) -> SkipPredicate | None:
    """Skip predicate matching ``Authorization: Bearer <token>`` exactly."""
    allowed = frozenset(tokens)
    if not allowed:
        return None

    def _skip(request: RequestSignals) -> bool:
        header = request.get_header("authorization") or ""
        scheme, _, token = header.partition(" ")
        return scheme.lower() == "bearer" and token.strip() in allowed

    return _skip


def build_default_registry(settings: "Settings") -> PolicyRegistry:
    """The portal's tuned policies, one per protected surface."""
    return PolicyRegistry(
        [
            RateLimitPolicy(
                name="auth",
                window_duration_ms=15 * MINUTE_MS,
                max_requests=5,
                block_duration_ms=30 * MINUTE_MS,
                on_exceeded=_log_auth_exceeded,
            ),
            RateLimitPolicy(
                name="password_reset",
                window_duration_ms=HOUR_MS,
                max_requests=3,
                block_duration_ms=2 * HOUR_MS,
            ),
            RateLimitPolicy(
                name="form_submit",
                window_duration_ms=MINUTE_MS,
                max_requests=5,
                block_duration_ms=5 * MINUTE_MS,
            ),
            RateLimitPolicy(
                name="upload",
                window_duration_ms=MINUTE_MS,
                max_requests=3,
                block_duration_ms=10 * MINUTE_MS,
            ),
            RateLimitPolicy(
                name="notification",
                window_duration_ms=HOUR_MS,
                max_requests=50,
            ),
            RateLimitPolicy(
                name="api",
                window_duration_ms=MINUTE_MS,
                max_requests=60,
                skip_predicate=bearer_token_bypass(settings.bypass_tokens),
            ),
        ]
    )
