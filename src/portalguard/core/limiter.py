"""
Admission control: one allow/deny Decision per request.

The Limiter composes key derivation, the block list and the window counter.
It is the boundary where store failures stop: callers of ``check`` and
``status`` always get a Decision, never an exception. When the store is
unavailable the Limiter fails open, logs ``rate_limit.fail_open`` and counts
the event so operators can see the outage.
"""

import asyncio
import inspect
import math
from dataclasses import dataclass

import structlog

from portalguard.core.blocklist import BlockList
from portalguard.core.clock import Clock, now_ms
from portalguard.core.counter import WindowCounter, window_bounds
from portalguard.core.errors import StoreUnavailable
from portalguard.core.keys import KeyDeriver, RequestSignals, short_hash
from portalguard.core.policy import PolicyRegistry, RateLimitPolicy
from portalguard.core.storage.base import StorageBackend

logger = structlog.get_logger()


@dataclass(frozen=True)
class Decision:
    """
    Immutable outcome of an admission check.

    This object contains all information needed to:
    1. Decide whether to forward or reject the request
    2. Populate rate limit headers in the HTTP response
    3. Tell the client when they can retry (if denied)

    Attributes:
        allowed: Whether the request may proceed.
        limit: Maximum requests per window for the policy.
        remaining: Requests left in the current window, never negative.
        reset_at: Epoch ms of the end of the current window.
        blocked: True when the key is in a cooldown period.
        block_until: Epoch ms when the cooldown ends (only if blocked).

    Example headers this maps to:
        X-RateLimit-Limit: {limit}
        X-RateLimit-Remaining: {remaining}
        X-RateLimit-Reset: {reset_at}
        Retry-After: {retry_after()}  (only on 429 responses)
        X-RateLimit-BlockedUntil: {block_until}  (only when blocked)
    """

    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    blocked: bool = False
    block_until: int | None = None

    def retry_after(self, now: int | None = None) -> int:
        """Whole seconds until the caller may retry, at least 1."""
        now = now_ms() if now is None else now
        target = self.block_until if self.blocked and self.block_until else self.reset_at
        return max(1, math.ceil((target - now) / 1000))


def scoped_key(policy: RateLimitPolicy, identity: str) -> str:
    return f"{policy.name}:{identity}"


class Limiter:
    """
    Checks requests against named policies.

    Built once at startup with an explicit store backend and registry, and
    shared by every request handled by the process. Each ``check`` performs
    at most one counter increment and one block write.
    """

    def __init__(
        self,
        backend: StorageBackend,
        registry: PolicyRegistry,
        key_deriver: KeyDeriver | None = None,
        prefix: str = "rate_limit",
        clock: Clock = now_ms,
        hook_timeout_s: float = 5.0,
    ):
        self.backend = backend
        self.hook_timeout_s = hook_timeout_s
        self.registry = registry
        self.key_deriver = key_deriver or KeyDeriver()
        self.counter = WindowCounter(backend, prefix=prefix, clock=clock)
        self.blocklist = BlockList(backend, prefix=prefix, clock=clock)
        self.fail_open_count = 0
        self._clock = clock
        self._hook_tasks: set[asyncio.Task] = set()

    def now(self) -> int:
        return self._clock()

    def _resolve(self, policy: RateLimitPolicy | str) -> RateLimitPolicy:
        if isinstance(policy, str):
            return self.registry.get(policy)
        return policy

    async def check(
        self,
        request: RequestSignals,
        policy: RateLimitPolicy | str,
    ) -> Decision:
        policy = self._resolve(policy)

        if self._should_skip(request, policy):
            return self._full_quota(policy)

        identity = self.key_deriver.derive(request, policy)
        key = scoped_key(policy, identity)
        try:
            return await self._admit(request, policy, identity, key)
        except StoreUnavailable as exc:
            return self._degraded(policy, key, "check", exc)

    async def _admit(
        self,
        request: RequestSignals,
        policy: RateLimitPolicy,
        identity: str,
        key: str,
    ) -> Decision:
        block = await self.blocklist.is_blocked(key)
        if block.blocked:
            logger.info(
                "rate_limit.blocked",
                policy=policy.name,
                key_hash=short_hash(key, 16),
                block_until=block.block_until,
            )
            return self._blocked(policy, block.block_until)

        window = await self.counter.increment(key, policy.window_duration_ms)
        limit = policy.max_requests
        if window.count <= limit:
            return Decision(
                allowed=True,
                limit=limit,
                remaining=max(0, limit - window.count),
                reset_at=window.window_end,
            )

        block_until = None
        if policy.block_duration_ms is not None:
            block_until = await self.blocklist.block(key, policy.block_duration_ms)

        logger.warning(
            "rate_limit.exceeded",
            policy=policy.name,
            key_hash=short_hash(key, 16),
            count=window.count,
            limit=limit,
            block_until=block_until,
        )
        if policy.on_exceeded is not None:
            self._emit_exceeded(policy, request, identity)

        return Decision(
            allowed=False,
            limit=limit,
            remaining=0,
            reset_at=window.window_end,
            blocked=block_until is not None,
            block_until=block_until,
        )

    # =========================================================================
    # Administrative operations
    # =========================================================================

    async def status(self, identity: str, policy: RateLimitPolicy | str) -> Decision:
        """Read-only view of a key: never increments, fails open like check."""
        policy = self._resolve(policy)
        key = scoped_key(policy, identity)
        try:
            block = await self.blocklist.is_blocked(key)
            if block.blocked:
                return self._blocked(policy, block.block_until)
            window = await self.counter.peek(key, policy.window_duration_ms)
        except StoreUnavailable as exc:
            return self._degraded(policy, key, "status", exc)

        return Decision(
            allowed=window.count < policy.max_requests,
            limit=policy.max_requests,
            remaining=max(0, policy.max_requests - window.count),
            reset_at=window.window_end,
        )

    async def reset(self, identity: str, policy: RateLimitPolicy | str) -> None:
        """
        Clear the current window counter and any block for a key.

        Raises:
            StoreUnavailable: the reset could not be applied.
        """
        policy = self._resolve(policy)
        key = scoped_key(policy, identity)
        await self.counter.clear(key, policy.window_duration_ms)
        await self.blocklist.clear(key)
        logger.info("rate_limit.reset", policy=policy.name, key_hash=short_hash(key, 16))

    async def aclose(self) -> None:
        """Wait for exceeded hooks still in flight, cancelling any that overrun."""
        if not self._hook_tasks:
            return

        _, pending = await asyncio.wait(set(self._hook_tasks), timeout=self.hook_timeout_s)
        if pending:
            logger.warning("rate_limit.hooks_abandoned", count=len(pending))
            for task in pending:
                task.cancel()

    # =========================================================================
    # Helpers
    # =========================================================================

    def _should_skip(self, request: RequestSignals, policy: RateLimitPolicy) -> bool:
        if policy.skip_predicate is None:
            return False
        try:
            return bool(policy.skip_predicate(request))
        except Exception as exc:
            logger.warning("rate_limit.skip_predicate_failed", policy=policy.name, error=repr(exc))
            return False

    def _full_quota(self, policy: RateLimitPolicy) -> Decision:
        _, window_end = window_bounds(self._clock(), policy.window_duration_ms)
        return Decision(
            allowed=True,
            limit=policy.max_requests,
            remaining=policy.max_requests,
            reset_at=window_end,
        )

    def _blocked(self, policy: RateLimitPolicy, block_until: int | None) -> Decision:
        _, window_end = window_bounds(self._clock(), policy.window_duration_ms)
        return Decision(
            allowed=False,
            limit=policy.max_requests,
            remaining=0,
            reset_at=window_end,
            blocked=True,
            block_until=block_until,
        )

    def _degraded(
        self,
        policy: RateLimitPolicy,
        key: str,
        operation: str,
        exc: StoreUnavailable,
    ) -> Decision:
        if policy.fail_closed:
            logger.error(
                "rate_limit.fail_closed",
                policy=policy.name,
                operation=operation,
                key_hash=short_hash(key, 16),
                error=str(exc),
            )
            _, window_end = window_bounds(self._clock(), policy.window_duration_ms)
            return Decision(
                allowed=False,
                limit=policy.max_requests,
                remaining=0,
                reset_at=window_end,
            )

        self.fail_open_count += 1
        logger.warning(
            "rate_limit.fail_open",
            policy=policy.name,
            operation=operation,
            key_hash=short_hash(key, 16),
            error=str(exc),
        )
        return self._full_quota(policy)

    def _emit_exceeded(
        self,
        policy: RateLimitPolicy,
        request: RequestSignals,
        identity: str,
    ) -> None:
        task = asyncio.create_task(self._run_hook(policy, request, identity))
        self._hook_tasks.add(task)
        task.add_done_callback(self._hook_tasks.discard)

    async def _run_hook(
        self,
        policy: RateLimitPolicy,
        request: RequestSignals,
        identity: str,
    ) -> None:
        try:
            result = policy.on_exceeded(request, identity)
            if inspect.isawaitable(result):
                await result
        except Exception as exc:
            logger.warning("rate_limit.hook_failed", policy=policy.name, error=repr(exc))
