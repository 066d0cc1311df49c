"""
Multi-scope fixed-window rate limiting.

Each (scope, subject, action) triple has an independent counter. Counter updates are a
single atomic store primitive; when the store is unreachable the check fails open.
"""

import logging
import time
from threading import Lock
from typing import Any, Callable, Dict, Optional

from caching.cache_store import CacheStore
from models.rate_limit import (
    DEFAULT_ACTION,
    DEFAULT_LIMIT_POLICIES,
    LimitPolicy,
    LimitSpec,
    RateLimitResult,
    RateLimitWindow,
)
from monitoring.metrics import MetricsCollector, metrics_collector
from utils.exceptions import ConfigurationError, TransientStoreError

logger = logging.getLogger(__name__)

CACHE_UNAVAILABLE = "cache_unavailable"
KEY_PREFIX = "rate_limit:"


def ip_scope_key(identifier: str, action: str) -> str:
    return f"ip:{identifier}:{action}"


def user_scope_key(user_id: int, action: str) -> str:
    return f"user:{user_id}:{action}"


class RateLimitCounter:
    """Fixed-window counter for a single scope key."""

    def __init__(
        self,
        store: CacheStore,
        clock: Optional[Callable[[], float]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.store = store
        self._clock = clock or time.time
        self.metrics = metrics or metrics_collector

    def now(self) -> int:
        return int(self._clock())

    async def check(self, scope_key: str, limit: LimitSpec, scope: Optional[str] = None) -> RateLimitResult:
        """Consume one slot if the window has room."""
        now = self.now()
        start_time = time.perf_counter()
        try:
            allowed, window = await self.store.consume_fixed_window(
                KEY_PREFIX + scope_key, limit.max_requests, limit.window_seconds, now
            )
        except TransientStoreError as e:
            logger.warning(f"Rate limit store unavailable, allowing request: {e}",
                           extra={"scope_key": scope_key, "error": str(e)})
            self.metrics.record_fail_open("rate_limiter")
            return RateLimitResult(
                allowed=True,
                limit=limit.max_requests,
                remaining=limit.max_requests,
                reset_at=now + limit.window_seconds,
                window_seconds=limit.window_seconds,
                scope_key=scope_key,
                scope=scope,
                error=CACHE_UNAVAILABLE,
            )
        finally:
            self.metrics.observe_rate_limit_check(scope or "unknown", time.perf_counter() - start_time)

        return RateLimitResult(
            allowed=allowed,
            limit=limit.max_requests,
            remaining=max(0, limit.max_requests - window.count),
            reset_at=window.window_reset_at,
            window_seconds=limit.window_seconds,
            scope_key=scope_key,
            scope=scope,
        )

    async def peek(self, scope_key: str) -> Optional[RateLimitWindow]:
        """Current window without consuming a slot; None when absent or expired."""
        try:
            state = await self.store.get(KEY_PREFIX + scope_key)
        except TransientStoreError as e:
            logger.warning(f"Rate limit store unavailable during peek: {e}", extra={"scope_key": scope_key})
            return None
        if not state or self.now() > state["window_reset_at"]:
            return None
        return RateLimitWindow(
            scope_key=scope_key,
            count=state["count"],
            window_reset_at=state["window_reset_at"],
            first_request_at=state["first_request_at"],
        )

    async def reset(self, *scope_keys: str) -> bool:
        try:
            await self.store.delete(*(KEY_PREFIX + key for key in scope_keys))
            return True
        except TransientStoreError as e:
            logger.error(f"Failed to reset rate limit counters {scope_keys}: {e}")
            return False


class RateLimiter:
    """Per-action policies applied to an IP scope and an optional user scope."""

    def __init__(
        self,
        counter: RateLimitCounter,
        policies: Optional[Dict[str, LimitPolicy]] = None,
    ):
        self.counter = counter
        self._policies: Dict[str, LimitPolicy] = dict(policies or DEFAULT_LIMIT_POLICIES)
        if DEFAULT_ACTION not in self._policies:
            raise ConfigurationError("Rate limit policies require a 'default' entry", value=DEFAULT_ACTION)
        self._lock = Lock()

    def get_policy(self, action: str) -> LimitPolicy:
        policies = self._policies
        return policies.get(action, policies[DEFAULT_ACTION])

    def set_policy(self, action: str, policy: LimitPolicy) -> None:
        with self._lock:
            updated = dict(self._policies)
            updated[action] = policy
            self._policies = updated
        logger.info(f"Rate limit policy for '{action}' set to ip={policy.ip_limit} user={policy.user_limit}")

    def policies(self) -> Dict[str, LimitPolicy]:
        return dict(self._policies)

    async def check_limit(self, identifier: str, action: str = DEFAULT_ACTION,
                          user_id: Optional[int] = None) -> RateLimitResult:
        """
        Check the user scope (when authenticated) and then the IP scope.

        A user-scope denial returns immediately and leaves the IP counter untouched.
        """
        policy = self.get_policy(action)

        if user_id is not None:
            user_result = await self.counter.check(user_scope_key(user_id, action), policy.user_limit, scope="user")
            if not user_result.allowed:
                logger.warning(
                    f"Rate limit exceeded for user {user_id} on '{action}'",
                    extra={"user_id": user_id, "action": action, "scope_key": user_result.scope_key},
                )
                return user_result

        ip_result = await self.counter.check(ip_scope_key(identifier, action), policy.ip_limit, scope="ip")
        if not ip_result.allowed:
            logger.warning(
                f"Rate limit exceeded for {identifier} on '{action}'",
                extra={"client_ip": identifier, "action": action, "scope_key": ip_result.scope_key},
            )
        return ip_result

    async def clear_limit(self, identifier: str, action: str = DEFAULT_ACTION,
                          user_id: Optional[int] = None) -> bool:
        keys = [ip_scope_key(identifier, action)]
        if user_id is not None:
            keys.append(user_scope_key(user_id, action))
        return await self.counter.reset(*keys)

    async def get_limit_status(self, identifier: str, action: str = DEFAULT_ACTION,
                               user_id: Optional[int] = None) -> Dict[str, Optional[Dict[str, Any]]]:
        """Counter state per scope without consuming a slot."""
        policy = self.get_policy(action)
        status: Dict[str, Optional[Dict[str, Any]]] = {"ip": None, "user": None}

        ip_window = await self.counter.peek(ip_scope_key(identifier, action))
        if ip_window:
            status["ip"] = self._status_entry(ip_window, policy.ip_limit)

        if user_id is not None:
            user_window = await self.counter.peek(user_scope_key(user_id, action))
            if user_window:
                status["user"] = self._status_entry(user_window, policy.user_limit)

        return status

    @staticmethod
    def _status_entry(window: RateLimitWindow, limit: LimitSpec) -> Dict[str, Any]:
        return {
            "count": window.count,
            "limit": limit.max_requests,
            "remaining": max(0, limit.max_requests - window.count),
            "reset": window.window_reset_at,
        }

    @staticmethod
    def resolve_action(path: str, method: str = "GET") -> str:
        """Map a request path to a policy name."""
        if "/auth/login" in path:
            return "login"
        if "/auth/register" in path:
            return "register"
        if "/auth/password-reset" in path:
            return "password_reset"
        if path.startswith("/api/"):
            return "api"
        if method.upper() == "POST" and "/posts" in path:
            return "post_create"
        return DEFAULT_ACTION
