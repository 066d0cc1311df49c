"""
Rate limiting models: limit specifications, per-action policies and check results.
"""
from dataclasses import dataclass, asdict
from typing import Any, Dict, Optional


@dataclass(frozen=True)
class LimitSpec:
    """Maximum requests allowed within a fixed window."""
    max_requests: int
    window_seconds: int

    def __post_init__(self):
        if self.max_requests < 0:
            raise ValueError("max_requests must be >= 0")
        if self.window_seconds <= 0:
            raise ValueError("window_seconds must be > 0")


@dataclass(frozen=True)
class LimitPolicy:
    """Independent IP and user limits for one action."""
    ip_limit: LimitSpec
    user_limit: LimitSpec


DEFAULT_ACTION = "default"

DEFAULT_LIMIT_POLICIES: Dict[str, LimitPolicy] = {
    DEFAULT_ACTION: LimitPolicy(LimitSpec(60, 60), LimitSpec(120, 60)),
    "login": LimitPolicy(LimitSpec(5, 300), LimitSpec(3, 300)),  # 5 attempts per 5 minutes
    "register": LimitPolicy(LimitSpec(3, 3600), LimitSpec(1, 3600)),
    "password_reset": LimitPolicy(LimitSpec(5, 3600), LimitSpec(3, 3600)),
    "post_create": LimitPolicy(LimitSpec(10, 300), LimitSpec(20, 300)),
    "api": LimitPolicy(LimitSpec(100, 60), LimitSpec(200, 60)),
}


@dataclass
class RateLimitWindow:
    """Counter state for one scope key. Timestamps are epoch seconds."""
    scope_key: str
    count: int
    window_reset_at: int
    first_request_at: int

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass
class RateLimitResult:
    """Result of a rate limit check."""
    allowed: bool
    limit: int
    remaining: int
    reset_at: int
    window_seconds: int
    scope_key: str
    scope: Optional[str] = None
    error: Optional[str] = None

    @property
    def failed_open(self) -> bool:
        return self.error is not None

    def retry_after(self, now: float) -> int:
        """Seconds until the window resets."""
        return max(0, int(self.reset_at - now))

    def to_headers(self) -> Dict[str, str]:
        """Generate rate limit headers."""
        return {
            "X-RateLimit-Limit": str(self.limit),
            "X-RateLimit-Remaining": str(max(0, self.remaining)),
            "X-RateLimit-Reset": str(self.reset_at),
        }

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)
