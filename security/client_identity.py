"""
Client identity resolution behind reverse proxies and CDNs.

X-Forwarded-For carries the most information but is trivially spoofable, so it is only
honoured when the immediate hop is one of the configured trusted proxies. Single-value
headers set by CDNs are accepted only when they carry a public address.
"""
import logging
from typing import Iterable, List, Mapping, Optional

from security.cidr_matcher import CidrMatcher, is_public_ip, is_valid_ip

logger = logging.getLogger(__name__)

LOOPBACK_ADDRESS = "127.0.0.1"
FORWARDED_FOR_HEADER = "x-forwarded-for"

# Checked in order after X-Forwarded-For has been rejected
ALTERNATE_PROXY_HEADERS = (
    "cf-connecting-ip",  # Cloudflare
    "client-ip",
    "x-real-ip",
    "x-forwarded",
    "forwarded-for",
    "forwarded",
)


class ClientIdentityResolver:
    """Best-effort real client IP from transport metadata."""

    def __init__(self, trusted_proxies: Optional[Iterable[str]] = None):
        self.trusted_proxies: List[str] = list(trusted_proxies or [])

    def is_trusted_proxy(self, remote_addr: Optional[str],
                         trusted_proxies: Optional[Iterable[str]] = None) -> bool:
        """Check if the immediate hop is a configured proxy."""
        proxies = self.trusted_proxies if trusted_proxies is None else list(trusted_proxies)
        if not remote_addr or not proxies:
            return False
        return CidrMatcher.matches_any(remote_addr, proxies)

    def resolve(
        self,
        remote_addr: Optional[str],
        headers: Optional[Mapping[str, str]] = None,
        trusted_proxies: Optional[Iterable[str]] = None,
    ) -> str:
        # First occurrence wins for repeated header lines
        normalized = {}
        for key, value in (headers or {}).items():
            normalized.setdefault(str(key).lower(), str(value))
        remote_addr = (remote_addr or "").strip()

        forwarded_for = normalized.get(FORWARDED_FOR_HEADER)
        if forwarded_for:
            candidate = forwarded_for.split(",")[0].strip()
            if self.is_trusted_proxy(remote_addr, trusted_proxies) and is_valid_ip(candidate):
                return candidate
            logger.debug(
                f"Ignoring X-Forwarded-For from untrusted hop {remote_addr or 'unknown'}",
                extra={"client_ip": remote_addr},
            )

        for header in ALTERNATE_PROXY_HEADERS:
            value = normalized.get(header)
            if value is None:
                continue
            candidate = value.strip()
            if is_public_ip(candidate):
                return candidate

        return remote_addr or LOOPBACK_ADDRESS
