"""
Tests for client IP resolution behind proxies.
"""
import pytest
from starlette.datastructures import Headers

from security.client_identity import ClientIdentityResolver


@pytest.fixture
def resolver():
    return ClientIdentityResolver(["127.0.0.1", "10.0.0.0/8"])


@pytest.mark.security
class TestClientIdentityResolver:

    def test_trusted_proxy_forwarded_for_is_honoured(self, resolver):
        ip = resolver.resolve("10.0.0.5", {"X-Forwarded-For": "203.0.113.9, 10.0.0.5"})
        assert ip == "203.0.113.9"

    def test_repeated_forwarded_for_lines_use_the_first(self, resolver):
        headers = Headers(raw=[
            (b"x-forwarded-for", b"203.0.113.9, 10.0.0.7"),
            (b"x-forwarded-for", b"198.51.100.4"),
        ])
        assert resolver.resolve("10.0.0.5", headers) == "203.0.113.9"

    def test_untrusted_hop_never_uses_forwarded_value(self, resolver):
        ip = resolver.resolve("8.8.8.8", {"X-Forwarded-For": "203.0.113.9, 10.0.0.5"})
        assert ip == "8.8.8.8"

    def test_untrusted_hop_falls_back_to_public_alternate_header(self, resolver):
        ip = resolver.resolve("8.8.8.8", {
            "X-Forwarded-For": "203.0.113.9",
            "CF-Connecting-IP": "1.1.1.1",
        })
        assert ip == "1.1.1.1"

    def test_invalid_forwarded_candidate_is_rejected(self, resolver):
        ip = resolver.resolve("10.0.0.5", {"X-Forwarded-For": "unknown, 10.0.0.5"})
        assert ip == "10.0.0.5"

    def test_header_lookup_is_case_insensitive(self, resolver):
        assert resolver.resolve("10.0.0.5", {"x-forwarded-for": "9.9.9.9"}) == "9.9.9.9"
        assert resolver.resolve("10.0.0.5", {"X-REAL-IP": "8.8.4.4"}) == "8.8.4.4"

    def test_alternate_headers_checked_in_order(self, resolver):
        headers = {
            "X-Real-IP": "9.9.9.9",
            "Client-IP": "8.8.4.4",
            "CF-Connecting-IP": "1.1.1.1",
        }
        assert resolver.resolve("192.0.2.1", headers) == "1.1.1.1"

    def test_private_alternate_header_is_skipped(self, resolver):
        headers = {"CF-Connecting-IP": "192.168.1.20", "X-Real-IP": "8.8.4.4"}
        assert resolver.resolve("192.0.2.1", headers) == "8.8.4.4"

    def test_falls_back_to_remote_addr(self, resolver):
        assert resolver.resolve("192.0.2.1", {}) == "192.0.2.1"

    def test_falls_back_to_loopback_without_remote_addr(self, resolver):
        assert resolver.resolve(None, None) == "127.0.0.1"

    def test_explicit_trusted_proxies_override_configured_list(self, resolver):
        headers = {"X-Forwarded-For": "9.9.9.9"}
        assert resolver.resolve("172.16.0.2", headers) == "172.16.0.2"
        assert resolver.resolve("172.16.0.2", headers, trusted_proxies=["172.16.0.0/12"]) == "9.9.9.9"

    def test_is_trusted_proxy(self, resolver):
        assert resolver.is_trusted_proxy("10.200.1.1")
        assert resolver.is_trusted_proxy("127.0.0.1")
        assert not resolver.is_trusted_proxy("8.8.8.8")
        assert not resolver.is_trusted_proxy(None)
        assert not ClientIdentityResolver().is_trusted_proxy("127.0.0.1")
