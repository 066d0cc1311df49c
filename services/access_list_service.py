"""
IP allow/block list.

Policy: an explicit allow entry permits, otherwise an explicit block entry denies,
otherwise the request is permitted. Gate decisions always scan the rule repository;
single-rule lookups and per-type listings are served through the cache.
"""

import logging
from typing import List, Optional

from caching.cache_store import CacheStore
from models.access_rule import AccessCheckResult, AccessDecision, AccessRule, RuleType
from monitoring.metrics import MetricsCollector, metrics_collector
from repositories.access_rule_repository import AccessRuleRepository
from security.cidr_matcher import CidrMatcher, normalize_rule, parse_ip
from utils.exceptions import ConfigurationError, InvalidInputError, TransientStoreError

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL = 3600  # 1 hour


class AccessListService:
    """Allow/block list lookups and maintenance."""

    def __init__(
        self,
        repository: AccessRuleRepository,
        cache: CacheStore,
        cache_ttl: int = DEFAULT_CACHE_TTL,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self.cache = cache
        self.cache_ttl = cache_ttl
        self.metrics = metrics or metrics_collector

    # Cache keys

    @staticmethod
    def _id_key(rule_id: int) -> str:
        return f"ip_list:id:{rule_id}"

    @staticmethod
    def _uuid_key(uuid: str) -> str:
        return f"ip_list:uuid:{uuid}"

    @staticmethod
    def _ip_key(cidr_or_ip: str) -> str:
        return f"ip_list:ip:{cidr_or_ip}"

    @staticmethod
    def _type_key(rule_type: RuleType) -> str:
        return f"ip_lists:type:{rule_type.value}"

    def _rule_keys(self, rule: AccessRule) -> List[str]:
        keys = [self._uuid_key(rule.uuid), self._ip_key(rule.cidr_or_ip), self._type_key(rule.rule_type)]
        if rule.id is not None:
            keys.append(self._id_key(rule.id))
        return keys

    async def _invalidate(self, *rules: Optional[AccessRule]) -> None:
        keys = set()
        for rule in rules:
            if rule is not None:
                keys.update(self._rule_keys(rule))
        if not keys:
            return
        try:
            await self.cache.delete(*sorted(keys))
        except TransientStoreError as e:
            logger.error(f"Access rule cache invalidation failed: {e}")

    async def _cached_rule(self, key: str, loader) -> Optional[AccessRule]:
        async def _load():
            rule = await loader()
            return rule.model_dump(mode="json") if rule else None

        try:
            data = await self.cache.remember(key, self.cache_ttl, _load)
        except TransientStoreError as e:
            logger.warning(f"Access rule cache unavailable, reading repository directly: {e}")
            data = await _load()
        return AccessRule.model_validate(data) if data else None

    # Gate checks

    @staticmethod
    def _require_ip(ip: str) -> str:
        address = parse_ip(ip)
        if address is None:
            raise InvalidInputError(f"Invalid IP address: {ip!r}", value=ip)
        return str(address)

    async def _matches_type(self, ip: str, rule_type: RuleType) -> bool:
        rules = await self.repository.get_by_type(rule_type)
        return CidrMatcher.matches_any(ip, (rule.cidr_or_ip for rule in rules))

    async def is_allowed(self, ip: str) -> bool:
        """True when an allow entry covers the address."""
        return await self._matches_type(self._require_ip(ip), RuleType.ALLOW)

    async def is_blocked(self, ip: str) -> bool:
        """True when a block entry covers the address."""
        return await self._matches_type(self._require_ip(ip), RuleType.BLOCK)

    async def evaluate(self, ip: str) -> AccessCheckResult:
        """
        Gate decision for an address.

        A rule-store outage permits the request and is logged; a malformed address is
        rejected with InvalidInputError.
        """
        ip = self._require_ip(ip)
        try:
            rules = await self.repository.get_all()
        except Exception as e:
            logger.error(f"Access rule store unavailable, permitting request: {e}",
                         extra={"client_ip": ip, "error": str(e)})
            self.metrics.record_fail_open("access_list")
            return AccessCheckResult(decision=AccessDecision.PERMIT, reason="rule_store_unavailable", ip=ip)

        allow = [r.cidr_or_ip for r in rules if r.rule_type == RuleType.ALLOW]
        if CidrMatcher.matches_any(ip, allow):
            return AccessCheckResult(decision=AccessDecision.PERMIT, reason="allow_listed", ip=ip)

        block = [r.cidr_or_ip for r in rules if r.rule_type == RuleType.BLOCK]
        if CidrMatcher.matches_any(ip, block):
            logger.warning(f"Blocked address {ip}", extra={"client_ip": ip})
            return AccessCheckResult(decision=AccessDecision.DENY, reason="block_listed", ip=ip)

        return AccessCheckResult(decision=AccessDecision.PERMIT, reason="default_permit", ip=ip)

    # Maintenance

    async def upsert_rule(self, rule: AccessRule) -> AccessRule:
        """Create the rule, or update it when it carries the id of an existing rule."""
        canonical = normalize_rule(rule.cidr_or_ip)
        if canonical is None:
            raise ConfigurationError(f"Invalid IP address or CIDR block: {rule.cidr_or_ip!r}",
                                     value=rule.cidr_or_ip)
        # Literals are matched by string equality, so rules are stored in canonical form
        rule = rule.model_copy(update={"cidr_or_ip": canonical})

        existing = await self.repository.find(rule.id) if rule.id is not None else None
        if existing is None:
            stored = await self.repository.create(rule)
            logger.info(f"Created {stored.rule_type.value} rule {stored.cidr_or_ip}")
        else:
            stored = await self.repository.update(existing.id, rule)
            logger.info(f"Updated access rule {existing.id}: {existing.cidr_or_ip} -> {stored.cidr_or_ip}")

        await self._invalidate(existing, stored)
        return stored

    async def delete_rule(self, rule_id: int) -> bool:
        existing = await self.repository.find(rule_id)
        if existing is None:
            return False

        deleted = await self.repository.delete(rule_id)
        if deleted:
            await self._invalidate(existing)
            logger.info(f"Deleted access rule {rule_id} ({existing.cidr_or_ip})")
        return deleted

    async def find_rule(self, rule_id: int) -> Optional[AccessRule]:
        return await self._cached_rule(self._id_key(rule_id), lambda: self.repository.find(rule_id))

    async def find_rule_by_uuid(self, uuid: str) -> Optional[AccessRule]:
        return await self._cached_rule(self._uuid_key(uuid), lambda: self.repository.find_by_uuid(uuid))

    async def find_rule_by_ip(self, cidr_or_ip: str) -> Optional[AccessRule]:
        cidr_or_ip = normalize_rule(cidr_or_ip) or cidr_or_ip
        return await self._cached_rule(self._ip_key(cidr_or_ip),
                                       lambda: self.repository.find_by_ip(cidr_or_ip))

    async def list_by_type(self, rule_type: RuleType) -> List[AccessRule]:
        async def _load():
            rules = await self.repository.get_by_type(rule_type)
            return [rule.model_dump(mode="json") for rule in rules]

        key = self._type_key(rule_type)
        try:
            data = await self.cache.remember(key, self.cache_ttl, _load)
        except TransientStoreError as e:
            logger.warning(f"Access rule cache unavailable, reading repository directly: {e}")
            data = await _load()
        return [AccessRule.model_validate(item) for item in data or []]
