"""
Storage contract for allow/block rules, with an in-process implementation.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from typing import Dict, List, Optional

from models.access_rule import AccessRule, RuleType

logger = logging.getLogger(__name__)


class AccessRuleRepository(ABC):
    """Persistent store of access rules. Lookups return copies."""

    @abstractmethod
    async def get_all(self) -> List[AccessRule]:
        pass

    @abstractmethod
    async def get_by_type(self, rule_type: RuleType) -> List[AccessRule]:
        pass

    @abstractmethod
    async def find(self, rule_id: int) -> Optional[AccessRule]:
        pass

    @abstractmethod
    async def find_by_uuid(self, uuid: str) -> Optional[AccessRule]:
        pass

    @abstractmethod
    async def find_by_ip(self, cidr_or_ip: str) -> Optional[AccessRule]:
        pass

    @abstractmethod
    async def create(self, rule: AccessRule) -> AccessRule:
        pass

    @abstractmethod
    async def update(self, rule_id: int, rule: AccessRule) -> Optional[AccessRule]:
        pass

    @abstractmethod
    async def delete(self, rule_id: int) -> bool:
        pass


class InMemoryAccessRuleRepository(AccessRuleRepository):
    """Dictionary-backed repository used in development and tests."""

    def __init__(self, rules: Optional[List[AccessRule]] = None):
        self._rules: Dict[int, AccessRule] = {}
        self._next_id = 1
        self._lock = asyncio.Lock()
        for rule in rules or []:
            self._insert(rule)

    def _insert(self, rule: AccessRule) -> AccessRule:
        stored = rule.model_copy(update={"id": self._next_id})
        self._rules[self._next_id] = stored
        self._next_id += 1
        return stored.model_copy()

    async def get_all(self) -> List[AccessRule]:
        return [rule.model_copy() for rule in self._rules.values()]

    async def get_by_type(self, rule_type: RuleType) -> List[AccessRule]:
        return [rule.model_copy() for rule in self._rules.values() if rule.rule_type == rule_type]

    async def find(self, rule_id: int) -> Optional[AccessRule]:
        rule = self._rules.get(rule_id)
        return rule.model_copy() if rule else None

    async def find_by_uuid(self, uuid: str) -> Optional[AccessRule]:
        for rule in self._rules.values():
            if rule.uuid == uuid:
                return rule.model_copy()
        return None

    async def find_by_ip(self, cidr_or_ip: str) -> Optional[AccessRule]:
        for rule in self._rules.values():
            if rule.cidr_or_ip == cidr_or_ip:
                return rule.model_copy()
        return None

    async def create(self, rule: AccessRule) -> AccessRule:
        async with self._lock:
            return self._insert(rule)

    async def update(self, rule_id: int, rule: AccessRule) -> Optional[AccessRule]:
        async with self._lock:
            existing = self._rules.get(rule_id)
            if existing is None:
                return None
            stored = rule.model_copy(update={
                "id": rule_id,
                "uuid": existing.uuid,
                "created_at": existing.created_at,
                "updated_at": datetime.now(timezone.utc),
            })
            self._rules[rule_id] = stored
            return stored.model_copy()

    async def delete(self, rule_id: int) -> bool:
        async with self._lock:
            return self._rules.pop(rule_id, None) is not None
