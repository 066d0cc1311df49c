"""
Rule store and activity log access.
Can import from: models
Must NOT import from: services, middleware
"""

from .access_rule_repository import AccessRuleRepository, InMemoryAccessRuleRepository
from .activity_log_repository import ActivityLogRepository, InMemoryActivityLogRepository

__all__ = [
    "AccessRuleRepository",
    "InMemoryAccessRuleRepository",
    "ActivityLogRepository",
    "InMemoryActivityLogRepository",
]
