"""
Allow/block list entries.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Optional
from uuid import uuid4

from pydantic import BaseModel, Field


class RuleType(str, Enum):
    """Access rule kind."""
    ALLOW = "allow"
    BLOCK = "block"


class AccessDecision(str, Enum):
    """Outcome of the access-list gate."""
    PERMIT = "permit"
    DENY = "deny"


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AccessRule(BaseModel):
    """
    An allow or block entry for a literal address or a CIDR block.

    The address format is checked by the access list when the rule is written.
    """

    id: Optional[int] = None
    uuid: str = Field(default_factory=lambda: str(uuid4()))
    cidr_or_ip: str = Field(..., min_length=1, max_length=64)
    rule_type: RuleType
    scope_unit_id: Optional[int] = None
    description: Optional[str] = Field(None, max_length=255)
    created_at: datetime = Field(default_factory=_utcnow)
    updated_at: datetime = Field(default_factory=_utcnow)


class AccessCheckResult(BaseModel):
    """Gate decision together with the reason it was reached."""

    decision: AccessDecision
    reason: str
    ip: str

    @property
    def permitted(self) -> bool:
        return self.decision == AccessDecision.PERMIT
