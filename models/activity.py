"""
Activity record models consumed by the suspicious-activity detector.
Records are validated here, at the logging boundary, and are immutable afterwards.
"""
from datetime import datetime, timezone
from enum import Enum
from typing import Dict, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, field_validator

MAX_METADATA_KEYS = 32
MAX_METADATA_STRING_LENGTH = 1024

MetadataValue = Union[str, int, float, bool, None]


class ActivityStatus(str, Enum):
    """Outcome of a logged action."""
    SUCCESS = "success"
    FAILED = "failed"
    ERROR = "error"
    BLOCKED = "blocked"


FAILURE_STATUSES = frozenset({ActivityStatus.FAILED, ActivityStatus.ERROR, ActivityStatus.BLOCKED})


class ActivityType:
    """Well-known action types used by the default detection thresholds."""
    LOGIN_SUCCESS = "auth.login.success"
    LOGIN_FAILED = "auth.login.failed"
    PASSWORD_FAILED = "auth.password.failed"
    POST_VIEWED = "post.viewed"
    POST_PERMISSION_DENIED = "post.permission_denied"
    ATTACHMENT_DOWNLOADED = "attachment.downloaded"
    ATTACHMENT_VIRUS_DETECTED = "attachment.virus_detected"


class ActivityRecord(BaseModel):
    """A single logged action."""

    model_config = ConfigDict(frozen=True)

    actor_user_id: Optional[int] = None
    source_ip: str
    action_type: str = Field(..., min_length=1, max_length=100)
    status: ActivityStatus = ActivityStatus.SUCCESS
    occurred_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, MetadataValue] = Field(default_factory=dict)

    @field_validator("metadata")
    @classmethod
    def validate_metadata(cls, v):
        """Bounded map of scalar values."""
        if len(v) > MAX_METADATA_KEYS:
            raise ValueError(f"metadata may hold at most {MAX_METADATA_KEYS} keys")
        for key, value in v.items():
            if isinstance(value, str) and len(value) > MAX_METADATA_STRING_LENGTH:
                raise ValueError(f"metadata value for '{key}' is too long")
        return v

    @property
    def is_failure(self) -> bool:
        return self.status in FAILURE_STATUSES


class ActivityStatistic(BaseModel):
    """Aggregated counts for one action type over a time range."""

    model_config = ConfigDict(frozen=True)

    action_type: str
    total_count: int = Field(default=0, ge=0)
    failure_count: int = Field(default=0, ge=0)
