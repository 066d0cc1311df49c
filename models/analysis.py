"""
Suspicious-activity analysis models.
"""
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum, IntEnum
from typing import Any, Dict, List, Optional
from uuid import uuid4


class Severity(IntEnum):
    """Ordered severity levels; compare and max() directly."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3
    CRITICAL = 4

    @property
    def label(self) -> str:
        return self.name.lower()

    @classmethod
    def from_label(cls, label: str) -> "Severity":
        return cls[label.upper()]


class TargetType(str, Enum):
    """What an analysis run looked at."""
    USER = "user"
    IP = "ip"
    GLOBAL = "global"


@dataclass(frozen=True)
class RuleMatch:
    """One triggered detection rule."""
    type: str
    message: str
    threshold: float
    actual: float
    action_type: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "type": self.type,
            "message": self.message,
            "threshold": self.threshold,
            "actual": self.actual,
        }
        if self.action_type is not None:
            data["action_type"] = self.action_type
        return data


@dataclass(frozen=True)
class RuleOutcome:
    """What a single detection rule concluded."""
    suspicious: bool
    severity: Severity = Severity.LOW
    matches: List[RuleMatch] = field(default_factory=list)
    scores: Dict[str, float] = field(default_factory=dict)
    confidence: float = 0.0

    @classmethod
    def negative(cls) -> "RuleOutcome":
        return cls(suspicious=False)


@dataclass(frozen=True)
class AnalysisResult:
    """Outcome of one detection run over a window of activity."""
    target_type: TargetType
    target_id: Optional[str]
    window_minutes: int
    is_suspicious: bool = False
    severity: Severity = Severity.LOW
    activity_counts: Dict[str, int] = field(default_factory=dict)
    failure_counts: Dict[str, int] = field(default_factory=dict)
    anomaly_scores: Dict[str, float] = field(default_factory=dict)
    matched_rules: List[RuleMatch] = field(default_factory=list)
    confidence: float = 0.0
    recommended_action: Optional[str] = None
    metadata: Dict[str, Any] = field(default_factory=dict)
    analysis_id: str = field(default_factory=lambda: str(uuid4()))
    analyzed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def total_activity_count(self) -> int:
        return sum(self.activity_counts.values())

    @property
    def total_failure_count(self) -> int:
        return sum(self.failure_counts.values())

    @property
    def failure_rate(self) -> float:
        total = self.total_activity_count
        if total == 0:
            return 0.0
        return self.total_failure_count / total

    @property
    def max_anomaly_score(self) -> float:
        if not self.anomaly_scores:
            return 0.0
        return max(self.anomaly_scores.values())

    @property
    def requires_immediate_action(self) -> bool:
        return self.is_suspicious and self.severity >= Severity.HIGH

    def rule_types(self) -> List[str]:
        return [match.type for match in self.matched_rules]

    def summary(self) -> str:
        """Human-readable one-line summary."""
        if self.target_type == TargetType.GLOBAL:
            target = "Global activity"
        else:
            target = f"{self.target_type.value} {self.target_id}"
        status = "suspicious" if self.is_suspicious else "normal"
        return (
            f"{target} over the last {self.window_minutes} minutes: {status} "
            f"(activities: {self.total_activity_count}, failures: {self.total_failure_count}, "
            f"severity: {self.severity.label})"
        )

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON serialization."""
        return {
            "analysis_id": self.analysis_id,
            "target_type": self.target_type.value,
            "target_id": self.target_id,
            "window_minutes": self.window_minutes,
            "is_suspicious": self.is_suspicious,
            "severity": self.severity.label,
            "activity_counts": dict(self.activity_counts),
            "failure_counts": dict(self.failure_counts),
            "anomaly_scores": dict(self.anomaly_scores),
            "matched_rules": [match.to_dict() for match in self.matched_rules],
            "confidence": self.confidence,
            "recommended_action": self.recommended_action,
            "metadata": dict(self.metadata),
            "analyzed_at": self.analyzed_at.isoformat(),
            "requires_immediate_action": self.requires_immediate_action,
            "summary": self.summary(),
        }
