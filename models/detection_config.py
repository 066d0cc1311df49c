"""
Detection thresholds and toggles.
The configuration is immutable; every change produces a new instance.
"""
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Any, Dict, FrozenSet, Mapping, Tuple

from models.activity import ActivityType
from utils.exceptions import ConfigurationError

DEFAULT_WINDOW_MINUTES = 60

DETECTION_FAILURE_RATE = "failure_rate"
DETECTION_FREQUENCY_ANOMALY = "frequency_anomaly"
DETECTION_PATTERN_ANALYSIS = "pattern_analysis"
DETECTION_IP_REPUTATION = "ip_reputation"
DETECTION_MULTI_USER_IP = "multi_user_ip"

ALL_DETECTIONS: Tuple[str, ...] = (
    DETECTION_FAILURE_RATE,
    DETECTION_FREQUENCY_ANOMALY,
    DETECTION_PATTERN_ANALYSIS,
    DETECTION_IP_REPUTATION,
    DETECTION_MULTI_USER_IP,
)


@dataclass(frozen=True)
class Threshold:
    """Count threshold over a window of minutes."""
    threshold: int
    window_minutes: int = DEFAULT_WINDOW_MINUTES

    def __post_init__(self):
        if self.threshold <= 0:
            raise ConfigurationError("threshold must be positive", value=str(self.threshold))
        if self.window_minutes <= 0:
            raise ConfigurationError("window_minutes must be positive", value=str(self.window_minutes))

    def to_dict(self) -> Dict[str, int]:
        return {"threshold": self.threshold, "window_minutes": self.window_minutes}


def _frozen(mapping: Mapping[str, Threshold]) -> Mapping[str, Threshold]:
    return MappingProxyType(dict(mapping))


DEFAULT_FAILURE_THRESHOLDS = {
    ActivityType.LOGIN_FAILED: Threshold(5),
    ActivityType.PASSWORD_FAILED: Threshold(3),
    ActivityType.POST_PERMISSION_DENIED: Threshold(10),
    ActivityType.ATTACHMENT_VIRUS_DETECTED: Threshold(1),
}

DEFAULT_FREQUENCY_THRESHOLDS = {
    ActivityType.LOGIN_SUCCESS: Threshold(100),
    ActivityType.POST_VIEWED: Threshold(500),
    ActivityType.ATTACHMENT_DOWNLOADED: Threshold(200),
}

DEFAULT_SUSPICIOUS_IP_RANGES: Tuple[str, ...] = (
    "10.0.0.0/24",
    "192.168.0.0/24",
    "127.0.0.0/24",
)


@dataclass(frozen=True)
class DetectionConfig:
    failure_thresholds: Mapping[str, Threshold] = field(
        default_factory=lambda: _frozen(DEFAULT_FAILURE_THRESHOLDS)
    )
    frequency_thresholds: Mapping[str, Threshold] = field(
        default_factory=lambda: _frozen(DEFAULT_FREQUENCY_THRESHOLDS)
    )
    enabled_detections: FrozenSet[str] = frozenset(ALL_DETECTIONS)
    density_threshold: int = 50  # activities per minute
    multi_user_threshold: int = 10
    multi_user_score_divisor: int = 50
    global_failure_rate_threshold: float = 0.2
    global_failure_rate_saturation: float = 0.5
    suspicious_ip_ranges: Tuple[str, ...] = DEFAULT_SUSPICIOUS_IP_RANGES

    @classmethod
    def defaults(cls) -> "DetectionConfig":
        return cls()

    def is_enabled(self, detection: str) -> bool:
        return detection in self.enabled_detections

    def with_failure_threshold(self, action_type: str, threshold: int,
                               window_minutes: int = DEFAULT_WINDOW_MINUTES) -> "DetectionConfig":
        updated = dict(self.failure_thresholds)
        updated[action_type] = Threshold(threshold, window_minutes)
        return replace(self, failure_thresholds=_frozen(updated))

    def with_frequency_threshold(self, action_type: str, threshold: int,
                                 window_minutes: int = DEFAULT_WINDOW_MINUTES) -> "DetectionConfig":
        updated = dict(self.frequency_thresholds)
        updated[action_type] = Threshold(threshold, window_minutes)
        return replace(self, frequency_thresholds=_frozen(updated))

    def with_detection(self, detection: str, enabled: bool) -> "DetectionConfig":
        if detection not in ALL_DETECTIONS:
            raise ConfigurationError(f"Unknown detection type: {detection}", value=detection)
        if enabled:
            detections = self.enabled_detections | {detection}
        else:
            detections = self.enabled_detections - {detection}
        return replace(self, enabled_detections=frozenset(detections))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "failure_thresholds": {k: v.to_dict() for k, v in self.failure_thresholds.items()},
            "frequency_thresholds": {k: v.to_dict() for k, v in self.frequency_thresholds.items()},
            "enabled_detections": sorted(self.enabled_detections),
            "density_threshold": self.density_threshold,
            "multi_user_threshold": self.multi_user_threshold,
            "global_failure_rate_threshold": self.global_failure_rate_threshold,
            "suspicious_ip_ranges": list(self.suspicious_ip_ranges),
        }
