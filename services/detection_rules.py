"""
Threshold-based detection rules.

Every rule takes the scanned activity window and a configuration snapshot and returns a
RuleOutcome. Rules are pure functions; the detector decides which ones run.
"""

import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Mapping, Optional, Tuple

from models.activity import ActivityRecord
from models.analysis import RuleMatch, RuleOutcome, Severity, TargetType
from models.detection_config import (
    DETECTION_FAILURE_RATE,
    DETECTION_FREQUENCY_ANOMALY,
    DETECTION_IP_REPUTATION,
    DETECTION_MULTI_USER_IP,
    DETECTION_PATTERN_ANALYSIS,
    DetectionConfig,
    Threshold,
)
from security.cidr_matcher import CidrMatcher

logger = logging.getLogger(__name__)

FAILURE_RATE_THRESHOLD = "failure_rate_threshold"
FREQUENCY_THRESHOLD = "frequency_threshold"
HIGH_DENSITY_PATTERN = "high_density_pattern"
SUSPICIOUS_IP_RANGE = "suspicious_ip_range"
MULTIPLE_USERS_SAME_IP = "multiple_users_same_ip"
GLOBAL_HIGH_FAILURE_RATE = "global_high_failure_rate"


@dataclass
class ActivityWindow:
    """Activity scanned for one target, with per-action counts."""
    target_type: TargetType
    target_id: Optional[str]
    window_minutes: int
    records: List[ActivityRecord] = field(default_factory=list)
    activity_counts: Dict[str, int] = field(default_factory=dict)
    failure_counts: Dict[str, int] = field(default_factory=dict)

    @classmethod
    def scan(cls, target_type: TargetType, target_id: Optional[str], window_minutes: int,
             records: List[ActivityRecord]) -> "ActivityWindow":
        activity_counts: Dict[str, int] = {}
        failure_counts: Dict[str, int] = {}
        for record in records:
            activity_counts[record.action_type] = activity_counts.get(record.action_type, 0) + 1
            if record.is_failure:
                failure_counts[record.action_type] = failure_counts.get(record.action_type, 0) + 1
        return cls(target_type, target_id, window_minutes, list(records), activity_counts, failure_counts)

    def unique_user_ids(self) -> set:
        return {r.actor_user_id for r in self.records if r.actor_user_id}


def severity_by_failures(failures: int, threshold: int) -> Severity:
    ratio = failures / threshold
    if ratio >= 3.0:
        return Severity.CRITICAL
    if ratio >= 2.0:
        return Severity.HIGH
    if ratio >= 1.5:
        return Severity.MEDIUM
    return Severity.LOW


def severity_by_frequency(count: int, threshold: int) -> Severity:
    ratio = count / threshold
    if ratio >= 2.0:
        return Severity.HIGH
    if ratio >= 1.5:
        return Severity.MEDIUM
    return Severity.LOW


def is_login_action(action_type: Optional[str]) -> bool:
    return bool(action_type) and "login" in action_type


def _matching_thresholds(table: Mapping[str, Threshold], window_minutes: int) -> List[Tuple[str, Threshold]]:
    # Only thresholds configured for exactly this window apply
    return [(action, t) for action, t in table.items() if t.window_minutes == window_minutes]


def failure_rate_rule(window: ActivityWindow, config: DetectionConfig) -> RuleOutcome:
    matches: List[RuleMatch] = []
    scores: Dict[str, float] = {}
    severity = Severity.LOW
    confidence = 0.0

    for action_type, t in _matching_thresholds(config.failure_thresholds, window.window_minutes):
        failures = window.failure_counts.get(action_type, 0)
        if failures < t.threshold:
            continue

        match_severity = severity_by_failures(failures, t.threshold)
        if is_login_action(action_type):
            match_severity = max(match_severity, Severity.MEDIUM)

        matches.append(RuleMatch(
            type=FAILURE_RATE_THRESHOLD,
            message=f"Failures for {action_type} exceeded threshold",
            threshold=t.threshold,
            actual=failures,
            action_type=action_type,
        ))
        scores[action_type] = min(1.0, failures / t.threshold)
        severity = max(severity, match_severity)
        confidence = max(confidence, min(1.0, failures / (t.threshold * 2)))

    if not matches:
        return RuleOutcome.negative()
    return RuleOutcome(True, severity, matches, scores, confidence)


def frequency_anomaly_rule(window: ActivityWindow, config: DetectionConfig) -> RuleOutcome:
    matches: List[RuleMatch] = []
    severity = Severity.LOW
    score = 0.0
    confidence = 0.0

    for action_type, t in _matching_thresholds(config.frequency_thresholds, window.window_minutes):
        count = window.activity_counts.get(action_type, 0)
        if count < t.threshold:
            continue

        matches.append(RuleMatch(
            type=FREQUENCY_THRESHOLD,
            message=f"Unusually high frequency of {action_type}",
            threshold=t.threshold,
            actual=count,
            action_type=action_type,
        ))
        severity = max(severity, severity_by_frequency(count, t.threshold))
        score = max(score, min(1.0, count / t.threshold))
        confidence = max(confidence, min(1.0, count / (t.threshold * 1.5)))

    if not matches:
        return RuleOutcome.negative()
    return RuleOutcome(True, severity, matches, {"frequency": score}, confidence)


def pattern_analysis_rule(window: ActivityWindow, config: DetectionConfig) -> RuleOutcome:
    buckets = Counter(
        r.occurred_at.replace(second=0, microsecond=0) for r in window.records
    )
    max_density = max(buckets.values(), default=0)
    if max_density <= config.density_threshold:
        return RuleOutcome.negative()

    match = RuleMatch(
        type=HIGH_DENSITY_PATTERN,
        message="Activity density within one minute is abnormally high",
        threshold=config.density_threshold,
        actual=max_density,
    )
    return RuleOutcome(True, Severity.MEDIUM, [match], {"pattern": min(1.0, max_density / 100)}, 0.7)


def ip_reputation_rule(window: ActivityWindow, config: DetectionConfig) -> RuleOutcome:
    ip = window.target_id
    if not ip or not CidrMatcher.matches_any(ip, config.suspicious_ip_ranges):
        return RuleOutcome.negative()

    match = RuleMatch(
        type=SUSPICIOUS_IP_RANGE,
        message=f"IP address {ip} is within a suspicious range",
        threshold=1,
        actual=1,
    )
    return RuleOutcome(True, Severity.HIGH, [match], {"ip_reputation": 0.9}, 0.9)


def multi_user_ip_rule(window: ActivityWindow, config: DetectionConfig) -> RuleOutcome:
    user_count = len(window.unique_user_ids())
    if user_count <= config.multi_user_threshold:
        return RuleOutcome.negative()

    match = RuleMatch(
        type=MULTIPLE_USERS_SAME_IP,
        message=f"{user_count} distinct users active from a single IP address",
        threshold=config.multi_user_threshold,
        actual=user_count,
    )
    score = min(1.0, user_count / config.multi_user_score_divisor)
    return RuleOutcome(True, Severity.MEDIUM, [match], {"multi_user": score}, 0.8)


Rule = Callable[[ActivityWindow, DetectionConfig], RuleOutcome]

# Execution order is the order matches appear in a result
USER_RULES: Tuple[Tuple[str, Rule], ...] = (
    (DETECTION_FAILURE_RATE, failure_rate_rule),
    (DETECTION_FREQUENCY_ANOMALY, frequency_anomaly_rule),
    (DETECTION_PATTERN_ANALYSIS, pattern_analysis_rule),
)

IP_RULES: Tuple[Tuple[str, Rule], ...] = (
    (DETECTION_FAILURE_RATE, failure_rate_rule),
    (DETECTION_IP_REPUTATION, ip_reputation_rule),
    (DETECTION_MULTI_USER_IP, multi_user_ip_rule),
)
