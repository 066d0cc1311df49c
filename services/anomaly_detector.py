"""
Suspicious-activity detection over the activity log.

Runs are read-only: each takes a snapshot of the detection configuration, scans the
activity window for its target and produces exactly one AnalysisResult. Failures inside a
run are converted into a neutral result and never reach the caller.
"""

import logging
from dataclasses import replace
from datetime import datetime, timedelta, timezone
from threading import Lock
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from models.analysis import AnalysisResult, RuleMatch, Severity, TargetType
from models.detection_config import ALL_DETECTIONS, DEFAULT_WINDOW_MINUTES, DetectionConfig
from monitoring.metrics import MetricsCollector, metrics_collector
from repositories.activity_log_repository import ActivityLogRepository
from security.cidr_matcher import is_valid_ip
from services.detection_rules import (
    GLOBAL_HIGH_FAILURE_RATE,
    IP_RULES,
    USER_RULES,
    ActivityWindow,
    Rule,
)
from services.remediation_advisor import ACTION_INVESTIGATE_SYSTEM, RemediationAdvisor
from utils.exceptions import DetectionRuntimeError, InvalidInputError

logger = logging.getLogger(__name__)

ResultSink = Callable[[AnalysisResult], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class AnomalyDetector:
    """Threshold-based detector for users, IP addresses and global activity."""

    def __init__(
        self,
        repository: ActivityLogRepository,
        config: Optional[DetectionConfig] = None,
        result_sink: Optional[ResultSink] = None,
        clock: Optional[Callable[[], datetime]] = None,
        metrics: Optional[MetricsCollector] = None,
    ):
        self.repository = repository
        self._config = config or DetectionConfig.defaults()
        self._config_lock = Lock()
        self.result_sink = result_sink
        self._clock = clock or _utcnow
        self.metrics = metrics or metrics_collector

    @property
    def config(self) -> DetectionConfig:
        with self._config_lock:
            return self._config

    def _swap_config(self, update: Callable[[DetectionConfig], DetectionConfig]) -> DetectionConfig:
        with self._config_lock:
            self._config = update(self._config)
            return self._config

    # Analysis

    async def analyze_user(self, user_id: int, window_minutes: int = DEFAULT_WINDOW_MINUTES) -> AnalysisResult:
        self._require_window(window_minutes)
        return await self._analyze(
            TargetType.USER,
            str(user_id),
            window_minutes,
            lambda start, end: self.repository.find_by_user_and_time_range(user_id, start, end),
            USER_RULES,
        )

    async def analyze_ip(self, ip: str, window_minutes: int = DEFAULT_WINDOW_MINUTES) -> AnalysisResult:
        if not is_valid_ip(ip):
            raise InvalidInputError(f"Invalid IP address: {ip!r}", value=ip)
        self._require_window(window_minutes)
        ip = ip.strip()
        return await self._analyze(
            TargetType.IP,
            ip,
            window_minutes,
            lambda start, end: self.repository.find_by_ip_and_time_range(ip, start, end),
            IP_RULES,
        )

    async def analyze_global(self, window_minutes: int = DEFAULT_WINDOW_MINUTES) -> List[AnalysisResult]:
        """Global failure-rate check across all actors. Returns [] when nothing stands out or on error."""
        self._require_window(window_minutes)
        config = self.config
        end = self._clock()
        start = end - timedelta(minutes=window_minutes)

        try:
            statistics = await self.repository.get_activity_statistics(start, end)
            total = sum(s.total_count for s in statistics)
            failures = sum(s.failure_count for s in statistics)

            results: List[AnalysisResult] = []
            if total > 0:
                rate = failures / total
                if rate > config.global_failure_rate_threshold:
                    results.append(AnalysisResult(
                        target_type=TargetType.GLOBAL,
                        target_id=None,
                        window_minutes=window_minutes,
                        is_suspicious=True,
                        severity=Severity.HIGH,
                        activity_counts={"total": total},
                        failure_counts={"total": failures},
                        anomaly_scores={"global_failure_rate": rate},
                        matched_rules=[RuleMatch(
                            type=GLOBAL_HIGH_FAILURE_RATE,
                            message="Global failure rate is abnormally high",
                            threshold=config.global_failure_rate_threshold,
                            actual=rate,
                        )],
                        confidence=min(1.0, rate / config.global_failure_rate_saturation),
                        recommended_action=ACTION_INVESTIGATE_SYSTEM,
                        metadata={
                            "detection_type": "global_failure_rate",
                            "total_activities": total,
                            "total_failures": failures,
                            "detection_timestamp": end.isoformat(),
                        },
                        analyzed_at=end,
                    ))
        except Exception as e:
            logger.error(f"Global suspicious pattern detection failed: {e}",
                         extra={"target_type": TargetType.GLOBAL.value, "error": str(e)}, exc_info=True)
            self.metrics.record_detection_run(TargetType.GLOBAL.value, "error")
            return []

        self.metrics.record_detection_run(TargetType.GLOBAL.value, "suspicious" if results else "clean")
        for result in results:
            await self._emit(result)
        return results

    async def _analyze(
        self,
        target_type: TargetType,
        target_id: str,
        window_minutes: int,
        fetch: Callable[[datetime, datetime], Awaitable[list]],
        rules: Sequence[Tuple[str, Rule]],
    ) -> AnalysisResult:
        config = self.config
        end = self._clock()
        start = end - timedelta(minutes=window_minutes)
        logger.info(f"Starting suspicious activity detection for {target_type.value} {target_id}",
                    extra={"target_type": target_type.value, "target_id": target_id})

        try:
            records = await fetch(start, end)
            window = ActivityWindow.scan(target_type, target_id, window_minutes, records)
            result = self._evaluate(window, rules, config, end)
            outcome = "suspicious" if result.is_suspicious else "clean"
        except Exception as e:
            error = DetectionRuntimeError(str(e), target_type=target_type.value, target_id=target_id)
            logger.error(
                f"Suspicious activity detection failed for {target_type.value} {target_id}: {e}",
                extra={"target_type": target_type.value, "target_id": target_id, "error": str(e)},
                exc_info=True,
            )
            result = AnalysisResult(
                target_type=target_type,
                target_id=target_id,
                window_minutes=window_minutes,
                metadata={"error": str(e), "error_code": error.error_code},
                analyzed_at=end,
            )
            outcome = "error"

        self.metrics.record_detection_run(target_type.value, outcome)
        await self._emit(result)
        return result

    @staticmethod
    def _evaluate(window: ActivityWindow, rules: Sequence[Tuple[str, Rule]],
                  config: DetectionConfig, now: datetime) -> AnalysisResult:
        is_suspicious = False
        severity = Severity.LOW
        confidence = 0.0
        matches: List[RuleMatch] = []
        scores: Dict[str, float] = {}

        for detection, rule in rules:
            if not config.is_enabled(detection):
                continue
            outcome = rule(window, config)
            if not outcome.suspicious:
                continue
            is_suspicious = True
            severity = max(severity, outcome.severity)
            confidence = max(confidence, outcome.confidence)
            matches.extend(outcome.matches)
            scores.update(outcome.scores)

        metadata: Dict[str, Any] = {
            "total_activities_analyzed": len(window.records),
            "detection_timestamp": now.isoformat(),
        }
        if window.target_type == TargetType.IP:
            metadata["unique_users_count"] = len(window.unique_user_ids())

        return AnalysisResult(
            target_type=window.target_type,
            target_id=window.target_id,
            window_minutes=window.window_minutes,
            is_suspicious=is_suspicious,
            severity=severity,
            activity_counts=dict(window.activity_counts),
            failure_counts=dict(window.failure_counts),
            anomaly_scores=scores,
            matched_rules=matches,
            confidence=confidence,
            recommended_action=RemediationAdvisor.recommend_action(is_suspicious, severity, matches),
            metadata=metadata,
            analyzed_at=now,
        )

    async def _emit(self, result: AnalysisResult) -> None:
        if self.result_sink is None:
            return
        try:
            await self.result_sink(result)
        except Exception as e:
            logger.error(f"Failed to record analysis {result.analysis_id}: {e}",
                         extra={"analysis_id": result.analysis_id, "error": str(e)})

    @staticmethod
    def _require_window(window_minutes: int) -> None:
        if window_minutes <= 0:
            raise InvalidInputError("window_minutes must be positive", value=str(window_minutes))

    # Administration

    def set_failure_threshold(self, action_type: str, threshold: int,
                              window_minutes: int = DEFAULT_WINDOW_MINUTES) -> DetectionConfig:
        return self._swap_config(lambda c: c.with_failure_threshold(action_type, threshold, window_minutes))

    def set_frequency_threshold(self, action_type: str, threshold: int,
                                window_minutes: int = DEFAULT_WINDOW_MINUTES) -> DetectionConfig:
        return self._swap_config(lambda c: c.with_frequency_threshold(action_type, threshold, window_minutes))

    def enable_detection(self, detection: str) -> DetectionConfig:
        return self._swap_config(lambda c: c.with_detection(detection, True))

    def disable_detection(self, detection: str) -> DetectionConfig:
        return self._swap_config(lambda c: c.with_detection(detection, False))

    def is_detection_enabled(self, detection: str) -> bool:
        return self.config.is_enabled(detection)

    def reset_thresholds_to_defaults(self) -> DetectionConfig:
        """Restore default thresholds; detection toggles are left as they are."""
        defaults = DetectionConfig.defaults()
        return self._swap_config(lambda c: replace(
            c,
            failure_thresholds=defaults.failure_thresholds,
            frequency_thresholds=defaults.frequency_thresholds,
        ))

    def get_threshold_configuration(self) -> Dict[str, Any]:
        config = self.config.to_dict()
        return {
            "failure_thresholds": config["failure_thresholds"],
            "frequency_thresholds": config["frequency_thresholds"],
            "enabled_detections": config["enabled_detections"],
            "detection_types": list(ALL_DETECTIONS),
        }
