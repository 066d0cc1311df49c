"""
Remediation advice and alert escalation for analysis results.
"""

import logging
from typing import List, Optional, Sequence

from models.analysis import AnalysisResult, RuleMatch, Severity
from monitoring.metrics import MetricsCollector, metrics_collector
from services.alerting import AlertSink, LoggingAlertSink
from services.detection_rules import FAILURE_RATE_THRESHOLD, SUSPICIOUS_IP_RANGE, is_login_action

logger = logging.getLogger(__name__)

ACTION_BLOCK_IMMEDIATELY = "block immediately"
ACTION_REQUIRE_VERIFICATION = "require additional verification"
ACTION_INCREASE_MONITORING = "increase monitoring"
ACTION_LOG_FOR_REVIEW = "log for review"
ACTION_TEMPORARY_ACCOUNT_LOCK = "temporary account lock"
ACTION_BLOCK_IP = "block ip address"
ACTION_INVESTIGATE_SYSTEM = "investigate system issues"

SEVERITY_ACTIONS = {
    Severity.CRITICAL: ACTION_BLOCK_IMMEDIATELY,
    Severity.HIGH: ACTION_REQUIRE_VERIFICATION,
    Severity.MEDIUM: ACTION_INCREASE_MONITORING,
    Severity.LOW: ACTION_LOG_FOR_REVIEW,
}


class RemediationAdvisor:
    """Maps analysis outcomes to remediation actions and raises alerts."""

    def __init__(self, sinks: Optional[List[AlertSink]] = None,
                 metrics: Optional[MetricsCollector] = None):
        self.sinks: List[AlertSink] = list(sinks) if sinks else [LoggingAlertSink()]
        self.metrics = metrics or metrics_collector

    @staticmethod
    def recommend_action(is_suspicious: bool, severity: Severity,
                         matched_rules: Sequence[RuleMatch]) -> Optional[str]:
        """
        Base action by severity, refined by the rules that matched.

        A suspicious IP range always yields "block ip address"; otherwise a login
        failure-rate match yields "temporary account lock".
        """
        if not is_suspicious:
            return None

        if any(match.type == SUSPICIOUS_IP_RANGE for match in matched_rules):
            return ACTION_BLOCK_IP
        if any(match.type == FAILURE_RATE_THRESHOLD and is_login_action(match.action_type)
               for match in matched_rules):
            return ACTION_TEMPORARY_ACCOUNT_LOCK

        return SEVERITY_ACTIONS[severity]

    @staticmethod
    def should_trigger_alert(result: AnalysisResult) -> bool:
        return result.is_suspicious and result.severity >= Severity.HIGH

    async def trigger_alert(self, result: AnalysisResult) -> bool:
        """Deliver to every sink. Never raises; returns whether any sink succeeded."""
        delivered = False
        for sink in self.sinks:
            try:
                ok = await sink.send(result)
            except Exception as e:
                logger.error(f"Alert sink '{sink.name}' raised: {e}",
                             extra={"analysis_id": result.analysis_id, "error": str(e)})
                ok = False
            self.metrics.record_alert("delivered" if ok else "failed")
            delivered = delivered or ok
        return delivered

    async def review(self, result: AnalysisResult) -> bool:
        """Alert when the result warrants it. Returns whether an alert was sent."""
        if not self.should_trigger_alert(result):
            return False
        return await self.trigger_alert(result)
