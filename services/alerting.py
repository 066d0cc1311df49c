"""
Alert delivery for high-severity analysis results.
"""

import asyncio
import logging
from abc import ABC, abstractmethod
from typing import Any, Dict, Optional

import aiohttp

from models.analysis import AnalysisResult

logger = logging.getLogger(__name__)


class AlertSink(ABC):
    """One-way notification channel. Returns whether delivery succeeded."""

    name = "abstract"

    @abstractmethod
    async def send(self, result: AnalysisResult) -> bool:
        pass


def alert_payload(result: AnalysisResult) -> Dict[str, Any]:
    return {
        "title": "Suspicious activity alert",
        "analysis_id": result.analysis_id,
        "target_type": result.target_type.value,
        "target_id": result.target_id,
        "severity": result.severity.label,
        "confidence": result.confidence,
        "recommended_action": result.recommended_action,
        "summary": result.summary(),
        "matched_rules": [match.to_dict() for match in result.matched_rules],
        "timestamp": result.analyzed_at.isoformat(),
    }


class LoggingAlertSink(AlertSink):
    """Writes the alert as a CRITICAL log record."""

    name = "log"

    def __init__(self, alert_logger: Optional[logging.Logger] = None):
        self.logger = alert_logger or logger

    async def send(self, result: AnalysisResult) -> bool:
        self.logger.critical(
            f"Suspicious activity alert triggered: {result.summary()}",
            extra={
                "analysis_id": result.analysis_id,
                "target_type": result.target_type.value,
                "target_id": result.target_id,
                "severity": result.severity.label,
            },
        )
        return True


class WebhookAlertSink(AlertSink):
    """POSTs the alert payload as JSON to a webhook URL."""

    name = "webhook"

    def __init__(self, url: str, timeout_seconds: float = 5.0, headers: Optional[Dict[str, str]] = None):
        self.url = url
        self.timeout_seconds = timeout_seconds
        self.headers = {"Content-Type": "application/json", **(headers or {})}

    async def send(self, result: AnalysisResult) -> bool:
        payload = alert_payload(result)
        timeout = aiohttp.ClientTimeout(total=self.timeout_seconds)
        try:
            async with aiohttp.ClientSession(timeout=timeout) as session:
                async with session.post(self.url, json=payload, headers=self.headers) as response:
                    if 200 <= response.status < 300:
                        logger.info(f"Sent alert {result.analysis_id} to {self.url}")
                        return True
                    logger.error(f"Alert webhook failed with status {response.status}",
                                 extra={"analysis_id": result.analysis_id})
                    return False
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.error(f"Failed to send alert webhook: {e}", extra={"analysis_id": result.analysis_id})
            return False
