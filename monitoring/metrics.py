"""
Prometheus metrics for the admission gates and the abuse detector.
Tracks gate decisions, fail-open events, detection runs and alert delivery.
"""

import threading
from typing import Optional

from prometheus_client import (
    Counter, Histogram, CollectorRegistry, generate_latest, CONTENT_TYPE_LATEST
)


class AdmissionMetrics:
    """Access-list and rate-limit gate metrics."""

    def __init__(self, registry: CollectorRegistry):
        self.decisions_total = Counter(
            'gatekeeper_admission_decisions_total',
            'Admission gate decisions',
            ['gate', 'outcome'],
            registry=registry
        )

        self.fail_open_total = Counter(
            'gatekeeper_fail_open_total',
            'Requests admitted because a backing store was unavailable',
            ['component'],
            registry=registry
        )

        self.rate_limit_check_duration = Histogram(
            'gatekeeper_rate_limit_check_duration_seconds',
            'Rate limit check duration in seconds',
            ['scope'],
            buckets=[0.001, 0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5],
            registry=registry
        )


class DetectionMetrics:
    """Suspicious-activity detection and alerting metrics."""

    def __init__(self, registry: CollectorRegistry):
        self.runs_total = Counter(
            'gatekeeper_detection_runs_total',
            'Detection runs by target type and outcome',
            ['target_type', 'outcome'],
            registry=registry
        )

        self.alerts_total = Counter(
            'gatekeeper_alerts_total',
            'Alert deliveries by outcome',
            ['outcome'],
            registry=registry
        )


class MetricsCollector:
    """Central collector; one registry per instance so tests can use a fresh one."""

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry or CollectorRegistry()
        self.admission = AdmissionMetrics(self.registry)
        self.detection = DetectionMetrics(self.registry)
        self._lock = threading.Lock()

    def record_admission(self, gate: str, outcome: str):
        with self._lock:
            self.admission.decisions_total.labels(gate=gate, outcome=outcome).inc()

    def record_fail_open(self, component: str):
        with self._lock:
            self.admission.fail_open_total.labels(component=component).inc()

    def observe_rate_limit_check(self, scope: str, duration_seconds: float):
        self.admission.rate_limit_check_duration.labels(scope=scope).observe(duration_seconds)

    def record_detection_run(self, target_type: str, outcome: str):
        with self._lock:
            self.detection.runs_total.labels(target_type=target_type, outcome=outcome).inc()

    def record_alert(self, outcome: str):
        with self._lock:
            self.detection.alerts_total.labels(outcome=outcome).inc()

    def get_sample_value(self, name: str, labels: Optional[dict] = None) -> Optional[float]:
        return self.registry.get_sample_value(name, labels or {})

    def get_metrics_output(self) -> bytes:
        """Get Prometheus-formatted metrics output."""
        return generate_latest(self.registry)

    def get_metrics_content_type(self) -> str:
        return CONTENT_TYPE_LATEST


metrics_collector = MetricsCollector()
