"""
Application entry point.
Wires settings, stores, services and the admission middleware into a FastAPI app.
"""
import logging
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import Optional

from fastapi import FastAPI, Request, Response

from caching.cache_store import CacheStore, create_cache_store
from config import Settings, get_settings
from middleware.admission import AdmissionMiddleware
from monitoring.metrics import MetricsCollector, metrics_collector
from repositories.access_rule_repository import AccessRuleRepository, InMemoryAccessRuleRepository
from repositories.activity_log_repository import ActivityLogRepository, InMemoryActivityLogRepository
from security.client_identity import ClientIdentityResolver
from services.access_list_service import AccessListService
from services.alerting import LoggingAlertSink, WebhookAlertSink
from services.anomaly_detector import AnomalyDetector
from services.rate_limiter import RateLimitCounter, RateLimiter
from services.remediation_advisor import RemediationAdvisor
from utils.logging_config import setup_logging

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    cache_store: Optional[CacheStore] = None,
    rule_repository: Optional[AccessRuleRepository] = None,
    activity_repository: Optional[ActivityLogRepository] = None,
    metrics: Optional[MetricsCollector] = None,
) -> FastAPI:
    settings = settings or get_settings()
    metrics = metrics or metrics_collector
    setup_logging(settings.log_level, json_output=settings.log_json)

    cache_store = cache_store or create_cache_store(settings)
    rule_repository = rule_repository or InMemoryAccessRuleRepository()
    activity_repository = activity_repository or InMemoryActivityLogRepository()

    resolver = ClientIdentityResolver(settings.trusted_proxies)
    access_list = AccessListService(rule_repository, cache_store, settings.access_rule_cache_ttl, metrics=metrics)
    rate_limiter = RateLimiter(RateLimitCounter(cache_store, metrics=metrics))

    sinks = [LoggingAlertSink()]
    if settings.alert_webhook_url:
        sinks.append(WebhookAlertSink(settings.alert_webhook_url, settings.alert_webhook_timeout))
    advisor = RemediationAdvisor(sinks, metrics=metrics)
    detector = AnomalyDetector(activity_repository, metrics=metrics)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info(f"Starting {settings.app_name}: {settings.get_safe_config()}")
        yield
        await cache_store.close()
        logger.info(f"{settings.app_name} shut down")

    app = FastAPI(title=settings.app_name, lifespan=lifespan)
    app.state.settings = settings
    app.state.cache_store = cache_store
    app.state.client_identity = resolver
    app.state.access_list = access_list
    app.state.rate_limiter = rate_limiter
    app.state.anomaly_detector = detector
    app.state.remediation_advisor = advisor

    app.add_middleware(
        AdmissionMiddleware,
        resolver=resolver,
        rate_limiter=rate_limiter if settings.enable_rate_limit else None,
        access_list=access_list if settings.enable_access_list else None,
        exempt_paths=settings.rate_limit_exempt_paths,
        metrics=metrics,
    )

    @app.get("/health")
    async def health(request: Request):
        store = request.app.state.cache_store
        store_ok = await store.ping()
        return {
            "status": "healthy" if store_ok else "degraded",
            "service": settings.app_name,
            "environment": settings.environment,
            "counter_backend": store.backend,
            "counter_backend_available": store_ok,
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }

    @app.get("/metrics")
    async def prometheus_metrics():
        return Response(content=metrics.get_metrics_output(), media_type=metrics.get_metrics_content_type())

    return app
