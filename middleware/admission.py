"""
Admission gate middleware.
Resolves the client address, applies the allow/block list and the rate limiter before a
request reaches the application. Infrastructure faults never block a request.
"""

import logging
import time
from datetime import datetime, timezone
from typing import Iterable, Optional, Tuple

from fastapi import Request, status
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.responses import JSONResponse, Response

from models.rate_limit import RateLimitResult
from monitoring.metrics import MetricsCollector, metrics_collector
from security.cidr_matcher import is_valid_ip
from security.client_identity import ClientIdentityResolver
from services.access_list_service import AccessListService
from services.rate_limiter import RateLimiter

logger = logging.getLogger(__name__)


class AdmissionMiddleware(BaseHTTPMiddleware):
    """Access-list and rate-limit gates with X-RateLimit headers."""

    def __init__(
        self,
        app,
        resolver: ClientIdentityResolver,
        rate_limiter: Optional[RateLimiter] = None,
        access_list: Optional[AccessListService] = None,
        exempt_paths: Iterable[str] = ("/health", "/metrics"),
        metrics: Optional[MetricsCollector] = None,
    ):
        super().__init__(app)
        self.resolver = resolver
        self.rate_limiter = rate_limiter
        self.access_list = access_list
        self.exempt_paths = tuple(exempt_paths)
        self.metrics = metrics or metrics_collector

    def _is_exempt_path(self, path: str) -> bool:
        return path in self.exempt_paths

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if self._is_exempt_path(path):
            return await call_next(request)

        remote_addr = request.client.host if request.client else None
        client_ip = self.resolver.resolve(remote_addr, request.headers)
        request.state.client_ip = client_ip

        start_time = time.perf_counter()
        try:
            denial, rate_result = await self._admit(request, client_ip)
        except Exception as e:
            elapsed_ms = (time.perf_counter() - start_time) * 1000
            logger.error(f"Admission gate error after {elapsed_ms:.1f}ms, allowing request: {e}",
                         extra={"client_ip": client_ip, "error": str(e)})
            self.metrics.record_fail_open("admission")
            return await call_next(request)

        if denial is not None:
            return denial

        response = await call_next(request)
        if rate_result is not None:
            for key, value in rate_result.to_headers().items():
                response.headers[key] = value
        return response

    async def _admit(self, request: Request, client_ip: str) -> Tuple[Optional[Response], Optional[RateLimitResult]]:
        if self.access_list is not None:
            if is_valid_ip(client_ip):
                decision = await self.access_list.evaluate(client_ip)
                if not decision.permitted:
                    self.metrics.record_admission("access_list", "deny")
                    logger.warning(f"Access denied for {client_ip} on {request.url.path}",
                                   extra={"client_ip": client_ip})
                    return self._error_response(request, status.HTTP_403_FORBIDDEN, "Access denied"), None
                self.metrics.record_admission("access_list", "permit")
            else:
                logger.debug(f"Skipping access list for non-IP client {client_ip!r}")

        if self.rate_limiter is None:
            return None, None

        action = self.rate_limiter.resolve_action(request.url.path, request.method)
        user_id = getattr(request.state, "user_id", None)
        request.state.rate_limit_action = action

        result = await self.rate_limiter.check_limit(client_ip, action, user_id=user_id)
        request.state.rate_limit = result

        if not result.allowed:
            self.metrics.record_admission("rate_limit", "deny")
            retry_after = result.retry_after(self.rate_limiter.counter.now())
            response = self._error_response(
                request,
                status.HTTP_429_TOO_MANY_REQUESTS,
                "Rate limit exceeded",
                retry_after=retry_after,
                scope=result.scope,
            )
            for key, value in result.to_headers().items():
                response.headers[key] = value
            response.headers["Retry-After"] = str(retry_after)
            return response, result

        self.metrics.record_admission("rate_limit", "allow")
        return None, result

    @staticmethod
    def _error_response(request: Request, status_code: int, error: str, **extra) -> JSONResponse:
        content = {
            "error": error,
            "status_code": status_code,
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "path": request.url.path,
            "method": request.method,
        }
        content.update({k: v for k, v in extra.items() if v is not None})
        return JSONResponse(status_code=status_code, content=content)
