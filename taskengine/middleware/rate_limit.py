"""Access-governor middleware: per-caller rate and concurrency limits over HTTP.

Backed by AccessGovernor, so limits are shared across instances when a Redis
cache is configured, and every request is allowed when it is not.

Rejections are HTTP 429 with a JSON error body and X-RateLimit-* headers.
"""

from __future__ import annotations

import logging

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import JSONResponse

from taskengine.governor.access import (
    AccessGovernor,
    ConcurrencyLimitExceeded,
    RateLimitExceeded,
    resolve_identity,
)

logger = logging.getLogger(__name__)

# Exempt from rate limiting
_EXEMPT_PATHS = frozenset({"/health", "/docs", "/openapi.json", "/redoc"})


def request_identity(request: Request) -> str:
    """Authenticated user id, else client address, else API key header."""
    user_id = getattr(request.state, "user_id", None)
    ip = request.client.host if request.client else None
    return resolve_identity(user_id=user_id, ip=ip, key=request.headers.get("x-api-key"))


class AccessGovernorMiddleware(BaseHTTPMiddleware):
    """Sliding-window request limit on every path, concurrency slot on execution paths.

    Args:
        governor: Shared AccessGovernor.
        execution_paths: Path prefixes whose POST requests start an execution
            and hold a concurrency slot until the response is produced.
        exempt_paths: Paths skipped entirely.
    """

    def __init__(
        self,
        app,
        governor: AccessGovernor,
        execution_paths: tuple[str, ...] = ("/api/v1/tasks",),
        exempt_paths: frozenset[str] = _EXEMPT_PATHS,
    ) -> None:
        super().__init__(app)
        self.governor = governor
        self.execution_paths = execution_paths
        self.exempt_paths = exempt_paths

    async def dispatch(self, request: Request, call_next):
        path = request.url.path
        if path in self.exempt_paths:
            return await call_next(request)

        identity = request_identity(request)

        decision = await self.governor.check_request(identity)
        if not decision.allowed:
            logger.warning("Rate limit exceeded for %s on %s", identity, path)
            return _reject(RateLimitExceeded(decision))

        if request.method == "POST" and path.startswith(self.execution_paths):
            try:
                async with self.governor.concurrency_slot(identity):
                    response = await call_next(request)
            except ConcurrencyLimitExceeded as e:
                logger.warning("Concurrent execution limit reached for %s on %s", identity, path)
                return _reject(e)
        else:
            response = await call_next(request)

        for name, value in decision.headers().items():
            response.headers[name] = value
        return response


def _reject(exc: RateLimitExceeded | ConcurrencyLimitExceeded) -> JSONResponse:
    return JSONResponse(status_code=429, content=exc.to_body(), headers=exc.decision.headers())
