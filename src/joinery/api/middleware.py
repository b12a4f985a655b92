"""HTTP middleware: request logging and the security pipeline."""

import time

import structlog
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint
from starlette.requests import Request
from starlette.responses import Response
from starlette.types import ASGIApp

from joinery.api.pipeline import SecurityPipeline

logger = structlog.get_logger()


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Log HTTP requests with method, path, status code, and latency."""

    SKIP_PREFIXES: tuple[str, ...] = ("/api/health", "/docs", "/openapi.json", "/redoc")

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        """Process request and log timing information."""
        if request.url.path.startswith(self.SKIP_PREFIXES):
            return await call_next(request)

        start = time.perf_counter()
        response = await call_next(request)
        latency_ms = int((time.perf_counter() - start) * 1000)

        identity = getattr(request.state, "identity", None)
        logger.info(
            "http_request",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            latency_ms=latency_ms,
            user_id=identity.subject_id if identity else None,
        )
        return response


class SecurityMiddleware(BaseHTTPMiddleware):
    """Run the security pipeline ahead of routing.

    The resulting identity, session id and rate limit outcome are exposed
    on ``request.state`` for endpoints and dependencies.
    """

    def __init__(self, app: ASGIApp, pipeline: SecurityPipeline) -> None:
        super().__init__(app)
        self.pipeline = pipeline

    async def dispatch(
        self, request: Request, call_next: RequestResponseEndpoint
    ) -> Response:
        context, response = await self.pipeline.run(request)

        request.state.identity = context.identity
        request.state.session_id = context.session_id
        request.state.rate_limit = context.rate_limit

        if response is None:
            response = await call_next(request)

        if context.rate_limit is not None:
            response.headers.update(context.rate_limit.headers())
        return response
