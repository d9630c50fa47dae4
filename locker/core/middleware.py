# locker/core/middleware.py
"""Request tracing middleware"""
import logging
import time
import uuid

from starlette.requests import Request

logger = logging.getLogger(__name__)


async def correlation_id_middleware(request: Request, call_next):
    """Attach a correlation ID to every request and echo it back"""
    correlation_id = request.headers.get("X-Correlation-ID") or str(uuid.uuid4())
    request.state.correlation_id = correlation_id

    response = await call_next(request)
    response.headers["X-Correlation-ID"] = correlation_id
    return response


async def request_logging_middleware(request: Request, call_next):
    """Log request start and completion with timing"""
    start_time = time.time()
    context = {
        "correlation_id": getattr(request.state, "correlation_id", "unknown"),
        "method": request.method,
        # Path only: query strings may carry feed URLs
        "path": request.url.path,
    }
    channel_id = request.headers.get("X-Goog-Channel-ID")
    if channel_id:
        context["channel_id"] = channel_id

    logger.info("Request started", extra=context)
    response = await call_next(request)

    logger.info(
        "Request completed",
        extra={
            **context,
            "status_code": response.status_code,
            "duration_ms": round((time.time() - start_time) * 1000, 2),
        }
    )
    return response
