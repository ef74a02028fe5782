import time
import uuid
from typing import Callable

from fastapi import Request
from starlette.middleware.base import BaseHTTPMiddleware
from starlette.types import ASGIApp

from ..config import get_logger, log_event

logger = get_logger("oratora.http")


class RequestIdMiddleware(BaseHTTPMiddleware):
    """Accepts or generates X-Request-Id, keeps it on request.state, and echoes it back.

    Emits one JSON access line per request with method, path, status, and latency_ms.
    """

    def __init__(self, app: ASGIApp):
        super().__init__(app)

    async def dispatch(self, request: Request, call_next: Callable):
        start = time.perf_counter()
        req_id = request.headers.get("X-Request-Id") or str(uuid.uuid4())
        request.state.request_id = req_id

        response = await call_next(request)
        response.headers["X-Request-Id"] = req_id

        log_event(
            logger,
            "http_request",
            requestId=req_id,
            method=request.method,
            path=request.url.path,
            status=response.status_code,
            latency_ms=int((time.perf_counter() - start) * 1000),
        )
        return response
