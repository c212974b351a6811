"""
Trace middleware for request-scoped correlation IDs.
"""

import re
import time
import uuid

from starlette.middleware.base import BaseHTTPMiddleware
from starlette.requests import Request
from starlette.responses import Response

from shared.logging import get_logger, trace_id_var
from shared.metrics import http_request_duration_seconds, http_requests_total

logger = get_logger("dtlab.http")

# alert_1a2b3c4d, rule_..., ev_...
_DEFINITION_ID_RE = re.compile(r"/(alert|rule|ev)_[0-9a-zA-Z]+(?=/|$)")


def normalize_path(path: str) -> str:
    """
    Replace definition and event ids with a placeholder so the
    path_template label stays low-cardinality.

        /api/rules/rule_1a2b3c4d/logs -> /api/rules/{id}/logs
    """
    return _DEFINITION_ID_RE.sub("/{id}", path)


class TraceMiddleware(BaseHTTPMiddleware):
    async def dispatch(self, request: Request, call_next) -> Response:
        trace_id = request.headers.get("X-Trace-ID") or str(uuid.uuid4())
        token = trace_id_var.set(trace_id)
        started = time.monotonic()
        response: Response | None = None
        try:
            response = await call_next(request)
            return response
        finally:
            elapsed = time.monotonic() - started
            status_code = getattr(response, "status_code", 500)
            labels = dict(
                method=request.method,
                path_template=normalize_path(request.url.path),
                status_code=str(status_code),
            )
            http_request_duration_seconds.labels(**labels).observe(elapsed)
            http_requests_total.labels(**labels).inc()
            logger.info(
                "http_request",
                extra={
                    "method": request.method,
                    "path": request.url.path,
                    "status": status_code,
                    "elapsed_ms": round(elapsed * 1000, 1),
                },
            )
            trace_id_var.reset(token)
            if response is not None:
                response.headers["X-Trace-ID"] = trace_id
