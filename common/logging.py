from __future__ import annotations

import json
import logging
import time
import uuid
from datetime import datetime, timezone

# Keys copied from `extra={...}` into the JSON line when present on the record.
STRUCTURED_FIELDS = (
    "request_id",
    "path",
    "method",
    "status_code",
    "duration_ms",
    "remote_addr",
    "user_id",
    "caller",
    "business_id",
    "order_id",
    "preorder_id",
    "product_id",
    "status",
    "previous_status",
    "total",
    "paid",
    "delta",
    "attempt",
    "error",
)

QUIET_PATHS = ("/healthz/", "/readyz/")


class JsonFormatter(logging.Formatter):
    """One JSON object per line, carrying the order/ledger context fields."""

    def format(self, record: logging.LogRecord) -> str:
        payload = {
            "timestamp": datetime.fromtimestamp(record.created, tz=timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        payload.update(
            (key, getattr(record, key)) for key in STRUCTURED_FIELDS if getattr(record, key, None) is not None
        )
        if record.exc_info:
            payload["exception"] = self.formatException(record.exc_info)
        return json.dumps(payload, ensure_ascii=False, default=str)


class RequestLogMiddleware:
    """Tag each request with an X-Request-ID and write one access line per response.

    Server errors are logged at ERROR and client errors at WARNING; probe
    endpoints are tagged but not logged.
    """

    def __init__(self, get_response):
        self.get_response = get_response
        self.logger = logging.getLogger("api.request")

    def __call__(self, request):
        started_at = time.perf_counter()
        request.request_id = request.headers.get("X-Request-ID") or str(uuid.uuid4())

        response = self.get_response(request)
        response["X-Request-ID"] = request.request_id
        if request.path in QUIET_PATHS:
            return response

        user = getattr(request, "user", None)
        authenticated = user is not None and getattr(user, "is_authenticated", False)
        if response.status_code >= 500:
            level = logging.ERROR
        elif response.status_code >= 400:
            level = logging.WARNING
        else:
            level = logging.INFO

        self.logger.log(
            level,
            "request_completed",
            extra={
                "request_id": request.request_id,
                "method": request.method,
                "path": request.path,
                "status_code": response.status_code,
                "duration_ms": round((time.perf_counter() - started_at) * 1000, 2),
                "remote_addr": request.META.get("REMOTE_ADDR"),
                "user_id": str(user.pk) if authenticated else None,
                "business_id": str(user.business_id) if authenticated and getattr(user, "business_id", None) else None,
            },
        )
        return response
