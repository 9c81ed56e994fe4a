"""
JSON logging for the relay.

Every line carries ``ts``, ``level``, ``name``, ``message`` and, inside a
request, ``request_id``. One summary line is logged per HTTP request.
"""

import logging
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger.json import JsonFormatter
from starlette.middleware.base import BaseHTTPMiddleware

from smsrelay.metrics import record_http_request


request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


class RelayJsonFormatter(JsonFormatter):
    """Adds millisecond UTC ``ts``, ``level`` and the current ``request_id``."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.now(timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        if "request_id" not in log_record:
            req_id = request_id_ctx.get()
            if req_id:
                log_record["request_id"] = req_id


def setup_logging(log_level: str = "INFO"):
    """
    Route the root logger and uvicorn's loggers to one stdout JSON handler.

    Safe to call more than once; previous handlers are replaced.
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())
    root.handlers = []

    json_handler = logging.StreamHandler(sys.stdout)
    json_handler.setFormatter(RelayJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    root.addHandler(json_handler)

    for logger_name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = [json_handler]
        uvicorn_logger.propagate = False

    # Replaced by RequestLoggingMiddleware
    logging.getLogger("uvicorn.access").disabled = True

    # httpx logs every request URL at INFO, including Slack API calls
    logging.getLogger("httpx").setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    Assigns ``X-Request-ID``, records request metrics and logs one line per
    request with method, route, status and ``latency_ms``.

    Fields attached with ``log_request_data`` (the inbound ``result``, for
    example) are merged into that line. 5xx responses log at ERROR and 4xx at
    WARNING.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = str(uuid.uuid4())
        request.state.request_id = request_id

        token = request_id_ctx.set(request_id)
        start_time = time.time()

        try:
            response = await call_next(request)
            response.headers["X-Request-ID"] = request_id

            latency_seconds = time.time() - start_time

            # Label metrics with the route template, not the concrete path
            route = request.scope.get("route")
            route_path = getattr(route, "path", request.url.path)

            if route_path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=route_path,
                    status=response.status_code,
                    latency_seconds=latency_seconds
                )

            log_data = {
                "request_id": request_id,
                "method": request.method,
                "path": route_path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
            }
            log_data.update(getattr(request.state, "extra_log_data", {}))

            logger = logging.getLogger("smsrelay.requests")
            if response.status_code >= 500:
                logger.error("Request completed", extra=log_data)
            elif response.status_code >= 400:
                logger.warning("Request completed", extra=log_data)
            else:
                logger.info("Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_request_data(request: Request, **fields) -> None:
    """Attach fields to this request's summary log line; ``None`` values are dropped."""
    data = getattr(request.state, "extra_log_data", {})
    data.update({k: v for k, v in fields.items() if v is not None})
    request.state.extra_log_data = data
