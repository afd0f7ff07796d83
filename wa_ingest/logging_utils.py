"""
Structured logging for the ingestion service.

Every record goes out as one JSON object with ts, level, name, message and
the request_id of the HTTP request being served. Phone numbers are masked
by the formatter itself: known phone fields are masked whole and anything
that looks like a phone number inside the message text is masked in place,
so a caller that forgets mask_phone still cannot leak a number.
"""

import logging
import re
import sys
import time
import uuid
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import Request, Response
from pythonjsonlogger import jsonlogger
from starlette.middleware.base import BaseHTTPMiddleware

from wa_ingest.metrics import record_http_request
from wa_ingest.phone import mask_phone

REQUEST_ID_HEADER = "X-Request-ID"

# Extra fields that always hold a phone number
PHONE_FIELDS = frozenset({"phone", "to", "from", "wa_id", "recipient_id"})

# E.164 numbers, and bare international numbers (11+ digits, so epoch seconds are left alone)
_PHONE_PATTERN = re.compile(r"(?<![\w.*])(\+\d{7,15}|\d{11,15})(?![\w*])")

# Third-party loggers that log full request URLs at INFO
_NOISY_LOGGERS = ("httpx", "httpcore")

request_id_ctx: ContextVar[Optional[str]] = ContextVar("request_id", default=None)


def get_request_id() -> Optional[str]:
    """Get the current request ID from context."""
    return request_id_ctx.get()


def redact_phones(text: str) -> str:
    """Mask every phone-looking token in free text."""
    return _PHONE_PATTERN.sub(lambda match: mask_phone(match.group(0)), text)


class IngestJsonFormatter(jsonlogger.JsonFormatter):
    """JSON formatter adding a UTC timestamp, the level and request_id, with phone masking."""

    def add_fields(self, log_record, record, message_dict):
        super().add_fields(log_record, record, message_dict)
        if not log_record.get("ts"):
            now = datetime.fromtimestamp(record.created, tz=timezone.utc)
            log_record["ts"] = now.strftime("%Y-%m-%dT%H:%M:%S.%f")[:-3] + "Z"
        log_record["level"] = record.levelname

        if "request_id" not in log_record:
            req_id = get_request_id()
            if req_id:
                log_record["request_id"] = req_id

        for key, value in log_record.items():
            if not isinstance(value, str):
                continue
            if key in PHONE_FIELDS:
                log_record[key] = mask_phone(value)
            else:
                log_record[key] = redact_phones(value)


def setup_logging(log_level: str = "INFO") -> logging.Logger:
    """
    Route the root logger and uvicorn's loggers through one JSON handler on stdout.

    Safe to call once per app instance; existing handlers are replaced.
    """
    root = logging.getLogger()
    root.setLevel(log_level.upper())

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(IngestJsonFormatter("%(ts)s %(level)s %(name)s %(message)s"))
    root.handlers = [handler]

    for logger_name in ("uvicorn", "uvicorn.error"):
        uvicorn_logger = logging.getLogger(logger_name)
        uvicorn_logger.handlers = [handler]
        uvicorn_logger.propagate = False

    # RequestLoggingMiddleware writes the access log
    logging.getLogger("uvicorn.access").disabled = True

    for logger_name in _NOISY_LOGGERS:
        logging.getLogger(logger_name).setLevel(logging.WARNING)

    return root


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """
    One "Request completed" line per request, plus HTTP metrics.

    The request id is taken from an incoming X-Request-ID header when a
    proxy set one, otherwise generated, and is echoed on the response.
    Webhook deliveries add result, messages, duplicates, statuses and
    failures when the route attached them with log_webhook_data.
    """

    async def dispatch(self, request: Request, call_next: Callable) -> Response:
        request_id = request.headers.get(REQUEST_ID_HEADER) or str(uuid.uuid4())
        token = request_id_ctx.set(request_id)
        start_time = time.perf_counter()

        try:
            response = await call_next(request)
            response.headers[REQUEST_ID_HEADER] = request_id
            latency_seconds = time.perf_counter() - start_time

            if request.url.path != "/metrics":
                record_http_request(
                    method=request.method,
                    path=request.url.path,
                    status=response.status_code,
                    latency_seconds=latency_seconds,
                )

            log_data = {
                "method": request.method,
                "path": request.url.path,
                "status": response.status_code,
                "latency_ms": round(latency_seconds * 1000, 2),
                **getattr(request.state, "webhook_log_data", {}),
            }

            logger = logging.getLogger("wa_ingest.requests")
            if response.status_code >= 500:
                level = logging.ERROR
            elif response.status_code >= 400:
                level = logging.WARNING
            else:
                level = logging.INFO
            logger.log(level, "Request completed", extra=log_data)

            return response
        finally:
            request_id_ctx.reset(token)


def log_webhook_data(request: Request, result: str, **fields) -> None:
    """
    Attach the webhook outcome to the request log line.

    Args:
        request: FastAPI request object
        result: ok, ignored, invalid_signature or malformed
        fields: batch counters (messages, duplicates, statuses, failures)
    """
    request.state.webhook_log_data = {"result": result, **fields}
