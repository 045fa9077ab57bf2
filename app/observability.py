"""
Observability - logs, counters and health for the desk

Provides:
- Structured logging (JSON in production, one-line text in development)
  tagged with the request id and the signed-in email
- Middleware that times each request
- Counters for the aggregation engine (emissions, stale drops,
  stream failures, cache write failures) and recompute latency
- Health checks over the order store and every session's engine

Configuration:
- EDITDESK_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- EDITDESK_LOG_FORMAT: json or text (default: json when EDITDESK_PRODUCTION is set)

Usage:
    from app.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Order created", order_id=order.id, assignee=email)
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
session_email_var: ContextVar[str] = ContextVar("session_email", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").lower() in ("1", "true", "yes")


def _log_level() -> int:
    level = getattr(logging, os.environ.get("EDITDESK_LOG_LEVEL", "INFO").upper(), None)
    return level if isinstance(level, int) else logging.INFO


def _wants_json() -> bool:
    fmt = os.environ.get("EDITDESK_LOG_FORMAT", "").lower()
    if fmt in ("json", "text"):
        return fmt == "json"
    return _env_flag("EDITDESK_PRODUCTION")


# ============================================================
# FORMATTERS
# ============================================================

# Attributes every LogRecord has; anything else came in through ContextLogger
_STANDARD_ATTRS = frozenset(vars(logging.LogRecord("", 0, "", 0, "", (), None))) | {"message", "asctime", "taskName"}


def _request_context() -> Dict[str, str]:
    context = {}
    if request_id_var.get():
        context["request_id"] = request_id_var.get()
    if session_email_var.get():
        context["session_email"] = session_email_var.get()
    return context


def _extras(record: logging.LogRecord) -> Dict[str, Any]:
    extras = {}
    for key, value in vars(record).items():
        if key in _STANDARD_ATTRS or key.startswith("_"):
            continue
        try:
            json.dumps(value)
        except (TypeError, ValueError):
            value = str(value)
        extras[key] = value
    return extras


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line:

        {"timestamp": "...", "level": "INFO", "logger": "app.core.engine",
         "message": "Engine stopped", "request_id": "1f2e3d4c",
         "session_email": "tarun@mm.com", ...extra fields...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            **_request_context(),
        }
        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        entry.update(_extras(record))
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Readable single-line output for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        stamp = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        rid = request_id_var.get()
        tag = f" [{rid}]" if rid else ""
        line = f"{stamp} {record.levelname:<7}{tag} {record.name}: {record.getMessage()}"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Adapter that accepts structured fields as keyword arguments:

        logger.warning("Sign-in refused", email=email)
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = {k: kwargs.pop(k) for k in list(kwargs) if k not in self._PASSTHROUGH}
        kwargs["extra"] = {**kwargs.get("extra", {}), **fields}
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """Install a single stdout handler on the root logger. Call once at startup."""
    level = _log_level()
    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(level)
    handler.setFormatter(StructuredFormatter() if _wants_json() else TextFormatter())

    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)

    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

def _bind_session_email(request: Request) -> None:
    """Tag log lines with the device's signed-in email, if any."""
    workspace = getattr(request.app.state, "workspace", None)
    if workspace is None:
        return

    from app.web.auth import SESSION_COOKIE, read_session_cookie

    device_id = read_session_cookie(request.cookies.get(SESSION_COOKIE, ""))
    desk_session = workspace.get_session(device_id) if device_id else None
    if desk_session is not None and desk_session.identity is not None:
        session_email_var.set(desk_session.identity.email)


class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id (X-Request-ID or a fresh one) and the session email
    to the logging context, then logs and times the request.
    """

    async def dispatch(self, request: Request, call_next: RequestResponseEndpoint) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        request_id_var.set(request_id)
        _bind_session_email(request)

        logger = get_logger("app.request")
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            response = await call_next(request)
        except Exception as e:
            elapsed = (time.perf_counter() - started) * 1000
            logger.exception(f"{route} failed", path=request.url.path, duration_ms=round(elapsed, 2), error=str(e))
            get_metrics().record_request(elapsed, success=False)
            raise
        else:
            elapsed = (time.perf_counter() - started) * 1000
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                f"{route} -> {response.status_code}",
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(elapsed, 2),
            )
            get_metrics().record_request(elapsed, success=response.status_code < 500)
            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.set("")
            session_email_var.set("")


# ============================================================
# METRICS
# ============================================================

class LatencySamples:
    """The most recent latency samples, for percentiles."""

    def __init__(self, size: int = 1000):
        self._samples: Deque[float] = deque(maxlen=size)

    def add(self, value_ms: float) -> None:
        self._samples.append(value_ms)

    def __len__(self) -> int:
        return len(self._samples)

    def percentile(self, p: float) -> Optional[float]:
        if not self._samples:
            return None
        ordered = sorted(self._samples)
        return ordered[min(int(len(ordered) * p), len(ordered) - 1)]


@dataclass
class MetricsCollector:
    """
    In-process counters.

    The engine bumps its counters directly; latencies go through the
    record_* methods.
    """

    emissions_processed: int = 0
    stale_emissions_dropped: int = 0
    stream_errors: int = 0
    cache_write_failures: int = 0
    requests_total: int = 0
    requests_failed: int = 0
    sign_ins: int = 0

    recompute_latencies_ms: LatencySamples = field(default_factory=LatencySamples)
    request_latencies_ms: LatencySamples = field(default_factory=LatencySamples)

    def record_recompute(self, latency_ms: float) -> None:
        """One full rollup recompute for an accepted emission."""
        self.emissions_processed += 1
        self.recompute_latencies_ms.add(latency_ms)

    def record_request(self, latency_ms: float, success: bool) -> None:
        self.requests_total += 1
        if not success:
            self.requests_failed += 1
        self.request_latencies_ms.add(latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        recompute, requests = self.recompute_latencies_ms, self.request_latencies_ms
        return {
            "emissions_processed": self.emissions_processed,
            "stale_emissions_dropped": self.stale_emissions_dropped,
            "stream_errors": self.stream_errors,
            "cache_write_failures": self.cache_write_failures,
            "requests_total": self.requests_total,
            "requests_failed": self.requests_failed,
            "sign_ins": self.sign_ins,
            "recompute_latency_p50_ms": recompute.percentile(0.5),
            "recompute_latency_p95_ms": recompute.percentile(0.95),
            "recompute_latency_p99_ms": recompute.percentile(0.99),
            "request_latency_p50_ms": requests.percentile(0.5),
            "request_latency_p95_ms": requests.percentile(0.95),
        }


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Process-wide collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(workspace=None) -> HealthStatus:
    """
    Liveness plus, when a workspace is given, the order store and the
    state of every session's engine.

    An engine in ERROR still serves its last rollups but marks the
    service unhealthy.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    healthy = True

    if workspace is not None:
        checks["order_store"] = {
            "status": "healthy",
            "order_count": len(workspace.orders),
            "subscribers": workspace.orders.subscriber_count,
        }

        states = [s.engine.state.value for s in workspace.sessions()]
        failed = states.count("error")
        checks["engines"] = {
            "status": "unhealthy" if failed else "healthy",
            "sessions": len(states),
            "states": {state: states.count(state) for state in sorted(set(states))},
        }
        healthy = not failed

    return HealthStatus(
        healthy=healthy,
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
