"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs and viewer address
- Request/response logging middleware
- Metrics collection (build latency, lookup failures, denials, rejections)
- Health check utilities

Configuration:
- MEDVERIFY_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- MEDVERIFY_LOG_FORMAT: json, text (default: json in production)
- MEDVERIFY_PRODUCTION: Enable production mode

Usage:
    from medverify.observability import get_logger, RequestContextMiddleware

    logger = get_logger(__name__)
    logger.info("Projection built", views=12, failures=1, generation=4)
"""

import json
import logging
import os
import sys
import time
import uuid
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Context variables for request tracking
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
viewer_address_var: ContextVar[str] = ContextVar("viewer_address", default="")

VIEWER_HEADER = "X-Viewer-Address"


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("MEDVERIFY_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("MEDVERIFY_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("MEDVERIFY_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_STANDARD_RECORD_FIELDS = frozenset((
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
))


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2024-01-15T10:30:00.000Z",
        "level": "INFO",
        "logger": "medverify.db.projections",
        "message": "Projection built",
        "request_id": "abc-123",
        "viewer_address": "0xabc...",
        "token_id": 7,
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        viewer = viewer_address_var.get()
        if viewer:
            log_data["viewer_address"] = viewer

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _STANDARD_RECORD_FIELDS or key.startswith("_"):
                continue
            try:
                json.dumps(value)
                log_data[key] = value
            except (TypeError, ValueError):
                log_data[key] = str(value)

        return json.dumps(log_data)


class TextFormatter(logging.Formatter):
    """Human-readable formatter for development."""

    def format(self, record: logging.LogRecord) -> str:
        prefix = ""
        request_id = request_id_var.get()
        if request_id:
            prefix = f"[{request_id[:8]}] "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that automatically includes context fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Intent submitted", intent="approveRequest", token_id=3)
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        # Move non-standard kwargs to extra; LogRecord attributes get a prefix
        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                field_name = f"field_{key}" if key in _STANDARD_RECORD_FIELDS else key
                extra[field_name] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    logger = logging.getLogger(name)
    return ContextLogger(logger, {})


def setup_logging() -> None:
    """
    Configure logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())

    if _use_json_logging():
        handler.setFormatter(StructuredFormatter())
    else:
        handler.setFormatter(TextFormatter())

    root_logger.addHandler(handler)

    # Suppress noisy loggers
    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("urllib3").setLevel(logging.WARNING)
    logging.getLogger("web3").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    Features:
    - Generates unique request ID for each request
    - Logs request/response with timing
    - Records the viewer address header if present
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        viewer = request.headers.get(VIEWER_HEADER)
        if viewer:
            viewer_address_var.set(viewer)

        logger = get_logger("medverify.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            query=str(request.query_params) if request.query_params else None,
        )

        try:
            response = await call_next(request)

            duration_ms = (time.perf_counter() - start_time) * 1000
            log_level = logging.INFO if response.status_code < 400 else logging.WARNING

            logger.log(
                log_level,
                f"{request.method} {request.url.path} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(duration_ms, 2),
            )
            get_metrics().record_request(duration_ms, response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            get_metrics().record_request(duration_ms, False)
            raise

        finally:
            request_id_var.set("")
            viewer_address_var.set("")


# ============================================================
# METRICS
# ============================================================

def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return sorted_data[min(idx, len(sorted_data) - 1)]


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    Counters are updated from lookup worker threads, so writes go
    through a lock.
    """

    # Counters
    builds_total: int = 0
    builds_discarded: int = 0
    lookup_failures: int = 0
    fetch_retries: int = 0
    guard_denials: int = 0
    submissions: int = 0
    rejections: int = 0
    registry_refreshes: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    denials_by_reason: Dict[str, int] = field(default_factory=dict)

    # Histograms (simplified as lists)
    build_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    def record_build(self, latency_ms: float, failures: int) -> None:
        with self._lock:
            self.builds_total += 1
            self.lookup_failures += failures
            self.build_latencies_ms.append(latency_ms)
            # Keep only last 1000 samples
            if len(self.build_latencies_ms) > 1000:
                self.build_latencies_ms = self.build_latencies_ms[-1000:]

    def record_discarded_build(self) -> None:
        with self._lock:
            self.builds_discarded += 1

    def record_fetch_retry(self) -> None:
        with self._lock:
            self.fetch_retries += 1

    def record_denial(self, reason: str) -> None:
        with self._lock:
            self.guard_denials += 1
            self.denials_by_reason[reason] = self.denials_by_reason.get(reason, 0) + 1

    def record_submission(self, accepted: bool) -> None:
        with self._lock:
            self.submissions += 1
            if not accepted:
                self.rejections += 1

    def record_registry_refresh(self) -> None:
        with self._lock:
            self.registry_refreshes += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)
            if len(self.request_latencies_ms) > 1000:
                self.request_latencies_ms = self.request_latencies_ms[-1000:]

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "builds_total": self.builds_total,
                "builds_discarded": self.builds_discarded,
                "lookup_failures": self.lookup_failures,
                "fetch_retries": self.fetch_retries,
                "guard_denials": self.guard_denials,
                "denials_by_reason": dict(self.denials_by_reason),
                "submissions": self.submissions,
                "rejections": self.rejections,
                "registry_refreshes": self.registry_refreshes,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "build_latency_p50_ms": _percentile(self.build_latencies_ms, 0.5),
                "build_latency_p95_ms": _percentile(self.build_latencies_ms, 0.95),
                "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
            }


# Global metrics instance
_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
    return _metrics


def reset_metrics() -> MetricsCollector:
    """Replace the global collector (tests)."""
    global _metrics
    _metrics = MetricsCollector()
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(ledger=None, registry=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        ledger: LedgerClient instance
        registry: RegistryCache instance
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if ledger is not None:
        try:
            checks["ledger"] = {
                "status": "healthy",
                "head": ledger.head(),
                "driver": type(ledger).__name__,
            }
        except Exception as e:
            checks["ledger"] = {
                "status": "unhealthy",
                "error": str(e),
            }
            all_healthy = False

    if registry is not None:
        snapshot = registry.snapshot
        refreshed = snapshot.refreshed_at is not None
        checks["registry"] = {
            "status": "healthy" if refreshed else "degraded",
            "providers": len(snapshot.providers),
            "insurers": len(snapshot.insurers),
            "refreshed_at": snapshot.refreshed_at.isoformat() if refreshed else None,
        }

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
