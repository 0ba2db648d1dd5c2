"""
Observability - Logging, Metrics and Health

Provides:
- Structured JSON logging carrying request and actor context
- Request/response logging middleware
- Ledger metrics (commits, failures, idempotent replays, transport errors)
- Health check utilities

Configuration:
- ASSETLEDGER_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- ASSETLEDGER_LOG_FORMAT: json, text (default: json in production)
- ASSETLEDGER_PRODUCTION: Enable production mode

Usage:
    from assetledger.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Asset recycled", asset_id=asset_id, actor=actor)
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

request_id_var: ContextVar[str] = ContextVar("request_id", default="")
actor_id_var: ContextVar[str] = ContextVar("actor_id", default="")

_RESERVED_RECORD_FIELDS = frozenset(
    logging.LogRecord("", 0, "", 0, "", None, None).__dict__.keys()
) | {"message", "asctime", "taskName"}


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("ASSETLEDGER_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("ASSETLEDGER_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("ASSETLEDGER_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2026-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "assetledger.core.ledger",
        "message": "Asset sanitized",
        "request_id": "abc-123",
        "actor": "0x5c1e...",
        "asset_id": 7,
        ...extra fields...
    }
    """

    def format(self, record: logging.LogRecord) -> str:
        log_data = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }

        request_id = request_id_var.get()
        if request_id:
            log_data["request_id"] = request_id

        actor = actor_id_var.get()
        if actor and "actor" not in record.__dict__:
            log_data["actor"] = actor

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_FIELDS or key.startswith("_"):
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

        timestamp = datetime.fromtimestamp(record.created, timezone.utc).strftime(
            "%Y-%m-%d %H:%M:%S"
        )
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        extras = {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_RECORD_FIELDS and not key.startswith("_")
        }
        if extras:
            msg += " " + " ".join(f"{k}={v}" for k, v in extras.items())

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)

        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.info("Asset registered", asset_id=1, serial_number="SN-001")
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})

        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)

        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Structured logger for the given name (typically __name__)."""
    return ContextLogger(logging.getLogger(name), {})


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

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets up request context for logging.

    - Generates a request ID (or honours X-Request-ID)
    - Logs request/response with timing
    - Records request counts and latency in the metrics collector
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        logger = get_logger("assetledger.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            query=str(request.query_params) if request.query_params else None,
            client_ip=request.client.host if request.client else None,
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
            get_metrics().record_request(duration_ms, success=response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response

        except Exception as e:
            duration_ms = (time.perf_counter() - start_time) * 1000
            get_metrics().record_request(duration_ms, success=False)
            logger.exception(
                f"{request.method} {request.url.path} -> 500",
                method=request.method,
                path=request.url.path,
                status_code=500,
                duration_ms=round(duration_ms, 2),
                error=str(e),
            )
            raise

        finally:
            request_id_var.set("")
            actor_id_var.set("")


# ============================================================
# METRICS
# ============================================================

_MAX_SAMPLES = 1000


def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return round(sorted_data[min(idx, len(sorted_data) - 1)], 3)


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector.

    For production, replace with Prometheus, StatsD, or similar.
    """

    # Counters
    transitions_committed: int = 0
    transitions_failed: int = 0
    idempotent_replays: int = 0
    transport_failures: int = 0
    requests_total: int = 0
    requests_failed: int = 0
    failures_by_code: Dict[str, int] = field(default_factory=dict)

    # Histograms (simplified as lists)
    commit_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_commit(self, latency_ms: float) -> None:
        with self._lock:
            self.transitions_committed += 1
            self.commit_latencies_ms.append(latency_ms)
            if len(self.commit_latencies_ms) > _MAX_SAMPLES:
                self.commit_latencies_ms = self.commit_latencies_ms[-_MAX_SAMPLES:]

    def record_failure(self, code: str) -> None:
        with self._lock:
            self.transitions_failed += 1
            self.failures_by_code[code] = self.failures_by_code.get(code, 0) + 1

    def record_replay(self) -> None:
        with self._lock:
            self.idempotent_replays += 1

    def record_transport_failure(self) -> None:
        with self._lock:
            self.transport_failures += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)
            if len(self.request_latencies_ms) > _MAX_SAMPLES:
                self.request_latencies_ms = self.request_latencies_ms[-_MAX_SAMPLES:]

    def reset(self) -> None:
        with self._lock:
            self.transitions_committed = 0
            self.transitions_failed = 0
            self.idempotent_replays = 0
            self.transport_failures = 0
            self.requests_total = 0
            self.requests_failed = 0
            self.failures_by_code = {}
            self.commit_latencies_ms = []
            self.request_latencies_ms = []

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "transitions_committed": self.transitions_committed,
                "transitions_failed": self.transitions_failed,
                "idempotent_replays": self.idempotent_replays,
                "transport_failures": self.transport_failures,
                "failures_by_code": dict(self.failures_by_code),
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "commit_latency_p50_ms": _percentile(self.commit_latencies_ms, 0.5),
                "commit_latency_p95_ms": _percentile(self.commit_latencies_ms, 0.95),
                "commit_latency_p99_ms": _percentile(self.commit_latencies_ms, 0.99),
                "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
            }


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """Get the global metrics collector."""
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


def check_health(ledger=None, event_store=None) -> HealthStatus:
    """
    Run all health checks.

    Args:
        ledger: LedgerService instance (enables the chain integrity check)
        event_store: EventStore instance (enables the store reachability check)
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if event_store is not None:
        try:
            head = event_store.get_head()
            checks["event_store"] = {
                "status": "healthy",
                "event_count": head.next_sequence,
                "last_hash": head.last_event_hash[:16] + "..." if head.last_event_hash else None,
            }
        except Exception as e:
            checks["event_store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    if ledger is not None and ledger.event_count > 0:
        try:
            is_valid = ledger.verify_chain_integrity()
            checks["chain_integrity"] = {
                "status": "healthy" if is_valid else "unhealthy",
                "valid": is_valid,
                "event_count": ledger.event_count,
            }
            if not is_valid:
                all_healthy = False
        except Exception as e:
            checks["chain_integrity"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    duration_ms = (time.perf_counter() - start) * 1000

    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
