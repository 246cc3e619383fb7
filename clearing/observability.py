"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request and claim ids
- Request/response logging middleware
- Metrics collection (clearing latency, replays, honoring outcomes)
- Health check utilities

Configuration:
- CLEARING_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CLEARING_LOG_FORMAT: json, text (default: json in production)
- CLEARING_PRODUCTION: Enable production mode

Usage:
    from clearing.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Claim cleared", claim_id=claim.id, transfer_id=hex_id)
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
claim_id_var: ContextVar[str] = ContextVar("claim_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("CLEARING_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("CLEARING_LOG_LEVEL", "INFO").upper()
    return logging.getLevelName(level_str) if level_str in (
        "DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"
    ) else logging.INFO


def _use_json_logging() -> bool:
    format_str = os.environ.get("CLEARING_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RESERVED_RECORD_KEYS = frozenset({
    "name", "msg", "args", "created", "levelname", "levelno",
    "pathname", "filename", "module", "lineno", "funcName",
    "exc_info", "exc_text", "stack_info", "message", "msecs",
    "relativeCreated", "thread", "threadName", "processName",
    "process", "taskName",
})


class StructuredFormatter(logging.Formatter):
    """
    JSON formatter for structured logging.

    Output format:
    {
        "timestamp": "2026-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "clearing.core.orchestrator",
        "message": "Claim cleared",
        "request_id": "abc-123",
        "claim_id": "c1",
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

        claim_id = claim_id_var.get()
        if claim_id:
            log_data["claim_id"] = claim_id

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_RECORD_KEYS or key.startswith("_"):
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
        claim_id = claim_id_var.get()
        if claim_id:
            prefix += f"<{claim_id}> "

        timestamp = datetime.now(timezone.utc).strftime("%Y-%m-%d %H:%M:%S")
        msg = f"{timestamp} {record.levelname:8} {prefix}{record.name}: {record.getMessage()}"

        if record.exc_info:
            msg += "\n" + self.formatException(record.exc_info)
        return msg


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter that turns keyword arguments into structured fields.

    Usage:
        logger = get_logger(__name__)
        logger.warning("Mirror write failed", claim_id=claim.id, error=str(e))
    """

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        extra = kwargs.get("extra", {})
        for key in list(kwargs.keys()):
            if key not in ("exc_info", "stack_info", "stacklevel", "extra"):
                extra[key] = kwargs.pop(key)
        kwargs["extra"] = extra
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """
    Get a structured logger for the given name.

    Args:
        name: Logger name (typically __name__)
    """
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Configure root logging for the application.

    Call this once at application startup.
    """
    root_logger = logging.getLogger()
    root_logger.setLevel(_get_log_level())

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    handler = logging.StreamHandler(sys.stdout)
    handler.setLevel(_get_log_level())
    handler.setFormatter(StructuredFormatter() if _use_json_logging() else TextFormatter())
    root_logger.addHandler(handler)

    logging.getLogger("uvicorn.access").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Sets up request context for logging.

    - Generates (or propagates X-Request-ID) a request id
    - Logs request/response with timing
    - Records request latency on app.state.metrics when present
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        token = request_id_var.set(request_id)

        logger = get_logger("clearing.request")
        start_time = time.perf_counter()

        logger.debug(
            f"{request.method} {request.url.path}",
            method=request.method,
            path=request.url.path,
            client_ip=request.client.host if request.client else None,
        )

        metrics: Optional[MetricsCollector] = getattr(request.app.state, "metrics", None)
        try:
            response = await call_next(request)
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
            if metrics is not None:
                metrics.record_request(duration_ms, success=False)
            raise
        finally:
            request_id_var.reset(token)

        duration_ms = (time.perf_counter() - start_time) * 1000
        log_level = logging.INFO if response.status_code < 400 else logging.WARNING
        logger.log(
            log_level,
            f"{request.method} {request.url.path} -> {response.status_code}",
            method=request.method,
            path=request.url.path,
            status_code=response.status_code,
            duration_ms=round(duration_ms, 2),
            request_id=request_id,
        )
        if metrics is not None:
            metrics.record_request(duration_ms, success=response.status_code < 500)

        response.headers["X-Request-ID"] = request_id
        return response


# ============================================================
# METRICS
# ============================================================

def _percentile(data: list, p: float) -> Optional[float]:
    if not data:
        return None
    sorted_data = sorted(data)
    idx = int(len(sorted_data) * p)
    return round(sorted_data[min(idx, len(sorted_data) - 1)], 3)


@dataclass
class MetricsCollector:
    """
    Simple in-memory metrics collector, one per pipeline.

    For production, export these to Prometheus or StatsD.
    """

    claims_cleared: int = 0
    claims_replayed: int = 0
    claims_rejected_attestation: int = 0
    claims_rejected_compliance: int = 0
    claims_rejected_ledger: int = 0
    ledger_timeouts: int = 0
    mirror_write_failures: int = 0
    event_log_failures: int = 0
    honoring_attempts: int = 0
    honoring_outcomes: Dict[str, int] = field(default_factory=dict)
    webhooks_received: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    clearing_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False)

    MAX_SAMPLES = 1000

    def _sample(self, samples: list, value: float) -> None:
        samples.append(value)
        if len(samples) > self.MAX_SAMPLES:
            del samples[: len(samples) - self.MAX_SAMPLES]

    def record_clearing(self, latency_ms: float, replayed: bool) -> None:
        with self._lock:
            self.claims_cleared += 1
            if replayed:
                self.claims_replayed += 1
            self._sample(self.clearing_latencies_ms, latency_ms)

    def record_rejection(self, stage: str) -> None:
        with self._lock:
            if stage == "attestation":
                self.claims_rejected_attestation += 1
            elif stage == "compliance":
                self.claims_rejected_compliance += 1
            else:
                self.claims_rejected_ledger += 1

    def record_ledger_timeout(self) -> None:
        with self._lock:
            self.ledger_timeouts += 1

    def record_mirror_failure(self) -> None:
        with self._lock:
            self.mirror_write_failures += 1

    def record_event_log_failure(self) -> None:
        with self._lock:
            self.event_log_failures += 1

    def record_honoring_attempt(self) -> None:
        with self._lock:
            self.honoring_attempts += 1

    def record_honoring_outcome(self, status: str) -> None:
        with self._lock:
            self.honoring_outcomes[status] = self.honoring_outcomes.get(status, 0) + 1

    def record_webhook(self) -> None:
        with self._lock:
            self.webhooks_received += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self._sample(self.request_latencies_ms, latency_ms)

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "claims_cleared": self.claims_cleared,
                "claims_replayed": self.claims_replayed,
                "claims_rejected_attestation": self.claims_rejected_attestation,
                "claims_rejected_compliance": self.claims_rejected_compliance,
                "claims_rejected_ledger": self.claims_rejected_ledger,
                "ledger_timeouts": self.ledger_timeouts,
                "mirror_write_failures": self.mirror_write_failures,
                "event_log_failures": self.event_log_failures,
                "honoring_attempts": self.honoring_attempts,
                "honoring_outcomes": dict(self.honoring_outcomes),
                "webhooks_received": self.webhooks_received,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "clearing_latency_p50_ms": _percentile(self.clearing_latencies_ms, 0.5),
                "clearing_latency_p95_ms": _percentile(self.clearing_latencies_ms, 0.95),
                "request_latency_p50_ms": _percentile(self.request_latencies_ms, 0.5),
                "request_latency_p95_ms": _percentile(self.request_latencies_ms, 0.95),
            }


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    """Health check result."""
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(ledger=None, narrative_store=None, dispatcher=None, claim_store=None) -> HealthStatus:
    """
    Run all health checks.

    The mirror and the claim event log are advisory: an unreachable store
    is reported as degraded but does not make the service unhealthy. The
    ledger does.

    Args:
        ledger: LedgerGateway instance
        narrative_store: NarrativeStore instance
        dispatcher: HonoringDispatcher instance
        claim_store: ClaimStore instance
    """
    start = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}
    all_healthy = True

    if ledger is not None:
        try:
            reachable = ledger.ping()
        except Exception as e:
            checks["ledger"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False
        else:
            checks["ledger"] = {
                "status": "healthy" if reachable else "unhealthy",
                "backend": type(ledger).__name__,
            }
            all_healthy = all_healthy and reachable

    if narrative_store is not None:
        try:
            checks["narrative_mirror"] = {
                "status": "healthy" if narrative_store.ping() else "degraded",
                "entry_count": narrative_store.count(),
                "backend": type(narrative_store).__name__,
            }
        except Exception as e:
            checks["narrative_mirror"] = {"status": "degraded", "error": str(e)}

    if claim_store is not None:
        try:
            checks["claim_events"] = {
                "status": "healthy" if claim_store.ping() else "degraded",
                "event_count": claim_store.count(),
                "backend": type(claim_store).__name__,
            }
        except Exception as e:
            checks["claim_events"] = {"status": "degraded", "error": str(e)}

    if dispatcher is not None:
        checks["honoring"] = {
            "status": "healthy",
            **dispatcher.get_statistics(),
        }

    duration_ms = (time.perf_counter() - start) * 1000
    return HealthStatus(
        healthy=all_healthy,
        checks=checks,
        duration_ms=round(duration_ms, 2),
    )
