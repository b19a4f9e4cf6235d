"""
Observability Module - Logging, Metrics, and Health

Provides:
- Structured JSON logging with request IDs and partition keys
- Request/response logging middleware
- Metrics collection (append latency, write failures, chain breaks, etc.)
- Health check utilities

Configuration:
- VAULT_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- VAULT_LOG_FORMAT: json, text (default: json in production)
- VAULT_PRODUCTION: Enable production mode

Usage:
    from sovereign_vault.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Entry appended", partition=partition, sequence_index=3)
"""

import json
import logging
import os
import re
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
partition_var: ContextVar[str] = ContextVar("partition", default="")

_PARTITION_PATH = re.compile(r"^/api/partitions/([^/]+)")


# ============================================================
# CONFIGURATION
# ============================================================

def _is_production() -> bool:
    return os.environ.get("VAULT_PRODUCTION", "").lower() in ("1", "true", "yes")


def _get_log_level() -> int:
    level_str = os.environ.get("VAULT_LOG_LEVEL", "INFO").upper()
    levels = {
        "DEBUG": logging.DEBUG,
        "INFO": logging.INFO,
        "WARNING": logging.WARNING,
        "ERROR": logging.ERROR,
        "CRITICAL": logging.CRITICAL,
    }
    return levels.get(level_str, logging.INFO)


def _use_json_logging() -> bool:
    format_str = os.environ.get("VAULT_LOG_FORMAT", "").lower()
    if format_str == "json":
        return True
    if format_str == "text":
        return False
    return _is_production()


# ============================================================
# STRUCTURED LOGGING
# ============================================================

_RESERVED_ATTRS = frozenset((
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
        "timestamp": "2024-01-15T10:30:00.000000+00:00",
        "level": "INFO",
        "logger": "sovereign_vault.core.ledger",
        "message": "Entry appended",
        "request_id": "abc-123",
        "partition": "user-1",
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

        partition = partition_var.get()
        if partition:
            log_data["partition"] = partition

        if record.exc_info:
            log_data["exception"] = self.formatException(record.exc_info)

        for key, value in record.__dict__.items():
            if key in _RESERVED_ATTRS or key.startswith("_"):
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
    Logger adapter that accepts context fields as keyword arguments.

    Usage:
        logger = get_logger(__name__)
        logger.error("Chain broken", partition=partition, broken_at_index=4)
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
    logging.getLogger("httpx").setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Middleware that sets up request context for logging.

    Features:
    - Generates unique request ID for each request
    - Tags the request with its partition key when the path carries one
    - Logs request/response with timing and feeds request metrics
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID", str(uuid.uuid4())[:8])
        request_id_var.set(request_id)

        match = _PARTITION_PATH.match(request.url.path)
        if match:
            partition_var.set(match.group(1))

        logger = get_logger("sovereign_vault.request")
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
            get_metrics().record_request(duration_ms, success=response.status_code < 500)

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
            get_metrics().record_request(duration_ms, success=False)
            raise

        finally:
            request_id_var.set("")
            partition_var.set("")


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

    For production, replace with Prometheus, StatsD, or similar.
    """

    MAX_SAMPLES = 1000

    # Counters
    entries_appended: int = 0
    write_failures: int = 0
    verifications: int = 0
    chain_breaks: int = 0
    requests_total: int = 0
    requests_failed: int = 0

    # Histograms (simplified as lists)
    append_latencies_ms: list = field(default_factory=list)
    request_latencies_ms: list = field(default_factory=list)

    _lock: Lock = field(default_factory=Lock, repr=False, compare=False)

    def record_append(self, latency_ms: float) -> None:
        with self._lock:
            self.entries_appended += 1
            self.append_latencies_ms.append(latency_ms)
            if len(self.append_latencies_ms) > self.MAX_SAMPLES:
                self.append_latencies_ms = self.append_latencies_ms[-self.MAX_SAMPLES:]

    def record_write_failure(self) -> None:
        with self._lock:
            self.write_failures += 1

    def record_verification(self, valid: bool) -> None:
        with self._lock:
            self.verifications += 1
            if not valid:
                self.chain_breaks += 1

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)
            if len(self.request_latencies_ms) > self.MAX_SAMPLES:
                self.request_latencies_ms = self.request_latencies_ms[-self.MAX_SAMPLES:]

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            append_latencies = list(self.append_latencies_ms)
            request_latencies = list(self.request_latencies_ms)
            return {
                "entries_appended": self.entries_appended,
                "write_failures": self.write_failures,
                "verifications": self.verifications,
                "chain_breaks": self.chain_breaks,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "append_latency_p50_ms": _percentile(append_latencies, 0.5),
                "append_latency_p95_ms": _percentile(append_latencies, 0.95),
                "append_latency_p99_ms": _percentile(append_latencies, 0.99),
                "request_latency_p50_ms": _percentile(request_latencies, 0.5),
                "request_latency_p95_ms": _percentile(request_latencies, 0.95),
            }


# Global metrics instance
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


def check_health(vault=None, store=None, verify_chains: bool = False) -> HealthStatus:
    """
    Run health checks.

    Args:
        vault: VaultService instance
        store: LedgerStore instance
        verify_chains: Also walk every partition's chain (expensive)
    """
    start = time.perf_counter()
    checks = {}
    all_healthy = True

    checks["liveness"] = {"status": "healthy"}

    if store is not None:
        try:
            partitions = store.partitions()
            checks["ledger_store"] = {
                "status": "healthy",
                "backend": type(store).__name__,
                "partitions": len(partitions),
            }
        except Exception as e:
            checks["ledger_store"] = {"status": "unhealthy", "error": str(e)}
            all_healthy = False

    if verify_chains and vault is not None and store is not None:
        try:
            broken = {}
            checked = 0
            for partition in store.partitions():
                result = vault.verify(partition)
                checked += 1
                if not result.valid:
                    broken[partition] = result.broken_at_index
            checks["chain_integrity"] = {
                "status": "healthy" if not broken else "unhealthy",
                "partitions_checked": checked,
                "broken": broken,
            }
            if broken:
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
