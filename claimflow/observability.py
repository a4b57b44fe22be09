"""
Observability - Logging, Metrics, and Health

Provides:
- Structured logging: keyword fields on every call become record extras
- Request context (request id, acting user) carried in context vars
- Claim workflow counters: transitions, messages, verdicts, grants
- Health checks over the claim store

Configuration:
- CLAIMFLOW_LOG_LEVEL: DEBUG, INFO, WARNING, ERROR (default: INFO)
- CLAIMFLOW_LOG_FORMAT: json, text (default: json in production)
- CLAIMFLOW_PRODUCTION: Enable production mode

Usage:
    from claimflow.observability import get_logger

    logger = get_logger(__name__)
    logger.info("Claim status changed", claim_id=str(claim.id), to_status="VERIFIED")
"""

import json
import logging
import os
import sys
import time
import uuid
from collections import Counter, deque
from contextvars import ContextVar
from dataclasses import dataclass, field
from datetime import datetime, timezone
from threading import Lock
from typing import Any, Dict, Optional

from fastapi import Request, Response
from starlette.middleware.base import BaseHTTPMiddleware, RequestResponseEndpoint

# Who is being served right now; empty outside a request
request_id_var: ContextVar[str] = ContextVar("request_id", default="")
user_id_var: ContextVar[str] = ContextVar("user_id", default="")


# ============================================================
# CONFIGURATION
# ============================================================

def _env_flag(name: str) -> bool:
    return os.environ.get(name, "").strip().lower() in ("1", "true", "yes", "on")


def _log_level() -> int:
    name = os.environ.get("CLAIMFLOW_LOG_LEVEL", "INFO").strip().upper()
    level = getattr(logging, name, None)
    return level if isinstance(level, int) else logging.INFO


def _wants_json() -> bool:
    chosen = os.environ.get("CLAIMFLOW_LOG_FORMAT", "").strip().lower()
    if chosen in ("json", "text"):
        return chosen == "json"
    return _env_flag("CLAIMFLOW_PRODUCTION")


# ============================================================
# STRUCTURED LOGGING
# ============================================================

# Attributes every LogRecord has; anything else came in as an extra
_RECORD_FIELDS = frozenset(vars(logging.makeLogRecord({}))) | {"message", "asctime"}

# Shown inline by the text formatter when present
_TEXT_FIELDS = ("claim_id", "document_id", "message_id", "from_status", "to_status", "status_code")


def _record_extras(record: logging.LogRecord) -> Dict[str, Any]:
    return {
        key: value
        for key, value in vars(record).items()
        if key not in _RECORD_FIELDS and not key.startswith("_")
    }


def _jsonable(value: Any) -> Any:
    try:
        json.dumps(value)
        return value
    except (TypeError, ValueError):
        return str(value)


class StructuredFormatter(logging.Formatter):
    """
    One JSON object per line.

    {"timestamp": "2024-03-16T09:00:00.123+00:00", "level": "INFO",
     "logger": "claimflow.core.service", "message": "Claim status changed",
     "request_id": "a1b2c3d4", "user_id": "...", "claim_id": "...", ...}
    """

    def format(self, record: logging.LogRecord) -> str:
        entry = {
            "timestamp": datetime.fromtimestamp(record.created, timezone.utc).isoformat(
                timespec="milliseconds"
            ),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
        }
        if request_id_var.get():
            entry["request_id"] = request_id_var.get()
        if user_id_var.get():
            entry["user_id"] = user_id_var.get()

        for key, value in _record_extras(record).items():
            entry[key] = _jsonable(value)

        if record.exc_info:
            entry["exception"] = self.formatException(record.exc_info)
        return json.dumps(entry)


class TextFormatter(logging.Formatter):
    """Readable single-line output for local runs."""

    def format(self, record: logging.LogRecord) -> str:
        when = datetime.fromtimestamp(record.created, timezone.utc).strftime("%H:%M:%S")
        request_id = request_id_var.get()
        tag = f" [{request_id[:8]}]" if request_id else ""

        extras = _record_extras(record)
        details = " ".join(f"{k}={extras[k]}" for k in _TEXT_FIELDS if k in extras)

        line = f"{when} {record.levelname:<7}{tag} {record.name}: {record.getMessage()}"
        if details:
            line = f"{line} ({details})"
        if record.exc_info:
            line = f"{line}\n{self.formatException(record.exc_info)}"
        return line


class ContextLogger(logging.LoggerAdapter):
    """
    Logger adapter whose keyword arguments become structured fields.

        logger.info("Document reviewed", document_id=str(doc.id), status="APPROVED")

    A field named like a built-in LogRecord attribute is stored with a
    "field_" prefix instead of clobbering it.
    """

    _PASSTHROUGH = ("exc_info", "stack_info", "stacklevel", "extra")

    def process(self, msg: str, kwargs: Dict[str, Any]) -> tuple:
        fields = dict(kwargs.pop("extra", None) or {})
        for key in [k for k in kwargs if k not in self._PASSTHROUGH]:
            name = f"field_{key}" if key in _RECORD_FIELDS else key
            fields[name] = kwargs.pop(key)
        kwargs["extra"] = fields
        return msg, kwargs


def get_logger(name: str) -> ContextLogger:
    """Structured logger for a module (pass __name__)."""
    return ContextLogger(logging.getLogger(name), {})


def setup_logging() -> None:
    """
    Point the root logger at stdout with the configured format.

    Safe to call more than once; earlier handlers are replaced.
    """
    level = _log_level()
    root = logging.getLogger()
    root.setLevel(level)
    for existing in list(root.handlers):
        root.removeHandler(existing)

    stream = logging.StreamHandler(sys.stdout)
    stream.setLevel(level)
    stream.setFormatter(StructuredFormatter() if _wants_json() else TextFormatter())
    root.addHandler(stream)

    for noisy in ("uvicorn.access", "httpx"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ============================================================
# REQUEST CONTEXT MIDDLEWARE
# ============================================================

class RequestContextMiddleware(BaseHTTPMiddleware):
    """
    Binds a request id and the caller's user id for the length of a request.

    The id comes from X-Request-ID when the gateway sent one and is echoed
    back on the response. The caller is read from X-User-Id, the same
    header the claim routes resolve the principal from.
    """

    async def dispatch(
        self,
        request: Request,
        call_next: RequestResponseEndpoint
    ) -> Response:
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex[:8]
        rid_token = request_id_var.set(request_id)
        uid_token = user_id_var.set(request.headers.get("X-User-Id", ""))

        logger = get_logger("claimflow.request")
        route = f"{request.method} {request.url.path}"
        started = time.perf_counter()

        try:
            try:
                response = await call_next(request)
            except Exception as e:
                elapsed_ms = (time.perf_counter() - started) * 1000
                logger.exception(
                    f"{route} failed",
                    method=request.method,
                    path=request.url.path,
                    status_code=500,
                    duration_ms=round(elapsed_ms, 2),
                    error=str(e),
                )
                get_metrics().record_request(elapsed_ms, success=False)
                raise

            elapsed_ms = (time.perf_counter() - started) * 1000
            logger.log(
                logging.WARNING if response.status_code >= 400 else logging.INFO,
                f"{route} -> {response.status_code}",
                method=request.method,
                path=request.url.path,
                status_code=response.status_code,
                duration_ms=round(elapsed_ms, 2),
            )
            get_metrics().record_request(elapsed_ms, success=response.status_code < 500)

            response.headers["X-Request-ID"] = request_id
            return response
        finally:
            request_id_var.reset(rid_token)
            user_id_var.reset(uid_token)


# ============================================================
# METRICS
# ============================================================

LATENCY_WINDOW = 1000


def _percentile(samples, p: float) -> Optional[float]:
    if not samples:
        return None
    ordered = sorted(samples)
    return ordered[min(int(len(ordered) * p), len(ordered) - 1)]


@dataclass
class MetricsCollector:
    """
    In-process counters for the claim workflow.

    Exposed as JSON on /metrics. Latencies keep the last LATENCY_WINDOW
    requests only.
    """

    claims_created: int = 0
    messages_posted: int = 0
    documents_reviewed: int = 0
    ownership_grants: int = 0
    requests_total: int = 0
    requests_failed: int = 0
    # Keyed by the status a claim landed in
    transitions: Counter = field(default_factory=Counter)
    request_latencies_ms: deque = field(default_factory=lambda: deque(maxlen=LATENCY_WINDOW))

    _lock: Lock = field(default_factory=Lock, repr=False)

    def _bump(self, counter: str) -> None:
        with self._lock:
            setattr(self, counter, getattr(self, counter) + 1)

    def record_claim_created(self) -> None:
        self._bump("claims_created")

    def record_transition(self, to_status: str) -> None:
        with self._lock:
            self.transitions[to_status] += 1

    def record_message(self) -> None:
        self._bump("messages_posted")

    def record_document_review(self) -> None:
        self._bump("documents_reviewed")

    def record_ownership_grant(self) -> None:
        self._bump("ownership_grants")

    def record_request(self, latency_ms: float, success: bool) -> None:
        with self._lock:
            self.requests_total += 1
            if not success:
                self.requests_failed += 1
            self.request_latencies_ms.append(latency_ms)

    def reset(self) -> None:
        """Zero every counter (tests only)."""
        with self._lock:
            self.claims_created = self.messages_posted = 0
            self.documents_reviewed = self.ownership_grants = 0
            self.requests_total = self.requests_failed = 0
            self.transitions.clear()
            self.request_latencies_ms.clear()

    def get_summary(self) -> Dict[str, Any]:
        with self._lock:
            latencies = list(self.request_latencies_ms)
            return {
                "claims_created": self.claims_created,
                "transitions": dict(self.transitions),
                "messages_posted": self.messages_posted,
                "documents_reviewed": self.documents_reviewed,
                "ownership_grants": self.ownership_grants,
                "requests_total": self.requests_total,
                "requests_failed": self.requests_failed,
                "request_latency_p50_ms": _percentile(latencies, 0.5),
                "request_latency_p95_ms": _percentile(latencies, 0.95),
            }


_metrics = MetricsCollector()


def get_metrics() -> MetricsCollector:
    """The process-wide collector."""
    return _metrics


# ============================================================
# HEALTH CHECKS
# ============================================================

@dataclass
class HealthStatus:
    healthy: bool
    checks: Dict[str, Dict[str, Any]]
    duration_ms: float


def check_health(store=None) -> HealthStatus:
    """
    Liveness, plus a round trip to the claim store when one is given.

    A store that cannot count its claims marks the whole check unhealthy.
    """
    started = time.perf_counter()
    checks: Dict[str, Dict[str, Any]] = {"liveness": {"status": "healthy"}}

    if store is not None:
        backend = type(store).__name__
        try:
            checks["claim_store"] = {
                "status": "healthy",
                "backend": backend,
                "claim_count": store.count_claims(),
            }
        except Exception as e:
            checks["claim_store"] = {"status": "unhealthy", "backend": backend, "error": str(e)}

    return HealthStatus(
        healthy=all(c["status"] == "healthy" for c in checks.values()),
        checks=checks,
        duration_ms=round((time.perf_counter() - started) * 1000, 2),
    )
