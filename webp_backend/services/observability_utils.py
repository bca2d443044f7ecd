"""
webp_backend/services/observability_utils.py

Logging, audit and metric helpers shared by the pipeline services.

- `correlation_id_var` travels with each coroutine; `get_logger` returns an
  adapter that stamps it onto every record.
- `configure_logging` installs one stream handler on the root logger with a
  plain or JSON formatter (python-json-logger) depending on LOG_FORMAT.
- `audit_log` emits a structured INFO line on the `webp_backend.audit` logger.
- `metrics_inc` feeds a prometheus_client Counter on a private
  CollectorRegistry; `metrics_snapshot` flattens it for the CLI and tests,
  `metrics_exposition` renders the text format.
"""

from __future__ import annotations

import contextvars
import logging
import threading
from typing import Any, Dict, Optional, Tuple, Union

from prometheus_client import CollectorRegistry, Counter, generate_latest
from pythonjsonlogger.json import JsonFormatter

correlation_id_var: contextvars.ContextVar[str] = contextvars.ContextVar("correlation_id", default="standalone")

_LOG_FORMAT = "%(asctime)s %(levelname)s [%(name)s] [%(correlation_id)s] %(message)s"


class ContextInjectingAdapter(logging.LoggerAdapter):
    """A logging adapter to automatically inject the correlation_id into all log records."""

    def process(self, msg, kwargs):
        kwargs["extra"] = kwargs.get("extra", {})
        kwargs["extra"]["correlation_id"] = correlation_id_var.get()
        return msg, kwargs


class _CorrelationIdFilter(logging.Filter):
    """Guarantees `correlation_id` exists on records from third-party loggers."""

    def filter(self, record: logging.LogRecord) -> bool:
        if not hasattr(record, "correlation_id"):
            record.correlation_id = correlation_id_var.get()
        return True


def get_logger(name: str) -> ContextInjectingAdapter:
    base = logging.getLogger(name)
    if not base.handlers:
        base.addHandler(logging.NullHandler())
    return ContextInjectingAdapter(base, {})


logger = get_logger("webp_backend.services.observability_utils")
_audit_logger = get_logger("webp_backend.audit")


def configure_logging(level: str = "INFO", fmt: str = "text", force: bool = False) -> None:
    root = logging.getLogger()
    if root.handlers and not force:
        return
    for h in list(root.handlers):
        root.removeHandler(h)
    handler = logging.StreamHandler()
    if fmt.lower() == "json":
        formatter: logging.Formatter = JsonFormatter(_LOG_FORMAT)
    else:
        formatter = logging.Formatter(_LOG_FORMAT)
    handler.setFormatter(formatter)
    handler.addFilter(_CorrelationIdFilter())
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for noisy in ("botocore", "boto3", "urllib3", "httpx", "httpcore", "PIL"):
        logging.getLogger(noisy).setLevel(logging.WARNING)


# ---------------------------
# Audit
# ---------------------------
def audit_log(action: str, target: str, status: str, details: Optional[Dict[str, Any]] = None) -> None:
    """Structured audit line: action, target, status and free-form details."""
    _audit_logger.info(
        "AUDIT action=%s target=%s status=%s details=%s",
        action,
        target,
        status,
        details or {},
        extra={"audit": {"action": action, "target": target, "status": status}},
    )


# ---------------------------
# Metrics
# ---------------------------
METRIC_NAME = "webp_backend_events"


def _new_registry() -> Tuple[CollectorRegistry, Counter]:
    registry = CollectorRegistry()
    counter = Counter(METRIC_NAME, "Pipeline events by name", ["name"], registry=registry)
    return registry, counter


_metrics_lock = threading.Lock()
_PROM_REG, _PROM_EVENTS = _new_registry()


def metrics_inc(name: str, value: Union[int, float] = 1) -> None:
    with _metrics_lock:
        _PROM_EVENTS.labels(name=name).inc(value)


def metrics_snapshot() -> Dict[str, Union[int, float]]:
    out: Dict[str, Union[int, float]] = {}
    with _metrics_lock:
        families = list(_PROM_REG.collect())
    for family in families:
        for sample in family.samples:
            if sample.name == f"{METRIC_NAME}_total":
                out[sample.labels["name"]] = sample.value
    return out


def metrics_exposition() -> bytes:
    """Prometheus text format of the current counters."""
    with _metrics_lock:
        return generate_latest(_PROM_REG)


def metrics_reset() -> None:
    global _PROM_REG, _PROM_EVENTS
    with _metrics_lock:
        _PROM_REG, _PROM_EVENTS = _new_registry()


__all__ = [
    "correlation_id_var",
    "ContextInjectingAdapter",
    "get_logger",
    "configure_logging",
    "audit_log",
    "metrics_inc",
    "metrics_snapshot",
    "metrics_exposition",
    "metrics_reset",
]
