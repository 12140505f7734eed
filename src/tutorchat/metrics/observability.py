"""Observability helpers for TutorChat."""

from __future__ import annotations

import logging
import time
from contextvars import ContextVar

import structlog
from prometheus_client import Counter, Histogram

_logger_configured = False
_correlation_id_var: ContextVar[str] = ContextVar("correlation_id", default="-")


def configure_logging(level: int = logging.INFO) -> None:
    global _logger_configured  # noqa: PLW0603 - module-level guard
    if _logger_configured:
        return
    logging.basicConfig(level=level, format="%(message)s")
    structlog.configure(
        processors=[
            structlog.contextvars.merge_contextvars,
            structlog.processors.add_log_level,
            structlog.processors.TimeStamper(fmt="iso", utc=True),
            structlog.processors.JSONRenderer(),
        ],
        wrapper_class=structlog.make_filtering_bound_logger(level),
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )
    _logger_configured = True


def bind_correlation_id(correlation_id: str) -> None:
    structlog.contextvars.bind_contextvars(correlation_id=correlation_id)
    _correlation_id_var.set(correlation_id)


def clear_correlation_id() -> None:
    structlog.contextvars.clear_contextvars()
    _correlation_id_var.set("-")


def get_correlation_id() -> str:
    return _correlation_id_var.get()


def get_logger(name: str = "tutorchat") -> structlog.BoundLogger:
    configure_logging()
    return structlog.get_logger(name)


class StreamMetrics:
    """Prometheus metrics for the chat transport."""

    proxy_requests = Counter(
        "tutorchat_proxy_requests_total",
        "Chat proxy requests by outcome.",
        ["outcome"],
    )
    stream_events = Counter(
        "tutorchat_stream_events_total",
        "Normalized stream events relayed or consumed, by type.",
        ["type"],
    )
    malformed_frames = Counter(
        "tutorchat_malformed_frames_total",
        "SSE data lines discarded because they were not valid JSON.",
    )
    backend_errors = Counter(
        "tutorchat_backend_errors_total",
        "Non-2xx responses received from the chat backend.",
        ["status"],
    )
    stream_duration = Histogram(
        "tutorchat_stream_duration_seconds",
        "Wall time of a relayed or consumed chat stream.",
        buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0),
    )
    conversation_create_duration = Histogram(
        "tutorchat_conversation_create_duration_seconds",
        "Time spent creating a backend conversation before the first send.",
        buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
    )

    @classmethod
    def observe_event(cls, kind: str) -> None:
        cls.stream_events.labels(type=kind).inc()

    @classmethod
    def observe_malformed_frame(cls) -> None:
        cls.malformed_frames.inc()

    @classmethod
    def observe_backend_error(cls, status_code: int) -> None:
        cls.backend_errors.labels(status=str(status_code)).inc()

    @classmethod
    def observe_request(cls, outcome: str) -> None:
        cls.proxy_requests.labels(outcome=outcome).inc()

    @classmethod
    def observe_stream(cls, duration_seconds: float) -> None:
        cls.stream_duration.observe(duration_seconds)

    @classmethod
    def observe_conversation_create(cls, duration_seconds: float) -> None:
        cls.conversation_create_duration.observe(duration_seconds)


class TimedSection:
    """Context manager capturing elapsed time for metrics."""

    def __init__(self, callback) -> None:
        self._callback = callback
        self._start = 0.0

    def __enter__(self) -> "TimedSection":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type, exc, tb) -> None:  # noqa: D401
        duration = time.perf_counter() - self._start
        self._callback(duration)


__all__ = [
    "StreamMetrics",
    "TimedSection",
    "bind_correlation_id",
    "clear_correlation_id",
    "configure_logging",
    "get_correlation_id",
    "get_logger",
]
