"""Structured logging for KeyGate (structlog).

configure_logging() is called once at import time with defaults and again by
keygate/main.py from the LOG_LEVEL / JSON_LOGS / DEBUG environment variables.

Request correlation uses structlog's contextvars: the HTTP middleware binds a
request_id for the duration of each request and every log line emitted while
serving it carries that id.

API keys are credentials: log them through mask_key(), never raw.
"""

import logging
import sys
import time
from typing import Any, Optional

import structlog
from structlog.types import Processor


def configure_logging(log_level: str = "INFO", json_output: bool = True) -> None:
    """Configure structlog processors and output.

    Args:
        log_level: Logging level name (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        json_output: JSON lines when True (production), coloured console otherwise.
    """
    processors: list[Processor] = [
        structlog.contextvars.merge_contextvars,
        structlog.processors.TimeStamper(fmt="iso", utc=True),
        structlog.processors.add_log_level,
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
    ]
    if json_output:
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer(colors=True))

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
        context_class=dict,
        logger_factory=structlog.PrintLoggerFactory(file=sys.stdout),
        cache_logger_on_first_use=True,
    )


def get_logger(name: str = "keygate") -> structlog.stdlib.BoundLogger:
    return structlog.get_logger(name)


def bind_request_id(request_id: str) -> None:
    """Attach request_id to every log line emitted in the current context."""
    structlog.contextvars.bind_contextvars(request_id=request_id)


def clear_request_id() -> None:
    structlog.contextvars.unbind_contextvars("request_id")


def mask_key(key: Optional[str]) -> str:
    """Log-safe rendering of an API key: first 8 characters only."""
    if not key:
        return "<none>"
    return f"{key[:8]}..."


class PerformanceLogger:
    """Context manager that times a block and logs its duration.

    Durations above warn_threshold_ms are logged at WARNING, others at DEBUG.
    A block that raises is logged at ERROR and the exception propagates.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.stdlib.BoundLogger] = None,
        warn_threshold_ms: float = 50.0,
    ) -> None:
        self.operation = operation
        self.logger = logger or get_logger()
        self.warn_threshold_ms = warn_threshold_ms
        self._start = 0.0
        self.duration_ms = 0.0

    def __enter__(self) -> "PerformanceLogger":
        self._start = time.perf_counter()
        return self

    def __exit__(self, exc_type: Any, exc_val: Any, exc_tb: Any) -> None:
        self.duration_ms = (time.perf_counter() - self._start) * 1000
        if exc_type is not None:
            self.logger.error(
                f"{self.operation} failed",
                duration_ms=round(self.duration_ms, 2),
                error=str(exc_val) or exc_type.__name__,
            )
            return
        log = self.logger.warning if self.duration_ms > self.warn_threshold_ms else self.logger.debug
        log(f"{self.operation} completed", duration_ms=round(self.duration_ms, 2))


# Sensible defaults until main.py reconfigures from the environment
configure_logging()
