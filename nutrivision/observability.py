"""
Observability module for the Nutri-Vision backend.

This module provides structured logging, request metrics collection and
operation tracing for the appointment, chat and signaling components.
"""

import logging
import time
from datetime import datetime
from typing import Optional
from contextlib import contextmanager

import structlog
from structlog.processors import JSONRenderer

from . import __version__


# Configure structured logging
def setup_logging(log_level: str = "INFO") -> structlog.BoundLogger:
    """
    Setup structured logging with JSON output.

    Returns configured logger instance for the application.
    """
    # Configure standard library logging
    logging.basicConfig(
        format="%(message)s",
        stream=None,
        level=getattr(logging, log_level.upper())
    )

    # Configure structlog
    structlog.configure(
        processors=[
            structlog.stdlib.filter_by_level,
            structlog.stdlib.add_logger_name,
            structlog.stdlib.add_log_level,
            structlog.stdlib.PositionalArgumentsFormatter(),
            structlog.processors.TimeStamper(fmt="iso"),
            structlog.processors.StackInfoRenderer(),
            structlog.processors.format_exc_info,
            JSONRenderer()
        ],
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        wrapper_class=structlog.stdlib.BoundLogger,
        cache_logger_on_first_use=True,
    )

    return structlog.get_logger("nutrivision.api")


# Global logger instance
logger = setup_logging()


class RequestMetrics:
    """
    Simple in-memory metrics collector for HTTP request statistics.

    Counters are per process; they reset on restart.
    """

    def __init__(self):
        self.request_count = 0
        self.error_count = 0
        self.total_latency_ms = 0
        self.route_counts = {}
        self.status_counts = {}

    def record_request(self, route: str, latency_ms: int, status_code: int):
        """Record request metrics."""
        self.request_count += 1
        self.total_latency_ms += latency_ms

        if status_code >= 500:
            self.error_count += 1

        self.route_counts[route] = self.route_counts.get(route, 0) + 1
        status_family = f"{status_code // 100}xx"
        self.status_counts[status_family] = self.status_counts.get(status_family, 0) + 1

    def get_metrics(self) -> dict:
        """Get current metrics summary."""
        avg_latency = (
            self.total_latency_ms / self.request_count
            if self.request_count > 0 else 0
        )

        success_rate = (
            (self.request_count - self.error_count) / self.request_count * 100
            if self.request_count > 0 else 0
        )

        return {
            "request_count": self.request_count,
            "error_count": self.error_count,
            "success_rate_percent": round(success_rate, 2),
            "average_latency_ms": round(avg_latency, 2),
            "route_counts": self.route_counts,
            "status_counts": self.status_counts,
            "timestamp": datetime.utcnow().isoformat()
        }


# Global metrics instance
metrics = RequestMetrics()


def log_request(
    method: str,
    route: str,
    status_code: int,
    latency_ms: int,
    client: Optional[str] = None,
    subject_id: Optional[str] = None,
) -> None:
    """
    Log a handled HTTP request and record it in the metrics collector.

    Bodies are never logged; they may carry chat content or credentials.
    """
    log_context = {
        "method": method,
        "route": route,
        "status_code": status_code,
        "latency_ms": latency_ms,
        "client": client,
        "subject_id": subject_id,
    }

    if status_code >= 500:
        logger.error("HTTP request failed", **log_context)
    else:
        logger.info("HTTP request processed", **log_context)

    metrics.record_request(f"{method} {route}", latency_ms, status_code)


@contextmanager
def trace_operation(operation_name: str, **context):
    """
    Context manager for tracing operations with timing and logging.

    Usage:
        with trace_operation("approve_appointment", appointment_id="123"):
            # Your operation here
            pass
    """
    start_time = time.time()
    operation_id = f"{operation_name}_{int(start_time * 1000)}"

    logger.info(
        f"Starting operation: {operation_name}",
        operation_id=operation_id,
        **context
    )

    try:
        yield operation_id

        duration_ms = int((time.time() - start_time) * 1000)
        logger.info(
            f"Completed operation: {operation_name}",
            operation_id=operation_id,
            duration_ms=duration_ms,
            success=True,
            **context
        )

    except Exception as e:
        duration_ms = int((time.time() - start_time) * 1000)
        logger.error(
            f"Failed operation: {operation_name}",
            operation_id=operation_id,
            duration_ms=duration_ms,
            success=False,
            error=str(e),
            **context
        )
        raise


def get_observability_summary() -> dict:
    """
    Get comprehensive observability summary for monitoring dashboards.
    """
    return {
        "metrics": metrics.get_metrics(),
        "system_info": {
            "timestamp": datetime.utcnow().isoformat(),
            "version": __version__
        }
    }
