"""
Advanced Logging Module

Provides structured logging for the clustering engine with:
- structlog configuration over stdlib logging (JSON or console output)
- Analysis ID tracking so every event of one analysis can be grouped
- Timing of clustering operations
- Progress logging for long loops (bootstrap reference datasets)
"""

import contextlib
import contextvars
import logging
import logging.handlers
import time
from pathlib import Path
from typing import Any, Optional

import structlog
from structlog.types import EventDict, Processor


# =============================================================================
# Structured Logging Configuration
# =============================================================================


def configure_logging(
    log_level: str = "INFO",
    log_format: str = "console",
    log_file: Optional[str] = None,
    service_name: str = "emotion-clustering",
) -> None:
    """
    Configure structured logging with structlog.

    Args:
        log_level: Logging level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        log_format: Output format ("json" or "console")
        log_file: Optional log file path
        service_name: Service name added to every event
    """
    level = getattr(logging, log_level.upper())
    logging.basicConfig(format="%(message)s", level=level)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)

        file_handler = logging.handlers.RotatingFileHandler(
            log_file,
            maxBytes=10 * 1024 * 1024,  # 10MB
            backupCount=3,
        )
        file_handler.setLevel(level)
        logging.root.addHandler(file_handler)

    processors: list[Processor] = [
        structlog.stdlib.filter_by_level,
        structlog.stdlib.add_logger_name,
        structlog.stdlib.add_log_level,
        structlog.stdlib.PositionalArgumentsFormatter(),
        structlog.processors.TimeStamper(fmt="iso"),
        structlog.processors.StackInfoRenderer(),
        structlog.processors.format_exc_info,
        structlog.processors.UnicodeDecoder(),
        add_service_context(service_name),
    ]

    if log_format == "json":
        processors.append(structlog.processors.JSONRenderer())
    else:
        processors.append(structlog.dev.ConsoleRenderer())

    structlog.configure(
        processors=processors,
        wrapper_class=structlog.stdlib.BoundLogger,
        context_class=dict,
        logger_factory=structlog.stdlib.LoggerFactory(),
        cache_logger_on_first_use=True,
    )


def add_service_context(service_name: str) -> Processor:
    """
    Add service-level context to all log events.

    Args:
        service_name: Service name

    Returns:
        Processor function
    """

    def processor(logger: Any, method_name: str, event_dict: EventDict) -> EventDict:
        event_dict["service"] = service_name
        analysis_id = LogContext.get_analysis_id()
        if analysis_id and "analysis_id" not in event_dict:
            event_dict["analysis_id"] = analysis_id
        return event_dict

    return processor


# =============================================================================
# Analysis ID Context
# =============================================================================


class LogContext:
    """
    Holds the identifier of the analysis currently running.

    One analysis is one invocation of the engine on one feature matrix;
    when the caller runs several (e.g. one per imputed dataset) the id keeps
    their log events apart. The id lives in a context variable, so each
    thread (and each asyncio task) sees only the analysis it is running.
    """

    _analysis_id: contextvars.ContextVar = contextvars.ContextVar(
        "analysis_id", default=None
    )

    @classmethod
    def set_analysis_id(cls, analysis_id: str) -> contextvars.Token:
        return cls._analysis_id.set(analysis_id)

    @classmethod
    def get_analysis_id(cls) -> Optional[str]:
        return cls._analysis_id.get()

    @classmethod
    def clear_analysis_id(cls) -> None:
        cls._analysis_id.set(None)

    @classmethod
    @contextlib.contextmanager
    def analysis_context(cls, analysis_id: str):
        """
        Context manager for the analysis ID.

        Example:
            with LogContext.analysis_context("emotions-2024"):
                engine.analyze(matrix)
        """
        token = cls._analysis_id.set(analysis_id)
        try:
            yield
        finally:
            cls._analysis_id.reset(token)


def get_logger(name: str) -> structlog.BoundLogger:
    """
    Get logger with automatic analysis ID binding.

    Args:
        name: Logger name (usually __name__)

    Returns:
        Bound logger instance
    """
    logger = structlog.get_logger(name)

    analysis_id = LogContext.get_analysis_id()
    if analysis_id:
        logger = logger.bind(analysis_id=analysis_id)

    return logger


# =============================================================================
# Performance Logger
# =============================================================================


class PerformanceLogger:
    """
    Context manager for automatic timing of clustering operations.

    Logs duration and, when an entity count is given, entities per second.
    """

    def __init__(
        self,
        operation: str,
        logger: Optional[structlog.BoundLogger] = None,
        log_level: str = "info",
        n_entities: Optional[int] = None,
        **extra_context: Any,
    ):
        """
        Initialize performance logger.

        Args:
            operation: Operation name for logging
            logger: Logger instance (creates new if None)
            log_level: Log level for output
            n_entities: Number of entities processed (for throughput)
            **extra_context: Additional context fields
        """
        self.operation = operation
        self.logger = logger or get_logger(__name__)
        self.log_level = log_level
        self.n_entities = n_entities
        self.extra_context = extra_context
        self.start_time: Optional[float] = None
        self.end_time: Optional[float] = None

    def __enter__(self) -> "PerformanceLogger":
        self.start_time = time.perf_counter()
        self.logger.debug(
            "operation_started",
            operation=self.operation,
            **self.extra_context,
        )
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.end_time = time.perf_counter()
        duration = self.end_time - self.start_time

        log_data = {
            "operation": self.operation,
            "duration_seconds": round(duration, 4),
            **self.extra_context,
        }

        if self.n_entities is not None and self.n_entities > 0 and duration > 0:
            log_data["n_entities"] = self.n_entities
            log_data["entities_per_second"] = round(self.n_entities / duration, 2)

        if exc_type is not None:
            log_data["error"] = str(exc_val)
            log_data["error_type"] = exc_type.__name__
            self.logger.error("operation_failed", **log_data)
        else:
            getattr(self.logger, self.log_level)("operation_completed", **log_data)

    @property
    def elapsed_time(self) -> float:
        """Get elapsed time (even if context not exited)."""
        if self.start_time is None:
            return 0.0
        end = self.end_time or time.perf_counter()
        return end - self.start_time


# =============================================================================
# Progress Logger
# =============================================================================


class BatchLogger:
    """
    Progress logger for repeated work such as gap-statistic references.

    Only logs every `log_interval` items to keep output readable.
    """

    def __init__(
        self,
        total_items: int,
        operation: str,
        log_interval: int = 10,
        logger: Optional[structlog.BoundLogger] = None,
    ):
        self.total_items = total_items
        self.operation = operation
        self.log_interval = max(1, log_interval)
        self.logger = logger or get_logger(__name__)

        self.processed_items = 0
        self.start_time = time.perf_counter()
        self.last_log_count = 0

    def update(self, count: int = 1) -> None:
        """
        Update progress by count items.

        Args:
            count: Number of items processed
        """
        self.processed_items += count

        if (
            self.processed_items - self.last_log_count >= self.log_interval
            or self.processed_items >= self.total_items
        ):
            self._log_progress()
            self.last_log_count = self.processed_items

    def _log_progress(self) -> None:
        elapsed = time.perf_counter() - self.start_time
        progress_pct = (
            (self.processed_items / self.total_items) * 100 if self.total_items > 0 else 0
        )

        self.logger.debug(
            "batch_progress",
            operation=self.operation,
            processed=self.processed_items,
            total=self.total_items,
            progress_pct=round(progress_pct, 1),
            elapsed_seconds=round(elapsed, 2),
        )

    def complete(self) -> None:
        """Log completion statistics."""
        elapsed = time.perf_counter() - self.start_time
        self.logger.info(
            "batch_completed",
            operation=self.operation,
            total_items=self.processed_items,
            duration_seconds=round(elapsed, 3),
        )


# =============================================================================
# Utility Functions
# =============================================================================


@contextlib.contextmanager
def log_exceptions(
    logger: Optional[structlog.BoundLogger] = None,
    operation: Optional[str] = None,
    reraise: bool = True,
):
    """
    Context manager to automatically log exceptions.

    Args:
        logger: Logger instance
        operation: Operation name for context
        reraise: Whether to reraise exception after logging

    Example:
        with log_exceptions(operation="build_dendrogram"):
            build_dendrogram(dissimilarity, "ward")
    """
    log = logger or get_logger(__name__)
    try:
        yield
    except Exception as e:
        log_data = {
            "error": str(e),
            "error_type": type(e).__name__,
        }
        if operation:
            log_data["operation"] = operation
        to_dict = getattr(e, "to_dict", None)
        if callable(to_dict):
            log_data["error_details"] = to_dict().get("details", {})

        log.error("exception_caught", **log_data, exc_info=True)

        if reraise:
            raise
