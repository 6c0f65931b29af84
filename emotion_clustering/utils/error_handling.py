"""
Error Handling Module

Provides the error and warning taxonomy of the clustering engine:
- Custom exception hierarchy (fatal, always surfaced to the caller)
- Warning categories for non-fatal numerical conditions
- Helper that emits a warning and a structured log event together
"""

import time
import warnings
from typing import Any, Optional, Type

import structlog


logger = structlog.get_logger(__name__)


# =============================================================================
# Custom Exception Hierarchy
# =============================================================================


class ClusteringEngineError(Exception):
    """Base exception for all clustering engine errors."""

    def __init__(
        self,
        message: str,
        error_code: Optional[str] = None,
        details: Optional[dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.error_code = error_code or self.__class__.__name__
        self.details = details or {}
        self.timestamp = time.time()

    def to_dict(self) -> dict[str, Any]:
        """Convert exception to dictionary for logging/reporting."""
        return {
            "error_type": self.__class__.__name__,
            "error_code": self.error_code,
            "message": self.message,
            "details": self.details,
            "timestamp": self.timestamp,
        }


class InvalidInputError(ClusteringEngineError, ValueError):
    """
    Malformed or inconsistent input.

    Raised for ragged or non-finite matrices, out-of-range cluster counts
    or heights, and unknown metric/linkage/method names. Never repaired.
    """
    pass


class ConfigurationError(ClusteringEngineError):
    """Error in engine configuration."""
    pass


# =============================================================================
# Warning Categories
# =============================================================================


class ClusteringWarning(UserWarning):
    """Base category for non-fatal clustering conditions."""
    pass


class ConvergenceWarning(ClusteringWarning):
    """K-means reached max_iterations before assignments stabilized."""
    pass


class DegenerateClusterWarning(ClusteringWarning):
    """A k-means centroid received no members and kept its position."""
    pass


def warn_and_log(
    event: str,
    message: str,
    category: Type[Warning] = ClusteringWarning,
    stacklevel: int = 3,
    **context: Any,
) -> None:
    """
    Emit a Python warning and a structured log event for the same condition.

    Args:
        event: Structured log event name
        message: Human-readable warning message
        category: Warning class to emit
        stacklevel: Passed through to warnings.warn
        **context: Extra fields for the log event
    """
    logger.warning(event, message=message, warning_type=category.__name__, **context)
    warnings.warn(message, category, stacklevel=stacklevel)
