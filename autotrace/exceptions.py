"""
Error taxonomy and error handling utilities for instrumentation.

Instrumentation-internal failures (accessors, detector patterns, exporters)
are caught at their boundary and routed through the error handler here, which
logs them by severity and keeps per-operation counters. Errors raised by the
wrapped library call are never handled here; they are re-raised unchanged.
"""

import logging
from contextlib import contextmanager
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


class ErrorSeverity(Enum):
    """Error severity levels for instrumentation failures."""
    CRITICAL = "critical"    # Setup cannot continue
    HIGH = "high"           # A target or exporter is unusable
    MEDIUM = "medium"       # A single span lost data
    LOW = "low"             # Minor issue - log and continue
    DEBUG = "debug"         # Development/debugging information


class InstrumentationError(Exception):
    """
    Failure inside autotrace itself, never in the traced library.

    ``library`` and ``operation`` name the instrumentation step that failed,
    e.g. ``("metamodel", "accessor:model")``; ``cause`` is the exception that
    was caught there, if any.
    """

    def __init__(self, message: str, severity: ErrorSeverity = ErrorSeverity.MEDIUM,
                 library: Optional[str] = None, operation: Optional[str] = None,
                 cause: Optional[BaseException] = None):
        self.message = message
        self.severity = severity
        self.library = library
        self.operation = operation
        self.cause = cause
        super().__init__(self._describe())

    @property
    def step(self) -> Optional[str]:
        """``library.operation``, or whichever half is known."""
        return ".".join(part for part in (self.library, self.operation) if part) or None

    def _describe(self) -> str:
        text = f"{self.step}: {self.message}" if self.step else self.message
        if self.cause is not None:
            text += f" (caused by {type(self.cause).__name__}: {self.cause})"
        return text


_LOG_LEVELS = {
    ErrorSeverity.CRITICAL: logging.ERROR,
    ErrorSeverity.HIGH: logging.WARNING,
    ErrorSeverity.MEDIUM: logging.INFO,
}


class ConfigurationError(InstrumentationError):
    """Invalid method map, metamodel or setup configuration."""

    def __init__(self, message: str, **kwargs):
        kwargs.setdefault("severity", ErrorSeverity.HIGH)
        super().__init__(message, **kwargs)


class LibraryNotAvailableError(InstrumentationError):
    """Target library or method not available for instrumentation."""
    pass


class ObservabilityError(InstrumentationError):
    """Error in observability data collection or export."""
    pass


class InstrumentationErrorHandler:
    """Centralized error tracking for instrumentation operations."""

    def __init__(self):
        self.error_counts: Dict[str, int] = {}
        self.last_errors: Dict[str, datetime] = {}

    def handle_error(self, error: BaseException, library: str, operation: str,
                     severity: ErrorSeverity = ErrorSeverity.MEDIUM) -> InstrumentationError:
        """Record and log an instrumentation error. Never raises."""
        error_key = f"{library}.{operation}"

        self.error_counts[error_key] = self.error_counts.get(error_key, 0) + 1
        self.last_errors[error_key] = datetime.now(timezone.utc)

        if isinstance(error, InstrumentationError):
            instrumentation_error = error
        else:
            instrumentation_error = ObservabilityError(
                "instrumentation step failed",
                severity=severity,
                library=library,
                operation=operation,
                cause=error,
            )

        self._log(instrumentation_error, error_key)
        return instrumentation_error

    def _log(self, error: InstrumentationError, error_key: str) -> None:
        occurrences = self.error_counts.get(error_key, 1)
        logger.log(
            _LOG_LEVELS.get(error.severity, logging.DEBUG),
            f"{error} [{error_key} x{occurrences}]",
            extra={"autotrace_step": error_key, "autotrace_severity": error.severity.value},
        )

    def reset_errors(self, library: Optional[str] = None) -> None:
        """Reset error tracking for one library or for everything."""
        if library is None:
            self.error_counts.clear()
            self.last_errors.clear()
            return

        for key in [key for key in self.error_counts if key.startswith(f"{library}.")]:
            self.error_counts.pop(key, None)
            self.last_errors.pop(key, None)

    def get_error_summary(self, library: Optional[str] = None) -> Dict[str, Any]:
        """Get error summary for debugging."""
        summary: Dict[str, Any] = {"error_counts": {}, "last_errors": {}}

        for key, count in self.error_counts.items():
            if library is None or key.startswith(f"{library}."):
                summary["error_counts"][key] = count
                if key in self.last_errors:
                    summary["last_errors"][key] = self.last_errors[key].isoformat()

        return summary


# Global error handler instance
_error_handler = InstrumentationErrorHandler()


def get_error_handler() -> InstrumentationErrorHandler:
    """Get the global error handler instance."""
    return _error_handler


@contextmanager
def instrumentation_context(library: str, operation: str,
                            severity: ErrorSeverity = ErrorSeverity.MEDIUM):
    """Swallow and record any error raised by an instrumentation step."""
    try:
        yield
    except Exception as e:
        get_error_handler().handle_error(e, library, operation, severity)
