"""
Error taxonomy for the allocation pipeline and a small error collector for observability
"""
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, List, Optional

import structlog

logger = structlog.get_logger()


class BestPoolError(Exception):
    """Base class for all pipeline errors"""
    pass


class InvalidInput(BestPoolError):
    """Raised when caller-supplied parameters violate a precondition"""
    pass


class DataUnavailable(BestPoolError):
    """Raised when a specific pair cannot be resolved"""

    def __init__(self, message: str, pair_id: Optional[str] = None):
        super().__init__(message)
        self.pair_id = pair_id


class UpstreamError(BestPoolError):
    """Raised when the upstream data source fails to respond or decode"""
    pass


class NoDataAvailable(BestPoolError):
    """Raised when none of the selected pairs could be resolved"""
    pass


class StreamConnectionError(BestPoolError):
    """Raised by a feed transport when a connection cannot be opened"""
    pass


class ConnectionExhausted(BestPoolError):
    """Reported to stream listeners once the reconnection budget is spent"""

    def __init__(self, attempts: int):
        super().__init__(f"Unable to establish price stream connection after {attempts} attempts")
        self.attempts = attempts


class ErrorCollector:
    """Collects recent errors by type"""

    def __init__(self, max_errors: int = 1000):
        self.errors: List[Dict] = []
        self.error_counts: Dict[str, int] = {}
        self.max_errors = max_errors

    def record_error(self, error: Exception, context: Optional[Dict[str, Any]] = None):
        """Record an error with context"""
        error_type = type(error).__name__
        self.errors.append({
            "timestamp": datetime.now(timezone.utc),
            "type": error_type,
            "message": str(error),
            "context": context or {},
        })

        if len(self.errors) > self.max_errors:
            self.errors = self.errors[-self.max_errors:]

        self.error_counts[error_type] = self.error_counts.get(error_type, 0) + 1

        logger.warning(
            "Error recorded",
            error_type=error_type,
            error_message=str(error),
            context=context
        )

    def get_error_summary(self, hours: int = 24) -> Dict:
        """Get error summary for the last N hours"""
        cutoff_time = datetime.now(timezone.utc) - timedelta(hours=hours)
        recent_errors = [error for error in self.errors if error["timestamp"] > cutoff_time]

        error_types: Dict[str, int] = {}
        for error in recent_errors:
            error_types[error["type"]] = error_types.get(error["type"], 0) + 1

        return {
            "time_window_hours": hours,
            "total_errors": len(recent_errors),
            "error_types": error_types,
        }

    def clear(self):
        self.errors.clear()
        self.error_counts.clear()
