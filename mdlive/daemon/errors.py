"""Error types and error aggregation for the mdlive daemon.

Errors in this daemon are recovered locally: one unreadable file, one failed
watch registration or one broken connection is skipped and recorded here,
never propagated to other projects or subscribers.
"""

from collections import deque
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Deque, Dict, Optional

from loguru import logger


class MdLiveError(Exception):
    """Base class for mdlive errors."""


class ProjectNotFoundError(MdLiveError):
    """Raised when a project id is missing or unknown."""

    def __init__(self, project_id: Optional[str]):
        self.project_id = project_id
        super().__init__(f"Project not found: {project_id!r}")


class PathOutsideProjectError(MdLiveError):
    """Raised when a relative path escapes its project root."""

    def __init__(self, root: str, relative_path: str):
        self.root = root
        self.relative_path = relative_path
        super().__init__(f"Path {relative_path!r} is outside project root {root}")


class WatchRegistrationError(MdLiveError):
    """Raised when a directory watch cannot be registered."""

    def __init__(self, project_id: str, root: str, reason: str):
        self.project_id = project_id
        self.root = root
        self.reason = reason
        super().__init__(f"Failed to watch {root} for project {project_id}: {reason}")


class ErrorSeverity(Enum):
    """Error severity levels."""
    LOW = 1
    MEDIUM = 2
    HIGH = 3


@dataclass
class ErrorEvent:
    """A single recovered error."""
    service: str
    error_type: str
    message: str
    severity: ErrorSeverity = ErrorSeverity.LOW
    timestamp: datetime = field(default_factory=datetime.now)
    context: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_exception(
        cls,
        service: str,
        error: BaseException,
        severity: ErrorSeverity = ErrorSeverity.LOW,
        **context: Any
    ) -> "ErrorEvent":
        return cls(
            service=service,
            error_type=type(error).__name__,
            message=str(error),
            severity=severity,
            context=context
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'timestamp': self.timestamp.isoformat(),
            'service': self.service,
            'error_type': self.error_type,
            'message': self.message,
            'severity': self.severity.value,
            'context': self.context
        }


class ErrorAggregator:
    """Keeps a bounded window of recovered errors for the status endpoint."""

    def __init__(self, window_size: int = 100):
        self.window_size = window_size
        self.errors: Deque[ErrorEvent] = deque(maxlen=window_size)
        self.error_counts: Dict[str, int] = {}

    def record_error(self, error_event: ErrorEvent) -> None:
        """Record an error event."""
        self.errors.append(error_event)

        key = f"{error_event.service}:{error_event.error_type}"
        self.error_counts[key] = self.error_counts.get(key, 0) + 1

        if error_event.severity == ErrorSeverity.HIGH:
            logger.warning(
                f"{error_event.service} error ({error_event.error_type}): {error_event.message}"
            )

    def get_error_summary(self) -> Dict[str, Any]:
        """Get error summary."""
        by_service: Dict[str, int] = {}
        for error in self.errors:
            by_service[error.service] = by_service.get(error.service, 0) + 1

        top_errors = sorted(
            self.error_counts.items(),
            key=lambda x: x[1],
            reverse=True
        )[:5]

        return {
            'total_errors': sum(self.error_counts.values()),
            'recent_errors': len(self.errors),
            'by_service': by_service,
            'top_errors': [{'error': k, 'count': v} for k, v in top_errors],
            'last_error': self.errors[-1].to_dict() if self.errors else None
        }

    def reset(self) -> None:
        self.errors.clear()
        self.error_counts.clear()
