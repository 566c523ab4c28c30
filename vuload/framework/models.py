"""
Data models for the vuload load-generation engine.

This module defines the core data structures shared by the sink, the
workers, the scheduler and the run controller: metric kinds, samples,
worker lifecycle events, run states and the RunError record.
"""

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


class MetricKind(Enum):
    """Kinds of metrics the sink can hold."""

    COUNTER = "counter"
    TREND = "trend"
    RATE = "rate"


class RunState(Enum):
    """Run controller lifecycle states."""

    IDLE = "idle"
    RUNNING = "running"
    DRAINING = "draining"
    FINISHED = "finished"


class ThresholdStatus(Enum):
    """Outcome of a threshold evaluation."""

    PASSED = "passed"
    FAILED = "failed"
    INCONCLUSIVE = "inconclusive"


class WorkerEventType(Enum):
    """Virtual user lifecycle event types."""

    STARTED = "started"
    STOPPED = "stopped"


class ErrorCategory(Enum):
    """Categories of run errors."""

    EXECUTION = "execution"
    SINK = "sink"
    TIMEOUT = "timeout"


class ErrorSeverity(Enum):
    """Severity levels for run errors."""

    CRITICAL = "critical"
    WARNING = "warning"
    INFO = "info"


@dataclass(frozen=True)
class MetricSpec:
    """
    Declaration of a metric.

    Attributes:
        name: Unique metric name
        kind: Counter, trend or rate
        unit: Optional unit tag ("ms" marks a time trend)
    """

    name: str
    kind: MetricKind
    unit: Optional[str] = None

    @property
    def is_time(self) -> bool:
        """Check if the metric holds durations."""
        return self.unit == "ms"


@dataclass(frozen=True)
class Sample:
    """
    A single recorded value.

    Attributes:
        metric: Name of the metric the value belongs to
        value: Recorded value
        timestamp: Seconds since run start (monotonic clock)
        scenario: Name of the originating scenario
        group: Group the value was recorded in, if any
    """

    metric: str
    value: float
    timestamp: float
    scenario: Optional[str] = None
    group: Optional[str] = None


@dataclass(frozen=True)
class CheckResult:
    """Outcome of one named check predicate."""

    name: str
    passed: bool
    scenario: Optional[str] = None
    group: Optional[str] = None


@dataclass(frozen=True)
class WorkerEvent:
    """Lifecycle event emitted by the scheduler for a virtual user."""

    event_type: WorkerEventType
    scenario: str
    vu_id: int
    timestamp: float
    iterations: int = 0


@dataclass
class RunError:
    """
    Represents an error that occurred during a run.

    Attributes:
        error_code: Unique error identifier (e.g., "WORKER_INTERRUPTED")
        message: Human-readable error description
        category: Error category
        severity: Error severity level
        context: Additional context information
        timestamp: When the error occurred
    """

    error_code: str
    message: str
    category: ErrorCategory
    severity: ErrorSeverity = ErrorSeverity.WARNING
    context: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=datetime.utcnow)

    def to_dict(self) -> dict[str, Any]:
        """Convert error to dictionary representation."""
        return {
            "error_code": self.error_code,
            "message": self.message,
            "category": self.category.value,
            "severity": self.severity.value,
            "context": self.context,
            "timestamp": self.timestamp.isoformat(),
        }


BUILTIN_METRICS: tuple[MetricSpec, ...] = (
    MetricSpec("http_reqs", MetricKind.COUNTER),
    MetricSpec("http_req_duration", MetricKind.TREND, unit="ms"),
    MetricSpec("http_req_failed", MetricKind.RATE),
    MetricSpec("iterations", MetricKind.COUNTER),
    MetricSpec("iteration_duration", MetricKind.TREND, unit="ms"),
    MetricSpec("iteration_errors", MetricKind.COUNTER),
    MetricSpec("checks", MetricKind.RATE),
    MetricSpec("group_duration", MetricKind.TREND, unit="ms"),
)
