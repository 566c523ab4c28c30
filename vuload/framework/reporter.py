"""
Run summary and JSON export.

The RunSummary is the machine-readable result of a run: per-metric
statistics, check tallies, threshold outcomes, scenario counters, run errors
and the exit code that gates CI.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any, Optional, Union

from .models import RunError, ThresholdStatus
from .thresholds import ThresholdResult

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_THRESHOLDS_FAILED = 1
EXIT_CONFIG_ERROR = 2


@dataclass
class RunSummary:
    """
    Result of a finished run.

    Attributes:
        name: Run name
        start_time: When the run started
        end_time: When the run finished
        elapsed_seconds: Run time on the monotonic clock
        metrics: Per-metric statistics keyed by metric name
        checks: Per-check pass/fail tallies
        thresholds: Threshold outcomes in configuration order
        scenarios: Per-scenario counters
        aborted: Whether the run ended before every scenario completed
        abort_reason: Why the run was aborted
        abort_threshold: The abort-on-fail threshold that stopped the run
        interrupted: Virtual users abandoned after their graceful stop
        rejected_samples: Samples that arrived after the sink was closed
        errors: Run errors collected during the run
        transitions: Controller state transitions with timestamps
        fail_on_inconclusive: Treat inconclusive thresholds as failures
    """

    name: str = "vuload-run"
    start_time: Optional[datetime] = None
    end_time: Optional[datetime] = None
    elapsed_seconds: float = 0.0
    metrics: dict[str, dict[str, Any]] = field(default_factory=dict)
    checks: dict[str, dict[str, int]] = field(default_factory=dict)
    thresholds: list[ThresholdResult] = field(default_factory=list)
    scenarios: dict[str, dict[str, Any]] = field(default_factory=dict)
    aborted: bool = False
    abort_reason: Optional[str] = None
    abort_threshold: Optional[ThresholdResult] = None
    interrupted: int = 0
    rejected_samples: int = 0
    errors: list[RunError] = field(default_factory=list)
    transitions: list[tuple[str, datetime]] = field(default_factory=list)
    fail_on_inconclusive: bool = False

    def _count(self, status: ThresholdStatus) -> int:
        return sum(1 for t in self.thresholds if t.status is status)

    @property
    def passed_thresholds(self) -> int:
        return self._count(ThresholdStatus.PASSED)

    @property
    def failed_thresholds(self) -> int:
        return self._count(ThresholdStatus.FAILED)

    @property
    def inconclusive_thresholds(self) -> int:
        return self._count(ThresholdStatus.INCONCLUSIVE)

    @property
    def passed(self) -> bool:
        """Check if the run passed its thresholds."""
        if self.abort_threshold is not None or self.failed_thresholds:
            return False
        if self.fail_on_inconclusive and self.inconclusive_thresholds:
            return False
        return True

    @property
    def exit_code(self) -> int:
        """0 if the run passed, 1 if a threshold failed."""
        return EXIT_OK if self.passed else EXIT_THRESHOLDS_FAILED

    def to_dict(self) -> dict[str, Any]:
        """Convert summary to dictionary."""
        return {
            "name": self.name,
            "start_time": self.start_time.isoformat() if self.start_time else None,
            "end_time": self.end_time.isoformat() if self.end_time else None,
            "elapsed_seconds": self.elapsed_seconds,
            "passed": self.passed,
            "exit_code": self.exit_code,
            "aborted": self.aborted,
            "abort_reason": self.abort_reason,
            "interrupted": self.interrupted,
            "rejected_samples": self.rejected_samples,
            "thresholds": {
                "passed": self.passed_thresholds,
                "failed": self.failed_thresholds,
                "inconclusive": self.inconclusive_thresholds,
                "results": [t.to_dict() for t in self.thresholds],
            },
            "metrics": self.metrics,
            "checks": self.checks,
            "scenarios": self.scenarios,
            "errors": [e.to_dict() for e in self.errors],
            "transitions": [
                {"state": state, "timestamp": ts.isoformat()}
                for state, ts in self.transitions
            ],
        }

    def to_json(self, indent: int = 2) -> str:
        """Convert summary to a JSON string."""
        return json.dumps(self.to_dict(), indent=indent, default=str)


class SummaryReporter:
    """
    Writes run summaries to disk.

    Example usage:
        reporter = SummaryReporter()
        reporter.save(summary, "results/summary.json")
    """

    def __init__(self, indent: int = 2):
        self.indent = indent

    def save(self, summary: RunSummary, path: Union[Path, str]) -> Path:
        """
        Save the summary as JSON.

        Args:
            summary: Run summary
            path: Output file; parent directories are created

        Returns:
            Path of the written file
        """
        path = Path(path)
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(summary.to_json(indent=self.indent), encoding="utf-8")
        logger.info("Summary written to %s", path)
        return path
