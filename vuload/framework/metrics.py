"""
Metric sink for vuload runs.

This module provides the MetricSink, the single synchronized resource shared
by all virtual users. Each metric has its own lock so writers to different
metrics never contend; reads copy the series under the same short critical
section.

Trend series are exact up to ``max_trend_samples`` values. Past that the
series is decimated (every second retained value is kept) and its acceptance
stride doubles, so percentiles are computed over a uniform systematic sample
of the full series. ``count``, ``avg``, ``min`` and ``max`` stay exact because
they are tracked as running aggregates.
"""

import logging
import threading
import time
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable, Optional

from .models import CheckResult, MetricKind, MetricSpec, Sample

logger = logging.getLogger(__name__)

DEFAULT_MAX_TREND_SAMPLES = 1_000_000


class UnknownMetricError(KeyError):
    """Raised when a sample references a metric that was never declared."""


class MetricRegistrationError(ValueError):
    """Raised when a metric declaration conflicts with the registry."""


@dataclass(frozen=True)
class SeriesSnapshot:
    """
    Point-in-time copy of a metric series.

    Attributes:
        spec: Metric declaration
        count: Number of samples recorded (including downsampled ones)
        total: Sum of all recorded values
        nonzero: Number of non-zero samples (rate metrics)
        minimum: Smallest recorded value
        maximum: Largest recorded value
        values: Retained trend values in recording order
        stride: Current downsampling stride (1 means exact)
    """

    spec: MetricSpec
    count: int = 0
    total: float = 0.0
    nonzero: int = 0
    minimum: Optional[float] = None
    maximum: Optional[float] = None
    values: tuple[float, ...] = ()
    stride: int = 1
    samples_by_scenario: dict[str, int] = field(default_factory=dict)


class _Series:
    """Mutable per-metric state guarded by its own lock."""

    def __init__(self, spec: MetricSpec, max_samples: int):
        self.spec = spec
        self.lock = threading.Lock()
        self.max_samples = max_samples
        self.count = 0
        self.total = 0.0
        self.nonzero = 0
        self.minimum: Optional[float] = None
        self.maximum: Optional[float] = None
        self.values: list[float] = []
        self.stride = 1
        self.skipped = 0
        self.by_scenario: Counter = Counter()

    def add(self, sample: Sample) -> bool:
        """Record a sample. Must be called with ``self.lock`` held.

        Returns:
            True if the series was downsampled by this call
        """
        value = sample.value
        self.count += 1
        self.total += value
        if value:
            self.nonzero += 1
        if self.minimum is None or value < self.minimum:
            self.minimum = value
        if self.maximum is None or value > self.maximum:
            self.maximum = value
        if sample.scenario:
            self.by_scenario[sample.scenario] += 1

        if self.spec.kind is not MetricKind.TREND:
            return False

        self.skipped += 1
        if self.skipped < self.stride:
            return False
        self.skipped = 0
        self.values.append(value)

        if len(self.values) >= self.max_samples:
            self.values = self.values[::2]
            self.stride *= 2
            return True
        return False

    def snapshot(self) -> SeriesSnapshot:
        """Copy the series. Must be called with ``self.lock`` held."""
        return SeriesSnapshot(
            spec=self.spec,
            count=self.count,
            total=self.total,
            nonzero=self.nonzero,
            minimum=self.minimum,
            maximum=self.maximum,
            values=tuple(self.values),
            stride=self.stride,
            samples_by_scenario=dict(self.by_scenario),
        )


class MetricSink:
    """
    Thread-safe accumulation point for counters, rates and trends.

    Metrics are declared before the run and the registry is frozen when the
    run starts. After ``close()`` late samples are rejected and counted.

    Example usage:
        sink = MetricSink()
        sink.declare(MetricSpec("orders", MetricKind.COUNTER))
        sink.freeze()
        sink.add("orders", 1)
        sink.snapshot("orders").total
    """

    def __init__(self, max_trend_samples: int = DEFAULT_MAX_TREND_SAMPLES):
        """Initialize the sink.

        Args:
            max_trend_samples: Retained values per trend before downsampling
        """
        if max_trend_samples < 2:
            raise ValueError("max_trend_samples must be >= 2")
        self.max_trend_samples = max_trend_samples
        self._registry_lock = threading.Lock()
        self._series: dict[str, _Series] = {}
        self._frozen = False
        self._closed = False
        self._rejected = 0
        # guards _closed, _rejected and the number of batches mid-commit
        self._gate = threading.Condition()
        self._committing = 0
        self._checks_lock = threading.Lock()
        self._checks: dict[str, list[int]] = {}
        self._downsampled: dict[str, int] = {}
        self._started_at = time.monotonic()

    def declare(self, spec: MetricSpec) -> None:
        """
        Declare a metric.

        Re-declaring a name with the same kind is a no-op.

        Raises:
            MetricRegistrationError: If the sink is frozen or the name is
                already declared with a different kind
        """
        with self._registry_lock:
            existing = self._series.get(spec.name)
            if existing is not None:
                if existing.spec.kind is not spec.kind:
                    raise MetricRegistrationError(
                        f"Metric '{spec.name}' already declared as "
                        f"{existing.spec.kind.value}, cannot redeclare as {spec.kind.value}"
                    )
                return
            if self._frozen:
                raise MetricRegistrationError(
                    f"Cannot declare metric '{spec.name}' after the run started"
                )
            self._series[spec.name] = _Series(spec, self.max_trend_samples)

    def declare_all(self, specs: Iterable[MetricSpec]) -> None:
        """Declare several metrics."""
        for spec in specs:
            self.declare(spec)

    def freeze(self) -> None:
        """Reject further declarations and restart the sample clock."""
        with self._registry_lock:
            self._frozen = True
            self._started_at = time.monotonic()

    def close(self) -> None:
        """Reject all further samples, once batches already committing land."""
        with self._gate:
            self._closed = True
            while self._committing:
                self._gate.wait()

    @property
    def frozen(self) -> bool:
        return self._frozen

    @property
    def closed(self) -> bool:
        return self._closed

    @property
    def rejected(self) -> int:
        """Number of samples rejected after close."""
        return self._rejected

    def now(self) -> float:
        """Seconds since the sink was frozen, on the monotonic clock."""
        return time.monotonic() - self._started_at

    def has(self, name: str) -> bool:
        return name in self._series

    def spec(self, name: str) -> MetricSpec:
        return self._get(name).spec

    def specs(self) -> list[MetricSpec]:
        """All declared metrics, sorted by name."""
        return [self._series[name].spec for name in sorted(self._series)]

    def _get(self, name: str) -> _Series:
        try:
            return self._series[name]
        except KeyError:
            raise UnknownMetricError(f"Unknown metric: {name}") from None

    def add(
        self,
        name: str,
        value: float,
        scenario: Optional[str] = None,
        group: Optional[str] = None,
    ) -> bool:
        """Record one value now. See ``add_sample``."""
        return self.add_sample(
            Sample(metric=name, value=float(value), timestamp=self.now(),
                   scenario=scenario, group=group)
        )

    def add_sample(self, sample: Sample) -> bool:
        """
        Record one sample.

        Returns:
            False if the sink is closed and the sample was rejected

        Raises:
            UnknownMetricError: If the metric was never declared
        """
        return self.add_many([sample]) == 1

    def add_many(
        self,
        samples: Iterable[Sample],
        checks: Iterable[CheckResult] = (),
    ) -> int:
        """
        Commit a batch of samples and check results as one unit.

        All metric names are resolved before anything is recorded, so an
        unknown metric rejects the whole batch. Checks are tallied and, when
        the ``checks`` rate metric is declared, fed into it as samples. A
        batch is either fully recorded or, once the sink is closed, fully
        rejected: ``close()`` waits for batches already being committed.

        Returns:
            Number of samples recorded (check samples included)

        Raises:
            UnknownMetricError: If any sample references an undeclared metric
        """
        checks = list(checks)
        grouped: dict[str, list[Sample]] = {}
        for sample in samples:
            grouped.setdefault(sample.metric, []).append(sample)
        if checks and self.has("checks"):
            now = self.now()
            grouped.setdefault("checks", []).extend(
                Sample("checks", 1.0 if r.passed else 0.0, now, r.scenario, r.group)
                for r in checks
            )
        resolved = [(self._get(name), batch) for name, batch in grouped.items()]

        if not self._begin_commit():
            rejected = sum(len(batch) for _, batch in resolved)
            with self._gate:
                self._rejected += rejected
            if rejected or checks:
                logger.debug(
                    "Sink closed, rejected %d late sample(s) and %d check(s)",
                    rejected, len(checks),
                )
            return 0

        try:
            if checks:
                with self._checks_lock:
                    for result in checks:
                        tally = self._checks.setdefault(result.name, [0, 0])
                        tally[0 if result.passed else 1] += 1

            recorded = 0
            for series, batch in resolved:
                downsampled = False
                with series.lock:
                    for sample in batch:
                        downsampled = series.add(sample) or downsampled
                    stride = series.stride
                recorded += len(batch)
                if downsampled:
                    self._note_downsampled(series.spec.name, stride)
            return recorded
        finally:
            self._end_commit()

    def _begin_commit(self) -> bool:
        with self._gate:
            if self._closed:
                return False
            self._committing += 1
            return True

    def _end_commit(self) -> None:
        with self._gate:
            self._committing -= 1
            if not self._committing:
                self._gate.notify_all()

    def _note_downsampled(self, name: str, stride: int) -> None:
        with self._registry_lock:
            first = name not in self._downsampled
            self._downsampled[name] = stride
        if first:
            logger.warning(
                "Trend '%s' reached %d samples, downsampling (keeping 1 in %d)",
                name, self.max_trend_samples, stride,
            )

    def checks(self) -> dict[str, dict[str, int]]:
        """Per-check pass/fail tallies."""
        with self._checks_lock:
            return {
                name: {"passes": tally[0], "fails": tally[1]}
                for name, tally in sorted(self._checks.items())
            }

    def snapshot(self, name: str) -> SeriesSnapshot:
        """Copy one series."""
        series = self._get(name)
        with series.lock:
            return series.snapshot()

    def snapshots(self) -> dict[str, SeriesSnapshot]:
        """Copy every series, keyed by metric name."""
        return {spec.name: self.snapshot(spec.name) for spec in self.specs()}

    def values(self, name: str) -> list[float]:
        """Retained trend values of a metric."""
        return list(self.snapshot(name).values)

    def downsampled(self) -> dict[str, int]:
        """Metrics that were downsampled, with their final stride."""
        with self._registry_lock:
            return dict(self._downsampled)
