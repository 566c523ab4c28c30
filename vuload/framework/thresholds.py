"""
Threshold parsing and evaluation.

Thresholds are written as ``<stat> <op> <bound>`` strings, for example
``p(95)<800``, ``rate<0.005``, ``count>0`` or ``max<2500``.

Percentiles use the nearest-rank method: the samples are sorted ascending
and the value at index ``ceil(p / 100 * n) - 1`` (clamped to ``[0, n - 1]``)
is returned. ``med`` is ``p(50)``. The result depends only on the multiset of
samples, never on recording order.

A threshold whose metric holds no samples is inconclusive.
"""

import logging
import math
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Sequence

from .metrics import MetricSink, SeriesSnapshot
from .models import MetricKind, ThresholdStatus

logger = logging.getLogger(__name__)


_EXPRESSION_RE = re.compile(
    r"^\s*(?P<stat>avg|min|max|med|count|rate|p\(\s*(?P<pct>\d+(?:\.\d+)?)\s*\))"
    r"\s*(?P<op><=|>=|==|!=|<|>)\s*"
    r"(?P<bound>[-+]?(?:\d+(?:\.\d*)?|\.\d+)(?:[eE][-+]?\d+)?)\s*$"
)

OPERATORS: dict[str, Callable[[float, float], bool]] = {
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "==": operator.eq,
    "!=": operator.ne,
}

# Statistics each metric kind supports; "p" stands for any percentile.
SUPPORTED_STATISTICS: dict[MetricKind, frozenset[str]] = {
    MetricKind.COUNTER: frozenset({"count", "rate"}),
    MetricKind.TREND: frozenset({"avg", "min", "max", "med", "count", "p"}),
    MetricKind.RATE: frozenset({"rate", "count"}),
}

DEFAULT_TREND_STATS = ("avg", "min", "med", "max", "p(90)", "p(95)")


class ThresholdExpressionError(ValueError):
    """Raised when a threshold expression cannot be parsed."""


def percentile(values: Iterable[float], p: float) -> float:
    """
    Nearest-rank percentile.

    Args:
        values: Samples in any order
        p: Percentile in [0, 100]

    Returns:
        The selected sample

    Raises:
        ValueError: If there are no samples or p is out of range
    """
    if not 0 <= p <= 100:
        raise ValueError(f"Percentile must be within [0, 100], got {p}")
    ordered = sorted(values)
    if not ordered:
        raise ValueError("Cannot compute a percentile of no samples")
    n = len(ordered)
    index = math.ceil(p / 100.0 * n) - 1
    return ordered[min(max(index, 0), n - 1)]


@dataclass(frozen=True)
class ThresholdExpression:
    """
    A parsed threshold expression.

    Attributes:
        source: Original expression text
        statistic: One of avg, min, max, med, count, rate, p
        percentile: Percentile for the "p" statistic
        op: Comparison operator symbol
        bound: Literal bound to compare against
    """

    source: str
    statistic: str
    op: str
    bound: float
    percentile: Optional[float] = None

    @classmethod
    def parse(cls, text: str) -> "ThresholdExpression":
        """
        Parse an expression such as ``p(99.9)<1800``.

        Raises:
            ThresholdExpressionError: If the text is not a valid expression
        """
        if not isinstance(text, str):
            raise ThresholdExpressionError(f"Threshold must be a string, got {text!r}")
        match = _EXPRESSION_RE.match(text)
        if not match:
            raise ThresholdExpressionError(f"Invalid threshold expression: '{text}'")

        pct = match.group("pct")
        if pct is not None:
            value = float(pct)
            if value > 100:
                raise ThresholdExpressionError(
                    f"Percentile out of range in '{text}': {value}"
                )
            return cls(
                source=text.strip(),
                statistic="p",
                op=match.group("op"),
                bound=float(match.group("bound")),
                percentile=value,
            )
        return cls(
            source=text.strip(),
            statistic=match.group("stat"),
            op=match.group("op"),
            bound=float(match.group("bound")),
        )

    @property
    def label(self) -> str:
        """Statistic label as written in summaries, e.g. ``p(95)``."""
        if self.statistic == "p":
            return f"p({self.percentile:g})"
        return self.statistic

    def compare(self, observed: float) -> bool:
        """Check the observed value against the bound."""
        return OPERATORS[self.op](observed, self.bound)


def compute_statistic(
    snapshot: SeriesSnapshot,
    statistic: str,
    pct: Optional[float] = None,
    elapsed_seconds: Optional[float] = None,
) -> Optional[float]:
    """
    Compute a statistic over a series snapshot.

    Args:
        snapshot: Series copy from the sink
        statistic: avg, min, max, med, count, rate or p
        pct: Percentile for the "p" statistic
        elapsed_seconds: Run time, used for the per-second rate of counters

    Returns:
        The statistic, or None if the series has no samples
    """
    if snapshot.count == 0:
        return None

    kind = snapshot.spec.kind
    if statistic == "count":
        return snapshot.total if kind is MetricKind.COUNTER else float(snapshot.count)
    if statistic == "rate":
        if kind is MetricKind.COUNTER:
            if not elapsed_seconds or elapsed_seconds <= 0:
                return None
            return snapshot.total / elapsed_seconds
        return snapshot.nonzero / snapshot.count
    if statistic == "avg":
        return snapshot.total / snapshot.count
    if statistic == "min":
        return snapshot.minimum
    if statistic == "max":
        return snapshot.maximum
    if statistic == "med":
        return percentile(snapshot.values, 50)
    if statistic == "p":
        return percentile(snapshot.values, pct if pct is not None else 50)
    raise ValueError(f"Unknown statistic: {statistic}")


def summarize_series(
    snapshot: SeriesSnapshot,
    trend_stats: Sequence[str] = DEFAULT_TREND_STATS,
    elapsed_seconds: Optional[float] = None,
) -> dict[str, Any]:
    """
    Build the summary statistics for one metric.

    Counters report count and per-second rate, rates report rate with
    passes/fails, trends report the requested ``trend_stats``.
    """
    kind = snapshot.spec.kind
    summary: dict[str, Any] = {"type": kind.value}
    if snapshot.spec.unit:
        summary["unit"] = snapshot.spec.unit

    if kind is MetricKind.COUNTER:
        summary["count"] = snapshot.total
        summary["rate"] = compute_statistic(snapshot, "rate", elapsed_seconds=elapsed_seconds)
    elif kind is MetricKind.RATE:
        summary["rate"] = compute_statistic(snapshot, "rate")
        summary["passes"] = snapshot.nonzero
        summary["fails"] = snapshot.count - snapshot.nonzero
    else:
        for stat in trend_stats:
            expression = ThresholdExpression.parse(f"{stat}>=0")
            summary[expression.label] = compute_statistic(
                snapshot, expression.statistic, expression.percentile
            )
        summary["count"] = snapshot.count
        if snapshot.stride > 1:
            summary["downsample_stride"] = snapshot.stride
    return summary


@dataclass(frozen=True)
class Threshold:
    """
    A threshold bound to a metric.

    Attributes:
        metric: Metric name
        expression: Parsed expression
        abort_on_fail: Abort the run when this threshold fails mid-run
        delay_abort_eval: Seconds after run start before abort checks apply
    """

    metric: str
    expression: ThresholdExpression
    abort_on_fail: bool = False
    delay_abort_eval: float = 0.0

    @property
    def key(self) -> str:
        return f"{self.metric}: {self.expression.source}"


@dataclass(frozen=True)
class ThresholdResult:
    """Outcome of evaluating one threshold."""

    metric: str
    expression: str
    status: ThresholdStatus
    observed: Optional[float] = None
    abort_on_fail: bool = False

    @property
    def passed(self) -> bool:
        return self.status is ThresholdStatus.PASSED

    @property
    def failed(self) -> bool:
        return self.status is ThresholdStatus.FAILED

    def to_dict(self) -> dict[str, Any]:
        """Convert to dictionary representation."""
        return {
            "metric": self.metric,
            "expression": self.expression,
            "status": self.status.value,
            "observed": self.observed,
            "abort_on_fail": self.abort_on_fail,
        }


class ThresholdEvaluator:
    """
    Evaluates configured thresholds against a metric sink.

    Evaluation reads snapshots only; recorded samples are never modified.
    """

    def __init__(self, thresholds: Iterable[Threshold]):
        """Initialize the evaluator.

        Args:
            thresholds: Thresholds to evaluate, in reporting order
        """
        self.thresholds = list(thresholds)

    def validate(self, sink: MetricSink) -> list[str]:
        """
        Check every threshold against the declared metrics.

        Returns:
            List of error messages (empty if all thresholds are resolvable)
        """
        errors = []
        for threshold in self.thresholds:
            if not sink.has(threshold.metric):
                errors.append(
                    f"thresholds.{threshold.metric}: unknown metric '{threshold.metric}'"
                )
                continue
            kind = sink.spec(threshold.metric).kind
            if threshold.expression.statistic not in SUPPORTED_STATISTICS[kind]:
                errors.append(
                    f"thresholds.{threshold.metric}: '{threshold.expression.label}' "
                    f"is not supported for {kind.value} metrics"
                )
        return errors

    def evaluate(
        self,
        threshold: Threshold,
        sink: MetricSink,
        elapsed_seconds: Optional[float] = None,
    ) -> ThresholdResult:
        """Evaluate a single threshold."""
        snapshot = sink.snapshot(threshold.metric)
        observed = compute_statistic(
            snapshot,
            threshold.expression.statistic,
            threshold.expression.percentile,
            elapsed_seconds,
        )
        if observed is None:
            status = ThresholdStatus.INCONCLUSIVE
        elif threshold.expression.compare(observed):
            status = ThresholdStatus.PASSED
        else:
            status = ThresholdStatus.FAILED
        return ThresholdResult(
            metric=threshold.metric,
            expression=threshold.expression.source,
            status=status,
            observed=observed,
            abort_on_fail=threshold.abort_on_fail,
        )

    def evaluate_all(
        self,
        sink: MetricSink,
        elapsed_seconds: Optional[float] = None,
    ) -> list[ThresholdResult]:
        """Evaluate every threshold."""
        return [self.evaluate(t, sink, elapsed_seconds) for t in self.thresholds]

    def check_abort(
        self,
        sink: MetricSink,
        elapsed_seconds: float,
    ) -> Optional[ThresholdResult]:
        """
        Evaluate abort-on-fail thresholds during the run.

        Returns:
            The first failing abort-on-fail threshold past its delay, if any
        """
        for threshold in self.thresholds:
            if not threshold.abort_on_fail or elapsed_seconds < threshold.delay_abort_eval:
                continue
            result = self.evaluate(threshold, sink, elapsed_seconds)
            if result.failed:
                logger.warning(
                    "Threshold '%s' crossed (observed %s), aborting run",
                    threshold.key, result.observed,
                )
                return result
        return None
