"""
Run controller.

The RunController owns the metric sink for one run. It validates the
configuration against the script before any virtual user starts, drives the
scenario scheduler, enforces the global deadline and abort-on-fail
thresholds, and turns the sink contents into a RunSummary.

State machine::

    idle -> running -> draining -> finished
"""

import logging
import threading
from datetime import datetime
from typing import Optional

import httpx

from ..scripts import Script, ScriptLoadError, load_script
from .config import ConfigValidationError, RunConfig
from .metrics import MetricRegistrationError, MetricSink
from .models import BUILTIN_METRICS, ErrorCategory, ErrorSeverity, RunError, RunState
from .reporter import RunSummary
from .scheduler import ScenarioScheduler, WorkerListener
from .thresholds import (
    Threshold,
    ThresholdEvaluator,
    ThresholdExpression,
    ThresholdResult,
    summarize_series,
)

logger = logging.getLogger(__name__)

# How long in-flight iterations may run after a deadline, abort or cancel.
ABORT_GRACE_SECONDS = 1.0

# Slack on top of request_timeout when joining abandoned VUs before finishing.
WORKER_JOIN_MARGIN_SECONDS = 5.0


class RunController:
    """
    Orchestrates one load run.

    Example usage:
        config = load_config("vuload/config/catalog.yaml")
        controller = RunController(config)
        summary = controller.run()
        sys.exit(summary.exit_code)
    """

    def __init__(
        self,
        config: RunConfig,
        script: Optional[Script] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the controller.

        Args:
            config: Run configuration
            script: Script to run (loaded from ``config.options.script`` if None)
            transport: Optional httpx transport shared by all VUs (used by tests)
        """
        self.config = config
        self.script = script
        self.transport = transport
        self.sink = MetricSink(max_trend_samples=config.options.max_trend_samples)
        self.scheduler: Optional[ScenarioScheduler] = None
        self.evaluator: Optional[ThresholdEvaluator] = None
        self._state = RunState.IDLE
        self._transitions: list[tuple[RunState, datetime]] = [(RunState.IDLE, datetime.utcnow())]
        self._state_lock = threading.Lock()
        self._claimed = False
        self._cancelled = threading.Event()
        self._listeners: list[WorkerListener] = []

    @property
    def state(self) -> RunState:
        return self._state

    @property
    def transitions(self) -> list[tuple[RunState, datetime]]:
        """State transitions with their timestamps, oldest first."""
        with self._state_lock:
            return list(self._transitions)

    def add_listener(self, listener: WorkerListener) -> None:
        """Register a callback for virtual user lifecycle events."""
        self._listeners.append(listener)

    def _transition(self, state: RunState) -> None:
        with self._state_lock:
            self._state = state
            self._transitions.append((state, datetime.utcnow()))
        logger.info("Run %s: %s", self.config.options.name, state.value)

    def cancel(self) -> None:
        """Stop the run early (e.g. on SIGINT); thresholds are still evaluated."""
        self._cancelled.set()
        if self.scheduler is None:
            return
        if self._state is RunState.DRAINING:
            # already draining: stop waiting for in-flight iterations
            self.scheduler.abandon()
        else:
            self.scheduler.cancel()

    def prepare(self) -> None:
        """
        Declare metrics and validate the configuration against the script.

        Raises:
            ConfigValidationError: If the script cannot be loaded, a scenario
                references an unknown function, or a threshold references an
                unknown metric or an unsupported statistic
        """
        if self.script is None:
            try:
                self.script = load_script(self.config.options.script)
            except ScriptLoadError as exc:
                raise ConfigValidationError("Script could not be loaded", errors=[str(exc)]) from exc

        errors = []
        try:
            self.sink.declare_all(BUILTIN_METRICS)
            self.sink.declare_all(self.script.metrics)
        except MetricRegistrationError as exc:
            errors.append(str(exc))

        for scenario in self.config.scenarios:
            if scenario.exec not in self.script.functions:
                errors.append(
                    f"scenarios.{scenario.name}.exec: script '{self.script.name}' "
                    f"has no function '{scenario.exec}'"
                )

        thresholds = [
            Threshold(
                metric=t.metric,
                expression=ThresholdExpression.parse(t.expression),
                abort_on_fail=t.abort_on_fail,
                delay_abort_eval=t.delay_abort_eval,
            )
            for t in self.config.thresholds
        ]
        self.evaluator = ThresholdEvaluator(thresholds)
        errors.extend(self.evaluator.validate(self.sink))

        if errors:
            raise ConfigValidationError(
                f"Run '{self.config.options.name}' is misconfigured",
                errors=errors,
            )

        self.scheduler = ScenarioScheduler(
            self.config.scenarios,
            self.script.functions,
            self.sink,
            env=self.config.resolved_env(),
            request_timeout=self.config.options.request_timeout,
            transport=self.transport,
        )
        for listener in self._listeners:
            self.scheduler.add_listener(listener)

    def run(self) -> RunSummary:
        """
        Execute the run.

        Returns:
            The run summary

        Raises:
            RuntimeError: If the controller already ran
            ConfigValidationError: If validation fails (no VU is started)
        """
        with self._state_lock:
            if self._claimed:
                raise RuntimeError("A RunController can only run once")
            self._claimed = True

        self.prepare()
        scheduler = self.scheduler
        options = self.config.options

        self.sink.freeze()
        start_time = datetime.utcnow()
        self._transition(RunState.RUNNING)
        scheduler.start()
        if self._cancelled.is_set():
            scheduler.cancel()

        abort_reason, abort_threshold = self._supervise(scheduler)

        self._transition(RunState.DRAINING)
        if abort_reason is None:
            remaining = max(self.config.deadline - self.sink.now(), 0.0)
            if not scheduler.wait(timeout=remaining):
                abort_reason = f"global deadline of {self.config.deadline:g}s reached"
                logger.warning("Run %s: %s while draining", options.name, abort_reason)
        if abort_reason is not None:
            self._stop_now(scheduler)

        self.sink.close()
        elapsed = self.sink.now()
        results = self.evaluator.evaluate_all(self.sink, elapsed)
        for result in results:
            log = logger.info if not result.failed else logger.warning
            log(
                "Threshold %s: %s -> %s (observed %s)",
                result.metric, result.expression, result.status.value, result.observed,
            )

        still_running = scheduler.join_workers(
            timeout=options.request_timeout + WORKER_JOIN_MARGIN_SECONDS
        )
        summary = self._build_summary(
            start_time, elapsed, results, abort_reason, abort_threshold, still_running
        )
        self._transition(RunState.FINISHED)
        summary.transitions = [(state.value, ts) for state, ts in self.transitions]
        logger.info(
            "Run %s %s: %d passed, %d failed, %d inconclusive threshold(s)",
            options.name, "passed" if summary.passed else "failed",
            summary.passed_thresholds, summary.failed_thresholds,
            summary.inconclusive_thresholds,
        )
        return summary

    def _supervise(
        self,
        scheduler: ScenarioScheduler,
    ) -> tuple[Optional[str], Optional[ThresholdResult]]:
        """Wait for every scenario to expire, or for a deadline, abort or cancel."""
        deadline = self.config.deadline
        interval = self.config.options.threshold_eval_interval
        next_eval = interval

        while True:
            elapsed = self.sink.now()
            timeout = deadline - elapsed
            if interval is not None:
                timeout = min(timeout, next_eval - elapsed)
            if scheduler.wait_expired(timeout=max(timeout, 0.0)):
                break

            elapsed = self.sink.now()
            if elapsed >= deadline:
                reason = f"global deadline of {deadline:g}s reached"
                logger.warning("Run %s: %s", self.config.options.name, reason)
                return reason, None
            if interval is not None and elapsed >= next_eval:
                next_eval += interval
                failing = self.evaluator.check_abort(self.sink, elapsed)
                if failing is not None:
                    return (
                        f"threshold '{failing.metric}: {failing.expression}' failed",
                        failing,
                    )

        if self._cancelled.is_set():
            logger.warning("Run %s cancelled", self.config.options.name)
            return "run cancelled", None
        return None, None

    def _stop_now(self, scheduler: ScenarioScheduler) -> None:
        scheduler.cancel()
        if not scheduler.wait(timeout=ABORT_GRACE_SECONDS):
            scheduler.abandon()
            scheduler.wait()

    def _build_summary(
        self,
        start_time: datetime,
        elapsed: float,
        results: list[ThresholdResult],
        abort_reason: Optional[str],
        abort_threshold: Optional[ThresholdResult],
        still_running: int = 0,
    ) -> RunSummary:
        options = self.config.options
        scheduler = self.scheduler

        errors = list(scheduler.errors)
        for name, stride in self.sink.downsampled().items():
            errors.append(RunError(
                error_code="TREND_DOWNSAMPLED",
                message=f"Trend '{name}' exceeded {self.sink.max_trend_samples} samples",
                category=ErrorCategory.SINK,
                severity=ErrorSeverity.INFO,
                context={"metric": name, "stride": stride},
            ))
        if abort_reason is not None:
            errors.append(RunError(
                error_code="RUN_ABORTED",
                message=abort_reason,
                category=ErrorCategory.EXECUTION,
                context={"elapsed_seconds": elapsed},
            ))
        if still_running:
            errors.append(RunError(
                error_code="WORKER_LEAKED",
                message=f"{still_running} abandoned VU(s) outlived the run",
                category=ErrorCategory.EXECUTION,
                severity=ErrorSeverity.CRITICAL,
            ))

        metrics = {
            name: summarize_series(snapshot, options.summary_trend_stats, elapsed)
            for name, snapshot in self.sink.snapshots().items()
        }
        return RunSummary(
            name=options.name,
            start_time=start_time,
            end_time=datetime.utcnow(),
            elapsed_seconds=elapsed,
            metrics=metrics,
            checks=self.sink.checks(),
            thresholds=results,
            scenarios={name: state.to_dict() for name, state in scheduler.states().items()},
            aborted=abort_reason is not None,
            abort_reason=abort_reason,
            abort_threshold=abort_threshold,
            interrupted=scheduler.interrupted,
            rejected_samples=self.sink.rejected,
            errors=errors,
            fail_on_inconclusive=options.fail_on_inconclusive,
        )
