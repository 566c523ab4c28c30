"""
Virtual user worker loop.

A VirtualUser repeatedly runs its scenario's target function until the
scenario's stop event is set. Each iteration stages its samples and check
results in an IterationContext and commits them to the sink only when the
target returns, so an iteration is recorded completely or not at all.
"""

import logging
import threading
import time
from contextlib import contextmanager
from typing import Any, Callable, Iterator, Mapping, Optional

import httpx

from .config import ScenarioConfig
from .http_client import HttpClient, Response
from .metrics import MetricSink, UnknownMetricError
from .models import CheckResult, Sample

logger = logging.getLogger(__name__)

GROUP_SEPARATOR = "::"

TargetFunction = Callable[["IterationContext"], Any]


class IterationContext:
    """
    Per-iteration API handed to script functions.

    Everything a script touches during an iteration goes through here, so
    scripts hold no module-level state.
    """

    def __init__(self, vu: "VirtualUser", iteration: int):
        self._vu = vu
        self.iteration = iteration
        self.samples: list[Sample] = []
        self.check_results: list[CheckResult] = []
        self._groups: list[str] = []

    @property
    def scenario(self) -> str:
        return self._vu.scenario.name

    @property
    def vu_id(self) -> int:
        return self._vu.vu_id

    @property
    def env(self) -> Mapping[str, str]:
        return self._vu.env

    @property
    def http(self) -> HttpClient:
        return self._vu.http

    @property
    def current_group(self) -> Optional[str]:
        if not self._groups:
            return None
        return GROUP_SEPARATOR + GROUP_SEPARATOR.join(self._groups)

    def add(self, metric: str, value: float) -> None:
        """
        Stage a value for a declared metric.

        Raises:
            UnknownMetricError: If the metric was never declared
        """
        sink = self._vu.sink
        if not sink.has(metric):
            raise UnknownMetricError(f"Unknown metric: {metric}")
        self.samples.append(Sample(
            metric=metric,
            value=float(value),
            timestamp=sink.now(),
            scenario=self.scenario,
            group=self.current_group,
        ))

    def check(self, value: Any, predicates: Mapping[str, Callable[[Any], Any]]) -> bool:
        """
        Run named predicates against a value.

        A predicate that raises counts as a failed check.

        Returns:
            True if every predicate passed
        """
        all_passed = True
        for name, predicate in predicates.items():
            try:
                passed = bool(predicate(value))
            except Exception as e:  # a broken predicate is a failed check
                logger.debug("Check '%s' raised %s: %s", name, type(e).__name__, e)
                passed = False
            self.check_results.append(CheckResult(
                name=name,
                passed=passed,
                scenario=self.scenario,
                group=self.current_group,
            ))
            all_passed = all_passed and passed
        return all_passed

    @contextmanager
    def group(self, name: str) -> Iterator[None]:
        """Tag samples recorded inside the block and time the block."""
        self._groups.append(name)
        start = time.perf_counter()
        try:
            yield
        finally:
            duration_ms = (time.perf_counter() - start) * 1000
            self.add("group_duration", duration_ms)
            self._groups.pop()

    def sleep(self, seconds: float) -> bool:
        """
        Pause the virtual user.

        Returns:
            True if the pause was cut short by the scenario stopping
        """
        return self._vu.pause(seconds)

    def record_response(self, response: Response, name: Optional[str] = None) -> None:
        """Stage the built-in HTTP metrics for a response."""
        if response.failed:
            logger.debug(
                "Request %s failed in scenario %s: status %d",
                name or response.url, self.scenario, response.status,
            )
        self.add("http_reqs", 1)
        self.add("http_req_duration", response.duration_ms)
        self.add("http_req_failed", 1 if response.failed else 0)


class VirtualUser:
    """
    One simulated client executing scripted iterations.

    Iterations run strictly sequentially. The stop event is read at the top
    of every loop; an iteration in progress is never interrupted.
    """

    def __init__(
        self,
        vu_id: int,
        scenario: ScenarioConfig,
        target: TargetFunction,
        sink: MetricSink,
        stop_event: threading.Event,
        env: Optional[Mapping[str, str]] = None,
        request_timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
        error_reported: Optional[threading.Event] = None,
    ):
        """
        Initialize the virtual user.

        Args:
            vu_id: Identifier unique within the scenario (1-based)
            scenario: Scenario this user belongs to
            target: Script function run once per iteration
            sink: Shared metric sink
            stop_event: Scenario stop signal
            env: Environment exposed to the script
            request_timeout: Hard HTTP request timeout in seconds
            transport: Optional httpx transport (used by tests)
            error_reported: Shared flag so only the first script error of a
                scenario is logged with a traceback
        """
        self.vu_id = vu_id
        self.scenario = scenario
        self.sink = sink
        self.env = env if env is not None else {}
        self.iterations = 0
        self.errors = 0
        self._target = target
        self._stop_event = stop_event
        self._error_reported = error_reported or threading.Event()
        self._current: Optional[IterationContext] = None
        self.http = HttpClient(
            timeout=request_timeout,
            transport=transport,
            recorder=self._on_response,
        )

    def _on_response(self, response: Response, name: Optional[str]) -> None:
        if self._current is not None:
            self._current.record_response(response, name)

    def pause(self, seconds: float) -> bool:
        """Wait up to ``seconds``; returns True if the scenario stopped meanwhile."""
        if seconds <= 0:
            return self._stop_event.is_set()
        return self._stop_event.wait(seconds)

    def run(self) -> int:
        """
        Run iterations until the scenario stops.

        Returns:
            Number of completed iterations
        """
        logger.debug("VU %s/%d started", self.scenario.name, self.vu_id)
        try:
            while not self._stop_event.is_set():
                self.run_iteration()
                if self.scenario.think_time and self.pause(self.scenario.think_time):
                    break
        finally:
            self.http.close()
            logger.debug(
                "VU %s/%d stopped after %d iteration(s)",
                self.scenario.name, self.vu_id, self.iterations,
            )
        return self.iterations

    def run_iteration(self) -> bool:
        """
        Run one iteration and commit its samples.

        Returns:
            True if the target completed, False if it raised
        """
        ctx = IterationContext(self, self.iterations + self.errors + 1)
        self._current = ctx
        start = time.perf_counter()
        try:
            self._target(ctx)
        except Exception as e:  # one bad iteration must not stop the VU
            self.errors += 1
            if not self._error_reported.is_set():
                self._error_reported.set()
                logger.warning(
                    "Iteration failed in scenario %s (VU %d): %s",
                    self.scenario.name, self.vu_id, e,
                    exc_info=True,
                )
            else:
                logger.debug(
                    "Iteration failed in scenario %s (VU %d): %s",
                    self.scenario.name, self.vu_id, e,
                )
            self.sink.add("iteration_errors", 1, scenario=self.scenario.name)
            return False
        finally:
            self._current = None

        ctx.add("iterations", 1)
        ctx.add("iteration_duration", (time.perf_counter() - start) * 1000)
        self.sink.add_many(ctx.samples, checks=ctx.check_results)
        self.iterations += 1
        return True
