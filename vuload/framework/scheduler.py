"""
Scenario scheduling.

The ScenarioScheduler runs each scenario on its own timing thread. That
thread waits for the scenario's start offset, spawns exactly ``vus`` virtual
users on a dedicated ThreadPoolExecutor, sets the scenario stop event when
the duration expires and then waits up to ``graceful_stop`` for in-flight
iterations. Virtual users still running after the grace period are reported
as interrupted and abandoned: no longer waited for by ``wait()``, they are
reaped by ``join_workers()`` once their in-flight iteration returns.
"""

import concurrent.futures
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Callable, Iterable, Mapping, Optional

import httpx

from .config import ScenarioConfig
from .metrics import MetricSink
from .models import ErrorCategory, ErrorSeverity, RunError, WorkerEvent, WorkerEventType
from .worker import TargetFunction, VirtualUser

logger = logging.getLogger(__name__)

WorkerListener = Callable[[WorkerEvent], None]

# Upper bound on how long an abandon request goes unnoticed during a drain.
DRAIN_POLL_INTERVAL = 0.1


@dataclass
class ScenarioState:
    """
    Runtime state of one scenario.

    Attributes:
        scenario: Scenario definition
        stop_event: Set when the scenario's virtual users must stop
        expired: Set once the duration elapsed (or the scenario was cancelled)
        finished: Set once every virtual user stopped or was abandoned
        started: Number of virtual users started
        stopped: Number of virtual users that returned
        iterations: Completed iterations across all virtual users
        iteration_errors: Iterations whose target raised
        interrupted: Virtual users abandoned after the grace period
        skipped: True if the scenario was cancelled before its start offset
    """

    scenario: ScenarioConfig
    stop_event: threading.Event = field(default_factory=threading.Event)
    expired: threading.Event = field(default_factory=threading.Event)
    finished: threading.Event = field(default_factory=threading.Event)
    error_reported: threading.Event = field(default_factory=threading.Event)
    started: int = 0
    stopped: int = 0
    iterations: int = 0
    iteration_errors: int = 0
    interrupted: int = 0
    skipped: bool = False
    lock: threading.Lock = field(default_factory=threading.Lock)

    def to_dict(self) -> dict:
        """Convert to the summary representation."""
        with self.lock:
            return {
                "executor": self.scenario.executor,
                "exec": self.scenario.exec,
                "vus": self.scenario.vus,
                "start_time": self.scenario.start_time,
                "duration": self.scenario.duration,
                "started": self.started,
                "stopped": self.stopped,
                "iterations": self.iterations,
                "iteration_errors": self.iteration_errors,
                "interrupted": self.interrupted,
                "skipped": self.skipped,
                "tags": dict(self.scenario.tags),
            }


class ScenarioScheduler:
    """
    Runs scenarios concurrently against a shared metric sink.

    Example usage:
        scheduler = ScenarioScheduler(config.scenarios, script.functions, sink)
        scheduler.start()
        scheduler.wait_expired()
        scheduler.wait()
    """

    def __init__(
        self,
        scenarios: Iterable[ScenarioConfig],
        targets: Mapping[str, TargetFunction],
        sink: MetricSink,
        env: Optional[Mapping[str, str]] = None,
        request_timeout: float = 60.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        """
        Initialize the scheduler.

        Args:
            scenarios: Scenario definitions
            targets: Script functions keyed by name
            sink: Shared metric sink
            env: Environment exposed to scripts
            request_timeout: Hard HTTP request timeout in seconds
            transport: Optional httpx transport (used by tests)

        Raises:
            KeyError: If a scenario's exec function is not in ``targets``
        """
        self.scenarios = list(scenarios)
        missing = [s.exec for s in self.scenarios if s.exec not in targets]
        if missing:
            raise KeyError(f"Unknown exec function(s): {', '.join(missing)}")

        self.sink = sink
        self.env = dict(env or {})
        self.request_timeout = request_timeout
        self._targets = dict(targets)
        self._transport = transport
        self._states = {s.name: ScenarioState(s) for s in self.scenarios}
        self._listeners: list[WorkerListener] = []
        self._cancelled = threading.Event()
        self._abandon = threading.Event()
        self._all_expired = threading.Event()
        self._all_finished = threading.Event()
        self._counter_lock = threading.Lock()
        self._expired_count = 0
        self._finished_count = 0
        self._errors: list[RunError] = []
        self._threads: list[threading.Thread] = []
        self._pools: list[tuple[concurrent.futures.ThreadPoolExecutor, list]] = []
        self._started_at: Optional[float] = None

    def add_listener(self, listener: WorkerListener) -> None:
        """Register a callback for virtual user lifecycle events."""
        self._listeners.append(listener)

    def state(self, name: str) -> ScenarioState:
        return self._states[name]

    def states(self) -> dict[str, ScenarioState]:
        return dict(self._states)

    @property
    def errors(self) -> list[RunError]:
        with self._counter_lock:
            return list(self._errors)

    @property
    def interrupted(self) -> int:
        """Total virtual users abandoned after their grace period."""
        return sum(s.interrupted for s in self._states.values())

    @property
    def cancelled(self) -> bool:
        return self._cancelled.is_set()

    def start(self) -> None:
        """Start one timing thread per scenario."""
        if self._started_at is not None:
            raise RuntimeError("Scheduler already started")
        self._started_at = time.monotonic()
        for state in self._states.values():
            thread = threading.Thread(
                target=self._run_scenario,
                args=(state,),
                name=f"scenario-{state.scenario.name}",
                daemon=True,
            )
            self._threads.append(thread)
            thread.start()

    def cancel(self) -> None:
        """Stop every scenario now; pending start offsets are skipped."""
        if self._cancelled.is_set():
            return
        logger.info("Cancelling all scenarios")
        self._cancelled.set()
        for state in self._states.values():
            state.stop_event.set()

    def abandon(self) -> None:
        """Cancel and stop waiting for in-flight iterations."""
        self._abandon.set()
        self.cancel()

    def wait_expired(self, timeout: Optional[float] = None) -> bool:
        """Wait until every scenario's duration expired."""
        return self._all_expired.wait(timeout)

    def wait(self, timeout: Optional[float] = None) -> bool:
        """Wait until every scenario finished draining."""
        return self._all_finished.wait(timeout)

    def join_workers(self, timeout: Optional[float] = None) -> int:
        """
        Wait for abandoned virtual users to return and their threads to exit.

        Call after ``wait()``. Abandoned VUs are never interrupted; this only
        waits for the iteration they are stuck in.

        Returns:
            Number of virtual users still running when the timeout expired
        """
        deadline = None if timeout is None else time.monotonic() + timeout
        with self._counter_lock:
            pools = list(self._pools)
        still_running = 0
        for executor, futures in pools:
            remaining = None if deadline is None else max(deadline - time.monotonic(), 0.0)
            _, pending = concurrent.futures.wait(futures, timeout=remaining)
            if pending:
                still_running += len(pending)
                continue
            executor.shutdown(wait=True)
        if still_running:
            logger.error("%d abandoned VU(s) still running after %gs", still_running, timeout)
        return still_running

    def _elapsed(self) -> float:
        return time.monotonic() - (self._started_at or time.monotonic())

    def _emit(self, event: WorkerEvent) -> None:
        for listener in self._listeners:
            try:
                listener(event)
            except Exception:  # listeners must not affect the run
                logger.exception("Worker event listener failed for %s", event)

    def _mark_expired(self, state: ScenarioState) -> None:
        state.expired.set()
        with self._counter_lock:
            self._expired_count += 1
            if self._expired_count == len(self._states):
                self._all_expired.set()

    def _mark_finished(self, state: ScenarioState) -> None:
        state.finished.set()
        with self._counter_lock:
            self._finished_count += 1
            if self._finished_count == len(self._states):
                self._all_finished.set()

    def _record_error(self, error: RunError) -> None:
        with self._counter_lock:
            self._errors.append(error)

    def _run_scenario(self, state: ScenarioState) -> None:
        scenario = state.scenario
        try:
            delay = scenario.start_time - self._elapsed()
            if (delay > 0 and self._cancelled.wait(delay)) or self._cancelled.is_set():
                state.skipped = True
                logger.info("Scenario %s cancelled before start", scenario.name)
                self._mark_expired(state)
                return

            logger.info(
                "Scenario %s started: %d VU(s) for %gs running %s()",
                scenario.name, scenario.vus, scenario.duration, scenario.exec,
            )
            executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=scenario.vus,
                thread_name_prefix=f"vu-{scenario.name}",
            )
            futures = {
                executor.submit(self._run_vu, state, vu_id): vu_id
                for vu_id in range(1, scenario.vus + 1)
            }
            try:
                state.stop_event.wait(scenario.duration)
                state.stop_event.set()
                self._mark_expired(state)
                logger.info("Scenario %s duration expired, stopping VUs", scenario.name)
                self._drain(state, futures)
            finally:
                self._release_pool(executor, futures)
        finally:
            if not state.expired.is_set():
                self._mark_expired(state)
            self._mark_finished(state)
            logger.info("Scenario %s finished", scenario.name)

    def _release_pool(
        self,
        executor: concurrent.futures.ThreadPoolExecutor,
        futures: dict[concurrent.futures.Future, int],
    ) -> None:
        if all(f.done() for f in futures):
            executor.shutdown(wait=True)
            return
        # abandoned VUs are still running; join_workers() reaps them
        with self._counter_lock:
            self._pools.append((executor, list(futures)))

    def _drain(
        self,
        state: ScenarioState,
        futures: dict[concurrent.futures.Future, int],
    ) -> None:
        scenario = state.scenario
        grace_deadline = time.monotonic() + scenario.graceful_stop
        pending = set(futures)
        while pending and not self._abandon.is_set():
            remaining = grace_deadline - time.monotonic()
            if remaining <= 0:
                break
            _, pending = concurrent.futures.wait(
                pending,
                timeout=min(remaining, DRAIN_POLL_INTERVAL),
            )

        for future in futures:
            if future in pending:
                continue
            exc = future.exception()
            if exc is not None:
                logger.error(
                    "VU %s/%d crashed: %s", scenario.name, futures[future], exc,
                    exc_info=exc,
                )
                self._record_error(RunError(
                    error_code="WORKER_CRASHED",
                    message=f"{type(exc).__name__}: {exc}",
                    category=ErrorCategory.EXECUTION,
                    severity=ErrorSeverity.CRITICAL,
                    context={"scenario": scenario.name, "vu_id": futures[future]},
                ))

        if pending:
            with state.lock:
                state.interrupted = len(pending)
            vu_ids = sorted(futures[f] for f in pending)
            logger.warning(
                "Scenario %s: %d VU(s) still running after %gs graceful stop, abandoning",
                scenario.name, len(pending), scenario.graceful_stop,
            )
            self._record_error(RunError(
                error_code="WORKER_INTERRUPTED",
                message=(
                    f"{len(pending)} VU(s) of scenario '{scenario.name}' did not "
                    f"finish within the {scenario.graceful_stop:g}s graceful stop"
                ),
                category=ErrorCategory.TIMEOUT,
                context={"scenario": scenario.name, "vu_ids": vu_ids},
            ))

    def _run_vu(self, state: ScenarioState, vu_id: int) -> int:
        scenario = state.scenario
        vu = VirtualUser(
            vu_id=vu_id,
            scenario=scenario,
            target=self._targets[scenario.exec],
            sink=self.sink,
            stop_event=state.stop_event,
            env=self.env,
            request_timeout=self.request_timeout,
            transport=self._transport,
            error_reported=state.error_reported,
        )
        with state.lock:
            state.started += 1
        self._emit(WorkerEvent(
            event_type=WorkerEventType.STARTED,
            scenario=scenario.name,
            vu_id=vu_id,
            timestamp=self.sink.now(),
        ))
        try:
            return vu.run()
        finally:
            with state.lock:
                state.stopped += 1
                state.iterations += vu.iterations
                state.iteration_errors += vu.errors
            self._emit(WorkerEvent(
                event_type=WorkerEventType.STOPPED,
                scenario=scenario.name,
                vu_id=vu_id,
                timestamp=self.sink.now(),
                iterations=vu.iterations,
            ))
