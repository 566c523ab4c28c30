"""
Tests for the metric sink.

Covers declaration rules, exact counting under concurrent writers, trend
downsampling past the retention cap and rejection of late samples.
"""

import threading
import time

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from vuload.framework.metrics import (
    MetricRegistrationError,
    MetricSink,
    UnknownMetricError,
)
from vuload.framework.models import CheckResult, MetricKind, MetricSpec, Sample


class TestDeclaration:
    """Metric registry rules."""

    def test_redeclare_same_kind_is_noop(self):
        sink = MetricSink()
        sink.declare(MetricSpec("orders", MetricKind.COUNTER))
        sink.declare(MetricSpec("orders", MetricKind.COUNTER))
        assert [s.name for s in sink.specs()] == ["orders"]

    def test_redeclare_different_kind_raises(self):
        sink = MetricSink()
        sink.declare(MetricSpec("orders", MetricKind.COUNTER))
        with pytest.raises(MetricRegistrationError):
            sink.declare(MetricSpec("orders", MetricKind.TREND))

    def test_declare_after_freeze_raises(self):
        sink = MetricSink()
        sink.freeze()
        with pytest.raises(MetricRegistrationError):
            sink.declare(MetricSpec("late", MetricKind.RATE))

    def test_unknown_metric_raises(self, sink):
        with pytest.raises(UnknownMetricError):
            sink.add("nope", 1)

    def test_unknown_metric_rejects_whole_batch(self, sink):
        batch = [
            Sample("http_reqs", 1, sink.now()),
            Sample("nope", 1, sink.now()),
        ]
        with pytest.raises(UnknownMetricError):
            sink.add_many(batch)
        assert sink.snapshot("http_reqs").count == 0

    def test_max_trend_samples_minimum(self):
        with pytest.raises(ValueError):
            MetricSink(max_trend_samples=1)


class TestRecording:
    """Counter, rate and trend semantics."""

    def test_counter_sums_values(self, sink):
        sink.add("http_reqs", 1)
        sink.add("http_reqs", 2)
        snapshot = sink.snapshot("http_reqs")
        assert snapshot.total == 3
        assert snapshot.count == 2

    def test_rate_counts_nonzero(self, sink):
        for value in (1, 0, 0, 1):
            sink.add("http_req_failed", value)
        snapshot = sink.snapshot("http_req_failed")
        assert snapshot.nonzero == 2
        assert snapshot.count == 4

    def test_trend_keeps_order_and_extremes(self, sink):
        for value in (30.0, 10.0, 20.0):
            sink.add("http_req_duration", value)
        snapshot = sink.snapshot("http_req_duration")
        assert snapshot.values == (30.0, 10.0, 20.0)
        assert snapshot.minimum == 10.0
        assert snapshot.maximum == 30.0

    def test_snapshot_is_a_copy(self, sink):
        sink.add("http_req_duration", 5)
        snapshot = sink.snapshot("http_req_duration")
        sink.add("http_req_duration", 6)
        assert snapshot.values == (5.0,)

    def test_samples_attributed_to_scenario(self, sink):
        sink.add("iterations", 1, scenario="a")
        sink.add("iterations", 1, scenario="a")
        sink.add("iterations", 1, scenario="b")
        assert sink.snapshot("iterations").samples_by_scenario == {"a": 2, "b": 1}

    def test_checks_feed_tallies_and_rate(self, sink):
        sink.add_many([], checks=[
            CheckResult("status is 2xx", True),
            CheckResult("status is 2xx", False),
            CheckResult("response is json", True),
        ])
        assert sink.checks() == {
            "response is json": {"passes": 1, "fails": 0},
            "status is 2xx": {"passes": 1, "fails": 1},
        }
        snapshot = sink.snapshot("checks")
        assert snapshot.count == 3
        assert snapshot.nonzero == 2

    def test_closed_sink_rejects_samples(self, sink):
        sink.add("http_reqs", 1)
        sink.close()
        assert sink.add("http_reqs", 1) is False
        assert sink.rejected == 1
        assert sink.snapshot("http_reqs").total == 1

    def test_closed_sink_rejects_samples_and_checks_together(self, sink):
        sink.close()
        recorded = sink.add_many(
            [Sample("http_reqs", 1.0, 0.0)],
            checks=[CheckResult("status is 2xx", True)],
        )
        assert recorded == 0
        assert sink.rejected == 2
        assert sink.snapshot("http_reqs").count == 0
        assert sink.snapshot("checks").count == 0
        assert sink.checks() == {}

    def test_close_waits_for_batch_being_committed(self, sink):
        series_lock = sink._series["http_reqs"].lock
        series_lock.acquire()
        writer = threading.Thread(target=sink.add_many, args=(
            [Sample("http_reqs", 1.0, 0.0)],
        ), kwargs={"checks": [CheckResult("status is 2xx", True)]})
        writer.start()
        try:
            # the writer tallies its checks, then blocks on the series lock
            deadline = time.monotonic() + 5
            while not sink.checks() and time.monotonic() < deadline:
                time.sleep(0.01)
            assert sink.checks() == {"status is 2xx": {"passes": 1, "fails": 0}}

            closer = threading.Thread(target=sink.close)
            closer.start()
            closer.join(timeout=0.2)
            assert closer.is_alive()
        finally:
            series_lock.release()
        writer.join(timeout=5)
        closer.join(timeout=5)

        assert not closer.is_alive()
        assert sink.closed
        assert sink.snapshot("http_reqs").total == 1
        assert sink.snapshot("checks").count == 1
        assert sink.rejected == 0
        assert sink.add("http_reqs", 1) is False


class TestConcurrency:
    """No sample is lost to concurrent writers."""

    def test_concurrent_counter_adds_are_exact(self, sink):
        threads_count = 16
        adds_per_thread = 2000
        barrier = threading.Barrier(threads_count)

        def writer():
            barrier.wait()
            for _ in range(adds_per_thread):
                sink.add("http_reqs", 1)
                sink.add("http_req_duration", 1.5)

        threads = [threading.Thread(target=writer) for _ in range(threads_count)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert sink.snapshot("http_reqs").total == threads_count * adds_per_thread
        assert sink.snapshot("http_req_duration").count == threads_count * adds_per_thread
        assert len(sink.values("http_req_duration")) == threads_count * adds_per_thread


class TestDownsampling:
    """Trend retention cap."""

    def test_trend_downsamples_past_cap(self, caplog):
        sink = MetricSink(max_trend_samples=8)
        sink.declare(MetricSpec("latency", MetricKind.TREND, unit="ms"))
        sink.freeze()

        for i in range(100):
            sink.add("latency", float(i))

        snapshot = sink.snapshot("latency")
        assert snapshot.count == 100
        assert snapshot.minimum == 0.0
        assert snapshot.maximum == 99.0
        assert snapshot.total == sum(range(100))
        assert snapshot.stride > 1
        assert len(snapshot.values) < 8
        assert sink.downsampled() == {"latency": snapshot.stride}
        assert "downsampling" in caplog.text

    def test_below_cap_is_exact(self):
        sink = MetricSink(max_trend_samples=1000)
        sink.declare(MetricSpec("latency", MetricKind.TREND))
        sink.freeze()
        for i in range(999):
            sink.add("latency", i)
        assert sink.snapshot("latency").stride == 1
        assert sink.downsampled() == {}

    @pytest.mark.property
    @given(
        cap=st.integers(min_value=2, max_value=64),
        n=st.integers(min_value=0, max_value=2000),
    )
    @settings(max_examples=50)
    def test_retained_values_never_exceed_cap(self, cap: int, n: int):
        """
        Property: however many samples arrive, a trend never retains more
        than its cap and the running aggregates stay exact.
        """
        sink = MetricSink(max_trend_samples=cap)
        sink.declare(MetricSpec("t", MetricKind.TREND))
        sink.freeze()
        for i in range(n):
            sink.add("t", i)
        snapshot = sink.snapshot("t")
        assert len(snapshot.values) < cap
        assert snapshot.count == n
        assert snapshot.total == sum(range(n))
