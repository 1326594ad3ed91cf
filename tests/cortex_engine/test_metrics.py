"""
Tests for the in-process metrics registry.
"""

import pytest

from cortex_engine.metrics import HISTOGRAM_MAX_SAMPLES, get_metrics, inc_counter, observe, timed_histogram


def test_histogram_keeps_recent_samples_only():
    for i in range(HISTOGRAM_MAX_SAMPLES + 10):
        observe("step_seconds", float(i))
    samples = get_metrics()["histograms"]["step_seconds"]
    assert len(samples) == HISTOGRAM_MAX_SAMPLES
    assert samples[0] == 10.0
    assert samples[-1] == float(HISTOGRAM_MAX_SAMPLES + 9)


def test_timed_histogram_records_on_error():
    @timed_histogram("failing_seconds")
    def fail():
        raise RuntimeError("boom")

    with pytest.raises(RuntimeError):
        fail()
    assert len(get_metrics()["histograms"]["failing_seconds"]) == 1


def test_counters_accumulate():
    inc_counter("events_total")
    inc_counter("events_total", 2.0)
    assert get_metrics()["counters"]["events_total"] == 3.0
