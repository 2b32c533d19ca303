"""
Tests for observability helpers.
"""

from flow_agent.core.observability import ObservabilityManager, Timer, record_metric, span


def test_manager_is_singleton(observability):
    assert ObservabilityManager.initialize() is observability
    assert ObservabilityManager.get_instance() is observability


def test_span_sets_attributes():
    with span("test.span", {"segment": True, "iteration": 2}) as current:
        assert current is not None


def test_record_metric_counts_and_durations(observability):
    record_metric("test_events_total", 1, {"kind": "unit"})
    record_metric("test_duration", 12.5)

    data = observability.metric_reader.get_metrics_data()
    names = {
        metric.name
        for resource in data.resource_metrics
        for scope in resource.scope_metrics
        for metric in scope.metrics
    }
    assert {"flow_events_total", "flow_duration_ms"} <= names


def test_timer():
    with Timer("unit", log=False) as timer:
        sum(range(1000))
    assert timer.elapsed >= 0
    assert timer.elapsed_ms == timer.elapsed * 1000
