"""Unit tests for the monitoring hub."""

from monitoring import (
    ActivityFeed,
    EventType,
    MetricsCollector,
    SystemMonitor,
    get_rate_limit_status,
)
from adapter.rate_tracker import RateTracker


class TestActivityFeed:

    def test_recent_events_newest_first(self):
        feed = ActivityFeed()
        feed.add_event(EventType.POST_IGNORED, subject="post_1", reasoning="low confidence")
        feed.add_event(EventType.POST_ACTED, subject="post_2", action="reply")

        events = feed.get_recent()

        assert [e["subject"] for e in events] == ["post_2", "post_1"]
        assert events[0]["event_type"] == "post_acted"
        assert events[0]["details"] == {"action": "reply"}

    def test_filter_by_type(self):
        feed = ActivityFeed()
        feed.add_event(EventType.POST_IGNORED, subject="post_1")
        feed.add_event(EventType.POLICY_BLOCKED, subject="post_2")

        events = feed.get_recent(event_type=EventType.POLICY_BLOCKED)

        assert len(events) == 1
        assert events[0]["subject"] == "post_2"

    def test_bounded_and_clearable(self):
        feed = ActivityFeed(max_events=3)
        for i in range(5):
            feed.add_event(EventType.X_API_CALL, subject=f"call_{i}")

        assert len(feed.get_recent()) == 3
        assert feed.get_event_counts() == {"x_api_call": 3}

        feed.clear()
        assert feed.get_recent() == []

    def test_accepts_string_event_type(self):
        feed = ActivityFeed()
        feed.add_event("daily_reset", subject="agent")

        assert feed.get_recent()[0]["event_type"] == "daily_reset"


class TestMetricsCollector:

    def test_outcomes_and_errors(self):
        metrics = MetricsCollector()
        metrics.record_outcome("acted")
        metrics.record_outcome("acted")
        metrics.record_outcome("failed")
        metrics.record_x_api_call(120.0)
        metrics.record_x_api_call(80.0, error=True)
        metrics.record_request("/search", 5.0, error=True)

        data = metrics.get_metrics()

        assert data["decisions"] == {"acted": 2, "failed": 1}
        assert data["x_api"]["calls"] == 2
        assert data["x_api"]["errors"] == 1
        assert data["x_api"]["error_rate"] == "50.0%"
        assert data["requests"]["errors"] == {"/search": 1}

    def test_cache_counters(self):
        metrics = MetricsCollector()
        metrics.record_cache_hit()
        metrics.record_cache_miss()
        metrics.record_cache_fallback()

        cache = metrics.get_metrics()["cache"]

        assert cache["hits"] == 1
        assert cache["fallbacks"] == 1
        assert cache["hit_rate"] == "50.0%"

    def test_empty_percentiles(self):
        metrics = MetricsCollector()

        assert metrics.get_metrics()["grok_api"]["latency_ms"]["p50"] == 0


class TestSystemMonitor:

    def test_health_rollup(self):
        monitor = SystemMonitor()
        assert monitor.get_health_status()["status"] == "unknown"

        monitor.set_component_status("x_gateway", "healthy")
        monitor.set_component_status("grok_adapter", "healthy")
        assert monitor.get_health_status()["status"] == "healthy"

        monitor.set_component_status("grok_adapter", "warning")
        assert monitor.get_health_status()["status"] == "warning"

        monitor.set_component_status("x_gateway", "error")
        assert monitor.get_health_status()["status"] == "degraded"


def test_rate_limit_status_levels():
    tracker = RateTracker(clock=lambda: 1000.0)
    tracker.record_from_response("/a", {"x-rate-limit-remaining": "90", "x-rate-limit-limit": "100", "x-rate-limit-reset": "1900"})
    tracker.record_from_response("/b", {"x-rate-limit-remaining": "10", "x-rate-limit-limit": "100", "x-rate-limit-reset": "1900"})
    tracker.record_from_response("/c", {"x-rate-limit-remaining": "0", "x-rate-limit-limit": "100", "x-rate-limit-reset": "1900"})

    status = get_rate_limit_status(tracker)

    assert status["/a"]["status"] == "ok"
    assert status["/a"]["usage_percent"] == "10.0%"
    assert status["/b"]["status"] == "warning"
    assert status["/c"]["status"] == "critical"
    assert status["/c"]["message"] == "Rate limited. Retry in 15 minutes."
