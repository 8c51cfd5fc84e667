"""Tests for metrics.py -- per-session counters."""

from ghcworker.metrics import MetricsCollector, SessionMetricsData

KEY = "backend:/src/app"


class TestMetricsCollector:
    def test_recording_requires_start(self) -> None:
        collector = MetricsCollector()
        collector.record_request(KEY)
        assert collector.get(KEY) is None

    def test_counters(self) -> None:
        collector = MetricsCollector()
        collector.start(KEY)
        collector.record_request(KEY)
        collector.record_request(KEY)
        collector.record_frame(KEY)
        collector.record_bytes(KEY, 100)
        collector.record_bytes(KEY, 28)
        collector.record_protocol_violation(KEY)
        collector.record_secondary_query(KEY)
        collector.record_secondary_fallback(KEY)
        collector.record_restart(KEY)

        data = collector.get(KEY)
        assert data is not None
        assert data.requests == 2
        assert data.frames == 1
        assert data.bytes_received == 128
        assert data.protocol_violations == 1
        assert data.secondary_queries == 1
        assert data.secondary_fallbacks == 1
        assert data.restarts == 1

    def test_start_twice_keeps_counters(self) -> None:
        collector = MetricsCollector()
        collector.start(KEY)
        collector.record_request(KEY)
        collector.start(KEY)
        data = collector.get(KEY)
        assert data is not None
        assert data.requests == 1

    def test_finish_returns_and_forgets(self) -> None:
        collector = MetricsCollector()
        collector.start(KEY)
        collector.record_frame(KEY)

        final = collector.finish(KEY)

        assert final is not None
        assert final.frames == 1
        assert final.duration_ms >= 0
        assert collector.get(KEY) is None
        assert collector.finish(KEY) is None

    def test_sessions_are_independent(self) -> None:
        collector = MetricsCollector()
        collector.start(KEY)
        collector.start("test:/src/app")
        collector.record_request(KEY)
        other = collector.get("test:/src/app")
        assert other is not None
        assert other.requests == 0


def test_to_dict_keys() -> None:
    assert set(SessionMetricsData().to_dict()) == {
        "requests",
        "frames",
        "bytes_received",
        "protocol_violations",
        "secondary_queries",
        "secondary_fallbacks",
        "restarts",
        "duration_ms",
    }
