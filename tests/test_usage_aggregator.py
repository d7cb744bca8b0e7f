"""Tests for usage ingestion, percentile statistics and session rollups."""

from __future__ import annotations

from datetime import datetime, timedelta, timezone

import pytest

from stageflow.service.errors import NotFoundError, ValidationError
from stageflow.service.nodes import default_graph
from stageflow.service.usage import SampleBuffer, UsageAggregator, percentile
from stageflow.storage.errors import StoreUnavailable
from stageflow.storage.memory import MemoryStore
from stageflow.storage.models import EventKind, StageOutput, UsageEvent

NOW = datetime(2024, 5, 10, 12, 0, tzinfo=timezone.utc)


class UnavailableStore(MemoryStore):
    def append_event(self, event):
        raise StoreUnavailable("usage event write failed", {"event_id": event.id})


class FixedClock:
    def __init__(self, now: datetime = NOW):
        self.now = now

    def __call__(self) -> datetime:
        return self.now


@pytest.fixture
def store():
    return MemoryStore()


@pytest.fixture
def clock():
    return FixedClock()


@pytest.fixture
def aggregator(store, clock):
    return UsageAggregator(store, graph=default_graph(), sample_capacity=5, clock=clock)


def _event(kind, node_id="ai_search", session_id="s1", **kwargs):
    kwargs.setdefault("timestamp", NOW - timedelta(hours=1))
    return UsageEvent(node_id=node_id, session_id=session_id, kind=kind, **kwargs)


class TestPercentile:
    def test_median_of_five(self):
        assert percentile([100, 200, 300, 400, 500], 0.5) == 300

    def test_tail_uses_floor_index(self):
        samples = [float(v) for v in range(1, 101)]
        assert percentile(samples, 0.95) == 96.0
        assert percentile(samples, 0.99) == 100.0

    def test_empty_is_zero(self):
        assert percentile([], 0.5) == 0.0
        assert percentile([], 0.99) == 0.0

    def test_single_sample(self):
        assert percentile([42.0], 0.99) == 42.0


class TestSampleBuffer:
    def test_fifo_eviction_at_capacity(self):
        buffer = SampleBuffer(capacity=3)
        for value in (1, 2, 3, 4, 5):
            buffer.add(value)

        assert buffer.snapshot() == [3.0, 4.0, 5.0]
        assert len(buffer) == 3

    def test_stats_counts_slow_responses(self):
        buffer = SampleBuffer(capacity=10)
        for value in (100, 200, 1500, 2500):
            buffer.add(value)

        stats = buffer.stats()
        assert stats["count"] == 4
        assert stats["slow_count"] == 2
        assert stats["max_ms"] == 2500.0
        assert stats["p50_ms"] == 1500.0

    def test_empty_stats(self):
        stats = SampleBuffer(capacity=2).stats()
        assert stats["count"] == 0
        assert stats["avg_ms"] == 0.0
        assert stats["p95_ms"] == 0.0

    def test_capacity_must_be_positive(self):
        with pytest.raises(ValueError):
            SampleBuffer(capacity=0)


class TestIngestion:
    def test_valid_event_is_recorded(self, aggregator, store):
        assert aggregator.record(_event(EventKind.RESPONSE_TIME, value=250)) is True
        assert len(store.list_events()) == 1
        assert aggregator.samples.snapshot() == [250.0]

    def test_malformed_mapping_is_dropped_not_raised(self, aggregator, store):
        assert aggregator.record({"node_id": "ai_search", "kind": "usage"}) is False
        assert aggregator.record({"node_id": "ai_search", "session_id": "s1", "kind": "bogus"}) is False
        assert aggregator.record(
            {"node_id": "ai_search", "session_id": "s1", "kind": "response_time", "value": -5}
        ) is False
        assert aggregator.record(
            {"node_id": "ai_search", "session_id": "s1", "kind": "feedback"}
        ) is False

        assert aggregator.dropped == 4
        assert store.list_events() == []

    def test_duplicate_event_id_is_dropped(self, aggregator):
        event = _event(EventKind.USAGE, outcome="success")
        assert aggregator.record(event) is True
        assert aggregator.record(event) is False
        assert aggregator.dropped == 1

    def test_record_many_counts_accepted(self, aggregator):
        accepted = aggregator.record_many(
            [
                {"node_id": "ai_search", "session_id": "s1", "kind": "usage", "outcome": "success"},
                {"node_id": "", "session_id": "s1", "kind": "usage"},
                {"node_id": "ai_search", "session_id": "s1", "event_type": "feedback", "feedback_type": "like"},
            ]
        )
        assert accepted == 2
        assert aggregator.dropped == 1

    def test_out_of_range_timestamp_is_dropped(self, aggregator, store):
        event = {"node_id": "ai_search", "session_id": "s1", "kind": "usage", "timestamp": 1e23}
        assert aggregator.record(event) is False
        assert aggregator.dropped == 1
        assert store.list_events() == []

    def test_non_mapping_entries_are_dropped(self, aggregator):
        accepted = aggregator.record_many(
            ["garbage", 7, {"node_id": "ai_search", "session_id": "s1", "kind": "usage"}]
        )
        assert accepted == 1
        assert aggregator.dropped == 2

    def test_store_failure_is_dropped_not_raised(self, clock):
        aggregator = UsageAggregator(UnavailableStore(), clock=clock)
        assert aggregator.record(_event(EventKind.RESPONSE_TIME, value=120)) is False
        assert aggregator.dropped == 1
        assert aggregator.samples.snapshot() == []

    def test_response_time_buffer_is_bounded(self, aggregator):
        for value in range(10):
            aggregator.record(_event(EventKind.RESPONSE_TIME, value=value))
        assert len(aggregator.samples) == 5


class TestNodeAggregates:
    def test_rates_are_zero_without_usage(self, aggregator):
        aggregator.record(_event(EventKind.FEEDBACK, feedback="adopt"))

        [node] = aggregator.node_aggregates()

        assert node.usage_count == 0
        assert node.adopt_count == 1
        assert node.adoption_rate == 0.0
        assert node.edit_rate == 0.0

    def test_counts_rates_and_latency(self, aggregator):
        for outcome in ("success", "success", "failure", "success"):
            aggregator.record(_event(EventKind.USAGE, outcome=outcome, user_id="u1"))
        for value in (100, 200, 300, 400, 500):
            aggregator.record(_event(EventKind.RESPONSE_TIME, value=value))
        aggregator.record(_event(EventKind.FEEDBACK, feedback="adopt"))
        aggregator.record(_event(EventKind.FEEDBACK, feedback="edit"))
        aggregator.record(_event(EventKind.FEEDBACK, feedback="like"))
        aggregator.record(_event(EventKind.CONTENT_PROCESSING, processing="edit_adopt"))
        aggregator.record(_event(EventKind.CONTENT_LENGTH, value=120))

        [node] = aggregator.node_aggregates()

        assert node.node_type == "search"
        assert node.usage_count == 4
        assert node.success_rate == 0.75
        assert node.adoption_rate == 0.25
        assert node.edit_rate == 0.25
        assert node.like_count == 1
        assert node.p50_response_time_ms == 300.0
        assert node.avg_response_time_ms == 300.0
        assert node.avg_content_length == 120.0
        assert node.processing == {"edit_adopt": 1}
        assert node.user_count == 1

    def test_window_excludes_old_events(self, aggregator):
        aggregator.record(_event(EventKind.USAGE, outcome="success"))
        aggregator.record(
            _event(EventKind.USAGE, outcome="success", timestamp=NOW - timedelta(days=30))
        )

        [node] = aggregator.node_aggregates(window_days=7)
        assert node.usage_count == 1
        [wide] = aggregator.node_aggregates(window_days=60)
        assert wide.usage_count == 2

    def test_graph_order_is_kept(self, aggregator):
        aggregator.record(_event(EventKind.USAGE, node_id="core_draft", outcome="success"))
        aggregator.record(_event(EventKind.USAGE, node_id="ai_search", outcome="success"))

        ids = [n.node_id for n in aggregator.node_aggregates()]
        assert ids == ["ai_search", "core_draft"]

    def test_window_must_be_positive(self, aggregator):
        with pytest.raises(ValidationError):
            aggregator.node_aggregates(window_days=0)


class TestSessions:
    def test_efficiency_is_zero_for_empty_session(self, aggregator):
        aggregator.start_session("s1")
        stats = aggregator.session_stats("s1")
        assert stats.visited_count == 0
        assert stats.path_efficiency_score == 0.0

    def test_visited_completed_skipped(self, aggregator, store):
        aggregator.start_session("s1")

        def walk(ctx):
            ctx.record_success("ai_search", StageOutput(node_id="ai_search", data={"answer": "a"}))
            ctx.record_success("tech_package", StageOutput(node_id="tech_package", data={"outputs": {"text": "b"}}))
            ctx.record_failure("tech_strategy")

        store.update_context("s1", walk)
        stats = aggregator.session_stats("s1")

        assert stats.visited_count == 3
        assert stats.completed_count == 2
        assert stats.skipped_nodes == ["tech_strategy"]
        assert stats.path_efficiency_score == round(2 / 3, 4)

    def test_end_session_defaults_exit_node(self, aggregator, store, clock):
        aggregator.start_session("s1", user_id="u1")
        store.update_context("s1", lambda ctx: ctx.record_failure("tech_package"))
        clock.now = NOW + timedelta(seconds=90)

        record = aggregator.end_session("s1", exit_reason="abandon", satisfaction_score=2)

        assert record.exit_node_id == "tech_package"
        assert record.duration_seconds == 90.0
        stats = aggregator.session_stats("s1")
        assert stats.exit_reason == "abandon"
        assert stats.satisfaction_score == 2

    def test_end_unknown_session(self, aggregator):
        with pytest.raises(NotFoundError):
            aggregator.end_session("missing")

    def test_satisfaction_out_of_range(self, aggregator):
        aggregator.start_session("s1")
        with pytest.raises(ValidationError):
            aggregator.end_session("s1", satisfaction_score=6)

    def test_stats_for_unknown_session(self, aggregator):
        with pytest.raises(NotFoundError):
            aggregator.session_stats("missing")

    def test_session_rollup(self, aggregator, store, clock):
        for sid in ("a", "b", "c"):
            aggregator.start_session(sid)
        store.update_context(
            "a", lambda ctx: ctx.record_success("ai_search", StageOutput(node_id="ai_search", data={}))
        )
        clock.now = NOW + timedelta(seconds=60)
        aggregator.end_session("a", exit_node_id="tech_publish", exit_reason="completion")
        aggregator.end_session("b", exit_node_id="tech_package", exit_reason="abandon")

        rollup = aggregator.session_rollup()

        assert rollup["total_sessions"] == 3
        assert rollup["ended_sessions"] == 2
        assert rollup["completed_sessions"] == 1
        assert rollup["abandoned_sessions"] == 1
        assert rollup["completion_rate"] == 0.5
        assert rollup["avg_duration_seconds"] == 60.0
        assert rollup["avg_path_efficiency"] == 1.0
        exits = {(p["exit_node_id"], p["exit_reason"]) for p in rollup["common_exit_points"]}
        assert exits == {("tech_publish", "completion"), ("tech_package", "abandon")}


class TestDailyRollups:
    def test_grouped_by_day_and_node(self, aggregator):
        yesterday = NOW - timedelta(days=1)
        aggregator.record(_event(EventKind.USAGE, outcome="success", user_id="u1"))
        aggregator.record(_event(EventKind.USAGE, outcome="failure", user_id="u2"))
        aggregator.record(_event(EventKind.USAGE, outcome="success", timestamp=yesterday))

        rollups = aggregator.daily_rollups()

        assert [(r.stat_date, r.node_id) for r in rollups] == [
            (yesterday.date(), "ai_search"),
            (NOW.date(), "ai_search"),
        ]
        today = rollups[1]
        assert today.usage_count == 2
        assert today.unique_users == 2
        assert today.success_rate == 0.5

    def test_refresh_persists_and_is_idempotent(self, aggregator, store):
        aggregator.record(_event(EventKind.USAGE, outcome="success"))

        assert aggregator.refresh_daily_rollups() == 1
        assert aggregator.refresh_daily_rollups() == 1
        assert len(store.list_daily_rollups()) == 1

    def test_stored_rollups_read_back_persisted_rows(self, aggregator):
        aggregator.record(_event(EventKind.USAGE, outcome="success"))
        assert aggregator.stored_daily_rollups() == []

        aggregator.refresh_daily_rollups()

        [row] = aggregator.stored_daily_rollups()
        assert row.node_id == "ai_search"
        assert row.usage_count == 1

    def test_overview_shape(self, aggregator):
        aggregator.record(_event(EventKind.USAGE, outcome="success"))
        aggregator.record(_event(EventKind.RESPONSE_TIME, value=50))
        aggregator.record({"kind": "usage"})

        overview = aggregator.overview(3)

        assert overview["time_range"]["days"] == 3
        assert overview["dropped_events"] == 1
        assert overview["response_times"]["count"] == 1
        assert overview["adoption_rates"]["ai_search"] == {"adoption_rate": 0.0, "edit_rate": 0.0}
