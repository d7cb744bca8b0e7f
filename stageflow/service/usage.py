from __future__ import annotations

import math
import threading
from collections import Counter, deque
from datetime import date, datetime, timedelta
from typing import Any, Callable, Deque, Dict, Iterable, List, Mapping, Optional, Union

from stageflow.logging import get_logger
from stageflow.service.errors import AggregationDropped, NotFoundError, ValidationError
from stageflow.service.nodes import NodeGraph
from stageflow.storage.errors import ConstraintViolation, StoreUnavailable
from stageflow.storage.models import (
    ABANDON_REASONS,
    DailyRollup,
    EventKind,
    ExitReason,
    FeedbackType,
    NodeAggregate,
    Outcome,
    SessionRecord,
    SessionStats,
    UsageEvent,
    WorkflowContext,
    utcnow,
)

logger = get_logger(__name__)

# Responses slower than this are reported as slow in buffer stats
SLOW_RESPONSE_MS = 1000.0


def percentile(sorted_samples: List[float], p: float) -> float:
    """Nearest-rank style percentile: ``sorted[floor(n * p)]``, 0 when empty."""
    n = len(sorted_samples)
    if n == 0:
        return 0.0
    index = min(int(math.floor(n * p)), n - 1)
    return float(sorted_samples[index])


def _rate(numerator: int, denominator: int) -> float:
    if denominator <= 0:
        return 0.0
    return round(numerator / denominator, 4)


class SampleBuffer:
    """Bounded FIFO of recent response-time samples shared across sessions."""

    def __init__(self, capacity: int = 1000) -> None:
        if capacity < 1:
            raise ValueError("capacity must be positive")
        self.capacity = capacity
        self._samples: Deque[float] = deque(maxlen=capacity)
        self._lock = threading.Lock()

    def add(self, value: float) -> None:
        with self._lock:
            self._samples.append(float(value))

    def snapshot(self) -> List[float]:
        with self._lock:
            return list(self._samples)

    def clear(self) -> None:
        with self._lock:
            self._samples.clear()

    def __len__(self) -> int:
        with self._lock:
            return len(self._samples)

    def stats(self) -> Dict[str, Any]:
        samples = self.snapshot()
        ordered = sorted(samples)
        count = len(ordered)
        return {
            "count": count,
            "capacity": self.capacity,
            "avg_ms": round(sum(ordered) / count, 2) if count else 0.0,
            "p50_ms": percentile(ordered, 0.50),
            "p95_ms": percentile(ordered, 0.95),
            "p99_ms": percentile(ordered, 0.99),
            "max_ms": ordered[-1] if ordered else 0.0,
            "slow_count": sum(1 for value in samples if value > SLOW_RESPONSE_MS),
        }


EventInput = Union[UsageEvent, Mapping[str, Any]]


class UsageAggregator:
    """Ingests usage events and computes node, session and daily statistics.

    Events are appended to the store and never mutated; every statistic is
    recomputed from raw events at query time. Malformed events are counted in
    ``dropped`` and logged, never raised to the producer.
    """

    def __init__(
        self,
        store,
        *,
        graph: Optional[NodeGraph] = None,
        sample_buffer: Optional[SampleBuffer] = None,
        sample_capacity: int = 1000,
        default_window_days: int = 7,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.store = store
        self.graph = graph
        self.sample_capacity = sample_capacity
        self.samples = sample_buffer or SampleBuffer(sample_capacity)
        self.default_window_days = default_window_days
        self._clock = clock
        self._dropped = 0
        self._dropped_lock = threading.Lock()

    @property
    def dropped(self) -> int:
        with self._dropped_lock:
            return self._dropped

    # Ingestion --------------------------------------------------------------

    def record(self, event: EventInput) -> bool:
        """Append one event; returns False (and counts a drop) when it cannot be stored."""
        try:
            if not isinstance(event, UsageEvent):
                event = UsageEvent.from_mapping(event)
            self.store.append_event(event)
        except (ValueError, TypeError, ConstraintViolation, StoreUnavailable) as exc:
            self._drop(exc, event)
            return False
        if event.kind is EventKind.RESPONSE_TIME and event.value is not None:
            self.samples.add(event.value)
        return True

    def record_many(self, events: Iterable[EventInput]) -> int:
        return sum(1 for event in events if self.record(event))

    def _drop(self, exc: Exception, event: Any) -> None:
        with self._dropped_lock:
            self._dropped += 1
            total = self._dropped
        dropped = AggregationDropped(
            str(getattr(exc, "message", exc)),
            detail={"event_type": type(event).__name__},
        )
        node_id = event.get("node_id") if isinstance(event, Mapping) else getattr(event, "node_id", None)
        logger.warning(
            "usage_event_dropped",
            error_code=dropped.error_code,
            reason=dropped.message,
            node_id=node_id,
            dropped_total=total,
        )

    # Session lifecycle ------------------------------------------------------

    def start_session(
        self, session_id: Optional[str] = None, user_id: Optional[str] = None
    ) -> SessionRecord:
        record = SessionRecord.new(user_id=user_id, session_id=session_id)
        record.started_at = self._clock()
        return self.store.create_session(record)

    def end_session(
        self,
        session_id: str,
        *,
        exit_node_id: Optional[str] = None,
        exit_reason: str = ExitReason.COMPLETION.value,
        satisfaction_score: Optional[int] = None,
        user_feedback: Optional[str] = None,
    ) -> SessionRecord:
        record = self.store.get_session(session_id)
        if record is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        if satisfaction_score is not None and not 1 <= satisfaction_score <= 5:
            raise ValidationError(
                "satisfaction_score must be between 1 and 5",
                detail={"satisfaction_score": satisfaction_score},
            )
        if exit_node_id is None:
            context = self.store.get_context(session_id)
            exit_node_id = context.current_node_id if context else None
        record.ended_at = self._clock()
        record.exit_node_id = exit_node_id
        record.exit_reason = exit_reason
        record.satisfaction_score = satisfaction_score
        record.user_feedback = user_feedback
        self.store.update_session(record)
        logger.info(
            "session_ended",
            session_id=session_id,
            exit_node_id=exit_node_id,
            exit_reason=exit_reason,
            duration_seconds=record.duration_seconds,
        )
        return record

    def session_stats(self, session_id: str) -> SessionStats:
        record = self.store.get_session(session_id)
        context = self.store.get_context(session_id)
        if record is None and context is None:
            raise NotFoundError("session not found", detail={"session_id": session_id})
        if context is None:
            context = WorkflowContext(session_id=session_id)
        return SessionStats.build(context, record)

    # Aggregation ------------------------------------------------------------

    def _since(self, window_days: Optional[int]) -> datetime:
        days = self.default_window_days if window_days is None else window_days
        if days < 1:
            raise ValidationError("window_days must be at least 1", detail={"window_days": days})
        return self._clock() - timedelta(days=days)

    def _node_labels(self, node_id: str, events: List[UsageEvent]) -> tuple[Optional[str], Optional[str]]:
        node = self.graph.get(node_id) if self.graph else None
        node_type = next((e.node_type for e in events if e.node_type), None)
        node_name = next((e.node_name for e in events if e.node_name), None)
        if node is not None:
            node_type = node_type or node.type
            node_name = node_name or node.name
        return node_type, node_name

    def _aggregate(self, node_id: str, events: List[UsageEvent]) -> NodeAggregate:
        node_type, node_name = self._node_labels(node_id, events)
        usage = [e for e in events if e.kind is EventKind.USAGE]
        timings = [e.value for e in events if e.kind is EventKind.RESPONSE_TIME]
        lengths = [e.value for e in events if e.kind is EventKind.CONTENT_LENGTH]
        feedback = Counter(e.feedback for e in events if e.kind is EventKind.FEEDBACK)
        processing = Counter(
            e.processing.value for e in events if e.kind is EventKind.CONTENT_PROCESSING
        )
        successes = sum(1 for e in usage if e.outcome is Outcome.SUCCESS)
        failures = sum(1 for e in usage if e.outcome is Outcome.FAILURE)
        recent = sorted(timings[-self.sample_capacity:])
        usage_count = len(usage)
        adoptions = feedback[FeedbackType.ADOPT]
        edits = feedback[FeedbackType.EDIT]
        return NodeAggregate(
            node_id=node_id,
            node_type=node_type,
            node_name=node_name,
            usage_count=usage_count,
            success_count=successes,
            failure_count=failures,
            success_rate=_rate(successes, successes + failures),
            session_count=len({e.session_id for e in events}),
            user_count=len({e.user_id for e in events if e.user_id}),
            avg_response_time_ms=round(sum(timings) / len(timings), 2) if timings else 0.0,
            p50_response_time_ms=percentile(recent, 0.50),
            p95_response_time_ms=percentile(recent, 0.95),
            p99_response_time_ms=percentile(recent, 0.99),
            like_count=feedback[FeedbackType.LIKE],
            dislike_count=feedback[FeedbackType.DISLIKE],
            adopt_count=adoptions,
            edit_count=edits,
            regenerate_count=feedback[FeedbackType.REGENERATE],
            adoption_rate=_rate(adoptions, usage_count),
            edit_rate=_rate(edits, usage_count),
            avg_content_length=round(sum(lengths) / len(lengths), 2) if lengths else 0.0,
            processing=dict(processing),
        )

    def node_aggregates(
        self, window_days: Optional[int] = None, *, node_id: Optional[str] = None
    ) -> List[NodeAggregate]:
        events = self.store.list_events(since=self._since(window_days), node_id=node_id)
        grouped: Dict[str, List[UsageEvent]] = {}
        for event in events:
            grouped.setdefault(event.node_id, []).append(event)
        order = self.graph.ids if self.graph else []
        ranked = sorted(
            grouped,
            key=lambda nid: (order.index(nid) if nid in order else len(order), nid),
        )
        return [self._aggregate(nid, grouped[nid]) for nid in ranked]

    def session_rollup(self, window_days: Optional[int] = None) -> Dict[str, Any]:
        sessions = self.store.list_sessions(since=self._since(window_days))
        ended = [s for s in sessions if not s.is_open]
        completed = sum(1 for s in ended if s.exit_reason == ExitReason.COMPLETION.value)
        abandoned = sum(1 for s in ended if s.exit_reason in ABANDON_REASONS)
        errored = sum(1 for s in ended if s.exit_reason == ExitReason.ERROR.value)
        durations = [s.duration_seconds for s in ended if s.duration_seconds is not None]

        efficiencies = []
        for session in sessions:
            context = self.store.get_context(session.session_id)
            if context is not None and context.visited_nodes:
                efficiencies.append(SessionStats.build(context, session).path_efficiency_score)

        exits: Dict[tuple, List[float]] = {}
        for session in ended:
            if session.exit_node_id is None:
                continue
            exits.setdefault((session.exit_node_id, session.exit_reason), []).append(
                session.duration_seconds or 0.0
            )
        exit_points = [
            {
                "exit_node_id": node,
                "exit_reason": reason,
                "count": len(values),
                "avg_duration_seconds": round(sum(values) / len(values), 2),
            }
            for (node, reason), values in exits.items()
        ]
        exit_points.sort(key=lambda item: (-item["count"], item["exit_node_id"]))

        return {
            "total_sessions": len(sessions),
            "ended_sessions": len(ended),
            "completed_sessions": completed,
            "abandoned_sessions": abandoned,
            "error_sessions": errored,
            "completion_rate": _rate(completed, len(ended)),
            "avg_duration_seconds": round(sum(durations) / len(durations), 2) if durations else 0.0,
            "avg_path_efficiency": round(sum(efficiencies) / len(efficiencies), 4) if efficiencies else 0.0,
            "common_exit_points": exit_points[:10],
        }

    def daily_rollups(self, window_days: Optional[int] = None) -> List[DailyRollup]:
        events = self.store.list_events(since=self._since(window_days))
        grouped: Dict[tuple[date, str], List[UsageEvent]] = {}
        for event in events:
            grouped.setdefault((event.stat_date, event.node_id), []).append(event)
        rollups = []
        for (stat_date, node_id), bucket in sorted(grouped.items()):
            aggregate = self._aggregate(node_id, bucket)
            rollups.append(
                DailyRollup(
                    stat_date=stat_date,
                    node_id=node_id,
                    node_type=aggregate.node_type,
                    usage_count=aggregate.usage_count,
                    unique_users=aggregate.user_count,
                    avg_response_time_ms=aggregate.avg_response_time_ms,
                    success_rate=aggregate.success_rate,
                    like_count=aggregate.like_count,
                    dislike_count=aggregate.dislike_count,
                    adopt_count=aggregate.adopt_count,
                    edit_count=aggregate.edit_count,
                    regenerate_count=aggregate.regenerate_count,
                    adoption_rate=aggregate.adoption_rate,
                    edit_rate=aggregate.edit_rate,
                )
            )
        return rollups

    def refresh_daily_rollups(self, window_days: Optional[int] = None) -> int:
        """Recompute daily rollups from raw events and persist them."""
        rollups = self.daily_rollups(window_days)
        written = self.store.upsert_daily_rollups(rollups)
        logger.info("daily_rollups_refreshed", rows=written, window_days=window_days)
        return written

    def stored_daily_rollups(self, window_days: Optional[int] = None) -> List[DailyRollup]:
        """Rollups as last persisted by ``refresh_daily_rollups``."""
        return self.store.list_daily_rollups(since=self._since(window_days).date())

    def overview(self, window_days: Optional[int] = None) -> Dict[str, Any]:
        days = self.default_window_days if window_days is None else window_days
        start = self._since(days)
        end = self._clock()
        nodes = self.node_aggregates(days)
        return {
            "nodes": nodes,
            "adoption_rates": {
                n.node_id: {"adoption_rate": n.adoption_rate, "edit_rate": n.edit_rate}
                for n in nodes
            },
            "sessions": self.session_rollup(days),
            "response_times": self.samples.stats(),
            "dropped_events": self.dropped,
            "time_range": {
                "days": days,
                "start": start.isoformat(),
                "end": end.isoformat(),
            },
        }
