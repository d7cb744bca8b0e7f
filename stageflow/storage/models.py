from __future__ import annotations

import math
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class Channel(str, Enum):
    """Logical channel of the external stage endpoint."""

    CHAT = "chat"
    WORKFLOW = "workflow"


class EventKind(str, Enum):
    USAGE = "usage"
    RESPONSE_TIME = "response_time"
    FEEDBACK = "feedback"
    CONTENT_LENGTH = "content_length"
    CONTENT_PROCESSING = "content_processing"


class FeedbackType(str, Enum):
    LIKE = "like"
    DISLIKE = "dislike"
    ADOPT = "adopt"
    EDIT = "edit"
    REGENERATE = "regenerate"


class ProcessingType(str, Enum):
    """What the user did with a generated piece of content."""

    DIRECT_ADOPT = "direct_adopt"
    EDIT_ADOPT = "edit_adopt"
    REGENERATE = "regenerate"
    ABANDON = "abandon"


class Outcome(str, Enum):
    SUCCESS = "success"
    FAILURE = "failure"


class ExitReason(str, Enum):
    COMPLETION = "completion"
    ABANDON = "abandon"
    USER_ABANDON = "user_abandon"
    ERROR = "error"


# Exit reasons that count as the user walking away
ABANDON_REASONS = frozenset({ExitReason.ABANDON.value, ExitReason.USER_ABANDON.value})

# Kinds whose events carry a numeric sample
_SAMPLE_KINDS = frozenset({EventKind.RESPONSE_TIME, EventKind.CONTENT_LENGTH})


def _parse_timestamp(value: Any) -> datetime:
    if value is None:
        return utcnow()
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, (int, float)):
        # epoch milliseconds
        try:
            return datetime.fromtimestamp(value / 1000.0, tz=timezone.utc)
        except (OverflowError, OSError) as exc:
            raise ValueError(f"timestamp out of range: {value!r}") from exc
    if isinstance(value, str):
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
        return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)
    raise ValueError(f"unsupported timestamp: {value!r}")


@dataclass(frozen=True)
class UsageEvent:
    """One immutable usage, latency, feedback or content signal for a node.

    Construction validates the event; malformed input raises ``ValueError``.
    """

    node_id: str
    session_id: str
    kind: EventKind
    value: Optional[float] = None
    feedback: Optional[FeedbackType] = None
    processing: Optional[ProcessingType] = None
    outcome: Optional[Outcome] = None
    user_id: Optional[str] = None
    node_type: Optional[str] = None
    node_name: Optional[str] = None
    message_id: Optional[str] = None
    timestamp: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def __post_init__(self) -> None:
        if not isinstance(self.node_id, str) or not self.node_id.strip():
            raise ValueError("node_id is required")
        if not isinstance(self.session_id, str) or not self.session_id.strip():
            raise ValueError("session_id is required")
        object.__setattr__(self, "kind", EventKind(self.kind))
        if self.feedback is not None:
            object.__setattr__(self, "feedback", FeedbackType(self.feedback))
        if self.processing is not None:
            object.__setattr__(self, "processing", ProcessingType(self.processing))
        if self.outcome is not None:
            object.__setattr__(self, "outcome", Outcome(self.outcome))
        if self.value is not None:
            if isinstance(self.value, bool) or not isinstance(self.value, (int, float)):
                raise ValueError("value must be numeric")
            if not math.isfinite(self.value) or self.value < 0:
                raise ValueError("value must be a finite, non-negative number")
            object.__setattr__(self, "value", float(self.value))
        if self.kind in _SAMPLE_KINDS and self.value is None:
            raise ValueError(f"{self.kind.value} events require a numeric value")
        if self.kind is EventKind.FEEDBACK and self.feedback is None:
            raise ValueError("feedback events require a feedback type")
        if self.kind is EventKind.CONTENT_PROCESSING and self.processing is None:
            raise ValueError("content_processing events require a processing type")
        object.__setattr__(self, "timestamp", _parse_timestamp(self.timestamp))

    @classmethod
    def from_mapping(cls, data: Mapping[str, Any]) -> "UsageEvent":
        if not isinstance(data, Mapping):
            raise ValueError("event must be a mapping")
        kind = data.get("kind") or data.get("event_type")
        if kind is None:
            raise ValueError("event kind is required")
        kwargs: Dict[str, Any] = {
            "node_id": data.get("node_id"),
            "session_id": data.get("session_id"),
            "kind": kind,
            "value": data.get("value"),
            "feedback": data.get("feedback") or data.get("feedback_type"),
            "processing": data.get("processing") or data.get("processing_type"),
            "outcome": data.get("outcome"),
            "user_id": data.get("user_id"),
            "node_type": data.get("node_type"),
            "node_name": data.get("node_name"),
            "message_id": data.get("message_id"),
            "timestamp": data.get("timestamp"),
        }
        if data.get("id"):
            kwargs["id"] = str(data["id"])
        return cls(**kwargs)

    @property
    def stat_date(self) -> date:
        return self.timestamp.date()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "node_id": self.node_id,
            "session_id": self.session_id,
            "kind": self.kind.value,
            "value": self.value,
            "feedback": self.feedback.value if self.feedback else None,
            "processing": self.processing.value if self.processing else None,
            "outcome": self.outcome.value if self.outcome else None,
            "user_id": self.user_id,
            "node_type": self.node_type,
            "node_name": self.node_name,
            "message_id": self.message_id,
            "timestamp": self.timestamp.isoformat(),
        }


@dataclass
class StageOutput:
    node_id: str
    data: Dict[str, Any]
    produced_at: datetime = field(default_factory=utcnow)
    attempts: int = 1
    elapsed_ms: float = 0.0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "data": self.data,
            "produced_at": self.produced_at.isoformat(),
            "attempts": self.attempts,
            "elapsed_ms": self.elapsed_ms,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "StageOutput":
        return cls(
            node_id=data["node_id"],
            data=dict(data.get("data") or {}),
            produced_at=_parse_timestamp(data.get("produced_at")),
            attempts=int(data.get("attempts", 1)),
            elapsed_ms=float(data.get("elapsed_ms", 0.0)),
        )


@dataclass
class WorkflowContext:
    """Per-session orchestration state, mutated only by the stage executor."""

    session_id: str
    user_id: Optional[str] = None
    visited_nodes: List[str] = field(default_factory=list)
    completed_nodes: List[str] = field(default_factory=list)
    visit_sequence: List[str] = field(default_factory=list)
    outputs: Dict[str, StageOutput] = field(default_factory=dict)
    output_history: Dict[str, List[StageOutput]] = field(default_factory=dict)
    current_node_id: Optional[str] = None
    last_succeeded: bool = False
    conversation_id: Optional[str] = None
    updated_at: datetime = field(default_factory=utcnow)

    def mark_visited(self, node_id: str) -> None:
        if node_id not in self.visited_nodes:
            self.visited_nodes.append(node_id)
        self.visit_sequence.append(node_id)
        self.current_node_id = node_id
        self.updated_at = utcnow()

    def record_success(
        self, node_id: str, output: StageOutput, *, keep_history: bool = False
    ) -> None:
        self.mark_visited(node_id)
        previous = self.outputs.get(node_id)
        if keep_history and previous is not None:
            self.output_history.setdefault(node_id, []).append(previous)
        self.outputs[node_id] = output
        if node_id not in self.completed_nodes:
            self.completed_nodes.append(node_id)
        self.last_succeeded = True

    def record_failure(self, node_id: str) -> None:
        self.mark_visited(node_id)
        self.last_succeeded = False

    def output_data(self, node_id: str) -> Optional[Dict[str, Any]]:
        output = self.outputs.get(node_id)
        return output.data if output else None

    @property
    def skipped_nodes(self) -> List[str]:
        completed = set(self.completed_nodes)
        return [node_id for node_id in self.visited_nodes if node_id not in completed]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "session_id": self.session_id,
            "user_id": self.user_id,
            "visited_nodes": list(self.visited_nodes),
            "completed_nodes": list(self.completed_nodes),
            "visit_sequence": list(self.visit_sequence),
            "outputs": {k: v.to_dict() for k, v in self.outputs.items()},
            "output_history": {
                k: [item.to_dict() for item in items]
                for k, items in self.output_history.items()
            },
            "current_node_id": self.current_node_id,
            "last_succeeded": self.last_succeeded,
            "conversation_id": self.conversation_id,
            "updated_at": self.updated_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowContext":
        return cls(
            session_id=data["session_id"],
            user_id=data.get("user_id"),
            visited_nodes=list(data.get("visited_nodes") or []),
            completed_nodes=list(data.get("completed_nodes") or []),
            visit_sequence=list(data.get("visit_sequence") or []),
            outputs={
                k: StageOutput.from_dict(v) for k, v in (data.get("outputs") or {}).items()
            },
            output_history={
                k: [StageOutput.from_dict(item) for item in items]
                for k, items in (data.get("output_history") or {}).items()
            },
            current_node_id=data.get("current_node_id"),
            last_succeeded=bool(data.get("last_succeeded", False)),
            conversation_id=data.get("conversation_id"),
            updated_at=_parse_timestamp(data.get("updated_at")),
        )


@dataclass
class SessionRecord:
    session_id: str
    user_id: Optional[str] = None
    started_at: datetime = field(default_factory=utcnow)
    ended_at: Optional[datetime] = None
    exit_node_id: Optional[str] = None
    exit_reason: Optional[str] = None
    satisfaction_score: Optional[int] = None
    user_feedback: Optional[str] = None

    @classmethod
    def new(cls, user_id: Optional[str] = None, session_id: Optional[str] = None) -> "SessionRecord":
        return cls(session_id=session_id or str(uuid.uuid4()), user_id=user_id)

    @property
    def is_open(self) -> bool:
        return self.ended_at is None

    @property
    def duration_seconds(self) -> Optional[float]:
        if self.ended_at is None:
            return None
        return max((self.ended_at - self.started_at).total_seconds(), 0.0)


@dataclass
class SessionStats:
    session_id: str
    visited_count: int
    completed_count: int
    skipped_nodes: List[str]
    visit_sequence: List[str]
    path_efficiency_score: float
    exit_node_id: Optional[str] = None
    exit_reason: Optional[str] = None
    duration_seconds: Optional[float] = None
    satisfaction_score: Optional[int] = None

    @classmethod
    def build(
        cls, context: WorkflowContext, record: Optional[SessionRecord] = None
    ) -> "SessionStats":
        visited = len(context.visited_nodes)
        completed = len(context.completed_nodes)
        efficiency = completed / visited if visited else 0.0
        return cls(
            session_id=context.session_id,
            visited_count=visited,
            completed_count=completed,
            skipped_nodes=context.skipped_nodes,
            visit_sequence=list(context.visit_sequence),
            path_efficiency_score=round(efficiency, 4),
            exit_node_id=record.exit_node_id if record else None,
            exit_reason=record.exit_reason if record else None,
            duration_seconds=record.duration_seconds if record else None,
            satisfaction_score=record.satisfaction_score if record else None,
        )


@dataclass
class NodeAggregate:
    node_id: str
    node_type: Optional[str] = None
    node_name: Optional[str] = None
    usage_count: int = 0
    success_count: int = 0
    failure_count: int = 0
    success_rate: float = 0.0
    session_count: int = 0
    user_count: int = 0
    avg_response_time_ms: float = 0.0
    p50_response_time_ms: float = 0.0
    p95_response_time_ms: float = 0.0
    p99_response_time_ms: float = 0.0
    like_count: int = 0
    dislike_count: int = 0
    adopt_count: int = 0
    edit_count: int = 0
    regenerate_count: int = 0
    adoption_rate: float = 0.0
    edit_rate: float = 0.0
    avg_content_length: float = 0.0
    processing: Dict[str, int] = field(default_factory=dict)


@dataclass
class DailyRollup:
    stat_date: date
    node_id: str
    node_type: Optional[str] = None
    usage_count: int = 0
    unique_users: int = 0
    avg_response_time_ms: float = 0.0
    success_rate: float = 0.0
    like_count: int = 0
    dislike_count: int = 0
    adopt_count: int = 0
    edit_count: int = 0
    regenerate_count: int = 0
    adoption_rate: float = 0.0
    edit_rate: float = 0.0
