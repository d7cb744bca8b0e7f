from __future__ import annotations

import copy
import threading
from datetime import date, datetime
from typing import Callable, Dict, List, Optional, Tuple

from stageflow.logging import get_logger
from stageflow.storage.errors import ConstraintViolation
from stageflow.storage.models import (
    DailyRollup,
    SessionRecord,
    UsageEvent,
    WorkflowContext,
)


class MemoryStore:
    """In-memory backing store for tests and single-process deployments.

    Usage events live in an append-only log per ``(node_id, session_id)``;
    sessions, contexts and daily rollups are plain dictionaries. Every read
    returns a copy so callers cannot mutate stored state without going
    through the store.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.sessions: Dict[str, SessionRecord] = {}
        self.contexts: Dict[str, WorkflowContext] = {}
        self.events: Dict[Tuple[str, str], List[UsageEvent]] = {}
        self.event_ids: set[str] = set()
        self.daily_rollups: Dict[Tuple[date, str], DailyRollup] = {}
        self._data_lock = threading.RLock()

    # Sessions ---------------------------------------------------------------

    def create_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if record.session_id in self.sessions:
                raise ConstraintViolation(
                    "session already exists", {"session_id": record.session_id}
                )
            self.sessions[record.session_id] = copy.deepcopy(record)
            self.contexts.setdefault(
                record.session_id,
                WorkflowContext(session_id=record.session_id, user_id=record.user_id),
            )
        self.logger.info("session_created", session_id=record.session_id)
        return copy.deepcopy(record)

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._data_lock:
            record = self.sessions.get(session_id)
            return copy.deepcopy(record) if record else None

    def update_session(self, record: SessionRecord) -> SessionRecord:
        with self._data_lock:
            if record.session_id not in self.sessions:
                raise ConstraintViolation(
                    "session not found", {"session_id": record.session_id}
                )
            self.sessions[record.session_id] = copy.deepcopy(record)
            return copy.deepcopy(record)

    def list_sessions(self, since: Optional[datetime] = None) -> List[SessionRecord]:
        with self._data_lock:
            records = [
                copy.deepcopy(r)
                for r in self.sessions.values()
                if since is None or r.started_at >= since
            ]
        return sorted(records, key=lambda r: r.started_at)

    # Workflow contexts ------------------------------------------------------

    def get_context(self, session_id: str) -> Optional[WorkflowContext]:
        with self._data_lock:
            context = self.contexts.get(session_id)
            return copy.deepcopy(context) if context else None

    def update_context(
        self, session_id: str, mutate: Callable[[WorkflowContext], None]
    ) -> WorkflowContext:
        """Apply ``mutate`` to the stored context atomically, creating it if absent."""
        with self._data_lock:
            context = self.contexts.get(session_id)
            if context is None:
                context = WorkflowContext(session_id=session_id)
                self.contexts[session_id] = context
            mutate(context)
            return copy.deepcopy(context)

    # Usage events -----------------------------------------------------------

    def append_event(self, event: UsageEvent) -> UsageEvent:
        with self._data_lock:
            if event.id in self.event_ids:
                raise ConstraintViolation("duplicate usage event", {"event_id": event.id})
            self.event_ids.add(event.id)
            self.events.setdefault((event.node_id, event.session_id), []).append(event)
        return event

    def list_events(
        self,
        *,
        since: Optional[datetime] = None,
        node_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> List[UsageEvent]:
        with self._data_lock:
            matched = [
                event
                for (event_node, event_session), log in self.events.items()
                if (node_id is None or event_node == node_id)
                and (session_id is None or event_session == session_id)
                for event in log
                if since is None or event.timestamp >= since
            ]
        return sorted(matched, key=lambda e: e.timestamp)

    # Daily rollups ----------------------------------------------------------

    def upsert_daily_rollups(self, rollups: List[DailyRollup]) -> int:
        with self._data_lock:
            for rollup in rollups:
                self.daily_rollups[(rollup.stat_date, rollup.node_id)] = copy.deepcopy(rollup)
        return len(rollups)

    def list_daily_rollups(self, since: Optional[date] = None) -> List[DailyRollup]:
        with self._data_lock:
            rows = [
                copy.deepcopy(r)
                for (stat_date, _), r in self.daily_rollups.items()
                if since is None or stat_date >= since
            ]
        return sorted(rows, key=lambda r: (r.stat_date, r.node_id))

    def verify_connection(self) -> None:
        """Memory store has no external dependency."""
