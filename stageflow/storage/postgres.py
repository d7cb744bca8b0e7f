from __future__ import annotations

import json
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from stageflow.logging import get_logger
from stageflow.storage.errors import ConstraintViolation, StoreUnavailable
from stageflow.storage.models import (
    DailyRollup,
    SessionRecord,
    UsageEvent,
    WorkflowContext,
)

REQUIRED_TABLES = (
    "workflow_session",
    "workflow_context",
    "usage_event",
    "node_daily_rollup",
)


class PostgresStore:
    """Postgres-backed store using a psycopg connection pool.

    Schema provisioning happens outside the service; startup only verifies
    that the expected tables exist.
    """

    def __init__(self, dsn: str) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=1,
            max_size=10,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self._verify_required_schema()

    def _connect(self):
        return self.pool.connection()

    def _verify_required_schema(self) -> None:
        with self._connect() as conn:
            missing_tables = []
            for table in REQUIRED_TABLES:
                row = conn.execute(
                    "SELECT to_regclass(%s) AS oid", (f"public.{table}",)
                ).fetchone()
                if not row or not row.get("oid"):
                    missing_tables.append(table)

            if missing_tables:
                raise RuntimeError(
                    "Missing required Postgres tables: {}".format(
                        ", ".join(sorted(missing_tables))
                    )
                )

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # Row mapping ------------------------------------------------------------

    @staticmethod
    def _session_from_row(row: Dict[str, Any]) -> SessionRecord:
        return SessionRecord(
            session_id=row["session_id"],
            user_id=row.get("user_id"),
            started_at=row["started_at"],
            ended_at=row.get("ended_at"),
            exit_node_id=row.get("exit_node_id"),
            exit_reason=row.get("exit_reason"),
            satisfaction_score=row.get("satisfaction_score"),
            user_feedback=row.get("user_feedback"),
        )

    @staticmethod
    def _event_from_row(row: Dict[str, Any]) -> UsageEvent:
        return UsageEvent(
            id=str(row["id"]),
            node_id=row["node_id"],
            session_id=row["session_id"],
            kind=row["kind"],
            value=row.get("value"),
            feedback=row.get("feedback"),
            processing=row.get("processing"),
            outcome=row.get("outcome"),
            user_id=row.get("user_id"),
            node_type=row.get("node_type"),
            node_name=row.get("node_name"),
            message_id=row.get("message_id"),
            timestamp=row["created_at"],
        )

    @staticmethod
    def _rollup_from_row(row: Dict[str, Any]) -> DailyRollup:
        return DailyRollup(
            stat_date=row["stat_date"],
            node_id=row["node_id"],
            node_type=row.get("node_type"),
            usage_count=row.get("usage_count") or 0,
            unique_users=row.get("unique_users") or 0,
            avg_response_time_ms=float(row.get("avg_response_time_ms") or 0.0),
            success_rate=float(row.get("success_rate") or 0.0),
            like_count=row.get("like_count") or 0,
            dislike_count=row.get("dislike_count") or 0,
            adopt_count=row.get("adopt_count") or 0,
            edit_count=row.get("edit_count") or 0,
            regenerate_count=row.get("regenerate_count") or 0,
            adoption_rate=float(row.get("adoption_rate") or 0.0),
            edit_rate=float(row.get("edit_rate") or 0.0),
        )

    # Sessions ---------------------------------------------------------------

    def create_session(self, record: SessionRecord) -> SessionRecord:
        empty_context = WorkflowContext(session_id=record.session_id, user_id=record.user_id)
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO workflow_session (session_id, user_id, started_at)
                    VALUES (%s, %s, %s)
                    """,
                    (record.session_id, record.user_id, record.started_at),
                )
                conn.execute(
                    """
                    INSERT INTO workflow_context (session_id, state, updated_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (session_id) DO NOTHING
                    """,
                    (record.session_id, json.dumps(empty_context.to_dict()), empty_context.updated_at),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation(
                "session already exists", {"session_id": record.session_id}
            ) from exc
        self.logger.info("session_created", session_id=record.session_id)
        return record

    def get_session(self, session_id: str) -> Optional[SessionRecord]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT * FROM workflow_session WHERE session_id = %s", (session_id,)
            ).fetchone()
        return self._session_from_row(row) if row else None

    def update_session(self, record: SessionRecord) -> SessionRecord:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE workflow_session
                SET ended_at = %s, exit_node_id = %s, exit_reason = %s,
                    satisfaction_score = %s, user_feedback = %s
                WHERE session_id = %s
                """,
                (
                    record.ended_at,
                    record.exit_node_id,
                    record.exit_reason,
                    record.satisfaction_score,
                    record.user_feedback,
                    record.session_id,
                ),
            )
            if cur.rowcount == 0:
                raise ConstraintViolation(
                    "session not found", {"session_id": record.session_id}
                )
        return record

    def list_sessions(self, since: Optional[datetime] = None) -> List[SessionRecord]:
        with self._connect() as conn:
            if since is None:
                rows = conn.execute(
                    "SELECT * FROM workflow_session ORDER BY started_at"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM workflow_session WHERE started_at >= %s ORDER BY started_at",
                    (since,),
                ).fetchall()
        return [self._session_from_row(row) for row in rows]

    # Workflow contexts ------------------------------------------------------

    def get_context(self, session_id: str) -> Optional[WorkflowContext]:
        with self._connect() as conn:
            row = conn.execute(
                "SELECT state FROM workflow_context WHERE session_id = %s", (session_id,)
            ).fetchone()
        if not row:
            return None
        state = row["state"]
        if isinstance(state, str):
            state = json.loads(state)
        return WorkflowContext.from_dict(state)

    def update_context(
        self, session_id: str, mutate: Callable[[WorkflowContext], None]
    ) -> WorkflowContext:
        """Read-modify-write the context under a row lock."""
        with self._connect() as conn:
            with conn.transaction():
                row = conn.execute(
                    "SELECT state FROM workflow_context WHERE session_id = %s FOR UPDATE",
                    (session_id,),
                ).fetchone()
                if row:
                    state = row["state"]
                    if isinstance(state, str):
                        state = json.loads(state)
                    context = WorkflowContext.from_dict(state)
                else:
                    context = WorkflowContext(session_id=session_id)
                mutate(context)
                conn.execute(
                    """
                    INSERT INTO workflow_context (session_id, state, updated_at)
                    VALUES (%s, %s, %s)
                    ON CONFLICT (session_id) DO UPDATE SET state = EXCLUDED.state, updated_at = EXCLUDED.updated_at
                    """,
                    (session_id, json.dumps(context.to_dict()), context.updated_at),
                )
        return context

    # Usage events -----------------------------------------------------------

    def append_event(self, event: UsageEvent) -> UsageEvent:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO usage_event (
                        id, node_id, session_id, kind, value, feedback, processing, outcome,
                        user_id, node_type, node_name, message_id, created_at
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    """,
                    (
                        event.id,
                        event.node_id,
                        event.session_id,
                        event.kind.value,
                        event.value,
                        event.feedback.value if event.feedback else None,
                        event.processing.value if event.processing else None,
                        event.outcome.value if event.outcome else None,
                        event.user_id,
                        event.node_type,
                        event.node_name,
                        event.message_id,
                        event.timestamp,
                    ),
                )
        except errors.UniqueViolation as exc:
            raise ConstraintViolation("duplicate usage event", {"event_id": event.id}) from exc
        except errors.Error as exc:
            raise StoreUnavailable(
                "usage event write failed", {"event_id": event.id, "error": type(exc).__name__}
            ) from exc
        return event

    def list_events(
        self,
        *,
        since: Optional[datetime] = None,
        node_id: Optional[str] = None,
        session_id: Optional[str] = None,
    ) -> List[UsageEvent]:
        clauses: List[str] = []
        params: List[Any] = []
        if since is not None:
            clauses.append("created_at >= %s")
            params.append(since)
        if node_id is not None:
            clauses.append("node_id = %s")
            params.append(node_id)
        if session_id is not None:
            clauses.append("session_id = %s")
            params.append(session_id)
        where = f"WHERE {' AND '.join(clauses)}" if clauses else ""
        with self._connect() as conn:
            rows = conn.execute(
                f"SELECT * FROM usage_event {where} ORDER BY created_at", params
            ).fetchall()
        return [self._event_from_row(row) for row in rows]

    # Daily rollups ----------------------------------------------------------

    def upsert_daily_rollups(self, rollups: List[DailyRollup]) -> int:
        if not rollups:
            return 0
        with self._connect() as conn:
            with conn.cursor() as cur:
                cur.executemany(
                    """
                    INSERT INTO node_daily_rollup (
                        stat_date, node_id, node_type, usage_count, unique_users,
                        avg_response_time_ms, success_rate, like_count, dislike_count,
                        adopt_count, edit_count, regenerate_count, adoption_rate, edit_rate
                    )
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    ON CONFLICT (stat_date, node_id) DO UPDATE SET
                        node_type = EXCLUDED.node_type,
                        usage_count = EXCLUDED.usage_count,
                        unique_users = EXCLUDED.unique_users,
                        avg_response_time_ms = EXCLUDED.avg_response_time_ms,
                        success_rate = EXCLUDED.success_rate,
                        like_count = EXCLUDED.like_count,
                        dislike_count = EXCLUDED.dislike_count,
                        adopt_count = EXCLUDED.adopt_count,
                        edit_count = EXCLUDED.edit_count,
                        regenerate_count = EXCLUDED.regenerate_count,
                        adoption_rate = EXCLUDED.adoption_rate,
                        edit_rate = EXCLUDED.edit_rate
                    """,
                    [
                        (
                            r.stat_date,
                            r.node_id,
                            r.node_type,
                            r.usage_count,
                            r.unique_users,
                            r.avg_response_time_ms,
                            r.success_rate,
                            r.like_count,
                            r.dislike_count,
                            r.adopt_count,
                            r.edit_count,
                            r.regenerate_count,
                            r.adoption_rate,
                            r.edit_rate,
                        )
                        for r in rollups
                    ],
                )
        return len(rollups)

    def list_daily_rollups(self, since: Optional[date] = None) -> List[DailyRollup]:
        with self._connect() as conn:
            if since is None:
                rows = conn.execute(
                    "SELECT * FROM node_daily_rollup ORDER BY stat_date, node_id"
                ).fetchall()
            else:
                rows = conn.execute(
                    "SELECT * FROM node_daily_rollup WHERE stat_date >= %s ORDER BY stat_date, node_id",
                    (since,),
                ).fetchall()
        return [self._rollup_from_row(row) for row in rows]
