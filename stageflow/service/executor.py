from __future__ import annotations

import asyncio
import threading
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple

from stageflow.logging import get_logger
from stageflow.service.errors import (
    AlreadyRunning,
    ConfigError,
    ServiceError,
    ValidationError,
)
from stageflow.service.gateway import StepGateway
from stageflow.service.nodes import NodeGraph, WorkflowNode
from stageflow.service.payloads import build_payload, output_text
from stageflow.service.result import StageResult
from stageflow.storage.errors import ConstraintViolation
from stageflow.storage.models import (
    EventKind,
    Outcome,
    SessionRecord,
    StageOutput,
    UsageEvent,
    WorkflowContext,
)

logger = get_logger(__name__)


class RunState(str, Enum):
    IDLE = "idle"
    VALIDATING = "validating"
    EXECUTING = "executing"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


_TRANSITIONS = {
    RunState.IDLE: {RunState.VALIDATING},
    RunState.VALIDATING: {RunState.EXECUTING, RunState.FAILED},
    RunState.EXECUTING: {RunState.SUCCEEDED, RunState.FAILED},
}


@dataclass
class StageRun:
    """One execution of a node for a session; terminal states are final."""

    session_id: str
    node_id: str
    state: RunState = RunState.IDLE
    token: str = field(default_factory=lambda: uuid.uuid4().hex)
    started: float = field(default_factory=time.perf_counter)
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)

    @property
    def key(self) -> Tuple[str, str]:
        return (self.session_id, self.node_id)

    @property
    def terminal(self) -> bool:
        return self.state in (RunState.SUCCEEDED, RunState.FAILED)

    @property
    def elapsed_ms(self) -> float:
        return (time.perf_counter() - self.started) * 1000

    def advance(self, new_state: RunState) -> None:
        allowed = _TRANSITIONS.get(self.state, set())
        if new_state not in allowed:
            raise RuntimeError(
                f"illegal stage transition {self.state.value} -> {new_state.value}"
            )
        self.state = new_state


class InflightRegistry:
    """Tracks which (session, node) pairs have an execution in flight.

    The in-process table is authoritative for one worker; when a Redis cache
    is supplied the marker is also taken there so other workers observe it.
    """

    def __init__(self, cache=None, *, ttl_seconds: int = 300) -> None:
        self.cache = cache
        self.ttl_seconds = ttl_seconds
        self._runs: Dict[Tuple[str, str], StageRun] = {}
        self._lock = threading.Lock()

    async def acquire(self, run: StageRun) -> bool:
        with self._lock:
            if run.key in self._runs:
                return False
            self._runs[run.key] = run
        if self.cache is None:
            return True
        try:
            acquired = await self.cache.acquire_inflight(
                run.session_id, run.node_id, run.token, self.ttl_seconds
            )
        except Exception as exc:
            logger.warning(
                "inflight_cache_unavailable",
                session_id=run.session_id,
                node_id=run.node_id,
                error=str(exc),
            )
            return True
        if not acquired:
            with self._lock:
                self._runs.pop(run.key, None)
        return bool(acquired)

    async def release(self, run: StageRun) -> None:
        with self._lock:
            if self._runs.get(run.key) is run:
                del self._runs[run.key]
        if self.cache is None:
            return
        try:
            await self.cache.release_inflight(run.session_id, run.node_id, run.token)
        except Exception as exc:
            # The marker expires on its own after ttl_seconds
            logger.warning(
                "inflight_release_failed",
                session_id=run.session_id,
                node_id=run.node_id,
                error=str(exc),
            )

    def get(self, session_id: str, node_id: str) -> Optional[StageRun]:
        with self._lock:
            return self._runs.get((session_id, node_id))

    def active(self) -> List[Tuple[str, str]]:
        with self._lock:
            return list(self._runs)


def _is_blank(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    if isinstance(value, (list, tuple, dict, set)):
        return len(value) == 0
    return False


class StageExecutor:
    """Runs one workflow node for a session against the stage endpoint.

    Each call walks ``idle -> validating -> executing -> succeeded|failed``.
    Validation failures never reach the network and leave the context
    untouched. Successful outputs overwrite any earlier output for the node.
    Usage events are emitted after every executed call; failures to record
    them are logged and never affect the returned result.
    """

    def __init__(
        self,
        graph: NodeGraph,
        gateway: StepGateway,
        store,
        *,
        aggregator=None,
        registry: Optional[InflightRegistry] = None,
        api_keys: Optional[Mapping[str, str]] = None,
        keep_history: bool = False,
    ) -> None:
        self.graph = graph
        self.gateway = gateway
        self.store = store
        self.aggregator = aggregator
        self.registry = registry or InflightRegistry()
        self.api_keys = dict(api_keys or {})
        self.keep_history = keep_history

    def _validate(
        self, node: WorkflowNode, inputs: Mapping[str, Any], context: Optional[WorkflowContext]
    ) -> Optional[ServiceError]:
        for name in node.required_inputs:
            if _is_blank(inputs.get(name)):
                return ValidationError(
                    f"missing required input '{name}'",
                    detail={"node_id": node.id, "field": name},
                )
        if not node.can_start_independently and node.dependencies:
            completed = set(context.completed_nodes) if context else set()
            pending = [dep for dep in node.dependencies if dep not in completed]
            if pending:
                return ValidationError(
                    f"node '{node.id}' requires completed dependencies",
                    detail={"node_id": node.id, "pending": pending},
                )
        return None

    def _ensure_session(self, session_id: str, user_id: Optional[str]) -> None:
        if self.store.get_session(session_id) is not None:
            return
        try:
            self.store.create_session(SessionRecord.new(user_id=user_id, session_id=session_id))
        except ConstraintViolation:
            # Created concurrently by another execution
            pass

    async def execute(
        self,
        session_id: str,
        node_id: str,
        inputs: Optional[Mapping[str, Any]] = None,
        *,
        user_id: Optional[str] = None,
        conversation_id: Optional[str] = None,
    ) -> StageResult:
        try:
            node = self.graph.require(node_id)
        except ConfigError as exc:
            return StageResult.failure(exc)

        run = StageRun(session_id=session_id, node_id=node.id)
        if not await self.registry.acquire(run):
            logger.info("stage_already_running", session_id=session_id, node_id=node.id)
            return StageResult.failure(
                AlreadyRunning(
                    f"node '{node.id}' is already running for this session",
                    detail={"session_id": session_id, "node_id": node.id},
                )
            )

        try:
            run.advance(RunState.VALIDATING)
            merged = {**dict(node.default_values), **dict(inputs or {})}
            context = self.store.get_context(session_id)
            error = self._validate(node, merged, context)
            if error is not None:
                run.advance(RunState.FAILED)
                logger.info(
                    "stage_validation_failed",
                    session_id=session_id,
                    node_id=node.id,
                    error=error.message,
                )
                return StageResult.failure(error, elapsed_ms=run.elapsed_ms)

            run.advance(RunState.EXECUTING)
            self._ensure_session(session_id, user_id)
            if context is None:
                context = WorkflowContext(session_id=session_id, user_id=user_id)
            if conversation_id:
                context.conversation_id = conversation_id
            payload = build_payload(node, merged, context, api_key=self.api_keys.get(node.id))
            result = await self.gateway.execute(payload, cancel_event=run.cancel_event)
            result = result.with_elapsed(run.elapsed_ms)

            if result.ok:
                output = StageOutput(
                    node_id=node.id,
                    data=result.data or {},
                    attempts=result.attempts,
                    elapsed_ms=result.elapsed_ms,
                )

                def apply(ctx: WorkflowContext) -> None:
                    ctx.user_id = ctx.user_id or user_id
                    returned = (result.data or {}).get("conversation_id")
                    if returned or conversation_id:
                        ctx.conversation_id = returned or conversation_id
                    ctx.record_success(node.id, output, keep_history=self.keep_history)

                self.store.update_context(session_id, apply)
                run.advance(RunState.SUCCEEDED)
            else:
                self.store.update_context(session_id, lambda ctx: ctx.record_failure(node.id))
                run.advance(RunState.FAILED)

            logger.info(
                "stage_executed",
                session_id=session_id,
                node_id=node.id,
                state=run.state.value,
                attempts=result.attempts,
                elapsed_ms=round(result.elapsed_ms, 2),
                error_code=result.error_code,
            )
            self._emit_usage(node, session_id, user_id, result)
            return result
        finally:
            await self.registry.release(run)

    def cancel(self, session_id: str, node_id: str) -> bool:
        """Signal an in-flight execution to stop; False when nothing is running."""
        run = self.registry.get(session_id, node_id)
        if run is None or run.terminal:
            return False
        run.cancel_event.set()
        logger.info("stage_cancel_requested", session_id=session_id, node_id=node_id)
        return True

    def _emit_usage(
        self,
        node: WorkflowNode,
        session_id: str,
        user_id: Optional[str],
        result: StageResult,
    ) -> None:
        if self.aggregator is None:
            return
        base = {
            "node_id": node.id,
            "session_id": session_id,
            "user_id": user_id,
            "node_type": node.type,
            "node_name": node.name,
        }
        try:
            events = [
                UsageEvent(
                    kind=EventKind.USAGE,
                    outcome=Outcome.SUCCESS if result.ok else Outcome.FAILURE,
                    **base,
                ),
                UsageEvent(kind=EventKind.RESPONSE_TIME, value=result.elapsed_ms, **base),
            ]
            if result.ok:
                text = output_text(result.data)
                if text:
                    events.append(
                        UsageEvent(
                            kind=EventKind.CONTENT_LENGTH,
                            value=len(text),
                            message_id=(result.data or {}).get("message_id"),
                            **base,
                        )
                    )
            self.aggregator.record_many(events)
        except Exception as exc:
            logger.error(
                "usage_emit_failed",
                session_id=session_id,
                node_id=node.id,
                error_type=type(exc).__name__,
                error=str(exc),
            )
