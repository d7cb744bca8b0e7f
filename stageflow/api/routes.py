from __future__ import annotations

from dataclasses import asdict

from fastapi import APIRouter, Path, Query

from stageflow.api.schemas import (
    Envelope,
    SessionEndRequest,
    SessionStartRequest,
    StageExecuteRequest,
    UsageEventRequest,
)
from stageflow.logging import get_logger
from stageflow.service.errors import NotFoundError
from stageflow.service.runtime import get_runtime
from stageflow.storage.models import WorkflowContext

logger = get_logger(__name__)

router = APIRouter(prefix="/v1")

_ID_PATTERN = r"^[A-Za-z0-9_.:\-]{1,128}$"


def _require_context(session_id: str) -> WorkflowContext:
    runtime = get_runtime()
    context = runtime.store.get_context(session_id)
    if context is None:
        raise NotFoundError("session not found", detail={"session_id": session_id})
    return context


@router.get("/nodes", response_model=Envelope, tags=["workflow"])
async def list_nodes():
    runtime = get_runtime()
    return Envelope(status="ok", data={"nodes": runtime.graph.to_list()})


@router.post("/sessions", response_model=Envelope, status_code=201, tags=["sessions"])
async def start_session(body: SessionStartRequest):
    runtime = get_runtime()
    record = runtime.aggregator.start_session(session_id=body.session_id, user_id=body.user_id)
    return Envelope(status="ok", data=asdict(record))


@router.post(
    "/sessions/{session_id}/stages/{node_id}",
    response_model=Envelope,
    tags=["workflow"],
)
async def execute_stage(
    body: StageExecuteRequest,
    session_id: str = Path(..., pattern=_ID_PATTERN),
    node_id: str = Path(..., pattern=_ID_PATTERN),
):
    """Run one workflow node for the session and return its output.

    Failures are returned as error envelopes carrying the stable code of the
    failure kind (validation, transport, domain, already running, cancelled).
    """
    runtime = get_runtime()
    result = await runtime.executor.execute(
        session_id,
        node_id,
        body.inputs,
        user_id=body.user_id,
        conversation_id=body.conversation_id,
    )
    if not result.ok:
        raise result.error
    context = runtime.store.get_context(session_id)
    recommendations = (
        runtime.recommender.recommend(context, current_node_id=node_id) if context else []
    )
    return Envelope(
        status="ok",
        data={
            "node_id": node_id,
            "output": result.data,
            "attempts": result.attempts,
            "elapsed_ms": round(result.elapsed_ms, 2),
            "recommendations": [r.to_dict() for r in recommendations],
        },
    )


@router.post(
    "/sessions/{session_id}/stages/{node_id}/cancel",
    response_model=Envelope,
    tags=["workflow"],
)
async def cancel_stage(
    session_id: str = Path(..., pattern=_ID_PATTERN),
    node_id: str = Path(..., pattern=_ID_PATTERN),
):
    runtime = get_runtime()
    cancelled = runtime.executor.cancel(session_id, node_id)
    return Envelope(status="ok", data={"cancelled": cancelled})


@router.get("/sessions/{session_id}/recommendations", response_model=Envelope, tags=["workflow"])
async def recommend_next(
    session_id: str = Path(..., pattern=_ID_PATTERN),
    current_node_id: str | None = Query(None, max_length=128),
    rank: bool = Query(False, description="Sort by descending confidence"),
):
    runtime = get_runtime()
    context = _require_context(session_id)
    recommendations = runtime.recommender.recommend(
        context, current_node_id=current_node_id, rank=rank
    )
    return Envelope(
        status="ok",
        data={
            "current_node_id": current_node_id or context.current_node_id,
            "recommendations": [r.to_dict() for r in recommendations],
        },
    )


@router.get("/sessions/{session_id}/completeness", response_model=Envelope, tags=["workflow"])
async def workflow_completeness(session_id: str = Path(..., pattern=_ID_PATTERN)):
    runtime = get_runtime()
    context = _require_context(session_id)
    return Envelope(status="ok", data=runtime.recommender.completeness(context))


@router.get("/sessions/{session_id}/stats", response_model=Envelope, tags=["stats"])
async def session_stats(session_id: str = Path(..., pattern=_ID_PATTERN)):
    runtime = get_runtime()
    stats = runtime.aggregator.session_stats(session_id)
    return Envelope(status="ok", data=asdict(stats))


@router.post("/sessions/{session_id}/end", response_model=Envelope, tags=["sessions"])
async def end_session(body: SessionEndRequest, session_id: str = Path(..., pattern=_ID_PATTERN)):
    runtime = get_runtime()
    record = runtime.aggregator.end_session(
        session_id,
        exit_node_id=body.exit_node_id,
        exit_reason=body.exit_reason,
        satisfaction_score=body.satisfaction_score,
        user_feedback=body.user_feedback,
    )
    stats = runtime.aggregator.session_stats(session_id)
    return Envelope(status="ok", data={"session": asdict(record), "stats": asdict(stats)})


@router.post("/usage/events", response_model=Envelope, status_code=202, tags=["stats"])
async def record_usage_events(body: UsageEventRequest):
    """Accept usage events; malformed ones are counted as dropped, never rejected."""
    runtime = get_runtime()
    events = body.all_events()
    accepted = runtime.aggregator.record_many(events)
    return Envelope(
        status="ok",
        data={
            "accepted": accepted == len(events) and bool(events),
            "recorded": accepted,
            "dropped": len(events) - accepted,
        },
    )


@router.get("/stats/overview", response_model=Envelope, tags=["stats"])
async def stats_overview(days: int | None = Query(None, ge=1, le=365)):
    runtime = get_runtime()
    overview = runtime.aggregator.overview(days)
    overview["nodes"] = [asdict(node) for node in overview["nodes"]]
    return Envelope(status="ok", data=overview)


@router.get("/stats/daily", response_model=Envelope, tags=["stats"])
async def stats_daily(
    days: int | None = Query(None, ge=1, le=365),
    refresh: bool = Query(False, description="Persist the recomputed rollups"),
    stored: bool = Query(False, description="Read persisted rollups instead of recomputing"),
):
    runtime = get_runtime()
    if refresh:
        runtime.aggregator.refresh_daily_rollups(days)
    if stored:
        rollups = runtime.aggregator.stored_daily_rollups(days)
    else:
        rollups = runtime.aggregator.daily_rollups(days)
    return Envelope(status="ok", data={"rollups": [asdict(r) for r in rollups]})
