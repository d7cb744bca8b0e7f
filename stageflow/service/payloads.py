from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, Mapping, Optional

from stageflow.logging import get_logger
from stageflow.service.nodes import WorkflowNode
from stageflow.storage.models import Channel, WorkflowContext

logger = get_logger(__name__)

DEFAULT_PUBLISH_QUERY = "Generate publication-ready content from the draft"


@dataclass(frozen=True)
class StagePayload:
    """Request for one call to the stage endpoint."""

    channel: Channel
    body: Dict[str, Any] = field(default_factory=dict)
    api_key: Optional[str] = None
    node_id: Optional[str] = None


def _numbered(items: list) -> list[str]:
    lines = []
    for index, item in enumerate(items, start=1):
        if isinstance(item, Mapping):
            label = item.get("title") or item.get("content") or json.dumps(item, ensure_ascii=False)
        else:
            label = str(item)
        lines.append(f"{index}. {label}")
    return lines


def format_additional_information(inputs: Mapping[str, Any] | None) -> str:
    """Flatten packaging inputs into the free-text ``Additional_information`` field.

    Search results take priority, then a bare query and/or selected knowledge
    points. Anything else is rendered as indented JSON.
    """
    inputs = inputs or {}
    search = inputs.get("searchResults")
    if isinstance(search, Mapping):
        parts = []
        if search.get("query"):
            parts.append(f"Query: {search['query']}")
        results = search.get("results")
        if isinstance(results, list):
            parts.append("\n".join(["Search results:"] + _numbered(results)))
        if inputs.get("template"):
            parts.append(f"Packaging template: {inputs['template']}")
        text = "\n\n".join(parts).strip()
        return text or json.dumps(dict(inputs), ensure_ascii=False, default=str)

    if inputs.get("query") or inputs.get("selectedKnowledgePoints"):
        parts = []
        if inputs.get("query"):
            parts.append(f"Query: {inputs['query']}")
        points = inputs.get("selectedKnowledgePoints")
        if isinstance(points, list):
            parts.append("\n".join(["Related knowledge points:"] + _numbered(points)))
        text = "\n\n".join(parts).strip()
        return text or json.dumps(dict(inputs), ensure_ascii=False, default=str)

    return json.dumps(dict(inputs), ensure_ascii=False, indent=2, default=str)


def output_text(data: Optional[Mapping[str, Any]]) -> Optional[str]:
    """Best-effort text of a stored stage output (chat answer or workflow outputs)."""
    if not data:
        return None
    answer = data.get("answer")
    if isinstance(answer, str) and answer:
        return answer
    outputs = data.get("outputs")
    if isinstance(outputs, Mapping):
        for key in ("text", "result", "output"):
            value = outputs.get(key)
            if isinstance(value, str) and value:
                return value
        if outputs:
            return json.dumps(dict(outputs), ensure_ascii=False, default=str)
    return None


def _as_text(value: Any) -> str:
    if isinstance(value, str):
        return value
    return json.dumps(value, ensure_ascii=False, default=str)


def _upstream(node: WorkflowNode, context: Optional[WorkflowContext]) -> Optional[str]:
    if context is None:
        return None
    for dep in reversed(node.dependencies):
        text = output_text(context.output_data(dep))
        if text:
            return text
    return None


def build_search_payload(
    node: WorkflowNode, inputs: Dict[str, Any], context: Optional[WorkflowContext]
) -> StagePayload:
    extra = {k: v for k, v in inputs.items() if k != "query"}
    body = {
        "query": inputs["query"],
        "inputs": extra,
        "conversation_id": (context.conversation_id if context else None) or "",
        "files": [],
    }
    return StagePayload(channel=Channel.CHAT, body=body, node_id=node.id)


def build_package_payload(
    node: WorkflowNode, inputs: Dict[str, Any], context: Optional[WorkflowContext]
) -> StagePayload:
    merged = dict(inputs)
    if not merged.get("searchResults") and not merged.get("query"):
        upstream = _upstream(node, context)
        if upstream:
            merged["searchResults"] = {"results": [{"content": upstream}]}
    body = {"inputs": {"Additional_information": format_additional_information(merged)}}
    return StagePayload(channel=Channel.WORKFLOW, body=body, node_id=node.id)


def build_strategy_payload(
    node: WorkflowNode, inputs: Dict[str, Any], context: Optional[WorkflowContext]
) -> StagePayload:
    merged = dict(inputs)
    if merged.get("techPackage") is None:
        upstream = _upstream(node, context)
        if upstream:
            merged["techPackage"] = upstream
    if merged.get("techPackage") is not None:
        merged["techPackage"] = _as_text(merged["techPackage"])
    return StagePayload(channel=Channel.WORKFLOW, body={"inputs": merged}, node_id=node.id)


def build_draft_payload(
    node: WorkflowNode, inputs: Dict[str, Any], context: Optional[WorkflowContext]
) -> StagePayload:
    strategy = inputs.get("promotionStrategy")
    if strategy is None:
        strategy = _upstream(node, context)
    strategy_text = _as_text(strategy) if strategy is not None else ""
    formatted = {
        "input": strategy_text,
        "input3": strategy_text,
        "promotionStrategy": strategy,
        "template": inputs.get("template") or "default",
    }
    if inputs.get("contentType"):
        formatted["contentType"] = inputs["contentType"]
    return StagePayload(channel=Channel.WORKFLOW, body={"inputs": formatted}, node_id=node.id)


def build_publish_payload(
    node: WorkflowNode, inputs: Dict[str, Any], context: Optional[WorkflowContext]
) -> StagePayload:
    query = inputs.get("sys.query") or inputs.get("query") or DEFAULT_PUBLISH_QUERY
    additional = inputs.get("Additional_information") or _upstream(node, context) or ""
    body = {
        "query": query,
        "inputs": {"Additional_information": _as_text(additional)},
        "conversation_id": (context.conversation_id if context else None) or "",
        "files": [],
    }
    return StagePayload(channel=Channel.CHAT, body=body, node_id=node.id)


def build_generic_payload(
    node: WorkflowNode, inputs: Dict[str, Any], context: Optional[WorkflowContext]
) -> StagePayload:
    if node.channel is Channel.CHAT:
        body = {
            "query": str(inputs.get("query") or ""),
            "inputs": dict(inputs),
            "conversation_id": (context.conversation_id if context else None) or "",
            "files": [],
        }
    else:
        body = {"inputs": dict(inputs)}
    return StagePayload(channel=node.channel, body=body, node_id=node.id)


PayloadBuilder = Callable[
    [WorkflowNode, Dict[str, Any], Optional[WorkflowContext]], StagePayload
]

PAYLOAD_BUILDERS: Dict[str, PayloadBuilder] = {
    "search": build_search_payload,
    "package": build_package_payload,
    "strategy": build_strategy_payload,
    "draft": build_draft_payload,
    "publish": build_publish_payload,
}


def build_payload(
    node: WorkflowNode,
    inputs: Dict[str, Any],
    context: Optional[WorkflowContext] = None,
    *,
    api_key: Optional[str] = None,
) -> StagePayload:
    """Build the request for ``node`` from caller inputs merged over node defaults."""
    merged = {**dict(node.default_values), **{k: v for k, v in inputs.items() if v is not None}}
    builder = PAYLOAD_BUILDERS.get(node.type, build_generic_payload)
    payload = builder(node, merged, context)
    if api_key:
        payload = StagePayload(
            channel=payload.channel, body=payload.body, api_key=api_key, node_id=node.id
        )
    logger.debug("stage_payload_built", node_id=node.id, channel=payload.channel.value)
    return payload
