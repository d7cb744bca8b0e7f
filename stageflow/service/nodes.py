from __future__ import annotations

import json
from dataclasses import dataclass, field
from pathlib import Path
from types import MappingProxyType
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Tuple

from stageflow.logging import get_logger
from stageflow.service.errors import ConfigError
from stageflow.storage.models import Channel

logger = get_logger(__name__)


@dataclass(frozen=True)
class WorkflowNode:
    """Static definition of one stage in the content pipeline."""

    id: str
    name: str
    type: str
    channel: Channel
    dependencies: Tuple[str, ...] = ()
    required_inputs: Tuple[str, ...] = ()
    optional_inputs: Tuple[str, ...] = ()
    default_values: Mapping[str, Any] = field(
        default_factory=lambda: MappingProxyType({}), hash=False
    )
    next_steps: Tuple[str, ...] = ()
    can_start_independently: bool = True
    description: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "WorkflowNode":
        try:
            node_id = str(data["id"])
            channel = Channel(data.get("channel", Channel.WORKFLOW.value))
        except KeyError as exc:
            raise ConfigError("node definition missing 'id'") from exc
        except ValueError as exc:
            raise ConfigError(
                f"node '{data.get('id')}' has invalid channel '{data.get('channel')}'"
            ) from exc
        return cls(
            id=node_id,
            name=str(data.get("name") or node_id),
            type=str(data.get("type") or node_id),
            channel=channel,
            dependencies=tuple(data.get("dependencies") or ()),
            required_inputs=tuple(data.get("required_inputs") or ()),
            optional_inputs=tuple(data.get("optional_inputs") or ()),
            default_values=MappingProxyType(dict(data.get("default_values") or {})),
            next_steps=tuple(data.get("next_steps") or ()),
            can_start_independently=bool(data.get("can_start_independently", True)),
            description=str(data.get("description") or ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "type": self.type,
            "channel": self.channel.value,
            "dependencies": list(self.dependencies),
            "required_inputs": list(self.required_inputs),
            "optional_inputs": list(self.optional_inputs),
            "default_values": dict(self.default_values),
            "next_steps": list(self.next_steps),
            "can_start_independently": self.can_start_independently,
            "description": self.description,
        }


DEFAULT_NODES: Tuple[Dict[str, Any], ...] = (
    {
        "id": "ai_search",
        "name": "AI Search",
        "type": "search",
        "channel": "chat",
        "description": "Ask the assistant for background material on a topic",
        "required_inputs": ["query"],
        "optional_inputs": ["selectedKnowledgePoints"],
        "next_steps": ["tech_package", "tech_strategy"],
    },
    {
        "id": "tech_package",
        "name": "Technology Packaging",
        "type": "package",
        "channel": "workflow",
        "description": "Package search results into a technology brief",
        "dependencies": ["ai_search"],
        "optional_inputs": ["searchResults", "template", "query", "selectedKnowledgePoints"],
        "default_values": {"template": "default"},
        "next_steps": ["tech_strategy", "core_draft"],
    },
    {
        "id": "tech_strategy",
        "name": "Promotion Strategy",
        "type": "strategy",
        "channel": "workflow",
        "description": "Derive a promotion strategy from the packaged brief",
        "dependencies": ["tech_package"],
        "optional_inputs": ["techPackage", "targetAudience"],
        "next_steps": ["core_draft"],
    },
    {
        "id": "core_draft",
        "name": "Core Draft",
        "type": "draft",
        "channel": "workflow",
        "description": "Write the core article draft",
        "dependencies": ["tech_strategy"],
        "optional_inputs": ["promotionStrategy", "template", "contentType"],
        "default_values": {"template": "default"},
        "next_steps": ["tech_publish"],
    },
    {
        "id": "tech_publish",
        "name": "Publication",
        "type": "publish",
        "channel": "chat",
        "description": "Produce publication-ready copy from the draft",
        "dependencies": ["core_draft"],
        "optional_inputs": ["query", "Additional_information"],
        "next_steps": [],
    },
)


class NodeGraph:
    """Read-only, validated set of workflow nodes."""

    def __init__(self, nodes: Iterable[WorkflowNode]) -> None:
        ordered: Dict[str, WorkflowNode] = {}
        for node in nodes:
            if node.id in ordered:
                raise ConfigError(f"duplicate node id '{node.id}'")
            ordered[node.id] = node
        self._nodes: Mapping[str, WorkflowNode] = MappingProxyType(ordered)
        self._validate()

    def _validate(self) -> None:
        for node in self._nodes.values():
            for dep in node.dependencies:
                if dep not in self._nodes:
                    raise ConfigError(
                        f"node '{node.id}' depends on unknown node '{dep}'",
                        detail={"node_id": node.id, "dependency": dep},
                    )
                if dep == node.id:
                    raise ConfigError(f"node '{node.id}' depends on itself")
            for step in node.next_steps:
                if step not in self._nodes:
                    raise ConfigError(
                        f"node '{node.id}' lists unknown next step '{step}'",
                        detail={"node_id": node.id, "next_step": step},
                    )
        self._check_acyclic()

    def _check_acyclic(self) -> None:
        visiting: set[str] = set()
        done: set[str] = set()

        def visit(node_id: str, path: List[str]) -> None:
            if node_id in done:
                return
            if node_id in visiting:
                cycle = path[path.index(node_id):] + [node_id]
                raise ConfigError(
                    "dependency cycle detected", detail={"cycle": cycle}
                )
            visiting.add(node_id)
            for dep in self._nodes[node_id].dependencies:
                visit(dep, path + [node_id])
            visiting.discard(node_id)
            done.add(node_id)

        for node_id in self._nodes:
            visit(node_id, [])

    def __iter__(self) -> Iterator[WorkflowNode]:
        return iter(self._nodes.values())

    def __len__(self) -> int:
        return len(self._nodes)

    def __contains__(self, node_id: object) -> bool:
        return node_id in self._nodes

    @property
    def ids(self) -> List[str]:
        return list(self._nodes)

    def get(self, node_id: str) -> Optional[WorkflowNode]:
        return self._nodes.get(node_id)

    def require(self, node_id: str) -> WorkflowNode:
        node = self._nodes.get(node_id)
        if node is None:
            raise ConfigError(
                f"unknown node '{node_id}'", status_code=404, detail={"node_id": node_id}
            )
        return node

    def to_list(self) -> List[Dict[str, Any]]:
        return [node.to_dict() for node in self._nodes.values()]


def default_graph() -> NodeGraph:
    return NodeGraph(WorkflowNode.from_dict(item) for item in DEFAULT_NODES)


def load_graph(path: Optional[str] = None) -> NodeGraph:
    """Load the node graph from a JSON file, or the built-in pipeline."""
    if not path:
        return default_graph()
    graph_path = Path(path)
    try:
        raw = json.loads(graph_path.read_text())
    except FileNotFoundError as exc:
        raise ConfigError(f"workflow graph file not found: {path}") from exc
    except json.JSONDecodeError as exc:
        raise ConfigError(f"workflow graph file is not valid JSON: {exc.msg}") from exc
    items = raw.get("nodes") if isinstance(raw, dict) else raw
    if not isinstance(items, list) or not items:
        raise ConfigError("workflow graph file must contain a non-empty node list")
    graph = NodeGraph(WorkflowNode.from_dict(item) for item in items)
    logger.info("workflow_graph_loaded", path=str(graph_path), nodes=graph.ids)
    return graph
