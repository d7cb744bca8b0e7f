from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from stageflow.config import Settings
from stageflow.service.nodes import NodeGraph, WorkflowNode
from stageflow.storage.models import WorkflowContext


@dataclass(frozen=True)
class ConfidenceWeights:
    base: float = 0.7
    success_bonus: float = 0.2
    low_threshold: float = 0.5
    high_threshold: float = 0.8

    @classmethod
    def from_settings(cls, settings: Settings) -> "ConfidenceWeights":
        return cls(
            base=settings.confidence_base,
            success_bonus=settings.confidence_success_bonus,
            low_threshold=settings.confidence_low_threshold,
            high_threshold=settings.confidence_high_threshold,
        )


@dataclass(frozen=True)
class Recommendation:
    node_id: str
    confidence: float
    reason: str
    required_data: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "node_id": self.node_id,
            "confidence": self.confidence,
            "reason": self.reason,
            "required_data": list(self.required_data),
        }


def _has_content(data: Optional[Dict[str, Any]]) -> bool:
    if not data:
        return False
    if "answer" in data:
        return bool(data["answer"])
    if "outputs" in data:
        return bool(data["outputs"])
    return True


class RecommendationEngine:
    """Scores the declared next steps of the current node.

    Pure and deterministic: the same graph, context and weights always give
    the same list.
    """

    def __init__(self, graph: NodeGraph, weights: Optional[ConfidenceWeights] = None) -> None:
        self.graph = graph
        self.weights = weights or ConfidenceWeights()

    def _reason(self, confidence: float, source: WorkflowNode, target: WorkflowNode) -> str:
        if confidence < self.weights.low_threshold:
            return f"{target.name} needs more prerequisite steps completed first"
        if confidence > self.weights.high_threshold:
            return f"Strongly recommended next step: {target.name}"
        return f"Based on the {source.name} result, consider {target.name}"

    def score(self, candidate: WorkflowNode, context: WorkflowContext, *, succeeded: bool) -> float:
        confidence = self.weights.base
        if succeeded:
            confidence += self.weights.success_bonus
        if candidate.dependencies:
            completed = set(context.completed_nodes)
            done = sum(1 for dep in candidate.dependencies if dep in completed)
            confidence *= done / len(candidate.dependencies)
        return round(min(max(confidence, 0.0), 1.0), 4)

    def recommend(
        self,
        context: WorkflowContext,
        *,
        current_node_id: Optional[str] = None,
        rank: bool = False,
    ) -> List[Recommendation]:
        """Recommendations for the nodes that may follow the current node.

        Declaration order is kept unless ``rank`` is set, in which case the
        list is stably sorted by descending confidence.
        """
        source_id = current_node_id or context.current_node_id
        source = self.graph.get(source_id) if source_id else None
        if source is None:
            return []
        if source.id == context.current_node_id:
            ran_ok = context.last_succeeded
        else:
            ran_ok = source.id in context.completed_nodes
        succeeded = ran_ok and _has_content(context.output_data(source.id))
        results = []
        for step_id in source.next_steps:
            candidate = self.graph.get(step_id)
            if candidate is None:
                continue
            confidence = self.score(candidate, context, succeeded=succeeded)
            results.append(
                Recommendation(
                    node_id=candidate.id,
                    confidence=confidence,
                    reason=self._reason(confidence, source, candidate),
                    required_data=list(candidate.dependencies),
                )
            )
        if rank:
            results.sort(key=lambda item: item.confidence, reverse=True)
        return results

    def completeness(self, context: WorkflowContext) -> Dict[str, Any]:
        """Share of graph nodes completed, with what is missing and what to do next."""
        completed = set(context.completed_nodes)
        total = len(self.graph)
        missing = [node.id for node in self.graph if node.id not in completed]
        done = total - len(missing)
        suggestions = []
        if not completed:
            suggestions.append("Start with a node that can run independently")
        elif missing:
            suggestions.append(f"Continue with {missing[0]}")
        else:
            suggestions.append("All workflow steps are complete")
        return {
            "completion_rate": round(done / total, 4) if total else 0.0,
            "completed_steps": [node.id for node in self.graph if node.id in completed],
            "missing_steps": missing,
            "recommendations": suggestions,
        }
