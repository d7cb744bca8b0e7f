from __future__ import annotations

from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, field_validator

# Maximum nested JSON depth accepted in stage inputs
MAX_JSON_DEPTH = 20
# Maximum array items accepted in stage inputs
MAX_ARRAY_ITEMS = 1000

_VALID_ERROR_CODES = frozenset(
    {
        "validation_error",
        "not_found",
        "conflict",
        "config_error",
        "transport_error",
        "domain_error",
        "already_running",
        "cancelled",
        "aggregation_dropped",
        "server_error",
    }
)


def _validate_json_depth(obj: Any, max_depth: int = MAX_JSON_DEPTH, current_depth: int = 0) -> None:
    """Reject deeply nested or oversized payloads before they reach the executor."""
    if current_depth > max_depth:
        raise ValueError(f"JSON nesting depth exceeds maximum of {max_depth}")

    if isinstance(obj, dict):
        for value in obj.values():
            _validate_json_depth(value, max_depth, current_depth + 1)
    elif isinstance(obj, list):
        if len(obj) > MAX_ARRAY_ITEMS:
            raise ValueError(f"Array length {len(obj)} exceeds maximum of {MAX_ARRAY_ITEMS}")
        for item in obj:
            _validate_json_depth(item, max_depth, current_depth + 1)


class ErrorBody(BaseModel):
    """Error envelope body with stable code values."""

    code: str = Field(..., description="Stable error code")
    message: str
    details: Optional[Any] = None  # object, array, or null

    @field_validator("code")
    @classmethod
    def _validate_error_code(cls, value: str) -> str:
        if value not in _VALID_ERROR_CODES:
            raise ValueError(
                f"Invalid error code '{value}'. Must be one of: {', '.join(sorted(_VALID_ERROR_CODES))}"
            )
        return value


class Envelope(BaseModel):
    """API envelope format."""

    status: str = Field(..., pattern="^(ok|error)$")
    data: Optional[Any] = None
    error: Optional[ErrorBody] = None
    request_id: str = Field(default_factory=lambda: str(uuid4()))


class SessionStartRequest(BaseModel):
    session_id: Optional[str] = Field(default=None, min_length=1, max_length=128)
    user_id: Optional[str] = Field(default=None, max_length=128)


class StageExecuteRequest(BaseModel):
    inputs: Dict[str, Any] = Field(default_factory=dict)
    user_id: Optional[str] = Field(default=None, max_length=128)
    conversation_id: Optional[str] = Field(default=None, max_length=256)

    @field_validator("inputs")
    @classmethod
    def _check_inputs(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        _validate_json_depth(value)
        return value


class SessionEndRequest(BaseModel):
    exit_node_id: Optional[str] = Field(default=None, max_length=128)
    exit_reason: str = Field(default="completion", max_length=64)
    satisfaction_score: Optional[int] = Field(default=None, ge=1, le=5)
    user_feedback: Optional[str] = Field(default=None, max_length=4000)


class UsageEventRequest(BaseModel):
    """Loose event shape; field validation happens in the aggregator so bad
    events are counted as dropped instead of rejected."""

    events: List[Any] = Field(default_factory=list, max_length=MAX_ARRAY_ITEMS)
    event: Optional[Any] = None

    def all_events(self) -> List[Any]:
        return ([self.event] if self.event is not None else []) + list(self.events)
