from __future__ import annotations

from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from stageflow.service.errors import ServiceError


@dataclass(frozen=True)
class StageResult:
    """Outcome of one stage execution: either ``data`` or a tagged ``error``."""

    ok: bool
    data: Optional[Dict[str, Any]] = None
    error: Optional[ServiceError] = None
    attempts: int = 0
    elapsed_ms: float = 0.0

    @classmethod
    def success(
        cls, data: Dict[str, Any], *, attempts: int = 1, elapsed_ms: float = 0.0
    ) -> "StageResult":
        return cls(ok=True, data=data, attempts=attempts, elapsed_ms=elapsed_ms)

    @classmethod
    def failure(
        cls, error: ServiceError, *, attempts: int = 0, elapsed_ms: float = 0.0
    ) -> "StageResult":
        return cls(ok=False, error=error, attempts=attempts, elapsed_ms=elapsed_ms)

    @property
    def error_code(self) -> Optional[str]:
        return self.error.error_code if self.error else None

    def with_elapsed(self, elapsed_ms: float) -> "StageResult":
        return replace(self, elapsed_ms=elapsed_ms)

    def to_dict(self) -> Dict[str, Any]:
        body: Dict[str, Any] = {
            "ok": self.ok,
            "attempts": self.attempts,
            "elapsed_ms": round(self.elapsed_ms, 2),
        }
        if self.ok:
            body["data"] = self.data
        else:
            body["error"] = {
                "code": self.error.error_code if self.error else "server_error",
                "message": self.error.message if self.error else "unknown error",
                "details": self.error.detail if self.error else {},
            }
        return body
