from __future__ import annotations

import asyncio
import time
from typing import Any, Awaitable, Dict, Optional, Tuple

import httpx

from stageflow.config import MAX_STAGE_RETRIES, Settings
from stageflow.logging import get_logger, log_stage_attempt
from stageflow.service.errors import (
    DomainError,
    ServiceError,
    StageCancelled,
    TransportError,
)
from stageflow.service.payloads import StagePayload
from stageflow.service.result import StageResult
from stageflow.storage.models import Channel

logger = get_logger(__name__)

# HTTP statuses treated as transient alongside every 5xx
_RETRYABLE_STATUSES = frozenset({408, 429})

CHAT_PATH = "/chat-messages"
WORKFLOW_PATH = "/workflows/run"


def _error_reason(response: httpx.Response) -> Optional[str]:
    try:
        body = response.json()
    except ValueError:
        text = response.text.strip()
        return text[:200] or None
    if isinstance(body, dict):
        for key in ("message", "error", "detail", "code"):
            value = body.get(key)
            if isinstance(value, str) and value:
                return value
    return None


class StepGateway:
    """Resilient client for the external stage endpoint.

    Two channels share one retry policy: ``chat`` posts to ``/chat-messages``
    with a short timeout, ``workflow`` posts to ``/workflows/run`` with a long
    one. Transport failures (timeouts, connection errors, 408/429/5xx) are
    retried up to ``max_retries`` extra attempts with a fixed delay; domain
    failures (other 4xx, failed workflow runs) are returned after one attempt
    unless ``retry_domain_errors`` is set. ``execute`` never raises for remote
    failures; it returns a tagged ``StageResult``.
    """

    def __init__(
        self,
        *,
        chat_base_url: str,
        workflow_base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        user: str = "stageflow-user",
        chat_timeout: float = 30.0,
        workflow_timeout: float = 60.0,
        connect_timeout: float = 10.0,
        max_retries: int = 2,
        retry_delay_ms: int = 500,
        retry_domain_errors: bool = False,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        self.chat_base_url = chat_base_url.rstrip("/")
        self.workflow_base_url = (workflow_base_url or chat_base_url).rstrip("/")
        self.api_key = api_key
        self.user = user
        self.chat_timeout = chat_timeout
        self.workflow_timeout = workflow_timeout
        self.connect_timeout = connect_timeout
        self.max_retries = max(0, min(int(max_retries), MAX_STAGE_RETRIES))
        self.retry_delay_ms = max(0, int(retry_delay_ms))
        self.retry_domain_errors = retry_domain_errors
        self._transport = transport
        self._client: Optional[httpx.AsyncClient] = None

    @classmethod
    def from_settings(
        cls, settings: Settings, *, transport: Optional[httpx.AsyncBaseTransport] = None
    ) -> "StepGateway":
        return cls(
            chat_base_url=settings.stage_api_base_url,
            workflow_base_url=settings.workflow_base_url,
            api_key=settings.stage_api_key,
            user=settings.stage_user,
            chat_timeout=settings.chat_timeout_seconds,
            workflow_timeout=settings.workflow_timeout_seconds,
            connect_timeout=settings.connect_timeout_seconds,
            max_retries=settings.stage_max_retries,
            retry_delay_ms=settings.stage_retry_delay_ms,
            retry_domain_errors=settings.retry_domain_errors,
            transport=transport,
        )

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                transport=self._transport,
                headers={"Content-Type": "application/json"},
            )
        return self._client

    async def close(self) -> None:
        if self._client is not None:
            await self._client.aclose()
            self._client = None

    def target(self, channel: Channel) -> str:
        if channel is Channel.CHAT:
            return f"{self.chat_base_url}{CHAT_PATH}"
        return f"{self.workflow_base_url}{WORKFLOW_PATH}"

    def _timeout(self, channel: Channel) -> httpx.Timeout:
        total = self.chat_timeout if channel is Channel.CHAT else self.workflow_timeout
        return httpx.Timeout(total, connect=min(self.connect_timeout, total))

    def _should_retry(self, error: ServiceError) -> bool:
        if isinstance(error, StageCancelled):
            return False
        return error.retryable or self.retry_domain_errors

    async def execute(
        self,
        payload: StagePayload,
        *,
        cancel_event: Optional[asyncio.Event] = None,
    ) -> StageResult:
        """Call the stage endpoint, retrying transient failures."""
        started = time.perf_counter()
        total_attempts = self.max_retries + 1
        attempts = 0
        last_error: Optional[ServiceError] = None

        while attempts < total_attempts:
            if cancel_event is not None and cancel_event.is_set():
                last_error = self._cancelled(payload)
                break
            attempts += 1
            try:
                cancelled, data = await self._race(
                    self._attempt(payload, attempts), cancel_event
                )
            except ServiceError as exc:
                last_error = exc
            else:
                if cancelled:
                    last_error = self._cancelled(payload)
                    break
                return StageResult.success(
                    data,
                    attempts=attempts,
                    elapsed_ms=(time.perf_counter() - started) * 1000,
                )

            if attempts >= total_attempts or not self._should_retry(last_error):
                break
            logger.warning(
                "stage_call_retry",
                node_id=payload.node_id,
                channel=payload.channel.value,
                attempt=attempts,
                max_attempts=total_attempts,
                error_code=last_error.error_code,
                error=last_error.message,
                delay_ms=self.retry_delay_ms,
            )
            if await self._backoff(cancel_event):
                last_error = self._cancelled(payload)
                break

        if last_error is None:
            raise RuntimeError(f"stage call for '{payload.node_id}' made no attempts")
        last_error.detail.update(
            {"channel": payload.channel.value, "attempts": attempts}
        )
        logger.error(
            "stage_call_failed",
            node_id=payload.node_id,
            channel=payload.channel.value,
            attempts=attempts,
            error_code=last_error.error_code,
            error=last_error.message,
        )
        return StageResult.failure(
            last_error,
            attempts=attempts,
            elapsed_ms=(time.perf_counter() - started) * 1000,
        )

    def _cancelled(self, payload: StagePayload) -> StageCancelled:
        return StageCancelled(
            "stage execution cancelled", detail={"node_id": payload.node_id}
        )

    async def _race(
        self, call: Awaitable[Dict[str, Any]], cancel_event: Optional[asyncio.Event]
    ) -> Tuple[bool, Optional[Dict[str, Any]]]:
        """Await ``call`` unless ``cancel_event`` fires first."""
        if cancel_event is None:
            return False, await call
        call_task = asyncio.ensure_future(call)
        cancel_task = asyncio.ensure_future(cancel_event.wait())
        try:
            done, _ = await asyncio.wait(
                {call_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            call_task.cancel()
            cancel_task.cancel()
            raise
        if call_task in done:
            cancel_task.cancel()
            return False, call_task.result()
        call_task.cancel()
        try:
            await call_task
        except (asyncio.CancelledError, ServiceError):
            pass
        return True, None

    async def _backoff(self, cancel_event: Optional[asyncio.Event]) -> bool:
        """Wait out the retry delay; True when cancelled during the wait."""
        delay = self.retry_delay_ms / 1000.0
        if cancel_event is None:
            await asyncio.sleep(delay)
            return False
        try:
            await asyncio.wait_for(cancel_event.wait(), timeout=delay)
            return True
        except asyncio.TimeoutError:
            return False

    async def _attempt(self, payload: StagePayload, attempt: int) -> Dict[str, Any]:
        client = await self._get_client()
        url = self.target(payload.channel)
        api_key = payload.api_key or self.api_key
        headers = {"Authorization": f"Bearer {api_key}"} if api_key else {}
        body = {"response_mode": "blocking", "user": self.user, **payload.body}
        timeout = self._timeout(payload.channel)

        started = time.perf_counter()
        status: Optional[int] = None
        outcome = "error"
        try:
            response = await client.post(url, json=body, headers=headers, timeout=timeout)
            status = response.status_code
            response.raise_for_status()
            try:
                data = response.json()
            except ValueError as exc:
                outcome = "undecodable"
                raise TransportError(
                    "stage endpoint returned an undecodable body",
                    detail={"status_code": status},
                ) from exc
            parsed = self._parse(payload.channel, data)
            outcome = "ok"
            return parsed
        except httpx.HTTPStatusError as exc:
            outcome = f"http_{exc.response.status_code}"
            raise self._classify_status(exc.response) from exc
        except httpx.TimeoutException as exc:
            outcome = "timeout"
            raise TransportError(
                f"stage endpoint timed out ({type(exc).__name__})",
                detail={"status_code": None},
            ) from exc
        except httpx.TransportError as exc:
            outcome = "transport"
            raise TransportError(
                f"stage endpoint unreachable ({type(exc).__name__})",
                detail={"status_code": None},
            ) from exc
        except DomainError:
            outcome = "domain"
            raise
        finally:
            log_stage_attempt(
                channel=payload.channel.value,
                method="POST",
                target=url,
                attempt=attempt,
                status=status,
                duration_ms=(time.perf_counter() - started) * 1000,
                outcome=outcome,
                logger=logger,
            )

    def _classify_status(self, response: httpx.Response) -> ServiceError:
        status = response.status_code
        reason = _error_reason(response)
        detail = {"status_code": status, "reason": reason}
        if status >= 500 or status in _RETRYABLE_STATUSES:
            return TransportError(
                f"stage endpoint returned HTTP {status}", detail=detail
            )
        return DomainError(
            reason or f"stage endpoint rejected the request (HTTP {status})",
            detail=detail,
        )

    def _parse(self, channel: Channel, data: Any) -> Dict[str, Any]:
        if not isinstance(data, dict):
            raise DomainError(
                "stage endpoint returned an unexpected body",
                detail={"status_code": 200},
            )
        if channel is Channel.CHAT:
            return {
                "conversation_id": data.get("conversation_id"),
                "message_id": data.get("message_id") or data.get("id"),
                "answer": data.get("answer") or "",
                "metadata": data.get("metadata") or {},
                "raw": data,
            }
        run = data.get("data") if isinstance(data.get("data"), dict) else {}
        status = run.get("status") or data.get("status")
        if status == "failed":
            raise DomainError(
                run.get("error") or data.get("error") or "workflow run failed",
                detail={"status_code": 200, "workflow_run_id": data.get("workflow_run_id")},
            )
        return {
            "workflow_run_id": data.get("workflow_run_id"),
            "task_id": data.get("task_id"),
            "status": status,
            "outputs": run.get("outputs") or data.get("outputs") or {},
            "raw": data,
        }
