"""Tests for stage endpoint retries, failure classification and cancellation."""

from __future__ import annotations

import asyncio
import json

import httpx
import pytest

from stageflow.service.gateway import StepGateway
from stageflow.service.payloads import StagePayload
from stageflow.storage.models import Channel


def _chat_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "conversation_id": "conv-1",
            "message_id": "msg-1",
            "answer": "hello",
            "metadata": {"usage": {"total_tokens": 3}},
        },
    )


def _workflow_ok(request: httpx.Request) -> httpx.Response:
    return httpx.Response(
        200,
        json={
            "workflow_run_id": "run-1",
            "task_id": "task-1",
            "data": {"status": "succeeded", "outputs": {"text": "brief"}},
        },
    )


class CountingHandler:
    """Fails the first ``failures`` calls with ``failure`` then delegates to ``ok``."""

    def __init__(self, failures: int, failure, ok=_chat_ok):
        self.failures = failures
        self.failure = failure
        self.ok = ok
        self.calls = 0
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.calls += 1
        self.requests.append(request)
        if self.calls <= self.failures:
            return self.failure(request)
        return self.ok(request)


def _status(code: int, body=None):
    def _respond(request: httpx.Request) -> httpx.Response:
        return httpx.Response(code, json=body or {"message": f"status {code}"})

    return _respond


def _connect_error(request: httpx.Request) -> httpx.Response:
    raise httpx.ConnectError("connection refused", request=request)


def _make_gateway(handler, **overrides) -> StepGateway:
    params = dict(
        chat_base_url="http://stage.test/v1",
        workflow_base_url="http://workflow.test/v1",
        api_key="default-key",
        max_retries=2,
        retry_delay_ms=0,
        transport=httpx.MockTransport(handler),
    )
    params.update(overrides)
    return StepGateway(**params)


def _chat_payload(**body) -> StagePayload:
    return StagePayload(channel=Channel.CHAT, body={"query": "q", **body}, node_id="ai_search")


def _workflow_payload() -> StagePayload:
    return StagePayload(channel=Channel.WORKFLOW, body={"inputs": {"a": 1}}, node_id="tech_package")


class TestRetryBounds:
    @pytest.mark.asyncio
    async def test_transient_failures_then_success(self):
        handler = CountingHandler(failures=1, failure=_status(503))
        gateway = _make_gateway(handler)

        result = await gateway.execute(_chat_payload())

        assert result.ok
        assert result.attempts == 2
        assert handler.calls == 2
        assert result.data["answer"] == "hello"
        assert result.data["conversation_id"] == "conv-1"

    @pytest.mark.asyncio
    async def test_always_failing_stops_after_max_retries_plus_one(self):
        handler = CountingHandler(failures=100, failure=_connect_error)
        gateway = _make_gateway(handler, max_retries=3)

        result = await gateway.execute(_chat_payload())

        assert not result.ok
        assert handler.calls == 4
        assert result.attempts == 4
        assert result.error_code == "transport_error"
        assert result.error.detail["attempts"] == 4
        assert result.error.detail["channel"] == "chat"

    @pytest.mark.asyncio
    async def test_zero_retries_means_single_attempt(self):
        handler = CountingHandler(failures=100, failure=_status(500))
        gateway = _make_gateway(handler, max_retries=0)

        result = await gateway.execute(_chat_payload())

        assert not result.ok
        assert handler.calls == 1

    def test_max_retries_is_capped(self):
        gateway = _make_gateway(_chat_ok, max_retries=50)
        assert gateway.max_retries == 5

    def test_negative_retries_clamp_to_zero(self):
        assert _make_gateway(_chat_ok, max_retries=-3).max_retries == 0

    @pytest.mark.asyncio
    async def test_no_attempt_raises_instead_of_returning_empty_failure(self):
        handler = CountingHandler(failures=0, failure=_status(500))
        gateway = _make_gateway(handler)
        gateway.max_retries = -1

        with pytest.raises(RuntimeError):
            await gateway.execute(_chat_payload())
        assert handler.calls == 0


class TestFailureClassification:
    @pytest.mark.asyncio
    async def test_client_error_is_not_retried(self):
        handler = CountingHandler(
            failures=100, failure=_status(400, {"message": "invalid inputs"})
        )
        gateway = _make_gateway(handler)

        result = await gateway.execute(_chat_payload())

        assert not result.ok
        assert handler.calls == 1
        assert result.error_code == "domain_error"
        assert result.error.message == "invalid inputs"
        assert result.error.detail["status_code"] == 400

    @pytest.mark.asyncio
    async def test_domain_retry_can_be_enabled(self):
        handler = CountingHandler(failures=100, failure=_status(400))
        gateway = _make_gateway(handler, retry_domain_errors=True)

        result = await gateway.execute(_chat_payload())

        assert handler.calls == 3
        assert result.error_code == "domain_error"

    @pytest.mark.asyncio
    async def test_rate_limited_is_retried(self):
        handler = CountingHandler(failures=1, failure=_status(429))
        gateway = _make_gateway(handler)

        result = await gateway.execute(_chat_payload())

        assert result.ok
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_timeout_is_transport_failure(self):
        def _timeout(request: httpx.Request) -> httpx.Response:
            raise httpx.ReadTimeout("read timed out", request=request)

        handler = CountingHandler(failures=100, failure=_timeout)
        gateway = _make_gateway(handler, max_retries=1)

        result = await gateway.execute(_chat_payload())

        assert not result.ok
        assert result.error_code == "transport_error"
        assert handler.calls == 2

    @pytest.mark.asyncio
    async def test_failed_workflow_run_is_domain_failure(self):
        def _failed(request: httpx.Request) -> httpx.Response:
            return httpx.Response(
                200,
                json={
                    "workflow_run_id": "run-9",
                    "data": {"status": "failed", "error": "node crashed"},
                },
            )

        handler = CountingHandler(failures=100, failure=_failed)
        gateway = _make_gateway(handler)

        result = await gateway.execute(_workflow_payload())

        assert not result.ok
        assert handler.calls == 1
        assert result.error_code == "domain_error"
        assert result.error.message == "node crashed"

    @pytest.mark.asyncio
    async def test_undecodable_body_is_transport_failure(self):
        def _garbage(request: httpx.Request) -> httpx.Response:
            return httpx.Response(200, content=b"<html>oops</html>")

        handler = CountingHandler(failures=100, failure=_garbage)
        gateway = _make_gateway(handler, max_retries=1)

        result = await gateway.execute(_chat_payload())

        assert result.error_code == "transport_error"
        assert handler.calls == 2


class TestRequestShape:
    @pytest.mark.asyncio
    async def test_channels_use_their_own_routes(self):
        seen = []

        def _route(request: httpx.Request) -> httpx.Response:
            seen.append(str(request.url))
            if request.url.path.endswith("/workflows/run"):
                return _workflow_ok(request)
            return _chat_ok(request)

        gateway = _make_gateway(_route)

        chat = await gateway.execute(_chat_payload())
        workflow = await gateway.execute(_workflow_payload())

        assert seen == [
            "http://stage.test/v1/chat-messages",
            "http://workflow.test/v1/workflows/run",
        ]
        assert chat.data["message_id"] == "msg-1"
        assert workflow.data["outputs"] == {"text": "brief"}
        assert workflow.data["workflow_run_id"] == "run-1"
        assert workflow.data["status"] == "succeeded"

    @pytest.mark.asyncio
    async def test_blocking_mode_user_and_auth_header(self):
        handler = CountingHandler(failures=0, failure=_chat_ok)
        gateway = _make_gateway(handler, user="tester")

        payload = StagePayload(
            channel=Channel.CHAT, body={"query": "q"}, api_key="node-key", node_id="ai_search"
        )
        await gateway.execute(payload)

        request = handler.requests[0]
        body = json.loads(request.content)
        assert request.headers["Authorization"] == "Bearer node-key"
        assert body["response_mode"] == "blocking"
        assert body["user"] == "tester"
        assert body["query"] == "q"

    @pytest.mark.asyncio
    async def test_default_key_used_without_override(self):
        handler = CountingHandler(failures=0, failure=_chat_ok)
        gateway = _make_gateway(handler)

        await gateway.execute(_chat_payload())

        assert handler.requests[0].headers["Authorization"] == "Bearer default-key"


class TestCancellation:
    @pytest.mark.asyncio
    async def test_cancel_during_call_returns_cancelled(self):
        started = asyncio.Event()

        async def _slow(request: httpx.Request) -> httpx.Response:
            started.set()
            await asyncio.sleep(10)
            return _chat_ok(request)

        gateway = _make_gateway(_slow)
        cancel_event = asyncio.Event()

        task = asyncio.create_task(gateway.execute(_chat_payload(), cancel_event=cancel_event))
        await started.wait()
        cancel_event.set()
        result = await asyncio.wait_for(task, timeout=2)

        assert not result.ok
        assert result.error_code == "cancelled"
        assert result.attempts == 1

    @pytest.mark.asyncio
    async def test_cancel_during_backoff_stops_retrying(self):
        handler = CountingHandler(failures=100, failure=_status(503))
        gateway = _make_gateway(handler, retry_delay_ms=5000)
        cancel_event = asyncio.Event()

        task = asyncio.create_task(gateway.execute(_chat_payload(), cancel_event=cancel_event))
        await asyncio.sleep(0.05)
        cancel_event.set()
        result = await asyncio.wait_for(task, timeout=2)

        assert result.error_code == "cancelled"
        assert handler.calls == 1
