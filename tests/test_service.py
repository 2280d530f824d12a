from __future__ import annotations

import asyncio
import base64
import json
from typing import Any

import httpx
import pytest

from zai_gateway.errors import AnonymousMediaRejectedError, UpstreamUnreachableError
from zai_gateway.gateway.stats import RequestStatsCollector
from zai_gateway.service import ChatCompletionService, ChatRequest, ChatCompletionResult
from zai_gateway.settings import Settings

ORIGIN = "https://chat.example"


def _sse(*events: dict[str, Any]) -> bytes:
    lines = [f"data: {json.dumps({'type': 'chat:completion', 'data': item})}" for item in events]
    return ("\n".join(lines) + "\n").encode("utf-8")


class _Upstream:
    def __init__(self, *, chat_status: int = 200, body: bytes | None = None) -> None:
        self.chat_status = chat_status
        self.body = body or _sse(
            {"phase": "answer", "delta_content": "Hi"},
            {"phase": "answer", "delta_content": " there"},
            {
                "phase": "done",
                "done": True,
                "usage": {"prompt_tokens": 4, "completion_tokens": 2, "total_tokens": 6},
            },
        )
        self.chat_requests: list[httpx.Request] = []
        self.auth_requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/v1/auths/":
            self.auth_requests.append(request)
            return httpx.Response(200, json={"token": "anon-token"})
        if request.url.path == "/api/chat/completions":
            self.chat_requests.append(request)
            if self.chat_status != 200:
                return httpx.Response(self.chat_status, text="upstream down")
            return httpx.Response(
                200,
                content=self.body,
                headers={"content-type": "text/event-stream"},
            )
        return httpx.Response(404)


def _service(upstream: _Upstream, **overrides: Any) -> ChatCompletionService:
    values: dict[str, Any] = {
        "zai_tokens": "tok-a,tok-b",
        "upstream_origin": ORIGIN,
        "upstream_url": f"{ORIGIN}/api/chat/completions",
        "upstream_files_url": f"{ORIGIN}/api/files",
        "anonymous_token_enabled": False,
    }
    values.update(overrides)
    client = httpx.AsyncClient(transport=httpx.MockTransport(upstream))
    return ChatCompletionService.from_settings(
        Settings(**values),
        stats=RequestStatsCollector(),
        client=client,
    )


def _request(**kwargs: Any) -> ChatRequest:
    payload: dict[str, Any] = {
        "model": "glm-4.6",
        "messages": [{"role": "user", "content": "hello"}],
    }
    payload.update(kwargs)
    return ChatRequest.model_validate(payload)


async def _drain(result: ChatCompletionResult) -> list[bytes]:
    assert result.stream is not None
    return [chunk async for chunk in result.stream]


def test_streaming_request_records_success_after_stream_ends() -> None:
    upstream = _Upstream()
    service = _service(upstream)

    async def _run() -> list[bytes]:
        result = await service.create(_request(stream=True))
        assert result.is_stream is True
        assert service.stats.total_requests == 0
        chunks = await _drain(result)
        await service.close()
        return chunks

    chunks = asyncio.run(_run())

    assert chunks[-1] == b"data: [DONE]\n\n"
    contents = [
        json.loads(chunk[6:])["choices"][0]["delta"].get("content")
        for chunk in chunks[:-1]
    ]
    assert contents == [None, "Hi", " there", None]

    snapshot = service.stats.snapshot()
    assert snapshot["successful_requests"] == 1
    assert snapshot["requests_by_model"] == {"glm-4.6": 1}
    assert snapshot["recent_requests"][0]["stream"] is True

    body = json.loads(upstream.chat_requests[0].content)
    assert body["model"] == "GLM-4-6-API-V1"
    assert body["signature_prompt"] == "hello"
    assert upstream.chat_requests[0].headers["Authorization"] == "Bearer tok-a"


def test_non_streaming_request_returns_completion() -> None:
    service = _service(_Upstream())

    result = asyncio.run(service.create(_request(stream=False, temperature=0.1)))

    assert result.is_stream is False
    assert result.completion is not None
    assert result.completion["choices"][0]["message"]["content"] == "Hi there"
    assert result.completion["choices"][0]["finish_reason"] == "stop"
    assert result.completion["usage"]["total_tokens"] == 6
    assert result.completion["model"] == "glm-4.6"
    assert service.stats.snapshot()["successful_requests"] == 1


def test_missing_stream_flag_uses_configured_default() -> None:
    service = _service(_Upstream(), default_stream=False)

    result = asyncio.run(service.create(_request()))

    assert result.is_stream is False
    assert result.completion is not None


def test_anonymous_token_with_images_is_rejected_and_recorded() -> None:
    upstream = _Upstream()
    service = _service(upstream, zai_tokens="", anonymous_token_enabled=True)
    image = "data:image/png;base64," + base64.b64encode(b"png").decode()
    request = _request(
        model="glm-4.5v",
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "describe"},
                    {"type": "image_url", "image_url": {"url": image}},
                ],
            }
        ],
    )

    with pytest.raises(AnonymousMediaRejectedError) as exc_info:
        asyncio.run(service.create(request))

    assert exc_info.value.status_code == 400
    assert len(upstream.auth_requests) == 1
    assert upstream.chat_requests == []
    snapshot = service.stats.snapshot()
    assert snapshot["failed_requests"] == 1
    assert snapshot["recent_requests"][0]["status"] == 400
    assert snapshot["recent_requests"][0]["error"] == "anonymous_media_unsupported"


def test_anonymous_token_serves_text_requests() -> None:
    upstream = _Upstream()
    service = _service(upstream, zai_tokens="", anonymous_token_enabled=True)

    result = asyncio.run(service.create(_request(stream=False)))

    assert result.completion is not None
    assert upstream.chat_requests[0].headers["Authorization"] == "Bearer anon-token"


def test_upstream_failure_is_recorded_as_bad_gateway() -> None:
    upstream = _Upstream(chat_status=503)
    service = _service(upstream)

    with pytest.raises(UpstreamUnreachableError):
        asyncio.run(service.create(_request(stream=False)))

    assert len(upstream.chat_requests) == 2
    snapshot = service.stats.snapshot()
    assert snapshot["failed_requests"] == 1
    assert snapshot["recent_requests"][0]["status"] == 502


def test_abandoned_stream_is_recorded_as_client_disconnect() -> None:
    service = _service(_Upstream())

    async def _run() -> None:
        result = await service.create(_request(stream=True))
        assert result.stream is not None
        await result.stream.__anext__()
        await result.stream.aclose()  # type: ignore[attr-defined]

    asyncio.run(_run())

    record = service.stats.recent_requests()[0]
    assert record.status == 499
    assert record.error == "client_disconnected"


def test_chat_request_requires_messages() -> None:
    with pytest.raises(ValueError):
        ChatRequest.model_validate({"model": "glm-4.6", "messages": []})


class _BrokenBody(httpx.AsyncByteStream):
    def __init__(self, first: bytes) -> None:
        self._first = first

    async def __aiter__(self) -> Any:
        yield self._first
        raise httpx.ReadError("connection reset")

    async def aclose(self) -> None:
        return None


class _InterruptedUpstream(_Upstream):
    def __call__(self, request: httpx.Request) -> httpx.Response:
        if request.url.path == "/api/chat/completions":
            self.chat_requests.append(request)
            return httpx.Response(
                200,
                stream=_BrokenBody(_sse({"phase": "answer", "delta_content": "partial"})),
            )
        return super().__call__(request)


def test_signature_prompt_uses_first_text_block_of_request() -> None:
    upstream = _Upstream()
    service = _service(upstream)
    request = _request(
        stream=False,
        messages=[
            {
                "role": "user",
                "content": [
                    {"type": "text", "text": "first block"},
                    {"type": "text", "text": "second block"},
                ],
            }
        ],
    )

    asyncio.run(service.create(request))

    body = json.loads(upstream.chat_requests[0].content)
    assert body["messages"][0]["content"] == "first block\nsecond block"
    assert body["signature_prompt"] == "first block"


def test_interrupted_stream_is_recorded_as_failure() -> None:
    service = _service(_InterruptedUpstream())

    async def _run() -> list[bytes]:
        return await _drain(await service.create(_request(stream=True)))

    chunks = asyncio.run(_run())

    assert chunks[-1] == b"data: [DONE]\n\n"
    record = service.stats.recent_requests()[0]
    assert record.status == 502
    assert record.error == "stream_interrupted"
    assert service.stats.snapshot()["failed_requests"] == 1


def test_upstream_reported_error_is_recorded_as_failure() -> None:
    body = _sse(
        {"phase": "answer", "delta_content": "partial"},
        {"error": {"code": 500, "detail": "Something went wrong"}},
    )
    service = _service(_Upstream(body=body))

    result = asyncio.run(service.create(_request(stream=False)))

    assert result.completion is not None
    assert result.completion["choices"][0]["message"]["content"] == "partial"
    record = service.stats.recent_requests()[0]
    assert record.status == 502
    assert record.error == "upstream_reported_error"
