from __future__ import annotations

import json
import logging
import re
import time
import uuid
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

logger = logging.getLogger("zai_gateway")

DONE_MARKER = b"data: [DONE]\n\n"
STREAM_INTERRUPTED_CODE = "stream_interrupted"

ThinkTagsMode = Literal["strip", "think", "raw"]

_SUMMARY_PATTERN = re.compile(r"<summary>.*?</summary>", re.DOTALL)
_DETAILS_OPEN_PATTERN = re.compile(r"<details[^>]*>")
_LEADING_QUOTE_PATTERN = re.compile(r"^> ")


class ThinkingFilter:
    """Cleans the markup the upstream wraps around reasoning deltas."""

    def __init__(self, mode: ThinkTagsMode = "strip") -> None:
        if mode not in ("strip", "think", "raw"):
            raise ValueError(f"Unsupported think tags mode '{mode}'.")
        self.mode = mode

    def apply(self, content: str) -> str:
        """Rewrite reasoning markup in one delta.

        Deltas without markup or quote markers come back unchanged, so the
        whitespace between streamed tokens survives. Trimming only happens
        once a substitution has altered the text.
        """
        result = _SUMMARY_PATTERN.sub("", content)
        for leftover in ("</thinking>", "<Full>", "</Full>"):
            result = result.replace(leftover, "")
        if result != content:
            result = result.strip()

        if self.mode == "think":
            result = _DETAILS_OPEN_PATTERN.sub("<thinking>", result)
            result = result.replace("</details>", "</thinking>")
        elif self.mode == "strip":
            result = _DETAILS_OPEN_PATTERN.sub("", result)
            result = result.replace("</details>", "")

        result = _LEADING_QUOTE_PATTERN.sub("", result, count=1)
        result = result.replace("\n> ", "\n")
        if result == content:
            return content
        return result.strip()


@dataclass(slots=True)
class UpstreamErrorInfo:
    code: Any = None
    detail: str = ""

    @classmethod
    def from_value(cls, value: Any) -> UpstreamErrorInfo:
        if isinstance(value, dict):
            detail = value.get("detail") or value.get("message") or ""
            return cls(code=value.get("code"), detail=str(detail))
        return cls(detail=str(value))


def _find_error(event: dict[str, Any], data: dict[str, Any]) -> Any:
    if event.get("error"):
        return event["error"]
    if data.get("error"):
        return data["error"]
    inner = data.get("inner")
    if isinstance(inner, dict) and inner.get("error"):
        return inner["error"]
    return None


@dataclass(slots=True)
class UpstreamEvent:
    type: str | None = None
    phase: str | None = None
    delta: str = ""
    done: bool = False
    error: UpstreamErrorInfo | None = None
    usage: dict[str, Any] | None = None

    @property
    def is_terminal(self) -> bool:
        return self.error is not None or self.done or self.phase == "done"

    @classmethod
    def parse(cls, line: str) -> UpstreamEvent | None:
        """Parse one SSE line.

        Returns ``None`` for lines that carry no event (blank lines, comments,
        empty data). Raises ``ValueError`` when the data is not a JSON object.
        """
        if not line.startswith("data:"):
            return None
        raw = line[5:].strip()
        if not raw or raw == "[DONE]":
            return None
        event = json.loads(raw)
        if not isinstance(event, dict):
            raise ValueError("Upstream event is not a JSON object.")

        data = event.get("data")
        if not isinstance(data, dict):
            data = {}
        error_value = _find_error(event, data)
        delta = data.get("delta_content")
        phase = data.get("phase")
        usage = data.get("usage")
        return cls(
            type=event.get("type") if isinstance(event.get("type"), str) else None,
            phase=phase if isinstance(phase, str) else None,
            delta=delta if isinstance(delta, str) else "",
            done=data.get("done") is True,
            error=UpstreamErrorInfo.from_value(error_value) if error_value else None,
            usage=usage if isinstance(usage, dict) else None,
        )


@dataclass(slots=True)
class TranscodeState:
    completion_id: str
    created: int
    model: str
    parts: list[str] = field(default_factory=list)
    finish_reason: str | None = None
    error: UpstreamErrorInfo | None = None
    usage: dict[str, Any] | None = None

    @property
    def text(self) -> str:
        return "".join(self.parts)


@dataclass(slots=True)
class TranscodeResult:
    text: str
    finish_reason: str
    completion_id: str
    created: int
    model: str
    error: UpstreamErrorInfo | None = None
    usage: dict[str, Any] | None = None

    def to_completion(self) -> dict[str, Any]:
        usage = self.usage or {
            "prompt_tokens": 0,
            "completion_tokens": 0,
            "total_tokens": 0,
        }
        return {
            "id": self.completion_id,
            "object": "chat.completion",
            "created": self.created,
            "model": self.model,
            "choices": [
                {
                    "index": 0,
                    "message": {"role": "assistant", "content": self.text},
                    "finish_reason": self.finish_reason,
                }
            ],
            "usage": usage,
        }


def new_completion_id() -> str:
    return f"chatcmpl-{uuid.uuid4().hex}"


def chat_completion_chunk(
    completion_id: str,
    created: int,
    model: str,
    delta: dict[str, Any],
    finish_reason: str | None = None,
) -> bytes:
    chunk = {
        "id": completion_id,
        "object": "chat.completion.chunk",
        "created": created,
        "model": model,
        "choices": [
            {
                "index": 0,
                "delta": delta,
                "finish_reason": finish_reason,
            }
        ],
    }
    return f"data: {json.dumps(chunk, ensure_ascii=False, separators=(',', ':'))}\n\n".encode(
        "utf-8"
    )


class StreamTranscoder:
    """Turns the upstream event stream into OpenAI chat completion output.

    ``stream`` yields SSE-encoded ``chat.completion.chunk`` frames and always
    finishes with a terminal chunk plus ``[DONE]``; ``collect`` buffers the
    same filtered content into one string. Both close the upstream response
    when they finish, fail or are cancelled.
    """

    def __init__(self, thinking_filter: ThinkingFilter | None = None) -> None:
        self._thinking_filter = thinking_filter or ThinkingFilter()

    def _filtered(self, event: UpstreamEvent) -> str:
        if not event.delta:
            return ""
        if event.phase == "thinking":
            return self._thinking_filter.apply(event.delta)
        return event.delta

    async def _iter_events(
        self,
        response: httpx.Response,
        state: TranscodeState,
    ) -> AsyncIterator[UpstreamEvent]:
        try:
            async for line in response.aiter_lines():
                try:
                    event = UpstreamEvent.parse(line)
                except ValueError as exc:
                    logger.warning(
                        "upstream_event_malformed completion_id=%s error=%s line=%s",
                        state.completion_id,
                        exc,
                        line[:200],
                    )
                    continue
                if event is not None:
                    yield event
        except httpx.HTTPError as exc:
            state.error = UpstreamErrorInfo(
                code=STREAM_INTERRUPTED_CODE,
                detail=f"{exc.__class__.__name__}: {exc}",
            )
            logger.warning(
                "upstream_stream_error completion_id=%s error_type=%s error=%s",
                state.completion_id,
                exc.__class__.__name__,
                exc,
            )

    def _observe(self, event: UpstreamEvent, state: TranscodeState) -> bool:
        """Record terminal metadata; returns True when the stream must stop."""
        if event.usage is not None:
            state.usage = event.usage
        if event.error is not None:
            state.error = event.error
            state.finish_reason = "stop"
            logger.warning(
                "upstream_reported_error completion_id=%s code=%s detail=%s",
                state.completion_id,
                event.error.code,
                event.error.detail,
            )
            return True
        if event.done or event.phase == "done":
            state.finish_reason = "stop"
            return True
        return False

    def new_state(self, model: str) -> TranscodeState:
        return TranscodeState(
            completion_id=new_completion_id(),
            created=int(time.time()),
            model=model,
        )

    async def stream(
        self,
        response: httpx.Response,
        model: str,
        *,
        state: TranscodeState | None = None,
    ) -> AsyncIterator[bytes]:
        state = state or self.new_state(model)
        try:
            yield chat_completion_chunk(
                state.completion_id,
                state.created,
                state.model,
                {"role": "assistant"},
            )
            async with aclosing(self._iter_events(response, state)) as events:
                async for event in events:
                    if event.error is None:
                        content = self._filtered(event)
                        if content:
                            state.parts.append(content)
                            yield chat_completion_chunk(
                                state.completion_id,
                                state.created,
                                state.model,
                                {"content": content},
                            )
                    if self._observe(event, state):
                        break
            if state.finish_reason is None:
                state.finish_reason = "stop"
                logger.info(
                    "upstream_stream_ended_without_done completion_id=%s",
                    state.completion_id,
                )
            yield chat_completion_chunk(
                state.completion_id,
                state.created,
                state.model,
                {},
                finish_reason=state.finish_reason,
            )
            yield DONE_MARKER
        finally:
            await response.aclose()

    async def collect(self, response: httpx.Response, model: str = "") -> TranscodeResult:
        state = self.new_state(model)
        try:
            async with aclosing(self._iter_events(response, state)) as events:
                async for event in events:
                    if event.error is None:
                        content = self._filtered(event)
                        if content:
                            state.parts.append(content)
                    if self._observe(event, state):
                        break
        finally:
            await response.aclose()
        return TranscodeResult(
            text=state.text,
            finish_reason=state.finish_reason or "stop",
            completion_id=state.completion_id,
            created=state.created,
            model=state.model,
            error=state.error,
            usage=state.usage,
        )

    async def collect_text(self, response: httpx.Response) -> str:
        result = await self.collect(response)
        return result.text
