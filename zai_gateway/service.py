from __future__ import annotations

import logging
import time
from collections.abc import AsyncIterator
from contextlib import aclosing
from dataclasses import dataclass
from typing import Any

import httpx
from pydantic import BaseModel, ConfigDict, Field

from zai_gateway.config import ModelCatalog, load_model_catalog
from zai_gateway.errors import GatewayError
from zai_gateway.gateway.media import ContentNormalizer, MediaUploader
from zai_gateway.gateway.stats import RequestStatsCollector
from zai_gateway.gateway.token_pool import TokenPool
from zai_gateway.gateway.transcoder import (
    STREAM_INTERRUPTED_CODE,
    StreamTranscoder,
    ThinkingFilter,
    UpstreamErrorInfo,
)
from zai_gateway.gateway.upstream import (
    UpstreamClient,
    build_chat_payload,
    build_timeout,
)
from zai_gateway.settings import Settings, get_settings
from zai_gateway.utils.message_utils import extract_last_user_text
from zai_gateway.utils.token_utils import token_preview

logger = logging.getLogger("zai_gateway")


class ChatRequest(BaseModel):
    """An already-parsed OpenAI chat completion request."""

    model_config = ConfigDict(extra="allow")

    model: str
    messages: list[dict[str, Any]] = Field(min_length=1)
    stream: bool | None = None
    temperature: float | None = None
    top_p: float | None = None
    max_tokens: int | None = None
    reasoning: bool | None = None


@dataclass(slots=True)
class ChatCompletionResult:
    model: str
    stream: AsyncIterator[bytes] | None = None
    completion: dict[str, Any] | None = None
    failed_uploads: int = 0

    @property
    def is_stream(self) -> bool:
        return self.stream is not None


class ChatCompletionService:
    """Runs one chat request through the whole upstream pipeline.

    Model resolution, credential selection, media normalisation, the signed
    upstream call and transcoding happen in that order. Every request ends
    with exactly one entry in the stats collector, recorded when the stream
    finishes for streaming calls.
    """

    def __init__(
        self,
        *,
        catalog: ModelCatalog,
        token_pool: TokenPool,
        normalizer: ContentNormalizer,
        upstream: UpstreamClient,
        transcoder: StreamTranscoder,
        stats: RequestStatsCollector,
        client: httpx.AsyncClient | None = None,
        default_stream: bool = True,
    ) -> None:
        self.catalog = catalog
        self.token_pool = token_pool
        self.normalizer = normalizer
        self.upstream = upstream
        self.transcoder = transcoder
        self.stats = stats
        self.client = client
        self._default_stream = default_stream

    @classmethod
    def from_settings(
        cls,
        settings: Settings | None = None,
        *,
        catalog: ModelCatalog | None = None,
        stats: RequestStatsCollector | None = None,
        client: httpx.AsyncClient | None = None,
    ) -> ChatCompletionService:
        settings = settings or get_settings()
        shared_client = client or httpx.AsyncClient(
            timeout=build_timeout(settings),
            limits=httpx.Limits(max_connections=256, max_keepalive_connections=64),
        )

        def client_getter() -> httpx.AsyncClient:
            return shared_client

        token_pool = TokenPool.from_settings(settings, client_getter=client_getter)
        uploader = MediaUploader(
            client_getter=client_getter,
            files_url=settings.upstream_files_url,
            origin=settings.upstream_origin,
            fetch_timeout_seconds=settings.media_fetch_timeout_seconds,
        )
        return cls(
            catalog=catalog or load_model_catalog(settings.model_catalog_path),
            token_pool=token_pool,
            normalizer=ContentNormalizer(
                uploader,
                failure_policy=settings.media_upload_failure_policy,
            ),
            upstream=UpstreamClient.from_settings(
                settings,
                client_getter=client_getter,
                token_pool=token_pool,
            ),
            transcoder=StreamTranscoder(ThinkingFilter(settings.think_tags_mode)),
            stats=stats or RequestStatsCollector(
                recent_requests=settings.stats_recent_requests
            ),
            client=shared_client,
            default_stream=settings.default_stream,
        )

    async def close(self) -> None:
        if self.client is not None:
            await self.client.aclose()

    def _record(
        self,
        *,
        model: str,
        status: int,
        started: float,
        stream: bool,
        error: str | None = None,
    ) -> None:
        self.stats.record(
            model=model,
            status=status,
            duration_ms=(time.perf_counter() - started) * 1000.0,
            stream=stream,
            error=error,
        )

    async def create(self, request: ChatRequest) -> ChatCompletionResult:
        started = time.perf_counter()
        stream = request.stream if request.stream is not None else self._default_stream
        try:
            resolved = self.catalog.resolve(request.model, request.reasoning)
            token = await self.token_pool.get_token()
            is_anonymous = await self.token_pool.is_anonymous(token)
            normalized = await self.normalizer.normalize(
                request.messages,
                resolved.capabilities,
                token,
                is_anonymous=is_anonymous,
            )
            payload = build_chat_payload(
                resolved=resolved,
                messages=normalized.messages,
                files=normalized.files,
                signature_prompt=extract_last_user_text(request.messages),
                temperature=request.temperature,
                top_p=request.top_p,
                max_tokens=request.max_tokens,
            )
            logger.info(
                (
                    "chat_request_start model=%s upstream_model=%s stream=%s "
                    "token=%s anonymous=%s files=%d failed_uploads=%d"
                ),
                request.model,
                resolved.profile.upstream_id,
                stream,
                token_preview(token),
                is_anonymous,
                len(normalized.files),
                normalized.failed_uploads,
            )
            upstream = await self.upstream.call(payload, payload["chat_id"], token)
        except GatewayError as exc:
            logger.warning(
                "chat_request_failed model=%s status=%d code=%s error=%s",
                request.model,
                exc.status_code,
                exc.code,
                exc.message,
            )
            self._record(
                model=request.model,
                status=exc.status_code,
                started=started,
                stream=stream,
                error=exc.code,
            )
            raise

        if stream:
            return ChatCompletionResult(
                model=request.model,
                stream=self._stream_and_record(upstream.response, request.model, started),
                failed_uploads=normalized.failed_uploads,
            )

        result = await self.transcoder.collect(upstream.response, request.model)
        status, error = _outcome(result.error)
        self._record(
            model=request.model,
            status=status,
            started=started,
            stream=False,
            error=error,
        )
        return ChatCompletionResult(
            model=request.model,
            completion=result.to_completion(),
            failed_uploads=normalized.failed_uploads,
        )

    async def _stream_and_record(
        self,
        response: httpx.Response,
        model: str,
        started: float,
    ) -> AsyncIterator[bytes]:
        completed = False
        state = self.transcoder.new_state(model)
        try:
            async with aclosing(
                self.transcoder.stream(response, model, state=state)
            ) as chunks:
                async for chunk in chunks:
                    yield chunk
            completed = True
        finally:
            if completed:
                status, error = _outcome(state.error)
            else:
                status, error = 499, "client_disconnected"
            self._record(
                model=model,
                status=status,
                started=started,
                stream=True,
                error=error,
            )


def _outcome(error: UpstreamErrorInfo | None) -> tuple[int, str | None]:
    """Map a finished transcode onto the status recorded in stats."""
    if error is None:
        return 200, None
    if error.code == STREAM_INTERRUPTED_CODE:
        return 502, STREAM_INTERRUPTED_CODE
    return 502, "upstream_reported_error"
