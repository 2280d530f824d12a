from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

import httpx

from zai_gateway.config import (
    ResolvedModel,
    hidden_mcp_features,
    mcp_servers_for,
)
from zai_gateway.errors import (
    SigningInputMissingError,
    TokenExhaustedError,
    UpstreamUnreachableError,
)
from zai_gateway.gateway.fingerprint import FingerprintGenerator
from zai_gateway.gateway.media import UploadedMedia
from zai_gateway.gateway.signing import RequestSigner
from zai_gateway.gateway.token_pool import TokenPool
from zai_gateway.settings import Settings
from zai_gateway.utils.message_utils import extract_last_user_text
from zai_gateway.utils.token_utils import token_preview

logger = logging.getLogger("zai_gateway")

UPSTREAM_TIMEZONE = timezone(timedelta(hours=8))
UPSTREAM_TIMEZONE_NAME = "Asia/Shanghai"
_WEEKDAYS = ("星期一", "星期二", "星期三", "星期四", "星期五", "星期六", "星期日")


def _request_error_details(exc: BaseException) -> dict[str, Any]:
    error_message = str(exc).strip() or repr(exc)
    return {
        "error": error_message,
        "error_type": exc.__class__.__name__ or "RequestError",
        "is_timeout": isinstance(exc, (httpx.TimeoutException, TimeoutError)),
    }


def build_timeout(settings: Settings) -> httpx.Timeout:
    return httpx.Timeout(
        settings.upstream_timeout_seconds,
        connect=settings.upstream_connect_timeout_seconds,
        read=settings.upstream_read_timeout_seconds,
        write=settings.upstream_write_timeout_seconds,
        pool=settings.upstream_pool_timeout_seconds,
    )


def template_variables(now: datetime | None = None) -> dict[str, str]:
    local = (now or datetime.now(tz=UPSTREAM_TIMEZONE)).astimezone(UPSTREAM_TIMEZONE)
    date_text = f"{local.year}/{local.month}/{local.day}"
    time_text = local.strftime("%H:%M:%S")
    return {
        "{{USER_NAME}}": f"Guest-{int(local.timestamp() * 1000)}",
        "{{USER_LOCATION}}": "Unknown",
        "{{CURRENT_DATETIME}}": f"{date_text} {time_text}",
        "{{CURRENT_DATE}}": date_text,
        "{{CURRENT_TIME}}": time_text,
        "{{CURRENT_WEEKDAY}}": _WEEKDAYS[local.weekday()],
        "{{CURRENT_TIMEZONE}}": UPSTREAM_TIMEZONE_NAME,
        "{{USER_LANGUAGE}}": "zh-CN",
    }


def _model_description(resolved: ResolvedModel) -> str:
    if resolved.from_catalog and resolved.profile.description:
        return resolved.profile.description
    capabilities = resolved.capabilities
    if capabilities.vision:
        return "Advanced visual understanding and analysis"
    if capabilities.thinking:
        return "Advanced reasoning and thinking model"
    if capabilities.search:
        return "Web search enhanced model"
    return "Most advanced model, proficient in coding and tool use"


def build_chat_payload(
    *,
    resolved: ResolvedModel,
    messages: list[dict[str, Any]],
    files: list[UploadedMedia] | None = None,
    signature_prompt: str = "",
    chat_id: str | None = None,
    message_id: str | None = None,
    temperature: float | None = None,
    top_p: float | None = None,
    max_tokens: int | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Assemble the upstream chat body for one request.

    Request sampling values override the model defaults. Uploaded files are
    attached at the request level only for models without vision, since
    vision models carry them inline in the messages.
    """
    profile = resolved.profile
    capabilities = resolved.capabilities
    upstream_id = profile.upstream_id
    web_search = capabilities.web_search

    now_ms = int(time.time() * 1000)
    if chat_id is None:
        chat_id = f"{now_ms}-{now_ms // 1000}"
    if message_id is None:
        message_id = str(now_ms)

    params = profile.default_params.to_payload()
    if temperature is not None:
        params["temperature"] = temperature
    if top_p is not None:
        params["top_p"] = top_p
    if max_tokens is not None:
        params["max_tokens"] = max_tokens

    payload: dict[str, Any] = {
        "stream": True,
        "chat_id": chat_id,
        "id": message_id,
        "model": upstream_id,
        "messages": messages,
        "params": params,
        "features": {
            "image_generation": False,
            "web_search": web_search,
            "auto_web_search": web_search,
            "preview_mode": web_search,
            "flags": [],
            "features": hidden_mcp_features(),
            "enable_thinking": capabilities.thinking,
        },
        "background_tasks": {
            "title_generation": False,
            "tags_generation": False,
        },
        "mcp_servers": mcp_servers_for(capabilities),
        "model_item": {
            "id": upstream_id,
            "name": resolved.requested,
            "owned_by": "openai",
            "openai": {
                "id": upstream_id,
                "name": upstream_id,
                "owned_by": "openai",
                "openai": {"id": upstream_id},
                "urlIdx": 1,
            },
            "urlIdx": 1,
            "info": {
                "id": upstream_id,
                "user_id": "api-user",
                "base_model_id": None,
                "name": profile.name,
                "params": profile.default_params.to_payload(),
                "meta": {
                    "profile_image_url": "/static/favicon.png",
                    "description": _model_description(resolved),
                    "capabilities": {
                        "vision": capabilities.vision,
                        "citations": False,
                        "preview_mode": web_search,
                        "web_search": web_search,
                        "language_detection": False,
                        "restore_n_source": False,
                        "mcp": capabilities.mcp,
                        "file_qa": capabilities.mcp,
                        "returnFc": True,
                        "returnThink": capabilities.thinking,
                        "think": capabilities.thinking,
                    },
                },
            },
        },
        "tool_servers": [],
        "variables": template_variables(now),
    }
    if files and not capabilities.vision:
        payload["files"] = [item.to_payload() for item in files]
    payload["signature_prompt"] = signature_prompt
    return payload


@dataclass(slots=True)
class UpstreamResponse:
    response: httpx.Response
    token: str
    attempts: int


class UpstreamClient:
    """Sends signed, fingerprinted chat calls and rotates credentials on failure."""

    def __init__(
        self,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        token_pool: TokenPool,
        signer: RequestSigner,
        fingerprint: FingerprintGenerator,
        url: str,
        max_token_retries: int = 1,
        headers_deadline_seconds: float = 60.0,
        timeout: httpx.Timeout | None = None,
    ) -> None:
        self._client_getter = client_getter
        self._token_pool = token_pool
        self._signer = signer
        self._fingerprint = fingerprint
        self._url = url
        self._max_token_retries = max(0, int(max_token_retries))
        self._headers_deadline_seconds = max(0.001, float(headers_deadline_seconds))
        self._timeout = timeout

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        token_pool: TokenPool,
    ) -> UpstreamClient:
        return cls(
            client_getter=client_getter,
            token_pool=token_pool,
            signer=RequestSigner(settings.zai_signing_secret),
            fingerprint=FingerprintGenerator(
                origin=settings.upstream_origin,
                fe_version=settings.fe_version,
                cache_seconds=settings.fingerprint_cache_seconds,
            ),
            url=settings.upstream_url,
            max_token_retries=settings.upstream_max_token_retries,
            headers_deadline_seconds=settings.upstream_headers_deadline_seconds,
            timeout=build_timeout(settings),
        )

    @property
    def retry_budget(self) -> int:
        return min(self._max_token_retries, max(1, self._token_pool.size))

    @staticmethod
    def signing_text(payload: dict[str, Any]) -> str:
        prompt = payload.get("signature_prompt")
        if isinstance(prompt, str) and prompt:
            return prompt
        messages = payload.get("messages")
        if isinstance(messages, list):
            return extract_last_user_text(messages)
        return ""

    async def _send(
        self,
        payload: dict[str, Any],
        session_id: str,
        token: str,
        message_text: str,
    ) -> httpx.Response:
        context = self._signer.build_context(token, message_text)
        signature = self._signer.sign(context)
        headers = self._fingerprint.headers(session_id)
        headers["Authorization"] = f"Bearer {token}"
        headers["X-Signature"] = signature
        headers["Accept"] = "application/json, text/event-stream"
        params = self._fingerprint.query_params(
            timestamp_ms=context.timestamp_ms,
            request_id=context.request_id,
            token=token,
            session_id=session_id,
            user_id=context.user_id,
        )
        client = self._client_getter()
        request = client.build_request(
            method="POST",
            url=self._url,
            params=params,
            json=payload,
            headers=headers,
            timeout=self._timeout if self._timeout is not None else httpx.USE_CLIENT_DEFAULT,
        )
        async with asyncio.timeout(self._headers_deadline_seconds):
            return await client.send(request, stream=True)

    async def call(
        self,
        payload: dict[str, Any],
        session_id: str,
        token: str,
    ) -> UpstreamResponse:
        message_text = self.signing_text(payload)
        if not message_text:
            raise SigningInputMissingError("No user message text available to sign.")

        retry_budget = self.retry_budget
        total_attempts = retry_budget + 1
        current_token = token
        last_status: int | None = None
        last_error: str | None = None
        attempts = 0

        for attempt in range(1, total_attempts + 1):
            attempts = attempt
            started = time.perf_counter()
            try:
                response = await self._send(payload, session_id, current_token, message_text)
            except (httpx.RequestError, TimeoutError) as exc:
                details = _request_error_details(exc)
                last_error = f"{details['error_type']}: {details['error']}"
                last_status = None
                logger.warning(
                    (
                        "upstream_request_error attempt=%d/%d token=%s "
                        "error_type=%s is_timeout=%s error=%s"
                    ),
                    attempt,
                    total_attempts,
                    token_preview(current_token),
                    details["error_type"],
                    details["is_timeout"],
                    details["error"],
                )
            else:
                connect_ms = (time.perf_counter() - started) * 1000.0
                if response.is_success:
                    await self._token_pool.report_success(current_token)
                    logger.info(
                        "upstream_connected attempt=%d/%d token=%s status=%d connect_ms=%.2f",
                        attempt,
                        total_attempts,
                        token_preview(current_token),
                        response.status_code,
                        connect_ms,
                    )
                    return UpstreamResponse(
                        response=response,
                        token=current_token,
                        attempts=attempt,
                    )
                last_status = response.status_code
                last_error = await self._drain_error_body(response)
                logger.warning(
                    "upstream_bad_status attempt=%d/%d token=%s status=%d body=%s",
                    attempt,
                    total_attempts,
                    token_preview(current_token),
                    response.status_code,
                    last_error,
                )

            await self._token_pool.report_failure(current_token)
            if attempt >= total_attempts:
                break
            try:
                current_token = await self._token_pool.get_token()
            except TokenExhaustedError as exc:
                logger.warning(
                    "upstream_rotation_failed attempt=%d/%d error=%s",
                    attempt,
                    total_attempts,
                    exc,
                )
                break
            logger.info(
                "upstream_retry attempt=%d/%d next_token=%s",
                attempt + 1,
                total_attempts,
                token_preview(current_token),
            )

        raise UpstreamUnreachableError(
            f"Upstream call failed after {attempts} attempt(s): {last_error or 'unknown error'}",
            upstream_status=last_status,
            attempts=attempts,
        )

    @staticmethod
    async def _drain_error_body(response: httpx.Response, limit: int = 256) -> str:
        try:
            body = await response.aread()
        except httpx.HTTPError:
            return f"status {response.status_code}"
        finally:
            await response.aclose()
        text = body.decode("utf-8", errors="replace").strip()
        return text[:limit] or f"status {response.status_code}"
