from __future__ import annotations

import base64
import binascii
import logging
import re
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any, Literal

import httpx

from zai_gateway.config import ModelCapabilities
from zai_gateway.errors import AnonymousMediaRejectedError, MediaUploadError
from zai_gateway.utils.message_utils import (
    MEDIA_BLOCK_TYPES,
    block_url,
    has_image_content,
    iter_text_blocks,
)
from zai_gateway.utils.token_utils import token_preview

logger = logging.getLogger("zai_gateway")

DEFAULT_MEDIA_TYPE = "image/jpeg"
_DATA_URL_PATTERN = re.compile(
    r"^data:(?P<mime>[\w.+-]+/[\w.+-]+)(?:;[^;,]+)*;base64,(?P<data>.+)$",
    re.DOTALL,
)


@dataclass(slots=True)
class UploadedMedia:
    id: str
    filename: str
    size: int
    type: str
    url: str | None = None

    @property
    def placeholder(self) -> str:
        return f"{self.id}_{self.filename}"

    def to_payload(self) -> dict[str, Any]:
        payload: dict[str, Any] = {
            "id": self.id,
            "filename": self.filename,
            "size": self.size,
            "type": self.type,
        }
        if self.url:
            payload["url"] = self.url
        return payload


def _filename_for(mime_type: str) -> str:
    extension = mime_type.split(";", 1)[0].split("/", 1)[-1].strip() or "jpg"
    return f"image.{extension}"


class MediaUploader:
    """Moves inline or remote media into upstream file storage."""

    def __init__(
        self,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        files_url: str,
        origin: str,
        fetch_timeout_seconds: float = 30.0,
    ) -> None:
        self._client_getter = client_getter
        self._files_url = files_url
        self._origin = origin.rstrip("/")
        self._fetch_timeout = httpx.Timeout(fetch_timeout_seconds)

    async def _load(self, url: str) -> tuple[bytes, str]:
        match = _DATA_URL_PATTERN.match(url)
        if match is not None:
            try:
                data = base64.b64decode(match.group("data"), validate=False)
            except (binascii.Error, ValueError) as exc:
                raise MediaUploadError("Invalid base64 media payload.") from exc
            return data, match.group("mime")

        if url.startswith(("http://", "https://")):
            try:
                response = await self._client_getter().get(
                    url,
                    timeout=self._fetch_timeout,
                    follow_redirects=True,
                )
            except httpx.RequestError as exc:
                raise MediaUploadError(
                    f"Failed to download media: {exc.__class__.__name__}"
                ) from exc
            if response.status_code >= 400:
                raise MediaUploadError(
                    f"Failed to download media: status {response.status_code}",
                    upstream_status=response.status_code,
                )
            mime_type = response.headers.get("content-type") or DEFAULT_MEDIA_TYPE
            return response.content, mime_type.split(";", 1)[0].strip()

        raise MediaUploadError("Unsupported media URL format.")

    async def upload(self, url: str, token: str) -> UploadedMedia:
        data, mime_type = await self._load(url)
        filename = _filename_for(mime_type)
        headers = {
            "Authorization": f"Bearer {token}",
            "Origin": self._origin,
            "Referer": f"{self._origin}/",
        }
        try:
            response = await self._client_getter().post(
                self._files_url,
                headers=headers,
                files={"file": (filename, data, mime_type)},
            )
        except httpx.RequestError as exc:
            raise MediaUploadError(
                f"Media upload failed: {exc.__class__.__name__}"
            ) from exc
        if response.status_code >= 400:
            raise MediaUploadError(
                f"Media upload failed with status {response.status_code}",
                upstream_status=response.status_code,
            )
        try:
            result = response.json()
        except ValueError as exc:
            raise MediaUploadError("Media upload response was not JSON.") from exc
        if not isinstance(result, dict) or not result.get("id"):
            raise MediaUploadError("Media upload response carried no file id.")

        uploaded = UploadedMedia(
            id=str(result["id"]),
            filename=str(result.get("filename") or filename),
            size=len(data),
            type=mime_type,
            url=result.get("url") if isinstance(result.get("url"), str) else None,
        )
        logger.info(
            "media_uploaded file_id=%s size=%d type=%s token=%s",
            uploaded.id,
            uploaded.size,
            uploaded.type,
            token_preview(token),
        )
        return uploaded


@dataclass(slots=True)
class NormalizedContent:
    messages: list[dict[str, Any]]
    files: list[UploadedMedia] = field(default_factory=list)
    failed_uploads: int = 0


class ContentNormalizer:
    """Rewrites OpenAI-style message content into what the upstream accepts.

    Vision models keep images inline, pointed at uploaded file ids. Other
    models get flattened text, with any uploaded images attached to the
    request as files.
    """

    def __init__(
        self,
        uploader: MediaUploader,
        *,
        failure_policy: Literal["drop", "fail"] = "drop",
    ) -> None:
        self._uploader = uploader
        self._failure_policy = failure_policy

    async def normalize(
        self,
        messages: list[dict[str, Any]],
        capabilities: ModelCapabilities,
        token: str,
        *,
        is_anonymous: bool = False,
    ) -> NormalizedContent:
        if is_anonymous and has_image_content(messages):
            raise AnonymousMediaRejectedError(
                "Image content requires a configured credential; "
                "anonymous tokens cannot upload files."
            )

        result = NormalizedContent(messages=[])
        for message in messages:
            content = message.get("content")
            if not isinstance(content, list):
                result.messages.append(dict(message))
                continue
            is_user = message.get("role") == "user"
            if capabilities.vision:
                if is_user:
                    new_content = await self._inline_media(content, token, result)
                else:
                    new_content = content
            else:
                if is_user:
                    await self._collect_files(content, token, result)
                new_content = "\n".join(iter_text_blocks(content))
            result.messages.append({**message, "content": new_content})
        return result

    async def _upload_or_drop(
        self,
        url: str,
        token: str,
        result: NormalizedContent,
    ) -> UploadedMedia | None:
        try:
            return await self._uploader.upload(url, token)
        except MediaUploadError as exc:
            if self._failure_policy == "fail":
                raise
            result.failed_uploads += 1
            logger.warning(
                "media_upload_dropped error=%s failed_uploads=%d",
                exc.message,
                result.failed_uploads,
            )
            return None

    async def _collect_files(
        self,
        content: list[Any],
        token: str,
        result: NormalizedContent,
    ) -> None:
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "image_url":
                url = block_url(block)
                if url is None:
                    continue
                uploaded = await self._upload_or_drop(url, token, result)
                if uploaded is not None:
                    result.files.append(uploaded)
            elif block_type in MEDIA_BLOCK_TYPES:
                logger.warning("media_block_dropped type=%s vision=false", block_type)

    async def _inline_media(
        self,
        content: list[Any],
        token: str,
        result: NormalizedContent,
    ) -> str | list[dict[str, Any]]:
        new_content: list[dict[str, Any]] = []
        for block in content:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type")
            if block_type == "text":
                new_content.append(block)
            elif block_type == "image_url":
                url = block_url(block)
                if url is None:
                    continue
                uploaded = await self._upload_or_drop(url, token, result)
                if uploaded is not None:
                    new_content.append(
                        {"type": "image_url", "image_url": {"url": uploaded.placeholder}}
                    )
            elif block_type in MEDIA_BLOCK_TYPES:
                logger.warning("media_block_dropped type=%s vision=true", block_type)

        if len(new_content) == 1 and new_content[0].get("type") == "text":
            return str(new_content[0].get("text") or "")
        if not new_content:
            return ""
        return new_content
