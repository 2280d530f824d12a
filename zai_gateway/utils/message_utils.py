from __future__ import annotations

from typing import Any

MEDIA_BLOCK_TYPES = ("image_url", "video_url", "document_url", "audio_url")


def block_url(block: dict[str, Any]) -> str | None:
    block_type = block.get("type")
    if block_type not in MEDIA_BLOCK_TYPES:
        return None
    raw = block.get(block_type)
    if isinstance(raw, dict):
        raw = raw.get("url")
    if isinstance(raw, str) and raw.strip():
        return raw.strip()
    return None


def iter_text_blocks(content: list[Any]) -> list[str]:
    texts: list[str] = []
    for block in content:
        if not isinstance(block, dict) or block.get("type") != "text":
            continue
        text = block.get("text")
        if isinstance(text, str):
            texts.append(text)
    return texts


def has_image_content(messages: list[dict[str, Any]]) -> bool:
    for message in messages:
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if not isinstance(content, list):
            continue
        for block in content:
            if (
                isinstance(block, dict)
                and block.get("type") == "image_url"
                and block_url(block)
            ):
                return True
    return False


def extract_last_user_text(messages: list[dict[str, Any]]) -> str:
    """Return the text of the most recent user message.

    Plain string content is returned as-is; for block arrays the first
    non-empty text block wins.
    """
    for message in reversed(messages):
        if message.get("role") != "user":
            continue
        content = message.get("content")
        if isinstance(content, str):
            return content
        if isinstance(content, list):
            for text in iter_text_blocks(content):
                if text:
                    return text
    return ""
