from __future__ import annotations

import base64
import json
from typing import Any


class TokenMetadataParser:
    USER_ID_CLAIMS = ("id", "user_id", "uid", "sub")
    DEFAULT_USER_ID = "guest"

    @staticmethod
    def decode_payload(token: str | None) -> dict[str, Any]:
        if not token:
            return {}
        parts = token.split(".")
        if len(parts) != 3:
            return {}

        payload_b64 = parts[1]
        padding = "=" * ((4 - len(payload_b64) % 4) % 4)

        try:
            payload_raw = base64.urlsafe_b64decode(payload_b64 + padding)
            payload = json.loads(payload_raw.decode("utf-8"))
        except (ValueError, UnicodeDecodeError):
            return {}
        return payload if isinstance(payload, dict) else {}

    @classmethod
    def extract_user_id(
        cls,
        token: str | None,
        *,
        default: str | None = None,
    ) -> str:
        payload = cls.decode_payload(token)
        for claim in cls.USER_ID_CLAIMS:
            value = payload.get(claim)
            # bool is an int subclass but never a usable identifier.
            if isinstance(value, bool) or not isinstance(value, (str, int, float)):
                continue
            text = str(value)
            if text:
                return text
        return default if default is not None else cls.DEFAULT_USER_ID


def token_preview(token: str | None, length: int = 12) -> str:
    if not token:
        return "<none>"
    if len(token) <= length:
        return token
    return token[:length] + "..."
