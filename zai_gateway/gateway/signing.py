from __future__ import annotations

import base64
import hashlib
import hmac
import re
import time
import uuid
from dataclasses import dataclass

from zai_gateway.errors import SigningInputMissingError
from zai_gateway.utils.token_utils import TokenMetadataParser

DEFAULT_ROOT_KEY_HEX = "6b65792d40404040292929282928283929292d787878782626262525252525"
TIME_WINDOW_MS = 5 * 60 * 1000

_HEX_PATTERN = re.compile(r"^[0-9a-fA-F]+$")


@dataclass(frozen=True, slots=True)
class SigningContext:
    timestamp_ms: int
    request_id: str
    user_id: str
    message_text: str

    @property
    def e(self) -> str:
        return (
            f"requestId,{self.request_id},"
            f"timestamp,{self.timestamp_ms},"
            f"user_id,{self.user_id}"
        )


def decode_secret(secret: str | None) -> bytes:
    if not secret:
        return bytes.fromhex(DEFAULT_ROOT_KEY_HEX)
    if _HEX_PATTERN.match(secret) and len(secret) % 2 == 0:
        return bytes.fromhex(secret)
    return secret.encode("utf-8")


class RequestSigner:
    """Two-layer HMAC-SHA256 signer keyed on a five-minute time window.

    The first layer derives an intermediate key from the root key and the
    window index; the second signs ``e|base64(message)|timestamp`` with the
    hex form of that intermediate key. Signing is deterministic for a given
    context and root key.
    """

    def __init__(self, secret: str | None = None) -> None:
        self._root_key = decode_secret(secret)

    @property
    def root_key(self) -> bytes:
        return self._root_key

    @staticmethod
    def time_window(timestamp_ms: int) -> int:
        return timestamp_ms // TIME_WINDOW_MS

    def intermediate_key(self, timestamp_ms: int) -> str:
        window = str(self.time_window(timestamp_ms)).encode("utf-8")
        return hmac.new(self._root_key, window, hashlib.sha256).hexdigest()

    @staticmethod
    def string_to_sign(context: SigningContext) -> str:
        encoded = base64.b64encode(context.message_text.encode("utf-8")).decode("ascii")
        return f"{context.e}|{encoded}|{context.timestamp_ms}"

    def sign(self, context: SigningContext) -> str:
        if not context.message_text:
            raise SigningInputMissingError("No user message text available to sign.")
        key = self.intermediate_key(context.timestamp_ms).encode("utf-8")
        payload = self.string_to_sign(context).encode("utf-8")
        return hmac.new(key, payload, hashlib.sha256).hexdigest()

    @staticmethod
    def build_context(
        token: str,
        message_text: str,
        *,
        timestamp_ms: int | None = None,
        request_id: str | None = None,
    ) -> SigningContext:
        if not message_text:
            raise SigningInputMissingError("No user message text available to sign.")
        return SigningContext(
            timestamp_ms=timestamp_ms if timestamp_ms is not None else int(time.time() * 1000),
            request_id=request_id or str(uuid.uuid4()),
            user_id=TokenMetadataParser.extract_user_id(token),
            message_text=message_text,
        )
