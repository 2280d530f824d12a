from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from dataclasses import dataclass

import httpx

from zai_gateway.errors import TokenExhaustedError
from zai_gateway.settings import Settings
from zai_gateway.utils.token_utils import token_preview

logger = logging.getLogger("zai_gateway")

ANONYMOUS_AUTH_PATH = "/api/v1/auths/"
DEFAULT_ANONYMOUS_USER_AGENT = (
    "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
    "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36"
)
DEFAULT_ANONYMOUS_SEC_CH_UA = (
    '"Chromium";v="140", "Not=A?Brand";v="24", "Google Chrome";v="140"'
)


@dataclass(slots=True)
class Credential:
    token: str
    is_valid: bool = True
    failure_count: int = 0
    last_used: float = 0.0


class AnonymousTokenClient:
    """Fetches a guest credential from the upstream auth endpoint."""

    def __init__(
        self,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
        origin: str,
        fe_version: str,
    ) -> None:
        self._client_getter = client_getter
        self._origin = origin.rstrip("/")
        self._fe_version = fe_version

    def _headers(self) -> dict[str, str]:
        return {
            "User-Agent": DEFAULT_ANONYMOUS_USER_AGENT,
            "Accept": "*/*",
            "Accept-Language": "zh-CN,zh;q=0.9",
            "X-FE-Version": self._fe_version,
            "sec-ch-ua": DEFAULT_ANONYMOUS_SEC_CH_UA,
            "sec-ch-ua-mobile": "?0",
            "sec-ch-ua-platform": '"Windows"',
            "Origin": self._origin,
            "Referer": f"{self._origin}/",
        }

    async def fetch(self) -> str:
        url = f"{self._origin}{ANONYMOUS_AUTH_PATH}"
        try:
            response = await self._client_getter().get(url, headers=self._headers())
        except httpx.RequestError as exc:
            raise TokenExhaustedError(
                f"Anonymous token request failed: {exc.__class__.__name__}"
            ) from exc

        if response.status_code >= 400:
            raise TokenExhaustedError(
                f"Anonymous token request failed with status {response.status_code}",
                upstream_status=response.status_code,
            )
        try:
            data = response.json()
        except ValueError as exc:
            raise TokenExhaustedError("Anonymous token response was not JSON.") from exc

        token = data.get("token") if isinstance(data, dict) else None
        if not isinstance(token, str) or not token.strip():
            raise TokenExhaustedError("Anonymous token response carried no token.")
        return token.strip()


class TokenPool:
    """Round-robin pool of upstream credentials with anonymous fallback.

    A credential is eligible while it is valid and its failure count stays
    below ``failure_threshold``. When nothing is eligible the pool hands out
    a cached anonymous token, refreshing it once per expiry no matter how
    many callers miss concurrently.
    """

    def __init__(
        self,
        tokens: list[str],
        *,
        anonymous_client: AnonymousTokenClient | None = None,
        failure_threshold: int = 3,
        anonymous_ttl_seconds: float = 3600.0,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        seen: set[str] = set()
        self._credentials: list[Credential] = []
        for token in tokens:
            token = token.strip()
            if token and token not in seen:
                seen.add(token)
                self._credentials.append(Credential(token=token))
        self._cursor = 0
        self._failure_threshold = max(1, int(failure_threshold))
        self._anonymous_client = anonymous_client
        self._anonymous_ttl_seconds = max(0.0, float(anonymous_ttl_seconds))
        self._clock = clock
        self._anonymous_token: str | None = None
        self._anonymous_expires_at = 0.0
        self._lock = asyncio.Lock()
        self._refresh_lock = asyncio.Lock()

    @classmethod
    def from_settings(
        cls,
        settings: Settings,
        *,
        client_getter: Callable[[], httpx.AsyncClient],
    ) -> TokenPool:
        anonymous_client = None
        if settings.anonymous_token_enabled:
            anonymous_client = AnonymousTokenClient(
                client_getter=client_getter,
                origin=settings.upstream_origin,
                fe_version=settings.fe_version,
            )
        pool = cls(
            settings.credential_tokens,
            anonymous_client=anonymous_client,
            failure_threshold=settings.token_failure_threshold,
            anonymous_ttl_seconds=settings.anonymous_token_ttl_seconds,
        )
        logger.info(
            "token_pool_loaded credentials=%d anonymous_fallback=%s",
            pool.size,
            anonymous_client is not None,
        )
        return pool

    @property
    def size(self) -> int:
        return len(self._credentials)

    def _is_eligible(self, credential: Credential) -> bool:
        return credential.is_valid and credential.failure_count < self._failure_threshold

    def _find(self, token: str) -> int | None:
        for index, credential in enumerate(self._credentials):
            if credential.token == token:
                return index
        return None

    async def get_token(self) -> str:
        async with self._lock:
            count = len(self._credentials)
            for offset in range(count):
                index = (self._cursor + offset) % count
                credential = self._credentials[index]
                if not self._is_eligible(credential):
                    continue
                credential.last_used = time.time()
                self._cursor = (index + 1) % count
                return credential.token

        if count:
            logger.warning("token_pool_exhausted credentials=%d", count)
        return await self._anonymous_token_or_raise()

    async def _anonymous_token_or_raise(self) -> str:
        if self._anonymous_client is None:
            raise TokenExhaustedError(
                "No valid upstream credential and anonymous tokens are disabled."
            )

        cached = await self._cached_anonymous_token()
        if cached is not None:
            return cached

        async with self._refresh_lock:
            cached = await self._cached_anonymous_token()
            if cached is not None:
                return cached
            token = await self._anonymous_client.fetch()
            async with self._lock:
                self._anonymous_token = token
                self._anonymous_expires_at = self._clock() + self._anonymous_ttl_seconds
            logger.info("anonymous_token_refreshed token=%s", token_preview(token))
            return token

    async def _cached_anonymous_token(self) -> str | None:
        async with self._lock:
            if (
                self._anonymous_token is not None
                and self._anonymous_expires_at > self._clock()
            ):
                return self._anonymous_token
            return None

    async def report_success(self, token: str) -> None:
        async with self._lock:
            index = self._find(token)
            if index is None:
                return
            credential = self._credentials[index]
            credential.failure_count = 0
            credential.is_valid = True

    async def report_failure(self, token: str) -> None:
        async with self._lock:
            if token == self._anonymous_token:
                self._anonymous_token = None
                self._anonymous_expires_at = 0.0
                logger.info("anonymous_token_discarded token=%s", token_preview(token))
                return

            index = self._find(token)
            if index is None:
                return
            credential = self._credentials[index]
            credential.failure_count += 1
            if credential.failure_count >= self._failure_threshold:
                credential.is_valid = False
                logger.warning(
                    "token_invalidated token=%s failures=%d",
                    token_preview(credential.token),
                    credential.failure_count,
                )
            if self._cursor == index:
                self._cursor = (index + 1) % len(self._credentials)

    async def is_anonymous(self, token: str) -> bool:
        # Anything the pool hands out that is not configured came from the
        # anonymous path, even if the cache has since been cleared.
        async with self._lock:
            return self._find(token) is None

    async def clear_anonymous_cache(self) -> None:
        async with self._lock:
            self._anonymous_token = None
            self._anonymous_expires_at = 0.0

    async def snapshot(self) -> list[dict[str, str | int | float | bool]]:
        async with self._lock:
            return [
                {
                    "token": token_preview(credential.token),
                    "is_valid": credential.is_valid,
                    "failure_count": credential.failure_count,
                    "last_used": round(credential.last_used, 3),
                    "current": index == self._cursor,
                }
                for index, credential in enumerate(self._credentials)
            ]
