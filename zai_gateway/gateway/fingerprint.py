from __future__ import annotations

import logging
import random
import time
from collections.abc import Callable
from dataclasses import dataclass
from datetime import UTC, datetime
from email.utils import format_datetime

from zai_gateway.utils.token_utils import TokenMetadataParser

logger = logging.getLogger("zai_gateway")

DEFAULT_ORIGIN = "https://chat.z.ai"
PAGE_TITLE = "Z.ai Chat - Free AI powered by GLM-4.6 & GLM-4.5"


@dataclass(frozen=True, slots=True)
class BrowserProfile:
    user_agent: str
    sec_ch_ua: str
    browser_name: str
    os_name: str
    platform: str


BROWSER_PROFILES: tuple[BrowserProfile, ...] = (
    BrowserProfile(
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36"
        ),
        sec_ch_ua='"Chromium";v="140", "Not=A?Brand";v="24", "Google Chrome";v="140"',
        browser_name="Chrome",
        os_name="Windows",
        platform='"Windows"',
    ),
    BrowserProfile(
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/139.0.0.0 Safari/537.36"
        ),
        sec_ch_ua='"Chromium";v="139", "Not=A?Brand";v="24", "Google Chrome";v="139"',
        browser_name="Chrome",
        os_name="Windows",
        platform='"Windows"',
    ),
    BrowserProfile(
        user_agent=(
            "Mozilla/5.0 (Windows NT 10.0; Win64; x64; rv:126.0) "
            "Gecko/20100101 Firefox/126.0"
        ),
        sec_ch_ua='"Not_A Brand";v="8", "Chromium";v="126", "Firefox";v="126"',
        browser_name="Firefox",
        os_name="Windows",
        platform='"Windows"',
    ),
    BrowserProfile(
        user_agent=(
            "Mozilla/5.0 (Macintosh; Intel Mac OS X 10_15_7) AppleWebKit/537.36 "
            "(KHTML, like Gecko) Chrome/140.0.0.0 Safari/537.36"
        ),
        sec_ch_ua='"Chromium";v="140", "Not=A?Brand";v="24", "Google Chrome";v="140"',
        browser_name="Chrome",
        os_name="Mac OS",
        platform='"macOS"',
    ),
)


def _local_time(moment: datetime) -> str:
    return moment.strftime("%Y-%m-%d %H:%M:%S.") + f"{moment.microsecond // 1000:03d}Z"


class FingerprintGenerator:
    """Synthesises browser-like headers and telemetry query parameters.

    One profile is chosen at random and reused, together with its header
    map, until the cache window lapses. The Referer is rebuilt on every call
    so it tracks the current chat session.
    """

    def __init__(
        self,
        *,
        origin: str = DEFAULT_ORIGIN,
        fe_version: str = "prod-fe-1.0.103",
        cache_seconds: float = 300.0,
        rng: random.Random | None = None,
        clock: Callable[[], float] = time.monotonic,
        profiles: tuple[BrowserProfile, ...] = BROWSER_PROFILES,
    ) -> None:
        if not profiles:
            raise ValueError("At least one browser profile is required.")
        self._origin = origin.rstrip("/")
        self._fe_version = fe_version
        self._cache_seconds = max(0.0, float(cache_seconds))
        self._rng = rng or random.Random()
        self._clock = clock
        self._profiles = profiles
        self._cached_profile: BrowserProfile | None = None
        self._cached_headers: dict[str, str] | None = None
        self._cache_expires_at = 0.0

    @property
    def origin(self) -> str:
        return self._origin

    def clear_cache(self) -> None:
        self._cached_profile = None
        self._cached_headers = None
        self._cache_expires_at = 0.0
        logger.debug("fingerprint_cache_cleared")

    def current_profile(self) -> BrowserProfile:
        profile, _ = self._cached()
        return profile

    def _cached(self) -> tuple[BrowserProfile, dict[str, str]]:
        now = self._clock()
        if (
            self._cached_profile is not None
            and self._cached_headers is not None
            and self._cache_expires_at > now
        ):
            return self._cached_profile, self._cached_headers
        profile = self._rng.choice(self._profiles)
        headers = self._base_headers(profile)
        self._cached_profile = profile
        self._cached_headers = headers
        self._cache_expires_at = now + self._cache_seconds
        logger.debug(
            "fingerprint_profile_selected browser=%s os=%s",
            profile.browser_name,
            profile.os_name,
        )
        return profile, headers

    def _base_headers(self, profile: BrowserProfile) -> dict[str, str]:
        return {
            "Accept": "*/*",
            "Accept-Language": "zh-CN,zh;q=0.9,en;q=0.8",
            "Accept-Encoding": "gzip, deflate, br, zstd",
            "Cache-Control": "no-cache",
            "Connection": "keep-alive",
            "Content-Type": "application/json",
            "Pragma": "no-cache",
            "Sec-Fetch-Dest": "empty",
            "Sec-Fetch-Mode": "cors",
            "Sec-Fetch-Site": "same-origin",
            "User-Agent": profile.user_agent,
            "Sec-Ch-Ua": profile.sec_ch_ua,
            "Sec-Ch-Ua-Mobile": "?0",
            "Sec-Ch-Ua-Platform": profile.platform,
            "Origin": self._origin,
            "X-FE-Version": self._fe_version,
        }

    def _session_url(self, session_id: str) -> str:
        if session_id:
            return f"{self._origin}/c/{session_id}"
        return f"{self._origin}/"

    def headers(self, session_id: str = "") -> dict[str, str]:
        _, cached_headers = self._cached()
        headers = dict(cached_headers)
        headers["Referer"] = self._session_url(session_id)
        return headers

    def query_params(
        self,
        *,
        timestamp_ms: int,
        request_id: str,
        token: str,
        session_id: str = "",
        user_id: str | None = None,
    ) -> dict[str, str]:
        profile = self.current_profile()
        if user_id is None:
            user_id = TokenMetadataParser.extract_user_id(token)
        moment = datetime.fromtimestamp(timestamp_ms // 1000, tz=UTC).replace(
            microsecond=(timestamp_ms % 1000) * 1000
        )
        host = self._origin.split("://", 1)[-1]
        return {
            "timestamp": str(timestamp_ms),
            "requestId": request_id,
            "user_id": user_id,
            "version": "0.0.1",
            "platform": "web",
            "token": token,
            "user_agent": profile.user_agent,
            "language": "zh-CN",
            "languages": "zh-CN,zh",
            "timezone": "Asia/Shanghai",
            "cookie_enabled": "true",
            "screen_width": "2048",
            "screen_height": "1152",
            "screen_resolution": "2048x1152",
            "viewport_height": "654",
            "viewport_width": "1038",
            "viewport_size": "1038x654",
            "color_depth": "24",
            "pixel_ratio": "1.25",
            "current_url": (
                f"{self._origin}/c/{session_id}" if session_id else self._origin
            ),
            "pathname": f"/c/{session_id}" if session_id else "/",
            "search": "",
            "hash": "",
            "host": host,
            "hostname": host,
            "protocol": "https:",
            "referrer": "",
            "title": PAGE_TITLE,
            "timezone_offset": "-480",
            "local_time": _local_time(moment),
            "utc_time": format_datetime(moment, usegmt=True),
            "is_mobile": "false",
            "is_touch": "false",
            "max_touch_points": "10",
            "browser_name": profile.browser_name,
            "os_name": profile.os_name,
            "signature_timestamp": str(timestamp_ms),
        }
