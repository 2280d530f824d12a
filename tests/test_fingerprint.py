from __future__ import annotations

from typing import Any

import jwt

from zai_gateway.gateway.fingerprint import (
    BROWSER_PROFILES,
    PAGE_TITLE,
    FingerprintGenerator,
)


class _Clock:
    def __init__(self, now: float = 0.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


class _SequenceRng:
    def __init__(self) -> None:
        self.calls = 0

    def choice(self, items: Any) -> Any:
        item = items[self.calls % len(items)]
        self.calls += 1
        return item


def _generator(clock: _Clock | None = None) -> tuple[FingerprintGenerator, _SequenceRng]:
    rng = _SequenceRng()
    generator = FingerprintGenerator(
        origin="https://chat.z.ai",
        fe_version="prod-fe-test",
        cache_seconds=300.0,
        rng=rng,  # type: ignore[arg-type]
        clock=clock or _Clock(),
    )
    return generator, rng


def test_headers_are_cached_within_window_and_referer_follows_session() -> None:
    clock = _Clock()
    generator, rng = _generator(clock)

    first = generator.headers("chat-1")
    clock.now += 299
    second = generator.headers()

    assert rng.calls == 1
    assert first["User-Agent"] == second["User-Agent"] == BROWSER_PROFILES[0].user_agent
    assert first["Referer"] == "https://chat.z.ai/c/chat-1"
    assert second["Referer"] == "https://chat.z.ai/"
    assert first["X-FE-Version"] == "prod-fe-test"
    assert first["Origin"] == "https://chat.z.ai"
    assert first["Sec-Ch-Ua"] == BROWSER_PROFILES[0].sec_ch_ua


def test_headers_reselect_profile_after_cache_expiry() -> None:
    clock = _Clock()
    generator, rng = _generator(clock)

    generator.headers()
    clock.now += 301
    refreshed = generator.headers()

    assert rng.calls == 2
    assert refreshed["User-Agent"] == BROWSER_PROFILES[1].user_agent


def test_clear_cache_forces_new_profile() -> None:
    generator, rng = _generator()

    generator.headers()
    generator.clear_cache()
    generator.headers()

    assert rng.calls == 2


def test_returned_headers_do_not_leak_into_cache() -> None:
    generator, _ = _generator()

    headers = generator.headers("chat-1")
    headers["Authorization"] = "Bearer x"

    assert "Authorization" not in generator.headers("chat-1")


def test_query_params_describe_session_and_user() -> None:
    generator, _ = _generator()
    token = jwt.encode({"uid": "user-5"}, "test-secret", algorithm="HS256")

    params = generator.query_params(
        timestamp_ms=1_700_000_000_123,
        request_id="req-1",
        token=token,
        session_id="chat-9",
    )

    assert params["timestamp"] == "1700000000123"
    assert params["signature_timestamp"] == "1700000000123"
    assert params["requestId"] == "req-1"
    assert params["user_id"] == "user-5"
    assert params["token"] == token
    assert params["current_url"] == "https://chat.z.ai/c/chat-9"
    assert params["pathname"] == "/c/chat-9"
    assert params["host"] == "chat.z.ai"
    assert params["title"] == PAGE_TITLE
    assert params["screen_resolution"] == "2048x1152"
    assert params["timezone_offset"] == "-480"
    assert params["local_time"] == "2023-11-14 22:13:20.123Z"
    assert params["utc_time"] == "Tue, 14 Nov 2023 22:13:20 GMT"
    assert params["browser_name"] == "Chrome"
    assert params["user_agent"] == BROWSER_PROFILES[0].user_agent


def test_query_params_without_session_point_at_origin() -> None:
    generator, _ = _generator()

    params = generator.query_params(
        timestamp_ms=1_700_000_000_000,
        request_id="req-1",
        token="opaque",
    )

    assert params["current_url"] == "https://chat.z.ai"
    assert params["pathname"] == "/"
    assert params["user_id"] == "guest"


def test_query_params_accept_explicit_user_id() -> None:
    generator, _ = _generator()
    params = generator.query_params(
        timestamp_ms=1,
        request_id="req-1",
        token="opaque",
        user_id="signed-user",
    )
    assert params["user_id"] == "signed-user"
