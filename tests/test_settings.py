from __future__ import annotations

import pytest

from zai_gateway.settings import Settings, get_settings


@pytest.fixture(autouse=True)
def _isolated_env(monkeypatch: pytest.MonkeyPatch, tmp_path) -> None:
    monkeypatch.chdir(tmp_path)
    for name in ("ZAI_TOKENS", "ZAI_TOKEN", "THINK_TAGS_MODE", "DEFAULT_STREAM"):
        monkeypatch.delenv(name, raising=False)
    get_settings.cache_clear()
    yield
    get_settings.cache_clear()


def test_credential_tokens_prefer_comma_list(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ZAI_TOKENS", " tok-a, ,tok-b ")
    monkeypatch.setenv("ZAI_TOKEN", "single")

    assert Settings().credential_tokens == ["tok-a", "tok-b"]


def test_credential_tokens_fall_back_to_single_token(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ZAI_TOKEN", " single ")

    assert Settings().credential_tokens == ["single"]


def test_credential_tokens_empty_by_default() -> None:
    settings = Settings()

    assert settings.credential_tokens == []
    assert settings.anonymous_token_enabled is True
    assert settings.think_tags_mode == "strip"
    assert settings.upstream_max_token_retries == 1


def test_settings_read_env_overrides(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("THINK_TAGS_MODE", "think")
    monkeypatch.setenv("DEFAULT_STREAM", "false")

    settings = get_settings()

    assert settings.think_tags_mode == "think"
    assert settings.default_stream is False
    assert get_settings() is settings


def test_settings_reject_unknown_think_mode(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("THINK_TAGS_MODE", "loud")

    with pytest.raises(ValueError):
        Settings()


def test_settings_load_dotenv_file(tmp_path) -> None:
    (tmp_path / ".env").write_text("ZAI_TOKENS=from-file\n", encoding="utf-8")

    assert Settings().credential_tokens == ["from-file"]
