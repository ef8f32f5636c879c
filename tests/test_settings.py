"""Configuration settings behaviour tests."""

from __future__ import annotations

import pytest

from app.config import Settings


def test_defaults_match_documented_values() -> None:
    settings = Settings(_env_file=None)

    assert settings.server_port == 3000
    assert settings.cache_lifetime_seconds == 120
    assert settings.progress_interval_seconds == 30
    assert settings.progress_tracking is True
    assert settings.password_length == 6
    assert settings.preferred_subtitle_language == "eng"
    assert settings.session_cookie_name == "jellyvr_session"


def test_jellyfin_base_url_strips_trailing_slash() -> None:
    """Paths are appended to the base URL, so it must not end with a slash."""

    settings = Settings(_env_file=None, JELLYFIN_URL="https://media.example.com/jellyfin/")

    assert settings.jellyfin_base_url == "https://media.example.com/jellyfin"


def test_blank_subtitle_language_lists_every_track() -> None:
    settings = Settings(_env_file=None, PREFERRED_SUBTITLE_LANGUAGE="  ")

    assert settings.preferred_subtitle_language is None


def test_log_level_is_normalised() -> None:
    settings = Settings(_env_file=None, LOG_LEVEL="debug")

    assert settings.log_level == "DEBUG"


@pytest.mark.parametrize("length", [3, 33])
def test_password_length_is_bounded(length: int) -> None:
    with pytest.raises(ValueError):
        Settings(_env_file=None, PASSWORD_LENGTH=length)


def test_cache_ttl_must_be_positive() -> None:
    with pytest.raises(ValueError):
        Settings(_env_file=None, CACHE_TTL=0)
