# tests/unit/web/test_providers.py
"""Tests for the provider catalogue and URL-based session inference."""

import pytest

from railflow.contracts.enums import Provider, SessionState
from railflow.web.providers import (
    AUTOMATED_PROVIDERS,
    PROVIDERS,
    get_provider_config,
    infer_session_state,
    parse_provider,
    provider_for_host,
    sanitize_url_for_ui,
)


class TestCatalogue:
    def test_every_provider_configured(self) -> None:
        assert set(PROVIDERS) == set(Provider)
        for provider in Provider:
            config = get_provider_config(provider)
            assert config.input_selectors
            assert config.response_selectors
            assert config.home_urls[0].startswith("https://")

    def test_only_gemini_is_automated(self) -> None:
        assert AUTOMATED_PROVIDERS == {Provider.GEMINI}


class TestParsing:
    @pytest.mark.parametrize(("value", "expected"), [("gemini", Provider.GEMINI), (" GPT ", Provider.GPT), ("bard", None), (None, None)])
    def test_parse_provider(self, value: object, expected: Provider | None) -> None:
        assert parse_provider(value) is expected

    @pytest.mark.parametrize(
        ("host", "expected"),
        [
            ("gemini.google.com", Provider.GEMINI),
            ("chatgpt.com", Provider.GPT),
            ("www.perplexity.ai", Provider.PERPLEXITY),
            ("claude.ai", Provider.CLAUDE),
            ("example.com", None),
        ],
    )
    def test_provider_for_host(self, host: str, expected: Provider | None) -> None:
        assert provider_for_host(host) is expected


class TestSanitizeUrl:
    def test_drops_query_and_fragment(self) -> None:
        assert sanitize_url_for_ui("https://chatgpt.com/c/123?model=x#top") == "https://chatgpt.com/c/123"

    def test_empty_path(self) -> None:
        assert sanitize_url_for_ui("https://grok.com") == "https://grok.com/"

    @pytest.mark.parametrize("raw", [None, "", "about:blank", "/relative"])
    def test_unusable(self, raw: str | None) -> None:
        assert sanitize_url_for_ui(raw) is None


class TestInferSessionState:
    def test_login_signal_wins(self) -> None:
        url = "https://accounts.google.com/signin?continue=https://gemini.google.com/app"

        assert infer_session_state(Provider.GEMINI, url) is SessionState.LOGIN_REQUIRED

    def test_active(self) -> None:
        assert infer_session_state(Provider.GEMINI, "https://gemini.google.com/app/abc") is SessionState.ACTIVE

    def test_unknown(self) -> None:
        assert infer_session_state(Provider.GEMINI, "https://example.com/") is SessionState.UNKNOWN
        assert infer_session_state(Provider.GEMINI, None) is SessionState.UNKNOWN
        assert infer_session_state(Provider.GEMINI, "https://gemini.google.com/app", context_open=False) is SessionState.UNKNOWN
