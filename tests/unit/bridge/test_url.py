# tests/unit/bridge/test_url.py
"""Tests for loopback bridge URL validation."""

import pytest

from railflow.bridge.url import BridgeUrlError, default_bridge_url, validate_bridge_url


class TestValidateBridgeUrl:
    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_blank_is_default(self, raw: str | None) -> None:
        assert validate_bridge_url(raw) == default_bridge_url() == "http://127.0.0.1:38961"

    @pytest.mark.parametrize(
        ("raw", "expected"),
        [
            ("http://127.0.0.1:4000", "http://127.0.0.1:4000"),
            ("http://127.0.0.1:4000/", "http://127.0.0.1:4000"),
            (" http://127.0.0.1 ", "http://127.0.0.1:38961"),
        ],
    )
    def test_canonical_form(self, raw: str, expected: str) -> None:
        assert validate_bridge_url(raw) == expected

    @pytest.mark.parametrize(
        "raw",
        [
            "https://127.0.0.1:4000",
            "http://localhost:4000",
            "http://10.0.0.5:4000",
            "http://user:pw@127.0.0.1:4000",
            "http://127.0.0.1:4000/api",
            "http://127.0.0.1:4000?x=1",
            "http://127.0.0.1:4000#frag",
            "http://127.0.0.1:4000?",
            "http://127.0.0.1:0",
            "http://127.0.0.1:70000",
            "127.0.0.1:4000",
        ],
    )
    def test_rejected(self, raw: str) -> None:
        with pytest.raises(BridgeUrlError):
            validate_bridge_url(raw)
