# tests/unit/bridge/test_token.py
"""Tests for the in-memory bridge bearer token."""

from railflow.bridge.token import BridgeToken


class TestBridgeToken:
    def test_generated_token_is_long(self) -> None:
        assert len(BridgeToken().value) >= 32

    def test_verify_header(self) -> None:
        token = BridgeToken("s" * 32)

        assert token.verify_header("Bearer " + "s" * 32)
        assert token.verify_header("bearer " + "s" * 32)
        assert not token.verify_header("Bearer wrong")
        assert not token.verify_header("s" * 32)
        assert not token.verify_header(None)
        assert not token.verify_header("Bearer ")

    def test_rotate_invalidates_previous(self) -> None:
        token = BridgeToken()
        old = token.value

        new = token.rotate()

        assert new != old
        assert not token.verify(old)
        assert token.verify(new)

    def test_repr_hides_secret(self) -> None:
        token = BridgeToken("s" * 32)

        assert "s" * 32 not in repr(token)
