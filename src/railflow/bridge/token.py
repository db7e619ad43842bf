# src/railflow/bridge/token.py
"""Bearer token for the loopback bridge. Held in memory only."""

import hmac
import secrets

TOKEN_BYTES = 32
_BEARER_PREFIX = "bearer "


class BridgeToken:
    """Current bridge token with constant-time verification.

    rotate() replaces the secret; the previous value stops verifying
    immediately.
    """

    def __init__(self, value: str | None = None) -> None:
        self._value = value or secrets.token_urlsafe(TOKEN_BYTES)

    @property
    def value(self) -> str:
        return self._value

    def rotate(self) -> str:
        self._value = secrets.token_urlsafe(TOKEN_BYTES)
        return self._value

    def verify(self, candidate: str | None) -> bool:
        if not candidate:
            return False
        return hmac.compare_digest(candidate.encode("utf-8"), self._value.encode("utf-8"))

    def verify_header(self, authorization: str | None) -> bool:
        """Check an Authorization header of the form 'Bearer <token>'."""
        if not authorization or not authorization.lower().startswith(_BEARER_PREFIX):
            return False
        return self.verify(authorization[len(_BEARER_PREFIX) :].strip())

    def __repr__(self) -> str:
        return "BridgeToken(<redacted>)"
