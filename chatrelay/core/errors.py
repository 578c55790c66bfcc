from __future__ import annotations


class RelayError(Exception):
    """Base class for every error raised by the relay core."""


# ---------------------------------------------------------------------------
# Handshake
# ---------------------------------------------------------------------------

class AuthError(RelayError):
    """Handshake rejected. ``reason`` is sent to the client as the close reason."""

    reason = "Invalid token"

    def __init__(self, detail: str | None = None) -> None:
        super().__init__(detail or self.reason)
        self.detail = detail or self.reason


class MissingToken(AuthError):
    reason = "No token"


class InvalidToken(AuthError):
    reason = "Invalid token"


# ---------------------------------------------------------------------------
# Routing / presence / storage
# ---------------------------------------------------------------------------

class RouteError(RelayError):
    code = "route_error"


class InvalidPayload(RouteError):
    code = "invalid_payload"


class PresenceLimitExceeded(RelayError):
    pass


class StoreError(RelayError):
    code = "store_unavailable"


__all__ = [
    "RelayError",
    "AuthError",
    "MissingToken",
    "InvalidToken",
    "RouteError",
    "InvalidPayload",
    "PresenceLimitExceeded",
    "StoreError",
]
