"""Error taxonomy shared by the session client."""

from __future__ import annotations

import re

AUTH_FAILURE_PATTERN = re.compile(r"auth|jwt|token|unauthorized|invalid token|unauthenticated", re.IGNORECASE)


def is_auth_failure(message: object) -> bool:
    """Return True when a transport error message looks like an auth rejection."""

    if message is None:
        return False
    return AUTH_FAILURE_PATTERN.search(str(message)) is not None


class ChatClientError(Exception):
    pass


class CredentialError(ChatClientError):
    """Terminal credential failure; the caller must route to sign-in."""


class SignOutRequired(CredentialError):
    pass


class CredentialRejected(CredentialError):
    """The refresh endpoint refused the refresh token or answered garbage."""


class TransportError(ChatClientError):
    pass


class TransportAuthError(TransportError):
    """The broker rejected the credential presented in the handshake."""


class NotConnectedError(TransportError):
    pass


class RequestTimeout(TransportError):
    def __init__(self, event: str, timeout_s: float):
        self.event = event
        self.timeout_s = timeout_s
        super().__init__(f"No ack for {event} within {timeout_s:g}s")


class RoomOperationError(ChatClientError):
    """A join/loadEarlier/send was refused or could not complete."""

    def __init__(self, operation: str, reason: str, *, room_id: str | None = None):
        self.operation = operation
        self.reason = reason
        self.room_id = room_id
        super().__init__(f"{operation} failed for room {room_id}: {reason}")
