"""
Error taxonomy for the control channel and credential operations.
"""

from __future__ import annotations

from typing import Optional


class CredentialSyncError(RuntimeError):
    """Base class for all control-plane and credential failures."""


class TransportError(CredentialSyncError):
    """Connection-level failure: connect, subscribe, publish or disconnect."""


class CommandTimeout(CredentialSyncError):
    """No response arrived for a command within its timeout window."""

    def __init__(self, correlation_id: str, timeout_s: float) -> None:
        super().__init__(f"Dynamic Security command timeout after {timeout_s:g}s ({correlation_id})")
        self.correlation_id = correlation_id
        self.timeout_s = timeout_s


class CommandRejected(CredentialSyncError):
    """The broker answered with an explicit error field."""

    def __init__(self, command: Optional[str], error: str) -> None:
        super().__init__(error)
        self.command = command
        self.error = error

    @property
    def not_found(self) -> bool:
        return "not found" in self.error.lower()


class MalformedResponse(CredentialSyncError):
    """A response payload did not match the expected schema."""


class UnattributableResponse(CredentialSyncError):
    """
    Response without correlationData while several commands are pending.

    The client logs it and keeps it as last_unattributed; it is never raised at a caller.
    """


class UnrecoverableCredential(CredentialSyncError):
    """A broker credential is missing and the datastore holds no plaintext to rebuild it."""

    def __init__(self, username: str) -> None:
        super().__init__(f"No plaintext password stored for {username}; manual recovery required")
        self.username = username


class PasswordFileError(CredentialSyncError):
    """The password-file utility failed."""
