"""
Credential backend interface.

Two implementations, chosen once at startup from MQTT_AUTH_MODE:
- DynamicSecurityBackend: commands over the broker's $CONTROL topics
- PasswordFileBackend:    mosquitto_passwd edits + debounced broker reload
"""

from __future__ import annotations

from typing import Protocol


class CredentialBackend(Protocol):
    #: True when writes only take effect after the broker reloads its config
    requires_reload: bool

    def add_device(self, username: str, password: str) -> None:
        """Create or replace the credential (idempotent)."""
        ...

    def remove_device(self, username: str) -> None:
        ...

    def update_password(self, username: str, new_password: str) -> None:
        """Rotate the password, creating the credential if it is absent."""
        ...

    def client_exists(self, username: str) -> bool:
        """Boolean query; never raises for command failures."""
        ...

    def list_clients(self) -> list[str]:
        """All broker usernames, or [] when unknown. Never raises for command failures."""
        ...


def require_credentials(username: str, password: str) -> None:
    if not username or not password:
        raise ValueError("Username and password are required")
