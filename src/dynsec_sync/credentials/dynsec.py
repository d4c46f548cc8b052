from __future__ import annotations

import logging

from dynsec_sync import dynsec_schema as schema
from dynsec_sync.control_client import ControlChannelClient
from dynsec_sync.credentials.base import require_credentials
from dynsec_sync.errors import CommandRejected, CredentialSyncError

logger = logging.getLogger(__name__)


class DynamicSecurityBackend:
    """Credential operations as Dynamic Security commands over one shared control client."""

    requires_reload = False

    def __init__(self, client: ControlChannelClient, default_role: str = "device") -> None:
        self.client = client
        self.default_role = default_role

    def ensure_absent(self, username: str) -> bool:
        """
        Idempotent precondition: delete the client if it exists.

        A failed delete usually means the client was never there, so command
        failures are absorbed. Returns True if a client was deleted.
        """
        try:
            self.client.send_command(schema.delete_client(username))
        except CredentialSyncError as exc:
            logger.debug("ensure_absent(%s): %s", username, exc)
            return False
        logger.info("Removed existing client: %s", username)
        return True

    def add_device(self, username: str, password: str) -> None:
        require_credentials(username, password)
        logger.info("Adding device via Dynamic Security: %s", username)

        self.ensure_absent(username)
        self.client.send_command(schema.create_client(username, password, self.default_role))

        logger.info("Device credentials added via Dynamic Security: %s", username)

    def remove_device(self, username: str) -> None:
        logger.info("Removing device via Dynamic Security: %s", username)
        self.client.send_command(schema.delete_client(username))
        logger.info("Device credentials removed via Dynamic Security: %s", username)

    def update_password(self, username: str, new_password: str) -> None:
        require_credentials(username, new_password)
        logger.info("Updating device password via Dynamic Security: %s", username)
        try:
            self.client.send_command(schema.set_client_password(username, new_password))
        except CommandRejected as exc:
            if not exc.not_found:
                raise
            logger.info("Client %s not found, creating new client", username)
            self.add_device(username, new_password)
            return
        logger.info("Device password updated via Dynamic Security: %s", username)

    def client_exists(self, username: str) -> bool:
        try:
            self.client.send_command(schema.get_client(username))
        except (CredentialSyncError, ValueError) as exc:
            logger.debug("getClient(%r) failed: %s", username, exc)
            return False
        return True

    def list_clients(self) -> list[str]:
        try:
            result = self.client.send_command(schema.list_clients())
            return schema.parse_client_list(result)
        except CredentialSyncError as exc:
            logger.error("Failed to list clients: %s", exc)
            return []
