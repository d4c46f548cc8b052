"""
Credential lifecycle manager: the backend-agnostic entry point for
add / remove / rotate / exists / list.
"""

from __future__ import annotations

import logging
from typing import Optional

from dynsec_sync.config import AuthMode, SyncConfig
from dynsec_sync.control_client import ControlChannelClient
from dynsec_sync.core.reload_scheduler import DebouncedReloadScheduler, signal_broker_reload
from dynsec_sync.credentials.base import CredentialBackend
from dynsec_sync.credentials.dynsec import DynamicSecurityBackend
from dynsec_sync.credentials.passwd_file import PasswordFileBackend

logger = logging.getLogger(__name__)


class CredentialLifecycleManager:
    """
    Delegates to one backend. After each successful write on a backend that
    needs a broker reload, requests a debounced reload.
    """

    def __init__(
        self,
        backend: CredentialBackend,
        reload_scheduler: Optional[DebouncedReloadScheduler] = None,
    ) -> None:
        self.backend = backend
        if reload_scheduler is None:
            reload_scheduler = (
                DebouncedReloadScheduler() if backend.requires_reload else DebouncedReloadScheduler.disabled()
            )
        self.reload_scheduler = reload_scheduler

    def _apply_changes(self) -> None:
        if self.backend.requires_reload:
            self.reload_scheduler.reload()

    def add_device(self, username: str, password: str) -> None:
        self.backend.add_device(username, password)
        self._apply_changes()

    def remove_device(self, username: str) -> None:
        self.backend.remove_device(username)
        self._apply_changes()

    def update_password(self, username: str, new_password: str) -> None:
        self.backend.update_password(username, new_password)
        self._apply_changes()

    def sync_device(self, username: str, password: str, *, reload: bool = False) -> None:
        """Add a device and, if asked, request a broker reload (the claim flow)."""
        self.backend.add_device(username, password)
        if reload:
            self.reload_scheduler.reload()

    def client_exists(self, username: str) -> bool:
        return self.backend.client_exists(username)

    def list_clients(self) -> list[str]:
        return self.backend.list_clients()


def build_control_client(cfg: SyncConfig) -> ControlChannelClient:
    return ControlChannelClient(
        cfg.mqtt_host,
        cfg.mqtt_port,
        cfg.admin_username,
        cfg.admin_password,
        command_timeout_s=cfg.command_timeout_s,
    )


def build_manager(
    cfg: SyncConfig,
    *,
    auth_mode: Optional[AuthMode] = None,
    client: Optional[ControlChannelClient] = None,
) -> CredentialLifecycleManager:
    """
    Build the manager for cfg.auth_mode (or an explicit override, used by the
    password-file -> dynamic-security migration).
    """
    mode = auth_mode or cfg.auth_mode
    if mode is AuthMode.DYNAMIC_SECURITY:
        backend = DynamicSecurityBackend(client or build_control_client(cfg), cfg.default_role)
        return CredentialLifecycleManager(backend, DebouncedReloadScheduler.disabled())

    reload_command = cfg.reload_command
    scheduler = DebouncedReloadScheduler(
        lambda: signal_broker_reload(reload_command),
        debounce_s=cfg.reload_debounce_s,
    )
    backend = PasswordFileBackend(cfg.passwd_file, cfg.mosquitto_passwd)
    return CredentialLifecycleManager(backend, scheduler)
