"""
Legacy password-file backend.

Edits the broker's password file with mosquitto_passwd. Changes take effect
only after the broker reloads, which the manager requests through the
debounced reload scheduler.

Known limitation: the file is not parsed, so client_exists() always answers
True and list_clients() always answers [].
"""

from __future__ import annotations

import logging
import subprocess
from pathlib import Path

from dynsec_sync.credentials.base import require_credentials
from dynsec_sync.errors import PasswordFileError

logger = logging.getLogger(__name__)


class PasswordFileBackend:
    requires_reload = True

    def __init__(self, passwd_file: Path, mosquitto_passwd: str = "mosquitto_passwd") -> None:
        self.passwd_file = Path(passwd_file)
        self.mosquitto_passwd = mosquitto_passwd

    def _run(self, args: list[str], redacted: list[str]) -> None:
        cmd = [self.mosquitto_passwd, *args]
        try:
            res = subprocess.run(cmd, check=True, capture_output=True, text=True)
        except FileNotFoundError as exc:
            raise PasswordFileError(f"{self.mosquitto_passwd} not found") from exc
        except subprocess.CalledProcessError as exc:
            logger.error("Command: %s", " ".join([self.mosquitto_passwd, *redacted]))
            raise PasswordFileError(
                f"{self.mosquitto_passwd} failed rc={exc.returncode}: {(exc.stderr or '').strip()}"
            ) from exc

        stderr = (res.stderr or "").strip()
        if stderr and "Warning" not in stderr:
            logger.warning("mosquitto_passwd stderr: %s", stderr)

    def add_device(self, username: str, password: str) -> None:
        require_credentials(username, password)
        logger.info("Adding device to Mosquitto passwd file: %s", username)
        # mosquitto_passwd -b overwrites an existing entry, so this is idempotent
        self._run(
            ["-b", str(self.passwd_file), username, password],
            ["-b", str(self.passwd_file), username, "[password hidden]"],
        )
        logger.info("Device credentials added to Mosquitto passwd file: %s", username)

    def remove_device(self, username: str) -> None:
        logger.info("Removing device from Mosquitto passwd file: %s", username)
        args = ["-D", str(self.passwd_file), username]
        self._run(args, args)
        logger.info("Device credentials removed from Mosquitto passwd file: %s", username)

    def update_password(self, username: str, new_password: str) -> None:
        self.add_device(username, new_password)

    def client_exists(self, username: str) -> bool:
        logger.warning("clientExists not fully supported in password_file mode")
        return True

    def list_clients(self) -> list[str]:
        logger.warning("listClients only supported in dynamic_security mode")
        return []
