"""
Read-only device credential queries against the platform database.

Only the `devices` columns this tool needs are read:
id, name, mqtt_username, mqtt_password_plain, tenant_id, status, unclaimed_at.
Nothing here writes to the database.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Mapping, Optional, Protocol

from sqlalchemy import create_engine, text
from sqlalchemy.engine import Engine

logger = logging.getLogger(__name__)


# status value of devices that have been released by their tenant
STATUS_UNCLAIMED = "unclaimed"


@dataclass(frozen=True, slots=True)
class DeviceCredential:
    device_id: str
    display_name: str
    broker_username: str
    password_plaintext: Optional[str]
    tenant_id: Optional[str]
    lifecycle_status: str

    @property
    def has_plaintext(self) -> bool:
        return bool(self.password_plaintext)

    @classmethod
    def from_row(cls, row: Mapping[str, Any]) -> "DeviceCredential":
        return cls(
            device_id=str(row["id"]),
            display_name=row["name"] or str(row["id"]),
            broker_username=row["mqtt_username"],
            password_plaintext=row["mqtt_password_plain"],
            tenant_id=row["tenant_id"],
            lifecycle_status=row["status"] or "",
        )


class CredentialStore(Protocol):
    """Query surface the reconciliation engine consumes."""

    def list_claimed_devices(self) -> list[DeviceCredential]:
        """Claimed devices with a broker username; plaintext may be missing."""
        ...

    def list_rebuildable_devices(self) -> list[DeviceCredential]:
        """Devices with username and plaintext whose status is not unclaimed."""
        ...


_COLUMNS = "d.id, d.name, d.mqtt_username, d.mqtt_password_plain, d.tenant_id, d.status"

_CLAIMED_SQL = f"""
    SELECT {_COLUMNS}
    FROM devices d
    WHERE d.mqtt_username IS NOT NULL
      AND d.mqtt_username <> ''
      AND d.unclaimed_at IS NULL
    ORDER BY d.name
"""

_REBUILDABLE_SQL = f"""
    SELECT {_COLUMNS}
    FROM devices d
    WHERE d.mqtt_username IS NOT NULL
      AND d.mqtt_username <> ''
      AND d.mqtt_password_plain IS NOT NULL
      AND d.status != :unclaimed
    ORDER BY d.name
"""


class SqlCredentialStore:
    """CredentialStore over a SQLAlchemy engine (PostgreSQL in production)."""

    def __init__(self, engine: Engine) -> None:
        self.engine = engine

    @classmethod
    def from_url(cls, database_url: str) -> "SqlCredentialStore":
        engine = create_engine(database_url, pool_pre_ping=True)
        return cls(engine)

    def _query(self, sql: str, **params: Any) -> list[DeviceCredential]:
        with self.engine.connect() as conn:
            rows = conn.execute(text(sql), params).mappings().all()
        return [DeviceCredential.from_row(r) for r in rows]

    def list_claimed_devices(self) -> list[DeviceCredential]:
        devices = self._query(_CLAIMED_SQL)
        logger.info("Found %d claimed devices in database", len(devices))
        return devices

    def list_rebuildable_devices(self) -> list[DeviceCredential]:
        devices = self._query(_REBUILDABLE_SQL, unclaimed=STATUS_UNCLAIMED)
        logger.info("Found %d claimed devices with credentials", len(devices))
        return devices

    def close(self) -> None:
        self.engine.dispose()
