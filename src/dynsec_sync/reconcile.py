"""
Drift detection and repair between the device database and the broker.

check():   compare claimed devices with the live broker roster, classify each
           discrepancy, and optionally re-create missing credentials.
rebuild(): disaster recovery; re-apply every stored credential to the broker
           without diffing.

Batches never abort on a single device failure. Both check a cancel Event
between devices so a run can be interrupted cleanly.
"""

from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Iterable, Optional

from dynsec_sync.config import DEFAULT_SYSTEM_CLIENTS
from dynsec_sync.credentials.manager import CredentialLifecycleManager
from dynsec_sync.errors import CredentialSyncError, UnrecoverableCredential
from dynsec_sync.store import STATUS_UNCLAIMED, CredentialStore, DeviceCredential

logger = logging.getLogger(__name__)

# Courtesy pause between broker operations (seconds)
DEFAULT_OP_DELAY_S = 0.1


class IssueKind(str, Enum):
    MISSING_IN_BROKER = "missing_in_broker"
    MISSING_PLAINTEXT_PASSWORD = "missing_password_plain"
    STALE_IN_BROKER = "stale_in_broker"


@dataclass(frozen=True, slots=True)
class SyncIssue:
    kind: IssueKind
    username: str
    device: Optional[DeviceCredential] = None

    @property
    def fixable(self) -> bool:
        return self.kind is IssueKind.MISSING_IN_BROKER and self.device is not None and self.device.has_plaintext

    @property
    def unrecoverable(self) -> bool:
        return self.kind is IssueKind.MISSING_IN_BROKER and not self.fixable


@dataclass(frozen=True, slots=True)
class DeviceOutcome:
    username: str
    display_name: str
    ok: bool
    error: Optional[str] = None


@dataclass(slots=True)
class ReconciliationReport:
    devices: list[DeviceCredential] = field(default_factory=list)
    broker_clients: list[str] = field(default_factory=list)
    ok: list[str] = field(default_factory=list)
    issues: list[SyncIssue] = field(default_factory=list)
    repairs: list[DeviceOutcome] = field(default_factory=list)
    fix_requested: bool = False
    interrupted: bool = False

    def of_kind(self, kind: IssueKind) -> list[SyncIssue]:
        return [i for i in self.issues if i.kind is kind]

    @property
    def missing_in_broker(self) -> list[SyncIssue]:
        return self.of_kind(IssueKind.MISSING_IN_BROKER)

    @property
    def missing_plaintext(self) -> list[SyncIssue]:
        return self.of_kind(IssueKind.MISSING_PLAINTEXT_PASSWORD)

    @property
    def stale(self) -> list[SyncIssue]:
        return self.of_kind(IssueKind.STALE_IN_BROKER)

    @property
    def fixable(self) -> list[SyncIssue]:
        return [i for i in self.issues if i.fixable]

    @property
    def unrecoverable(self) -> list[SyncIssue]:
        return [i for i in self.issues if i.unrecoverable]

    @property
    def fixed(self) -> list[str]:
        return [o.username for o in self.repairs if o.ok]

    @property
    def failed_repairs(self) -> list[DeviceOutcome]:
        return [o for o in self.repairs if not o.ok]

    def unresolved(self) -> list[SyncIssue]:
        """Devices still missing in the broker after any repair."""
        fixed = set(self.fixed)
        return [i for i in self.missing_in_broker if i.username not in fixed]

    @property
    def in_sync(self) -> bool:
        return not self.issues and not self.interrupted

    @property
    def exit_code(self) -> int:
        return 1 if self.unresolved() or self.interrupted else 0


@dataclass(slots=True)
class RebuildReport:
    devices: list[DeviceCredential] = field(default_factory=list)
    outcomes: list[DeviceOutcome] = field(default_factory=list)
    dry_run: bool = False
    interrupted: bool = False

    @property
    def succeeded(self) -> list[DeviceOutcome]:
        return [o for o in self.outcomes if o.ok]

    @property
    def failed(self) -> list[DeviceOutcome]:
        return [o for o in self.outcomes if not o.ok]

    @property
    def exit_code(self) -> int:
        return 1 if self.failed or self.interrupted else 0


def _label(device: DeviceCredential) -> str:
    return f"{device.display_name} ({device.broker_username})"


class ReconciliationEngine:
    """
    Compares the database roster (via CredentialStore) with the broker roster
    (via the lifecycle manager).

    Existence checks run one at a time with a courtesy delay by default;
    max_workers > 1 runs them concurrently over the shared control client.
    Stale broker clients are reported, never deleted.
    """

    def __init__(
        self,
        store: CredentialStore,
        manager: CredentialLifecycleManager,
        *,
        system_clients: Iterable[str] = DEFAULT_SYSTEM_CLIENTS,
        op_delay_s: float = DEFAULT_OP_DELAY_S,
        max_workers: int = 1,
        emit: Optional[Callable[[str], None]] = None,
    ) -> None:
        self.store = store
        self.manager = manager
        self.system_clients = frozenset(system_clients)
        self.op_delay_s = op_delay_s
        self.max_workers = max(1, max_workers)
        self._emit = emit or (lambda line: logger.info("%s", line.strip()))

    def _pause(self, cancel: Optional[threading.Event]) -> bool:
        """Courtesy delay; returns True if cancellation was requested."""
        if cancel is None:
            if self.op_delay_s > 0:
                time.sleep(self.op_delay_s)
            return False
        return cancel.wait(self.op_delay_s)

    # -------------------------
    # Check / repair
    # -------------------------
    def check(self, *, fix: bool = False, cancel: Optional[threading.Event] = None) -> ReconciliationReport:
        report = ReconciliationReport(fix_requested=fix)

        broker = self.manager.list_clients()
        report.broker_clients = [c for c in broker if c not in self.system_clients]
        logger.info("Found %d clients in broker (%d devices)", len(broker), len(report.broker_clients))

        report.devices = self.store.list_claimed_devices()
        existence = self._check_existence(report.devices, cancel)

        db_usernames: set[str] = set()
        for device in report.devices:
            username = device.broker_username
            db_usernames.add(username)
            if username not in existence:
                report.interrupted = True
                break

            if not existence[username]:
                issue = SyncIssue(IssueKind.MISSING_IN_BROKER, username, device)
                report.issues.append(issue)
                self._emit(f"  [ISSUE] {_label(device)} - Missing in broker")
                if issue.unrecoverable:
                    self._emit(f"          {UnrecoverableCredential(username)}")
            elif not device.has_plaintext:
                report.issues.append(SyncIssue(IssueKind.MISSING_PLAINTEXT_PASSWORD, username, device))
                self._emit(f"  [WARN]  {_label(device)} - No password_plain in DB")
            else:
                report.ok.append(username)
                self._emit(f"  [OK]    {_label(device)}")

        if not report.interrupted:
            for username in report.broker_clients:
                if username not in db_usernames:
                    report.issues.append(SyncIssue(IssueKind.STALE_IN_BROKER, username))
                    self._emit(f"  [STALE] {username} - In broker but not in database")

        if fix and not report.interrupted:
            self.repair(report, cancel=cancel)

        return report

    def _check_existence(
        self, devices: list[DeviceCredential], cancel: Optional[threading.Event]
    ) -> dict[str, bool]:
        """username -> exists. Usernames left out were not checked because of cancellation."""
        results: dict[str, bool] = {}

        if self.max_workers == 1:
            for i, device in enumerate(devices):
                if cancel is not None and cancel.is_set():
                    break
                if i > 0 and self._pause(cancel):
                    break
                results[device.broker_username] = self.manager.client_exists(device.broker_username)
            return results

        def _probe(username: str) -> Optional[bool]:
            if cancel is not None and cancel.is_set():
                return None
            return self.manager.client_exists(username)

        usernames = [d.broker_username for d in devices]
        with ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="dynsec-check") as pool:
            for username, exists in zip(usernames, pool.map(_probe, usernames)):
                if exists is not None:
                    results[username] = exists
        return results

    def repair(
        self, report: ReconciliationReport, *, cancel: Optional[threading.Event] = None
    ) -> ReconciliationReport:
        """Re-create every fixable missing credential; one failure never stops the batch."""
        fixable = report.fixable
        if not fixable:
            if report.unrecoverable:
                logger.warning("No fixable issues (devices missing password_plain need manual recovery)")
            return report

        logger.info("Fixing %d device(s)...", len(fixable))
        for i, issue in enumerate(fixable):
            if cancel is not None and cancel.is_set():
                report.interrupted = True
                break
            if i > 0 and self._pause(cancel):
                report.interrupted = True
                break

            device = issue.device
            outcome = self._apply(device)
            report.repairs.append(outcome)
            if outcome.ok:
                self._emit(f"  [FIXED] {_label(device)}")
            else:
                self._emit(f"  [FAILED] {_label(device)}: {outcome.error}")

        logger.info("Fixed %d/%d devices", len(report.fixed), len(fixable))
        return report

    def _apply(self, device: DeviceCredential) -> DeviceOutcome:
        try:
            self.manager.add_device(device.broker_username, device.password_plaintext or "")
        except (CredentialSyncError, ValueError) as exc:
            logger.error("Failed to add %s: %s", device.broker_username, exc)
            return DeviceOutcome(device.broker_username, device.display_name, ok=False, error=str(exc))
        return DeviceOutcome(device.broker_username, device.display_name, ok=True)

    # -------------------------
    # Full rebuild
    # -------------------------
    def rebuild(self, *, dry_run: bool = False, cancel: Optional[threading.Event] = None) -> RebuildReport:
        """
        Re-apply every stored credential, one device at a time with a fixed delay.

        Dry run enumerates and reports without sending any broker command.
        """
        devices = [
            d
            for d in self.store.list_rebuildable_devices()
            if d.has_plaintext and d.lifecycle_status != STATUS_UNCLAIMED
        ]
        report = RebuildReport(devices=devices, dry_run=dry_run)

        for n, device in enumerate(devices, start=1):
            self._emit(f"  {n}. {_label(device)} - {device.lifecycle_status}")

        if dry_run or not devices:
            return report

        for i, device in enumerate(devices):
            if cancel is not None and cancel.is_set():
                report.interrupted = True
                break
            if i > 0 and self._pause(cancel):
                report.interrupted = True
                break

            outcome = self._apply(device)
            report.outcomes.append(outcome)
            if outcome.ok:
                self._emit(f"  [OK]    {_label(device)}")
            else:
                self._emit(f"  [FAILED] {_label(device)}: {outcome.error}")

        logger.info("Results: %d succeeded, %d failed", len(report.succeeded), len(report.failed))
        return report
