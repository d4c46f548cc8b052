"""
dynsec-sync entrypoint.

CLI:
  dynsec-sync check [--fix] [--workers N]   -> report drift, optionally re-create missing credentials
  dynsec-sync rebuild [--dry-run]           -> re-apply every stored credential to the broker
  dynsec-sync migrate [--dry-run]           -> rebuild into Dynamic Security regardless of MQTT_AUTH_MODE
  dynsec-sync add USERNAME PASSWORD
  dynsec-sync remove USERNAME
  dynsec-sync rotate USERNAME PASSWORD
  dynsec-sync exists USERNAME
  dynsec-sync list
"""

from __future__ import annotations

import argparse
import logging
import signal
import threading
from contextlib import contextmanager
from importlib.metadata import PackageNotFoundError, version as pkg_version
from typing import Any, Iterator, Optional

from sqlalchemy.exc import SQLAlchemyError

from dynsec_sync.config import AuthMode, ConfigError, SyncConfig, load_config
from dynsec_sync.core.log_config import configure_logging
from dynsec_sync.credentials.manager import CredentialLifecycleManager, build_control_client, build_manager
from dynsec_sync.errors import CredentialSyncError
from dynsec_sync.reconcile import ReconciliationEngine, ReconciliationReport, RebuildReport
from dynsec_sync.store import SqlCredentialStore

logger = logging.getLogger(__name__)

RULE = "======================================"


def get_version_string() -> str:
    try:
        return pkg_version("dynsec-sync")
    except PackageNotFoundError:
        return "0.0.0+dev"


def _banner(title: str) -> None:
    print(f"\n{RULE}\n  {title}\n{RULE}\n")


def _install_signal_handlers(cancel: threading.Event) -> dict[int, Any]:
    def _handler(signum: int, frame) -> None:  # frame is unused, keep signature
        logger.info("Received signal %s; stopping after the current device", signum)
        cancel.set()

    previous = {}
    for sig in (signal.SIGINT, signal.SIGTERM):
        previous[sig] = signal.signal(sig, _handler)
    return previous


def _restore_signal_handlers(previous: dict[int, Any]) -> None:
    for sig, handler in previous.items():
        signal.signal(sig, handler)


@contextmanager
def _manager_session(cfg: SyncConfig, auth_mode: Optional[AuthMode] = None) -> Iterator[CredentialLifecycleManager]:
    """Manager with its control client closed and pending reloads flushed on exit."""
    mode = auth_mode or cfg.auth_mode
    client = build_control_client(cfg) if mode is AuthMode.DYNAMIC_SECURITY else None
    manager = build_manager(cfg, auth_mode=mode, client=client)
    try:
        yield manager
    finally:
        manager.reload_scheduler.flush()
        if client is not None:
            client.close()


# -------------------------
# check
# -------------------------
def _print_check_summary(report: ReconciliationReport) -> None:
    _banner("Summary")
    print(f"Total devices in DB:     {len(report.devices)}")
    print(f"Total clients in broker: {len(report.broker_clients)}")
    print(f"Missing in broker:       {len(report.missing_in_broker)}")
    print(f"  unrecoverable:         {len(report.unrecoverable)}")
    print(f"Missing password_plain:  {len(report.missing_plaintext)}")
    print(f"Stale in broker:         {len(report.stale)}")

    if report.interrupted:
        print("\nInterrupted before all devices were processed.")
    elif report.in_sync:
        print("\nAll credentials are in sync!")
        return

    if report.fix_requested and report.fixable:
        print(f"\nFixed {len(report.fixed)}/{len(report.fixable)} devices")
    elif not report.fix_requested and report.fixable:
        print("\nRun with --fix to add missing devices to broker.")
    if report.unrecoverable:
        print("Devices missing password_plain need manual recovery.")


def run_check(*, fix: bool = False, workers: int = 1) -> int:
    cfg = load_config()
    if cfg.auth_mode is AuthMode.PASSWORD_FILE:
        logger.warning(
            "MQTT_AUTH_MODE=password_file: broker existence checks are not supported, results are not meaningful"
        )

    _banner("Credential Sync Health Check")

    cancel = threading.Event()
    previous = _install_signal_handlers(cancel)
    store = SqlCredentialStore.from_url(cfg.database_url)
    try:
        with _manager_session(cfg) as manager:
            engine = ReconciliationEngine(
                store,
                manager,
                system_clients=cfg.system_clients,
                max_workers=workers,
                emit=print,
            )
            report = engine.check(fix=fix, cancel=cancel)
    finally:
        store.close()
        _restore_signal_handlers(previous)

    _print_check_summary(report)
    return report.exit_code


# -------------------------
# rebuild / migrate
# -------------------------
def _print_rebuild_summary(report: RebuildReport) -> None:
    if report.dry_run:
        print("\n[DRY RUN] Would sync the above devices. Exiting.")
        return
    if not report.devices:
        print("No devices to sync. Exiting.")
        return

    print("\n--------------------------------------")
    print(f"Results: {len(report.succeeded)} succeeded, {len(report.failed)} failed")
    print("--------------------------------------\n")
    if report.interrupted:
        print("Interrupted before all devices were synced.")
    if report.failed:
        print("WARNING: Some devices failed to sync. They may need manual attention.")
    elif not report.interrupted:
        print("All devices synced successfully!")


def run_rebuild(*, dry_run: bool = False, auth_mode: Optional[AuthMode] = None) -> int:
    cfg = load_config()
    if auth_mode is AuthMode.DYNAMIC_SECURITY and not cfg.admin_password and not dry_run:
        raise ConfigError("Missing required environment variable: MQTT_DYNSEC_ADMIN_PASS")

    _banner("Rebuild Broker Credentials from DB")
    if dry_run:
        print("*** DRY RUN MODE - No changes will be made ***\n")

    cancel = threading.Event()
    previous = _install_signal_handlers(cancel)
    store = SqlCredentialStore.from_url(cfg.database_url)
    try:
        with _manager_session(cfg, auth_mode) as manager:
            engine = ReconciliationEngine(store, manager, system_clients=cfg.system_clients, emit=print)
            report = engine.rebuild(dry_run=dry_run, cancel=cancel)
    finally:
        store.close()
        _restore_signal_handlers(previous)

    _print_rebuild_summary(report)
    return report.exit_code


# -------------------------
# single operations
# -------------------------
def run_single(cmd: str, args: argparse.Namespace) -> int:
    cfg = load_config()
    with _manager_session(cfg) as manager:
        if cmd == "add":
            manager.add_device(args.username, args.password)
            print(f"[OK] {args.username} added")
        elif cmd == "remove":
            manager.remove_device(args.username)
            print(f"[OK] {args.username} removed")
        elif cmd == "rotate":
            manager.update_password(args.username, args.password)
            print(f"[OK] {args.username} password updated")
        elif cmd == "exists":
            exists = manager.client_exists(args.username)
            print(f"{args.username}: {'present' if exists else 'absent'}")
            return 0 if exists else 1
        elif cmd == "list":
            for username in manager.list_clients():
                print(username)
        else:
            return 2
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(prog="dynsec-sync")
    p.add_argument("--version", action="version", version=get_version_string())
    p.add_argument("-v", "--verbose", action="store_true", help="Debug logging")

    sub = p.add_subparsers(dest="cmd", required=True)

    check = sub.add_parser("check", help="Check that claimed devices have broker credentials")
    check.add_argument("--fix", action="store_true", help="Add missing devices to the broker")
    check.add_argument(
        "--workers",
        type=int,
        default=1,
        metavar="N",
        help="Concurrent existence checks (default 1: sequential with a courtesy delay)",
    )

    rebuild = sub.add_parser("rebuild", help="Recreate all device credentials from the database")
    rebuild.add_argument("--dry-run", action="store_true", help="List devices without changing the broker")

    migrate = sub.add_parser(
        "migrate",
        help="Copy all device credentials into Dynamic Security (ignores MQTT_AUTH_MODE)",
    )
    migrate.add_argument("--dry-run", action="store_true", help="List devices without changing the broker")

    add = sub.add_parser("add", help="Create or replace one device credential")
    add.add_argument("username")
    add.add_argument("password")

    remove = sub.add_parser("remove", help="Delete one device credential")
    remove.add_argument("username")

    rotate = sub.add_parser("rotate", help="Rotate one device password (creates it if absent)")
    rotate.add_argument("username")
    rotate.add_argument("password")

    exists = sub.add_parser("exists", help="Exit 0 if the broker knows USERNAME")
    exists.add_argument("username")

    sub.add_parser("list", help="List broker client usernames")

    return p


def _dispatch(args: argparse.Namespace) -> int:
    if args.cmd == "check":
        if args.workers < 1:
            raise ConfigError("--workers must be >= 1")
        return run_check(fix=args.fix, workers=args.workers)
    if args.cmd == "rebuild":
        return run_rebuild(dry_run=args.dry_run)
    if args.cmd == "migrate":
        return run_rebuild(dry_run=args.dry_run, auth_mode=AuthMode.DYNAMIC_SECURITY)
    return run_single(args.cmd, args)


def main(argv: list[str] | None = None) -> None:
    args = build_parser().parse_args(argv)
    configure_logging(logging.DEBUG if args.verbose else None)

    try:
        code = _dispatch(args)
    except (ConfigError, CredentialSyncError, SQLAlchemyError, ValueError) as exc:
        logger.error("Fatal error: %s", exc)
        code = 1
    raise SystemExit(code)


if __name__ == "__main__":
    main()
