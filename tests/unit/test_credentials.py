import subprocess
from pathlib import Path
from types import SimpleNamespace
from unittest.mock import MagicMock

import pytest

from dynsec_sync.config import AuthMode
from dynsec_sync.core.reload_scheduler import DebouncedReloadScheduler
from dynsec_sync.credentials.dynsec import DynamicSecurityBackend
from dynsec_sync.credentials.manager import CredentialLifecycleManager, build_manager
from dynsec_sync.credentials.passwd_file import PasswordFileBackend
from dynsec_sync.errors import (
    CommandRejected,
    CommandTimeout,
    PasswordFileError,
    TransportError,
)


# -------------------------
# Dynamic Security backend
# -------------------------
def test_add_device_creates_client_with_default_role(fake_broker):
    backend = DynamicSecurityBackend(fake_broker, default_role="device")

    backend.add_device("dev_1", "pw1")

    assert fake_broker.clients == {"dev_1": "pw1"}
    create = fake_broker.commands("createClient")[0]
    assert create.roles == ("device",)


def test_add_device_is_idempotent(fake_broker):
    backend = DynamicSecurityBackend(fake_broker)

    backend.add_device("dev_1", "old")
    backend.add_device("dev_1", "new")

    assert fake_broker.clients == {"dev_1": "new"}
    # each add deletes first, then creates
    assert [c.command for c in fake_broker.sent] == [
        "deleteClient",
        "createClient",
        "deleteClient",
        "createClient",
    ]


def test_ensure_absent_swallows_failures(fake_broker):
    backend = DynamicSecurityBackend(fake_broker)
    fake_broker.fail[("deleteClient", "dev_1")] = [CommandTimeout("cmd_x", 10)]

    assert backend.ensure_absent("dev_1") is False
    backend.add_device("dev_1", "pw")
    assert "dev_1" in fake_broker.clients


def test_ensure_absent_reports_deletion(fake_broker):
    fake_broker.clients["dev_1"] = "pw"
    backend = DynamicSecurityBackend(fake_broker)

    assert backend.ensure_absent("dev_1") is True
    assert backend.ensure_absent("dev_1") is False


def test_create_failure_propagates(fake_broker):
    backend = DynamicSecurityBackend(fake_broker)
    fake_broker.fail[("createClient", "dev_1")] = [TransportError("connection lost")]

    with pytest.raises(TransportError):
        backend.add_device("dev_1", "pw")


@pytest.mark.parametrize("username,password", [("", "pw"), ("dev_1", ""), (None, "pw")])
def test_add_device_requires_credentials(fake_broker, username, password):
    backend = DynamicSecurityBackend(fake_broker)

    with pytest.raises(ValueError, match="Username and password are required"):
        backend.add_device(username, password)
    assert fake_broker.sent == []


def test_remove_device_propagates_failure(fake_broker):
    backend = DynamicSecurityBackend(fake_broker)

    with pytest.raises(CommandRejected):
        backend.remove_device("ghost")


def test_update_password_existing_client(fake_broker):
    fake_broker.clients["dev_1"] = "old"
    backend = DynamicSecurityBackend(fake_broker)

    backend.update_password("dev_1", "new")

    assert fake_broker.clients["dev_1"] == "new"
    assert fake_broker.commands("createClient") == []


def test_update_password_falls_back_to_create_when_not_found(fake_broker):
    backend = DynamicSecurityBackend(fake_broker)

    backend.update_password("dev_1", "new")

    assert fake_broker.clients == {"dev_1": "new"}
    assert len(fake_broker.commands("createClient")) == 1


def test_update_password_other_rejection_propagates(fake_broker):
    fake_broker.clients["dev_1"] = "old"
    backend = DynamicSecurityBackend(fake_broker)
    fake_broker.fail[("setClientPassword", "dev_1")] = [CommandRejected("setClientPassword", "Permission denied")]

    with pytest.raises(CommandRejected, match="Permission denied"):
        backend.update_password("dev_1", "new")
    assert fake_broker.commands("createClient") == []


def test_client_exists(fake_broker):
    fake_broker.clients["dev_1"] = "pw"
    backend = DynamicSecurityBackend(fake_broker)

    assert backend.client_exists("dev_1") is True
    assert backend.client_exists("dev_2") is False


def test_client_exists_is_false_on_any_failure(fake_broker):
    fake_broker.clients["dev_1"] = "pw"
    fake_broker.fail[("getClient", "dev_1")] = [CommandTimeout("cmd_x", 10)]
    backend = DynamicSecurityBackend(fake_broker)

    assert backend.client_exists("dev_1") is False


@pytest.mark.parametrize("verbose", [False, True])
def test_list_clients_accepts_both_shapes(fake_broker, verbose):
    fake_broker.clients.update({"a": "1", "b": "2"})
    fake_broker.verbose = verbose
    backend = DynamicSecurityBackend(fake_broker)

    assert backend.list_clients() == ["a", "b"]


def test_list_clients_is_empty_on_failure(fake_broker):
    fake_broker.fail[("listClients", None)] = [TransportError("down")]
    backend = DynamicSecurityBackend(fake_broker)

    assert backend.list_clients() == []


# -------------------------
# Password-file backend
# -------------------------
@pytest.fixture
def fake_run(monkeypatch):
    run = MagicMock(return_value=SimpleNamespace(returncode=0, stdout="", stderr=""))
    monkeypatch.setattr("dynsec_sync.credentials.passwd_file.subprocess.run", run)
    return run


def test_passwd_add_uses_batch_mode(fake_run, tmp_path):
    passwd = tmp_path / "passwd"
    backend = PasswordFileBackend(passwd, "mosquitto_passwd")

    backend.add_device("dev_1", "pw1")

    args, kwargs = fake_run.call_args
    assert args[0] == ["mosquitto_passwd", "-b", str(passwd), "dev_1", "pw1"]
    assert kwargs["check"] is True


def test_passwd_remove_and_update(fake_run, tmp_path):
    passwd = tmp_path / "passwd"
    backend = PasswordFileBackend(passwd)

    backend.remove_device("dev_1")
    backend.update_password("dev_1", "pw2")

    calls = [c.args[0] for c in fake_run.call_args_list]
    assert calls[0] == ["mosquitto_passwd", "-D", str(passwd), "dev_1"]
    assert calls[1] == ["mosquitto_passwd", "-b", str(passwd), "dev_1", "pw2"]


def test_passwd_failure_raises_without_password_in_message(monkeypatch, tmp_path):
    def _fail(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd, stderr="Error: unable to open file")

    monkeypatch.setattr("dynsec_sync.credentials.passwd_file.subprocess.run", _fail)
    backend = PasswordFileBackend(tmp_path / "passwd")

    with pytest.raises(PasswordFileError) as exc:
        backend.add_device("dev_1", "supersecret")
    assert "supersecret" not in str(exc.value)
    assert "rc=1" in str(exc.value)


def test_passwd_missing_utility(monkeypatch, tmp_path):
    def _missing(cmd, **kwargs):
        raise FileNotFoundError(cmd[0])

    monkeypatch.setattr("dynsec_sync.credentials.passwd_file.subprocess.run", _missing)
    backend = PasswordFileBackend(tmp_path / "passwd", "/nope/mosquitto_passwd")

    with pytest.raises(PasswordFileError, match="not found"):
        backend.remove_device("dev_1")


def test_passwd_exists_and_list_are_permissive(tmp_path):
    backend = PasswordFileBackend(tmp_path / "passwd")

    assert backend.client_exists("anyone") is True
    assert backend.list_clients() == []


# -------------------------
# Lifecycle manager
# -------------------------
def test_manager_reloads_only_for_reload_backends(fake_broker):
    scheduler = MagicMock()
    manager = CredentialLifecycleManager(DynamicSecurityBackend(fake_broker), scheduler)

    manager.add_device("dev_1", "pw")
    manager.update_password("dev_1", "pw2")
    manager.remove_device("dev_1")

    scheduler.reload.assert_not_called()


def test_manager_requests_reload_after_each_write(fake_run, tmp_path):
    scheduler = MagicMock()
    manager = CredentialLifecycleManager(PasswordFileBackend(tmp_path / "passwd"), scheduler)

    manager.add_device("dev_1", "pw")
    manager.update_password("dev_1", "pw2")
    manager.remove_device("dev_1")

    assert scheduler.reload.call_count == 3


def test_manager_does_not_reload_after_failed_write(monkeypatch, tmp_path):
    def _fail(cmd, **kwargs):
        raise subprocess.CalledProcessError(1, cmd, stderr="boom")

    monkeypatch.setattr("dynsec_sync.credentials.passwd_file.subprocess.run", _fail)
    scheduler = MagicMock()
    manager = CredentialLifecycleManager(PasswordFileBackend(tmp_path / "passwd"), scheduler)

    with pytest.raises(PasswordFileError):
        manager.add_device("dev_1", "pw")
    scheduler.reload.assert_not_called()


def test_burst_of_writes_coalesces_into_one_reload(fake_run, tmp_path):
    actions = []
    scheduler = DebouncedReloadScheduler(lambda: actions.append(1), debounce_s=60)
    manager = CredentialLifecycleManager(PasswordFileBackend(tmp_path / "passwd"), scheduler)

    for i in range(5):
        manager.add_device(f"dev_{i}", "pw")
    scheduler.flush()

    assert actions == [1]


def test_sync_device_reload_flag(fake_run, tmp_path):
    scheduler = MagicMock()
    manager = CredentialLifecycleManager(PasswordFileBackend(tmp_path / "passwd"), scheduler)

    manager.sync_device("dev_1", "pw")
    scheduler.reload.assert_not_called()

    manager.sync_device("dev_1", "pw", reload=True)
    scheduler.reload.assert_called_once()


def _cfg(**overrides):
    base = dict(
        auth_mode=AuthMode.PASSWORD_FILE,
        mqtt_host="localhost",
        mqtt_port=1883,
        admin_username="server_admin",
        admin_password="pw",
        default_role="device",
        command_timeout_s=10.0,
        passwd_file=Path("/etc/mosquitto/passwd"),
        mosquitto_passwd="mosquitto_passwd",
        reload_debounce_s=2.0,
        reload_command=("pkill", "-HUP", "mosquitto"),
        system_clients=("server_admin",),
        database_url="sqlite://",
    )
    base.update(overrides)
    return SimpleNamespace(**base)


def test_build_manager_password_file_mode():
    manager = build_manager(_cfg())

    assert isinstance(manager.backend, PasswordFileBackend)
    assert manager.reload_scheduler.enabled is True
    assert manager.reload_scheduler.debounce_s == 2.0


def test_build_manager_dynamic_security_override(fake_broker):
    manager = build_manager(_cfg(), auth_mode=AuthMode.DYNAMIC_SECURITY, client=fake_broker)

    assert isinstance(manager.backend, DynamicSecurityBackend)
    assert manager.backend.client is fake_broker
    assert manager.reload_scheduler.enabled is False


def test_client_exists_is_false_for_blank_username(fake_broker):
    backend = DynamicSecurityBackend(fake_broker)

    assert backend.client_exists("") is False
    assert fake_broker.sent == []
