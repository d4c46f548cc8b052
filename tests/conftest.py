"""
Pytest configuration and shared fixtures
"""
import os
import sys
import pytest
from unittest.mock import MagicMock

# Add src to path for imports
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', 'src'))

from dynsec_sync.store import DeviceCredential


CONFIG_KEYS = [
    'MQTT_AUTH_MODE',
    'MQTT_HOST',
    'MQTT_PORT',
    'MQTT_DYNSEC_ADMIN_USER',
    'MQTT_DYNSEC_ADMIN_PASS',
    'MQTT_DYNSEC_DEFAULT_ROLE',
    'MQTT_COMMAND_TIMEOUT',
    'MQTT_PASSWD_FILE',
    'MQTT_MOSQUITTO_PASSWD',
    'MQTT_RELOAD_DEBOUNCE',
    'MQTT_RELOAD_COMMAND',
    'MQTT_SYSTEM_CLIENTS',
    'DATABASE_URL',
    'DYNSEC_LOG_LEVEL',
]


@pytest.fixture
def clean_env(monkeypatch):
    """Remove every dynsec-sync variable from the environment"""
    for key in CONFIG_KEYS:
        monkeypatch.delenv(key, raising=False)
    return monkeypatch


@pytest.fixture
def mock_env(clean_env):
    """Dynamic Security mode with admin credentials"""
    env_vars = {
        'MQTT_AUTH_MODE': 'dynamic_security',
        'MQTT_HOST': 'test.mqtt.local',
        'MQTT_PORT': '1883',
        'MQTT_DYNSEC_ADMIN_USER': 'server_admin',
        'MQTT_DYNSEC_ADMIN_PASS': 'admin-pw',
    }
    for key, value in env_vars.items():
        clean_env.setenv(key, value)
    return env_vars


@pytest.fixture
def fake_paho_client(monkeypatch):
    """
    Patch paho.mqtt.client.Client to return a controllable fake.

    loop_start() drives the CONNACK and SUBACK callbacks synchronously, so
    connect() resolves without a network.
    """
    fake = MagicMock()
    fake.is_connected.return_value = True
    fake.subscribe.return_value = (0, 1)  # (rc, mid)
    fake.publish.return_value = MagicMock(rc=0)
    fake.constructed = 0

    def _ctor(*args, **kwargs):
        fake.constructed += 1
        return fake

    monkeypatch.setattr("paho.mqtt.client.Client", _ctor)
    return fake


def make_device(name, username=None, password="pw", status="active", tenant="t1"):
    return DeviceCredential(
        device_id=f"id-{name}",
        display_name=name,
        broker_username=username or f"dev_{name}",
        password_plaintext=password,
        tenant_id=tenant,
        lifecycle_status=status,
    )


@pytest.fixture
def device_factory():
    return make_device


class FakeDynsecBroker:
    """
    In-memory stand-in for ControlChannelClient backed by a client roster.

    fail maps (command, username) to an exception raised once per listed entry.
    """

    def __init__(self, clients=()):
        from dynsec_sync import dynsec_schema as schema

        self.schema = schema
        self.clients = {u: None for u in clients}
        self.sent = []
        self.fail = {}
        self.verbose = False

    def commands(self, name=None):
        return [c for c in self.sent if name is None or c.command == name]

    def send_command(self, command, *, timeout=None):
        from dynsec_sync.errors import CommandRejected

        s = self.schema
        self.sent.append(command)

        errors = self.fail.get((command.command, command.username))
        if errors:
            raise errors.pop(0)

        if command.command == s.CREATE_CLIENT:
            if command.username in self.clients:
                raise CommandRejected(command.command, "Client already exists")
            self.clients[command.username] = command.password
            return s.CommandResult(command.command)
        if command.command == s.DELETE_CLIENT:
            if command.username not in self.clients:
                raise CommandRejected(command.command, "Client not found")
            del self.clients[command.username]
            return s.CommandResult(command.command)
        if command.command == s.SET_CLIENT_PASSWORD:
            if command.username not in self.clients:
                raise CommandRejected(command.command, "Client not found")
            self.clients[command.username] = command.password
            return s.CommandResult(command.command)
        if command.command == s.GET_CLIENT:
            if command.username not in self.clients:
                raise CommandRejected(command.command, "Client not found")
            return s.CommandResult(command.command, {"client": {"username": command.username}})
        if self.verbose:
            clients = [{"username": u} for u in self.clients]
        else:
            clients = list(self.clients)
        return s.CommandResult(command.command, {"clients": clients})


@pytest.fixture
def fake_broker():
    return FakeDynsecBroker()
