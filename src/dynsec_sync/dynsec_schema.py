"""
Dynamic Security command and response schemas.

Request envelope:
  {"commands": [{"command": "...", "username": "...", ...}], "correlationData": "<id>"}

Response envelope:
  {"correlationData": "<id>"?, "responses": [{"command": "...", "error": "..."?, "data": {...}?}]}

Parsing is strict: anything that does not match raises MalformedResponse.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field
from typing import Any, Optional, Union

from dynsec_sync.errors import MalformedResponse

CREATE_CLIENT = "createClient"
DELETE_CLIENT = "deleteClient"
SET_CLIENT_PASSWORD = "setClientPassword"
GET_CLIENT = "getClient"
LIST_CLIENTS = "listClients"

_USERNAME_COMMANDS = frozenset({CREATE_CLIENT, DELETE_CLIENT, SET_CLIENT_PASSWORD, GET_CLIENT})
_PASSWORD_COMMANDS = frozenset({CREATE_CLIENT, SET_CLIENT_PASSWORD})
KNOWN_COMMANDS = _USERNAME_COMMANDS | {LIST_CLIENTS}


@dataclass(frozen=True, slots=True)
class ControlCommand:
    command: str
    username: Optional[str] = None
    password: Optional[str] = None
    roles: tuple[str, ...] = ()

    def __post_init__(self) -> None:
        if self.command not in KNOWN_COMMANDS:
            raise ValueError(f"unknown dynsec command: {self.command!r}")
        if self.command in _USERNAME_COMMANDS and not self.username:
            raise ValueError(f"{self.command} requires a username")
        if self.command in _PASSWORD_COMMANDS and not self.password:
            raise ValueError(f"{self.command} requires a password")

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"command": self.command}
        if self.username is not None:
            out["username"] = self.username
        if self.password is not None:
            out["password"] = self.password
        if self.roles:
            out["roles"] = [{"rolename": r} for r in self.roles]
        return out

    def describe(self) -> str:
        """Log-safe summary (never includes the password)."""
        if self.username:
            return f"{self.command}({self.username})"
        return self.command


def create_client(username: str, password: str, role: str) -> ControlCommand:
    return ControlCommand(CREATE_CLIENT, username=username, password=password, roles=(role,))


def delete_client(username: str) -> ControlCommand:
    return ControlCommand(DELETE_CLIENT, username=username)


def set_client_password(username: str, password: str) -> ControlCommand:
    return ControlCommand(SET_CLIENT_PASSWORD, username=username, password=password)


def get_client(username: str) -> ControlCommand:
    return ControlCommand(GET_CLIENT, username=username)


def list_clients() -> ControlCommand:
    return ControlCommand(LIST_CLIENTS)


def build_envelope(command: ControlCommand, correlation_id: str) -> str:
    return json.dumps({"commands": [command.to_dict()], "correlationData": correlation_id})


@dataclass(frozen=True, slots=True)
class CommandResult:
    command: Optional[str]
    data: dict[str, Any] = field(default_factory=dict)
    error: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.error is None


@dataclass(frozen=True, slots=True)
class ControlResponse:
    correlation_data: Optional[str]
    responses: tuple[CommandResult, ...]

    def first(self) -> CommandResult:
        if not self.responses:
            raise MalformedResponse("response envelope has an empty 'responses' array")
        return self.responses[0]


def _parse_result(raw: Any) -> CommandResult:
    if not isinstance(raw, dict):
        raise MalformedResponse(f"response element must be an object, got {type(raw).__name__}")

    command = raw.get("command")
    if command is not None and not isinstance(command, str):
        raise MalformedResponse("'command' must be a string")

    data = raw.get("data", {})
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise MalformedResponse("'data' must be an object")

    error = raw.get("error")
    if error is not None:
        error = str(error)

    return CommandResult(command=command, data=data, error=error)


def parse_response(payload: Union[bytes, str]) -> ControlResponse:
    """
    Parse a response-topic payload.

    Raises:
        MalformedResponse: payload is not UTF-8 JSON of the expected shape
    """
    if isinstance(payload, bytes):
        try:
            payload = payload.decode("utf-8")
        except UnicodeDecodeError as exc:
            raise MalformedResponse(f"payload is not UTF-8: {exc}") from exc

    try:
        obj = json.loads(payload)
    except json.JSONDecodeError as exc:
        raise MalformedResponse(f"payload is not JSON: {exc}") from exc

    if not isinstance(obj, dict):
        raise MalformedResponse("response envelope must be a JSON object")

    correlation = obj.get("correlationData")
    if correlation is not None and not isinstance(correlation, str):
        raise MalformedResponse("'correlationData' must be a string")
    if correlation == "":
        correlation = None

    responses = obj.get("responses", [])
    if not isinstance(responses, list):
        raise MalformedResponse("'responses' must be an array")

    return ControlResponse(
        correlation_data=correlation,
        responses=tuple(_parse_result(r) for r in responses),
    )


def peek_correlation(payload: Union[bytes, str]) -> Optional[str]:
    """
    Best-effort correlationData extraction from a payload that failed strict parsing,
    so a malformed reply can still fail its waiting command instead of timing out.
    """
    try:
        if isinstance(payload, bytes):
            payload = payload.decode("utf-8")
        obj = json.loads(payload)
    except (UnicodeDecodeError, json.JSONDecodeError):
        return None
    if isinstance(obj, dict) and isinstance(obj.get("correlationData"), str):
        return obj["correlationData"] or None
    return None


def parse_client_list(result: CommandResult) -> list[str]:
    """
    Extract usernames from a listClients result.

    Accepts both the plain form (["u1", "u2"]) and the verbose form
    ([{"username": "u1", ...}, ...]).
    """
    clients = result.data.get("clients")
    if clients is None:
        return []
    if not isinstance(clients, list):
        raise MalformedResponse("'data.clients' must be an array")

    usernames: list[str] = []
    for entry in clients:
        if isinstance(entry, str):
            usernames.append(entry)
        elif isinstance(entry, dict) and isinstance(entry.get("username"), str):
            usernames.append(entry["username"])
        else:
            raise MalformedResponse(f"unexpected client list entry: {entry!r}")
    return usernames
