"""
Dynamic Security control-channel client.

Request/response over MQTT pub/sub: each command is published to the control
topic with a correlation id, and the reply on the response topic is matched
back to the waiting caller. One connection per process, opened lazily as the
admin identity. The client counts as connected only after the response-topic
SUBACK.
"""

from __future__ import annotations

import logging
import secrets
import threading
import time
from concurrent.futures import Future, TimeoutError as FuturesTimeoutError
from dataclasses import dataclass, field
from typing import Any, Optional

import paho.mqtt.client as mqtt

from dynsec_sync.dynsec_schema import (
    CommandResult,
    ControlCommand,
    build_envelope,
    parse_response,
    peek_correlation,
)
from dynsec_sync.errors import (
    CommandRejected,
    CommandTimeout,
    MalformedResponse,
    TransportError,
    UnattributableResponse,
)
from dynsec_sync.topics import ControlTopics

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_S = 10.0
DEFAULT_CONNECT_TIMEOUT_S = 10.0


@dataclass(slots=True)
class PendingCommand:
    correlation_id: str
    description: str
    timeout_s: float
    issued_at: float = field(default_factory=time.monotonic)
    future: Future = field(default_factory=Future)


class ControlChannelClient:
    """
    Correlated command client for the broker's $CONTROL plugin topics.

    Construct once per process and share it. send_command() connects on first
    use; concurrent first callers all wait on the same connection attempt.
    There is no automatic reconnect: after a disconnect the next command opens
    a fresh connection.
    """

    def __init__(
        self,
        host: str,
        port: int,
        username: str,
        password: str,
        *,
        topics: Optional[ControlTopics] = None,
        command_timeout_s: float = DEFAULT_COMMAND_TIMEOUT_S,
        connect_timeout_s: float = DEFAULT_CONNECT_TIMEOUT_S,
        keepalive: int = 60,
        client_id: Optional[str] = None,
    ) -> None:
        self.host = host
        self.port = port
        self.username = username
        self.password = password
        self.topics = topics or ControlTopics()
        self.command_timeout_s = command_timeout_s
        self.connect_timeout_s = connect_timeout_s
        self.keepalive = keepalive
        self.client_id = client_id or f"dynsec_admin_{int(time.time() * 1000)}"

        self._client: Optional[mqtt.Client] = None
        self._conn_lock = threading.Lock()
        self._ready: Optional[Future] = None
        self._sub_mid: Optional[int] = None

        self._pending: dict[str, PendingCommand] = {}
        self._pending_lock = threading.Lock()
        self.unattributed_count = 0
        self.last_unattributed: Optional[UnattributableResponse] = None

    # -------------------------
    # Connection lifecycle
    # -------------------------
    def connect(self) -> None:
        """
        Block until the response subscription is active.

        Single-flight: if an attempt is already in progress, wait for it instead
        of starting another. Raises TransportError on failure or timeout.
        """
        with self._conn_lock:
            ready = self._ready
            leader = ready is None or (ready.done() and ready.exception() is not None)
            if leader:
                ready = Future()
                self._ready = ready

        if leader:
            self._start_connect(ready)

        try:
            ready.result(timeout=self.connect_timeout_s)
        except FuturesTimeoutError:
            exc = TransportError("Timeout waiting for Dynamic Security connection")
            self._fail_connect(ready, exc)
            raise exc from None

    def _start_connect(self, ready: Future) -> None:
        logger.info("Connecting to Dynamic Security broker %s:%s as %s", self.host, self.port, self.username)

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2,
            client_id=self.client_id,
            protocol=mqtt.MQTTv311,
            clean_session=True,
        )
        client.username_pw_set(self.username, self.password)
        client.on_connect = self._on_connect
        client.on_subscribe = self._on_subscribe
        client.on_message = self._on_message
        client.on_disconnect = self._on_disconnect

        with self._conn_lock:
            self._client = client
            self._sub_mid = None

        try:
            client.connect(self.host, self.port, keepalive=self.keepalive)
        except (OSError, ValueError) as exc:
            logger.error("Dynamic Security connection error: %s", exc)
            self._fail_connect(ready, TransportError(f"Failed to connect to {self.host}:{self.port}: {exc}"))
            return
        client.loop_start()

    def _fail_connect(self, ready: Future, exc: TransportError) -> None:
        with self._conn_lock:
            client = None
            if self._ready is ready:
                self._ready = None
                client = self._client
                self._client = None
            if not ready.done():
                ready.set_exception(exc)
        if client is not None:
            client.loop_stop()
            client.disconnect()

    def _on_connect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        ready = self._ready
        if client is not self._client or ready is None:
            return
        if reason_code != 0:
            logger.error("Dynamic Security connect refused: %s", reason_code)
            self._fail_connect(ready, TransportError(f"Broker refused connection: {reason_code}"))
            return

        logger.info("Connected to Dynamic Security broker")
        result, mid = client.subscribe(self.topics.response, qos=1)
        if result != mqtt.MQTT_ERR_SUCCESS:
            logger.error("Failed to subscribe to %s rc=%s", self.topics.response, result)
            self._fail_connect(ready, TransportError(f"Subscribe to {self.topics.response} failed rc={result}"))
            return
        with self._conn_lock:
            self._sub_mid = mid

    def _on_subscribe(self, client: mqtt.Client, userdata: Any, mid: int, reason_code_list: Any, properties: Any = None) -> None:
        ready = self._ready
        if client is not self._client or ready is None or mid != self._sub_mid:
            return
        if any(rc.is_failure for rc in reason_code_list):
            logger.error("Broker rejected subscription to %s: %s", self.topics.response, reason_code_list)
            self._fail_connect(ready, TransportError(f"Subscription to {self.topics.response} rejected"))
            return

        logger.info("Subscribed: %s", self.topics.response)
        with self._conn_lock:
            if not ready.done():
                ready.set_result(None)

    def _on_disconnect(self, client: mqtt.Client, userdata: Any, flags: Any, reason_code: Any, properties: Any = None) -> None:
        with self._conn_lock:
            if client is not self._client:
                return
            ready = self._ready
            self._ready = None
            self._client = None
            if ready is not None and not ready.done():
                ready.set_exception(TransportError(f"Disconnected during connect: {reason_code}"))

        if reason_code != 0:
            logger.warning("Unexpected disconnect from Dynamic Security broker rc=%s", reason_code)
        else:
            logger.info("Dynamic Security connection closed")

        self._fail_all_pending(TransportError("Dynamic Security connection lost"))
        # no automatic reconnect; the next command connects again
        client.loop_stop()

    def close(self) -> None:
        with self._conn_lock:
            client = self._client
            ready = self._ready
            self._client = None
            self._ready = None
            if ready is not None and not ready.done():
                ready.set_exception(TransportError("Client closed"))

        self._fail_all_pending(TransportError("Client closed"))
        if client is None:
            return
        try:
            client.disconnect()
        finally:
            client.loop_stop()
        logger.info("Dynamic Security client disconnected")

    def is_connected(self) -> bool:
        ready = self._ready
        return bool(
            self._client
            and self._client.is_connected()
            and ready is not None
            and ready.done()
            and ready.exception() is None
        )

    def __enter__(self) -> "ControlChannelClient":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    # -------------------------
    # Commands
    # -------------------------
    def send_command(self, command: ControlCommand, *, timeout: Optional[float] = None) -> CommandResult:
        """
        Publish one command and wait for its correlated response.

        Returns the first element of the response's 'responses' array.

        Raises:
            CommandRejected: the broker answered with an error field
            CommandTimeout: no response within the timeout
            TransportError: connect or publish failed, or the connection dropped
            MalformedResponse: the correlated response did not parse
        """
        self.connect()

        timeout_s = self.command_timeout_s if timeout is None else timeout
        with self._pending_lock:
            correlation_id = self._new_correlation_id()
            entry = PendingCommand(correlation_id, command.describe(), timeout_s)
            self._pending[correlation_id] = entry

        logger.debug("Sending dynsec command %s (%s)", entry.description, correlation_id)
        self._publish(entry, build_envelope(command, correlation_id))

        try:
            return entry.future.result(timeout=timeout_s)
        except FuturesTimeoutError:
            if self._take_pending(correlation_id) is not None:
                logger.warning(
                    "Dynamic Security command timeout: %s (%s), still pending: %d",
                    entry.description,
                    correlation_id,
                    self.pending_count(),
                )
                raise CommandTimeout(correlation_id, timeout_s) from None
            # response handler claimed the entry first; result is being set
            return entry.future.result()

    def _publish(self, entry: PendingCommand, payload: str) -> None:
        client = self._client
        try:
            if client is None:
                raise TransportError("Dynamic Security client not connected")
            info = client.publish(self.topics.command, payload, qos=1)
            if info.rc != mqtt.MQTT_ERR_SUCCESS:
                raise TransportError(f"Publish failed: {mqtt.error_string(info.rc)}")
        except (OSError, ValueError) as exc:
            self._take_pending(entry.correlation_id)
            raise TransportError(f"Publish failed: {exc}") from exc
        except TransportError:
            self._take_pending(entry.correlation_id)
            raise

    def _new_correlation_id(self) -> str:
        # caller holds _pending_lock
        while True:
            cid = f"cmd_{int(time.time() * 1000)}_{secrets.token_hex(4)}"
            if cid not in self._pending:
                return cid

    def pending_count(self) -> int:
        with self._pending_lock:
            return len(self._pending)

    def _take_pending(self, correlation_id: str) -> Optional[PendingCommand]:
        with self._pending_lock:
            return self._pending.pop(correlation_id, None)

    def _claim(self, correlation_id: Optional[str]) -> tuple[Optional[PendingCommand], int]:
        """
        Atomically remove the entry a response belongs to.

        Without correlation data the response is attributed only when exactly
        one command is outstanding. Returns (entry or None, pending count seen).
        """
        with self._pending_lock:
            count = len(self._pending)
            if correlation_id is not None:
                return self._pending.pop(correlation_id, None), count
            if count == 1:
                only = next(iter(self._pending))
                return self._pending.pop(only), count
            if count > 1:
                self.unattributed_count += 1
            return None, count

    def _fail_all_pending(self, exc: Exception) -> int:
        with self._pending_lock:
            entries = list(self._pending.values())
            self._pending.clear()
        for entry in entries:
            entry.future.set_exception(exc)
        if entries:
            logger.warning("Failed %d pending dynsec command(s): %s", len(entries), exc)
        return len(entries)

    # -------------------------
    # Responses
    # -------------------------
    def _on_message(self, client: mqtt.Client, userdata: Any, msg: mqtt.MQTTMessage) -> None:
        if msg.topic != self.topics.response:
            logger.warning("Unhandled topic: %s", msg.topic)
            return
        self.handle_response(msg.payload)

    def handle_response(self, payload: bytes) -> None:
        """Correlate one response-topic payload with its pending command."""
        try:
            response = parse_response(payload)
        except MalformedResponse as exc:
            entry, _ = self._claim(peek_correlation(payload))
            if entry is None:
                logger.error("Failed to parse dynsec response: %s", exc)
                return
            logger.error("Malformed dynsec response for %s: %s", entry.description, exc)
            entry.future.set_exception(exc)
            return

        entry, seen = self._claim(response.correlation_data)
        if entry is None:
            if response.correlation_data is None and seen > 1:
                self.last_unattributed = UnattributableResponse(
                    f"response without correlationData while {seen} commands are pending; dropped"
                )
                logger.warning("%s", self.last_unattributed)
            else:
                logger.info("No pending command for correlationData: %s", response.correlation_data)
            return

        if response.correlation_data is None:
            logger.debug("No correlationData in response, using pending: %s", entry.correlation_id)

        try:
            result = response.first()
        except MalformedResponse as exc:
            entry.future.set_exception(exc)
            return

        if result.error is not None:
            logger.info("Dynamic Security command error: %s: %s", entry.description, result.error)
            entry.future.set_exception(CommandRejected(result.command, result.error))
        else:
            logger.debug("Dynamic Security command success: %s", entry.description)
            entry.future.set_result(result)
