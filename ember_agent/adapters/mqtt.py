"""MQTT adapter encapsulating paho-mqtt client usage.

paho runs its network loop on its own thread. Every callback it fires is
handed back to the asyncio loop that called :meth:`MQTTClient.connect`, so
handlers registered here always run on the event loop.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, List, Optional

import paho.mqtt.client as mqtt

from ..config import CloudConfig

LOGGER = logging.getLogger(__name__)

MessageHandler = Callable[[str, bytes], Awaitable[None] | None]
StatusHandler = Callable[[int], None]


class MQTTConnectionError(RuntimeError):
    """Raised when the MQTT client fails to establish a connection."""


class MQTTClient:
    """Async-friendly wrapper over the threaded paho-mqtt client.

    paho reconnects on its own after the first successful connect; callers
    re-subscribe from a connect handler.
    """

    def __init__(
        self,
        config: CloudConfig,
        *,
        client_id: str,
        keepalive: int = 60,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.client_id = client_id
        self.keepalive = keepalive
        self._log = logger or LOGGER

        self._client: Optional[mqtt.Client] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._connack: Optional[asyncio.Future[Any]] = None
        self._disconnected: Optional[asyncio.Event] = None
        self._message_handler: Optional[MessageHandler] = None
        self._connect_handlers: List[StatusHandler] = []
        self._disconnect_handlers: List[StatusHandler] = []

    def register_connect_handler(self, handler: StatusHandler) -> None:
        self._connect_handlers.append(handler)

    def register_disconnect_handler(self, handler: StatusHandler) -> None:
        self._disconnect_handlers.append(handler)

    def set_message_handler(self, handler: Optional[MessageHandler]) -> None:
        self._message_handler = handler

    async def connect(self, timeout: float = 30.0) -> None:
        """Connect to the broker and wait for its CONNACK.

        Raises:
            MQTTConnectionError: If the broker refuses the connection or does
                not answer within ``timeout`` seconds.
        """

        self._loop = asyncio.get_running_loop()
        self._connack = self._loop.create_future()
        self._disconnected = asyncio.Event()

        client = mqtt.Client(
            mqtt.CallbackAPIVersion.VERSION2, client_id=self.client_id
        )
        client.enable_logger(self._log)
        if self.config.username:
            client.username_pw_set(self.config.username, self.config.password)
        client.on_connect = self._on_connect
        client.on_disconnect = self._on_disconnect
        client.on_message = self._on_message
        self._client = client

        host, port = self.config.broker_host, self.config.broker_port
        self._log.info("Connecting to MQTT broker %s:%s", host, port)
        client.connect_async(host, port, self.keepalive)
        client.loop_start()

        try:
            reason_code = await asyncio.wait_for(self._connack, timeout=timeout)
        except asyncio.TimeoutError as exc:
            self._abandon(client)
            raise MQTTConnectionError(
                f"Timed out connecting to MQTT broker {host}:{port}"
            ) from exc

        if reason_code != 0:
            self._abandon(client)
            raise MQTTConnectionError(
                f"MQTT broker rejected connection (rc={reason_code})"
            )

    async def disconnect(self, timeout: float = 5.0) -> None:
        client = self._client
        if client is None:
            return

        client.disconnect()
        try:
            assert self._disconnected is not None
            await asyncio.wait_for(self._disconnected.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            self._log.warning("Timed out waiting for MQTT disconnect")
        finally:
            self._abandon(client)

    def publish(
        self, topic: str, payload: bytes, qos: int = 1, retain: bool = False
    ) -> None:
        info = self._require_client().publish(topic, payload, qos=qos, retain=retain)
        _check(info.rc, "Publish", topic)

    def subscribe(self, topic: str, qos: int = 1) -> None:
        result, _ = self._require_client().subscribe(topic, qos=qos)
        _check(result, "Subscribe", topic)

    def unsubscribe(self, topic: str) -> None:
        result, _ = self._require_client().unsubscribe(topic)
        _check(result, "Unsubscribe", topic)

    def _require_client(self) -> mqtt.Client:
        if self._client is None:
            raise MQTTConnectionError("MQTT client not connected")
        return self._client

    def _abandon(self, client: mqtt.Client) -> None:
        client.loop_stop()
        if self._client is client:
            self._client = None

    # paho callbacks, called from paho's network thread

    def _on_connect(self, client, userdata, flags, reason_code, properties=None) -> None:
        if reason_code == 0:
            self._log.info("Connected to MQTT broker")
            self._fire(self._connect_handlers, 0)
        else:
            self._log.error("MQTT connection failed with rc=%s", reason_code)

        loop, connack = self._loop, self._connack
        if loop is not None and connack is not None:
            loop.call_soon_threadsafe(_resolve, connack, reason_code)

    def _on_disconnect(
        self, client, userdata, flags, reason_code, properties=None
    ) -> None:
        self._log.info("Disconnected from MQTT broker (rc=%s)", reason_code)
        loop = self._loop
        if loop is None:
            return
        if self._disconnected is not None:
            loop.call_soon_threadsafe(self._disconnected.set)
        self._fire(self._disconnect_handlers, getattr(reason_code, "value", reason_code))

    def _on_message(self, client, userdata, message: mqtt.MQTTMessage) -> None:
        handler, loop = self._message_handler, self._loop
        if handler is None or loop is None:
            return

        try:
            result = handler(message.topic, message.payload)
            if asyncio.iscoroutine(result):
                asyncio.run_coroutine_threadsafe(result, loop)
        except Exception:  # pragma: no cover
            self._log.exception("MQTT message handler raised an exception")

    def _fire(self, handlers: List[StatusHandler], rc: int) -> None:
        loop = self._loop
        if loop is None:
            return
        for handler in handlers:
            loop.call_soon_threadsafe(handler, rc)


def _resolve(future: asyncio.Future[Any], value: Any) -> None:
    # a reconnect after the first CONNACK finds the future already done
    if not future.done():
        future.set_result(value)


def _check(rc: int, action: str, topic: str) -> None:
    if rc != mqtt.MQTT_ERR_SUCCESS:
        raise MQTTConnectionError(f"{action} to {topic} failed with rc={rc}")
