"""Tests for the MQTT adapter."""

import asyncio
from types import SimpleNamespace

import pytest
import pytest_asyncio

from ember_agent.adapters import MQTTClient, MQTTConnectionError
from ember_agent.config import CloudConfig

import paho.mqtt.client as mqtt


class FakeMqttClient:
    """Minimal fake paho-mqtt client for testing."""

    def __init__(
        self,
        loop: asyncio.AbstractEventLoop,
        events: dict,
        *args,
        rc_connect: int = 0,
        rc_disconnect: int = 0,
        publish_rc: int = mqtt.MQTT_ERR_SUCCESS,
        subscribe_rc: int = mqtt.MQTT_ERR_SUCCESS,
        **kwargs,
    ):
        self._loop = loop
        self._events = events
        self._rc_connect = rc_connect
        self._rc_disconnect = rc_disconnect
        self._publish_rc = publish_rc
        self._subscribe_rc = subscribe_rc
        events["client_args"] = (args, kwargs)

        self.on_connect = None
        self.on_disconnect = None
        self.on_message = None

    # paho interface -------------------------------------------------
    def enable_logger(self, logger):
        self._events.setdefault("logger_enabled", True)

    def username_pw_set(self, username, password=None):
        self._events["auth"] = (username, password)

    def connect_async(self, host, port, keepalive):
        self._events["connect_args"] = (host, port, keepalive)
        if self.on_connect:
            self._loop.call_soon(
                self.on_connect,
                self,
                None,
                None,
                self._rc_connect,
                None,
            )

    def loop_start(self):
        self._events["loop_start"] = self._events.get("loop_start", 0) + 1

    def loop_stop(self):
        self._events["loop_stop"] = self._events.get("loop_stop", 0) + 1

    def disconnect(self):
        self._events["disconnect_called"] = True
        if self.on_disconnect:
            self._loop.call_soon(
                self.on_disconnect,
                self,
                None,
                None,
                self._rc_disconnect,
                None,
            )

    def publish(self, topic, payload, qos=0, retain=False, properties=None):
        self._events.setdefault("published", []).append(
            (topic, payload, qos, retain, properties)
        )
        return SimpleNamespace(rc=self._publish_rc)

    def subscribe(self, topic, qos=0):
        self._events.setdefault("subscribed", []).append((topic, qos))
        return self._subscribe_rc, 1

    def unsubscribe(self, topic):
        self._events.setdefault("unsubscribed", []).append(topic)
        return mqtt.MQTT_ERR_SUCCESS, 2


def install_fake(monkeypatch, events, **options):
    loop = asyncio.get_running_loop()

    def factory(*args, **kwargs):
        return FakeMqttClient(loop, events, *args, **options, **kwargs)

    monkeypatch.setattr("ember_agent.adapters.mqtt.mqtt.Client", factory)


@pytest_asyncio.fixture
async def mqtt_client(monkeypatch):
    events: dict = {}
    install_fake(monkeypatch, events)

    config = CloudConfig(
        broker_host="broker.ember.dev",
        broker_port=1883,
        username="printer-539",
        password="token",
        printer_id="539",
    )

    client = MQTTClient(config, client_id="ember-agent-539")
    await client.connect()

    yield client, events

    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_configures_client(mqtt_client):
    client, events = mqtt_client

    args, kwargs = events["client_args"]
    assert args == (mqtt.CallbackAPIVersion.VERSION2,)
    assert kwargs == {"client_id": "ember-agent-539"}
    assert events["connect_args"] == ("broker.ember.dev", 1883, 60)
    assert events["auth"] == ("printer-539", "token")
    assert events["loop_start"] == 1
    assert "loop_stop" not in events


@pytest.mark.asyncio
async def test_publish_delegates_to_client(mqtt_client):
    client, events = mqtt_client

    client.publish("test/topic", b"payload", qos=1, retain=True)

    assert events["published"] == [("test/topic", b"payload", 1, True, None)]


@pytest.mark.asyncio
async def test_subscribe_and_unsubscribe_record_topics(mqtt_client):
    client, events = mqtt_client

    client.subscribe("ember/printers/539/commands", qos=1)
    client.unsubscribe("ember/printers/539/commands")

    assert events["subscribed"] == [("ember/printers/539/commands", 1)]
    assert events["unsubscribed"] == ["ember/printers/539/commands"]


@pytest.mark.asyncio
async def test_publish_before_connect_raises():
    client = MQTTClient(CloudConfig(), client_id="ember-agent-unassigned")

    with pytest.raises(MQTTConnectionError):
        client.publish("test", b"payload")
    with pytest.raises(MQTTConnectionError):
        client.subscribe("test")


@pytest.mark.asyncio
async def test_message_handler_dispatches_async(monkeypatch):
    events: dict = {}
    install_fake(monkeypatch, events)

    client = MQTTClient(CloudConfig(broker_host="broker.ember.dev"), client_id="p-99")

    message_event = asyncio.Event()

    async def handler(topic: str, payload: bytes) -> None:
        events["handled"] = (topic, payload)
        message_event.set()

    client.set_message_handler(handler)
    await client.connect()

    message = SimpleNamespace(topic="ember/topic", payload=b"data")
    client._on_message(client._client, None, message)  # type: ignore[arg-type]

    await asyncio.wait_for(message_event.wait(), timeout=1.0)
    await client.disconnect()

    assert events["handled"] == ("ember/topic", b"data")


@pytest.mark.asyncio
async def test_publish_failure_raises(monkeypatch):
    events: dict = {}
    install_fake(monkeypatch, events, publish_rc=mqtt.MQTT_ERR_NO_CONN)

    client = MQTTClient(CloudConfig(broker_host="broker.ember.dev"), client_id="p-7")
    await client.connect()

    with pytest.raises(MQTTConnectionError):
        client.publish("test", b"payload")

    await client.disconnect()


@pytest.mark.asyncio
async def test_connect_and_disconnect_handlers_invoked(monkeypatch):
    events: dict = {}
    install_fake(monkeypatch, events, rc_disconnect=1)

    client = MQTTClient(CloudConfig(broker_host="broker.ember.dev"), client_id="p-123")

    connect_event = asyncio.Event()
    disconnect_event = asyncio.Event()

    def _on_connect(rc: int) -> None:
        events["connect_rc"] = rc
        connect_event.set()

    def _on_disconnect(rc: int) -> None:
        events["disconnect_rc"] = rc
        disconnect_event.set()

    client.register_connect_handler(_on_connect)
    client.register_disconnect_handler(_on_disconnect)

    await client.connect()
    await asyncio.wait_for(connect_event.wait(), timeout=1.0)
    await client.disconnect()

    await asyncio.wait_for(disconnect_event.wait(), timeout=1.0)
    assert events.get("connect_rc") == 0
    assert events.get("disconnect_rc") == 1
    assert events["loop_stop"] == 1
    with pytest.raises(MQTTConnectionError):
        client.publish("ember/topic", b"late")


@pytest.mark.asyncio
async def test_connect_failure_raises(monkeypatch):
    events: dict = {}
    install_fake(monkeypatch, events, rc_connect=5)

    client = MQTTClient(CloudConfig(broker_host="broker.ember.dev"), client_id="p-8")

    with pytest.raises(MQTTConnectionError):
        await client.connect()

    assert events["loop_stop"] == 1


@pytest.mark.asyncio
async def test_subscribe_failure_raises(monkeypatch):
    events: dict = {}
    install_fake(monkeypatch, events, subscribe_rc=mqtt.MQTT_ERR_NO_CONN)

    client = MQTTClient(CloudConfig(broker_host="broker.ember.dev"), client_id="p-9")
    await client.connect()

    with pytest.raises(MQTTConnectionError, match="Subscribe to ember/commands failed"):
        client.subscribe("ember/commands")

    await client.disconnect()
