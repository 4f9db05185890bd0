"""Main application entry-point for ember-agent."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from typing import Any, Dict, Optional

import aiohttp

from . import constants
from .ack import AcknowledgementReporter
from .adapters import CommandPipeClient, HttpBlobStore, MQTTClient, MQTTConnectionError
from .adapters.blob_store import BlobStore
from .commands import CommandProcessor
from .config import AgentConfig, load_config
from .errors import PipeError
from .health import HealthReporter, HealthServer
from .jobs import LogsJob, PassthroughJob, PrintDataJob, WirelessJob
from .logging import configure_logging
from .state_store import DeviceStateStore
from .wireless import WirelessConfigurator

LOGGER = logging.getLogger(__name__)

RECONNECT_INITIAL_SECONDS = 1.0
RECONNECT_MAX_SECONDS = 30.0


class EmberAgentApp:
    """Coordinates startup, the status poll and command handling.

    The app owns two long-lived activities: a timer that refreshes the device
    state every ``poll_interval`` seconds, and the command subscription whose
    messages each run as their own task. It has no terminal state; it runs
    until shutdown is requested or the task is cancelled.

    Collaborators can be injected for testing; anything not supplied is built
    from ``config``.
    """

    def __init__(
        self,
        config: Optional[AgentConfig] = None,
        *,
        poll_interval: Optional[float] = None,
        mqtt_client: Optional[Any] = None,
        pipe: Optional[CommandPipeClient] = None,
        blob_store: Optional[BlobStore] = None,
        session: Optional[aiohttp.ClientSession] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config or load_config()
        self._log = logger or LOGGER
        self._poll_interval = (
            poll_interval
            if poll_interval is not None
            else self._config.firmware.poll_interval_seconds
        )

        cloud = self._config.cloud
        self._mqtt = mqtt_client or MQTTClient(
            cloud,
            client_id=f"{constants.APP_NAME}-{cloud.printer_id or 'unassigned'}",
            logger=self._log.getChild("mqtt"),
        )
        self._pipe = pipe or CommandPipeClient(
            self._config.firmware.socket_path,
            timeout=self._config.firmware.timeout_seconds,
            logger=self._log.getChild("pipe"),
        )
        self._state_store = DeviceStateStore(
            self._pipe,
            path=self._config.state_path,
            logger=self._log.getChild("state"),
        )
        self._session = session
        self._owns_session = session is None
        self._blob_store = blob_store
        self._wireless = WirelessConfigurator(
            self._config.wireless, logger=self._log.getChild("wireless")
        )
        self._reporter = AcknowledgementReporter(
            self._mqtt, cloud.ack_topic, logger=self._log.getChild("ack")
        )
        self._health = HealthReporter(self.diagnostics)
        self._health_server: Optional[HealthServer] = None
        self._processor: Optional[CommandProcessor] = None
        self._poll_task: Optional[asyncio.Task[None]] = None
        self._shutdown_event: Optional[asyncio.Event] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._stopping = False

    @property
    def state_store(self) -> DeviceStateStore:
        return self._state_store

    @property
    def processor(self) -> Optional[CommandProcessor]:
        return self._processor

    @classmethod
    def start(
        cls,
        config: Optional[AgentConfig] = None,
        poll_interval: float = constants.DEFAULT_POLL_INTERVAL_SECONDS,
    ) -> None:
        """Wire every component and run until interrupted."""

        config = config or load_config()
        logger = configure_logging(
            config.logging.level,
            log_path=config.logging.path,
            log_network=config.logging.log_network,
        )
        instance = cls(config=config, poll_interval=poll_interval, logger=logger)
        try:
            asyncio.run(instance.run())
        except KeyboardInterrupt:
            logger.info("ember-agent received shutdown signal")

    async def run(self) -> None:
        self._loop = asyncio.get_running_loop()
        self._shutdown_event = asyncio.Event()
        self._stopping = False

        self._log.info(
            "ember-agent starting (config=%s, poll_interval=%.1fs)",
            self._config.path,
            self._poll_interval,
        )

        try:
            await self._start_services()
            await self._shutdown_event.wait()
        except asyncio.CancelledError:
            self._log.info("ember-agent received shutdown signal")
            raise
        finally:
            await self._stop_services()

    def request_shutdown(self) -> None:
        if self._shutdown_event is not None:
            self._shutdown_event.set()

    def diagnostics(self) -> Dict[str, Any]:
        processor = self._processor
        return {
            "device": self._state_store.current().as_dict(),
            "pendingCommands": processor.pending_count if processor else 0,
            "wirelessConfigurationInProgress": self._wireless.in_progress,
        }

    async def _start_services(self) -> None:
        self._state_store.load()

        if self._session is None:
            self._session = aiohttp.ClientSession()
        if self._blob_store is None:
            self._blob_store = HttpBlobStore(self._config.blob_store, session=self._session)

        await self._start_health_server()
        await self._refresh_status()

        self._processor = self._build_processor()
        await self._connect_mqtt()
        await self._processor.start()
        await self._health.update("commands", True, None)

        self._poll_task = asyncio.create_task(self._poll_status())

    def _build_processor(self) -> CommandProcessor:
        assert self._session is not None and self._blob_store is not None

        print_data = PrintDataJob(
            self._config.print_data,
            self._pipe,
            self._state_store,
            self._session,
            logger=self._log.getChild("jobs.print_data"),
        )
        logs = LogsJob(
            self._config.logs,
            self._blob_store,
            logger=self._log.getChild("jobs.logs"),
        )
        passthrough = PassthroughJob(
            self._pipe, logger=self._log.getChild("jobs.passthrough")
        )
        wireless = WirelessJob(
            self._wireless, logger=self._log.getChild("jobs.wireless")
        )

        return CommandProcessor(
            self._mqtt,
            self._config.cloud.command_topic,
            self._reporter,
            print_data=print_data,
            logs=logs,
            passthrough=passthrough,
            wireless=wireless,
            printer_id=self._config.cloud.printer_id,
            logger=self._log.getChild("commands"),
        )

    async def _connect_mqtt(self) -> None:
        """Connect to the broker, retrying with backoff until it succeeds."""

        self._mqtt.register_connect_handler(self._on_mqtt_connect)
        self._mqtt.register_disconnect_handler(self._on_mqtt_disconnect)

        delay = RECONNECT_INITIAL_SECONDS
        while True:
            try:
                await self._mqtt.connect()
            except MQTTConnectionError as exc:
                await self._health.update("mqtt", False, str(exc))
                self._log.error("MQTT connection failed: %s (retrying in %.0fs)", exc, delay)
                await asyncio.sleep(delay)
                delay = min(delay * 2, RECONNECT_MAX_SECONDS)
                continue

            await self._health.update("mqtt", True, None)
            return

    async def _poll_status(self) -> None:
        while not self._stopping:
            try:
                await asyncio.sleep(self._poll_interval)
            except asyncio.CancelledError:
                break
            await self._refresh_status()

    async def _refresh_status(self) -> None:
        try:
            device_state = await self._state_store.refresh()
        except PipeError as exc:
            self._log.warning(
                "Status poll failed, keeping last known state %s: %s",
                self._state_store.current().describe(),
                exc,
            )
            await self._health.update("firmware", False, str(exc))
            return

        await self._health.update("firmware", True, device_state.describe())

    async def _start_health_server(self) -> None:
        health = self._config.health
        if not health.enabled or health.port <= 0:
            return

        server = HealthServer(self._health, health.host, health.port)
        try:
            await server.start()
        except OSError as exc:
            self._log.error("Failed to start health endpoint: %s", exc)
        else:
            self._health_server = server

    def _on_mqtt_connect(self, rc: int) -> None:
        # Subscriptions do not survive a clean-session reconnect
        if self._processor is not None:
            try:
                self._processor.resubscribe()
            except MQTTConnectionError as exc:
                self._log.warning("Resubscribe after reconnect failed: %s", exc)
        self._schedule_health_update("mqtt", True, None)

    def _on_mqtt_disconnect(self, rc: int) -> None:
        if self._stopping:
            return
        self._log.warning("MQTT connection lost (rc=%s); paho will reconnect", rc)
        self._schedule_health_update("mqtt", False, f"disconnected rc={rc}")

    def _schedule_health_update(
        self, name: str, healthy: bool, detail: Optional[str]
    ) -> None:
        loop = self._loop
        if loop is None:
            return
        loop.create_task(self._health.update(name, healthy, detail))

    async def _stop_services(self) -> None:
        self._stopping = True

        if self._poll_task is not None:
            self._poll_task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._poll_task
            self._poll_task = None

        if self._processor is not None:
            await self._processor.stop()

        await self._wireless.stop()

        with contextlib.suppress(MQTTConnectionError):
            await self._mqtt.disconnect()

        if self._health_server is not None:
            await self._health_server.stop()
            self._health_server = None

        if self._owns_session and self._session is not None:
            await self._session.close()
            self._session = None

        self._log.info("ember-agent stopped")
