import asyncio
import itertools
import json
import shutil
import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Tuple

import aiohttp
import pytest
import pytest_asyncio
from aiohttp import web

from ember_agent.ack import AcknowledgementReporter
from ember_agent.adapters import CommandPipeClient, HttpBlobStore
from ember_agent.commands import CommandProcessor
from ember_agent.config import AgentConfig, load_config
from ember_agent.jobs import LogsJob, PassthroughJob, PrintDataJob, WirelessJob
from ember_agent.state_store import DeviceStateStore
from ember_agent.wireless import WirelessConfigurator


class FakeFirmware:
    """Unix-socket stand-in for the printer firmware command pipe.

    ``after`` maps a command to the ``(state, substate)`` the firmware moves to
    once it receives it. ``hooks`` run when a command arrives, before the reply
    is written, so tests can record what was on disk at that moment.
    """

    def __init__(self, socket_path: Path) -> None:
        self.socket_path = socket_path
        self.state: Tuple[str, str] = ("HOME", "NONE")
        self.commands: List[str] = []
        self.after: Dict[str, Tuple[str, str]] = {}
        self.errors: Dict[str, str] = {}
        self.hooks: Dict[str, Callable[[], None]] = {}
        self.raw_reply: Optional[bytes] = None
        self.include_status = True
        self.silent = False
        self._server: Optional[asyncio.AbstractServer] = None

    async def start(self) -> None:
        self._server = await asyncio.start_unix_server(
            self._handle, path=str(self.socket_path)
        )

    async def stop(self) -> None:
        if self._server is not None:
            self._server.close()
            await self._server.wait_closed()
            self._server = None

    async def _handle(
        self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter
    ) -> None:
        try:
            line = await reader.readline()
            command = line.decode("utf-8").strip()
            self.commands.append(command)

            if self.silent:
                await asyncio.sleep(1)
                return

            hook = self.hooks.get(command)
            if hook is not None:
                hook()

            if command in self.after:
                self.state = self.after[command]

            if self.raw_reply is not None:
                writer.write(self.raw_reply)
            else:
                reply: Dict[str, Any] = {"Command": command}
                if self.include_status:
                    reply["PrinterStatus"] = {
                        "State": self.state[0],
                        "UISubState": self.state[1],
                    }
                if command in self.errors:
                    reply["Error"] = self.errors[command]
                writer.write(json.dumps(reply).encode("utf-8") + b"\n")
            await writer.drain()
        finally:
            writer.close()


@pytest.fixture
def socket_dir():
    # Unix socket paths are length limited; keep them short
    path = Path(tempfile.mkdtemp(prefix="ember-"))
    yield path
    shutil.rmtree(path, ignore_errors=True)


@pytest_asyncio.fixture
async def firmware(socket_dir):
    fake = FakeFirmware(socket_dir / "fw.sock")
    await fake.start()
    try:
        yield fake
    finally:
        await fake.stop()


class FakeMQTT:
    def __init__(self) -> None:
        self.handler = None
        self.subscriptions: list[tuple[str, int]] = []
        self.unsubscriptions: list[str] = []
        self.published: list[tuple[str, bytes, int, bool]] = []
        self.ack_event = asyncio.Event()

    def set_message_handler(self, handler):
        self.handler = handler

    def subscribe(self, topic: str, qos: int = 0):
        self.subscriptions.append((topic, qos))

    def unsubscribe(self, topic: str):
        self.unsubscriptions.append(topic)

    def publish(self, topic: str, payload: bytes, qos: int = 0, retain: bool = False):
        self.published.append((topic, payload, qos, retain))
        self.ack_event.set()

    async def emit(self, topic: str, payload: Dict[str, Any]) -> None:
        if self.handler is None:
            raise RuntimeError("No handler registered")
        data = json.dumps(payload).encode("utf-8")
        result = self.handler(topic, data)
        if hasattr(result, "__await__"):
            await result

    def acks(self) -> list[dict[str, Any]]:
        return [json.loads(payload) for _, payload, _, _ in self.published]

    async def wait_for_acks(self, count: int, timeout: float = 5.0) -> list[dict[str, Any]]:
        async def _wait() -> None:
            while len(self.published) < count:
                self.ack_event.clear()
                await self.ack_event.wait()

        await asyncio.wait_for(_wait(), timeout=timeout)
        return self.acks()


@pytest.fixture
def fake_mqtt() -> FakeMQTT:
    return FakeMQTT()


class FileServer:
    """aiohttp app serving print files and a bucket-style blob store."""

    def __init__(self) -> None:
        self.files: Dict[str, bytes] = {}
        self.blobs: Dict[str, bytes] = {}
        self.deleted: List[str] = []
        self.download_requests: List[str] = []
        self.on_download: Optional[Callable[[str], None]] = None
        self.fail_uploads = False
        self.port: Optional[int] = None

    def url(self, path: str = "/") -> str:
        if not path.startswith("/"):
            path = "/" + path
        return f"http://127.0.0.1:{self.port}{path}"

    def build_app(self) -> web.Application:
        app = web.Application()
        app.router.add_get("/files/{name}", self._serve_file)
        app.router.add_put("/{bucket}/{key}", self._put_blob)
        app.router.add_get("/{bucket}/{key}", self._get_blob)
        app.router.add_delete("/{bucket}/{key}", self._delete_blob)
        return app

    async def _serve_file(self, request: web.Request) -> web.StreamResponse:
        name = request.match_info["name"]
        self.download_requests.append(name)
        if self.on_download is not None:
            self.on_download(name)
        if name not in self.files:
            raise web.HTTPNotFound()
        return web.Response(body=self.files[name])

    async def _put_blob(self, request: web.Request) -> web.StreamResponse:
        if self.fail_uploads:
            return web.Response(status=500, text="storage unavailable")
        key = f"{request.match_info['bucket']}/{request.match_info['key']}"
        self.blobs[key] = await request.read()
        return web.Response(status=200)

    async def _get_blob(self, request: web.Request) -> web.StreamResponse:
        key = f"{request.match_info['bucket']}/{request.match_info['key']}"
        if key not in self.blobs:
            raise web.HTTPNotFound()
        return web.Response(body=self.blobs[key])

    async def _delete_blob(self, request: web.Request) -> web.StreamResponse:
        key = f"{request.match_info['bucket']}/{request.match_info['key']}"
        self.deleted.append(key)
        if self.blobs.pop(key, None) is None:
            raise web.HTTPNotFound()
        return web.Response(status=204)


@pytest_asyncio.fixture
async def file_server(unused_tcp_port_factory):
    server = FileServer()
    runner = web.AppRunner(server.build_app())
    await runner.setup()

    server.port = unused_tcp_port_factory()
    site = web.TCPSite(runner, "127.0.0.1", server.port)
    await site.start()

    try:
        yield server
    finally:
        await runner.cleanup()


@dataclass
class AgentHarness:
    """Real job handlers wired against the fake firmware, broker and server."""

    config: AgentConfig
    pipe: CommandPipeClient
    state_store: DeviceStateStore
    blob_store: HttpBlobStore
    wireless: WirelessConfigurator
    processor: CommandProcessor
    mqtt: FakeMQTT

    async def run(self, payload: Any) -> dict[str, Any]:
        """Handle one command to completion and return the last ack."""

        raw = payload if isinstance(payload, bytes) else json.dumps(payload).encode("utf-8")
        await self.processor.handle(raw)
        return self.mqtt.acks()[-1]


@pytest_asyncio.fixture
async def harness(tmp_path, firmware, fake_mqtt, file_server):
    config = write_config(
        tmp_path,
        firmware__socket_path=str(firmware.socket_path),
        firmware__timeout_seconds="2",
        blob_store__base_url=file_server.url(""),
    )
    archive_ids = itertools.count(1)

    async with aiohttp.ClientSession() as session:
        pipe = CommandPipeClient(
            config.firmware.socket_path, timeout=config.firmware.timeout_seconds
        )
        state_store = DeviceStateStore(pipe, path=config.state_path)
        blob_store = HttpBlobStore(config.blob_store, session=session)
        wireless = WirelessConfigurator(config.wireless)
        reporter = AcknowledgementReporter(fake_mqtt, config.cloud.ack_topic)
        processor = CommandProcessor(
            fake_mqtt,
            config.cloud.command_topic,
            reporter,
            print_data=PrintDataJob(config.print_data, pipe, state_store, session),
            logs=LogsJob(
                config.logs, blob_store, id_factory=lambda: f"logs-{next(archive_ids)}"
            ),
            passthrough=PassthroughJob(pipe),
            wireless=WirelessJob(wireless),
            printer_id=config.cloud.printer_id,
        )
        await processor.start()

        try:
            yield AgentHarness(
                config=config,
                pipe=pipe,
                state_store=state_store,
                blob_store=blob_store,
                wireless=wireless,
                processor=processor,
                mqtt=fake_mqtt,
            )
        finally:
            await processor.stop()
            await wireless.stop()


def write_config(tmp_path: Path, text: str = "", **overrides: str) -> AgentConfig:
    """Write a config file rooted in ``tmp_path`` and load it."""

    sections = {
        "cloud": {"printer_id": "539", "broker_host": "broker.test:1883"},
        "print_data": {
            "directory": str(tmp_path / "download"),
            "settings_file": str(tmp_path / "print_settings.json"),
        },
        "logs": {"sources": str(tmp_path / "logs" / "*")},
        "state": {"path": str(tmp_path / "state.json")},
        "wireless": {"wpa_supplicant_path": str(tmp_path / "wpa.conf")},
        "logging": {"path": ""},
    }
    for dotted, value in overrides.items():
        section, option = dotted.split("__", 1)
        sections.setdefault(section, {})[option] = value

    lines: list[str] = []
    for section, options in sections.items():
        lines.append(f"[{section}]")
        lines.extend(f"{key} = {value}" for key, value in options.items())
        lines.append("")

    config_path = tmp_path / "ember-agent.cfg"
    config_path.write_text("\n".join(lines) + text, encoding="utf-8")
    return load_config(config_path)
