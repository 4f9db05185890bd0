"""Command handling pipeline for the ember agent.

Inbound messages are resolved once, at the boundary, into one of the typed
command variants in :mod:`ember_agent.models`. Each variant has exactly one
job handler. Whatever happens inside the handler, the processor reports
exactly one :class:`JobResult` per command token. A redelivered token is
never executed again: it is ignored while still running and answered from
the acknowledgement history once done.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Dict, Optional, Protocol, Set, Tuple

from .ack import AcknowledgementReporter
from .errors import AgentError, ProtocolError
from .firmware_commands import CommandKinds
from .models import (
    Command,
    CommandEnvelope,
    JobResult,
    LogsCommand,
    PassthroughCommand,
    PrintDataCommand,
    WirelessCommand,
)

LOGGER = logging.getLogger(__name__)

UNKNOWN_COMMAND = "unknown"


class JobHandler(Protocol):
    async def execute(self, command: Any) -> Optional[Dict[str, Any]]: ...


class MQTTCommandsClient(Protocol):
    def subscribe(self, topic: str, qos: int = 1) -> None: ...

    def unsubscribe(self, topic: str) -> None: ...

    def set_message_handler(self, handler): ...


class CommandProcessor:
    """Consumes command messages and runs each on its own task."""

    def __init__(
        self,
        channel: MQTTCommandsClient,
        command_topic: str,
        reporter: AcknowledgementReporter,
        *,
        print_data: JobHandler,
        logs: JobHandler,
        passthrough: JobHandler,
        wireless: Optional[JobHandler] = None,
        printer_id: Optional[str] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._channel = channel
        self._command_topic = command_topic
        self._reporter = reporter
        self._handlers: Dict[type, JobHandler] = {
            PrintDataCommand: print_data,
            LogsCommand: logs,
            PassthroughCommand: passthrough,
        }
        if wireless is not None:
            self._handlers[WirelessCommand] = wireless
        self._printer_id = printer_id or None
        self._log = logger or LOGGER
        self._handler_registered = False
        self._tasks: Set[asyncio.Task[Optional[JobResult]]] = set()
        self._in_flight: Set[str] = set()

    @property
    def pending_count(self) -> int:
        return len(self._tasks)

    async def start(self) -> None:
        if self._handler_registered:
            raise RuntimeError("CommandProcessor already started")

        self._channel.set_message_handler(self._handle_message)
        self._channel.subscribe(self._command_topic, qos=1)
        self._handler_registered = True
        self._log.info("Command processor subscribed to %s", self._command_topic)

    def resubscribe(self) -> None:
        if self._handler_registered:
            self._channel.subscribe(self._command_topic, qos=1)

    async def stop(self) -> None:
        if self._handler_registered:
            try:
                self._channel.unsubscribe(self._command_topic)
            except Exception as exc:  # pragma: no cover - best effort on shutdown
                self._log.debug("Unsubscribe from %s failed: %s", self._command_topic, exc)
            finally:
                self._channel.set_message_handler(None)
                self._handler_registered = False

        tasks = list(self._tasks)
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _handle_message(self, topic: str, payload: bytes) -> None:
        if topic != self._command_topic:
            return

        task = asyncio.create_task(self.handle(payload))
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def handle(self, payload: bytes) -> Optional[JobResult]:
        """Run one raw command message to completion and report its outcome.

        Returns None when the message is a redelivery of a command that is
        running or already acknowledged; nothing is executed for it.
        """

        try:
            envelope, data = parse_envelope(payload, default_printer_id=self._printer_id)
        except ProtocolError as exc:
            envelope = exc.envelope or CommandEnvelope(
                UNKNOWN_COMMAND, None, self._printer_id
            )
            if self._is_redelivery(envelope):
                return None
            self._log.warning("Rejected command payload: %s", exc)
            result = JobResult.failed(envelope, str(exc), code=exc.code)
            self._reporter.report(result)
            return result

        if self._is_redelivery(envelope):
            return None

        self._log.info(
            "Received command %s (token=%s)", envelope.kind, envelope.command_token
        )

        token = envelope.command_token
        if token:
            self._in_flight.add(token)
        try:
            try:
                result = await self._run(envelope, data)
            except asyncio.CancelledError:
                self._reporter.report(
                    JobResult.failed(
                        envelope, "Agent shutting down", code="agent_shutdown"
                    )
                )
                raise

            self._reporter.report(result)
        finally:
            if token:
                self._in_flight.discard(token)
        return result

    def _is_redelivery(self, envelope: CommandEnvelope) -> bool:
        token = envelope.command_token
        if not token:
            return False

        if token in self._in_flight:
            self._log.info(
                "Ignoring redelivered %s (token=%s); it is still running",
                envelope.kind,
                token,
            )
            return True

        if self._reporter.has_reported(token):
            self._log.info(
                "Ignoring redelivered %s (token=%s); re-sending its acknowledgement",
                envelope.kind,
                token,
            )
            self._reporter.replay(token)
            return True

        return False

    async def _run(self, envelope: CommandEnvelope, data: Dict[str, Any]) -> JobResult:
        try:
            command = resolve_command(envelope, data)
            handler = self._handlers.get(type(command))
            if handler is None:
                raise ProtocolError(
                    f"No handler available for {envelope.kind}",
                    code="unsupported_command",
                )
            details = await handler.execute(command)
        except AgentError as exc:
            self._log.warning(
                "Command %s failed (token=%s, code=%s): %s",
                envelope.kind,
                envelope.command_token,
                exc.code,
                exc,
            )
            return JobResult.failed(envelope, str(exc), code=exc.code)
        except Exception as exc:
            self._log.exception(
                "Unexpected error handling %s (token=%s)",
                envelope.kind,
                envelope.command_token,
            )
            return JobResult.failed(envelope, f"Internal error: {exc}", code="internal_error")

        return JobResult.succeeded(envelope, details)


def parse_envelope(
    raw_payload: bytes, *, default_printer_id: Optional[str] = None
) -> Tuple[CommandEnvelope, Dict[str, Any]]:
    try:
        decoded = raw_payload.decode("utf-8")
    except UnicodeDecodeError as exc:
        raise ProtocolError("Payload is not valid UTF-8", code="invalid_encoding") from exc

    try:
        data = json.loads(decoded)
    except json.JSONDecodeError as exc:
        raise ProtocolError("Payload is not valid JSON", code="invalid_json") from exc

    if not isinstance(data, dict):
        raise ProtocolError("Payload must be a JSON object")

    token = data.get("command_token")
    printer_id = data.get("printer_id") or default_printer_id
    kind = str(data.get("command") or "").strip()

    envelope = CommandEnvelope(
        kind=kind or UNKNOWN_COMMAND,
        command_token=str(token) if token not in (None, "") else None,
        printer_id=str(printer_id) if printer_id else None,
    )
    if not kind:
        raise ProtocolError("Missing command in payload", envelope=envelope)
    return envelope, data


def resolve_command(envelope: CommandEnvelope, data: Dict[str, Any]) -> Command:
    """Map a parsed message onto its command variant.

    Raises:
        ProtocolError: If a dedicated command kind is missing required fields.
    """

    if envelope.kind == CommandKinds.PRINT_DATA:
        file_url = data.get("file_url")
        if not file_url or not isinstance(file_url, str):
            raise ProtocolError("file_url is required for print_data")
        return PrintDataCommand(
            envelope=envelope,
            file_url=file_url,
            settings=parse_print_settings(data.get("settings")),
        )

    if envelope.kind == CommandKinds.LOGS:
        return LogsCommand(envelope=envelope)

    if envelope.kind == CommandKinds.WIRELESS:
        ssid = data.get("ssid")
        if not ssid or not isinstance(ssid, str):
            raise ProtocolError("ssid is required for wireless")
        passphrase = data.get("passphrase")
        return WirelessCommand(
            envelope=envelope,
            ssid=ssid,
            passphrase=str(passphrase) if passphrase else None,
        )

    return PassthroughCommand(envelope=envelope)


def parse_print_settings(raw: Any) -> Dict[str, Any]:
    """Decode the settings payload into a flat mapping.

    The remote service sends settings as a JSON-encoded string; an object that
    was already decoded is accepted as-is.
    """

    if raw is None or raw == "":
        return {}

    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ProtocolError(
                "settings is not valid JSON", code="invalid_settings"
            ) from exc

    if not isinstance(raw, dict):
        raise ProtocolError("settings must be a JSON object", code="invalid_settings")

    return dict(raw)
