"""Client for the firmware command pipe.

The firmware listens on a local Unix stream socket. Each request is a single
newline-terminated command and each reply a single JSON line::

    {"Command": "GETSTATUS", "PrinterStatus": {"State": "HOME", "UISubState": "NONE"}}

A reply may carry ``Error`` when the firmware rejects the command. Most
replies embed the current ``PrinterStatus``, which is handed to registered
status listeners after every round trip.
"""

from __future__ import annotations

import asyncio
import json
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional

from ..errors import PipeError
from ..firmware_commands import FirmwareCommands
from ..printer_state import STATUS_KEY, DeviceState

LOGGER = logging.getLogger(__name__)

StatusListener = Callable[[DeviceState], None]


@dataclass(slots=True, frozen=True)
class PipeResponse:
    """One parsed firmware reply."""

    command: str
    status: Optional[DeviceState]
    raw: Dict[str, Any]


class CommandPipeClient:
    """Serialized request/response access to the firmware."""

    def __init__(
        self,
        socket_path: Path,
        *,
        timeout: float = 10.0,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.socket_path = Path(socket_path)
        self.timeout = timeout
        self._log = logger or LOGGER
        self._request_lock = asyncio.Lock()
        self._lane = asyncio.Lock()
        self._listeners: List[StatusListener] = []

    def add_status_listener(self, listener: StatusListener) -> None:
        self._listeners.append(listener)

    def exclusive(self) -> asyncio.Lock:
        """Return the ordering lane a job holds for its whole pipe sequence.

        Usage::

            async with pipe.exclusive():
                await pipe.send(FirmwareCommands.PRINT_DATA_LOAD)
                ...
        """

        return self._lane

    async def send(self, command: str) -> PipeResponse:
        """Send one command and wait for the firmware reply.

        Raises:
            PipeError: If the pipe is unreachable, times out, replies with
                something that is not a JSON object or reports an error.
        """

        command = command.strip()
        if not command or "\n" in command:
            raise PipeError(f"Invalid firmware command {command!r}", code="invalid_command")

        async with self._request_lock:
            line = await self._round_trip(command)

        response = _parse_reply(command, line)
        if response.status is not None:
            self._notify(response.status)

        error = response.raw.get("Error")
        if error:
            raise PipeError(
                f"Firmware rejected {command}: {error}", code="firmware_error"
            )

        return response

    async def get_status(self) -> DeviceState:
        response = await self.send(FirmwareCommands.GET_STATUS)
        if response.status is None:
            raise PipeError(
                "Status reply did not include printer status",
                code="unparseable_reply",
            )
        return response.status

    async def _round_trip(self, command: str) -> bytes:
        writer: Optional[asyncio.StreamWriter] = None
        try:
            async with asyncio.timeout(self.timeout):
                reader, writer = await asyncio.open_unix_connection(
                    str(self.socket_path)
                )
                writer.write(command.encode("utf-8") + b"\n")
                await writer.drain()
                line = await reader.readline()
        except TimeoutError as exc:
            self._log.warning(
                "Command pipe timed out after %.1fs (command=%s)", self.timeout, command
            )
            raise PipeError(
                f"Timed out waiting for firmware reply to {command}", code="pipe_timeout"
            ) from exc
        except OSError as exc:
            raise PipeError(
                f"Command pipe unreachable at {self.socket_path}: {exc}",
                code="pipe_unreachable",
            ) from exc
        finally:
            if writer is not None:
                writer.close()

        if not line:
            raise PipeError(
                f"Firmware closed the pipe without replying to {command}",
                code="pipe_unreachable",
            )
        return line

    def _notify(self, status: DeviceState) -> None:
        for listener in self._listeners:
            try:
                listener(status)
            except Exception:  # pragma: no cover
                self._log.exception("Status listener raised an exception")


def _parse_reply(command: str, line: bytes) -> PipeResponse:
    try:
        data = json.loads(line.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise PipeError(
            f"Unparseable firmware reply to {command}", code="unparseable_reply"
        ) from exc

    if not isinstance(data, dict):
        raise PipeError(
            f"Firmware reply to {command} is not an object", code="unparseable_reply"
        )

    status_payload = data.get(STATUS_KEY)
    status: Optional[DeviceState] = None
    if isinstance(status_payload, dict):
        status = DeviceState.from_firmware(status_payload)

    return PipeResponse(
        command=str(data.get("Command") or command), status=status, raw=data
    )
