"""Handler for the ``print_data`` command.

Loading a print is a fixed conversation with the firmware:

1. refresh status and require a state from which a load may begin
2. purge stray files left by an earlier failed attempt
3. send LOAD and require firmware to report it is downloading
4. download the print file and write the print settings file
5. require firmware to still report it is downloading
6. send PROCESS, then APPLY SETTINGS

The whole sequence runs inside the command pipe's ordering lane so that no
other job's firmware commands land between LOAD and APPLY SETTINGS. Files
staged by an aborted attempt are left for the next purge.
"""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Any, Dict, Optional

import aiohttp

from ..adapters.blob_store import download_file, filename_from_url
from ..adapters.command_pipe import CommandPipeClient
from ..config import PrintDataConfig
from ..errors import DownloadError, PreconditionError
from ..firmware_commands import CommandKinds, FirmwareCommands
from ..models import PrintDataCommand
from ..printer_state import (
    DeviceState,
    PrinterSubstate,
    can_begin_print_data_load,
    is_print_data_downloading,
)
from ..state_store import DeviceStateStore

LOGGER = logging.getLogger(__name__)


class PrintDataJob:
    def __init__(
        self,
        config: PrintDataConfig,
        pipe: CommandPipeClient,
        state_store: DeviceStateStore,
        session: aiohttp.ClientSession,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._config = config
        self._pipe = pipe
        self._state_store = state_store
        self._session = session
        self._log = logger or LOGGER

    async def execute(self, command: PrintDataCommand) -> Dict[str, Any]:
        async with self._pipe.exclusive():
            device_state = await self._state_store.refresh()
            if not can_begin_print_data_load(device_state):
                raise self._invalid_state(
                    device_state, "not downloading print data, "
                )

            self._purge_print_data()

            await self._pipe.send(FirmwareCommands.PRINT_DATA_LOAD)
            device_state = await self._state_store.refresh()
            if not is_print_data_downloading(device_state):
                raise self._invalid_state(device_state)

            destination = await self._download(command.file_url)
            self._write_settings(command.settings)

            # firmware may give up on the download while the file is in flight
            device_state = await self._state_store.refresh()
            if not is_print_data_downloading(device_state):
                raise self._invalid_state(device_state)

            response = await self._pipe.send(FirmwareCommands.PROCESS_PRINT_DATA)
            if (
                response.status is not None
                and response.status.substate == PrinterSubstate.LOAD_FAILED
            ):
                raise self._invalid_state(response.status)

            await self._pipe.send(FirmwareCommands.APPLY_PRINT_SETTINGS)

        self._log.info(
            "Loaded print data %s (token=%s)",
            destination.name,
            command.envelope.command_token,
        )
        return {}

    def _invalid_state(
        self, device_state: DeviceState, detail: str = ""
    ) -> PreconditionError:
        message = (
            f"Printer state {device_state.describe()} invalid, "
            f"{detail}aborting {CommandKinds.PRINT_DATA} command handling"
        )
        self._log.error(message)
        return PreconditionError(message, state=device_state)

    def _purge_print_data(self) -> None:
        directory = self._config.directory
        try:
            directory.mkdir(parents=True, exist_ok=True)
            for entry in directory.iterdir():
                if entry.is_file() or entry.is_symlink():
                    self._log.info("Removing stray print file %s", entry)
                    entry.unlink()
        except OSError as exc:
            raise DownloadError(
                f"Unable to purge print data directory {directory}: {exc}",
                code="purge_failed",
            ) from exc

    async def _download(self, url: str) -> Path:
        destination = self._config.directory / filename_from_url(url)
        self._log.info("Downloading print data from %s to %s", url, destination)
        size = await download_file(
            self._session,
            url,
            destination,
            timeout=self._config.download_timeout_seconds,
        )
        self._log.debug("Downloaded %d bytes to %s", size, destination)
        return destination

    def _write_settings(self, settings: Dict[str, Any]) -> None:
        path = self._config.settings_file
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            path.write_text(json.dumps(settings), encoding="utf-8")
        except OSError as exc:
            raise DownloadError(
                f"Unable to write print settings to {path}: {exc}",
                code="settings_write_failed",
            ) from exc


__all__ = ["PrintDataJob"]
