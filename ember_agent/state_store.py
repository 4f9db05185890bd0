"""Cached, persisted view of the firmware operating state."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from .adapters.command_pipe import CommandPipeClient
from .printer_state import IDLE, DeviceState

LOGGER = logging.getLogger(__name__)


class DeviceStateStore:
    """Single writer of :class:`DeviceState`.

    The store registers itself as a status listener on the command pipe, so
    every firmware reply that embeds a status updates the cache. Callers that
    are about to do something irreversible should call :meth:`refresh` rather
    than trust :meth:`current`, since remote commands can arrive between polls.
    """

    def __init__(
        self,
        pipe: CommandPipeClient,
        *,
        path: Optional[Path] = None,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._pipe = pipe
        self._path = path
        self._log = logger or LOGGER
        self._current: DeviceState = IDLE
        pipe.add_status_listener(self.record)

    def load(self) -> DeviceState:
        """Restore the state persisted by a previous run, if any."""

        if self._path is None or not self._path.exists():
            return self._current

        try:
            data = json.loads(self._path.read_text(encoding="utf-8"))
            self._current = DeviceState.from_dict(data)
        except (OSError, ValueError, KeyError, TypeError) as exc:
            self._log.warning(
                "Ignoring unreadable device state file %s: %s", self._path, exc
            )
        else:
            self._log.info("Restored device state %s", self._current.describe())

        return self._current

    def current(self) -> DeviceState:
        return self._current

    async def refresh(self) -> DeviceState:
        """Ask firmware for its status and return the recorded answer.

        Raises:
            PipeError: If the firmware cannot be queried. The cached state is
                left untouched.
        """

        return await self._pipe.get_status()

    def record(self, device_state: DeviceState) -> None:
        if device_state == self._current:
            return

        previous = self._current
        self._current = device_state
        self._log.debug(
            "Device state %s -> %s", previous.describe(), device_state.describe()
        )
        self._persist()

    def _persist(self) -> None:
        if self._path is None:
            return

        try:
            self._path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self._path.with_suffix(self._path.suffix + ".tmp")
            tmp_path.write_text(json.dumps(self._current.as_dict()), encoding="utf-8")
            tmp_path.replace(self._path)
        except OSError as exc:
            self._log.warning("Failed to persist device state to %s: %s", self._path, exc)
