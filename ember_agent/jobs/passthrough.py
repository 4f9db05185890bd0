"""Default handler forwarding unrecognised commands to the firmware."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..adapters.command_pipe import CommandPipeClient
from ..models import PassthroughCommand

LOGGER = logging.getLogger(__name__)


class PassthroughJob:
    def __init__(
        self, pipe: CommandPipeClient, *, logger: Optional[logging.Logger] = None
    ) -> None:
        self._pipe = pipe
        self._log = logger or LOGGER

    async def execute(self, command: PassthroughCommand) -> Dict[str, Any]:
        async with self._pipe.exclusive():
            await self._pipe.send(command.command)
        self._log.info("Forwarded %s to firmware", command.command)
        return {}
