"""Handler for the ``wireless`` command."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from ..errors import AgentError
from ..models import WirelessCommand
from ..wireless import WirelessConfigurator

LOGGER = logging.getLogger(__name__)


class WirelessJob:
    """Schedules wireless configuration and acknowledges without waiting."""

    def __init__(
        self,
        configurator: WirelessConfigurator,
        *,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self._configurator = configurator
        self._log = logger or LOGGER

    async def execute(self, command: WirelessCommand) -> Dict[str, Any]:
        if not self._configurator.configure(command.ssid, command.passphrase):
            raise AgentError(
                "Wireless configuration already in progress", code="busy"
            )
        self._log.info("Wireless configuration for %s started", command.ssid)
        return {"ssid": command.ssid, "in_progress": True}
