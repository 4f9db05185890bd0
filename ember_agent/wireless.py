"""Background wireless network configuration.

Association with a new network can take tens of seconds and may drop the
agent's own connection, so it runs as an independent task. The core only ever
looks at :attr:`WirelessConfigurator.in_progress`.
"""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import List, Optional, Sequence

from .config import WirelessConfig

LOGGER = logging.getLogger(__name__)

_ESSID_PATTERN = re.compile(r'ESSID:"(?P<ssid>[^"]*)"')


class WirelessConfigurationError(RuntimeError):
    """Raised when a wireless tool fails."""


class WirelessConfigurator:
    def __init__(
        self, config: WirelessConfig, *, logger: Optional[logging.Logger] = None
    ) -> None:
        self._config = config
        self._log = logger or LOGGER
        self._task: Optional[asyncio.Task[None]] = None

    @property
    def in_progress(self) -> bool:
        return self._task is not None and not self._task.done()

    def configure(self, ssid: str, passphrase: Optional[str] = None) -> bool:
        """Start associating with ``ssid`` in the background.

        Returns False without starting anything when a configuration is
        already running.
        """

        if self.in_progress:
            self._log.warning(
                "Wireless configuration already in progress; ignoring request for %s",
                ssid,
            )
            return False

        self._task = asyncio.create_task(self._configure(ssid, passphrase))
        return True

    async def stop(self) -> None:
        if self._task is None:
            return
        self._task.cancel()
        try:
            await self._task
        except asyncio.CancelledError:
            pass
        self._task = None

    async def site_survey(self) -> List[str]:
        output = await self._run("iwlist", self._config.interface, "scan")
        return parse_site_survey(output)

    async def _configure(self, ssid: str, passphrase: Optional[str]) -> None:
        interface = self._config.interface
        try:
            visible = await self.site_survey()
            if ssid not in visible:
                self._log.warning(
                    "Network %s not seen in site survey on %s; configuring anyway",
                    ssid,
                    interface,
                )

            self._write_supplicant_config(ssid, passphrase)
            await self._run("wpa_cli", "-i", interface, "reconfigure")
        except (OSError, WirelessConfigurationError) as exc:
            self._log.error("Wireless configuration for %s failed: %s", ssid, exc)
        else:
            self._log.info("Wireless interface %s configured for %s", interface, ssid)

    def _write_supplicant_config(self, ssid: str, passphrase: Optional[str]) -> None:
        path = self._config.wpa_supplicant_path
        path.parent.mkdir(parents=True, exist_ok=True)
        path.write_text(render_supplicant_config(ssid, passphrase), encoding="utf-8")

    async def _run(self, *args: str) -> str:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        stdout, stderr = await process.communicate()
        if process.returncode != 0:
            raise WirelessConfigurationError(
                f"{args[0]} exited with {process.returncode}: "
                f"{stderr.decode('utf-8', 'replace').strip()}"
            )
        return stdout.decode("utf-8", "replace")


def parse_site_survey(output: str) -> List[str]:
    """Return the distinct non-empty ESSIDs from ``iwlist scan`` output."""

    seen: List[str] = []
    for match in _ESSID_PATTERN.finditer(output):
        ssid = match.group("ssid")
        if ssid and ssid not in seen:
            seen.append(ssid)
    return seen


def render_supplicant_config(
    ssid: str, passphrase: Optional[str], *, extra: Sequence[str] = ()
) -> str:
    lines = [
        "ctrl_interface=/var/run/wpa_supplicant",
        "update_config=1",
        *extra,
        "",
        "network={",
        f'    ssid="{_escape(ssid)}"',
    ]
    if passphrase:
        lines.append(f'    psk="{_escape(passphrase)}"')
    else:
        lines.append("    key_mgmt=NONE")
    lines.append("}")
    return "\n".join(lines) + "\n"


def _escape(value: str) -> str:
    return value.replace("\\", "\\\\").replace('"', '\\"')


__all__ = [
    "WirelessConfigurationError",
    "WirelessConfigurator",
    "parse_site_survey",
    "render_supplicant_config",
]
