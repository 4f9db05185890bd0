"""Centralized names for remote command kinds and firmware pipe commands.

Remote command kinds arrive in the ``command`` field of messages published on
``<prefix>/<printer_id>/commands``. Any kind not listed in
:class:`CommandKinds` is forwarded to the firmware verbatim.

Firmware commands are the newline-terminated requests written to the command
pipe.
"""

from __future__ import annotations


class CommandKinds:
    """Remote command kinds with a dedicated job handler."""

    PRINT_DATA = "print_data"
    """Download, stage and load a print file plus its settings."""

    LOGS = "logs"
    """Archive local logs and upload them to the blob store."""

    WIRELESS = "wireless"
    """Associate with a wireless network in the background."""


class FirmwareCommands:
    """Requests understood by the printer firmware command pipe."""

    GET_STATUS = "GETSTATUS"
    """Query the current state and UI substate."""

    PRINT_DATA_LOAD = "PRINTDATALOAD"
    """Tell firmware a print file download is about to begin."""

    PROCESS_PRINT_DATA = "PROCESSPRINTDATA"
    """Unpack and validate the staged print file."""

    APPLY_PRINT_SETTINGS = "APPLYPRINTSETTINGS"
    """Read the print settings file written by the agent."""
