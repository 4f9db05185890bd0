"""Firmware operating state and the precondition table built on it.

The firmware reports a ``(state, substate)`` pair. The state names the print
engine's current mode; the substate refines it for the UI and is only
meaningful relative to its owning state. ``NONE`` is valid with every state.

Precondition checks are pure functions over :class:`DeviceState` so they can be
evaluated against a freshly refreshed value immediately before an
irreversible action.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum
from typing import Any, Dict, Mapping

from .errors import PipeError

__all__ = [
    "DeviceState",
    "PrinterState",
    "PrinterSubstate",
    "can_begin_print_data_load",
    "is_print_data_downloading",
]


_NAME_PATTERN = re.compile(r"[A-Z][A-Z0-9_]*")


class _FirmwareName(str, Enum):
    """Enum of firmware names that tolerates names missing from the table.

    Newer firmware builds may report states this agent does not list. Any
    upper-case identifier is kept as an unlisted member so the value can still
    be recorded and rejected by the precondition checks; anything else is not
    a firmware name at all and raises ``ValueError``.
    """

    @classmethod
    def _missing_(cls, value: object) -> "_FirmwareName | None":
        if not isinstance(value, str) or not _NAME_PATTERN.fullmatch(value):
            return None
        member = cls._value2member_map_.get(value)
        if member is None:
            member = str.__new__(cls, value)
            member._name_ = value
            member._value_ = value
            cls._value2member_map_[value] = member
        return member


class PrinterState(_FirmwareName):
    PRINTER_ON = "PRINTER_ON"
    DOOR_CLOSED = "DOOR_CLOSED"
    INITIALIZING = "INITIALIZING"
    DOOR_OPEN = "DOOR_OPEN"
    HOMING = "HOMING"
    HOME = "HOME"
    ERROR = "ERROR"
    MOVING_TO_START_POSITION = "MOVING_TO_START_POSITION"
    INITIALIZING_LAYER = "INITIALIZING_LAYER"
    PRESSING = "PRESSING"
    PRESS_DELAY = "PRESS_DELAY"
    UNPRESSING = "UNPRESSING"
    PRE_EXPOSURE_DELAY = "PRE_EXPOSURE_DELAY"
    EXPOSING = "EXPOSING"
    PRINTING_LAYER = "PRINTING_LAYER"
    PRINTING = "PRINTING"
    MOVING_TO_PAUSE = "MOVING_TO_PAUSE"
    PAUSED = "PAUSED"
    MOVING_TO_RESUME = "MOVING_TO_RESUME"
    SEPARATING = "SEPARATING"
    APPROACHING = "APPROACHING"
    GETTING_FEEDBACK = "GETTING_FEEDBACK"
    CONFIRM_CANCEL = "CONFIRM_CANCEL"
    AWAITING_CANCELATION = "AWAITING_CANCELATION"
    SHOWING_VERSION = "SHOWING_VERSION"
    CALIBRATING = "CALIBRATING"
    REGISTERING = "REGISTERING"
    UNJAMMING = "UNJAMMING"
    JAMMED = "JAMMED"
    DEMO_MODE = "DEMO_MODE"
    CONFIRM_UPGRADE = "CONFIRM_UPGRADE"
    UPGRADING_PROJECTOR = "UPGRADING_PROJECTOR"
    UPGRADE_COMPLETE = "UPGRADE_COMPLETE"


class PrinterSubstate(_FirmwareName):
    NONE = "NONE"
    NO_PRINT_DATA = "NO_PRINT_DATA"
    DOWNLOADING = "DOWNLOADING"
    DOWNLOAD_FAILED = "DOWNLOAD_FAILED"
    LOADING = "LOADING"
    LOADED = "LOADED"
    LOAD_FAILED = "LOAD_FAILED"
    HAVE_PRINT_DATA = "HAVE_PRINT_DATA"
    PRINT_CANCELED = "PRINT_CANCELED"
    PRINT_COMPLETED = "PRINT_COMPLETED"
    CLEARING_SCREEN = "CLEARING_SCREEN"
    REGISTERED = "REGISTERED"
    ABOUT_TO_PAUSE = "ABOUT_TO_PAUSE"
    WIFI_CONNECTING = "WIFI_CONNECTING"
    WIFI_CONNECTION_FAILED = "WIFI_CONNECTION_FAILED"
    WIFI_CONNECTED = "WIFI_CONNECTED"
    CALIBRATE_PROMPT = "CALIBRATE_PROMPT"
    USB_FILE_FOUND = "USB_FILE_FOUND"
    USB_DRIVE_ERROR = "USB_DRIVE_ERROR"


# Keys used by the firmware status document
STATUS_KEY = "PrinterStatus"
STATE_KEY = "State"
SUBSTATE_KEY = "UISubState"


@dataclass(slots=True, frozen=True)
class DeviceState:
    """Last known firmware ``(state, substate)`` pair."""

    state: PrinterState
    substate: PrinterSubstate = PrinterSubstate.NONE

    def describe(self) -> str:
        return f'(state: "{self.state.value}", substate: "{self.substate.value}")'

    def as_dict(self) -> Dict[str, str]:
        return {"state": self.state.value, "substate": self.substate.value}

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeviceState":
        """Build a state from the persisted ``as_dict`` form."""

        return cls(
            state=PrinterState(str(data["state"])),
            substate=PrinterSubstate(str(data.get("substate") or "NONE")),
        )

    @classmethod
    def from_firmware(cls, status: Mapping[str, Any]) -> "DeviceState":
        """Parse the ``PrinterStatus`` object embedded in a pipe reply.

        Raises:
            PipeError: If either name is missing or is not a firmware name.
                Well-formed names outside the known table are kept as
                unlisted members.
        """

        raw_state = status.get(STATE_KEY)
        raw_substate = status.get(SUBSTATE_KEY) or PrinterSubstate.NONE.value

        try:
            state = PrinterState(str(raw_state))
        except ValueError as exc:
            raise PipeError(
                f"Malformed printer state {raw_state!r}", code="unparseable_reply"
            ) from exc

        try:
            substate = PrinterSubstate(str(raw_substate))
        except ValueError as exc:
            raise PipeError(
                f"Malformed printer substate {raw_substate!r}",
                code="unparseable_reply",
            ) from exc

        return cls(state=state, substate=substate)


IDLE = DeviceState(PrinterState.HOME, PrinterSubstate.NONE)

# Substates of HOME in which firmware is already busy with print data
_PRINT_DATA_BUSY_SUBSTATES = frozenset(
    {PrinterSubstate.DOWNLOADING, PrinterSubstate.LOADING}
)


def can_begin_print_data_load(device_state: DeviceState) -> bool:
    """Return True when a new print file may be loaded."""

    if device_state.state != PrinterState.HOME:
        return False
    return device_state.substate not in _PRINT_DATA_BUSY_SUBSTATES


def is_print_data_downloading(device_state: DeviceState) -> bool:
    """Return True when firmware accepted a LOAD and awaits the download."""

    return (
        device_state.state == PrinterState.HOME
        and device_state.substate == PrinterSubstate.DOWNLOADING
    )
