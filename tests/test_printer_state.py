import pytest

from ember_agent.errors import PipeError
from ember_agent.printer_state import (
    IDLE,
    DeviceState,
    PrinterState,
    PrinterSubstate,
    can_begin_print_data_load,
    is_print_data_downloading,
)


def test_describe_matches_log_format():
    device_state = DeviceState(PrinterState.PRINTING, PrinterSubstate.NONE)

    assert device_state.describe() == '(state: "PRINTING", substate: "NONE")'


def test_from_firmware_defaults_missing_substate():
    device_state = DeviceState.from_firmware({"State": "HOME"})

    assert device_state == IDLE


@pytest.mark.parametrize(
    "status",
    [
        {"State": "warp drive", "UISubState": "NONE"},
        {"State": "", "UISubState": "NONE"},
        {"UISubState": "NONE"},
        {"State": "HOME", "UISubState": "spinning fast"},
        {"State": 7},
    ],
)
def test_from_firmware_rejects_malformed_names(status):
    with pytest.raises(PipeError) as excinfo:
        DeviceState.from_firmware(status)

    assert excinfo.value.code == "unparseable_reply"


@pytest.mark.parametrize(
    "name",
    ["EXPOSING", "SEPARATING", "PRE_EXPOSURE_DELAY", "GETTING_FEEDBACK", "UNJAMMING"],
)
def test_from_firmware_accepts_print_cycle_states(name):
    device_state = DeviceState.from_firmware({"State": name, "UISubState": "NONE"})

    assert device_state.state is PrinterState[name]
    assert not can_begin_print_data_load(device_state)


def test_from_firmware_keeps_unlisted_names():
    first = DeviceState.from_firmware({"State": "FUTURE_STATE", "UISubState": "NEW_SUB"})
    second = DeviceState.from_firmware({"State": "FUTURE_STATE"})

    assert first.state == "FUTURE_STATE"
    assert first.state is second.state
    assert first.substate.value == "NEW_SUB"
    assert first.describe() == '(state: "FUTURE_STATE", substate: "NEW_SUB")'
    assert not can_begin_print_data_load(first)


def test_dict_form_round_trips():
    device_state = DeviceState(PrinterState.HOME, PrinterSubstate.LOADED)

    assert DeviceState.from_dict(device_state.as_dict()) == device_state


@pytest.mark.parametrize(
    "state, substate, allowed",
    [
        (PrinterState.HOME, PrinterSubstate.NONE, True),
        (PrinterState.HOME, PrinterSubstate.NO_PRINT_DATA, True),
        (PrinterState.HOME, PrinterSubstate.LOADED, True),
        (PrinterState.HOME, PrinterSubstate.DOWNLOAD_FAILED, True),
        (PrinterState.HOME, PrinterSubstate.DOWNLOADING, False),
        (PrinterState.HOME, PrinterSubstate.LOADING, False),
        (PrinterState.PRINTING, PrinterSubstate.NONE, False),
        (PrinterState.PAUSED, PrinterSubstate.NONE, False),
        (PrinterState.ERROR, PrinterSubstate.NONE, False),
    ],
)
def test_can_begin_print_data_load(state, substate, allowed):
    assert can_begin_print_data_load(DeviceState(state, substate)) is allowed


def test_is_print_data_downloading():
    assert is_print_data_downloading(
        DeviceState(PrinterState.HOME, PrinterSubstate.DOWNLOADING)
    )
    assert not is_print_data_downloading(
        DeviceState(PrinterState.HOME, PrinterSubstate.DOWNLOAD_FAILED)
    )
    assert not is_print_data_downloading(
        DeviceState(PrinterState.PRINTING, PrinterSubstate.DOWNLOADING)
    )
