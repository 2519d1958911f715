"""Bitmap and fan-speed encoding used by Smarteefi devices."""

from __future__ import annotations

from typing import Optional

from .errors import DeviceStateUnknown

# Status word reported for a device whose last poll failed.
ERROR_BITMAP = -1

# Switch map asking the cloud for every switch on a device.
POLL_SWITCH_MAP = 255

# Fan payloads observed from the Smarteefi app: the regulator lives on the
# 0b1110000 appliance map regardless of the logical switch sequence.
FAN_SWITCH_MAP = 112
FAN_ON_STATUS_MAP = 112
FAN_OFF_STATUS_MAP = 0
FAN_APPLIANCE_MAP = 112
FAN_CTL_FLAG = 0

MAX_FAN_SPEED_LEVEL = 4
SPEED_STEP_PERCENT = 100 // MAX_FAN_SPEED_LEVEL

_ERROR_REASONS = {
    6: "Device offline",
}


def bit_for(sequence: int) -> int:
    """Return the bitmask addressing the switch at ``sequence``."""

    if sequence < 0:
        raise ValueError(f"sequence must be >= 0; got {sequence}")
    return 1 << sequence


def is_on(status_bitmap: int, sequence: int, device_id: str = "") -> bool:
    """Return whether the switch at ``sequence`` is on.

    Raises :class:`DeviceStateUnknown` for the error sentinel so that readers
    report a communication failure instead of "off".
    """

    if status_bitmap == ERROR_BITMAP:
        raise DeviceStateUnknown(device_id)
    return (status_bitmap & bit_for(sequence)) != 0


def set_bit(status_bitmap: int, sequence: int, on: bool) -> int:
    """Return ``status_bitmap`` with the switch at ``sequence`` set or cleared."""

    base = 0 if status_bitmap == ERROR_BITMAP else status_bitmap
    bit = bit_for(sequence)
    return base | bit if on else base & ~bit


def speed_level_to_percent(level: Optional[int]) -> int:
    """Map a 1..4 speed level to a 0..100 percentage."""

    if level is None or level <= 0:
        return 0
    if level >= MAX_FAN_SPEED_LEVEL:
        return 100
    return level * SPEED_STEP_PERCENT


def percent_to_speed_level(percent: float) -> int:
    """Quantize a positive percentage into a 1..4 speed level.

    Zero or negative percentages are an OFF request and are rejected here.
    """

    if percent <= 0:
        raise ValueError(f"percent must be > 0 to map to a speed level; got {percent}")
    if percent <= 25:
        return 1
    if percent <= 50:
        return 2
    if percent <= 75:
        return 3
    return 4


def base_device_id(raw_id: str) -> str:
    """Strip any ``-suffix`` from a configured device id."""

    return raw_id.split("-", 1)[0]


def reason_for_code(code: Optional[int]) -> str:
    """Describe a cloud ``major_ecode``."""

    if code in _ERROR_REASONS:
        return _ERROR_REASONS[code]
    return f"Unknown error: {code}"
