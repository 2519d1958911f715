"""Expand configured devices into logical switches."""

from __future__ import annotations

from typing import Any, Iterable, List, Mapping, Protocol, Sequence

from .codec import base_device_id
from .config import DeviceConfig
from .devices import AccessoryKind, LogicalSwitch
from .logging import get_logger

logger = get_logger("smarteefi.discovery")


class SwitchSource(Protocol):
    async def fetch_switches(self) -> List[Mapping[str, Any]]:
        ...


def is_fan_name(name: str) -> bool:
    """Return True for switch names that describe a fan regulator."""

    lowered = name.lower()
    return ("fan" in lowered or "regulator" in lowered) and "light" not in lowered


def expand_switches(
    devices: Sequence[DeviceConfig], switches: Iterable[Mapping[str, Any]]
) -> List[LogicalSwitch]:
    """Match account switches to configured devices, in configuration order.

    Sequences are assigned per device in the order the cloud lists the
    switches, skipping entries without a usable name.
    """

    entries = list(switches)
    discovered: List[LogicalSwitch] = []
    for device in devices:
        if not device.id:
            logger.warning("Skipping device entry without an id")
            continue
        serials = {device.id, base_device_id(device.id)}
        matches = [entry for entry in entries if str(entry.get("serial", "")) in serials]
        if not matches:
            logger.warning("No switches found for configured device", extra={"device_id": device.id})
            continue
        sequence = 0
        for entry in matches:
            name = entry.get("name")
            if not isinstance(name, str):
                logger.warning(
                    "Skipping invalid switch entry",
                    extra={"device_id": device.id, "entry": dict(entry)},
                )
                continue
            fan = device.fan_capable is not False and is_fan_name(name)
            switch = LogicalSwitch(
                device_id=device.id,
                sequence=sequence,
                name=name,
                address=device.address,
                kind=AccessoryKind.FAN if fan else AccessoryKind.SWITCH,
            )
            logger.info(
                "Discovered switch",
                extra={
                    "device_id": device.id,
                    "sequence": sequence,
                    "name": name,
                    "kind": switch.kind.value,
                },
            )
            discovered.append(switch)
            sequence += 1
    return discovered


async def discover_switches(source: SwitchSource, devices: Sequence[DeviceConfig]) -> List[LogicalSwitch]:
    """Fetch the account's switches once and expand ``devices`` against them."""

    if not any(device.id for device in devices):
        logger.warning("No devices configured; nothing to discover")
        return []
    switches = await source.fetch_switches()
    discovered = expand_switches(devices, switches)
    logger.info(
        "Discovery finished",
        extra={"configured_devices": len(devices), "switches": len(discovered)},
    )
    return discovered
