"""Consumer-facing handles for logical switches and fans."""

from __future__ import annotations

from typing import Union

from .codec import is_on, speed_level_to_percent
from .coordinator import CommandCoordinator, CommandState
from .devices import AccessoryKind, LogicalSwitch
from .store import StatusStore


class SwitchAccessory:
    """Read and change the power state of one logical switch.

    Reads come straight from the cache and raise
    :class:`~smarteefi_bridge.errors.DeviceStateUnknown` while the device's
    last poll failed.
    """

    def __init__(self, switch: LogicalSwitch, store: StatusStore, coordinator: CommandCoordinator) -> None:
        self.switch = switch
        self.store = store
        self.coordinator = coordinator

    @property
    def name(self) -> str:
        return self.switch.label

    def get_on(self) -> bool:
        record = self.store.record(self.switch.device_id)
        return is_on(record.status_bitmap, self.switch.sequence, self.switch.device_id)

    async def set_on(self, on: bool) -> CommandState:
        return await self.coordinator.toggle(self.switch, on)


class FanAccessory:
    """Fan on a four step speed regulator."""

    def __init__(self, switch: LogicalSwitch, store: StatusStore, coordinator: CommandCoordinator) -> None:
        self.switch = switch
        self.store = store
        self.coordinator = coordinator

    @property
    def name(self) -> str:
        return self.switch.label

    def get_on(self) -> bool:
        record = self.store.record(self.switch.device_id)
        return is_on(record.status_bitmap, self.switch.sequence, self.switch.device_id)

    async def set_on(self, on: bool) -> CommandState:
        return await self.coordinator.toggle(self.switch, on)

    def get_speed(self) -> int:
        """Return the speed as a percentage; an OFF fan reports 0."""

        if not self.get_on():
            return 0
        return speed_level_to_percent(self.store.record(self.switch.device_id).speed_level)

    async def set_speed(self, percent: float) -> CommandState:
        return await self.coordinator.set_speed(self.switch, percent)


Accessory = Union[SwitchAccessory, FanAccessory]


def build_accessory(
    switch: LogicalSwitch, store: StatusStore, coordinator: CommandCoordinator
) -> Accessory:
    if switch.kind is AccessoryKind.FAN:
        return FanAccessory(switch, store, coordinator)
    return SwitchAccessory(switch, store, coordinator)
