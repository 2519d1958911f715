"""State change notifications for logical switches."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Optional, Protocol, Tuple

from .codec import ERROR_BITMAP, is_on, speed_level_to_percent
from .logging import get_logger
from .store import DeviceStatusRecord


@dataclass(frozen=True)
class StateChange:
    """Values of a logical switch after a cache update.

    ``on`` and ``speed_percent`` are ``None`` when unknown or not applicable.
    """

    on: Optional[bool] = None
    speed_percent: Optional[int] = None
    reachable: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {"on": self.on, "speed_percent": self.speed_percent, "reachable": self.reachable}


class StateObserver(Protocol):
    """Receiver of cache updates; calls with unchanged values must be harmless."""

    def on_state_changed(self, device_id: str, sequence: int, change: StateChange) -> None:
        ...


def describe_switch(record: DeviceStatusRecord, sequence: int, is_fan: bool) -> StateChange:
    """Derive the observable state of one switch from a device record."""

    if record.status_bitmap == ERROR_BITMAP:
        return StateChange(on=None, speed_percent=None, reachable=False)
    on = is_on(record.status_bitmap, sequence, record.id)
    if not is_fan:
        return StateChange(on=on)
    return StateChange(on=on, speed_percent=speed_level_to_percent(record.speed_level) if on else 0)


class ObserverHub:
    """Fan out device-level cache updates to per-switch observers."""

    def __init__(self) -> None:
        self._observers: List[StateObserver] = []
        self._switches: Dict[str, List[Tuple[int, bool]]] = {}
        self.logger = get_logger("smarteefi.events")

    def subscribe(self, observer: StateObserver) -> None:
        if observer not in self._observers:
            self._observers.append(observer)

    def unsubscribe(self, observer: StateObserver) -> None:
        if observer in self._observers:
            self._observers.remove(observer)

    def register_switch(self, device_id: str, sequence: int, is_fan: bool) -> None:
        """Declare a logical switch so device updates are reported for it."""

        entries = self._switches.setdefault(device_id, [])
        entries[:] = [entry for entry in entries if entry[0] != sequence]
        entries.append((sequence, is_fan))
        entries.sort()

    def switches_for(self, device_id: str) -> Iterable[Tuple[int, bool]]:
        return tuple(self._switches.get(device_id, ()))

    def publish_switch(self, record: DeviceStatusRecord, sequence: int, is_fan: bool) -> None:
        self._emit(record.id, sequence, describe_switch(record, sequence, is_fan))

    def publish_device(self, record: DeviceStatusRecord) -> None:
        """Notify observers for every registered switch of ``record``."""

        for sequence, is_fan in self.switches_for(record.id):
            self.publish_switch(record, sequence, is_fan)

    def _emit(self, device_id: str, sequence: int, change: StateChange) -> None:
        self.logger.debug(
            "State changed",
            extra={"device_id": device_id, "sequence": sequence, **change.to_dict()},
        )
        for observer in list(self._observers):
            try:
                observer.on_state_changed(device_id, sequence, change)
            except Exception:
                self.logger.exception(
                    "State observer failed",
                    extra={"device_id": device_id, "sequence": sequence},
                )
