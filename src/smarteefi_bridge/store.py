"""In-memory cache of the last known device status words."""

from __future__ import annotations

import time
from dataclasses import dataclass, replace
from typing import Any, Callable, Dict, Mapping, Optional

from .codec import ERROR_BITMAP
from .logging import get_logger


class _Unset:
    def __repr__(self) -> str:
        return "UNSET"


UNSET: Any = _Unset()


@dataclass(frozen=True)
class RollbackSnapshot:
    """Cached fields a failed command must not leave behind."""

    switch_bitmap: int
    status_bitmap: int
    speed_level: Optional[int]
    preserved_speed_level: Optional[int] = None
    preserved_at_off: Optional[int] = None


@dataclass
class DeviceStatusRecord:
    """Cached status for one physical device."""

    id: str
    switch_bitmap: int = 0
    status_bitmap: int = 0
    speed_level: Optional[int] = None
    preserved_speed_level: Optional[int] = None
    preserved_at_off: Optional[int] = None
    pending_update: bool = False
    last_command_at: Optional[float] = None
    rollback: Optional[RollbackSnapshot] = None

    @property
    def errored(self) -> bool:
        return self.status_bitmap == ERROR_BITMAP

    def as_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "switch_bitmap": self.switch_bitmap,
            "status_bitmap": self.status_bitmap,
            "speed_level": self.speed_level,
            "preserved_speed_level": self.preserved_speed_level,
            "preserved_at_off": self.preserved_at_off,
            "pending_update": self.pending_update,
            "last_command_at": self.last_command_at,
            "has_rollback": self.rollback is not None,
        }


class StatusStore:
    """Process-wide status cache owned by the coordinator and the poller.

    Every method is synchronous; callers running on the event loop get
    read-modify-write atomicity as long as they do not await in between.
    """

    def __init__(self, clock: Callable[[], float] = time.monotonic) -> None:
        self._records: Dict[str, DeviceStatusRecord] = {}
        self._clock = clock
        self.logger = get_logger("smarteefi.store")

    def get(self, device_id: str) -> Optional[DeviceStatusRecord]:
        return self._records.get(device_id)

    def record(self, device_id: str) -> DeviceStatusRecord:
        """Return the record for ``device_id``, creating it on first touch."""

        record = self._records.get(device_id)
        if record is None:
            record = DeviceStatusRecord(id=device_id)
            self._records[device_id] = record
        return record

    def merge(
        self,
        device_id: str,
        switch_bitmap: int,
        status_bitmap: int,
        speed_level: Optional[int] = UNSET,
    ) -> DeviceStatusRecord:
        """Overwrite the bitmaps and, when supplied, the speed level.

        Passing ``speed_level=None`` clears the cached speed; leaving it unset
        keeps whatever speed is cached.
        """

        record = self.record(device_id)
        record.switch_bitmap = switch_bitmap
        record.status_bitmap = status_bitmap
        if speed_level is not UNSET:
            record.speed_level = speed_level
        if status_bitmap == ERROR_BITMAP:
            record.speed_level = None
        return record

    def set_speed_level(self, device_id: str, level: Optional[int]) -> DeviceStatusRecord:
        """Update only the speed level; the on/off bitmaps are left alone."""

        record = self.record(device_id)
        if record.errored:
            self.logger.debug(
                "Ignoring speed update for errored device",
                extra={"device_id": device_id, "speed_level": level},
            )
            return record
        record.speed_level = level
        return record

    def mark_pending(self, device_id: str) -> None:
        record = self.record(device_id)
        record.pending_update = True
        record.last_command_at = self._clock()

    def mark_complete(self, device_id: str) -> None:
        self.record(device_id).pending_update = False

    def capture(self, device_id: str) -> RollbackSnapshot:
        record = self.record(device_id)
        return RollbackSnapshot(
            switch_bitmap=record.switch_bitmap,
            status_bitmap=record.status_bitmap,
            speed_level=record.speed_level,
            preserved_speed_level=record.preserved_speed_level,
            preserved_at_off=record.preserved_at_off,
        )

    def apply_snapshot(self, device_id: str, snapshot: RollbackSnapshot) -> DeviceStatusRecord:
        """Write every field of ``snapshot`` into the cache; the saved snapshot is kept."""

        record = self.record(device_id)
        record.switch_bitmap = snapshot.switch_bitmap
        record.status_bitmap = snapshot.status_bitmap
        record.speed_level = snapshot.speed_level
        record.preserved_speed_level = snapshot.preserved_speed_level
        record.preserved_at_off = snapshot.preserved_at_off
        return record

    def save_rollback(
        self, device_id: str, snapshot: Optional[RollbackSnapshot] = None
    ) -> RollbackSnapshot:
        """Store ``snapshot``, or the current status; a later call overwrites it."""

        if snapshot is None:
            snapshot = self.capture(device_id)
        self.record(device_id).rollback = snapshot
        return snapshot

    def rollback(self, device_id: str) -> bool:
        """Restore the last snapshot, returning whether one existed."""

        record = self.record(device_id)
        snapshot = record.rollback
        if snapshot is None:
            return False
        self.apply_snapshot(device_id, snapshot)
        record.rollback = None
        return True

    def discard_rollback(self, device_id: str) -> None:
        self.record(device_id).rollback = None

    def should_skip_reconcile(self, device_id: str, grace_seconds: float) -> bool:
        """Return True while a command is in flight or inside its grace window."""

        record = self._records.get(device_id)
        if record is None:
            return False
        if record.pending_update:
            return True
        if record.last_command_at is None:
            return False
        return (self._clock() - record.last_command_at) < grace_seconds

    def set_preserved_speed(self, device_id: str, level: Optional[int]) -> None:
        self.record(device_id).preserved_speed_level = level

    def get_preserved_speed(self, device_id: str) -> Optional[int]:
        return self.record(device_id).preserved_speed_level

    def set_preserved_at_off(self, device_id: str, level: Optional[int]) -> None:
        self.record(device_id).preserved_at_off = level

    def get_preserved_at_off(self, device_id: str) -> Optional[int]:
        return self.record(device_id).preserved_at_off

    def snapshot(self) -> Mapping[str, DeviceStatusRecord]:
        """Return copies of every cached record."""

        return {device_id: replace(record) for device_id, record in self._records.items()}
