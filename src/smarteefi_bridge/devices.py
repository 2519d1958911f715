"""Logical switch descriptors."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Optional

from .codec import bit_for


class AccessoryKind(str, Enum):
    """Capability set exposed for a logical switch."""

    SWITCH = "switch"
    FAN = "fan"


@dataclass(frozen=True)
class LogicalSwitch:
    """One switch inside a physical device's bit-packed status word."""

    device_id: str
    sequence: int
    name: str = ""
    address: Optional[str] = None
    kind: AccessoryKind = AccessoryKind.SWITCH

    @property
    def is_fan(self) -> bool:
        return self.kind is AccessoryKind.FAN

    @property
    def bit(self) -> int:
        return bit_for(self.sequence)

    @property
    def label(self) -> str:
        return self.name or f"{self.device_id}#{self.sequence}"
