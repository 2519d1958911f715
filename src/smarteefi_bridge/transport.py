"""Transport abstraction consumed by the coordinator and the poller."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional, Protocol


@dataclass(frozen=True)
class CommandResult:
    """Outcome of an on/off command."""

    success: bool
    reported_bitmap: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class SpeedResult:
    """Outcome of a fan speed command."""

    success: bool
    reported_level: Optional[int] = None
    reason: Optional[str] = None


@dataclass(frozen=True)
class PollResult:
    """Outcome of a status poll."""

    success: bool
    switch_bitmap: Optional[int] = None
    status_bitmap: Optional[int] = None
    reason: Optional[str] = None
    error_code: Optional[int] = None


class Transport(Protocol):
    """Channel to the remote authority.

    Implementations either return a result with ``success=False`` or raise a
    :class:`~smarteefi_bridge.errors.TransportError`; callers treat both as
    failure. Timeouts are the implementation's concern.
    """

    async def send_command(
        self, device_id: str, switch_bitmap: int, status_bitmap: int, is_fan: bool
    ) -> CommandResult:
        ...

    async def send_speed(self, device_id: str, level: int) -> SpeedResult:
        ...

    async def poll_status(self, device_id: str) -> PollResult:
        ...
