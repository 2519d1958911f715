"""Exception types shared by the bridge subsystems."""

from __future__ import annotations

from typing import Optional


class BridgeError(Exception):
    """Base class for bridge failures."""


class TransportError(BridgeError):
    """A request to the remote authority failed or returned non-success."""

    def __init__(self, reason: str, *, device_id: Optional[str] = None) -> None:
        super().__init__(reason)
        self.reason = reason
        self.device_id = device_id


class SessionNotReadyError(TransportError):
    """No authenticated session is available yet."""

    def __init__(self, device_id: Optional[str] = None) -> None:
        super().__init__("Not logged in", device_id=device_id)


class MalformedResponseError(TransportError):
    """The remote authority answered with a payload we could not interpret."""


class DeviceStateUnknown(BridgeError):
    """The cached state for a device is the error sentinel."""

    def __init__(self, device_id: str) -> None:
        super().__init__(f"State of device {device_id} is unknown (last poll failed)")
        self.device_id = device_id


class CommandFailedError(BridgeError):
    """A user command failed; the optimistic write has been rolled back."""

    def __init__(self, device_id: str, reason: str) -> None:
        super().__init__(f"Command for device {device_id} failed: {reason}")
        self.device_id = device_id
        self.reason = reason
