import asyncio
from typing import Dict, List, Optional, Tuple, Union

import pytest

from smarteefi_bridge.events import ObserverHub, StateChange
from smarteefi_bridge.store import StatusStore
from smarteefi_bridge.transport import CommandResult, PollResult, SpeedResult


class FakeClock:
    def __init__(self, now: float = 1000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class FakeTransport:
    """In-memory transport recording every call.

    Setting ``gate`` to an unset event holds commands and speed changes until
    the test releases it.
    """

    def __init__(self) -> None:
        self.commands: List[Tuple[str, int, int, bool]] = []
        self.speeds: List[Tuple[str, int]] = []
        self.polls: List[str] = []
        self.command_result = CommandResult(success=True)
        self.speed_result = SpeedResult(success=True)
        self.command_error: Optional[Exception] = None
        self.speed_error: Optional[Exception] = None
        self.poll_results: Dict[str, Union[PollResult, Exception]] = {}
        self.gate: Optional[asyncio.Event] = None

    async def send_command(
        self, device_id: str, switch_bitmap: int, status_bitmap: int, is_fan: bool
    ) -> CommandResult:
        self.commands.append((device_id, switch_bitmap, status_bitmap, is_fan))
        if self.gate is not None:
            await self.gate.wait()
        if self.command_error is not None:
            raise self.command_error
        return self.command_result

    async def send_speed(self, device_id: str, level: int) -> SpeedResult:
        self.speeds.append((device_id, level))
        if self.gate is not None:
            await self.gate.wait()
        if self.speed_error is not None:
            raise self.speed_error
        return self.speed_result

    async def poll_status(self, device_id: str) -> PollResult:
        self.polls.append(device_id)
        result = self.poll_results.get(
            device_id, PollResult(success=True, switch_bitmap=0, status_bitmap=0)
        )
        if isinstance(result, Exception):
            raise result
        return result


class RecordingObserver:
    def __init__(self) -> None:
        self.changes: List[Tuple[str, int, StateChange]] = []

    def on_state_changed(self, device_id: str, sequence: int, change: StateChange) -> None:
        self.changes.append((device_id, sequence, change))


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store(clock: FakeClock) -> StatusStore:
    return StatusStore(clock=clock)


@pytest.fixture
def observer() -> RecordingObserver:
    return RecordingObserver()


@pytest.fixture
def hub(observer: RecordingObserver) -> ObserverHub:
    hub = ObserverHub()
    hub.subscribe(observer)
    return hub


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()
