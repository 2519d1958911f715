import asyncio

import pytest

from smarteefi_bridge.__main__ import _connect
from smarteefi_bridge.config import Config, DeviceConfig
from smarteefi_bridge.devices import AccessoryKind
from smarteefi_bridge.errors import TransportError
from smarteefi_bridge.health import HealthMonitor


class _FlakyCloud:
    def __init__(self, failures: int) -> None:
        self.failures = failures
        self.logins = 0

    async def login(self) -> None:
        self.logins += 1
        if self.logins <= self.failures:
            raise TransportError("Login failed: bad gateway")

    async def fetch_switches(self):
        return [{"name": "Bedroom Fan", "map": "1", "serial": "dev1"}]


def _config() -> Config:
    return Config(
        devices=(DeviceConfig(id="dev1"),),
        login_backoff_base=0.01,
        login_backoff_factor=1.0,
        login_backoff_max=0.01,
    )


@pytest.mark.asyncio
async def test_connect_retries_until_login_succeeds() -> None:
    cloud = _FlakyCloud(failures=2)
    health = HealthMonitor(("cloud",), failure_threshold=5, cooldown_seconds=1.0)

    switches = await _connect(asyncio.Event(), _config(), cloud, health)

    assert cloud.logins == 3
    assert [(switch.device_id, switch.kind) for switch in switches] == [("dev1", AccessoryKind.FAN)]
    assert (await health.snapshot())["cloud"]["status"] == "ok"


@pytest.mark.asyncio
async def test_connect_gives_up_when_stopped() -> None:
    stop_event = asyncio.Event()
    stop_event.set()
    health = HealthMonitor(("cloud",), failure_threshold=5, cooldown_seconds=1.0)

    assert await _connect(stop_event, _config(), _FlakyCloud(failures=1), health) is None
