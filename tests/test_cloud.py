import json
from typing import Any, Callable, Dict, List

import httpx
import pytest

from smarteefi_bridge.cloud import SmarteefiCloud
from smarteefi_bridge.config import Config
from smarteefi_bridge.errors import MalformedResponseError, SessionNotReadyError, TransportError


class _CloudStub:
    """Route requests by path and record the decoded JSON bodies."""

    def __init__(self) -> None:
        self.requests: List[Dict[str, Any]] = []
        self.routes: Dict[str, Callable[[httpx.Request], httpx.Response]] = {
            "/api/v3/user/login": lambda request: httpx.Response(
                200, json={"result": "success", "access_token": "tok-123"}
            ),
        }

    def reply(self, path: str, payload: Any, status_code: int = 200) -> None:
        self.routes[f"/api/v3{path}"] = lambda request: httpx.Response(status_code, json=payload)

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append({"path": request.url.path, "body": json.loads(request.content)})
        route = self.routes.get(request.url.path)
        if route is None:
            return httpx.Response(404)
        return route(request)


@pytest.fixture
def stub() -> _CloudStub:
    return _CloudStub()


@pytest.fixture
def cloud(stub: _CloudStub) -> SmarteefiCloud:
    config = Config(userid="me@example.com", password="hunter2")
    client = httpx.AsyncClient(transport=httpx.MockTransport(stub.handler))
    return SmarteefiCloud(config, client=client)


@pytest.mark.asyncio
async def test_login_stores_token(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    await cloud.login()

    assert cloud.logged_in is True
    assert stub.requests[0] == {
        "path": "/api/v3/user/login",
        "body": {"LoginForm": {"email": "me@example.com", "password": "hunter2", "app": "smarteefi"}},
    }


@pytest.mark.asyncio
async def test_login_failure_raises(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/user/login", {"result": "failure", "reason": "Invalid credentials"})

    with pytest.raises(TransportError, match="Invalid credentials"):
        await cloud.login()
    assert cloud.logged_in is False


@pytest.mark.asyncio
async def test_calls_before_login_fail_fast(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    with pytest.raises(SessionNotReadyError):
        await cloud.poll_status("dev1")
    with pytest.raises(SessionNotReadyError):
        await cloud.send_speed("dev1", 2)
    assert stub.requests == []


@pytest.mark.asyncio
async def test_switch_command_payload(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/device/setstatus", {"result": "success", "statusmap": 2})
    await cloud.login()

    result = await cloud.send_command("dev1-2", 0b10, 0b10, False)

    assert result.success is True
    assert result.reported_bitmap == 2
    assert stub.requests[-1]["body"] == {
        "DeviceStatus": {
            "access_token": "tok-123",
            "serial": "dev1",
            "switchmap": 2,
            "statusmap": 2,
            "duration": 0,
        }
    }


@pytest.mark.asyncio
async def test_fan_commands_use_regulator_maps(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/device/setstatus", {"result": "success"})
    await cloud.login()

    await cloud.send_command("dev1", 0b1, 0b1, True)
    await cloud.send_command("dev1", 0b1, 0, True)

    sent = [request["body"]["DeviceStatus"] for request in stub.requests[1:]]
    assert [(body["switchmap"], body["statusmap"]) for body in sent] == [(112, 112), (112, 0)]


@pytest.mark.asyncio
async def test_rejected_command_is_a_failed_result(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/device/setstatus", {"result": "failure", "reason": "Device busy"})
    await cloud.login()

    result = await cloud.send_command("dev1", 0b1, 0b1, False)

    assert result.success is False
    assert result.reason == "Device busy"


@pytest.mark.asyncio
async def test_speed_payload_and_reported_values(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/device/setdimctl", {"result": "success", "status": "1", "value": "3"})
    await cloud.login()

    result = await cloud.send_speed("dev1", 3)

    assert result.success is True
    assert result.reported_level == 3
    assert stub.requests[-1]["body"] == {
        "DimControl": {
            "access_token": "tok-123",
            "serial": "dev1",
            "appliancemap": 112,
            "ctlflag": 0,
            "duration": 0,
            "value": 3,
        }
    }


@pytest.mark.asyncio
async def test_speed_without_report_leaves_level_unknown(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/device/setdimctl", {"result": "success"})
    await cloud.login()

    result = await cloud.send_speed("dev1", 1)

    assert result.success is True
    assert result.reported_level is None


@pytest.mark.asyncio
async def test_poll_success(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/device/getstatus", {"result": "success", "switchmap": 15, "statusmap": 5})
    await cloud.login()

    result = await cloud.poll_status("dev1")

    assert result.success is True
    assert (result.switch_bitmap, result.status_bitmap) == (15, 5)
    assert stub.requests[-1]["body"]["DeviceStatus"]["switchmap"] == 255


@pytest.mark.asyncio
async def test_poll_error_code_is_described(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/device/getstatus", {"result": "error", "major_ecode": 6, "minor_ecode": 0})
    await cloud.login()

    result = await cloud.poll_status("dev1")

    assert result.success is False
    assert result.reason == "Device offline"
    assert result.error_code == 6


@pytest.mark.asyncio
async def test_http_error_raises_transport_error(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/device/getstatus", {"message": "oops"}, status_code=500)
    await cloud.login()

    with pytest.raises(TransportError, match="HTTP 500"):
        await cloud.poll_status("dev1")


@pytest.mark.asyncio
async def test_timeout_raises_transport_error(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    def _timeout(request: httpx.Request) -> httpx.Response:
        raise httpx.ReadTimeout("timed out", request=request)

    stub.routes["/api/v3/device/getstatus"] = _timeout
    await cloud.login()

    with pytest.raises(TransportError, match="timed out") as excinfo:
        await cloud.poll_status("dev1")
    assert not isinstance(excinfo.value, MalformedResponseError)


@pytest.mark.asyncio
async def test_invalid_json_raises_malformed_response(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.routes["/api/v3/device/getstatus"] = lambda request: httpx.Response(200, text="<html>")
    await cloud.login()

    with pytest.raises(MalformedResponseError):
        await cloud.poll_status("dev1")


@pytest.mark.asyncio
async def test_fetch_switches(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    switches = [{"name": "Fan", "map": "1", "serial": "dev1"}, {"name": "Light", "map": "2", "serial": "dev1"}]
    stub.reply("/user/devices", {"result": "success", "switches": switches})
    await cloud.login()

    assert await cloud.fetch_switches() == switches
    assert stub.requests[-1]["body"] == {"UserDevice": {"access_token": "tok-123"}}


@pytest.mark.asyncio
async def test_fetch_switches_requires_list(cloud: SmarteefiCloud, stub: _CloudStub) -> None:
    stub.reply("/user/devices", {"result": "success"})
    await cloud.login()

    with pytest.raises(MalformedResponseError):
        await cloud.fetch_switches()
