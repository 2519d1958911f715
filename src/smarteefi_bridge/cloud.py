"""Smarteefi cloud API client implementing the bridge transport."""

from __future__ import annotations

from typing import Any, Dict, List, Mapping, Optional

import httpx

from .codec import POLL_SWITCH_MAP, base_device_id, reason_for_code
from .config import Config
from .errors import MalformedResponseError, SessionNotReadyError, TransportError
from .logging import get_logger, redact_mapping
from .transport import CommandResult, PollResult, SpeedResult

LOGIN_APP = "smarteefi"


def _as_int(value: Any) -> Optional[int]:
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, str):
        try:
            return int(value.strip(), 10)
        except ValueError:
            return None
    return None


class SmarteefiCloud:
    """Async client for the Smarteefi v3 cloud API.

    The access token obtained by :meth:`login` is held in memory only. Every
    device operation fails fast with :class:`SessionNotReadyError` until a
    login has succeeded.
    """

    def __init__(self, config: Config, client: Optional[httpx.AsyncClient] = None) -> None:
        self.config = config
        self.logger = get_logger("smarteefi.cloud")
        self._base_url = config.api_host.rstrip("/")
        self._client = client or httpx.AsyncClient(timeout=config.request_timeout)
        self._owns_client = client is None
        self._token: Optional[str] = None

    @property
    def logged_in(self) -> bool:
        return bool(self._token)

    async def __aenter__(self) -> "SmarteefiCloud":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()

    async def login(self) -> None:
        """Authenticate and keep the access token for later calls."""

        self.logger.info("Logging in", extra={"userid": self.config.userid, "api_host": self._base_url})
        body = await self._post(
            "/user/login",
            {
                "LoginForm": {
                    "email": self.config.userid,
                    "password": self.config.password,
                    "app": LOGIN_APP,
                }
            },
        )
        token = body.get("access_token")
        if body.get("result") != "success" or not isinstance(token, str) or not token:
            reason = body.get("reason") or f"login result {body.get('result')!r}"
            self.logger.warning("Login failed", extra={"userid": self.config.userid, "reason": reason})
            raise TransportError(f"Login failed: {reason}")
        self._token = token
        self.logger.info("Login successful", extra={"userid": self.config.userid})

    async def fetch_switches(self) -> List[Mapping[str, Any]]:
        """Return every switch linked to the account as ``{name, map, serial}`` entries."""

        token = self._require_token()
        body = await self._post("/user/devices", {"UserDevice": {"access_token": token}})
        switches = body.get("switches")
        if not isinstance(switches, list):
            raise MalformedResponseError("Invalid response structure from /user/devices")
        self.logger.debug("Fetched account switches", extra={"count": len(switches)})
        return [entry for entry in switches if isinstance(entry, Mapping)]

    async def send_command(
        self, device_id: str, switch_bitmap: int, status_bitmap: int, is_fan: bool
    ) -> CommandResult:
        token = self._require_token(device_id)
        if is_fan:
            # The regulator only answers on the fan appliance map.
            turning_on = status_bitmap != 0
            switch_map = self.config.fan_switch_map
            status_map = self.config.fan_on_status_map if turning_on else self.config.fan_off_status_map
        else:
            switch_map, status_map = switch_bitmap, status_bitmap
        self.logger.info(
            "Sending switch command",
            extra={
                "device_id": device_id,
                "switchmap": switch_map,
                "statusmap": status_map,
                "is_fan": is_fan,
            },
        )
        body = await self._post(
            "/device/setstatus",
            {
                "DeviceStatus": {
                    "access_token": token,
                    "serial": base_device_id(device_id),
                    "switchmap": switch_map,
                    "statusmap": status_map,
                    "duration": 0,
                }
            },
            device_id=device_id,
        )
        if body.get("result") != "success":
            reason = body.get("reason") or f"cloud reported {body.get('result')!r}"
            self.logger.warning(
                "Switch command rejected", extra={"device_id": device_id, "reason": reason}
            )
            return CommandResult(success=False, reason=str(reason))
        return CommandResult(success=True, reported_bitmap=_as_int(body.get("statusmap")))

    async def send_speed(self, device_id: str, level: int) -> SpeedResult:
        token = self._require_token(device_id)
        self.logger.info("Sending fan speed", extra={"device_id": device_id, "value": level})
        body = await self._post(
            "/device/setdimctl",
            {
                "DimControl": {
                    "access_token": token,
                    "serial": base_device_id(device_id),
                    "appliancemap": self.config.fan_appliance_map,
                    "ctlflag": self.config.fan_ctl_flag,
                    "duration": 0,
                    "value": level,
                }
            },
            device_id=device_id,
        )
        if body.get("result") != "success":
            reason = body.get("reason") or f"cloud reported {body.get('result')!r}"
            self.logger.warning("Fan speed rejected", extra={"device_id": device_id, "reason": reason})
            return SpeedResult(success=False, reason=str(reason))
        status = _as_int(body.get("status"))
        value = _as_int(body.get("value"))
        # Only a response carrying both fields is treated as authoritative.
        if status is None or value is None:
            return SpeedResult(success=True)
        return SpeedResult(success=True, reported_level=value)

    async def poll_status(self, device_id: str) -> PollResult:
        token = self._require_token(device_id)
        body = await self._post(
            "/device/getstatus",
            {
                "DeviceStatus": {
                    "access_token": token,
                    "serial": base_device_id(device_id),
                    "switchmap": POLL_SWITCH_MAP,
                    "statusmap": 0,
                    "duration": 0,
                }
            },
            device_id=device_id,
        )
        result = body.get("result")
        if result == "success":
            return PollResult(
                success=True,
                switch_bitmap=body.get("switchmap"),
                status_bitmap=body.get("statusmap"),
            )
        code = _as_int(body.get("major_ecode"))
        if result == "error":
            reason = reason_for_code(code)
        else:
            reason = body.get("reason") or f"unexpected result {result!r}"
        return PollResult(success=False, reason=str(reason), error_code=code)

    def _require_token(self, device_id: Optional[str] = None) -> str:
        if not self._token:
            raise SessionNotReadyError(device_id)
        return self._token

    async def _post(
        self, path: str, payload: Mapping[str, Any], device_id: Optional[str] = None
    ) -> Dict[str, Any]:
        url = f"{self._base_url}{path}"
        self.logger.debug("Cloud request", extra={"url": url, "payload": redact_mapping(payload)})
        try:
            response = await self._client.post(url, json=payload, timeout=self.config.request_timeout)
            response.raise_for_status()
        except httpx.TimeoutException as exc:
            raise TransportError(f"Request to {path} timed out", device_id=device_id) from exc
        except httpx.HTTPStatusError as exc:
            raise TransportError(
                f"HTTP {exc.response.status_code} from {path}", device_id=device_id
            ) from exc
        except httpx.RequestError as exc:
            raise TransportError(f"API call error: {exc}", device_id=device_id) from exc

        try:
            body = response.json()
        except ValueError as exc:
            raise MalformedResponseError(
                f"Failed to parse response from {path}", device_id=device_id
            ) from exc
        if not isinstance(body, dict):
            raise MalformedResponseError(
                f"Unexpected response shape from {path}", device_id=device_id
            )
        self.logger.debug("Cloud response", extra={"url": url, "body": redact_mapping(body)})
        return body
