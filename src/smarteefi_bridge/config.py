"""Configuration loading for the Smarteefi bridge."""

from __future__ import annotations

import argparse
import json
import os
import re
import sys
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

try:  # Python 3.11+
    import tomllib
except ModuleNotFoundError:  # pragma: no cover - fallback for older interpreters
    import tomli as tomllib  # type: ignore

from . import codec


CONFIG_ENV_PREFIX = "SMARTEEFI_"
CONFIG_VERSION = 1
MIN_SUPPORTED_CONFIG_VERSION = 1
DEFAULT_API_HOST = "https://www.smarteefi.com/api/v3"
MIN_RECONCILE_INTERVAL = 10.0
_LOG_LEVELS = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]


@dataclass(frozen=True)
class DeviceConfig:
    """A physical device listed by the user.

    ``fan_capable`` is tri-state: ``None`` lets discovery classify switches by
    name, ``False`` forces every switch on the device to be a plain switch.
    """

    id: str
    address: Optional[str] = None
    fan_capable: Optional[bool] = None


@dataclass(frozen=True)
class Config:
    """Application configuration."""

    userid: str = ""
    password: str = ""
    api_host: str = DEFAULT_API_HOST
    devices: Sequence[DeviceConfig] = ()
    reconcile_interval: float = 60.0
    reconcile_grace: float = 10.0
    speed_debounce: float = 0.5
    request_timeout: float = 15.0
    login_backoff_base: float = 5.0
    login_backoff_factor: float = 2.0
    login_backoff_max: float = 60.0
    subsystem_failure_threshold: int = 5
    subsystem_failure_cooldown: float = 30.0
    fan_switch_map: int = codec.FAN_SWITCH_MAP
    fan_on_status_map: int = codec.FAN_ON_STATUS_MAP
    fan_off_status_map: int = codec.FAN_OFF_STATUS_MAP
    fan_appliance_map: int = codec.FAN_APPLIANCE_MAP
    fan_ctl_flag: int = codec.FAN_CTL_FLAG
    log_format: str = "plain"
    log_level: str = "INFO"
    cloud_log_level: Optional[str] = None
    config_version: int = CONFIG_VERSION

    def __post_init__(self) -> None:
        _validate_config(self)

    def logging_dict(self) -> Dict[str, Any]:
        """Return a sanitized mapping suitable for structured logging."""

        return {
            "config_version": self.config_version,
            "userid": self.userid,
            "password": "***REDACTED***" if self.password else None,
            "api_host": self.api_host,
            "devices": [
                {
                    "id": device.id,
                    "address": device.address,
                    "fan_capable": device.fan_capable,
                }
                for device in self.devices
            ],
            "reconcile_interval": self.reconcile_interval,
            "reconcile_grace": self.reconcile_grace,
            "speed_debounce": self.speed_debounce,
            "request_timeout": self.request_timeout,
            "login_backoff_base": self.login_backoff_base,
            "login_backoff_factor": self.login_backoff_factor,
            "login_backoff_max": self.login_backoff_max,
            "subsystem_failure_threshold": self.subsystem_failure_threshold,
            "subsystem_failure_cooldown": self.subsystem_failure_cooldown,
            "fan_switch_map": self.fan_switch_map,
            "fan_on_status_map": self.fan_on_status_map,
            "fan_off_status_map": self.fan_off_status_map,
            "fan_appliance_map": self.fan_appliance_map,
            "fan_ctl_flag": self.fan_ctl_flag,
            "log_format": self.log_format,
            "log_level": self.log_level,
            "cloud_log_level": self.cloud_log_level,
        }

    @classmethod
    def from_sources(cls, cli_args: Optional[Iterable[str]] = None) -> "Config":
        """Load configuration from defaults, file, env, and CLI (in that order)."""

        args = _parse_cli(cli_args)
        file_config = _load_file_config(
            args.config
            or _coerce_path(os.environ.get(f"{CONFIG_ENV_PREFIX}CONFIG"))
            or None
        )
        env_config = _load_env_config(CONFIG_ENV_PREFIX)
        cli_config = _cli_overrides(args)

        config = cls()
        config = _apply_mapping(config, file_config)
        config = _apply_mapping(config, env_config)
        config = _apply_mapping(config, cli_config)
        return config


def _validate_config(config: Config) -> None:
    _validate_version(config.config_version)
    _validate_range("reconcile_interval", config.reconcile_interval, MIN_RECONCILE_INTERVAL, 86400.0)
    _validate_range("reconcile_grace", config.reconcile_grace, 0.0, 3600.0)
    _validate_range("speed_debounce", config.speed_debounce, 0.0, 10.0)
    _validate_range("request_timeout", config.request_timeout, 0.1, 300.0)
    _validate_range("login_backoff_base", config.login_backoff_base, 0.0, 3600.0)
    _validate_range("login_backoff_factor", config.login_backoff_factor, 1.0, 10.0)
    _validate_range("login_backoff_max", config.login_backoff_max, 0.1, 86400.0)
    _validate_range("subsystem_failure_threshold", config.subsystem_failure_threshold, 1, 1000)
    _validate_range("subsystem_failure_cooldown", config.subsystem_failure_cooldown, 0.0, 3600.0)
    for name in (
        "fan_switch_map",
        "fan_on_status_map",
        "fan_off_status_map",
        "fan_appliance_map",
        "fan_ctl_flag",
    ):
        _validate_range(name, getattr(config, name), 0, 255)
    if config.log_format not in {"plain", "json"}:
        raise ValueError(f"log_format must be 'plain' or 'json'; got {config.log_format}.")
    for field_name, value in (
        ("log_level", config.log_level),
        ("cloud_log_level", config.cloud_log_level),
    ):
        _validate_log_level_value(value, field_name)


def _validate_version(version: int) -> None:
    if version < MIN_SUPPORTED_CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is too old; minimum supported is {MIN_SUPPORTED_CONFIG_VERSION}."
        )
    if version > CONFIG_VERSION:
        raise ValueError(
            f"Config version {version} is newer than supported ({CONFIG_VERSION}); please upgrade the bridge."
        )


def _validate_range(name: str, value: float, minimum: float, maximum: float) -> None:
    if value < minimum or value > maximum:
        raise ValueError(f"{name} must be between {minimum} and {maximum}; got {value}.")


def _validate_log_level_value(value: Optional[str], name: str) -> None:
    if value is None:
        return
    if value.upper() not in _LOG_LEVELS:
        raise ValueError(f"{name} must be one of {sorted(_LOG_LEVELS)}; got {value}.")


def _parse_cli(cli_args: Optional[Iterable[str]]) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="smarteefi-bridge",
        description="Mirror Smarteefi switch and fan state into a local cache.",
    )
    parser.add_argument("--config", type=Path, help="Path to TOML config file.")
    parser.add_argument("--userid", type=str, help="Smarteefi account e-mail.")
    parser.add_argument("--password", type=str, help="Smarteefi account password.")
    parser.add_argument("--api-host", type=str, help="Base URL of the Smarteefi cloud API.")
    parser.add_argument(
        "--device",
        action="append",
        dest="devices",
        help="Configure a device as id=<serial>,ip=<address>,fan=<true|false> or JSON.",
    )
    parser.add_argument(
        "--reconcile-interval",
        type=float,
        help=f"Seconds between status polls (minimum {MIN_RECONCILE_INTERVAL}).",
    )
    parser.add_argument(
        "--reconcile-grace",
        type=float,
        help="Seconds after a command during which poll results are ignored.",
    )
    parser.add_argument(
        "--speed-debounce",
        type=float,
        help="Quiet period before a fan speed change is sent.",
    )
    parser.add_argument(
        "--request-timeout",
        type=float,
        help="Seconds to wait for cloud API responses.",
    )
    parser.add_argument(
        "--login-backoff-base",
        type=float,
        help="Initial delay before retrying a failed login.",
    )
    parser.add_argument(
        "--login-backoff-factor",
        type=float,
        help="Multiplier applied to the login retry delay.",
    )
    parser.add_argument(
        "--login-backoff-max",
        type=float,
        help="Maximum delay between login attempts.",
    )
    parser.add_argument(
        "--subsystem-failure-threshold",
        type=int,
        help="Consecutive failures before subsystem attempts are temporarily suppressed.",
    )
    parser.add_argument(
        "--subsystem-failure-cooldown",
        type=float,
        help="Seconds to pause a subsystem after repeated failures.",
    )
    parser.add_argument(
        "--log-format",
        choices=["plain", "json"],
        help="Structured logging format.",
    )
    parser.add_argument(
        "--log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity level.",
    )
    parser.add_argument(
        "--cloud-log-level",
        choices=_LOG_LEVELS,
        help="Log verbosity for the cloud client.",
    )
    parser.add_argument(
        "--config-version",
        type=int,
        help="Version of the configuration schema being supplied.",
    )
    return parser.parse_args(args=cli_args)


def _load_file_config(path: Optional[Path]) -> Dict[str, Any]:
    if path is None:
        return {}
    if not path.exists():
        raise FileNotFoundError(f"Config file not found: {path}")
    with path.open("rb") as f:
        parsed = tomllib.load(f)
    if not isinstance(parsed, Mapping):
        raise ValueError("Configuration file must contain a TOML table.")
    return {k.replace("-", "_"): v for k, v in parsed.items()}


def _load_env_config(prefix: str) -> Dict[str, Any]:
    mapping: Dict[str, Any] = {}
    for field in Config.__dataclass_fields__:
        env_key = f"{prefix}{field}".upper()
        if env_key in os.environ:
            mapping[field] = os.environ[env_key]
    return mapping


def _cli_overrides(args: argparse.Namespace) -> Dict[str, Any]:
    return {k: v for k, v in vars(args).items() if k != "config" and v is not None}


def _apply_mapping(config: Config, overrides: Mapping[str, Any]) -> Config:
    data: MutableMapping[str, Any] = {}
    for key, value in overrides.items():
        if value is None:
            continue
        if key in {
            "subsystem_failure_threshold",
            "fan_switch_map",
            "fan_on_status_map",
            "fan_off_status_map",
            "fan_appliance_map",
            "fan_ctl_flag",
            "config_version",
        }:
            data[key] = int(value)
        elif key in {
            "reconcile_interval",
            "reconcile_grace",
            "speed_debounce",
            "request_timeout",
            "login_backoff_base",
            "login_backoff_factor",
            "login_backoff_max",
            "subsystem_failure_cooldown",
        }:
            data[key] = float(value)
        elif key == "log_format":
            data[key] = str(value).lower()
        elif key in {"log_level", "cloud_log_level"}:
            data[key] = str(value).upper()
        elif key in {"userid", "password", "api_host"}:
            data[key] = str(value)
        elif key == "devices":
            data[key] = _coerce_devices(value)
        elif key in Config.__dataclass_fields__:
            data[key] = value
    return replace(config, **data)


def _coerce_path(value: Any) -> Optional[Path]:
    if value is None:
        return None
    return value if isinstance(value, Path) else Path(str(value)).expanduser()


def _coerce_bool(value: Any) -> bool:
    if isinstance(value, bool):
        return value
    if isinstance(value, str):
        return value.strip().lower() in {"1", "true", "yes", "on"}
    return bool(value)


def _coerce_devices(value: Any) -> Sequence[DeviceConfig]:
    if value is None:
        return ()
    if isinstance(value, str):
        if not value.strip().startswith(("[", "{")):
            return (_device_from_str(value),)
        try:
            parsed = json.loads(value)
        except json.JSONDecodeError as exc:
            raise ValueError(f"Invalid devices JSON: {exc}") from exc
        return _coerce_devices(parsed)

    if isinstance(value, DeviceConfig):
        return (value,)
    if isinstance(value, Mapping):
        return (_device_from_mapping(value),)

    if isinstance(value, Iterable):
        devices: List[DeviceConfig] = []
        for item in value:
            if isinstance(item, DeviceConfig):
                devices.append(item)
            elif isinstance(item, Mapping):
                devices.append(_device_from_mapping(item))
            elif isinstance(item, str):
                devices.extend(_coerce_devices(item))
            else:
                raise ValueError("Unsupported device entry")
        return tuple(devices)

    raise ValueError("Unsupported devices configuration")


def _device_from_mapping(value: Mapping[str, Any]) -> DeviceConfig:
    # Entries without an id are kept so the poller can report and skip them.
    raw_id = value.get("device", value.get("id"))
    address = value.get("ip", value.get("address"))
    fan_value = value.get("isFan", value.get("fan", value.get("fan_capable")))
    return DeviceConfig(
        id=str(raw_id).strip() if raw_id is not None else "",
        address=str(address) if address else None,
        fan_capable=_coerce_bool(fan_value) if fan_value is not None else None,
    )


_PAIR = re.compile(r"(?P<key>[^=]+)=(?P<value>.*)")


def _device_from_str(value: str) -> DeviceConfig:
    if "=" not in value:
        return DeviceConfig(id=value.strip())
    parts = [part.strip() for part in value.split(",") if part.strip()]
    mapping: Dict[str, Any] = {}
    for part in parts:
        match = _PAIR.match(part)
        if not match:
            raise ValueError("Device arguments must be key=value pairs separated by commas")
        mapping[match.group("key").strip()] = match.group("value").strip()
    return _device_from_mapping(mapping)


def load_config(cli_args: Optional[Iterable[str]] = None) -> Config:
    """Public helper used by the entrypoint."""

    try:
        return Config.from_sources(cli_args)
    except Exception as exc:  # pragma: no cover - defensive logging path
        print(f"Failed to load configuration: {exc}", file=sys.stderr)
        raise
