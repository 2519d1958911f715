from pathlib import Path

import pytest

from smarteefi_bridge.config import (
    CONFIG_VERSION,
    MIN_SUPPORTED_CONFIG_VERSION,
    Config,
    DeviceConfig,
)


def test_default_config_passes_validation() -> None:
    config = Config()
    assert config.config_version == CONFIG_VERSION
    assert config.reconcile_interval == 60.0
    assert config.reconcile_grace == 10.0
    assert config.request_timeout == 15.0


@pytest.mark.parametrize(
    "field,value,error",
    [
        ("reconcile_interval", 9.9, "reconcile_interval"),
        ("speed_debounce", -0.1, "speed_debounce"),
        ("fan_switch_map", 256, "fan_switch_map"),
        ("login_backoff_factor", 0.5, "login_backoff_factor"),
    ],
)
def test_bounds_enforced(field: str, value: object, error: str) -> None:
    with pytest.raises(ValueError, match=error):
        Config(**{field: value})


def test_future_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="newer than supported"):
        Config(config_version=CONFIG_VERSION + 1)


def test_ancient_config_version_rejected() -> None:
    with pytest.raises(ValueError, match="too old"):
        Config(config_version=MIN_SUPPORTED_CONFIG_VERSION - 1)


def test_logging_dict_masks_password() -> None:
    config = Config(userid="me@example.com", password="hunter2")
    logged = config.logging_dict()
    assert logged["password"] == "***REDACTED***"
    assert logged["userid"] == "me@example.com"


def test_cli_devices_and_overrides(monkeypatch) -> None:
    monkeypatch.delenv("SMARTEEFI_CONFIG", raising=False)
    config = Config.from_sources(
        [
            "--device",
            "id=A1B2,ip=192.168.1.20,fan=true",
            "--device",
            "C3D4",
            "--reconcile-interval",
            "30",
        ]
    )
    assert config.devices == (
        DeviceConfig(id="A1B2", address="192.168.1.20", fan_capable=True),
        DeviceConfig(id="C3D4"),
    )
    assert config.reconcile_interval == 30.0


def test_env_overrides_file(monkeypatch, tmp_path: Path) -> None:
    config_path = tmp_path / "bridge.toml"
    config_path.write_text(
        'userid = "file@example.com"\n'
        "reconcile-grace = 5\n"
        "\n"
        "[[devices]]\n"
        'device = "A1B2"\n'
        "isFan = false\n"
        "\n"
        "[[devices]]\n"
        'ip = "192.168.1.30"\n'
    )
    monkeypatch.setenv("SMARTEEFI_CONFIG", str(config_path))
    monkeypatch.setenv("SMARTEEFI_USERID", "env@example.com")

    config = Config.from_sources([])

    assert config.userid == "env@example.com"
    assert config.reconcile_grace == 5.0
    assert config.devices == (
        DeviceConfig(id="A1B2", fan_capable=False),
        DeviceConfig(id="", address="192.168.1.30"),
    )


def test_devices_from_json_env(monkeypatch) -> None:
    monkeypatch.delenv("SMARTEEFI_CONFIG", raising=False)
    monkeypatch.setenv("SMARTEEFI_DEVICES", '[{"id": "A1B2", "fan": "no"}]')

    config = Config.from_sources([])

    assert config.devices == (DeviceConfig(id="A1B2", fan_capable=False),)


def test_missing_config_file_raises(tmp_path: Path) -> None:
    with pytest.raises(FileNotFoundError):
        Config.from_sources(["--config", str(tmp_path / "missing.toml")])
