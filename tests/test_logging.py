import json
import logging

from smarteefi_bridge.logging import JsonFormatter, redact_mapping
from smarteefi_bridge.metrics import latest_metrics, record_command, record_rollback


def test_json_formatter_includes_extra_fields() -> None:
    record = logging.LogRecord("smarteefi.poller", logging.INFO, __file__, 1, "Cycle done", (), None)
    record.device_id = "dev1"
    record.status_bitmap = 5

    payload = json.loads(JsonFormatter().format(record))

    assert payload["logger"] == "smarteefi.poller"
    assert payload["message"] == "Cycle done"
    assert payload["device_id"] == "dev1"
    assert payload["status_bitmap"] == 5


def test_redact_mapping_hides_nested_secrets() -> None:
    payload = {
        "LoginForm": {"email": "me@example.com", "password": "hunter2"},
        "DeviceStatus": {"access_token": "tok-123", "serial": "dev1"},
    }

    redacted = redact_mapping(payload)

    assert redacted["LoginForm"] == {"email": "me@example.com", "password": "***REDACTED***"}
    assert redacted["DeviceStatus"]["access_token"] == "***REDACTED***"
    assert redacted["DeviceStatus"]["serial"] == "dev1"
    assert payload["LoginForm"]["password"] == "hunter2"


def test_command_metrics_are_exported() -> None:
    record_command("toggle", "success", 0.2)
    record_rollback("speed")

    body = latest_metrics().decode("utf-8")

    assert 'smarteefi_commands_total{kind="toggle",result="success"}' in body
    assert 'smarteefi_rollbacks_total{kind="speed"}' in body
