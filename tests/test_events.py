import logging

from smarteefi_bridge.codec import ERROR_BITMAP
from smarteefi_bridge.events import ObserverHub, StateChange, describe_switch
from smarteefi_bridge.store import DeviceStatusRecord


class _BrokenObserver:
    def on_state_changed(self, device_id, sequence, change) -> None:
        raise RuntimeError("observer exploded")


def test_describe_switch_and_fan() -> None:
    record = DeviceStatusRecord(id="dev1", switch_bitmap=0b11, status_bitmap=0b01, speed_level=3)

    assert describe_switch(record, 1, False) == StateChange(on=False)
    assert describe_switch(record, 0, True) == StateChange(on=True, speed_percent=75)


def test_describe_fan_off_reports_zero_speed() -> None:
    record = DeviceStatusRecord(id="dev1", status_bitmap=0, speed_level=2)
    assert describe_switch(record, 0, True).speed_percent == 0


def test_errored_device_is_unreachable() -> None:
    record = DeviceStatusRecord(id="dev1", switch_bitmap=ERROR_BITMAP, status_bitmap=ERROR_BITMAP)
    assert describe_switch(record, 0, True) == StateChange(reachable=False)


def test_publish_device_targets_registered_switches(observer) -> None:
    hub = ObserverHub()
    hub.subscribe(observer)
    hub.subscribe(observer)
    hub.register_switch("dev1", 1, False)
    hub.register_switch("dev1", 0, True)
    hub.register_switch("dev1", 1, False)

    hub.publish_device(DeviceStatusRecord(id="dev1", status_bitmap=0b10))
    hub.publish_device(DeviceStatusRecord(id="dev2", status_bitmap=0b10))

    assert [(device_id, sequence) for device_id, sequence, _ in observer.changes] == [
        ("dev1", 0),
        ("dev1", 1),
    ]


def test_failing_observer_does_not_stop_others(observer, caplog) -> None:
    hub = ObserverHub()
    hub.subscribe(_BrokenObserver())
    hub.subscribe(observer)
    caplog.set_level(logging.ERROR, logger="smarteefi.events")

    hub.publish_switch(DeviceStatusRecord(id="dev1", status_bitmap=0b1), 0, False)

    assert len(observer.changes) == 1
    assert any("State observer failed" in record.message for record in caplog.records)


def test_unsubscribe(observer) -> None:
    hub = ObserverHub()
    hub.subscribe(observer)
    hub.unsubscribe(observer)
    hub.publish_switch(DeviceStatusRecord(id="dev1"), 0, False)
    assert observer.changes == []
