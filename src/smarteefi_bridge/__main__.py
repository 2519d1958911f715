"""Entrypoint for the Smarteefi bridge."""

from __future__ import annotations

import asyncio
import contextlib
import signal
from typing import Dict, Iterable, List, Optional

from .accessories import Accessory, build_accessory
from .cloud import SmarteefiCloud
from .config import Config, load_config
from .coordinator import CommandCoordinator
from .devices import LogicalSwitch
from .discovery import discover_switches
from .events import ObserverHub, StateChange
from .health import BackoffPolicy, HealthMonitor
from .logging import configure_logging, get_logger
from .poller import ReconciliationScheduler
from .store import StatusStore


class _LoggingObserver:
    """Report every switch state change at INFO level."""

    def __init__(self, switches: Iterable[LogicalSwitch]) -> None:
        self.logger = get_logger("smarteefi")
        self._labels: Dict[tuple, str] = {
            (switch.device_id, switch.sequence): switch.label for switch in switches
        }

    def on_state_changed(self, device_id: str, sequence: int, change: StateChange) -> None:
        self.logger.info(
            "Switch updated",
            extra={
                "device_id": device_id,
                "sequence": sequence,
                "switch": self._labels.get((device_id, sequence)),
                **change.to_dict(),
            },
        )


async def _connect(
    stop_event: asyncio.Event, config: Config, cloud: SmarteefiCloud, health: HealthMonitor
) -> Optional[List[LogicalSwitch]]:
    """Log in and discover switches, retrying with backoff until stopped."""

    logger = get_logger("smarteefi.cloud")
    backoff = BackoffPolicy(
        base=config.login_backoff_base,
        factor=config.login_backoff_factor,
        maximum=config.login_backoff_max,
    )
    failures = 0
    while not stop_event.is_set():
        allowed, remaining = await health.allow_attempt("cloud")
        if not allowed:
            logger.warning(
                "Cloud login suppressed after repeated failures",
                extra={"cooldown_seconds": round(remaining, 2)},
            )
            await _wait_or_stop(stop_event, remaining)
            continue
        try:
            await cloud.login()
            switches = await discover_switches(cloud, config.devices)
            await health.record_success("cloud")
            return switches
        except Exception as exc:
            failures += 1
            delay = backoff.delay(failures)
            logger.exception("Login or discovery failed; retrying", extra={"retry_in": delay})
            await health.record_failure("cloud", exc)
            await _wait_or_stop(stop_event, delay)
    return None


async def _run_async(config: Config) -> None:
    logger = get_logger("smarteefi")
    stop_event = asyncio.Event()
    health = HealthMonitor(
        ("cloud", "poller"),
        failure_threshold=config.subsystem_failure_threshold,
        cooldown_seconds=config.subsystem_failure_cooldown,
    )

    def _request_shutdown(sig: Optional[str] = None) -> None:
        if not stop_event.is_set():
            logger.warning("Shutdown requested", extra={"signal": sig})
            stop_event.set()

    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        with contextlib.suppress(NotImplementedError):
            loop.add_signal_handler(sig, _request_shutdown, sig.name)

    store = StatusStore()
    hub = ObserverHub()
    cloud = SmarteefiCloud(config)
    coordinator = CommandCoordinator(store, cloud, hub, speed_debounce=config.speed_debounce)
    scheduler = ReconciliationScheduler(config, store, cloud, hub, health)
    try:
        switches = await _connect(stop_event, config, cloud, health)
        if switches is None:
            return
        accessories: List[Accessory] = []
        for switch in switches:
            hub.register_switch(switch.device_id, switch.sequence, switch.is_fan)
            if switch.address:
                logger.info(
                    "Local address configured; commands still go through the cloud",
                    extra={"device_id": switch.device_id, "address": switch.address},
                )
            accessories.append(build_accessory(switch, store, coordinator))
        hub.subscribe(_LoggingObserver(switches))

        await scheduler.start()
        logger.info(
            "Bridge services started",
            extra={
                "accessories": [accessory.name for accessory in accessories],
                "reconcile_interval": scheduler.interval,
            },
        )
        await stop_event.wait()
    finally:
        await scheduler.stop()
        await coordinator.close()
        await cloud.close()
        logger.info("Bridge shutdown complete", extra={"health": await health.snapshot()})


async def _wait_or_stop(stop_event: asyncio.Event, delay: float) -> None:
    if delay <= 0:
        return
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=delay)
    except asyncio.TimeoutError:
        return


def run(cli_args: Optional[Iterable[str]] = None) -> None:
    """CLI entrypoint."""

    config = load_config(cli_args)
    configure_logging(config)
    logger = get_logger("smarteefi")
    logger.info("Loaded configuration", extra={"config": config.logging_dict()})
    try:
        asyncio.run(_run_async(config))
    except KeyboardInterrupt:
        logger.warning("Interrupted by user")


if __name__ == "__main__":
    run()
