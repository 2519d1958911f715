"""Periodic status reconciliation against the cloud."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import asdict, dataclass
from typing import Any, List, Optional, Sequence

from .codec import ERROR_BITMAP
from .config import MIN_RECONCILE_INTERVAL, Config, DeviceConfig
from .errors import MalformedResponseError, SessionNotReadyError, TransportError
from .events import ObserverHub
from .health import BackoffPolicy, HealthMonitor
from .logging import get_logger
from .metrics import (
    observe_cycle_duration,
    observe_poll_duration,
    record_reconcile_result,
    set_errored_devices,
)
from .store import StatusStore
from .transport import Transport

MERGED = "merged"
DEFERRED = "deferred"
ERROR = "error"
SKIPPED = "skipped"


@dataclass(frozen=True)
class CycleReport:
    """Per-device outcome counts for one reconciliation cycle."""

    merged: int = 0
    deferred: int = 0
    errors: int = 0
    skipped: int = 0
    total: int = 0


def _coerce_bitmap(value: Any) -> int:
    if isinstance(value, bool) or not isinstance(value, int):
        return 0
    return value


class ReconciliationScheduler:
    """Poll every configured device and merge the answers into the store.

    A device with a command in flight, or one issued within the grace window,
    keeps its cached state; the poll answer is discarded for that cycle.
    """

    def __init__(
        self,
        config: Config,
        store: StatusStore,
        transport: Optional[Transport],
        hub: Optional[ObserverHub] = None,
        health: Optional[HealthMonitor] = None,
        *,
        devices: Optional[Sequence[DeviceConfig]] = None,
        interval: Optional[float] = None,
    ) -> None:
        self.config = config
        self.store = store
        self.transport = transport
        self.hub = hub or ObserverHub()
        self.devices: Sequence[DeviceConfig] = tuple(config.devices if devices is None else devices)
        self.logger = get_logger("smarteefi.poller")
        requested = config.reconcile_interval if interval is None else interval
        if requested < MIN_RECONCILE_INTERVAL:
            self.logger.warning(
                "Reconcile interval below minimum; clamping",
                extra={"requested_seconds": requested, "minimum_seconds": MIN_RECONCILE_INTERVAL},
            )
            requested = MIN_RECONCILE_INTERVAL
        self.interval = requested
        self.grace = config.reconcile_grace
        self._health = health or HealthMonitor(
            ("poller",),
            failure_threshold=config.subsystem_failure_threshold,
            cooldown_seconds=config.subsystem_failure_cooldown,
        )
        # Cycle-level failures retry sooner than the regular interval.
        self._backoff = BackoffPolicy(base=1.0, factor=2.0, maximum=self.interval)
        self._stop_event = asyncio.Event()
        self._task: Optional[asyncio.Task[None]] = None
        self._cycles_completed = 0
        self._cycle_waiters: List[asyncio.Future[CycleReport]] = []

    @property
    def cycles_completed(self) -> int:
        return self._cycles_completed

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def start(self) -> None:
        """Run a cycle right away, then one every ``interval`` seconds."""

        if self._task:
            return
        self._stop_event.clear()
        self._task = asyncio.create_task(self._run())
        self.logger.info(
            "Reconciliation started",
            extra={
                "interval_seconds": self.interval,
                "grace_seconds": self.grace,
                "devices": len(self.devices),
            },
        )

    async def stop(self) -> None:
        self._stop_event.set()
        if self._task:
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None
        for waiter in self._cycle_waiters:
            waiter.cancel()
        self._cycle_waiters.clear()
        self.logger.info("Reconciliation stopped")

    async def wait_for_cycle(self, timeout: Optional[float] = None) -> CycleReport:
        """Wait for the next cycle to finish and return its report."""

        waiter: asyncio.Future[CycleReport] = asyncio.get_running_loop().create_future()
        self._cycle_waiters.append(waiter)
        try:
            return await asyncio.wait_for(waiter, timeout=timeout)
        finally:
            if waiter in self._cycle_waiters:
                self._cycle_waiters.remove(waiter)

    async def run_cycle(self) -> CycleReport:
        """Reconcile every configured device once."""

        started = time.perf_counter()
        outcomes = await asyncio.gather(*(self._reconcile(device) for device in self.devices))
        report = CycleReport(
            merged=outcomes.count(MERGED),
            deferred=outcomes.count(DEFERRED),
            errors=outcomes.count(ERROR),
            skipped=outcomes.count(SKIPPED),
            total=len(outcomes),
        )
        self._cycles_completed += 1
        set_errored_devices(self._errored_count())
        observe_cycle_duration(time.perf_counter() - started)
        self.logger.info(
            "Reconciliation cycle completed",
            extra={"cycle": self._cycles_completed, **asdict(report)},
        )
        waiters, self._cycle_waiters = self._cycle_waiters, []
        for waiter in waiters:
            if not waiter.done():
                waiter.set_result(report)
        return report

    async def _run(self) -> None:
        failures = 0
        while not self._stop_event.is_set():
            allowed, remaining = await self._health.allow_attempt("poller")
            if not allowed:
                self.logger.warning(
                    "Reconciliation suppressed after failures",
                    extra={"cooldown_seconds": round(remaining, 2)},
                )
                await self._sleep_with_stop(remaining)
                continue
            try:
                await self.run_cycle()
                await self._health.record_success("poller")
                failures = 0
            except asyncio.CancelledError:
                raise
            except Exception as exc:
                failures += 1
                self.logger.exception("Reconciliation cycle failed")
                await self._health.record_failure("poller", exc)
                await self._sleep_with_stop(self._backoff.delay(failures))
                continue
            await self._sleep_with_stop(self.interval)

    async def _reconcile(self, device: DeviceConfig) -> str:
        if not device.id:
            self.logger.warning("Skipping device entry without an id")
            record_reconcile_result(SKIPPED)
            return SKIPPED
        if self.transport is None:
            self.logger.error(
                "No transport available; skipping status poll", extra={"device_id": device.id}
            )
            record_reconcile_result(SKIPPED)
            return SKIPPED

        started = time.perf_counter()
        outcome = ERROR
        try:
            result = await self.transport.poll_status(device.id)
        except asyncio.CancelledError:
            raise
        except SessionNotReadyError:
            self.logger.warning(
                "Status poll skipped; cloud session not ready", extra={"device_id": device.id}
            )
            self._mark_errored(device.id)
        except MalformedResponseError as exc:
            self.logger.error(
                "Malformed status response",
                extra={"device_id": device.id, "reason": exc.reason},
            )
            self._mark_errored(device.id)
        except TransportError as exc:
            self.logger.error(
                "Unable to get device status",
                extra={"device_id": device.id, "reason": exc.reason},
            )
            self._mark_errored(device.id)
        except Exception as exc:
            self.logger.warning(
                "Status poll failed",
                extra={"device_id": device.id},
                exc_info=(type(exc), exc, exc.__traceback__),
            )
            self._mark_errored(device.id)
        else:
            if not result.success:
                self.logger.error(
                    "Unable to get device status",
                    extra={
                        "device_id": device.id,
                        "reason": result.reason,
                        "error_code": result.error_code,
                    },
                )
                self._mark_errored(device.id)
            else:
                outcome = self._apply(
                    device.id,
                    _coerce_bitmap(result.switch_bitmap),
                    _coerce_bitmap(result.status_bitmap),
                )
        finally:
            observe_poll_duration(outcome, time.perf_counter() - started)
        record_reconcile_result(outcome)
        return outcome

    def _apply(self, device_id: str, switch_bitmap: int, status_bitmap: int) -> str:
        if self.store.should_skip_reconcile(device_id, self.grace):
            self.logger.debug(
                "Discarding poll result inside command grace window",
                extra={"device_id": device_id, "status_bitmap": status_bitmap},
            )
            return DEFERRED
        record = self.store.record(device_id)
        changed = (record.switch_bitmap, record.status_bitmap) != (switch_bitmap, status_bitmap)
        record = self.store.merge(device_id, switch_bitmap, status_bitmap)
        self.logger.debug(
            "Received device status",
            extra={
                "device_id": device_id,
                "switch_bitmap": switch_bitmap,
                "status_bitmap": status_bitmap,
            },
        )
        if changed:
            self.hub.publish_device(record)
        return MERGED

    def _errored_count(self) -> int:
        count = 0
        for device in self.devices:
            record = self.store.get(device.id) if device.id else None
            if record is not None and record.errored:
                count += 1
        return count

    def _mark_errored(self, device_id: str) -> None:
        record = self.store.record(device_id)
        already_errored = record.errored
        record = self.store.merge(device_id, ERROR_BITMAP, ERROR_BITMAP)
        if not already_errored:
            self.hub.publish_device(record)

    async def _sleep_with_stop(self, delay: float) -> None:
        if delay <= 0:
            return
        try:
            await asyncio.wait_for(self._stop_event.wait(), timeout=delay)
        except asyncio.TimeoutError:
            return
