"""Optimistic command handling for switches and fans."""

from __future__ import annotations

import asyncio
import contextlib
import time
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Any, Dict, List, NoReturn, Optional, Set, Tuple

from .codec import (
    ERROR_BITMAP,
    MAX_FAN_SPEED_LEVEL,
    percent_to_speed_level,
    set_bit,
    speed_level_to_percent,
)
from .devices import LogicalSwitch
from .errors import CommandFailedError, MalformedResponseError, SessionNotReadyError, TransportError
from .events import ObserverHub
from .logging import get_logger
from .metrics import record_command, record_rollback, record_speed_coalesced
from .store import UNSET, DeviceStatusRecord, RollbackSnapshot, StatusStore
from .transport import Transport

DEFAULT_SPEED_DEBOUNCE = 0.5
DEFAULT_RESTORE_LEVEL = 1


class CommandState(str, Enum):
    """Lifecycle of the most recent command issued for a device."""

    IDLE = "idle"
    OPTIMISTIC = "optimistic"
    DISPATCHED = "dispatched"
    CONFIRMED = "confirmed"
    ROLLED_BACK = "rolled_back"
    CANCELLED = "cancelled"


def _merged_switch_map(switch_bitmap: int, bit: int) -> int:
    if switch_bitmap == ERROR_BITMAP or switch_bitmap < 0:
        return bit
    return switch_bitmap | bit


@dataclass(eq=False)
class _Intent:
    """Optimistic effect of one unresolved command."""

    switch: LogicalSwitch
    on: bool
    speed: Any = UNSET
    preserved_speed: Any = UNSET
    preserved_at_off: Any = UNSET

    def applied_to(self, state: RollbackSnapshot) -> RollbackSnapshot:
        changes: Dict[str, Any] = {
            "switch_bitmap": _merged_switch_map(state.switch_bitmap, self.switch.bit),
            "status_bitmap": set_bit(state.status_bitmap, self.switch.sequence, self.on),
        }
        if self.speed is not UNSET:
            changes["speed_level"] = self.speed
        if self.preserved_speed is not UNSET:
            changes["preserved_speed_level"] = self.preserved_speed
        if self.preserved_at_off is not UNSET:
            changes["preserved_at_off"] = self.preserved_at_off
        return replace(state, **changes)


@dataclass
class _PendingSpeed:
    intent: _Intent
    waiters: List["asyncio.Future[CommandState]"] = field(default_factory=list)
    timer: Optional["asyncio.Task[None]"] = None


def _clamp_level(level: int) -> int:
    return max(1, min(MAX_FAN_SPEED_LEVEL, level))


class CommandCoordinator:
    """Apply user commands to the cache first, then confirm them remotely.

    Every command writes its optimistic value to the store before anything is
    awaited. Commands for one device are dispatched one at a time. The store's
    rollback snapshot holds the confirmed state of a device for as long as any
    of its commands is unresolved; a failed command is removed and the cache is
    rebuilt from that snapshot plus the commands still outstanding, and only
    then is :class:`CommandFailedError` raised.
    """

    def __init__(
        self,
        store: StatusStore,
        transport: Transport,
        hub: Optional[ObserverHub] = None,
        *,
        speed_debounce: float = DEFAULT_SPEED_DEBOUNCE,
    ) -> None:
        self.store = store
        self.transport = transport
        self.hub = hub or ObserverHub()
        self.logger = get_logger("smarteefi.coordinator")
        self._speed_debounce = max(0.0, speed_debounce)
        self._locks: Dict[str, asyncio.Lock] = {}
        self._states: Dict[str, CommandState] = {}
        self._intents: Dict[str, List[_Intent]] = {}
        self._pending_speed: Dict[str, _PendingSpeed] = {}
        self._background: Set["asyncio.Task[None]"] = set()

    def command_state(self, device_id: str) -> CommandState:
        return self._states.get(device_id, CommandState.IDLE)

    async def toggle(self, switch: LogicalSwitch, on: bool) -> CommandState:
        """Turn a switch or fan on or off."""

        device_id = switch.device_id
        self._cancel_pending_speed(device_id)
        async with self._lock_for(device_id):
            intent, restore_level = self._apply_toggle(switch, on)
            self.logger.info(
                "Dispatching power command",
                extra={
                    "device_id": device_id,
                    "sequence": switch.sequence,
                    "target": "on" if on else "off",
                    "is_fan": switch.is_fan,
                },
            )
            self._states[device_id] = CommandState.DISPATCHED
            started = time.perf_counter()
            bit = switch.bit
            try:
                result = await self.transport.send_command(
                    device_id, bit, bit if on else 0, switch.is_fan
                )
            except asyncio.CancelledError:
                self._revert(intent, "toggle")
                raise
            except Exception as exc:
                self._fail(intent, "toggle", self._describe_error(switch, exc), started, exc)
            if not result.success:
                self._fail(intent, "toggle", result.reason or "command rejected", started)

            # Fan echoes carry the regulator maps, not the switch bit.
            if result.reported_bitmap is not None and not switch.is_fan:
                intent.on = bool(result.reported_bitmap & bit)
            record = self._settle(intent, confirmed=True)
            if intent.on != on:
                self.hub.publish_switch(record, switch.sequence, switch.is_fan)
            self._states[device_id] = CommandState.CONFIRMED
            record_command("toggle", "success", time.perf_counter() - started)
            self.logger.info(
                "Power command confirmed",
                extra={"device_id": device_id, "sequence": switch.sequence, "reported_on": intent.on},
            )
        if restore_level is not None:
            self._spawn(self._follow_up_speed(switch, restore_level))
        return CommandState.CONFIRMED

    async def set_speed(self, switch: LogicalSwitch, percent: float) -> CommandState:
        """Request a fan speed; rapid requests collapse into one dispatch.

        Every caller inside one debounce window receives the outcome of the
        single dispatch carrying the last requested value.
        """

        if percent <= 0:
            self.logger.info(
                "Speed of zero requested; turning fan off",
                extra={"device_id": switch.device_id, "sequence": switch.sequence},
            )
            return await self.toggle(switch, False)

        device_id = switch.device_id
        level = percent_to_speed_level(percent)
        pending = self._pending_speed.get(device_id)
        if pending is None:
            pending = _PendingSpeed(intent=_Intent(switch, True, speed=level))
            self._pending_speed[device_id] = pending
            self._begin(pending.intent)
        else:
            if pending.timer is not None:
                pending.timer.cancel()
            record_speed_coalesced()
            self.logger.debug(
                "Restarting speed debounce",
                extra={
                    "device_id": device_id,
                    "previous_level": pending.intent.speed,
                    "speed_level": level,
                },
            )
            pending.intent.switch = switch
            pending.intent.speed = level
            self.store.mark_pending(device_id)
            record = self._replay(device_id)
            self._states[device_id] = CommandState.OPTIMISTIC
            self.hub.publish_switch(record, switch.sequence, switch.is_fan)

        waiter: "asyncio.Future[CommandState]" = asyncio.get_running_loop().create_future()
        pending.waiters.append(waiter)
        pending.timer = self._spawn(self._flush_speed_after(device_id, pending))
        return await waiter

    async def close(self) -> None:
        """Cancel debounce timers and background follow-ups."""

        for device_id in list(self._pending_speed):
            self._cancel_pending_speed(device_id)
        tasks = list(self._background)
        for task in tasks:
            task.cancel()
        if tasks:
            with contextlib.suppress(asyncio.CancelledError):
                await asyncio.gather(*tasks, return_exceptions=True)
        self._background.clear()

    def _apply_toggle(self, switch: LogicalSwitch, on: bool) -> Tuple[_Intent, Optional[int]]:
        """Write the optimistic state of a toggle; also returns the fan restore level."""

        record = self.store.record(switch.device_id)
        intent = _Intent(switch, on)
        restore_level: Optional[int] = None
        if switch.is_fan:
            if on:
                restore_level = self._restore_target(record)
                intent.speed = restore_level
                intent.preserved_at_off = None
            else:
                current = record.speed_level if record.speed_level and record.speed_level > 0 else None
                if current is not None:
                    intent.preserved_speed = current
                intent.preserved_at_off = current or record.preserved_speed_level
                intent.speed = None
        self._begin(intent)
        return intent, restore_level

    def _restore_target(self, record: DeviceStatusRecord) -> int:
        if record.preserved_at_off:
            return _clamp_level(record.preserved_at_off)
        if record.preserved_speed_level:
            return _clamp_level(record.preserved_speed_level)
        if record.speed_level and record.speed_level > 0:
            return _clamp_level(record.speed_level)
        return DEFAULT_RESTORE_LEVEL

    def _begin(self, intent: _Intent) -> DeviceStatusRecord:
        switch = intent.switch
        device_id = switch.device_id
        intents = self._intents.setdefault(device_id, [])
        if not intents:
            self.store.save_rollback(device_id)
        intents.append(intent)
        self.store.mark_pending(device_id)
        record = self.store.apply_snapshot(device_id, intent.applied_to(self.store.capture(device_id)))
        self._states[device_id] = CommandState.OPTIMISTIC
        self.hub.publish_switch(record, switch.sequence, switch.is_fan)
        return record

    def _replay(self, device_id: str) -> DeviceStatusRecord:
        """Rebuild the cache from the confirmed snapshot and the unresolved commands."""

        state = self.store.record(device_id).rollback or self.store.capture(device_id)
        for intent in self._intents.get(device_id, []):
            state = intent.applied_to(state)
        return self.store.apply_snapshot(device_id, state)

    def _settle(self, intent: _Intent, *, confirmed: bool) -> DeviceStatusRecord:
        device_id = intent.switch.device_id
        intents = self._intents.get(device_id, [])
        if intent in intents:
            intents.remove(intent)
        record = self.store.record(device_id)
        if confirmed and record.rollback is not None:
            self.store.save_rollback(device_id, intent.applied_to(record.rollback))
        if intents:
            return self._replay(device_id)

        self._intents.pop(device_id, None)
        if confirmed:
            if record.rollback is not None:
                self.store.apply_snapshot(device_id, record.rollback)
            self.store.discard_rollback(device_id)
        else:
            self.store.rollback(device_id)
        self.store.mark_complete(device_id)
        return record

    async def _flush_speed_after(self, device_id: str, pending: _PendingSpeed) -> None:
        await asyncio.sleep(self._speed_debounce)
        if self._pending_speed.get(device_id) is not pending:
            return
        del self._pending_speed[device_id]
        try:
            state = await self._dispatch_speed(pending.intent)
        except CommandFailedError as exc:
            for waiter in pending.waiters:
                if not waiter.done():
                    waiter.set_exception(exc)
            return
        except asyncio.CancelledError:
            for waiter in pending.waiters:
                waiter.cancel()
            raise
        for waiter in pending.waiters:
            if not waiter.done():
                waiter.set_result(state)

    async def _dispatch_speed(self, intent: _Intent) -> CommandState:
        switch = intent.switch
        device_id = switch.device_id
        level = intent.speed
        async with self._lock_for(device_id):
            self.logger.info(
                "Dispatching speed command",
                extra={
                    "device_id": device_id,
                    "sequence": switch.sequence,
                    "speed_level": level,
                    "speed_percent": speed_level_to_percent(level),
                },
            )
            self._states[device_id] = CommandState.DISPATCHED
            started = time.perf_counter()
            try:
                result = await self.transport.send_speed(device_id, level)
            except asyncio.CancelledError:
                self._revert(intent, "speed")
                raise
            except Exception as exc:
                self._fail(intent, "speed", self._describe_error(switch, exc), started, exc)
            if not result.success:
                self._fail(intent, "speed", result.reason or "speed change rejected", started)

            confirmed_level: Optional[int] = level
            if result.reported_level is not None:
                confirmed_level = result.reported_level if result.reported_level > 0 else None
            intent.speed = confirmed_level
            if confirmed_level is not None:
                intent.preserved_speed = confirmed_level
            record = self._settle(intent, confirmed=True)
            if confirmed_level != level:
                self.hub.publish_switch(record, switch.sequence, switch.is_fan)
            self._states[device_id] = CommandState.CONFIRMED
            record_command("speed", "success", time.perf_counter() - started)
            self.logger.info(
                "Speed command confirmed",
                extra={
                    "device_id": device_id,
                    "speed_level": level,
                    "reported_level": result.reported_level,
                },
            )
            return CommandState.CONFIRMED

    async def _follow_up_speed(self, switch: LogicalSwitch, level: int) -> None:
        """Best-effort speed restore after a fan turns on; never rolls back."""

        device_id = switch.device_id
        async with self._lock_for(device_id):
            try:
                result = await self.transport.send_speed(device_id, level)
            except TransportError as exc:
                self.logger.warning(
                    "Speed restore after power on failed",
                    extra={"device_id": device_id, "speed_level": level, "reason": exc.reason},
                )
                return
            except Exception:
                self.logger.exception(
                    "Speed restore after power on failed",
                    extra={"device_id": device_id, "speed_level": level},
                )
                return
            if not result.success:
                self.logger.warning(
                    "Speed restore after power on rejected",
                    extra={"device_id": device_id, "speed_level": level, "reason": result.reason},
                )
                return
            record = self.store.get(device_id)
            if record is None or record.pending_update or result.reported_level is None:
                return
            reported = result.reported_level if result.reported_level > 0 else None
            if reported != record.speed_level:
                record = self.store.set_speed_level(device_id, reported)
                self.hub.publish_switch(record, switch.sequence, switch.is_fan)

    def _cancel_pending_speed(self, device_id: str) -> None:
        pending = self._pending_speed.pop(device_id, None)
        if pending is None:
            return
        if pending.timer is not None:
            pending.timer.cancel()
        switch = pending.intent.switch
        record = self._settle(pending.intent, confirmed=False)
        self.hub.publish_switch(record, switch.sequence, switch.is_fan)
        for waiter in pending.waiters:
            if not waiter.done():
                waiter.set_result(CommandState.CANCELLED)
        self.logger.debug(
            "Discarded pending speed change",
            extra={"device_id": device_id, "speed_level": pending.intent.speed},
        )

    def _revert(self, intent: _Intent, kind: str) -> None:
        switch = intent.switch
        device_id = switch.device_id
        record = self._settle(intent, confirmed=False)
        self._states[device_id] = CommandState.ROLLED_BACK
        record_rollback(kind)
        self.hub.publish_switch(record, switch.sequence, switch.is_fan)

    def _fail(
        self,
        intent: _Intent,
        kind: str,
        reason: str,
        started: float,
        exc: Optional[BaseException] = None,
    ) -> NoReturn:
        switch = intent.switch
        self._revert(intent, kind)
        record_command(kind, "failure", time.perf_counter() - started)
        self.logger.warning(
            "Command failed; optimistic state rolled back",
            extra={
                "device_id": switch.device_id,
                "sequence": switch.sequence,
                "kind": kind,
                "reason": reason,
            },
        )
        error = CommandFailedError(switch.device_id, reason)
        if exc is not None:
            raise error from exc
        raise error

    def _describe_error(self, switch: LogicalSwitch, exc: Exception) -> str:
        extra = {"device_id": switch.device_id, "sequence": switch.sequence}
        if isinstance(exc, SessionNotReadyError):
            self.logger.warning("Command rejected; cloud session not ready", extra=extra)
            return f"session not ready: {exc.reason}"
        if isinstance(exc, MalformedResponseError):
            self.logger.error(
                "Malformed command response", extra={**extra, "reason": exc.reason}
            )
            return f"malformed response: {exc.reason}"
        if isinstance(exc, TransportError):
            return exc.reason
        self.logger.exception("Unexpected transport error", extra=extra)
        return str(exc) or type(exc).__name__

    def _lock_for(self, device_id: str) -> asyncio.Lock:
        lock = self._locks.get(device_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[device_id] = lock
        return lock

    def _spawn(self, coro) -> "asyncio.Task[None]":
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
