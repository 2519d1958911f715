"""Prometheus metrics helpers."""

from __future__ import annotations

from prometheus_client import (
    CollectorRegistry,
    Counter,
    Gauge,
    Histogram,
    generate_latest,
)

_REGISTRY = CollectorRegistry()

COMMAND_RESULTS = Counter(
    "smarteefi_commands_total",
    "User command outcomes",
    ["kind", "result"],
    registry=_REGISTRY,
)
COMMAND_DURATION = Histogram(
    "smarteefi_command_duration_seconds",
    "Time from dispatch to resolution of a user command",
    ["kind", "result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20],
)
ROLLBACKS = Counter(
    "smarteefi_rollbacks_total",
    "Optimistic writes reverted after a failed command",
    ["kind"],
    registry=_REGISTRY,
)
SPEED_COALESCED = Counter(
    "smarteefi_speed_requests_coalesced_total",
    "Speed requests superseded inside the debounce window",
    registry=_REGISTRY,
)
RECONCILE_RESULTS = Counter(
    "smarteefi_reconcile_results_total",
    "Per-device reconciliation outcomes",
    ["result"],
    registry=_REGISTRY,
)
POLL_DURATION = Histogram(
    "smarteefi_poll_duration_seconds",
    "Time spent polling a device",
    ["result"],
    registry=_REGISTRY,
    buckets=[0.05, 0.1, 0.25, 0.5, 1, 2, 5, 10, 20],
)
CYCLE_DURATION = Histogram(
    "smarteefi_reconcile_cycle_duration_seconds",
    "Time spent performing reconciliation cycles",
    registry=_REGISTRY,
    buckets=[0.1, 0.25, 0.5, 1, 2, 5, 10, 30],
)
SUBSYSTEM_FAILURES = Counter(
    "smarteefi_subsystem_failures_total",
    "Subsystem failures leading to suppression",
    ["subsystem"],
    registry=_REGISTRY,
)
SUBSYSTEM_STATUS = Gauge(
    "smarteefi_subsystem_status",
    "Subsystem health (0=suppressed,1=degraded/recovering,2=ok)",
    ["subsystem"],
    registry=_REGISTRY,
)
ERRORED_DEVICES = Gauge(
    "smarteefi_errored_devices",
    "Devices whose last poll failed",
    registry=_REGISTRY,
)


def get_registry() -> CollectorRegistry:
    """Return the registry holding the bridge metrics."""

    return _REGISTRY


def latest_metrics() -> bytes:
    """Render the latest metrics payload for scraping."""

    return generate_latest(_REGISTRY)


def record_command(kind: str, result: str, duration_seconds: float) -> None:
    """Record the outcome of a toggle or speed command."""

    COMMAND_RESULTS.labels(kind=kind, result=result).inc()
    COMMAND_DURATION.labels(kind=kind, result=result).observe(duration_seconds)


def record_rollback(kind: str) -> None:
    ROLLBACKS.labels(kind=kind).inc()


def record_speed_coalesced() -> None:
    SPEED_COALESCED.inc()


def record_reconcile_result(result: str) -> None:
    """Record what happened to one device during a reconciliation cycle."""

    RECONCILE_RESULTS.labels(result=result).inc()


def observe_poll_duration(result: str, duration_seconds: float) -> None:
    POLL_DURATION.labels(result=result).observe(duration_seconds)


def observe_cycle_duration(duration_seconds: float) -> None:
    CYCLE_DURATION.observe(duration_seconds)


def set_errored_devices(count: int) -> None:
    ERRORED_DEVICES.set(count)


def record_subsystem_failure(subsystem: str) -> None:
    """Record a subsystem failure triggering suppression."""

    SUBSYSTEM_FAILURES.labels(subsystem=subsystem).inc()


def record_subsystem_status(subsystem: str, status: str) -> None:
    """Record the current subsystem status."""

    code = 0
    if status == "ok":
        code = 2
    elif status in {"recovering", "degraded"}:
        code = 1
    SUBSYSTEM_STATUS.labels(subsystem=subsystem).set(code)
