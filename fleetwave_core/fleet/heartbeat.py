from __future__ import annotations

import threading
from typing import Any, Callable, Mapping

from fleetwave_core.errors import ValidationError
from fleetwave_core.fleet.registry import DeviceRegistry
from fleetwave_core.fleet.types import Device, Heartbeat, MetricsSnapshot
from fleetwave_core.logging import get_logger

logger = get_logger(__name__)

REQUIRED_METRICS: tuple[str, ...] = (
    "cpu_percent",
    "memory_used_mb",
    "memory_total_mb",
    "disk_free_mb",
    "temperature_c",
    "error_count",
    "latency_p95_ms",
)

_OPTIONAL_COUNTERS: tuple[str, ...] = (
    "request_count",
    "restart_count",
    "crash_count",
)


def parse_metrics(raw: Mapping[str, Any]) -> MetricsSnapshot:
    missing = [name for name in REQUIRED_METRICS if raw.get(name) is None]
    if missing:
        raise ValidationError(f"Heartbeat metrics missing: {', '.join(missing)}")
    try:
        values: dict[str, Any] = {
            "cpu_percent": float(raw["cpu_percent"]),
            "memory_used_mb": float(raw["memory_used_mb"]),
            "memory_total_mb": float(raw["memory_total_mb"]),
            "disk_free_mb": float(raw["disk_free_mb"]),
            "temperature_c": float(raw["temperature_c"]),
            "error_count": int(raw["error_count"]),
            "latency_p95_ms": float(raw["latency_p95_ms"]),
        }
        for name in _OPTIONAL_COUNTERS:
            values[name] = int(raw.get(name) or 0)
    except (TypeError, ValueError) as exc:
        raise ValidationError(f"Heartbeat metrics malformed: {exc}") from exc
    process_running = raw.get("process_running", True)
    version = raw.get("version")
    return MetricsSnapshot(
        process_running=bool(process_running),
        version=str(version) if version is not None else None,
        **values,
    )


def parse_heartbeat(payload: Mapping[str, Any]) -> Heartbeat:
    device_id = payload.get("device_id")
    if not device_id:
        raise ValidationError("Heartbeat device_id is required")
    timestamp = payload.get("timestamp")
    if timestamp is None:
        raise ValidationError("Heartbeat timestamp is required")
    status = payload.get("status")
    if not status:
        raise ValidationError("Heartbeat status is required")
    metrics = payload.get("metrics")
    if not isinstance(metrics, Mapping):
        raise ValidationError("Heartbeat metrics map is required")
    try:
        at = float(timestamp)
    except (TypeError, ValueError) as exc:
        raise ValidationError("Heartbeat timestamp must be epoch seconds") from exc
    return Heartbeat(
        device_id=str(device_id),
        timestamp=at,
        status=str(status),
        metrics=parse_metrics(metrics),
    )


class HeartbeatIngestor:
    def __init__(self, registry: DeviceRegistry) -> None:
        self.registry = registry

    def ingest(self, heartbeat: Heartbeat) -> Device:
        return self.registry.heartbeat(
            heartbeat.device_id,
            heartbeat.status,
            heartbeat.metrics,
            at=heartbeat.timestamp,
        )

    def ingest_payload(self, payload: Mapping[str, Any]) -> Device:
        return self.ingest(parse_heartbeat(payload))


class OfflineSweeper:
    """Background liveness sweep; the only path that marks devices offline.

    ``on_tick`` runs after every sweep, moved devices or not, so periodic
    work such as catch-up processing can share the loop.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        interval_seconds: float,
        on_sweep: Callable[[list[str]], None] | None = None,
        on_tick: Callable[[], None] | None = None,
    ) -> None:
        self._registry = registry
        self._on_sweep = on_sweep
        self._on_tick = on_tick
        self._interval_seconds = max(1.0, interval_seconds)
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> None:
        if self._thread is not None:
            return
        self._thread = threading.Thread(target=self._run, daemon=True)
        self._thread.start()

    def stop(self) -> None:
        self._stop.set()
        if self._thread:
            self._thread.join(timeout=5)

    def run_once(self) -> list[str]:
        moved = self._registry.sweep_offline()
        if moved and self._on_sweep is not None:
            self._on_sweep(moved)
        if self._on_tick is not None:
            self._on_tick()
        return moved

    def _run(self) -> None:
        while not self._stop.is_set():
            try:
                self.run_once()
            except Exception as exc:
                logger.warning(
                    "Offline sweep failed",
                    extra={"error_message": str(exc)},
                )
            self._stop.wait(self._interval_seconds)
