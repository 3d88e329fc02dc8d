from __future__ import annotations

import threading
from dataclasses import dataclass
from statistics import fmean
from typing import Iterable, Mapping

from fleetwave_core.fleet.types import Device
from fleetwave_core.health.baseline import Baseline, GroupKey, default_group_key
from fleetwave_core.health.gate import PASS
from fleetwave_core.health.history import MetricsHistory

IMMEDIATE_TRIGGER = "immediate"
THRESHOLD_TRIGGER = "threshold"
TREND_TRIGGER = "trend"

SCOPE_DEVICE = "device"
SCOPE_WAVE = "wave"
SCOPE_FLEET = "fleet"
SCOPE_HALT = "halt"

SCOPES: tuple[str, ...] = (SCOPE_DEVICE, SCOPE_WAVE, SCOPE_FLEET)


@dataclass(frozen=True)
class TriggerThresholds:
    crash_loop_restarts: int = 3
    crash_loop_window_seconds: float = 300
    unreachable_seconds: float = 120
    wave_failure_rate: float = 0.2
    error_spike_margin: float = 0.10
    error_spike_window_seconds: float = 300
    trend_consecutive: int = 3


@dataclass(frozen=True)
class RollbackTrigger:
    kind: str
    scope: str
    reason: str
    device_ids: tuple[str, ...] = ()
    wave: str | None = None


def device_trigger(
    device: Device,
    history: MetricsHistory,
    *,
    now: float,
    thresholds: TriggerThresholds | None = None,
) -> RollbackTrigger | None:
    """Immediate triggers scoped to a single device."""
    thresholds = thresholds or TriggerThresholds()
    recent = history.samples(
        device.id, since=now - thresholds.crash_loop_window_seconds, until=now
    )
    restarts = sum(item.metrics.restart_count for item in recent)
    if restarts > thresholds.crash_loop_restarts:
        return RollbackTrigger(
            kind=IMMEDIATE_TRIGGER,
            scope=SCOPE_DEVICE,
            reason=f"crash_loop:{restarts}_restarts",
            device_ids=(device.id,),
        )
    last_seen = device.last_heartbeat_at
    if last_seen is None or now - last_seen > thresholds.unreachable_seconds:
        return RollbackTrigger(
            kind=IMMEDIATE_TRIGGER,
            scope=SCOPE_DEVICE,
            reason="health_endpoint_unreachable",
            device_ids=(device.id,),
        )
    return None


def wave_failure_trigger(
    wave_name: str,
    *,
    failed: int,
    attempted: int,
    threshold: float,
) -> RollbackTrigger | None:
    if attempted <= 0:
        return None
    rate = failed / attempted
    if rate <= threshold:
        return None
    return RollbackTrigger(
        kind=THRESHOLD_TRIGGER,
        scope=SCOPE_WAVE,
        reason=f"wave_failure_rate:{rate:.2f}",
        wave=wave_name,
    )


def error_spike_devices(
    devices: Iterable[Device],
    history: MetricsHistory,
    baselines: Mapping[str, Baseline],
    *,
    now: float,
    thresholds: TriggerThresholds | None = None,
    group_key: GroupKey = default_group_key,
) -> list[str]:
    """Devices whose error rate over the spike window exceeds baseline + margin."""
    thresholds = thresholds or TriggerThresholds()
    spiking: list[str] = []
    for device in devices:
        samples = history.samples(
            device.id,
            since=now - thresholds.error_spike_window_seconds,
            until=now,
        )
        if not samples:
            continue
        baseline = baselines.get(group_key(device)) or Baseline.empty(group_key(device))
        rate = fmean(item.metrics.error_rate for item in samples)
        if rate > baseline.error_rate + thresholds.error_spike_margin:
            spiking.append(device.id)
    return sorted(spiking)


def error_spike_trigger(
    spiking: Iterable[str],
    *,
    current_wave: str | None,
    current_wave_devices: Iterable[str],
) -> RollbackTrigger | None:
    """Scope an error spike: wave when confined to the current wave, else fleet."""
    spiking_ids = tuple(sorted(spiking))
    if not spiking_ids:
        return None
    in_wave = set(current_wave_devices)
    if current_wave is not None and all(item in in_wave for item in spiking_ids):
        return RollbackTrigger(
            kind=THRESHOLD_TRIGGER,
            scope=SCOPE_WAVE,
            reason="error_rate_spike",
            device_ids=spiking_ids,
            wave=current_wave,
        )
    return RollbackTrigger(
        kind=THRESHOLD_TRIGGER,
        scope=SCOPE_FLEET,
        reason="error_rate_spike",
        device_ids=spiking_ids,
    )


class TrendTracker:
    """Counts consecutive non-passing checks per device."""

    def __init__(self, consecutive: int = 3) -> None:
        self.consecutive = consecutive
        self._counts: dict[str, int] = {}
        self._lock = threading.Lock()

    def observe(self, device_id: str, verdict: str) -> bool:
        with self._lock:
            if verdict == PASS:
                self._counts[device_id] = 0
                return False
            count = self._counts.get(device_id, 0) + 1
            self._counts[device_id] = count
            return count >= self.consecutive

    def count(self, device_id: str) -> int:
        with self._lock:
            return self._counts.get(device_id, 0)

    def reset(self, device_id: str) -> None:
        with self._lock:
            self._counts.pop(device_id, None)


def trend_trigger(device_ids: Iterable[str]) -> RollbackTrigger | None:
    ids = tuple(sorted(device_ids))
    if not ids:
        return None
    return RollbackTrigger(
        kind=TREND_TRIGGER,
        scope=SCOPE_HALT,
        reason="consecutive_degrading_checks",
        device_ids=ids,
    )
