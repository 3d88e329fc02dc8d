from __future__ import annotations

from dataclasses import dataclass
from statistics import fmean
from typing import Callable, Iterable

from fleetwave_core.fleet.types import Device
from fleetwave_core.health.history import MetricSample, MetricsHistory

BASELINE_LOOKBACK_SECONDS = 24 * 3600

GroupKey = Callable[[Device], str]


def default_group_key(device: Device) -> str:
    return device.hardware.hardware_type


@dataclass(frozen=True)
class IncidentWindow:
    start: float
    end: float
    group: str | None = None

    def covers(self, at: float, group: str) -> bool:
        if self.group is not None and self.group != group:
            return False
        return self.start <= at <= self.end


@dataclass(frozen=True)
class Baseline:
    group: str
    error_rate: float
    latency_p95_ms: float | None
    temperature_c: float | None
    memory_fraction: float | None
    sample_count: int
    captured_at: float

    @classmethod
    def empty(cls, group: str, captured_at: float = 0.0) -> "Baseline":
        return cls(
            group=group,
            error_rate=0.0,
            latency_p95_ms=None,
            temperature_c=None,
            memory_fraction=None,
            sample_count=0,
            captured_at=captured_at,
        )


def capture_baselines(
    devices: Iterable[Device],
    history: MetricsHistory,
    *,
    now: float,
    lookback_seconds: float = BASELINE_LOOKBACK_SECONDS,
    incidents: Iterable[IncidentWindow] = (),
    group_key: GroupKey = default_group_key,
) -> dict[str, Baseline]:
    """Aggregate pre-deployment samples per device group.

    Only samples from the lookback window that fall outside every incident
    window count. Groups without any clean sample get an empty baseline.
    """
    incident_list = list(incidents)
    grouped: dict[str, list[MetricSample]] = {}
    for device in devices:
        group = group_key(device)
        bucket = grouped.setdefault(group, [])
        for sample in history.samples(
            device.id,
            since=now - lookback_seconds,
            until=now,
        ):
            if any(window.covers(sample.at, group) for window in incident_list):
                continue
            bucket.append(sample)

    baselines: dict[str, Baseline] = {}
    for group, samples in grouped.items():
        if not samples:
            baselines[group] = Baseline.empty(group, captured_at=now)
            continue
        baselines[group] = Baseline(
            group=group,
            error_rate=fmean(item.metrics.error_rate for item in samples),
            latency_p95_ms=fmean(item.metrics.latency_p95_ms for item in samples),
            temperature_c=fmean(item.metrics.temperature_c for item in samples),
            memory_fraction=fmean(item.metrics.memory_fraction for item in samples),
            sample_count=len(samples),
            captured_at=now,
        )
    return baselines
