"""Health gate evaluation over the immediate, short-term and soak windows.

Windows are measured from the moment the device activated the target
version. A window only applies once the device has been running long enough
to enter it:

* immediate (always): process running, health endpoint reachable, reported
  version matches, no crashes.
* short-term (from 5 min): mean error rate and p95 latency within the group
  baseline margins, no restarts, memory flat or falling.
* soak (from 30 min): every sample individually within the short-term
  bounds, no memory leak trend, no thermal escalation.

Immediate or short-term failures yield ``fail``. Failures confined to soak
checks yield ``caution``; the caller decides whether to extend the soak.
"""

from __future__ import annotations

from dataclasses import dataclass
from statistics import fmean
from typing import Mapping

from fleetwave_core.fleet.types import Device
from fleetwave_core.health.baseline import Baseline, GroupKey, default_group_key
from fleetwave_core.health.history import MetricSample, MetricsHistory

IMMEDIATE = "immediate"
SHORT_TERM = "short_term"
SOAK = "soak"

PASS = "pass"
CAUTION = "caution"
FAIL = "fail"


@dataclass(frozen=True)
class GateThresholds:
    short_term_after_seconds: float = 300
    soak_after_seconds: float = 1800
    soak_complete_seconds: float = 3600
    reachable_within_seconds: float = 120
    error_rate_margin: float = 0.02
    latency_margin: float = 0.20
    memory_flat_tolerance: float = 0.01
    memory_growth_per_10min: float = 0.01
    thermal_rise_c: float = 5.0
    thermal_over_baseline_c: float = 10.0


@dataclass(frozen=True)
class HealthVerdict:
    device_id: str
    window: str
    checks: dict[str, bool]
    verdict: str
    evaluated_at: float

    @property
    def failed_checks(self) -> tuple[str, ...]:
        return tuple(name for name, ok in self.checks.items() if not ok)


class HealthGateEvaluator:
    def __init__(
        self,
        history: MetricsHistory,
        *,
        thresholds: GateThresholds | None = None,
        group_key: GroupKey = default_group_key,
    ) -> None:
        self.history = history
        self.thresholds = thresholds or GateThresholds()
        self.group_key = group_key

    def windows_for(self, elapsed: float) -> tuple[str, ...]:
        windows = [IMMEDIATE]
        if elapsed >= self.thresholds.short_term_after_seconds:
            windows.append(SHORT_TERM)
        if elapsed >= self.thresholds.soak_after_seconds:
            windows.append(SOAK)
        return tuple(windows)

    def baseline_for(
        self,
        device: Device,
        baselines: Mapping[str, Baseline],
    ) -> Baseline:
        group = self.group_key(device)
        return baselines.get(group) or Baseline.empty(group)

    def evaluate(
        self,
        device: Device,
        *,
        target_version: str,
        deployed_at: float,
        baselines: Mapping[str, Baseline],
        now: float,
    ) -> HealthVerdict:
        baseline = self.baseline_for(device, baselines)
        samples = self.history.samples(device.id, since=deployed_at, until=now)
        windows = self.windows_for(now - deployed_at)

        immediate = self._immediate_checks(device, samples, target_version, now)
        checks: dict[str, bool] = dict(immediate)
        short_term: dict[str, bool] = {}
        soak: dict[str, bool] = {}
        if SHORT_TERM in windows:
            short_term = self._short_term_checks(samples, baseline)
            checks.update(short_term)
        if SOAK in windows:
            soak = self._soak_checks(samples, baseline)
            checks.update(soak)

        if not all(immediate.values()) or not all(short_term.values()):
            verdict = FAIL
        elif not all(soak.values()):
            verdict = CAUTION
        else:
            verdict = PASS
        return HealthVerdict(
            device_id=device.id,
            window=windows[-1],
            checks=checks,
            verdict=verdict,
            evaluated_at=now,
        )

    def _immediate_checks(
        self,
        device: Device,
        samples: list[MetricSample],
        target_version: str,
        now: float,
    ) -> dict[str, bool]:
        latest = self.history.latest(device.id)
        reachable = (
            device.last_heartbeat_at is not None
            and now - device.last_heartbeat_at <= self.thresholds.reachable_within_seconds
        )
        reported = None
        if latest is not None and latest.metrics.version:
            reported = latest.metrics.version
        if reported is None:
            reported = device.software.current_version
        return {
            "process_running": latest is not None and latest.metrics.process_running,
            "endpoint_reachable": reachable,
            "version_match": reported == target_version,
            "no_crashes": sum(item.metrics.crash_count for item in samples) == 0,
        }

    def _short_term_checks(
        self,
        samples: list[MetricSample],
        baseline: Baseline,
    ) -> dict[str, bool]:
        checks = {
            "error_rate": True,
            "latency_p95": True,
            "no_restarts": sum(item.metrics.restart_count for item in samples) == 0,
            "memory_flat": True,
        }
        if not samples:
            return checks
        error_limit = self._error_limit(baseline)
        checks["error_rate"] = (
            fmean(item.metrics.error_rate for item in samples) <= error_limit
        )
        latency_limit = self._latency_limit(baseline)
        if latency_limit is not None:
            checks["latency_p95"] = (
                fmean(item.metrics.latency_p95_ms for item in samples) <= latency_limit
            )
        growth = samples[-1].metrics.memory_fraction - samples[0].metrics.memory_fraction
        checks["memory_flat"] = growth <= self.thresholds.memory_flat_tolerance
        return checks

    def _soak_checks(
        self,
        samples: list[MetricSample],
        baseline: Baseline,
    ) -> dict[str, bool]:
        checks = {
            "sustained_error_rate": True,
            "sustained_latency_p95": True,
            "no_memory_leak": True,
            "no_thermal_escalation": True,
        }
        if not samples:
            return checks
        error_limit = self._error_limit(baseline)
        checks["sustained_error_rate"] = all(
            item.metrics.error_rate <= error_limit for item in samples
        )
        latency_limit = self._latency_limit(baseline)
        if latency_limit is not None:
            checks["sustained_latency_p95"] = all(
                item.metrics.latency_p95_ms <= latency_limit for item in samples
            )
        slope = _memory_slope_per_second(samples)
        checks["no_memory_leak"] = (
            slope * 600 < self.thresholds.memory_growth_per_10min
        )
        temperatures = [item.metrics.temperature_c for item in samples]
        thermal_ok = max(temperatures) - temperatures[0] <= self.thresholds.thermal_rise_c
        if baseline.temperature_c is not None:
            thermal_ok = thermal_ok and max(temperatures) <= (
                baseline.temperature_c + self.thresholds.thermal_over_baseline_c
            )
        checks["no_thermal_escalation"] = thermal_ok
        return checks

    def _error_limit(self, baseline: Baseline) -> float:
        return baseline.error_rate + self.thresholds.error_rate_margin

    def _latency_limit(self, baseline: Baseline) -> float | None:
        if baseline.latency_p95_ms is None:
            return None
        return baseline.latency_p95_ms * (1.0 + self.thresholds.latency_margin)


def _memory_slope_per_second(samples: list[MetricSample]) -> float:
    """Least-squares slope of memory fraction over time."""
    if len(samples) < 2:
        return 0.0
    xs = [item.at for item in samples]
    ys = [item.metrics.memory_fraction for item in samples]
    mean_x = fmean(xs)
    mean_y = fmean(ys)
    denom = sum((x - mean_x) ** 2 for x in xs)
    if denom == 0:
        return 0.0
    return sum((x - mean_x) * (y - mean_y) for x, y in zip(xs, ys)) / denom
