from __future__ import annotations

import threading
from collections import deque
from dataclasses import dataclass
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from fleetwave_core.fleet.types import MetricsSnapshot

DEFAULT_RETENTION_SECONDS = 24 * 3600


@dataclass(frozen=True)
class MetricSample:
    at: float
    metrics: MetricsSnapshot


class MetricsHistory:
    """Per-device rolling metric samples, pruned to the retention window."""

    def __init__(self, retention_seconds: float = DEFAULT_RETENTION_SECONDS) -> None:
        self.retention_seconds = retention_seconds
        self._samples: dict[str, deque[MetricSample]] = {}
        self._guard = threading.Lock()

    def record(self, device_id: str, at: float, metrics: MetricsSnapshot) -> None:
        samples = self._series(device_id)
        samples.append(MetricSample(at=at, metrics=metrics))
        cutoff = at - self.retention_seconds
        while samples and samples[0].at < cutoff:
            samples.popleft()

    def samples(
        self,
        device_id: str,
        *,
        since: float | None = None,
        until: float | None = None,
    ) -> list[MetricSample]:
        with self._guard:
            series = self._samples.get(device_id)
        if series is None:
            return []
        items = list(series)
        if since is not None:
            items = [item for item in items if item.at >= since]
        if until is not None:
            items = [item for item in items if item.at <= until]
        return items

    def latest(self, device_id: str) -> MetricSample | None:
        items = self.samples(device_id)
        return items[-1] if items else None

    def _series(self, device_id: str) -> deque[MetricSample]:
        with self._guard:
            series = self._samples.get(device_id)
            if series is None:
                series = deque()
                self._samples[device_id] = series
            return series
