from __future__ import annotations

import pytest

from fleetwave_core.errors import ValidationError
from fleetwave_core.fleet import (
    DeviceRegistry,
    HeartbeatIngestor,
    OfflineSweeper,
    parse_heartbeat,
    parse_metrics,
)
from fleetwave_core.fleet.states import DEGRADED, OFFLINE

METRICS = {
    "cpu_percent": 12.5,
    "memory_used_mb": 300,
    "memory_total_mb": 1024,
    "disk_free_mb": 2048,
    "temperature_c": 41,
    "error_count": 2,
    "latency_p95_ms": 95,
}


@pytest.mark.core
def test_parse_metrics_requires_core_fields():
    metrics = parse_metrics({**METRICS, "request_count": 100, "version": "1.2.0"})
    assert metrics.error_rate == pytest.approx(0.02)
    assert metrics.memory_fraction == pytest.approx(300 / 1024)
    assert metrics.version == "1.2.0"
    assert metrics.process_running is True

    broken = dict(METRICS)
    broken.pop("latency_p95_ms")
    with pytest.raises(ValidationError, match="latency_p95_ms"):
        parse_metrics(broken)
    with pytest.raises(ValidationError):
        parse_metrics({**METRICS, "cpu_percent": "lots"})


@pytest.mark.core
def test_error_rate_without_request_volume_fails_closed():
    metrics = parse_metrics(METRICS)
    assert metrics.request_count == 0
    assert metrics.error_rate == 1.0
    assert parse_metrics({**METRICS, "error_count": 0}).error_rate == 0.0


@pytest.mark.core
def test_parse_heartbeat_validates_envelope():
    beat = parse_heartbeat(
        {"device_id": "edge-1", "timestamp": "1700000000", "status": "ok", "metrics": METRICS}
    )
    assert beat.device_id == "edge-1"
    assert beat.timestamp == 1_700_000_000.0
    with pytest.raises(ValidationError):
        parse_heartbeat({"timestamp": 1, "status": "ok", "metrics": METRICS})
    with pytest.raises(ValidationError):
        parse_heartbeat({"device_id": "edge-1", "status": "ok", "metrics": METRICS})
    with pytest.raises(ValidationError):
        parse_heartbeat({"device_id": "edge-1", "timestamp": 1, "metrics": METRICS})
    with pytest.raises(ValidationError):
        parse_heartbeat({"device_id": "edge-1", "timestamp": 1, "status": "ok"})


@pytest.mark.core
def test_ingestor_applies_payload(clock, device_factory):
    registry = DeviceRegistry(now_fn=clock)
    registry.register(device_factory("edge-1"))
    ingestor = HeartbeatIngestor(registry)
    device = ingestor.ingest_payload(
        {
            "device_id": "edge-1",
            "timestamp": clock.now,
            "status": "degraded",
            "metrics": METRICS,
        }
    )
    assert device.status == DEGRADED
    assert registry.history.latest("edge-1").metrics.error_count == 2


@pytest.mark.core
def test_sweeper_run_once_reports_moves(clock, device_factory, metrics_factory):
    registry = DeviceRegistry(heartbeat_timeout_seconds=300, now_fn=clock)
    registry.register(device_factory("edge-1"))
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    swept: list[list[str]] = []
    sweeper = OfflineSweeper(registry, 30, on_sweep=swept.append)

    assert sweeper.run_once() == []
    assert swept == []
    clock.advance(301)
    assert sweeper.run_once() == ["edge-1"]
    assert swept == [["edge-1"]]
    assert registry.get("edge-1").status == OFFLINE


@pytest.mark.core
def test_sweeper_tick_runs_every_pass(clock, device_factory, metrics_factory):
    registry = DeviceRegistry(heartbeat_timeout_seconds=300, now_fn=clock)
    registry.register(device_factory("edge-1"))
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    ticks: list[float] = []
    sweeper = OfflineSweeper(registry, 30, on_tick=lambda: ticks.append(clock.now))

    sweeper.run_once()
    clock.advance(301)
    sweeper.run_once()
    assert ticks == [clock.now - 301, clock.now]


@pytest.mark.core
def test_sweeper_thread_starts_and_stops(clock, device_factory):
    registry = DeviceRegistry(now_fn=clock)
    sweeper = OfflineSweeper(registry, 0.01)
    sweeper.start()
    sweeper.stop()
