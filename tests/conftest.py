from __future__ import annotations

import threading
from dataclasses import replace

import pytest

from fleetwave_core.artifacts import Artifact, compute_checksum
from fleetwave_core.config import Config, get_config
from fleetwave_core.fleet import (
    Device,
    HardwareDescriptor,
    MetricsSnapshot,
    SoftwareDescriptor,
)
from fleetwave_core.fleet.states import DECOMMISSIONED
from fleetwave_core.orchestrator import Orchestrator
from fleetwave_core.rollout.transport import DryRunTransport

START = 1_700_000_000.0


@pytest.fixture(autouse=True)
def _fleet_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("ENV", "test")
    monkeypatch.setenv("LOG_LEVEL", "INFO")
    get_config.cache_clear()


class FakeClock:
    def __init__(self, start: float = START) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> float:
        self.now += seconds
        return self.now


class ScriptedTransport(DryRunTransport):
    """Dry-run transport whose steps can be told to fail per device."""

    def __init__(self) -> None:
        self.calls: list[tuple[str, str]] = []
        self._failures: dict[tuple[str, str], list] = {}
        self._unhealthy: set[tuple[str, str]] = set()
        self._restored: dict[str, str | None] = {}
        self._lock = threading.Lock()

    def fail(
        self,
        device_id: str,
        step: str,
        error: Exception,
        *,
        times: int | None = None,
    ) -> None:
        self._failures[(device_id, step)] = [error, times]

    def mark_unhealthy(self, device_id: str, version: str) -> None:
        self._unhealthy.add((device_id, version))

    def restore_returns(self, device_id: str, checksum: str | None) -> None:
        self._restored[device_id] = checksum

    def steps_for(self, device_id: str) -> list[str]:
        with self._lock:
            return [step for step, item in self.calls if item == device_id]

    def _step(self, device_id: str, step: str) -> None:
        with self._lock:
            self.calls.append((step, device_id))
            scripted = self._failures.get((device_id, step))
            if scripted is None:
                return
            error, remaining = scripted
            if remaining is not None:
                if remaining <= 0:
                    return
                scripted[1] = remaining - 1
        raise error

    def transfer(self, device, artifact, *, timeout_s):
        self._step(device.id, "transfer")

    def install(self, device, artifact, *, timeout_s):
        self._step(device.id, "install")

    def activate(self, device, artifact, *, timeout_s):
        self._step(device.id, "activate")

    def health_check(self, device, version, *, timeout_s):
        self._step(device.id, "health_check")
        return (device.id, version) not in self._unhealthy

    def stop(self, device, version, *, timeout_s):
        self._step(device.id, "stop")

    def restore_snapshot(self, device, version, *, timeout_s):
        self._step(device.id, "restore")
        if device.id in self._restored:
            return self._restored[device.id]
        return device.software.previous_checksum

    def start(self, device, version, *, timeout_s):
        self._step(device.id, "start")


def checksum_for(version: str) -> str:
    return compute_checksum(f"edge-agent-{version}".encode("utf-8"))


def build_device(
    device_id: str,
    *,
    hardware_type: str = "gw-100",
    region: str | None = "us-east",
    architecture: str = "arm64",
    capabilities: tuple[str, ...] = (),
    tags: tuple[str, ...] = (),
    version: str | None = "1.0.0",
    metadata: dict[str, object] | None = None,
) -> Device:
    return Device(
        id=device_id,
        hardware=HardwareDescriptor(
            architecture=architecture,
            hardware_type=hardware_type,
            capabilities=capabilities,
        ),
        region=region,
        software=SoftwareDescriptor(
            current_version=version,
            current_checksum=checksum_for(version) if version else None,
        ),
        tags=frozenset(tags),
        metadata=metadata,
    )


def build_metrics(**overrides: object) -> MetricsSnapshot:
    metrics = MetricsSnapshot(
        cpu_percent=20.0,
        memory_used_mb=512.0,
        memory_total_mb=2048.0,
        disk_free_mb=4096.0,
        temperature_c=45.0,
        error_count=0,
        latency_p95_ms=80.0,
        request_count=1000,
    )
    return replace(metrics, **overrides)


def build_artifact(version: str = "2.0.0", **overrides: object) -> Artifact:
    artifact = Artifact(
        artifact_id="edge-agent",
        version=version,
        checksum=checksum_for(version),
        architecture="arm64",
        size_mb=100.0,
    )
    return replace(artifact, **overrides)


def build_config(**overrides: object) -> Config:
    config = Config(
        env="test",
        log_level="INFO",
        state_uri="memory://fleetwave-test",
        heartbeat_timeout_seconds=300,
        sweep_interval_seconds=30,
        max_parallelism=4,
        max_attempts=3,
        backoff_seconds=0.0,
        transfer_timeout_seconds=300,
        install_timeout_seconds=300,
        health_timeout_seconds=30,
        rollback_batch_size=4,
        wave_failure_threshold=0.2,
        max_caution_extensions=2,
        caution_extension_seconds=600,
        catchup_settle_seconds=600,
        catchup_max_attempts=5,
        transport="dryrun",
    )
    return replace(config, **overrides)


class FleetHarness:
    """An orchestrator on a fake clock plus helpers to keep devices talking."""

    def __init__(
        self,
        clock: FakeClock,
        transport: ScriptedTransport,
        config: Config,
        **kwargs: object,
    ) -> None:
        self.clock = clock
        self.transport = transport
        self.config = config
        self.orchestrator = Orchestrator(
            transport=transport,
            config=config,
            now_fn=clock,
            sleep_fn=lambda _: None,
            **kwargs,
        )
        self.silent: set[str] = set()
        self.metric_overrides: dict[str, dict[str, object]] = {}

    @property
    def registry(self):
        return self.orchestrator.registry

    def add(self, *devices: Device) -> None:
        for device in devices:
            self.orchestrator.register_device(device)
            self.orchestrator.heartbeat(
                device.id, "healthy", build_metrics(), at=self.clock.now
            )

    def add_many(self, count: int, **kwargs: object) -> list[str]:
        ids = [f"edge-{idx:03d}" for idx in range(count)]
        self.add(*(build_device(device_id, **kwargs) for device_id in ids))
        return ids

    def beat(self, *device_ids: str, status: str = "healthy") -> None:
        targets = device_ids or tuple(
            device.id for device in self.registry.all() if device.id not in self.silent
        )
        for device_id in targets:
            device = self.registry.get(device_id)
            if device.status == DECOMMISSIONED:
                continue
            overrides = self.metric_overrides.get(device_id, {})
            self.orchestrator.heartbeat(
                device_id, status, build_metrics(**overrides), at=self.clock.now
            )

    def elapse(self, seconds: float) -> None:
        self.clock.advance(seconds)
        self.beat()

    def step(self, deployment_id: str):
        self.beat()
        return self.orchestrator.advance_phase(deployment_id)


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def transport() -> ScriptedTransport:
    return ScriptedTransport()


@pytest.fixture
def fleet_config() -> Config:
    return build_config()


@pytest.fixture
def harness(clock, transport, fleet_config) -> FleetHarness:
    return FleetHarness(clock, transport, fleet_config)


@pytest.fixture
def device_factory():
    return build_device


@pytest.fixture
def metrics_factory():
    return build_metrics


@pytest.fixture
def artifact_factory():
    return build_artifact


@pytest.fixture
def config_factory():
    return build_config


@pytest.fixture
def harness_factory(clock, transport):
    def build(config: Config, **kwargs: object) -> FleetHarness:
        return FleetHarness(clock, transport, config, **kwargs)

    return build
