from __future__ import annotations

from dataclasses import dataclass, field

from fleetwave_core.fleet.states import PROVISIONING


@dataclass(frozen=True)
class HardwareDescriptor:
    architecture: str
    hardware_type: str
    capabilities: tuple[str, ...] = ()


@dataclass(frozen=True)
class SoftwareDescriptor:
    current_version: str | None = None
    current_checksum: str | None = None
    previous_version: str | None = None
    previous_checksum: str | None = None
    slot: str = "a"
    deploying_version: str | None = None
    deploying_checksum: str | None = None
    owner_deployment_id: str | None = None

    @property
    def in_progress(self) -> bool:
        return self.deploying_version is not None


@dataclass(frozen=True)
class MetricsSnapshot:
    cpu_percent: float
    memory_used_mb: float
    memory_total_mb: float
    disk_free_mb: float
    temperature_c: float
    error_count: int
    latency_p95_ms: float
    request_count: int = 0
    restart_count: int = 0
    crash_count: int = 0
    process_running: bool = True
    version: str | None = None

    @property
    def memory_fraction(self) -> float:
        if self.memory_total_mb <= 0:
            return 0.0
        return self.memory_used_mb / self.memory_total_mb

    @property
    def error_rate(self) -> float:
        """Errors per request.

        Without a reported ``request_count`` the rate cannot be measured, so
        any error at all counts as a rate of 1.0 and the gate fails closed.
        Agents that want proportional gating must report request volume.
        """
        if self.request_count > 0:
            return self.error_count / self.request_count
        return 1.0 if self.error_count > 0 else 0.0


@dataclass(frozen=True)
class Device:
    id: str
    hardware: HardwareDescriptor
    region: str | None = None
    software: SoftwareDescriptor = field(default_factory=SoftwareDescriptor)
    status: str = PROVISIONING
    tags: frozenset[str] = frozenset()
    last_heartbeat_at: float | None = None
    last_offline_at: float | None = None
    metrics: MetricsSnapshot | None = None
    metadata: dict[str, object] | None = None
    created_at: float = 0.0
    updated_at: float = 0.0

    def implicit_tags(self) -> frozenset[str]:
        tags = set(self.tags)
        tags.add(f"arch:{self.hardware.architecture}")
        tags.add(f"hw:{self.hardware.hardware_type}")
        tags.add(f"status:{self.status}")
        if self.region:
            tags.add(f"region:{self.region}")
        for capability in self.hardware.capabilities:
            tags.add(f"cap:{capability}")
        return frozenset(tags)


@dataclass(frozen=True)
class Heartbeat:
    device_id: str
    timestamp: float
    status: str
    metrics: MetricsSnapshot


@dataclass(frozen=True)
class TransitionRecord:
    device_id: str
    event: str
    from_state: str
    to_state: str
    at: float
