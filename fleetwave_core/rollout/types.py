from __future__ import annotations

from dataclasses import dataclass, field

from fleetwave_core.artifacts import Artifact
from fleetwave_core.health.baseline import Baseline

WAVE_PENDING = "pending"
WAVE_RUNNING = "running"
WAVE_PASSED = "passed"
WAVE_FAILED = "failed"
WAVE_ROLLED_BACK = "rolled_back"

OUTCOME_DEPLOYED = "deployed"
OUTCOME_FAILED = "failed"
OUTCOME_SKIPPED = "skipped"


@dataclass(frozen=True)
class CanaryConfig:
    min_devices: int = 1
    max_devices: int = 5
    soak_seconds: int = 3600


@dataclass(frozen=True)
class WaveConfig:
    name: str
    percent: int
    soak_seconds: int = 3600
    failure_threshold: float = 0.2


@dataclass(frozen=True)
class Wave:
    name: str
    percent: int
    device_ids: tuple[str, ...]
    soak_seconds: int
    failure_threshold: float
    status: str = WAVE_PENDING
    deployed_count: int = 0
    failed_count: int = 0
    skipped_count: int = 0
    deployed_device_ids: tuple[str, ...] = ()
    started_at: float | None = None
    deployed_at: float | None = None
    soak_extensions: int = 0

    @property
    def failure_rate(self) -> float:
        attempted = self.deployed_count + self.failed_count
        if attempted == 0:
            return 0.0
        return self.failed_count / attempted


@dataclass(frozen=True)
class DeviceOutcome:
    device_id: str
    status: str
    attempts: int = 0
    activated: bool = False
    error_code: str | None = None
    error: str | None = None
    finished_at: float | None = None

    @property
    def catch_up(self) -> bool:
        return self.status == OUTCOME_SKIPPED and self.error_code == "unreachable"


PHASE_PREPARE = "prepare"
PHASE_CANARY = "canary"
PHASE_VERIFY = "verify"
PHASE_ROLLOUT = "rollout"
PHASE_CONFIRM = "confirm"
PHASE_COMPLETED = "completed"
PHASE_ROLLED_BACK = "rolled_back"
PHASE_ABORTED = "aborted"

PHASE_ORDER: tuple[str, ...] = (
    PHASE_PREPARE,
    PHASE_CANARY,
    PHASE_VERIFY,
    PHASE_ROLLOUT,
    PHASE_CONFIRM,
    PHASE_COMPLETED,
)
TERMINAL_PHASES = frozenset({PHASE_COMPLETED, PHASE_ROLLED_BACK, PHASE_ABORTED})


@dataclass(frozen=True)
class Deployment:
    id: str
    artifact: Artifact
    target_selector: str
    canary: CanaryConfig
    wave_configs: tuple[WaveConfig, ...]
    started_at: float
    seed: int
    phase: str = PHASE_PREPARE
    target_device_ids: tuple[str, ...] = ()
    excluded: dict[str, str] = field(default_factory=dict)
    baselines: dict[str, Baseline] = field(default_factory=dict)
    canary_device_ids: tuple[str, ...] = ()
    canary_deployed_at: float | None = None
    canary_extensions: int = 0
    waves: tuple[Wave, ...] = ()
    approved: bool = False
    approved_by: str | None = None
    halted: bool = False
    halt_reason: str | None = None
    skipped_device_ids: tuple[str, ...] = ()
    rolled_back_device_ids: tuple[str, ...] = ()
    summary: dict[str, object] | None = None
    updated_at: float = 0.0

    @property
    def terminal(self) -> bool:
        return self.phase in TERMINAL_PHASES

    def wave(self, name: str) -> Wave | None:
        return next((item for item in self.waves if item.name == name), None)
