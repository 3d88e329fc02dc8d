import os
import secrets
import time
import uuid
from contextlib import asynccontextmanager

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from pydantic import BaseModel, Field

from fleetwave_core.artifacts import Artifact
from fleetwave_core.config import get_config
from fleetwave_core.errors import (
    DeploymentInProgressError,
    DeploymentNotFoundError,
    DeviceNotFoundError,
    DuplicateIdError,
    FleetHaltedError,
    FleetwaveError,
    InsufficientCanaryCoverageError,
    InvalidTransitionError,
    PhaseError,
    ValidationError,
)
from fleetwave_core.fleet import (
    Device,
    HardwareDescriptor,
    OfflineSweeper,
    SoftwareDescriptor,
    parse_heartbeat,
)
from fleetwave_core.logging import configure_logging, get_logger
from fleetwave_core.orchestrator import Orchestrator
from fleetwave_core.rollout.types import CanaryConfig, Deployment, WaveConfig
from fleetwave_core.stores import get_state_store

SERVICE_NAME = "fleetwave-local"

configure_logging(
    service=SERVICE_NAME,
    env=os.getenv("ENV", "local"),
    version=os.getenv("FLEETWAVE_VERSION"),
)
logger = get_logger(__name__)

_ORCHESTRATOR: Orchestrator | None = None


def _get_orchestrator() -> Orchestrator:
    global _ORCHESTRATOR
    if _ORCHESTRATOR is None:
        config = get_config()
        orchestrator = Orchestrator(
            config=config,
            store=get_state_store(config.state_uri),
        )
        orchestrator.restore()
        _ORCHESTRATOR = orchestrator
    return _ORCHESTRATOR


def _process_catch_up_tick(orchestrator: Orchestrator) -> None:
    """Deploy due catch-up entries unless the fleet is halted."""
    if orchestrator.halted:
        return
    results = orchestrator.process_catch_up()
    if results:
        logger.info(
            "Catch-up entries processed",
            extra={"count": len(results)},
        )


@asynccontextmanager
async def lifespan(_: FastAPI):
    orchestrator = _get_orchestrator()
    sweeper = OfflineSweeper(
        orchestrator.registry,
        orchestrator.config.sweep_interval_seconds,
        on_sweep=lambda _moved: orchestrator.checkpoint(),
        on_tick=lambda: _process_catch_up_tick(orchestrator),
    )
    sweeper.start()
    logger.info(
        "Offline sweeper started",
        extra={"count": len(orchestrator.registry.all())},
    )
    try:
        yield
    finally:
        sweeper.stop()


app = FastAPI(lifespan=lifespan)


class HealthResponse(BaseModel):
    status: str
    service: str
    version: str
    commit: str
    timestamp: str
    halted: bool


class DeviceCreateRequest(BaseModel):
    id: str
    architecture: str
    hardware_type: str
    capabilities: list[str] = Field(default_factory=list)
    region: str | None = None
    tags: list[str] = Field(default_factory=list)
    current_version: str | None = None
    current_checksum: str | None = None
    metadata: dict[str, object] | None = None


class DeviceResponse(BaseModel):
    id: str
    architecture: str
    hardware_type: str
    capabilities: list[str]
    region: str | None = None
    status: str
    tags: list[str]
    current_version: str | None = None
    previous_version: str | None = None
    slot: str
    deploying_version: str | None = None
    owner_deployment_id: str | None = None
    last_heartbeat_at: float | None = None
    metadata: dict[str, object] | None = None


class HeartbeatRequest(BaseModel):
    device_id: str
    timestamp: float
    status: str
    metrics: dict[str, object]


class ArtifactRequest(BaseModel):
    artifact_id: str
    version: str
    checksum: str
    architecture: str
    size_mb: float = Field(default=0.0, ge=0)
    signature: str | None = None
    uri: str | None = None
    hardware_types: list[str] = Field(default_factory=list)
    required_capabilities: list[str] = Field(default_factory=list)
    upgrade_from: list[str] = Field(default_factory=list)


class CanaryRequest(BaseModel):
    min_devices: int = Field(default=1, ge=1)
    max_devices: int = Field(default=5, ge=1)
    soak_seconds: int = Field(default=3600, ge=0)


class WaveRequest(BaseModel):
    name: str
    percent: int = Field(ge=1, le=100)
    soak_seconds: int = Field(default=3600, ge=0)
    failure_threshold: float | None = Field(default=None, ge=0, le=1)


class DeploymentCreateRequest(BaseModel):
    artifact: ArtifactRequest
    target_selector: str = "*"
    canary: CanaryRequest = Field(default_factory=CanaryRequest)
    waves: list[WaveRequest]
    seed: int | None = None


class WaveResponse(BaseModel):
    name: str
    percent: int
    status: str
    device_ids: list[str]
    deployed_count: int
    failed_count: int
    skipped_count: int
    soak_extensions: int


class DeploymentResponse(BaseModel):
    id: str
    version: str
    phase: str
    target_selector: str
    seed: int
    canary_device_ids: list[str]
    excluded: dict[str, str]
    waves: list[WaveResponse]
    approved: bool
    halted: bool
    halt_reason: str | None = None
    skipped_device_ids: list[str]
    rolled_back_device_ids: list[str]
    summary: dict[str, object] | None = None


class AdvanceResponse(BaseModel):
    status: str
    reason: str | None = None
    deployment: DeploymentResponse


class OperatorRequest(BaseModel):
    operator: str


class EvaluateRequest(BaseModel):
    target: str
    deployment_id: str | None = None


class VerdictResponse(BaseModel):
    device_id: str
    window: str
    verdict: str
    checks: dict[str, bool]


class RollbackRequest(BaseModel):
    scope: str
    target: str
    deployment_id: str | None = None
    reason: str = "manual"


class RollbackResultResponse(BaseModel):
    device_id: str
    status: str
    restored_version: str | None = None
    error: str | None = None


class RollbackResponse(BaseModel):
    scope: str
    target: str
    results: list[RollbackResultResponse]


class CatchUpResponse(BaseModel):
    device_id: str
    deployment_id: str
    target_version: str
    status: str


class AuditEventResponse(BaseModel):
    id: str
    at: float
    action: str
    outcome: str
    device_id: str | None = None
    deployment_id: str | None = None
    detail: dict[str, object] | None = None


def _cors_origins() -> list[str]:
    raw = os.getenv("CORS_ALLOW_ORIGINS", "")
    if raw:
        return [origin.strip() for origin in raw.split(",") if origin.strip()]
    env = os.getenv("ENV", "dev").lower()
    if env in {"dev", "local", "test"}:
        return ["*"]
    return []


_cors = _cors_origins()
if _cors:
    app.add_middleware(
        CORSMiddleware,
        allow_origins=_cors,
        allow_credentials=False,
        allow_methods=["*"],
        allow_headers=["*"],
    )


_ERROR_STATUS: tuple[tuple[type[FleetwaveError], int], ...] = (
    (DeviceNotFoundError, 404),
    (DeploymentNotFoundError, 404),
    (FleetHaltedError, 423),
    (InsufficientCanaryCoverageError, 422),
    (DuplicateIdError, 409),
    (InvalidTransitionError, 409),
    (DeploymentInProgressError, 409),
    (PhaseError, 409),
    (ValidationError, 400),
)


@app.exception_handler(FleetwaveError)
async def fleetwave_error_handler(request: Request, exc: FleetwaveError) -> JSONResponse:
    status_code = next(
        (code for error_type, code in _ERROR_STATUS if isinstance(exc, error_type)),
        500,
    )
    logger.warning(
        "Request failed",
        extra={
            "request_id": str(uuid.uuid4()),
            "correlation_id": request.headers.get("x-correlation-id"),
            "error_code": type(exc).__name__,
            "error_message": str(exc),
            "status": status_code,
        },
    )
    return JSONResponse(
        status_code=status_code,
        content={"detail": str(exc), "error": type(exc).__name__},
    )


def _api_key_required() -> bool:
    env = os.getenv("ENV", "dev").lower()
    return env not in {"dev", "local", "test"}


def _authorize(request: Request) -> None:
    expected = get_config().api_key
    if expected is None:
        if _api_key_required():
            raise HTTPException(status_code=401, detail="Unauthorized")
        return
    raw_key = request.headers.get("x-api-key") or ""
    if not secrets.compare_digest(raw_key, expected):
        raise HTTPException(status_code=401, detail="Unauthorized")


def _device_response(device: Device) -> DeviceResponse:
    return DeviceResponse(
        id=device.id,
        architecture=device.hardware.architecture,
        hardware_type=device.hardware.hardware_type,
        capabilities=list(device.hardware.capabilities),
        region=device.region,
        status=device.status,
        tags=sorted(device.tags),
        current_version=device.software.current_version,
        previous_version=device.software.previous_version,
        slot=device.software.slot,
        deploying_version=device.software.deploying_version,
        owner_deployment_id=device.software.owner_deployment_id,
        last_heartbeat_at=device.last_heartbeat_at,
        metadata=device.metadata,
    )


def _deployment_response(deployment: Deployment) -> DeploymentResponse:
    return DeploymentResponse(
        id=deployment.id,
        version=deployment.artifact.version,
        phase=deployment.phase,
        target_selector=deployment.target_selector,
        seed=deployment.seed,
        canary_device_ids=list(deployment.canary_device_ids),
        excluded=dict(deployment.excluded),
        waves=[
            WaveResponse(
                name=wave.name,
                percent=wave.percent,
                status=wave.status,
                device_ids=list(wave.device_ids),
                deployed_count=wave.deployed_count,
                failed_count=wave.failed_count,
                skipped_count=wave.skipped_count,
                soak_extensions=wave.soak_extensions,
            )
            for wave in deployment.waves
        ],
        approved=deployment.approved,
        halted=deployment.halted,
        halt_reason=deployment.halt_reason,
        skipped_device_ids=list(deployment.skipped_device_ids),
        rolled_back_device_ids=list(deployment.rolled_back_device_ids),
        summary=deployment.summary,
    )


@app.get("/health", response_model=HealthResponse)
async def health() -> HealthResponse:
    return HealthResponse(
        status="ok",
        service=SERVICE_NAME,
        version=os.getenv("FLEETWAVE_VERSION", "dev"),
        commit=os.getenv("GIT_COMMIT", "unknown"),
        timestamp=time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        halted=_get_orchestrator().halted,
    )


@app.get("/fleet/devices", response_model=list[DeviceResponse])
def list_devices(request: Request, selector: str = "*") -> list[DeviceResponse]:
    _authorize(request)
    devices = _get_orchestrator().query_registry(selector)
    return [_device_response(device) for device in devices]


@app.post("/fleet/devices", response_model=DeviceResponse, status_code=201)
def create_device(request: Request, payload: DeviceCreateRequest) -> DeviceResponse:
    _authorize(request)
    device = _get_orchestrator().register_device(
        Device(
            id=payload.id,
            hardware=HardwareDescriptor(
                architecture=payload.architecture,
                hardware_type=payload.hardware_type,
                capabilities=tuple(payload.capabilities),
            ),
            region=payload.region,
            software=SoftwareDescriptor(
                current_version=payload.current_version,
                current_checksum=payload.current_checksum,
            ),
            tags=frozenset(tag.strip().lower() for tag in payload.tags if tag.strip()),
            metadata=payload.metadata,
        )
    )
    logger.info(
        "Device registered",
        extra={
            "request_id": str(uuid.uuid4()),
            "correlation_id": request.headers.get("x-correlation-id"),
            "device_id": device.id,
        },
    )
    return _device_response(device)


@app.get("/fleet/devices/{device_id}", response_model=DeviceResponse)
def get_device(request: Request, device_id: str) -> DeviceResponse:
    _authorize(request)
    return _device_response(_get_orchestrator().registry.get(device_id))


@app.post("/fleet/heartbeats", response_model=DeviceResponse)
def heartbeat(request: Request, payload: HeartbeatRequest) -> DeviceResponse:
    _authorize(request)
    beat = parse_heartbeat(payload.model_dump())
    device = _get_orchestrator().heartbeat(
        beat.device_id,
        beat.status,
        beat.metrics,
        at=beat.timestamp,
    )
    return _device_response(device)


@app.post("/fleet/deployments", response_model=DeploymentResponse, status_code=201)
def create_deployment(
    request: Request,
    payload: DeploymentCreateRequest,
) -> DeploymentResponse:
    _authorize(request)
    orchestrator = _get_orchestrator()
    artifact = payload.artifact
    default_threshold = orchestrator.config.wave_failure_threshold
    deployment = orchestrator.plan_deployment(
        Artifact(
            artifact_id=artifact.artifact_id,
            version=artifact.version,
            checksum=artifact.checksum,
            architecture=artifact.architecture,
            size_mb=artifact.size_mb,
            signature=artifact.signature,
            uri=artifact.uri,
            hardware_types=tuple(artifact.hardware_types),
            required_capabilities=tuple(artifact.required_capabilities),
            upgrade_from=tuple(artifact.upgrade_from),
        ),
        payload.target_selector,
        CanaryConfig(
            min_devices=payload.canary.min_devices,
            max_devices=payload.canary.max_devices,
            soak_seconds=payload.canary.soak_seconds,
        ),
        [
            WaveConfig(
                name=wave.name,
                percent=wave.percent,
                soak_seconds=wave.soak_seconds,
                failure_threshold=(
                    default_threshold
                    if wave.failure_threshold is None
                    else wave.failure_threshold
                ),
            )
            for wave in payload.waves
        ],
        seed=payload.seed,
    )
    return _deployment_response(deployment)


@app.get("/fleet/deployments/{deployment_id}", response_model=DeploymentResponse)
def get_deployment(request: Request, deployment_id: str) -> DeploymentResponse:
    _authorize(request)
    return _deployment_response(_get_orchestrator().get_deployment(deployment_id))


@app.post("/fleet/deployments/{deployment_id}/advance", response_model=AdvanceResponse)
def advance_deployment(request: Request, deployment_id: str) -> AdvanceResponse:
    _authorize(request)
    step = _get_orchestrator().advance_phase(deployment_id)
    return AdvanceResponse(
        status=step.status,
        reason=step.reason,
        deployment=_deployment_response(step.deployment),
    )


@app.post("/fleet/deployments/{deployment_id}/approve", response_model=DeploymentResponse)
def approve_deployment(
    request: Request,
    deployment_id: str,
    payload: OperatorRequest,
) -> DeploymentResponse:
    _authorize(request)
    deployment = _get_orchestrator().approve_rollout(deployment_id, payload.operator)
    return _deployment_response(deployment)


@app.post("/fleet/deployments/{deployment_id}/resume", response_model=DeploymentResponse)
def resume_deployment(
    request: Request,
    deployment_id: str,
    payload: OperatorRequest,
) -> DeploymentResponse:
    _authorize(request)
    deployment = _get_orchestrator().resume_rollout(deployment_id, payload.operator)
    return _deployment_response(deployment)


@app.post("/fleet/health/evaluate", response_model=list[VerdictResponse])
def evaluate_health(request: Request, payload: EvaluateRequest) -> list[VerdictResponse]:
    _authorize(request)
    verdicts = _get_orchestrator().evaluate_health(
        payload.target,
        deployment_id=payload.deployment_id,
    )
    return [
        VerdictResponse(
            device_id=item.device_id,
            window=item.window,
            verdict=item.verdict,
            checks=dict(item.checks),
        )
        for item in verdicts
    ]


@app.post("/fleet/rollbacks", response_model=RollbackResponse)
def trigger_rollback(request: Request, payload: RollbackRequest) -> RollbackResponse:
    _authorize(request)
    report = _get_orchestrator().trigger_rollback(
        payload.scope,
        payload.target,
        deployment_id=payload.deployment_id,
        reason=payload.reason,
    )
    return RollbackResponse(
        scope=report.scope,
        target=report.target,
        results=[
            RollbackResultResponse(
                device_id=item.device_id,
                status=item.status,
                restored_version=item.restored_version,
                error=item.error,
            )
            for item in report.results
        ],
    )


@app.get("/fleet/catchup", response_model=list[CatchUpResponse])
def list_catch_up(request: Request) -> list[CatchUpResponse]:
    _authorize(request)
    return [
        CatchUpResponse(
            device_id=entry.device_id,
            deployment_id=entry.deployment_id,
            target_version=entry.target_version,
            status="ready" if entry.ready_at is not None else "waiting",
        )
        for entry in _get_orchestrator().catchup.entries()
    ]


@app.post("/fleet/catchup/process", response_model=list[CatchUpResponse])
def process_catch_up(request: Request) -> list[CatchUpResponse]:
    _authorize(request)
    return [
        CatchUpResponse(
            device_id=item.device_id,
            deployment_id=item.deployment_id,
            target_version=item.target_version,
            status=item.status,
        )
        for item in _get_orchestrator().process_catch_up()
    ]


@app.post("/fleet/halt/clear", response_model=HealthResponse)
async def clear_halt(request: Request, payload: OperatorRequest) -> HealthResponse:
    _authorize(request)
    _get_orchestrator().clear_fatal_halt(payload.operator)
    return await health()


@app.get("/fleet/audit", response_model=list[AuditEventResponse])
def list_audit(
    request: Request,
    device_id: str | None = None,
    deployment_id: str | None = None,
    action: str | None = None,
) -> list[AuditEventResponse]:
    _authorize(request)
    events = _get_orchestrator().audit.events(
        action=action,
        device_id=device_id,
        deployment_id=deployment_id,
    )
    return [
        AuditEventResponse(
            id=event.id,
            at=event.at,
            action=event.action,
            outcome=event.outcome,
            device_id=event.device_id,
            deployment_id=event.deployment_id,
            detail=event.detail,
        )
        for event in events
    ]
