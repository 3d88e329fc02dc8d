from __future__ import annotations

from dataclasses import asdict
from typing import Any

from fleetwave_core.artifacts import Artifact
from fleetwave_core.audit import AuditEvent
from fleetwave_core.fleet.states import PROVISIONING
from fleetwave_core.fleet.types import (
    Device,
    HardwareDescriptor,
    MetricsSnapshot,
    SoftwareDescriptor,
)
from fleetwave_core.health.baseline import Baseline
from fleetwave_core.rollout.catchup import CatchUpEntry
from fleetwave_core.rollout.types import (
    PHASE_PREPARE,
    WAVE_PENDING,
    CanaryConfig,
    Deployment,
    Wave,
    WaveConfig,
)


def device_to_dict(device: Device) -> dict[str, Any]:
    payload = asdict(device)
    payload["tags"] = sorted(device.tags)
    return payload


def device_from_dict(payload: dict[str, Any]) -> Device:
    hardware = payload.get("hardware") or {}
    software = payload.get("software") or {}
    metrics = payload.get("metrics")
    return Device(
        id=str(payload.get("id")),
        hardware=HardwareDescriptor(
            architecture=str(hardware.get("architecture", "")),
            hardware_type=str(hardware.get("hardware_type", "")),
            capabilities=_coerce_tuple(hardware.get("capabilities")),
        ),
        region=_coerce_optional_str(payload.get("region")),
        software=SoftwareDescriptor(
            current_version=_coerce_optional_str(software.get("current_version")),
            current_checksum=_coerce_optional_str(software.get("current_checksum")),
            previous_version=_coerce_optional_str(software.get("previous_version")),
            previous_checksum=_coerce_optional_str(software.get("previous_checksum")),
            slot=str(software.get("slot") or "a"),
            deploying_version=_coerce_optional_str(software.get("deploying_version")),
            deploying_checksum=_coerce_optional_str(
                software.get("deploying_checksum")
            ),
            owner_deployment_id=_coerce_optional_str(
                software.get("owner_deployment_id")
            ),
        ),
        status=str(payload.get("status") or PROVISIONING),
        tags=frozenset(_coerce_tuple(payload.get("tags"))),
        last_heartbeat_at=_coerce_optional_float(payload.get("last_heartbeat_at")),
        last_offline_at=_coerce_optional_float(payload.get("last_offline_at")),
        metrics=MetricsSnapshot(**metrics) if isinstance(metrics, dict) else None,
        metadata=_coerce_metadata(payload.get("metadata")),
        created_at=float(payload.get("created_at") or 0.0),
        updated_at=float(payload.get("updated_at") or 0.0),
    )


def artifact_from_dict(payload: dict[str, Any]) -> Artifact:
    return Artifact(
        artifact_id=str(payload.get("artifact_id")),
        version=str(payload.get("version")),
        checksum=str(payload.get("checksum")),
        architecture=str(payload.get("architecture")),
        size_mb=float(payload.get("size_mb") or 0.0),
        signature=_coerce_optional_str(payload.get("signature")),
        uri=_coerce_optional_str(payload.get("uri")),
        hardware_types=_coerce_tuple(payload.get("hardware_types")),
        required_capabilities=_coerce_tuple(payload.get("required_capabilities")),
        upgrade_from=_coerce_tuple(payload.get("upgrade_from")),
    )


def deployment_to_dict(deployment: Deployment) -> dict[str, Any]:
    return asdict(deployment)


def deployment_from_dict(payload: dict[str, Any]) -> Deployment:
    canary = payload.get("canary") or {}
    baselines = payload.get("baselines") or {}
    return Deployment(
        id=str(payload.get("id")),
        artifact=artifact_from_dict(payload.get("artifact") or {}),
        target_selector=str(payload.get("target_selector") or "*"),
        canary=CanaryConfig(
            min_devices=int(canary.get("min_devices", 1)),
            max_devices=int(canary.get("max_devices", 5)),
            soak_seconds=int(canary.get("soak_seconds", 3600)),
        ),
        wave_configs=tuple(
            WaveConfig(
                name=str(item["name"]),
                percent=int(item["percent"]),
                soak_seconds=int(item.get("soak_seconds", 3600)),
                failure_threshold=float(item.get("failure_threshold", 0.2)),
            )
            for item in payload.get("wave_configs") or []
        ),
        started_at=float(payload.get("started_at") or 0.0),
        seed=int(payload.get("seed") or 0),
        phase=str(payload.get("phase") or PHASE_PREPARE),
        target_device_ids=_coerce_tuple(payload.get("target_device_ids")),
        excluded={
            str(key): str(value)
            for key, value in (payload.get("excluded") or {}).items()
        },
        baselines={
            str(group): Baseline(**item) for group, item in baselines.items()
        },
        canary_device_ids=_coerce_tuple(payload.get("canary_device_ids")),
        canary_deployed_at=_coerce_optional_float(payload.get("canary_deployed_at")),
        canary_extensions=int(payload.get("canary_extensions") or 0),
        waves=tuple(_wave_from_dict(item) for item in payload.get("waves") or []),
        approved=bool(payload.get("approved", False)),
        approved_by=_coerce_optional_str(payload.get("approved_by")),
        halted=bool(payload.get("halted", False)),
        halt_reason=_coerce_optional_str(payload.get("halt_reason")),
        skipped_device_ids=_coerce_tuple(payload.get("skipped_device_ids")),
        rolled_back_device_ids=_coerce_tuple(payload.get("rolled_back_device_ids")),
        summary=_coerce_metadata(payload.get("summary")),
        updated_at=float(payload.get("updated_at") or 0.0),
    )


def catchup_to_dict(entry: CatchUpEntry) -> dict[str, Any]:
    return asdict(entry)


def catchup_from_dict(payload: dict[str, Any]) -> CatchUpEntry:
    return CatchUpEntry(
        device_id=str(payload.get("device_id")),
        target_version=str(payload.get("target_version")),
        deployment_id=str(payload.get("deployment_id")),
        artifact=artifact_from_dict(payload.get("artifact") or {}),
        enqueued_at=float(payload.get("enqueued_at") or 0.0),
        attempts=int(payload.get("attempts") or 0),
        max_attempts=int(payload.get("max_attempts") or 5),
        ready_at=_coerce_optional_float(payload.get("ready_at")),
        last_error=_coerce_optional_str(payload.get("last_error")),
    )


def audit_to_dict(event: AuditEvent) -> dict[str, Any]:
    return asdict(event)


def audit_from_dict(payload: dict[str, Any]) -> AuditEvent:
    return AuditEvent(
        id=str(payload.get("id")),
        at=float(payload.get("at") or 0.0),
        action=str(payload.get("action")),
        outcome=str(payload.get("outcome")),
        device_id=_coerce_optional_str(payload.get("device_id")),
        deployment_id=_coerce_optional_str(payload.get("deployment_id")),
        detail=_coerce_metadata(payload.get("detail")),
    )


def _wave_from_dict(payload: dict[str, Any]) -> Wave:
    return Wave(
        name=str(payload.get("name")),
        percent=int(payload.get("percent") or 0),
        device_ids=_coerce_tuple(payload.get("device_ids")),
        soak_seconds=int(payload.get("soak_seconds") or 0),
        failure_threshold=float(payload.get("failure_threshold") or 0.0),
        status=str(payload.get("status") or WAVE_PENDING),
        deployed_count=int(payload.get("deployed_count") or 0),
        failed_count=int(payload.get("failed_count") or 0),
        skipped_count=int(payload.get("skipped_count") or 0),
        deployed_device_ids=_coerce_tuple(payload.get("deployed_device_ids")),
        started_at=_coerce_optional_float(payload.get("started_at")),
        deployed_at=_coerce_optional_float(payload.get("deployed_at")),
        soak_extensions=int(payload.get("soak_extensions") or 0),
    )


def _coerce_optional_str(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _coerce_optional_float(value: object) -> float | None:
    if value is None:
        return None
    return float(value)  # type: ignore[arg-type]


def _coerce_tuple(value: object) -> tuple[str, ...]:
    if isinstance(value, (list, tuple, set, frozenset)):
        return tuple(str(item) for item in value)
    return ()


def _coerce_metadata(value: object) -> dict[str, object] | None:
    if not isinstance(value, dict):
        return None
    return {str(key): item for key, item in value.items()}

