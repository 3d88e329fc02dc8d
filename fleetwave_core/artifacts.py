from __future__ import annotations

import hashlib
import hmac
from dataclasses import dataclass

from fleetwave_core.errors import (
    ChecksumMismatchError,
    CompatibilityError,
    InsufficientDiskError,
    ValidationError,
)
from fleetwave_core.fleet.types import Device

ANY_ARCHITECTURE = "any"


@dataclass(frozen=True)
class Artifact:
    artifact_id: str
    version: str
    checksum: str
    architecture: str
    size_mb: float = 0.0
    signature: str | None = None
    uri: str | None = None
    hardware_types: tuple[str, ...] = ()
    required_capabilities: tuple[str, ...] = ()
    upgrade_from: tuple[str, ...] = ()


def compute_checksum(payload: bytes) -> str:
    return f"sha256:{hashlib.sha256(payload).hexdigest()}"


def _signing_message(artifact: Artifact) -> bytes:
    return f"{artifact.artifact_id}.{artifact.version}.{artifact.checksum}".encode(
        "utf-8"
    )


def sign_artifact(secret: str, artifact: Artifact) -> str:
    digest = hmac.new(
        secret.encode("utf-8"),
        _signing_message(artifact),
        hashlib.sha256,
    ).hexdigest()
    return f"v1={digest}"


def verify_artifact(
    artifact: Artifact,
    *,
    payload: bytes | None = None,
    signing_secret: str | None = None,
) -> None:
    """Check integrity before any byte leaves for a device.

    The checksum must be well formed and, when the payload is at hand, match
    it. A signature is verified whenever both a signature and a secret exist;
    a configured secret with an unsigned artifact is rejected.
    """
    if not artifact.checksum.startswith("sha256:") or len(artifact.checksum) != 71:
        raise ChecksumMismatchError(
            f"Artifact {artifact.artifact_id} has malformed checksum"
        )
    if payload is not None and compute_checksum(payload) != artifact.checksum:
        raise ChecksumMismatchError(
            f"Artifact {artifact.artifact_id} checksum mismatch"
        )
    if signing_secret is None:
        return
    if not artifact.signature:
        raise ChecksumMismatchError(f"Artifact {artifact.artifact_id} is unsigned")
    expected = sign_artifact(signing_secret, artifact)
    if not hmac.compare_digest(expected, artifact.signature):
        raise ChecksumMismatchError(
            f"Artifact {artifact.artifact_id} signature mismatch"
        )


def check_compatibility(artifact: Artifact, device: Device) -> None:
    hardware = device.hardware
    if artifact.architecture not in {ANY_ARCHITECTURE, hardware.architecture}:
        raise CompatibilityError(
            f"Device {device.id} architecture {hardware.architecture} "
            f"does not match artifact {artifact.architecture}"
        )
    if artifact.hardware_types and hardware.hardware_type not in artifact.hardware_types:
        raise CompatibilityError(
            f"Device {device.id} hardware type {hardware.hardware_type} unsupported"
        )
    missing = [
        item for item in artifact.required_capabilities
        if item not in hardware.capabilities
    ]
    if missing:
        raise CompatibilityError(
            f"Device {device.id} lacks capabilities: {', '.join(missing)}"
        )
    current = device.software.current_version
    if artifact.upgrade_from and current not in artifact.upgrade_from:
        raise CompatibilityError(
            f"Device {device.id} version {current} cannot upgrade to "
            f"{artifact.version}"
        )


def check_disk(artifact: Artifact, device: Device) -> None:
    if artifact.size_mb <= 0:
        return
    if device.metrics is None:
        raise ValidationError(f"Device {device.id} has not reported disk capacity")
    if device.metrics.disk_free_mb < artifact.size_mb:
        raise InsufficientDiskError(
            f"Device {device.id} has {device.metrics.disk_free_mb}MB free, "
            f"needs {artifact.size_mb}MB"
        )
