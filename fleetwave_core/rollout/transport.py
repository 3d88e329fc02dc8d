from __future__ import annotations

from typing import Protocol

from fleetwave_core.artifacts import Artifact
from fleetwave_core.fleet.types import Device
from fleetwave_core.logging import get_logger

logger = get_logger(__name__)


class DeviceTransport(Protocol):
    """Boundary to whatever actually moves bytes and runs commands on devices.

    Recoverable problems (unreachable device, timeouts) surface as
    ``RecoverableError`` subclasses; validation problems detected on the
    device (checksum mismatch, no disk) as ``ValidationError`` subclasses.
    """

    def transfer(self, device: Device, artifact: Artifact, *, timeout_s: float) -> None:
        ...

    def install(self, device: Device, artifact: Artifact, *, timeout_s: float) -> None:
        ...

    def activate(self, device: Device, artifact: Artifact, *, timeout_s: float) -> None:
        ...

    def health_check(self, device: Device, version: str, *, timeout_s: float) -> bool:
        ...

    def stop(self, device: Device, version: str | None, *, timeout_s: float) -> None:
        ...

    def restore_snapshot(
        self,
        device: Device,
        version: str,
        *,
        timeout_s: float,
    ) -> str | None:
        """Restore ``version`` from the device-local snapshot; return its checksum."""
        ...

    def start(self, device: Device, version: str, *, timeout_s: float) -> None:
        ...


class DryRunTransport:
    """Transport that performs nothing and reports success."""

    def transfer(self, device: Device, artifact: Artifact, *, timeout_s: float) -> None:
        logger.info(
            "Dry-run transfer",
            extra={"device_id": device.id, "target_version": artifact.version},
        )

    def install(self, device: Device, artifact: Artifact, *, timeout_s: float) -> None:
        logger.info(
            "Dry-run install",
            extra={"device_id": device.id, "target_version": artifact.version},
        )

    def activate(self, device: Device, artifact: Artifact, *, timeout_s: float) -> None:
        logger.info(
            "Dry-run activate",
            extra={"device_id": device.id, "target_version": artifact.version},
        )

    def health_check(self, device: Device, version: str, *, timeout_s: float) -> bool:
        return True

    def stop(self, device: Device, version: str | None, *, timeout_s: float) -> None:
        return None

    def restore_snapshot(
        self,
        device: Device,
        version: str,
        *,
        timeout_s: float,
    ) -> str | None:
        return device.software.previous_checksum

    def start(self, device: Device, version: str, *, timeout_s: float) -> None:
        return None
