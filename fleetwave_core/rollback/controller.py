from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from fleetwave_core.audit import AuditTrail
from fleetwave_core.errors import (
    FleetwaveError,
    PermanentError,
    RecoverableError,
    RollbackFailedError,
)
from fleetwave_core.fleet.registry import DeviceRegistry
from fleetwave_core.fleet.states import (
    DECOMMISSIONED,
    DEGRADED,
    FAILED,
    HEALTH_OK,
    QUARANTINE,
    QUARANTINED,
)
from fleetwave_core.fleet.types import Device
from fleetwave_core.logging import get_logger
from fleetwave_core.rollout.parallel import run_bounded
from fleetwave_core.rollout.transport import DeviceTransport

logger = get_logger(__name__)

ROLLED_BACK = "rolled_back"
QUARANTINED_RESULT = "quarantined"
DEFERRED = "deferred"
NOTHING_TO_RESTORE = "nothing_to_restore"


@dataclass(frozen=True)
class DeviceRollbackResult:
    device_id: str
    status: str
    restored_version: str | None = None
    error: str | None = None


@dataclass(frozen=True)
class RollbackReport:
    scope: str
    target: str
    results: tuple[DeviceRollbackResult, ...]

    def with_status(self, status: str) -> tuple[str, ...]:
        return tuple(item.device_id for item in self.results if item.status == status)

    @property
    def fatal(self) -> bool:
        return any(item.status == QUARANTINED_RESULT for item in self.results)


class RollbackController:
    """Reverts devices to the version held in their local snapshot.

    A device whose restored version does not come back healthy is
    quarantined and never retried; that also raises a fleet-wide halt which
    stays set until an operator clears it.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        transport: DeviceTransport,
        *,
        audit: AuditTrail | None = None,
        batch_size: int = 32,
        operation_timeout_s: float = 60,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.audit = audit or registry.audit
        self.batch_size = max(1, batch_size)
        self.operation_timeout_s = operation_timeout_s
        self._now = now_fn or time.time
        self.fatal_halt = threading.Event()
        self._halt_reason: str | None = None
        self._halt_lock = threading.Lock()

    @property
    def halt_reason(self) -> str | None:
        with self._halt_lock:
            return self._halt_reason

    def clear_fatal_halt(self, operator: str) -> None:
        with self._halt_lock:
            reason = self._halt_reason
            self._halt_reason = None
            self.fatal_halt.clear()
        self.audit.record(
            "fleet.halt_cleared",
            "ok",
            detail={"operator": operator, "reason": reason},
        )
        logger.warning(
            "Fatal halt cleared by operator",
            extra={"status": operator},
        )

    def rollback_device(
        self,
        device_id: str,
        *,
        deployment_id: str | None = None,
        reason: str | None = None,
        expected_version: str | None = None,
    ) -> DeviceRollbackResult:
        device = self.registry.get(device_id)
        software = device.software
        if device.status in {QUARANTINED, DECOMMISSIONED}:
            return self._record(
                device_id, deployment_id, NOTHING_TO_RESTORE, None,
                f"Device is {device.status}", reason,
            )
        if (
            expected_version is not None
            and not software.in_progress
            and software.current_version != expected_version
        ):
            return self._record(
                device_id, deployment_id, NOTHING_TO_RESTORE,
                software.current_version, None, reason,
            )
        if software.in_progress and software.current_version != software.deploying_version:
            # Never activated: clearing the marker is the whole rollback.
            self.registry.abort_deployment(
                device_id, deployment_id=software.owner_deployment_id or ""
            )
            return self._record(
                device_id, deployment_id, NOTHING_TO_RESTORE,
                software.current_version, None, reason,
            )
        if software.previous_version is None or (
            software.current_version == software.previous_version
            and software.current_checksum == software.previous_checksum
        ):
            return self._record(
                device_id, deployment_id, NOTHING_TO_RESTORE,
                software.current_version, None, reason,
            )

        try:
            self.transport.stop(
                device, software.current_version, timeout_s=self.operation_timeout_s
            )
        except RecoverableError as exc:
            return self._record(
                device_id, deployment_id, DEFERRED, None, str(exc), reason
            )
        except FleetwaveError as exc:
            return self._escalate(device, deployment_id, str(exc), reason)

        try:
            self._restore_and_verify(device)
        except RollbackFailedError as exc:
            return self._escalate(device, deployment_id, str(exc), reason)

        restored = self.registry.restore_previous(device_id)
        if restored.status in {FAILED, DEGRADED}:
            restored = self.registry.transition(device_id, HEALTH_OK)
        return self._record(
            device_id, deployment_id, ROLLED_BACK,
            restored.software.current_version, None, reason,
        )

    def rollback_wave(
        self,
        wave_name: str,
        device_ids: Sequence[str],
        *,
        deployment_id: str | None = None,
        reason: str | None = None,
        expected_version: str | None = None,
    ) -> RollbackReport:
        """Roll back every device of a wave at once and wait for all of them."""
        results = run_bounded(
            list(device_ids),
            lambda device_id: self.rollback_device(
                device_id,
                deployment_id=deployment_id,
                reason=reason,
                expected_version=expected_version,
            ),
            max_parallelism=max(1, len(device_ids)),
        )
        report = RollbackReport(
            scope="wave",
            target=wave_name,
            results=tuple(results[item] for item in device_ids),  # type: ignore[misc]
        )
        self._record_report(report, deployment_id, reason)
        return report

    def rollback_fleet(
        self,
        device_ids: Sequence[str],
        *,
        deployment_id: str | None = None,
        reason: str | None = None,
        expected_version: str | None = None,
    ) -> RollbackReport:
        """Roll back in bounded parallel batches, one batch at a time."""
        ordered = list(device_ids)
        collected: list[DeviceRollbackResult] = []
        for start in range(0, len(ordered), self.batch_size):
            batch = ordered[start : start + self.batch_size]
            results = run_bounded(
                batch,
                lambda device_id: self.rollback_device(
                    device_id,
                    deployment_id=deployment_id,
                    reason=reason,
                    expected_version=expected_version,
                ),
                max_parallelism=len(batch),
            )
            collected.extend(results[item] for item in batch)  # type: ignore[misc]
        report = RollbackReport(
            scope="fleet",
            target=deployment_id or "fleet",
            results=tuple(collected),
        )
        self._record_report(report, deployment_id, reason)
        return report

    def _restore_and_verify(self, device: Device) -> None:
        software = device.software
        previous = software.previous_version or ""
        try:
            checksum = self.transport.restore_snapshot(
                device, previous, timeout_s=self.operation_timeout_s
            )
            if checksum != software.previous_checksum:
                raise RollbackFailedError(
                    f"Restored image checksum {checksum} does not match "
                    f"{software.previous_checksum}"
                )
            self.transport.start(device, previous, timeout_s=self.operation_timeout_s)
            healthy = self.transport.health_check(
                device, previous, timeout_s=self.operation_timeout_s
            )
        except RollbackFailedError:
            raise
        except (RecoverableError, PermanentError) as exc:
            raise RollbackFailedError(f"Restore of {previous} failed: {exc}") from exc
        if not healthy:
            raise RollbackFailedError(f"Device not healthy after restoring {previous}")

    def _escalate(
        self,
        device: Device,
        deployment_id: str | None,
        error: str,
        reason: str | None,
    ) -> DeviceRollbackResult:
        self.registry.transition(device.id, QUARANTINE)
        with self._halt_lock:
            self._halt_reason = f"rollback_failed:{device.id}"
            self.fatal_halt.set()
        logger.critical(
            "Rollback failed; device quarantined and fleet halted",
            extra={
                "device_id": device.id,
                "deployment_id": deployment_id,
                "error_message": error,
            },
        )
        self.audit.record(
            "fleet.halted",
            "fatal",
            device_id=device.id,
            deployment_id=deployment_id,
            detail={"error": error},
        )
        return self._record(
            device.id, deployment_id, QUARANTINED_RESULT, None, error, reason
        )

    def _record(
        self,
        device_id: str,
        deployment_id: str | None,
        status: str,
        restored_version: str | None,
        error: str | None,
        reason: str | None,
    ) -> DeviceRollbackResult:
        self.audit.record(
            "device.rollback",
            status,
            device_id=device_id,
            deployment_id=deployment_id,
            detail={
                "reason": reason,
                "restored_version": restored_version,
                "error": error,
            },
        )
        logger.info(
            "Device rollback finished",
            extra={
                "device_id": device_id,
                "deployment_id": deployment_id,
                "outcome": status,
                "error_message": error,
            },
        )
        return DeviceRollbackResult(
            device_id=device_id,
            status=status,
            restored_version=restored_version,
            error=error,
        )

    def _record_report(
        self,
        report: RollbackReport,
        deployment_id: str | None,
        reason: str | None,
    ) -> None:
        self.audit.record(
            f"{report.scope}.rollback",
            "fatal" if report.fatal else "ok",
            deployment_id=deployment_id,
            detail={
                "target": report.target,
                "reason": reason,
                "rolled_back": list(report.with_status(ROLLED_BACK)),
                "quarantined": list(report.with_status(QUARANTINED_RESULT)),
                "deferred": list(report.with_status(DEFERRED)),
            },
        )
        logger.warning(
            "Scoped rollback finished",
            extra={
                "deployment_id": deployment_id,
                "scope": report.scope,
                "count": len(report.results),
            },
        )
