from __future__ import annotations

import threading
import time
from dataclasses import dataclass
from typing import Callable, Sequence

from fleetwave_core.artifacts import Artifact, check_compatibility, check_disk
from fleetwave_core.audit import AuditTrail
from fleetwave_core.errors import (
    DeploymentInProgressError,
    DeviceUnavailableError,
    FleetwaveError,
    OperationTimeoutError,
    PermanentError,
    ValidationError,
)
from fleetwave_core.fleet.registry import DeviceRegistry
from fleetwave_core.fleet.states import DEPLOYABLE_STATES, OFFLINE
from fleetwave_core.logging import get_logger
from fleetwave_core.rollout.parallel import HALTED, run_bounded
from fleetwave_core.rollout.retry import RetryExhaustedError, RetryPolicy, call_with_retry
from fleetwave_core.rollout.transport import DeviceTransport
from fleetwave_core.rollout.types import (
    OUTCOME_DEPLOYED,
    OUTCOME_FAILED,
    OUTCOME_SKIPPED,
    DeviceOutcome,
)

logger = get_logger(__name__)


@dataclass(frozen=True)
class OperationTimeouts:
    transfer_s: float = 300
    install_s: float = 300
    health_s: float = 30


class DeviceDeployer:
    """Pushes one artifact to one device: transfer, install, activate, check.

    Transport hiccups are retried with backoff and end as ``skipped`` with
    error code ``unreachable`` so the device can be caught up later.
    Validation failures are never retried and end as ``failed``.
    """

    def __init__(
        self,
        registry: DeviceRegistry,
        transport: DeviceTransport,
        *,
        retry: RetryPolicy | None = None,
        timeouts: OperationTimeouts | None = None,
        audit: AuditTrail | None = None,
        now_fn: Callable[[], float] | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
    ) -> None:
        self.registry = registry
        self.transport = transport
        self.retry = retry or RetryPolicy()
        self.timeouts = timeouts or OperationTimeouts()
        self.audit = audit or registry.audit
        self._now = now_fn or time.time
        self._sleep = sleep_fn

    def deploy(
        self,
        device_id: str,
        artifact: Artifact,
        *,
        deployment_id: str,
    ) -> DeviceOutcome:
        device = self.registry.get(device_id)
        if device.status == OFFLINE:
            return self._finish(
                device_id, deployment_id, OUTCOME_SKIPPED, 0, "unreachable",
                f"Device is {device.status}",
            )
        if device.status not in DEPLOYABLE_STATES:
            return self._finish(
                device_id, deployment_id, OUTCOME_SKIPPED, 0, "not_deployable",
                f"Device is {device.status}",
            )
        try:
            check_compatibility(artifact, device)
            check_disk(artifact, device)
            device = self.registry.begin_deployment(
                device_id,
                deployment_id=deployment_id,
                version=artifact.version,
                checksum=artifact.checksum,
            )
        except ValidationError as exc:
            return self._finish(
                device_id, deployment_id, OUTCOME_FAILED, 0, _error_code(exc), str(exc)
            )
        except (DeploymentInProgressError, DeviceUnavailableError) as exc:
            return self._finish(
                device_id, deployment_id, OUTCOME_SKIPPED, 0, _error_code(exc), str(exc)
            )

        attempts = 0
        try:
            _, used = call_with_retry(
                lambda: self.transport.transfer(
                    device, artifact, timeout_s=self.timeouts.transfer_s
                ),
                self.retry,
                sleep_fn=self._sleep,
            )
            attempts += used
            _, used = call_with_retry(
                lambda: self.transport.install(
                    device, artifact, timeout_s=self.timeouts.install_s
                ),
                self.retry,
                sleep_fn=self._sleep,
            )
            attempts += used
        except RetryExhaustedError as exc:
            self.registry.abort_deployment(device_id, deployment_id=deployment_id)
            return self._finish(
                device_id, deployment_id, OUTCOME_SKIPPED, attempts + exc.attempts,
                "unreachable", str(exc),
            )
        except PermanentError as exc:
            self.registry.abort_deployment(device_id, deployment_id=deployment_id)
            return self._finish(
                device_id, deployment_id, OUTCOME_FAILED, attempts + 1,
                _error_code(exc), str(exc),
            )

        try:
            _, used = call_with_retry(
                lambda: self.transport.activate(
                    device, artifact, timeout_s=self.timeouts.install_s
                ),
                self.retry,
                sleep_fn=self._sleep,
            )
            attempts += used
        except (RetryExhaustedError, PermanentError) as exc:
            self.registry.abort_deployment(device_id, deployment_id=deployment_id)
            return self._finish(
                device_id, deployment_id, OUTCOME_FAILED, attempts + 1,
                "activation_failed", str(exc),
            )
        self.registry.complete_deployment(device_id, deployment_id=deployment_id)

        try:
            _, used = call_with_retry(
                lambda: self._check_health(device_id, artifact.version),
                self.retry,
                sleep_fn=self._sleep,
            )
            attempts += used
        except RetryExhaustedError as exc:
            return self._finish(
                device_id, deployment_id, OUTCOME_FAILED, attempts + exc.attempts,
                "health_check_failed", str(exc), activated=True,
            )
        except PermanentError as exc:
            return self._finish(
                device_id, deployment_id, OUTCOME_FAILED, attempts + 1,
                "health_check_failed", str(exc), activated=True,
            )
        return self._finish(
            device_id, deployment_id, OUTCOME_DEPLOYED, attempts, None, None,
            activated=True,
        )

    def deploy_many(
        self,
        device_ids: Sequence[str],
        artifact: Artifact,
        *,
        deployment_id: str,
        max_parallelism: int,
        halt: threading.Event | None = None,
    ) -> dict[str, DeviceOutcome]:
        results = run_bounded(
            device_ids,
            lambda device_id: self.deploy_isolated(
                device_id, artifact, deployment_id=deployment_id
            ),
            max_parallelism=max_parallelism,
            halt=halt,
        )
        outcomes: dict[str, DeviceOutcome] = {}
        for device_id, result in results.items():
            if result is HALTED:
                outcomes[device_id] = self._finish(
                    device_id, deployment_id, OUTCOME_SKIPPED, 0, "halted",
                    "Halt requested before start",
                )
            else:
                outcomes[device_id] = result  # type: ignore[assignment]
        return outcomes

    def deploy_isolated(
        self,
        device_id: str,
        artifact: Artifact,
        *,
        deployment_id: str,
    ) -> DeviceOutcome:
        """Run ``deploy`` so that nothing one device raises escapes the wave."""
        try:
            return self.deploy(device_id, artifact, deployment_id=deployment_id)
        except Exception as exc:
            logger.exception(
                "Device deployment raised",
                extra={
                    "device_id": device_id,
                    "deployment_id": deployment_id,
                    "error_message": str(exc),
                },
            )
            activated = self._settle_after_error(device_id, artifact, deployment_id)
            return self._finish(
                device_id, deployment_id, OUTCOME_FAILED, 0, _error_code(exc),
                str(exc), activated=activated,
            )

    def _settle_after_error(
        self, device_id: str, artifact: Artifact, deployment_id: str
    ) -> bool:
        """Release an in-flight marker; report whether the new version is live."""
        try:
            device = self.registry.get(device_id)
            software = device.software
            if software.owner_deployment_id != deployment_id:
                return False
            if software.in_progress:
                self.registry.abort_deployment(device_id, deployment_id=deployment_id)
                return False
        except FleetwaveError as exc:
            logger.warning(
                "Could not settle device after deployment error",
                extra={"device_id": device_id, "error_message": str(exc)},
            )
            return False
        return software.current_version == artifact.version

    def _check_health(self, device_id: str, version: str) -> bool:
        device = self.registry.get(device_id)
        healthy = self.transport.health_check(
            device, version, timeout_s=self.timeouts.health_s
        )
        if not healthy:
            raise OperationTimeoutError(f"Device {device_id} not healthy on {version}")
        return True

    def _finish(
        self,
        device_id: str,
        deployment_id: str,
        status: str,
        attempts: int,
        error_code: str | None,
        error: str | None,
        *,
        activated: bool = False,
    ) -> DeviceOutcome:
        outcome = DeviceOutcome(
            device_id=device_id,
            status=status,
            attempts=attempts,
            activated=activated,
            error_code=error_code,
            error=error,
            finished_at=self._now(),
        )
        self.audit.record(
            "device.deploy",
            status,
            device_id=device_id,
            deployment_id=deployment_id,
            detail={"attempts": attempts, "error_code": error_code, "error": error},
        )
        log = logger.info if status == OUTCOME_DEPLOYED else logger.warning
        log(
            "Device deployment finished",
            extra={
                "device_id": device_id,
                "deployment_id": deployment_id,
                "outcome": status,
                "attempt_count": attempts,
                "error_code": error_code,
                "error_message": error,
            },
        )
        return outcome


def _error_code(exc: Exception) -> str:
    name = type(exc).__name__
    if name.endswith("Error"):
        name = name[: -len("Error")]
    chars: list[str] = []
    for idx, char in enumerate(name):
        if char.isupper() and idx:
            chars.append("_")
        chars.append(char.lower())
    return "".join(chars)
