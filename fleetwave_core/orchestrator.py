"""Deployment orchestration across the fleet.

A deployment moves strictly forward through
``prepare -> canary -> verify -> rollout -> confirm -> completed`` and may
leave any phase for ``rolled_back`` (or ``aborted`` when preparation cannot
produce a plan). ``advance_phase`` is a step function: every call performs at
most one unit of work and returns immediately, reporting whether the
deployment advanced or is waiting on a soak period, an approval or an
operator decision after a halt.
"""

from __future__ import annotations

import threading
import time
import uuid
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Callable, Iterable, Iterator, Sequence

from fleetwave_core.artifacts import Artifact, check_compatibility, check_disk, verify_artifact
from fleetwave_core.audit import AuditTrail
from fleetwave_core.config import Config, get_config
from fleetwave_core.errors import (
    DeploymentNotFoundError,
    DeviceNotFoundError,
    FleetHaltedError,
    InsufficientCanaryCoverageError,
    InsufficientDiskError,
    PhaseError,
    ValidationError,
)
from fleetwave_core.fleet.registry import DeviceRegistry
from fleetwave_core.fleet.states import (
    DECOMMISSIONED,
    HEALTHY,
    MAINTENANCE,
    QUARANTINED,
)
from fleetwave_core.fleet.types import Device, MetricsSnapshot
from fleetwave_core.health.baseline import (
    GroupKey,
    IncidentWindow,
    capture_baselines,
    default_group_key,
)
from fleetwave_core.health.gate import (
    CAUTION,
    FAIL,
    PASS,
    GateThresholds,
    HealthGateEvaluator,
    HealthVerdict,
)
from fleetwave_core.health.history import MetricsHistory
from fleetwave_core.logging import get_logger
from fleetwave_core.rollback.controller import (
    ROLLED_BACK,
    RollbackController,
    RollbackReport,
)
from fleetwave_core.rollback.triggers import (
    SCOPE_DEVICE,
    SCOPE_FLEET,
    SCOPE_WAVE,
    TrendTracker,
    TriggerThresholds,
    device_trigger,
    error_spike_devices,
    error_spike_trigger,
    trend_trigger,
    wave_failure_trigger,
)
from fleetwave_core.rollout.canary import CoverageScore, default_coverage_score, select_canary
from fleetwave_core.rollout.catchup import CatchUpEntry, CatchUpQueue, CatchUpResult
from fleetwave_core.rollout.deployer import DeviceDeployer, OperationTimeouts
from fleetwave_core.rollout.retry import RetryPolicy
from fleetwave_core.rollout.transport import DeviceTransport, DryRunTransport
from fleetwave_core.rollout.types import (
    OUTCOME_DEPLOYED,
    OUTCOME_FAILED,
    PHASE_ABORTED,
    PHASE_CANARY,
    PHASE_COMPLETED,
    PHASE_CONFIRM,
    PHASE_PREPARE,
    PHASE_ROLLED_BACK,
    PHASE_ROLLOUT,
    PHASE_VERIFY,
    WAVE_PASSED,
    WAVE_PENDING,
    WAVE_ROLLED_BACK,
    WAVE_RUNNING,
    CanaryConfig,
    Deployment,
    DeviceOutcome,
    Wave,
    WaveConfig,
)
from fleetwave_core.rollout.waves import normalize_wave_configs, plan_waves, time_seed
from fleetwave_core.stores.interfaces import FleetStateStore

logger = get_logger(__name__)

ADVANCED = "advanced"
WAITING_SOAK = "waiting_soak"
WAITING_APPROVAL = "waiting_approval"
HALTED = "halted"
FINISHED = "finished"

_NOT_TARGETABLE = {MAINTENANCE, QUARANTINED, DECOMMISSIONED}


@dataclass(frozen=True)
class PhaseStep:
    deployment: Deployment
    status: str
    reason: str | None = None


class Orchestrator:
    def __init__(
        self,
        registry: DeviceRegistry | None = None,
        transport: DeviceTransport | None = None,
        *,
        config: Config | None = None,
        store: FleetStateStore | None = None,
        audit: AuditTrail | None = None,
        now_fn: Callable[[], float] | None = None,
        sleep_fn: Callable[[float], None] = time.sleep,
        coverage_score: CoverageScore = default_coverage_score,
        group_key: GroupKey = default_group_key,
        gate_thresholds: GateThresholds | None = None,
        trigger_thresholds: TriggerThresholds | None = None,
    ) -> None:
        self.config = config or get_config()
        self._now = now_fn or time.time
        self.store = store
        if audit is None:
            audit = AuditTrail(
                sink=store.append_audit if store is not None else None,
                now_fn=self._now,
            )
        self.audit = audit
        self.registry = registry or DeviceRegistry(
            heartbeat_timeout_seconds=self.config.heartbeat_timeout_seconds,
            history=MetricsHistory(),
            audit=self.audit,
            now_fn=self._now,
        )
        self.transport = transport or DryRunTransport()
        self.coverage_score = coverage_score
        self.group_key = group_key
        self.trigger_thresholds = trigger_thresholds or TriggerThresholds()
        self.gate = HealthGateEvaluator(
            self.registry.history,
            thresholds=gate_thresholds,
            group_key=group_key,
        )
        self.deployer = DeviceDeployer(
            self.registry,
            self.transport,
            retry=RetryPolicy(
                max_attempts=self.config.max_attempts,
                backoff_s=self.config.backoff_seconds,
            ),
            timeouts=OperationTimeouts(
                transfer_s=self.config.transfer_timeout_seconds,
                install_s=self.config.install_timeout_seconds,
                health_s=self.config.health_timeout_seconds,
            ),
            audit=self.audit,
            now_fn=self._now,
            sleep_fn=sleep_fn,
        )
        self.rollback = RollbackController(
            self.registry,
            self.transport,
            audit=self.audit,
            batch_size=self.config.rollback_batch_size,
            operation_timeout_s=self.config.health_timeout_seconds,
            now_fn=self._now,
        )
        self.catchup = CatchUpQueue(
            settle_seconds=self.config.catchup_settle_seconds,
            max_attempts=self.config.catchup_max_attempts,
            audit=self.audit,
            now_fn=self._now,
            reachable_fn=self._device_healthy,
        )
        self.registry.add_return_listener(self.catchup.on_device_returned)
        self._deployments: dict[str, Deployment] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._trends: dict[str, TrendTracker] = {}
        self._guard = threading.Lock()

    # -- persistence -------------------------------------------------------

    def restore(self) -> None:
        """Load persisted state into an empty orchestrator."""
        if self.store is None:
            return
        self.registry.load(self.store.load_devices())
        with self._guard:
            for deployment in self.store.load_deployments():
                self._deployments[deployment.id] = deployment
                self._locks[deployment.id] = threading.RLock()
        self.catchup.load(self.store.load_catchup())
        self.audit.load(self.store.load_audit())
        logger.info(
            "Fleet state restored",
            extra={"count": len(self.registry.all())},
        )

    def checkpoint(self) -> None:
        if self.store is None:
            return
        self.store.save_devices(self.registry.all())
        self.store.save_deployments(self.deployments())
        self.store.save_catchup(self.catchup.entries())

    # -- registry operations -----------------------------------------------

    def register_device(self, device: Device) -> Device:
        registered = self.registry.register(device)
        self.checkpoint()
        return registered

    def heartbeat(
        self,
        device_id: str,
        status: str,
        metrics: MetricsSnapshot,
        *,
        at: float | None = None,
    ) -> Device:
        device = self.registry.heartbeat(device_id, status, metrics, at=at)
        self.checkpoint()
        return device

    def sweep_offline(self, now: float | None = None) -> list[str]:
        moved = self.registry.sweep_offline(now)
        if moved:
            self.checkpoint()
        return moved

    def query_registry(self, tag_expression: str) -> list[Device]:
        return self.registry.query(tag_expression)

    # -- deployments -------------------------------------------------------

    def get_deployment(self, deployment_id: str) -> Deployment:
        with self._guard:
            deployment = self._deployments.get(deployment_id)
        if deployment is None:
            raise DeploymentNotFoundError(f"Deployment not found: {deployment_id}")
        return deployment

    def deployments(self) -> list[Deployment]:
        with self._guard:
            items = list(self._deployments.values())
        return sorted(items, key=lambda item: item.started_at)

    def plan_deployment(
        self,
        artifact: Artifact,
        target_selector: str,
        canary: CanaryConfig,
        waves: Sequence[WaveConfig],
        *,
        seed: int | None = None,
        payload: bytes | None = None,
    ) -> Deployment:
        self._require_not_halted()
        verify_artifact(
            artifact,
            payload=payload,
            signing_secret=self.config.signing_secret,
        )
        if canary.min_devices < 1 or canary.max_devices < canary.min_devices:
            raise ValidationError("Canary size bounds must satisfy 1 <= min <= max")
        # Surface selector errors before the deployment exists.
        self.registry.query(target_selector)
        now = self._now()
        deployment = Deployment(
            id=str(uuid.uuid4()),
            artifact=artifact,
            target_selector=target_selector,
            canary=canary,
            wave_configs=normalize_wave_configs(waves),
            started_at=now,
            seed=time_seed(now) if seed is None else seed,
            updated_at=now,
        )
        with self._guard:
            self._deployments[deployment.id] = deployment
            self._locks[deployment.id] = threading.RLock()
        self.audit.record(
            "deployment.planned",
            "ok",
            deployment_id=deployment.id,
            detail={
                "version": artifact.version,
                "selector": target_selector,
                "seed": deployment.seed,
            },
        )
        logger.info(
            "Deployment planned",
            extra={
                "deployment_id": deployment.id,
                "target_version": artifact.version,
                "phase": deployment.phase,
            },
        )
        self.checkpoint()
        return deployment

    def advance_phase(self, deployment_id: str) -> PhaseStep:
        self._require_not_halted()
        with self._deployment_lock(deployment_id):
            deployment = self.get_deployment(deployment_id)
            if deployment.terminal:
                raise PhaseError(
                    f"Deployment {deployment_id} is {deployment.phase}"
                )
            handler = {
                PHASE_PREPARE: self._prepare,
                PHASE_CANARY: self._run_canary,
                PHASE_VERIFY: self._verify,
                PHASE_ROLLOUT: self._rollout_step,
                PHASE_CONFIRM: self._confirm,
            }[deployment.phase]
            step = handler(deployment)
        self.checkpoint()
        return step

    def approve_rollout(self, deployment_id: str, approver: str) -> Deployment:
        with self._deployment_lock(deployment_id):
            deployment = self.get_deployment(deployment_id)
            if deployment.phase != PHASE_VERIFY:
                raise PhaseError(
                    f"Approval only applies in verify, deployment is {deployment.phase}"
                )
            updated = self._save(
                replace(deployment, approved=True, approved_by=approver)
            )
        self.audit.record(
            "deployment.approved",
            "ok",
            deployment_id=deployment_id,
            detail={"approver": approver},
        )
        self.checkpoint()
        return updated

    def resume_rollout(self, deployment_id: str, operator: str) -> Deployment:
        self._require_not_halted()
        with self._deployment_lock(deployment_id):
            deployment = self.get_deployment(deployment_id)
            if deployment.phase != PHASE_ROLLOUT or not deployment.halted:
                raise PhaseError(f"Deployment {deployment_id} is not halted in rollout")
            with self._guard:
                self._trends.pop(deployment_id, None)
            updated = self._save(replace(deployment, halted=False, halt_reason=None))
        self.audit.record(
            "deployment.resumed",
            "ok",
            deployment_id=deployment_id,
            detail={"operator": operator, "reason": deployment.halt_reason},
        )
        logger.info(
            "Rollout resumed",
            extra={"deployment_id": deployment_id, "phase": PHASE_ROLLOUT},
        )
        self.checkpoint()
        return updated

    def evaluate_health(
        self,
        target: str,
        *,
        deployment_id: str | None = None,
    ) -> list[HealthVerdict]:
        """Evaluate one device, or one wave of a deployment."""
        now = self._now()
        if deployment_id is not None:
            deployment = self.get_deployment(deployment_id)
            stamps = _deployed_at(deployment)
            wave = deployment.wave(target)
            if wave is not None:
                ids = [item for item in wave.deployed_device_ids if item in stamps]
            elif target == "canary":
                ids = [item for item in deployment.canary_device_ids if item in stamps]
            elif target in stamps:
                ids = [target]
            else:
                raise ValidationError(
                    f"{target} is neither a wave nor a deployed device of {deployment_id}"
                )
            verdicts = self._verdicts(deployment, ids, now)
            return [verdicts[item] for item in ids if item in verdicts]

        device = self.registry.get(target)
        window = self.gate.thresholds.soak_complete_seconds
        baselines = capture_baselines(
            self.registry.all(),
            self.registry.history,
            now=now - window,
            group_key=self.group_key,
        )
        return [
            self.gate.evaluate(
                device,
                target_version=device.software.current_version or "",
                deployed_at=now - window,
                baselines=baselines,
                now=now,
            )
        ]

    def trigger_rollback(
        self,
        scope: str,
        target: str,
        *,
        deployment_id: str | None = None,
        reason: str = "manual",
    ) -> RollbackReport:
        """Operator rollback; allowed even while the fleet is halted."""
        if scope == SCOPE_DEVICE:
            device = self.registry.get(target)
            owner = deployment_id or device.software.owner_deployment_id
            result = self.rollback.rollback_device(
                target, deployment_id=owner, reason=reason
            )
            if result.status == ROLLED_BACK and owner is not None and self._known(owner):
                with self._deployment_lock(owner):
                    self._mark_rolled_back(self.get_deployment(owner), [result.device_id])
            report = RollbackReport(scope=SCOPE_DEVICE, target=target, results=(result,))
        elif scope == SCOPE_WAVE:
            if deployment_id is None:
                raise ValidationError("Wave rollback needs a deployment id")
            with self._deployment_lock(deployment_id):
                deployment = self.get_deployment(deployment_id)
                wave = deployment.wave(target)
                if wave is None:
                    raise ValidationError(f"Unknown wave {target}")
                report = self._rollback_wave(deployment, wave, reason=reason)
        elif scope == SCOPE_FLEET:
            fleet_id = deployment_id or target
            with self._deployment_lock(fleet_id):
                deployment = self.get_deployment(fleet_id)
                if deployment.terminal:
                    raise PhaseError(f"Deployment {fleet_id} is {deployment.phase}")
                report = self._rollback_fleet(deployment, reason=reason)
        else:
            raise ValidationError(f"Unknown rollback scope: {scope}")
        self.checkpoint()
        return report

    def process_catch_up(self, now: float | None = None) -> list[CatchUpResult]:
        self._require_not_halted()
        results = self.catchup.process_due(self._deploy_catch_up, now=now)
        if results:
            self.checkpoint()
        return results

    def clear_fatal_halt(self, operator: str) -> None:
        self.rollback.clear_fatal_halt(operator)
        self.checkpoint()

    @property
    def halted(self) -> bool:
        return self.rollback.fatal_halt.is_set()

    # -- phases --------------------------------------------------------------

    def _prepare(self, deployment: Deployment) -> PhaseStep:
        now = self._now()
        artifact = deployment.artifact
        excluded: dict[str, str] = {}
        pool: list[Device] = []
        for device in self.registry.query(deployment.target_selector):
            reason = self._target_exclusion(device, artifact, deployment.id)
            if reason:
                excluded[device.id] = reason
                self.audit.record(
                    "device.excluded",
                    reason,
                    device_id=device.id,
                    deployment_id=deployment.id,
                )
                continue
            pool.append(device)
        if excluded:
            logger.warning(
                "Devices excluded from deployment",
                extra={"deployment_id": deployment.id, "count": len(excluded)},
            )

        try:
            selection = select_canary(
                pool,
                deployment.canary,
                now=now,
                score=self.coverage_score,
            )
        except InsufficientCanaryCoverageError as exc:
            self._save(
                replace(
                    deployment,
                    phase=PHASE_ABORTED,
                    excluded=excluded,
                    summary={"reason": str(exc)},
                )
            )
            self._phase_changed(deployment, PHASE_ABORTED, reason="canary_coverage")
            self.checkpoint()
            raise

        canary_ids = set(selection.device_ids)
        remaining = [device.id for device in pool if device.id not in canary_ids]
        waves = plan_waves(remaining, deployment.wave_configs, seed=deployment.seed)
        baselines = capture_baselines(
            pool,
            self.registry.history,
            now=now,
            incidents=self._incident_windows(now),
            group_key=self.group_key,
        )
        updated = self._save(
            replace(
                deployment,
                phase=PHASE_CANARY,
                target_device_ids=tuple(device.id for device in pool),
                excluded=excluded,
                baselines=baselines,
                canary_device_ids=selection.device_ids,
                waves=waves,
            )
        )
        self._phase_changed(deployment, PHASE_CANARY)
        return PhaseStep(updated, ADVANCED)

    def _run_canary(self, deployment: Deployment) -> PhaseStep:
        outcomes = self.deployer.deploy_many(
            deployment.canary_device_ids,
            deployment.artifact,
            deployment_id=deployment.id,
            max_parallelism=self.config.max_parallelism,
            halt=self.rollback.fatal_halt,
        )
        now = self._now()
        bad = sorted(
            device_id
            for device_id, outcome in outcomes.items()
            if outcome.status != OUTCOME_DEPLOYED
        )
        if bad:
            return self._abandon(
                replace(deployment, canary_deployed_at=now),
                reason=f"canary_smoke_test:{','.join(bad)}",
            )
        updated = self._save(
            replace(deployment, phase=PHASE_VERIFY, canary_deployed_at=now)
        )
        self._phase_changed(deployment, PHASE_VERIFY)
        return PhaseStep(updated, ADVANCED)

    def _verify(self, deployment: Deployment) -> PhaseStep:
        now = self._now()
        verdicts = self._verdicts(deployment, deployment.canary_device_ids, now)
        triggers = [
            device_trigger(
                self.registry.get(device_id),
                self.registry.history,
                now=now,
                thresholds=self.trigger_thresholds,
            )
            for device_id in deployment.canary_device_ids
        ]
        failing = sorted(
            item.device_id for item in verdicts.values() if item.verdict == FAIL
        )
        failing.extend(
            item.device_ids[0]
            for item in triggers
            if item is not None and item.device_ids[0] not in failing
        )
        if failing:
            return self._abandon(deployment, reason=f"canary_health:{','.join(failing)}")

        soak_end = (
            (deployment.canary_deployed_at or now)
            + deployment.canary.soak_seconds
            + deployment.canary_extensions * self.config.caution_extension_seconds
        )
        if now < soak_end:
            return PhaseStep(deployment, WAITING_SOAK)

        cautious = sorted(
            item.device_id for item in verdicts.values() if item.verdict == CAUTION
        )
        if cautious:
            if deployment.canary_extensions < self.config.max_caution_extensions:
                updated = self._save(
                    replace(deployment, canary_extensions=deployment.canary_extensions + 1)
                )
                self._log_extension(deployment, "canary", updated.canary_extensions)
                return PhaseStep(updated, WAITING_SOAK, reason="caution")
            return self._abandon(
                deployment, reason=f"canary_caution_cap:{','.join(cautious)}"
            )

        if not deployment.approved:
            return PhaseStep(deployment, WAITING_APPROVAL)
        updated = self._save(replace(deployment, phase=PHASE_ROLLOUT))
        self._phase_changed(deployment, PHASE_ROLLOUT)
        return PhaseStep(updated, ADVANCED)

    def _rollout_step(self, deployment: Deployment) -> PhaseStep:
        if deployment.halted:
            return PhaseStep(deployment, HALTED, reason=deployment.halt_reason)
        wave = next(
            (item for item in deployment.waves if item.status == WAVE_RUNNING),
            None,
        ) or next(
            (item for item in deployment.waves if item.status == WAVE_PENDING),
            None,
        )
        if wave is None:
            updated = self._save(replace(deployment, phase=PHASE_CONFIRM))
            self._phase_changed(deployment, PHASE_CONFIRM)
            return PhaseStep(updated, ADVANCED)
        if wave.status == WAVE_PENDING:
            return self._start_wave(deployment, wave)
        return self._soak_wave(deployment, wave)

    def _start_wave(self, deployment: Deployment, wave: Wave) -> PhaseStep:
        started = self._now()
        logger.info(
            "Wave started",
            extra={
                "deployment_id": deployment.id,
                "wave": wave.name,
                "count": len(wave.device_ids),
            },
        )
        outcomes = self.deployer.deploy_many(
            wave.device_ids,
            deployment.artifact,
            deployment_id=deployment.id,
            max_parallelism=self.config.max_parallelism,
            halt=self.rollback.fatal_halt,
        )
        now = self._now()
        deployed = tuple(
            device_id
            for device_id in wave.device_ids
            if outcomes[device_id].status == OUTCOME_DEPLOYED
        )
        failed = [
            outcome for outcome in outcomes.values() if outcome.status == OUTCOME_FAILED
        ]
        skipped = [outcome for outcome in outcomes.values() if outcome.catch_up]
        for outcome in skipped:
            self.catchup.enqueue(
                outcome.device_id,
                deployment.artifact,
                deployment_id=deployment.id,
                at=now,
            )
        wave = replace(
            wave,
            status=WAVE_RUNNING,
            deployed_count=len(deployed),
            failed_count=len(failed),
            skipped_count=len(outcomes) - len(deployed) - len(failed),
            deployed_device_ids=deployed,
            started_at=started,
            deployed_at=now,
        )
        deployment = replace(
            deployment,
            skipped_device_ids=_merge(
                deployment.skipped_device_ids,
                (outcome.device_id for outcome in skipped),
            ),
        )
        activated_failures = [item.device_id for item in failed if item.activated]

        trigger = wave_failure_trigger(
            wave.name,
            failed=wave.failed_count,
            attempted=wave.deployed_count + wave.failed_count,
            threshold=wave.failure_threshold,
        )
        if trigger is not None:
            deployment = self._replace_wave(deployment, wave)
            self._rollback_wave(
                deployment,
                wave,
                reason=trigger.reason,
                extra_device_ids=activated_failures,
            )
            deployment = self.get_deployment(deployment.id)
            halted = self._halt(deployment, trigger.reason)
            return PhaseStep(halted, HALTED, reason=trigger.reason)

        if activated_failures:
            self._rollback_devices(deployment, activated_failures, reason="deploy_failed")
            deployment = self.get_deployment(deployment.id)
        if not deployed:
            wave = replace(wave, status=WAVE_PASSED)
        updated = self._save(self._replace_wave(deployment, wave))
        return PhaseStep(updated, ADVANCED)

    def _soak_wave(self, deployment: Deployment, wave: Wave) -> PhaseStep:
        now = self._now()
        stamps = _deployed_at(deployment)
        live_ids = sorted(stamps)

        device_triggers = []
        for device_id in live_ids:
            trigger = device_trigger(
                self.registry.get(device_id),
                self.registry.history,
                now=now,
                thresholds=self.trigger_thresholds,
            )
            if trigger is not None:
                device_triggers.append(device_id)
        if device_triggers:
            self._rollback_devices(deployment, device_triggers, reason="immediate_trigger")
            deployment = self.get_deployment(deployment.id)
            wave = deployment.wave(wave.name) or wave
            stamps = _deployed_at(deployment)
            live_ids = sorted(stamps)

        spiking = error_spike_devices(
            [self.registry.get(device_id) for device_id in live_ids],
            self.registry.history,
            deployment.baselines,
            now=now,
            thresholds=self.trigger_thresholds,
            group_key=self.group_key,
        )
        spike = error_spike_trigger(
            spiking,
            current_wave=wave.name,
            current_wave_devices=wave.deployed_device_ids,
        )
        if spike is not None and spike.scope == SCOPE_WAVE:
            self._rollback_wave(deployment, wave, reason=spike.reason)
            halted = self._halt(self.get_deployment(deployment.id), spike.reason)
            return PhaseStep(halted, HALTED, reason=spike.reason)
        if spike is not None:
            self._rollback_fleet(deployment, reason=spike.reason)
            return PhaseStep(self.get_deployment(deployment.id), FINISHED, spike.reason)

        verdicts = self._verdicts(deployment, live_ids, now)
        tracker = self._tracker(deployment.id)
        trending = [
            device_id
            for device_id, verdict in verdicts.items()
            if tracker.observe(device_id, verdict.verdict)
        ]
        trend = trend_trigger(trending)
        if trend is not None:
            self.audit.record(
                "deployment.trend",
                "halt",
                deployment_id=deployment.id,
                detail={"devices": list(trend.device_ids)},
            )
            halted = self._halt(deployment, trend.reason)
            return PhaseStep(halted, HALTED, reason=trend.reason)

        soak_end = (
            (wave.deployed_at or now)
            + wave.soak_seconds
            + wave.soak_extensions * self.config.caution_extension_seconds
        )
        if now < soak_end:
            return PhaseStep(deployment, WAITING_SOAK)

        failing = sorted(
            device_id for device_id, item in verdicts.items() if item.verdict == FAIL
        )
        cautious = sorted(
            device_id for device_id, item in verdicts.items() if item.verdict == CAUTION
        )
        if cautious and not failing:
            if wave.soak_extensions < self.config.max_caution_extensions:
                wave = replace(wave, soak_extensions=wave.soak_extensions + 1)
                updated = self._save(self._replace_wave(deployment, wave))
                self._log_extension(deployment, wave.name, wave.soak_extensions)
                return PhaseStep(updated, WAITING_SOAK, reason="caution")

        unhealthy = sorted(set(failing) | set(cautious))
        in_wave = [item for item in unhealthy if item in wave.deployed_device_ids]
        if in_wave:
            wave = replace(
                wave,
                deployed_count=wave.deployed_count - len(in_wave),
                failed_count=wave.failed_count + len(in_wave),
            )
            deployment = self._replace_wave(deployment, wave)
            trigger = wave_failure_trigger(
                wave.name,
                failed=wave.failed_count,
                attempted=wave.deployed_count + wave.failed_count,
                threshold=wave.failure_threshold,
            )
            if trigger is not None:
                self._rollback_wave(deployment, wave, reason=trigger.reason)
                halted = self._halt(self.get_deployment(deployment.id), trigger.reason)
                return PhaseStep(halted, HALTED, reason=trigger.reason)
        if unhealthy:
            self._rollback_devices(deployment, unhealthy, reason="health_gate")
            deployment = self.get_deployment(deployment.id)
            wave = deployment.wave(wave.name) or wave

        wave = replace(wave, status=WAVE_PASSED)
        updated = self._save(self._replace_wave(deployment, wave))
        self.audit.record(
            "wave.passed",
            "ok",
            deployment_id=deployment.id,
            detail={"wave": wave.name, "deployed": wave.deployed_count},
        )
        logger.info(
            "Wave passed",
            extra={"deployment_id": deployment.id, "wave": wave.name},
        )
        return PhaseStep(updated, ADVANCED)

    def _confirm(self, deployment: Deployment) -> PhaseStep:
        now = self._now()
        stamps = _deployed_at(deployment)
        verdicts = self._verdicts(deployment, sorted(stamps), now)
        failing = sorted(
            device_id for device_id, item in verdicts.items() if item.verdict == FAIL
        )
        if failing:
            self._rollback_devices(deployment, failing, reason="final_health")
            deployment = self.get_deployment(deployment.id)
        self._release_devices(deployment.id)
        stamps = _deployed_at(deployment)
        summary: dict[str, object] = {
            "version": deployment.artifact.version,
            "targets": len(deployment.target_device_ids),
            "excluded": len(deployment.excluded),
            "canary": len(deployment.canary_device_ids),
            "deployed": len(stamps),
            "skipped": len(deployment.skipped_device_ids),
            "rolled_back": len(deployment.rolled_back_device_ids),
            "waves": {wave.name: wave.status for wave in deployment.waves},
            "catch_up_pending": [
                entry.device_id
                for entry in self.catchup.entries()
                if entry.deployment_id == deployment.id
            ],
        }
        updated = self._save(
            replace(deployment, phase=PHASE_COMPLETED, summary=summary)
        )
        self._phase_changed(deployment, PHASE_COMPLETED)
        return PhaseStep(updated, FINISHED)

    # -- rollback plumbing -------------------------------------------------

    def _abandon(self, deployment: Deployment, *, reason: str) -> PhaseStep:
        """Roll back everything already deployed and end the deployment."""
        self._rollback_fleet(deployment, reason=reason)
        return PhaseStep(self.get_deployment(deployment.id), FINISHED, reason=reason)

    def _rollback_fleet(self, deployment: Deployment, *, reason: str) -> RollbackReport:
        targets = _merge(
            deployment.canary_device_ids,
            (item for wave in deployment.waves for item in wave.deployed_device_ids),
        )
        targets = tuple(
            item for item in targets if item not in deployment.rolled_back_device_ids
        )
        report = self.rollback.rollback_fleet(
            targets,
            deployment_id=deployment.id,
            reason=reason,
            expected_version=deployment.artifact.version,
        )
        deployment = self._mark_rolled_back(deployment, report.with_status(ROLLED_BACK))
        waves = tuple(
            replace(wave, status=WAVE_ROLLED_BACK)
            if wave.status in {WAVE_RUNNING, WAVE_PASSED}
            else wave
            for wave in deployment.waves
        )
        self.catchup.drop_deployment(deployment.id)
        self._release_devices(deployment.id)
        self._save(
            replace(
                deployment,
                phase=PHASE_ROLLED_BACK,
                waves=waves,
                halted=False,
                summary={"reason": reason},
            )
        )
        self._phase_changed(deployment, PHASE_ROLLED_BACK, reason=reason)
        return report

    def _rollback_wave(
        self,
        deployment: Deployment,
        wave: Wave,
        *,
        reason: str,
        extra_device_ids: Iterable[str] = (),
    ) -> RollbackReport:
        targets = _merge(wave.deployed_device_ids, extra_device_ids)
        report = self.rollback.rollback_wave(
            wave.name,
            targets,
            deployment_id=deployment.id,
            reason=reason,
            expected_version=deployment.artifact.version,
        )
        deployment = self._mark_rolled_back(deployment, report.with_status(ROLLED_BACK))
        current = deployment.wave(wave.name) or wave
        self._save(
            self._replace_wave(deployment, replace(current, status=WAVE_ROLLED_BACK))
        )
        return report

    def _rollback_devices(
        self,
        deployment: Deployment,
        device_ids: Sequence[str],
        *,
        reason: str,
    ) -> None:
        restored: list[str] = []
        for device_id in device_ids:
            result = self.rollback.rollback_device(
                device_id,
                deployment_id=deployment.id,
                reason=reason,
                expected_version=deployment.artifact.version,
            )
            if result.status == ROLLED_BACK:
                restored.append(device_id)
        self._mark_rolled_back(deployment, restored)

    def _mark_rolled_back(
        self,
        deployment: Deployment,
        device_ids: Iterable[str],
    ) -> Deployment:
        merged = _merge(deployment.rolled_back_device_ids, device_ids)
        return self._save(replace(deployment, rolled_back_device_ids=merged))

    def _halt(self, deployment: Deployment, reason: str) -> Deployment:
        updated = self._save(replace(deployment, halted=True, halt_reason=reason))
        self.audit.record(
            "deployment.halted",
            reason,
            deployment_id=deployment.id,
        )
        logger.warning(
            "Rollout halted pending operator decision",
            extra={"deployment_id": deployment.id, "trigger": reason},
        )
        return updated

    # -- catch-up ----------------------------------------------------------

    def _deploy_catch_up(self, entry: CatchUpEntry) -> DeviceOutcome:
        outcome = self.deployer.deploy_isolated(
            entry.device_id, entry.artifact, deployment_id=entry.deployment_id
        )
        if outcome.status == OUTCOME_FAILED and outcome.activated:
            self.rollback.rollback_device(
                entry.device_id,
                deployment_id=entry.deployment_id,
                reason="catch_up_health",
                expected_version=entry.target_version,
            )
        elif outcome.status == OUTCOME_DEPLOYED:
            owner = entry.deployment_id
            if not self._known(owner) or self.get_deployment(owner).terminal:
                self.registry.release_device(entry.device_id, deployment_id=owner)
        return outcome

    # -- helpers -----------------------------------------------------------

    def _verdicts(
        self,
        deployment: Deployment,
        device_ids: Iterable[str],
        now: float,
    ) -> dict[str, HealthVerdict]:
        stamps = _deployed_at(deployment)
        verdicts: dict[str, HealthVerdict] = {}
        for device_id in device_ids:
            deployed_at = stamps.get(device_id)
            if deployed_at is None:
                continue
            try:
                device = self.registry.get(device_id)
            except DeviceNotFoundError:
                continue
            verdicts[device_id] = self.gate.evaluate(
                device,
                target_version=deployment.artifact.version,
                deployed_at=deployed_at,
                baselines=deployment.baselines,
                now=now,
            )
        non_pass = [item for item in verdicts.values() if item.verdict != PASS]
        if non_pass:
            logger.info(
                "Health gate reported non-passing devices",
                extra={"deployment_id": deployment.id, "count": len(non_pass)},
            )
        return verdicts

    def _target_exclusion(
        self,
        device: Device,
        artifact: Artifact,
        deployment_id: str,
    ) -> str | None:
        if device.status in _NOT_TARGETABLE:
            return f"status_{device.status}"
        owner = device.software.owner_deployment_id
        if owner is not None and owner != deployment_id:
            return "deployment_in_progress"
        try:
            check_compatibility(artifact, device)
            if device.metrics is not None:
                check_disk(artifact, device)
        except ValidationError as exc:
            logger.warning(
                "Device incompatible with artifact",
                extra={
                    "device_id": device.id,
                    "deployment_id": deployment_id,
                    "error_code": type(exc).__name__,
                    "error_message": str(exc),
                },
            )
            if isinstance(exc, InsufficientDiskError):
                return "insufficient_disk"
            return "incompatible"
        return None

    def _incident_windows(self, now: float) -> list[IncidentWindow]:
        """Past rollbacks mark their time as unrepresentative of normal load."""
        windows: list[IncidentWindow] = []
        for deployment in self.deployments():
            if deployment.phase != PHASE_ROLLED_BACK:
                continue
            windows.append(
                IncidentWindow(start=deployment.started_at, end=deployment.updated_at)
            )
        return [item for item in windows if item.start <= now]

    def _release_devices(self, deployment_id: str) -> None:
        for device in self.registry.all():
            software = device.software
            if software.owner_deployment_id != deployment_id or software.in_progress:
                continue
            self.registry.release_device(device.id, deployment_id=deployment_id)

    def _tracker(self, deployment_id: str) -> TrendTracker:
        with self._guard:
            tracker = self._trends.get(deployment_id)
            if tracker is None:
                tracker = TrendTracker(self.trigger_thresholds.trend_consecutive)
                self._trends[deployment_id] = tracker
            return tracker

    def _replace_wave(self, deployment: Deployment, wave: Wave) -> Deployment:
        waves = tuple(wave if item.name == wave.name else item for item in deployment.waves)
        return replace(deployment, waves=waves)

    def _save(self, deployment: Deployment) -> Deployment:
        updated = replace(deployment, updated_at=self._now())
        with self._guard:
            self._deployments[updated.id] = updated
        return updated

    def _device_healthy(self, device_id: str) -> bool:
        try:
            return self.registry.get(device_id).status == HEALTHY
        except DeviceNotFoundError:
            return False

    def _known(self, deployment_id: str) -> bool:
        with self._guard:
            return deployment_id in self._deployments

    def _require_not_halted(self) -> None:
        if self.rollback.fatal_halt.is_set():
            raise FleetHaltedError(
                f"Fleet halted after fatal rollback failure: {self.rollback.halt_reason}"
            )

    def _phase_changed(
        self,
        deployment: Deployment,
        phase: str,
        *,
        reason: str | None = None,
    ) -> None:
        self.audit.record(
            "deployment.phase",
            phase,
            deployment_id=deployment.id,
            detail={"from_phase": deployment.phase, "reason": reason},
        )
        logger.info(
            "Deployment phase changed",
            extra={
                "deployment_id": deployment.id,
                "from_state": deployment.phase,
                "to_state": phase,
                "phase": phase,
                "trigger": reason,
            },
        )

    def _log_extension(self, deployment: Deployment, target: str, count: int) -> None:
        self.audit.record(
            "deployment.soak_extended",
            "caution",
            deployment_id=deployment.id,
            detail={"target": target, "extensions": count},
        )
        logger.warning(
            "Soak extended after caution verdict",
            extra={"deployment_id": deployment.id, "wave": target, "count": count},
        )

    @contextmanager
    def _deployment_lock(self, deployment_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(deployment_id)
        if lock is None:
            raise DeploymentNotFoundError(f"Deployment not found: {deployment_id}")
        with lock:
            yield


def _deployed_at(deployment: Deployment) -> dict[str, float]:
    """Activation time of every device still running the deployment's version."""
    stamps: dict[str, float] = {}
    if deployment.canary_deployed_at is not None:
        for device_id in deployment.canary_device_ids:
            stamps[device_id] = deployment.canary_deployed_at
    for wave in deployment.waves:
        if wave.deployed_at is None or wave.status == WAVE_ROLLED_BACK:
            continue
        for device_id in wave.deployed_device_ids:
            stamps[device_id] = wave.deployed_at
    for device_id in deployment.rolled_back_device_ids:
        stamps.pop(device_id, None)
    return stamps


def _merge(existing: Iterable[str], extra: Iterable[str]) -> tuple[str, ...]:
    merged = list(existing)
    for item in extra:
        if item not in merged:
            merged.append(item)
    return tuple(merged)
