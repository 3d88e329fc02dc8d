from __future__ import annotations

import threading
import time
from contextlib import contextmanager
from dataclasses import replace
from typing import Callable, Iterable, Iterator

from fleetwave_core.audit import AuditTrail
from fleetwave_core.errors import (
    DeploymentInProgressError,
    DeviceNotFoundError,
    DeviceUnavailableError,
    DuplicateIdError,
)
from fleetwave_core.fleet.states import (
    DEPLOYABLE_STATES,
    HEARTBEAT_TIMEOUT,
    HEALTHY,
    OFFLINE,
    PROVISIONING,
    SWEEPABLE_STATES,
    event_for_status,
    next_state,
)
from fleetwave_core.fleet.tags import compile_selector
from fleetwave_core.fleet.types import (
    Device,
    MetricsSnapshot,
    TransitionRecord,
)
from fleetwave_core.health.history import MetricsHistory
from fleetwave_core.logging import get_logger

logger = get_logger(__name__)

ReturnListener = Callable[[str, float], None]


class DeviceRegistry:
    """Authoritative device store.

    Every mutation runs under the lock of the device it touches, so
    heartbeat-driven and deployment-driven updates to one device are
    serialized while unrelated devices proceed independently. Callers only
    ever see frozen ``Device`` snapshots.
    """

    def __init__(
        self,
        *,
        heartbeat_timeout_seconds: float = 300,
        history: MetricsHistory | None = None,
        audit: AuditTrail | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self.heartbeat_timeout_seconds = heartbeat_timeout_seconds
        self.history = history or MetricsHistory()
        self.audit = audit or AuditTrail(now_fn=now_fn)
        self._now = now_fn or time.time
        self._devices: dict[str, Device] = {}
        self._locks: dict[str, threading.RLock] = {}
        self._guard = threading.Lock()
        self._transitions: list[TransitionRecord] = []
        self._transitions_lock = threading.Lock()
        self._return_listeners: list[ReturnListener] = []
        # Devices that went offline and have not been healthy since.
        self._awaiting_return: set[str] = set()

    # -- registration and lookup -------------------------------------------

    def register(self, device: Device) -> Device:
        now = self._now()
        record = replace(
            device,
            status=PROVISIONING,
            created_at=now,
            updated_at=now,
        )
        with self._guard:
            if device.id in self._devices:
                raise DuplicateIdError(f"Device already registered: {device.id}")
            self._devices[device.id] = record
            self._locks[device.id] = threading.RLock()
        self.audit.record("device.registered", "ok", device_id=device.id, at=now)
        logger.info(
            "Device registered",
            extra={"device_id": device.id, "status": record.status},
        )
        return record

    def load(self, devices: Iterable[Device]) -> None:
        """Restore persisted records verbatim, replacing nothing that exists."""
        with self._guard:
            for device in devices:
                if device.id in self._devices:
                    raise DuplicateIdError(f"Device already registered: {device.id}")
                self._devices[device.id] = device
                self._locks[device.id] = threading.RLock()
                if device.status == OFFLINE:
                    self._awaiting_return.add(device.id)

    def get(self, device_id: str) -> Device:
        with self._guard:
            device = self._devices.get(device_id)
        if device is None:
            raise DeviceNotFoundError(f"Device not found: {device_id}")
        return device

    def contains(self, device_id: str) -> bool:
        with self._guard:
            return device_id in self._devices

    def all(self) -> list[Device]:
        with self._guard:
            devices = list(self._devices.values())
        return sorted(devices, key=lambda item: item.id)

    def query(self, tag_expression: str) -> list[Device]:
        predicate = compile_selector(tag_expression)
        return [device for device in self.all() if predicate(device.implicit_tags())]

    # -- lifecycle ---------------------------------------------------------

    def add_return_listener(self, listener: ReturnListener) -> None:
        self._return_listeners.append(listener)

    def transition(
        self,
        device_id: str,
        event: str,
        *,
        at: float | None = None,
    ) -> Device:
        now = self._now() if at is None else at
        with self._device_lock(device_id):
            current = self.get(device_id)
            updated = self._apply_event(current, event, now)
        return updated

    def heartbeat(
        self,
        device_id: str,
        status: str,
        metrics: MetricsSnapshot,
        *,
        at: float | None = None,
    ) -> Device:
        now = self._now() if at is None else at
        event = event_for_status(status)
        returned = False
        with self._device_lock(device_id):
            current = self.get(device_id)
            # Validate before touching anything so decommissioned devices stay untouched.
            next_state(current.status, event)
            if current.last_heartbeat_at is not None and now < current.last_heartbeat_at:
                logger.info(
                    "Stale heartbeat ignored",
                    extra={"device_id": device_id, "event": event},
                )
                return current
            self.history.record(device_id, now, metrics)
            refreshed = replace(
                current,
                last_heartbeat_at=now,
                metrics=metrics,
                updated_at=now,
            )
            self._store(refreshed)
            updated = self._apply_event(refreshed, event, now)
            if updated.status == HEALTHY:
                with self._guard:
                    returned = device_id in self._awaiting_return
                    self._awaiting_return.discard(device_id)
        if returned:
            for listener in list(self._return_listeners):
                listener(device_id, now)
        return updated

    def sweep_offline(self, now: float | None = None) -> list[str]:
        """Move devices whose heartbeat has aged out to offline."""
        now = self._now() if now is None else now
        moved: list[str] = []
        for device in self.all():
            if device.status not in SWEEPABLE_STATES:
                continue
            with self._device_lock(device.id):
                current = self.get(device.id)
                if current.status not in SWEEPABLE_STATES:
                    continue
                last_seen = current.last_heartbeat_at
                if last_seen is None:
                    last_seen = current.created_at
                if now - last_seen <= self.heartbeat_timeout_seconds:
                    continue
                self._apply_event(current, HEARTBEAT_TIMEOUT, now)
                moved.append(current.id)
        if moved:
            logger.info(
                "Offline sweep moved devices",
                extra={"count": len(moved)},
            )
        return moved

    def transitions(self, device_id: str | None = None) -> list[TransitionRecord]:
        with self._transitions_lock:
            items = list(self._transitions)
        if device_id is None:
            return items
        return [item for item in items if item.device_id == device_id]

    # -- software descriptor -----------------------------------------------

    def begin_deployment(
        self,
        device_id: str,
        *,
        deployment_id: str,
        version: str,
        checksum: str,
    ) -> Device:
        with self._device_lock(device_id):
            current = self.get(device_id)
            if current.status not in DEPLOYABLE_STATES:
                raise DeviceUnavailableError(
                    f"Device {device_id} is {current.status}, not deployable"
                )
            software = current.software
            if software.in_progress:
                raise DeploymentInProgressError(
                    f"Device {device_id} already has a deployment in flight"
                )
            owner = software.owner_deployment_id
            if owner is not None and owner != deployment_id:
                raise DeploymentInProgressError(
                    f"Device {device_id} is held by deployment {owner}"
                )
            updated = replace(
                current,
                software=replace(
                    software,
                    deploying_version=version,
                    deploying_checksum=checksum,
                    owner_deployment_id=deployment_id,
                ),
                updated_at=self._now(),
            )
            self._store(updated)
        return updated

    def complete_deployment(self, device_id: str, *, deployment_id: str) -> Device:
        with self._device_lock(device_id):
            current = self.get(device_id)
            software = current.software
            self._require_owner(current, deployment_id)
            if not software.in_progress:
                raise DeploymentInProgressError(
                    f"Device {device_id} has no deployment in flight"
                )
            if software.current_version == software.deploying_version:
                previous_version = software.previous_version
                previous_checksum = software.previous_checksum
                slot = software.slot
            else:
                previous_version = software.current_version
                previous_checksum = software.current_checksum
                slot = _other_slot(software.slot)
            updated = replace(
                current,
                software=replace(
                    software,
                    current_version=software.deploying_version,
                    current_checksum=software.deploying_checksum,
                    previous_version=previous_version,
                    previous_checksum=previous_checksum,
                    slot=slot,
                    deploying_version=None,
                    deploying_checksum=None,
                ),
                updated_at=self._now(),
            )
            self._store(updated)
        self.audit.record(
            "device.deployed",
            "ok",
            device_id=device_id,
            deployment_id=deployment_id,
            detail={"version": updated.software.current_version},
        )
        return updated

    def abort_deployment(self, device_id: str, *, deployment_id: str) -> Device:
        with self._device_lock(device_id):
            current = self.get(device_id)
            self._require_owner(current, deployment_id)
            updated = replace(
                current,
                software=replace(
                    current.software,
                    deploying_version=None,
                    deploying_checksum=None,
                    owner_deployment_id=None,
                ),
                updated_at=self._now(),
            )
            self._store(updated)
        return updated

    def restore_previous(self, device_id: str) -> Device:
        with self._device_lock(device_id):
            current = self.get(device_id)
            software = current.software
            updated = replace(
                current,
                software=replace(
                    software,
                    current_version=software.previous_version,
                    current_checksum=software.previous_checksum,
                    slot=_other_slot(software.slot),
                    deploying_version=None,
                    deploying_checksum=None,
                    owner_deployment_id=None,
                ),
                updated_at=self._now(),
            )
            self._store(updated)
        return updated

    def release_device(self, device_id: str, *, deployment_id: str) -> Device:
        with self._device_lock(device_id):
            current = self.get(device_id)
            if current.software.owner_deployment_id != deployment_id:
                return current
            if current.software.in_progress:
                raise DeploymentInProgressError(
                    f"Device {device_id} still has a deployment in flight"
                )
            updated = replace(
                current,
                software=replace(current.software, owner_deployment_id=None),
                updated_at=self._now(),
            )
            self._store(updated)
        return updated

    def set_metadata(self, device_id: str, metadata: dict[str, object]) -> Device:
        with self._device_lock(device_id):
            current = self.get(device_id)
            merged = dict(current.metadata or {})
            merged.update(metadata)
            updated = replace(current, metadata=merged, updated_at=self._now())
            self._store(updated)
        return updated

    # -- internals ---------------------------------------------------------

    @contextmanager
    def _device_lock(self, device_id: str) -> Iterator[None]:
        with self._guard:
            lock = self._locks.get(device_id)
        if lock is None:
            raise DeviceNotFoundError(f"Device not found: {device_id}")
        with lock:
            yield

    def _store(self, device: Device) -> None:
        with self._guard:
            self._devices[device.id] = device

    def _apply_event(self, current: Device, event: str, now: float) -> Device:
        target = next_state(current.status, event)
        if target == current.status:
            return current
        updated = replace(current, status=target, updated_at=now)
        if target == OFFLINE:
            updated = replace(updated, last_offline_at=now)
            with self._guard:
                self._awaiting_return.add(current.id)
        self._store(updated)
        record = TransitionRecord(
            device_id=current.id,
            event=event,
            from_state=current.status,
            to_state=target,
            at=now,
        )
        with self._transitions_lock:
            self._transitions.append(record)
        self.audit.record(
            "device.transition",
            target,
            device_id=current.id,
            detail={"event": event, "from_state": current.status, "to_state": target},
            at=now,
        )
        logger.info(
            "Device transitioned",
            extra={
                "device_id": current.id,
                "event": event,
                "from_state": current.status,
                "to_state": target,
            },
        )
        return updated

    @staticmethod
    def _require_owner(device: Device, deployment_id: str) -> None:
        owner = device.software.owner_deployment_id
        if owner != deployment_id:
            raise DeploymentInProgressError(
                f"Device {device.id} is held by deployment {owner}, not {deployment_id}"
            )


def _other_slot(slot: str) -> str:
    return "b" if slot == "a" else "a"
