from __future__ import annotations

import threading
import time
from dataclasses import dataclass, replace
from typing import Callable, Iterable

from fleetwave_core.artifacts import Artifact
from fleetwave_core.audit import AuditTrail
from fleetwave_core.logging import get_logger
from fleetwave_core.rollout.types import OUTCOME_DEPLOYED, DeviceOutcome

logger = get_logger(__name__)


@dataclass(frozen=True)
class CatchUpEntry:
    device_id: str
    target_version: str
    deployment_id: str
    artifact: Artifact
    enqueued_at: float
    attempts: int = 0
    max_attempts: int = 5
    ready_at: float | None = None
    last_error: str | None = None


@dataclass(frozen=True)
class CatchUpResult:
    device_id: str
    deployment_id: str
    target_version: str
    outcome: DeviceOutcome | None
    status: str


CatchUpDeploy = Callable[[CatchUpEntry], DeviceOutcome]


class CatchUpQueue:
    """Devices skipped while unreachable, waiting to be brought to parity.

    One entry per device: a newer enqueue replaces an older one, so only
    the latest version is ever deployed. An entry becomes ready a settle
    delay after the device returns to ``healthy``. When ``reachable_fn``
    reports the device as reachable at enqueue time, or after a failed
    attempt, the settle delay starts right away instead of waiting for a
    return that will not come.
    """

    def __init__(
        self,
        *,
        settle_seconds: float = 600,
        max_attempts: int = 5,
        audit: AuditTrail | None = None,
        now_fn: Callable[[], float] | None = None,
        reachable_fn: Callable[[str], bool] | None = None,
    ) -> None:
        self.settle_seconds = settle_seconds
        self.max_attempts = max_attempts
        self.audit = audit or AuditTrail(now_fn=now_fn)
        self._now = now_fn or time.time
        self._reachable = reachable_fn
        self._entries: dict[str, CatchUpEntry] = {}
        self._investigation: dict[str, CatchUpEntry] = {}
        self._lock = threading.Lock()

    def enqueue(
        self,
        device_id: str,
        artifact: Artifact,
        *,
        deployment_id: str,
        at: float | None = None,
    ) -> CatchUpEntry:
        now = self._now() if at is None else at
        entry = CatchUpEntry(
            device_id=device_id,
            target_version=artifact.version,
            deployment_id=deployment_id,
            artifact=artifact,
            enqueued_at=now,
            max_attempts=self.max_attempts,
            ready_at=self._ready_at(device_id, now),
        )
        with self._lock:
            existing = self._entries.get(device_id)
            if existing is not None and existing.enqueued_at > now:
                return existing
            self._entries[device_id] = entry
            self._investigation.pop(device_id, None)
        if existing is not None:
            logger.info(
                "Catch-up entry collapsed",
                extra={
                    "device_id": device_id,
                    "deployment_id": deployment_id,
                    "target_version": artifact.version,
                },
            )
        self.audit.record(
            "catchup.enqueued",
            "queued",
            device_id=device_id,
            deployment_id=deployment_id,
            detail={
                "version": artifact.version,
                "replaced_version": existing.target_version if existing else None,
            },
            at=now,
        )
        return entry

    def load(self, entries: Iterable[CatchUpEntry]) -> None:
        with self._lock:
            for entry in entries:
                self._entries[entry.device_id] = entry

    def get(self, device_id: str) -> CatchUpEntry | None:
        with self._lock:
            return self._entries.get(device_id)

    def entries(self) -> list[CatchUpEntry]:
        with self._lock:
            items = list(self._entries.values())
        return sorted(items, key=lambda item: item.device_id)

    def investigation(self) -> list[CatchUpEntry]:
        with self._lock:
            items = list(self._investigation.values())
        return sorted(items, key=lambda item: item.device_id)

    def on_device_returned(self, device_id: str, at: float) -> CatchUpEntry | None:
        with self._lock:
            entry = self._entries.get(device_id)
            if entry is None:
                return None
            if entry.ready_at is not None and entry.ready_at <= at + self.settle_seconds:
                return entry
            entry = replace(entry, ready_at=at + self.settle_seconds)
            self._entries[device_id] = entry
        logger.info(
            "Catch-up scheduled",
            extra={"device_id": device_id, "deployment_id": entry.deployment_id},
        )
        return entry

    def drop_deployment(self, deployment_id: str) -> list[str]:
        with self._lock:
            dropped = [
                device_id
                for device_id, entry in self._entries.items()
                if entry.deployment_id == deployment_id
            ]
            for device_id in dropped:
                del self._entries[device_id]
        for device_id in dropped:
            self.audit.record(
                "catchup.dropped",
                "dropped",
                device_id=device_id,
                deployment_id=deployment_id,
            )
        return dropped

    def due(self, now: float | None = None) -> list[CatchUpEntry]:
        now = self._now() if now is None else now
        return [
            entry
            for entry in self.entries()
            if entry.ready_at is not None and entry.ready_at <= now
        ]

    def process_due(
        self,
        deploy: CatchUpDeploy,
        *,
        now: float | None = None,
    ) -> list[CatchUpResult]:
        now = self._now() if now is None else now
        results: list[CatchUpResult] = []
        for entry in self.due(now):
            outcome = deploy(entry)
            results.append(self._settle(entry, outcome, now))
        return results

    def _settle(
        self,
        entry: CatchUpEntry,
        outcome: DeviceOutcome,
        now: float,
    ) -> CatchUpResult:
        retry_at = (
            self._ready_at(entry.device_id, now)
            if outcome.catch_up
            else now + self.settle_seconds
        )
        with self._lock:
            current = self._entries.get(entry.device_id)
            if current is None or current.enqueued_at != entry.enqueued_at:
                status = "superseded"
            elif outcome.status == OUTCOME_DEPLOYED:
                del self._entries[entry.device_id]
                status = "deployed"
            else:
                attempts = current.attempts + 1
                updated = replace(
                    current,
                    attempts=attempts,
                    ready_at=retry_at,
                    last_error=outcome.error,
                )
                if attempts >= current.max_attempts:
                    del self._entries[entry.device_id]
                    self._investigation[entry.device_id] = updated
                    status = "investigation"
                else:
                    self._entries[entry.device_id] = updated
                    status = "retry"
        self.audit.record(
            "catchup.attempt",
            status,
            device_id=entry.device_id,
            deployment_id=entry.deployment_id,
            detail={"version": entry.target_version, "error": outcome.error},
            at=now,
        )
        log = logger.info if status == "deployed" else logger.warning
        log(
            "Catch-up attempt finished",
            extra={
                "device_id": entry.device_id,
                "deployment_id": entry.deployment_id,
                "outcome": status,
            },
        )
        return CatchUpResult(
            device_id=entry.device_id,
            deployment_id=entry.deployment_id,
            target_version=entry.target_version,
            outcome=outcome,
            status=status,
        )

    def _ready_at(self, device_id: str, now: float) -> float | None:
        if self._reachable is not None and self._reachable(device_id):
            return now + self.settle_seconds
        return None
