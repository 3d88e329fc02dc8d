from __future__ import annotations

import threading
import time
import uuid
from dataclasses import dataclass
from typing import Callable, Iterable

from fleetwave_core.logging import get_logger

logger = get_logger(__name__)


@dataclass(frozen=True)
class AuditEvent:
    id: str
    at: float
    action: str
    outcome: str
    device_id: str | None = None
    deployment_id: str | None = None
    detail: dict[str, object] | None = None


AuditSink = Callable[[Iterable[AuditEvent]], object]


class AuditTrail:
    """Append-only record of transitions, failures and rollback actions."""

    def __init__(
        self,
        sink: AuditSink | None = None,
        now_fn: Callable[[], float] | None = None,
    ) -> None:
        self._events: list[AuditEvent] = []
        self._lock = threading.Lock()
        self._sink = sink
        self._now = now_fn or time.time

    def record(
        self,
        action: str,
        outcome: str,
        *,
        device_id: str | None = None,
        deployment_id: str | None = None,
        detail: dict[str, object] | None = None,
        at: float | None = None,
    ) -> AuditEvent:
        event = AuditEvent(
            id=str(uuid.uuid4()),
            at=self._now() if at is None else at,
            action=action,
            outcome=outcome,
            device_id=device_id,
            deployment_id=deployment_id,
            detail=detail,
        )
        with self._lock:
            self._events.append(event)
            if self._sink is not None:
                self._sink([event])
        logger.debug(
            "Audit event recorded",
            extra={
                "event": action,
                "outcome": outcome,
                "device_id": device_id,
                "deployment_id": deployment_id,
            },
        )
        return event

    def load(self, events: Iterable[AuditEvent]) -> None:
        """Seed the in-memory view with persisted events without re-writing them."""
        with self._lock:
            self._events.extend(events)

    def events(
        self,
        *,
        action: str | None = None,
        device_id: str | None = None,
        deployment_id: str | None = None,
    ) -> list[AuditEvent]:
        with self._lock:
            items = list(self._events)
        if action is not None:
            items = [item for item in items if item.action == action]
        if device_id is not None:
            items = [item for item in items if item.device_id == device_id]
        if deployment_id is not None:
            items = [item for item in items if item.deployment_id == deployment_id]
        return items
