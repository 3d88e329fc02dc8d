from __future__ import annotations

from typing import Iterable, Protocol

from fleetwave_core.audit import AuditEvent
from fleetwave_core.fleet.types import Device
from fleetwave_core.rollout.catchup import CatchUpEntry
from fleetwave_core.rollout.types import Deployment


class FleetStateStore(Protocol):
    def load_devices(self) -> list[Device]:
        ...

    def save_devices(self, devices: Iterable[Device]) -> str:
        ...

    def load_deployments(self) -> list[Deployment]:
        ...

    def save_deployments(self, deployments: Iterable[Deployment]) -> str:
        ...

    def load_catchup(self) -> list[CatchUpEntry]:
        ...

    def save_catchup(self, entries: Iterable[CatchUpEntry]) -> str:
        ...

    def append_audit(self, events: Iterable[AuditEvent]) -> str:
        ...

    def load_audit(self) -> list[AuditEvent]:
        ...
