from __future__ import annotations

import json
import threading
from datetime import datetime, timezone
from typing import Any, Iterable

import fsspec

from fleetwave_core.audit import AuditEvent
from fleetwave_core.fleet.types import Device
from fleetwave_core.logging import get_logger
from fleetwave_core.rollout.catchup import CatchUpEntry
from fleetwave_core.rollout.types import Deployment
from fleetwave_core.storage.paths import (
    audit_log_uri,
    catchup_uri,
    deployments_uri,
    devices_uri,
)
from fleetwave_core.stores.codec import (
    audit_from_dict,
    audit_to_dict,
    catchup_from_dict,
    catchup_to_dict,
    deployment_from_dict,
    deployment_to_dict,
    device_from_dict,
    device_to_dict,
)
from fleetwave_core.stores.interfaces import FleetStateStore

logger = get_logger(__name__)


class JsonFleetStateStore(FleetStateStore):
    """Control-plane state as JSON documents on any fsspec filesystem.

    Devices, deployments and catch-up entries are whole-document rewrites
    keyed by id; the audit trail is an append-only JSON-lines file.
    """

    def __init__(self, base_uri: str) -> None:
        self._base_uri = base_uri
        self._lock = threading.Lock()

    @property
    def base_uri(self) -> str:
        return self._base_uri

    def load_devices(self) -> list[Device]:
        items = _load_keyed(devices_uri(self._base_uri), "devices")
        return [device_from_dict(item) for item in items]

    def save_devices(self, devices: Iterable[Device]) -> str:
        return self._save_keyed(
            devices_uri(self._base_uri),
            "devices",
            {device.id: device_to_dict(device) for device in devices},
        )

    def load_deployments(self) -> list[Deployment]:
        items = _load_keyed(deployments_uri(self._base_uri), "deployments")
        return [deployment_from_dict(item) for item in items]

    def save_deployments(self, deployments: Iterable[Deployment]) -> str:
        return self._save_keyed(
            deployments_uri(self._base_uri),
            "deployments",
            {item.id: deployment_to_dict(item) for item in deployments},
        )

    def load_catchup(self) -> list[CatchUpEntry]:
        items = _load_keyed(catchup_uri(self._base_uri), "entries")
        return [catchup_from_dict(item) for item in items]

    def save_catchup(self, entries: Iterable[CatchUpEntry]) -> str:
        return self._save_keyed(
            catchup_uri(self._base_uri),
            "entries",
            {entry.device_id: catchup_to_dict(entry) for entry in entries},
        )

    def append_audit(self, events: Iterable[AuditEvent]) -> str:
        uri = audit_log_uri(self._base_uri)
        lines = [
            json.dumps(audit_to_dict(event), ensure_ascii=True, default=str)
            for event in events
        ]
        if not lines:
            return uri
        fs, path = fsspec.core.url_to_fs(uri)
        with self._lock:
            fs.makedirs(_parent(path), exist_ok=True)
            existing = b""
            if fs.exists(path):
                with fs.open(path, "rb") as handle:
                    existing = handle.read()
            body = "\n".join(lines) + "\n"
            with fs.open(path, "wb") as handle:
                handle.write(existing + body.encode("utf-8"))
        return uri

    def load_audit(self) -> list[AuditEvent]:
        uri = audit_log_uri(self._base_uri)
        fs, path = fsspec.core.url_to_fs(uri)
        if not fs.exists(path):
            return []
        with fs.open(path, "rb") as handle:
            raw = handle.read().decode("utf-8")
        events: list[AuditEvent] = []
        for line in raw.splitlines():
            if not line.strip():
                continue
            try:
                payload = json.loads(line)
            except json.JSONDecodeError:
                logger.warning(
                    "Skipping malformed audit line",
                    extra={"error_message": line[:200]},
                )
                continue
            if isinstance(payload, dict):
                events.append(audit_from_dict(payload))
        return events

    def _save_keyed(
        self,
        uri: str,
        field: str,
        items: dict[str, dict[str, Any]],
    ) -> str:
        fs, path = fsspec.core.url_to_fs(uri)
        payload = {
            "updated_at": datetime.now(timezone.utc).isoformat(),
            field: {key: items[key] for key in sorted(items)},
        }
        with self._lock:
            fs.makedirs(_parent(path), exist_ok=True)
            with fs.open(path, "wb") as handle:
                handle.write(
                    json.dumps(payload, ensure_ascii=True, default=_encode).encode(
                        "utf-8"
                    )
                )
        return uri


def _load_keyed(uri: str, field: str) -> list[dict[str, Any]]:
    fs, path = fsspec.core.url_to_fs(uri)
    if not fs.exists(path):
        return []
    with fs.open(path, "rb") as handle:
        payload = json.loads(handle.read().decode("utf-8"))
    items = payload.get(field, {}) if isinstance(payload, dict) else {}
    if not isinstance(items, dict):
        return []
    return [item for item in items.values() if isinstance(item, dict)]


def _parent(path: str) -> str:
    return "/".join(path.split("/")[:-1])


def _encode(value: object) -> object:
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)

