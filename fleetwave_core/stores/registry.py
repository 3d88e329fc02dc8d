from __future__ import annotations

import os

from fleetwave_core.stores.interfaces import FleetStateStore
from fleetwave_core.stores.json_store import JsonFleetStateStore


def get_state_store(base_uri: str) -> FleetStateStore:
    backend = os.getenv("CONTROL_PLANE_STORE", "json").strip().lower()
    if backend != "json":
        raise ValueError(f"Unsupported control-plane store backend: {backend}")
    return JsonFleetStateStore(base_uri)
