from fleetwave_core.stores.interfaces import FleetStateStore
from fleetwave_core.stores.json_store import JsonFleetStateStore
from fleetwave_core.stores.registry import get_state_store

__all__ = ["FleetStateStore", "JsonFleetStateStore", "get_state_store"]
