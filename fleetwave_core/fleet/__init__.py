from fleetwave_core.fleet.heartbeat import (
    HeartbeatIngestor,
    OfflineSweeper,
    parse_heartbeat,
    parse_metrics,
)
from fleetwave_core.fleet.registry import DeviceRegistry
from fleetwave_core.fleet.tags import compile_selector
from fleetwave_core.fleet.types import (
    Device,
    HardwareDescriptor,
    Heartbeat,
    MetricsSnapshot,
    SoftwareDescriptor,
    TransitionRecord,
)

__all__ = [
    "Device",
    "DeviceRegistry",
    "HardwareDescriptor",
    "Heartbeat",
    "HeartbeatIngestor",
    "MetricsSnapshot",
    "OfflineSweeper",
    "SoftwareDescriptor",
    "TransitionRecord",
    "compile_selector",
    "parse_heartbeat",
    "parse_metrics",
]
