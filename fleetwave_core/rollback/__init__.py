from fleetwave_core.rollback.controller import (
    DeviceRollbackResult,
    RollbackController,
    RollbackReport,
)
from fleetwave_core.rollback.triggers import (
    RollbackTrigger,
    TrendTracker,
    TriggerThresholds,
    device_trigger,
    error_spike_devices,
    error_spike_trigger,
    trend_trigger,
    wave_failure_trigger,
)

__all__ = [
    "DeviceRollbackResult",
    "RollbackController",
    "RollbackReport",
    "RollbackTrigger",
    "TrendTracker",
    "TriggerThresholds",
    "device_trigger",
    "error_spike_devices",
    "error_spike_trigger",
    "trend_trigger",
    "wave_failure_trigger",
]
