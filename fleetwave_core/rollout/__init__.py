from fleetwave_core.rollout.canary import CanarySelection, select_canary
from fleetwave_core.rollout.catchup import CatchUpEntry, CatchUpQueue
from fleetwave_core.rollout.deployer import DeviceDeployer, OperationTimeouts
from fleetwave_core.rollout.retry import RetryPolicy, call_with_retry
from fleetwave_core.rollout.transport import DeviceTransport, DryRunTransport
from fleetwave_core.rollout.types import (
    CanaryConfig,
    Deployment,
    DeviceOutcome,
    Wave,
    WaveConfig,
)
from fleetwave_core.rollout.waves import plan_waves

__all__ = [
    "CanaryConfig",
    "CanarySelection",
    "CatchUpEntry",
    "CatchUpQueue",
    "Deployment",
    "DeviceDeployer",
    "DeviceOutcome",
    "DeviceTransport",
    "DryRunTransport",
    "OperationTimeouts",
    "RetryPolicy",
    "Wave",
    "WaveConfig",
    "call_with_retry",
    "plan_waves",
    "select_canary",
]
