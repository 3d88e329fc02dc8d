from fleetwave_core.health.baseline import (
    Baseline,
    IncidentWindow,
    capture_baselines,
    default_group_key,
)
from fleetwave_core.health.gate import (
    CAUTION,
    FAIL,
    IMMEDIATE,
    PASS,
    SHORT_TERM,
    SOAK,
    GateThresholds,
    HealthGateEvaluator,
    HealthVerdict,
)
from fleetwave_core.health.history import MetricSample, MetricsHistory

__all__ = [
    "CAUTION",
    "FAIL",
    "IMMEDIATE",
    "PASS",
    "SHORT_TERM",
    "SOAK",
    "Baseline",
    "GateThresholds",
    "HealthGateEvaluator",
    "HealthVerdict",
    "IncidentWindow",
    "MetricSample",
    "MetricsHistory",
    "capture_baselines",
    "default_group_key",
]
