"""Device lifecycle states, events and the transition table.

The table is the single definition of legal lifecycle edges. Anything not
listed raises ``InvalidTransitionError``; ``decommissioned`` has no outgoing
edges at all.
"""

from __future__ import annotations

from fleetwave_core.errors import InvalidTransitionError, ValidationError

PROVISIONING = "provisioning"
HEALTHY = "healthy"
DEGRADED = "degraded"
FAILED = "failed"
OFFLINE = "offline"
MAINTENANCE = "maintenance"
QUARANTINED = "quarantined"
DECOMMISSIONED = "decommissioned"

STATES: tuple[str, ...] = (
    PROVISIONING,
    HEALTHY,
    DEGRADED,
    FAILED,
    OFFLINE,
    MAINTENANCE,
    QUARANTINED,
    DECOMMISSIONED,
)

HEALTH_OK = "health_ok"
HEALTH_DEGRADED = "health_degraded"
HEALTH_FAILED = "health_failed"
HEARTBEAT_TIMEOUT = "heartbeat_timeout"
ENTER_MAINTENANCE = "enter_maintenance"
EXIT_MAINTENANCE = "exit_maintenance"
QUARANTINE = "quarantine"
RELEASE = "release"
DECOMMISSION = "decommission"

EVENTS: tuple[str, ...] = (
    HEALTH_OK,
    HEALTH_DEGRADED,
    HEALTH_FAILED,
    HEARTBEAT_TIMEOUT,
    ENTER_MAINTENANCE,
    EXIT_MAINTENANCE,
    QUARANTINE,
    RELEASE,
    DECOMMISSION,
)

DEPLOYABLE_STATES: frozenset[str] = frozenset({HEALTHY, DEGRADED})
# Heartbeat age is only tracked for states the sweep may move to offline.
SWEEPABLE_STATES: frozenset[str] = frozenset(
    {PROVISIONING, HEALTHY, DEGRADED, FAILED}
)

_REPORTING: dict[str, str] = {
    HEALTH_OK: HEALTHY,
    HEALTH_DEGRADED: DEGRADED,
    HEALTH_FAILED: FAILED,
    HEARTBEAT_TIMEOUT: OFFLINE,
    ENTER_MAINTENANCE: MAINTENANCE,
    QUARANTINE: QUARANTINED,
    DECOMMISSION: DECOMMISSIONED,
}

TRANSITIONS: dict[tuple[str, str], str] = {}
for _state in (PROVISIONING, HEALTHY, DEGRADED, FAILED, OFFLINE):
    for _event, _target in _REPORTING.items():
        TRANSITIONS[(_state, _event)] = _target
TRANSITIONS.update(
    {
        (MAINTENANCE, HEALTH_OK): MAINTENANCE,
        (MAINTENANCE, HEALTH_DEGRADED): MAINTENANCE,
        (MAINTENANCE, HEALTH_FAILED): MAINTENANCE,
        (MAINTENANCE, EXIT_MAINTENANCE): HEALTHY,
        (MAINTENANCE, QUARANTINE): QUARANTINED,
        (MAINTENANCE, DECOMMISSION): DECOMMISSIONED,
        (QUARANTINED, HEALTH_OK): QUARANTINED,
        (QUARANTINED, HEALTH_DEGRADED): QUARANTINED,
        (QUARANTINED, HEALTH_FAILED): QUARANTINED,
        (QUARANTINED, RELEASE): MAINTENANCE,
        (QUARANTINED, DECOMMISSION): DECOMMISSIONED,
    }
)
del _state, _event, _target

_STATUS_EVENTS: dict[str, str] = {
    HEALTHY: HEALTH_OK,
    "ok": HEALTH_OK,
    DEGRADED: HEALTH_DEGRADED,
    FAILED: HEALTH_FAILED,
}


def next_state(state: str, event: str) -> str:
    try:
        return TRANSITIONS[(state, event)]
    except KeyError:
        raise InvalidTransitionError(
            f"Event {event!r} is not legal from state {state!r}"
        ) from None


def is_legal(state: str, event: str) -> bool:
    return (state, event) in TRANSITIONS


def event_for_status(status: str) -> str:
    """Map a reported heartbeat status onto a lifecycle event."""
    key = status.strip().lower()
    try:
        return _STATUS_EVENTS[key]
    except KeyError:
        raise ValidationError(f"Unsupported heartbeat status: {status}") from None
