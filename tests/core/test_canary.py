from __future__ import annotations

from dataclasses import replace

import pytest

from fleetwave_core.errors import InsufficientCanaryCoverageError, ValidationError
from fleetwave_core.rollout.canary import canary_exclusion_reason, select_canary
from fleetwave_core.rollout.types import CanaryConfig

NOW = 1_700_000_000.0


@pytest.fixture
def healthy(device_factory):
    def _build(device_id: str, **kwargs):
        status = kwargs.pop("status", "healthy")
        last_offline_at = kwargs.pop("last_offline_at", None)
        return replace(
            device_factory(device_id, **kwargs),
            status=status,
            last_offline_at=last_offline_at,
        )

    return _build


def _mixed_fleet(healthy, count: int = 40):
    return [
        healthy(
            f"edge-{idx:03d}",
            hardware_type="gw-100" if idx % 2 else "cam-7",
            region="us-east" if idx < count // 2 else "eu-west",
        )
        for idx in range(count)
    ]


@pytest.mark.core
def test_canary_covers_types_and_regions(healthy):
    fleet = _mixed_fleet(healthy)
    selection = select_canary(fleet, CanaryConfig(min_devices=1, max_devices=5), now=NOW)
    chosen = [device for device in fleet if device.id in selection.device_ids]
    assert 2 <= len(selection.device_ids) <= 4
    assert {device.hardware.hardware_type for device in chosen} == {"gw-100", "cam-7"}
    assert {device.region for device in chosen} == {"us-east", "eu-west"}
    assert selection.device_ids == ("edge-000", "edge-001", "edge-020")


@pytest.mark.core
def test_canary_is_deterministic(healthy):
    fleet = _mixed_fleet(healthy)
    config = CanaryConfig(min_devices=1, max_devices=5)
    first = select_canary(fleet, config, now=NOW)
    second = select_canary(list(reversed(fleet)), config, now=NOW)
    assert first == second


@pytest.mark.core
def test_coverage_score_beats_lowest_id(healthy):
    fleet = _mixed_fleet(healthy, count=10)
    fleet[7] = replace(fleet[7], metadata={"monitoring_coverage": 0.9})
    selection = select_canary(fleet, CanaryConfig(min_devices=1, max_devices=5), now=NOW)
    assert "edge-007" in selection.device_ids
    assert "edge-001" not in selection.device_ids


@pytest.mark.core
def test_injected_score(healthy):
    fleet = _mixed_fleet(healthy, count=10)
    selection = select_canary(
        fleet,
        CanaryConfig(min_devices=1, max_devices=5),
        now=NOW,
        score=lambda device: float(device.id[-1]),
    )
    assert selection.device_ids[:2] == ("edge-008", "edge-009")


@pytest.mark.core
def test_exclusion_reasons(healthy):
    cases = {
        "maintenance": healthy("a", status="maintenance"),
        "quarantined": healthy("b", tags=("quarantined",)),
        "single_point_of_failure": healthy("c", tags=("spof",)),
        "connectivity_troubled": healthy("d", last_offline_at=NOW - 3600),
        "status_degraded": healthy("e", status="degraded"),
    }
    for reason, device in cases.items():
        assert canary_exclusion_reason(device, now=NOW) == reason
    flagged = healthy("f", metadata={"single_point_of_failure": True})
    assert canary_exclusion_reason(flagged, now=NOW) == "single_point_of_failure"
    recovered = healthy("g", last_offline_at=NOW - 90_000)
    assert canary_exclusion_reason(recovered, now=NOW) is None


@pytest.mark.core
def test_excluded_devices_never_selected(healthy):
    fleet = [
        healthy("edge-1", tags=("spof",)),
        healthy("edge-2", status="maintenance"),
        healthy("edge-3"),
    ]
    selection = select_canary(fleet, CanaryConfig(min_devices=1, max_devices=3), now=NOW)
    assert selection.device_ids == ("edge-3",)
    assert selection.excluded == {
        "edge-1": "single_point_of_failure",
        "edge-2": "maintenance",
    }


@pytest.mark.core
def test_insufficient_coverage(healthy):
    fleet = [healthy("edge-1"), healthy("edge-2", tags=("spof",))]
    with pytest.raises(InsufficientCanaryCoverageError):
        select_canary(fleet, CanaryConfig(min_devices=2, max_devices=3), now=NOW)


@pytest.mark.core
def test_clamped_to_max_and_filled_to_min(healthy):
    fleet = [
        healthy(f"edge-{idx}", hardware_type=f"hw-{idx}", region=None)
        for idx in range(6)
    ]
    truncated = select_canary(fleet, CanaryConfig(min_devices=1, max_devices=3), now=NOW)
    assert len(truncated.device_ids) == 3

    uniform = [healthy(f"edge-{idx}") for idx in range(6)]
    filled = select_canary(uniform, CanaryConfig(min_devices=4, max_devices=5), now=NOW)
    assert filled.device_ids == ("edge-0", "edge-1", "edge-2", "edge-3")


@pytest.mark.core
def test_invalid_bounds(healthy):
    with pytest.raises(ValidationError):
        select_canary([healthy("edge-1")], CanaryConfig(min_devices=3, max_devices=2), now=NOW)
