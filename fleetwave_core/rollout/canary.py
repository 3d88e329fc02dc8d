from __future__ import annotations

from dataclasses import dataclass
from typing import Callable, Iterable

from fleetwave_core.errors import InsufficientCanaryCoverageError, ValidationError
from fleetwave_core.fleet.states import HEALTHY, MAINTENANCE, QUARANTINED
from fleetwave_core.fleet.types import Device
from fleetwave_core.logging import get_logger
from fleetwave_core.rollout.types import CanaryConfig

logger = get_logger(__name__)

CONNECTIVITY_WINDOW_SECONDS = 24 * 3600

CoverageScore = Callable[[Device], float]
ExclusionPredicate = Callable[[Device], "str | None"]


def default_coverage_score(device: Device) -> float:
    metadata = device.metadata or {}
    try:
        return float(metadata.get("monitoring_coverage", 0.0))  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return 0.0


@dataclass(frozen=True)
class CanarySelection:
    device_ids: tuple[str, ...]
    hardware_types: tuple[str, ...]
    regions: tuple[str, ...]
    excluded: dict[str, str]


def canary_exclusion_reason(
    device: Device,
    *,
    now: float,
    connectivity_window_seconds: float = CONNECTIVITY_WINDOW_SECONDS,
) -> str | None:
    metadata = device.metadata or {}
    if device.status == MAINTENANCE:
        return "maintenance"
    if device.status == QUARANTINED or "quarantined" in device.tags:
        return "quarantined"
    if "spof" in device.tags or metadata.get("single_point_of_failure") is True:
        return "single_point_of_failure"
    if (
        device.last_offline_at is not None
        and now - device.last_offline_at < connectivity_window_seconds
    ):
        return "connectivity_troubled"
    if device.status != HEALTHY:
        return f"status_{device.status}"
    return None


def select_canary(
    pool: Iterable[Device],
    config: CanaryConfig,
    *,
    now: float,
    hardware_types: Iterable[str] | None = None,
    regions: Iterable[str] | None = None,
    score: CoverageScore = default_coverage_score,
    exclusions: Iterable[ExclusionPredicate] = (),
    connectivity_window_seconds: float = CONNECTIVITY_WINDOW_SECONDS,
) -> CanarySelection:
    """Pick a small, representative, reproducible canary set.

    One device per hardware type, then one per region not yet covered, each
    the best-scoring eligible device with the lowest id breaking ties. The
    result is clamped to ``[min_devices, max_devices]``.
    """
    if config.min_devices < 1 or config.max_devices < config.min_devices:
        raise ValidationError("Canary size bounds must satisfy 1 <= min <= max")
    devices = sorted(pool, key=lambda item: item.id)
    extra = list(exclusions)
    excluded: dict[str, str] = {}
    eligible: list[Device] = []
    for device in devices:
        reason = canary_exclusion_reason(
            device, now=now, connectivity_window_seconds=connectivity_window_seconds
        )
        if reason is None:
            for predicate in extra:
                reason = predicate(device)
                if reason:
                    break
        if reason:
            excluded[device.id] = reason
        else:
            eligible.append(device)

    if len(eligible) < config.min_devices:
        raise InsufficientCanaryCoverageError(
            f"Only {len(eligible)} eligible canary devices, need {config.min_devices}"
        )

    type_set = sorted(
        set(hardware_types)
        if hardware_types is not None
        else {device.hardware.hardware_type for device in devices}
    )
    region_set = sorted(
        set(regions)
        if regions is not None
        else {device.region for device in devices if device.region}
    )
    ranked = sorted(eligible, key=lambda item: (-score(item), item.id))

    selected: list[Device] = []
    chosen: set[str] = set()
    for hardware_type in type_set:
        pick = next(
            (
                item for item in ranked
                if item.hardware.hardware_type == hardware_type and item.id not in chosen
            ),
            None,
        )
        if pick is None:
            logger.warning(
                "No eligible canary for hardware type",
                extra={"status": hardware_type},
            )
            continue
        selected.append(pick)
        chosen.add(pick.id)

    for region in region_set:
        if any(item.region == region for item in selected):
            continue
        pick = next(
            (item for item in ranked if item.region == region and item.id not in chosen),
            None,
        )
        if pick is None:
            logger.warning(
                "No eligible canary for region",
                extra={"status": region},
            )
            continue
        selected.append(pick)
        chosen.add(pick.id)

    if len(selected) > config.max_devices:
        logger.warning(
            "Canary coverage truncated to max size",
            extra={"count": len(selected)},
        )
        selected = selected[: config.max_devices]
    for item in ranked:
        if len(selected) >= config.min_devices:
            break
        if item.id not in chosen:
            selected.append(item)
            chosen.add(item.id)

    return CanarySelection(
        device_ids=tuple(item.id for item in selected),
        hardware_types=tuple(type_set),
        regions=tuple(region_set),
        excluded=excluded,
    )
