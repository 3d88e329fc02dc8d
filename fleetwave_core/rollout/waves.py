from __future__ import annotations

import random
import time
from typing import Iterable, Sequence

from fleetwave_core.errors import ValidationError
from fleetwave_core.rollout.types import Wave, WaveConfig


def time_seed(now: float | None = None) -> int:
    return int((now if now is not None else time.time()) * 1000)


def normalize_wave_configs(configs: Sequence[WaveConfig] | None) -> tuple[WaveConfig, ...]:
    if not configs:
        raise ValidationError("At least one wave is required")
    seen: set[str] = set()
    cleaned: list[WaveConfig] = []
    for config in configs:
        name = config.name.strip()
        if not name:
            raise ValidationError("Wave name must not be empty")
        if name in seen:
            raise ValidationError(f"Duplicate wave name: {name}")
        if not 1 <= config.percent <= 100:
            raise ValidationError(f"Wave {name} percent must be between 1 and 100")
        if config.soak_seconds < 0:
            raise ValidationError(f"Wave {name} soak must be >= 0")
        if not 0.0 <= config.failure_threshold <= 1.0:
            raise ValidationError(f"Wave {name} failure threshold must be in [0, 1]")
        seen.add(name)
        cleaned.append(config)
    return tuple(cleaned)


def shuffled_pool(device_ids: Iterable[str], seed: int) -> list[str]:
    ids = sorted(set(device_ids))
    random.Random(seed).shuffle(ids)
    return ids


def plan_waves(
    device_ids: Iterable[str],
    configs: Sequence[WaveConfig],
    *,
    seed: int,
) -> tuple[Wave, ...]:
    """Split the pool into waves in declaration order.

    Each wave takes ``ceil(unassigned * percent / 100)`` devices from a
    seeded shuffle; the last wave takes whatever is left.
    """
    waves_config = normalize_wave_configs(configs)
    ids = shuffled_pool(device_ids, seed)
    waves: list[Wave] = []
    cursor = 0
    for idx, config in enumerate(waves_config):
        remaining = len(ids) - cursor
        if idx == len(waves_config) - 1:
            take = remaining
        else:
            take = min(remaining, -(-(remaining * config.percent) // 100))
        waves.append(
            Wave(
                name=config.name,
                percent=config.percent,
                device_ids=tuple(ids[cursor : cursor + take]),
                soak_seconds=config.soak_seconds,
                failure_threshold=config.failure_threshold,
            )
        )
        cursor += take
    return tuple(waves)
