from __future__ import annotations

import threading
from concurrent.futures import ThreadPoolExecutor, as_completed
from typing import Callable, Sequence, TypeVar

T = TypeVar("T")

HALTED = object()


def run_bounded(
    device_ids: Sequence[str],
    fn: Callable[[str], T],
    *,
    max_parallelism: int,
    halt: threading.Event | None = None,
) -> dict[str, T | object]:
    """Apply ``fn`` to every device with at most ``max_parallelism`` in flight.

    Once ``halt`` is set no new call starts; devices that never started map
    to ``HALTED``. Calls already running finish normally.
    """
    if not device_ids:
        return {}

    def _guarded(device_id: str) -> T | object:
        if halt is not None and halt.is_set():
            return HALTED
        return fn(device_id)

    results: dict[str, T | object] = {}
    max_workers = max(1, min(max_parallelism, len(device_ids)))
    with ThreadPoolExecutor(max_workers=max_workers) as executor:
        future_map = {
            executor.submit(_guarded, device_id): device_id
            for device_id in device_ids
        }
        for future in as_completed(future_map):
            results[future_map[future]] = future.result()
    return {device_id: results[device_id] for device_id in device_ids}
