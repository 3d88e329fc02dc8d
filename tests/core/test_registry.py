from __future__ import annotations

import threading
from dataclasses import FrozenInstanceError, replace

import pytest

from fleetwave_core.errors import (
    DeploymentInProgressError,
    DeviceNotFoundError,
    DeviceUnavailableError,
    DuplicateIdError,
    InvalidTransitionError,
)
from fleetwave_core.fleet import DeviceRegistry
from fleetwave_core.fleet.states import (
    DECOMMISSION,
    DECOMMISSIONED,
    DEGRADED,
    ENTER_MAINTENANCE,
    HEALTH_OK,
    HEALTHY,
    OFFLINE,
    PROVISIONING,
    QUARANTINE,
    QUARANTINED,
    RELEASE,
)


@pytest.fixture
def registry(clock):
    return DeviceRegistry(heartbeat_timeout_seconds=300, now_fn=clock)


@pytest.mark.core
def test_register_rejects_duplicate_ids(registry, device_factory):
    device = registry.register(device_factory("edge-1"))
    assert device.status == PROVISIONING
    with pytest.raises(DuplicateIdError):
        registry.register(device_factory("edge-1"))


@pytest.mark.core
def test_get_unknown_device(registry):
    with pytest.raises(DeviceNotFoundError):
        registry.get("missing")


@pytest.mark.core
def test_snapshots_are_frozen(registry, device_factory):
    device = registry.register(device_factory("edge-1"))
    with pytest.raises(FrozenInstanceError):
        device.status = HEALTHY  # type: ignore[misc]


@pytest.mark.core
def test_heartbeat_drives_transitions(registry, device_factory, metrics_factory, clock):
    registry.register(device_factory("edge-1"))
    device = registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert device.status == HEALTHY
    assert device.last_heartbeat_at == clock.now
    device = registry.heartbeat("edge-1", "degraded", metrics_factory(cpu_percent=95.0))
    assert device.status == DEGRADED
    assert device.metrics.cpu_percent == 95.0
    assert [item.to_state for item in registry.transitions("edge-1")] == [
        HEALTHY,
        DEGRADED,
    ]


@pytest.mark.core
def test_self_loops_are_not_recorded(registry, device_factory, metrics_factory):
    registry.register(device_factory("edge-1"))
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert len(registry.transitions("edge-1")) == 1


@pytest.mark.core
def test_decommissioned_device_rejects_heartbeats(
    registry, device_factory, metrics_factory
):
    registry.register(device_factory("edge-1"))
    registry.transition("edge-1", DECOMMISSION)
    with pytest.raises(InvalidTransitionError):
        registry.heartbeat("edge-1", "healthy", metrics_factory())
    device = registry.get("edge-1")
    assert device.status == DECOMMISSIONED
    assert device.last_heartbeat_at is None
    assert registry.history.samples("edge-1") == []


@pytest.mark.core
def test_quarantine_release_goes_to_maintenance(registry, device_factory):
    registry.register(device_factory("edge-1"))
    registry.transition("edge-1", QUARANTINE)
    assert registry.transition("edge-1", HEALTH_OK).status == QUARANTINED
    assert registry.transition("edge-1", RELEASE).status == "maintenance"


@pytest.mark.core
def test_stale_heartbeat_does_not_rewind_state(
    registry, device_factory, metrics_factory, clock
):
    registry.register(device_factory("edge-1"))
    registry.heartbeat("edge-1", "healthy", metrics_factory(), at=clock.now)
    device = registry.heartbeat(
        "edge-1", "failed", metrics_factory(), at=clock.now - 60
    )
    assert device.status == HEALTHY
    assert device.last_heartbeat_at == clock.now


@pytest.mark.core
def test_stale_heartbeat_stays_out_of_history(
    registry, device_factory, metrics_factory, clock
):
    registry.register(device_factory("edge-1"))
    registry.heartbeat("edge-1", "healthy", metrics_factory(), at=clock.now)
    registry.heartbeat(
        "edge-1", "healthy", metrics_factory(error_count=50), at=clock.now - 60
    )
    samples = registry.history.samples("edge-1")
    assert [sample.at for sample in samples] == [clock.now]
    assert samples[0].metrics.error_count == 0


@pytest.mark.core
def test_sweep_is_the_only_path_to_offline(
    registry, device_factory, metrics_factory, clock
):
    registry.register(device_factory("edge-1"))
    registry.register(device_factory("edge-2"))
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    registry.heartbeat("edge-2", "healthy", metrics_factory())
    clock.advance(200)
    registry.heartbeat("edge-2", "healthy", metrics_factory())
    clock.advance(200)
    assert registry.get("edge-1").status == HEALTHY
    assert registry.sweep_offline() == ["edge-1"]
    device = registry.get("edge-1")
    assert device.status == OFFLINE
    assert device.last_offline_at == clock.now
    assert registry.get("edge-2").status == HEALTHY


@pytest.mark.core
def test_sweep_skips_maintenance(registry, device_factory, clock):
    registry.register(device_factory("edge-1"))
    registry.transition("edge-1", ENTER_MAINTENANCE)
    clock.advance(10_000)
    assert registry.sweep_offline() == []


@pytest.mark.core
def test_return_from_offline_notifies_listeners(
    registry, device_factory, metrics_factory, clock
):
    returned: list[tuple[str, float]] = []
    registry.add_return_listener(lambda device_id, at: returned.append((device_id, at)))
    registry.register(device_factory("edge-1"))
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert returned == []
    registry.heartbeat("edge-1", "degraded", metrics_factory())
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert returned == []

    clock.advance(400)
    registry.sweep_offline()
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert returned == [("edge-1", clock.now)]
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert returned == [("edge-1", clock.now)]


@pytest.mark.core
def test_return_through_degraded_notifies_once_healthy(
    registry, device_factory, metrics_factory, clock
):
    returned: list[tuple[str, float]] = []
    registry.add_return_listener(lambda device_id, at: returned.append((device_id, at)))
    registry.register(device_factory("edge-1"))
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    clock.advance(400)
    registry.sweep_offline()

    clock.advance(50)
    registry.heartbeat("edge-1", "degraded", metrics_factory())
    assert registry.get("edge-1").status == DEGRADED
    assert returned == []
    clock.advance(60)
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert returned == [("edge-1", clock.now)]
    registry.heartbeat("edge-1", "degraded", metrics_factory())
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert len(returned) == 1


@pytest.mark.core
def test_restored_offline_device_notifies_on_return(
    device_factory, metrics_factory, clock
):
    registry = DeviceRegistry(now_fn=clock)
    offline = replace(device_factory("edge-1"), status=OFFLINE, last_heartbeat_at=clock.now)
    registry.load([offline])
    returned: list[str] = []
    registry.add_return_listener(lambda device_id, at: returned.append(device_id))
    clock.advance(10)
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert returned == ["edge-1"]


@pytest.mark.core
def test_deployment_ownership_is_exclusive(registry, device_factory, metrics_factory):
    registry.register(device_factory("edge-1"))
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    registry.begin_deployment(
        "edge-1", deployment_id="dep-a", version="2.0.0", checksum="sha256:x"
    )
    with pytest.raises(DeploymentInProgressError):
        registry.begin_deployment(
            "edge-1", deployment_id="dep-b", version="3.0.0", checksum="sha256:y"
        )
    device = registry.complete_deployment("edge-1", deployment_id="dep-a")
    software = device.software
    assert software.current_version == "2.0.0"
    assert software.previous_version == "1.0.0"
    assert software.slot == "b"
    assert software.owner_deployment_id == "dep-a"
    with pytest.raises(DeploymentInProgressError):
        registry.begin_deployment(
            "edge-1", deployment_id="dep-b", version="3.0.0", checksum="sha256:y"
        )
    registry.release_device("edge-1", deployment_id="dep-a")
    device = registry.begin_deployment(
        "edge-1", deployment_id="dep-b", version="3.0.0", checksum="sha256:y"
    )
    assert device.software.previous_version == "1.0.0"
    assert device.software.deploying_version == "3.0.0"


@pytest.mark.core
def test_redeploying_same_version_keeps_rollback_target(
    registry, device_factory, metrics_factory
):
    registry.register(device_factory("edge-1"))
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    for _ in range(2):
        registry.begin_deployment(
            "edge-1", deployment_id="dep-a", version="2.0.0", checksum="sha256:x"
        )
        device = registry.complete_deployment("edge-1", deployment_id="dep-a")
    assert device.software.previous_version == "1.0.0"
    assert device.software.slot == "b"


@pytest.mark.core
def test_begin_deployment_requires_deployable_state(registry, device_factory):
    registry.register(device_factory("edge-1"))
    with pytest.raises(DeviceUnavailableError):
        registry.begin_deployment(
            "edge-1", deployment_id="dep-a", version="2.0.0", checksum="sha256:x"
        )


@pytest.mark.core
def test_concurrent_heartbeats_serialize_per_device(
    registry, device_factory, metrics_factory
):
    ids = [f"edge-{idx}" for idx in range(8)]
    for device_id in ids:
        registry.register(device_factory(device_id))

    def _beat(device_id: str) -> None:
        for idx in range(50):
            registry.heartbeat(
                device_id,
                "healthy" if idx % 2 else "degraded",
                metrics_factory(),
            )

    threads = [threading.Thread(target=_beat, args=(item,)) for item in ids]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    for device_id in ids:
        assert registry.get(device_id).status == HEALTHY
        assert len(registry.history.samples(device_id)) == 50
