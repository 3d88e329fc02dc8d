from __future__ import annotations

import threading
import time

import pytest

from fleetwave_core.errors import (
    ChecksumMismatchError,
    OperationTimeoutError,
    TransferError,
    ValidationError,
)
from fleetwave_core.fleet import DeviceRegistry
from fleetwave_core.rollout.deployer import DeviceDeployer
from fleetwave_core.rollout.parallel import HALTED, run_bounded
from fleetwave_core.rollout.retry import (
    RetryExhaustedError,
    RetryPolicy,
    call_with_retry,
)
from fleetwave_core.rollout.types import OUTCOME_DEPLOYED, OUTCOME_FAILED, OUTCOME_SKIPPED


@pytest.fixture
def registry(clock, device_factory, metrics_factory):
    registry = DeviceRegistry(now_fn=clock)
    for idx in range(4):
        registry.register(device_factory(f"edge-{idx}"))
        registry.heartbeat(f"edge-{idx}", "healthy", metrics_factory())
    return registry


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def deployer(registry, transport, clock, sleeps):
    return DeviceDeployer(
        registry,
        transport,
        retry=RetryPolicy(max_attempts=3, backoff_s=1.0),
        now_fn=clock,
        sleep_fn=sleeps.append,
    )


@pytest.mark.core
def test_successful_deploy_activates_new_version(deployer, registry, artifact_factory):
    outcome = deployer.deploy("edge-0", artifact_factory(), deployment_id="dep-1")
    assert outcome.status == OUTCOME_DEPLOYED
    assert outcome.activated is True
    assert outcome.attempts == 4
    software = registry.get("edge-0").software
    assert software.current_version == "2.0.0"
    assert software.previous_version == "1.0.0"
    assert software.deploying_version is None
    assert software.owner_deployment_id == "dep-1"


@pytest.mark.core
def test_transient_transfer_errors_are_retried_with_backoff(
    deployer, transport, artifact_factory, sleeps
):
    transport.fail("edge-0", "transfer", TransferError("link down"), times=2)
    outcome = deployer.deploy("edge-0", artifact_factory(), deployment_id="dep-1")
    assert outcome.status == OUTCOME_DEPLOYED
    assert transport.steps_for("edge-0").count("transfer") == 3
    assert sleeps == [1.0, 2.0]


@pytest.mark.core
def test_exhausted_retries_skip_for_catch_up(
    deployer, registry, transport, artifact_factory
):
    transport.fail("edge-0", "transfer", OperationTimeoutError("no answer"))
    outcome = deployer.deploy("edge-0", artifact_factory(), deployment_id="dep-1")
    assert outcome.status == OUTCOME_SKIPPED
    assert outcome.error_code == "unreachable"
    assert outcome.catch_up is True
    assert outcome.attempts == 3
    software = registry.get("edge-0").software
    assert software.current_version == "1.0.0"
    assert software.deploying_version is None
    assert software.owner_deployment_id is None


@pytest.mark.core
def test_validation_errors_are_not_retried(
    deployer, registry, transport, artifact_factory
):
    transport.fail("edge-0", "install", ChecksumMismatchError("image corrupt"))
    outcome = deployer.deploy("edge-0", artifact_factory(), deployment_id="dep-1")
    assert outcome.status == OUTCOME_FAILED
    assert outcome.error_code == "checksum_mismatch"
    assert outcome.activated is False
    assert transport.steps_for("edge-0") == ["transfer", "install"]
    assert registry.get("edge-0").software.current_version == "1.0.0"


@pytest.mark.core
def test_permanent_health_check_error_fails_activated_device(
    deployer, registry, transport, artifact_factory
):
    transport.fail("edge-0", "health_check", ChecksumMismatchError("bad image"))
    outcome = deployer.deploy("edge-0", artifact_factory(), deployment_id="dep-1")
    assert outcome.status == OUTCOME_FAILED
    assert outcome.activated is True
    assert outcome.error_code == "health_check_failed"
    assert transport.steps_for("edge-0").count("health_check") == 1
    software = registry.get("edge-0").software
    assert software.current_version == "2.0.0"
    assert software.owner_deployment_id == "dep-1"


@pytest.mark.core
def test_unexpected_device_error_stays_inside_the_batch(
    deployer, registry, transport, artifact_factory
):
    transport.fail("edge-1", "activate", RuntimeError("agent crashed"))
    transport.fail("edge-2", "health_check", ValidationError("bad health payload"))
    outcomes = deployer.deploy_many(
        ["edge-0", "edge-1", "edge-2", "edge-3"],
        artifact_factory(),
        deployment_id="dep-1",
        max_parallelism=2,
    )
    assert [item.status for item in outcomes.values()] == [
        OUTCOME_DEPLOYED,
        OUTCOME_FAILED,
        OUTCOME_FAILED,
        OUTCOME_DEPLOYED,
    ]
    crashed = outcomes["edge-1"]
    assert crashed.error_code == "runtime"
    assert crashed.activated is False
    software = registry.get("edge-1").software
    assert software.current_version == "1.0.0"
    assert software.deploying_version is None
    assert software.owner_deployment_id is None
    assert outcomes["edge-2"].activated is True


@pytest.mark.core
def test_offline_device_is_skipped_without_contact(
    deployer, registry, transport, artifact_factory, clock
):
    clock.advance(400)
    registry.sweep_offline()
    outcome = deployer.deploy("edge-0", artifact_factory(), deployment_id="dep-1")
    assert outcome.status == OUTCOME_SKIPPED
    assert outcome.catch_up is True
    assert transport.steps_for("edge-0") == []


@pytest.mark.core
def test_incompatible_and_full_devices_fail_before_transfer(
    deployer, registry, transport, artifact_factory, metrics_factory
):
    outcome = deployer.deploy(
        "edge-0", artifact_factory(architecture="x86_64"), deployment_id="dep-1"
    )
    assert outcome.status == OUTCOME_FAILED
    assert outcome.error_code == "compatibility"

    registry.heartbeat("edge-1", "healthy", metrics_factory(disk_free_mb=10.0))
    outcome = deployer.deploy("edge-1", artifact_factory(), deployment_id="dep-1")
    assert outcome.error_code == "insufficient_disk"
    assert transport.calls == []


@pytest.mark.core
def test_unhealthy_after_activation_reports_activated_failure(
    deployer, registry, transport, artifact_factory
):
    transport.mark_unhealthy("edge-0", "2.0.0")
    outcome = deployer.deploy("edge-0", artifact_factory(), deployment_id="dep-1")
    assert outcome.status == OUTCOME_FAILED
    assert outcome.activated is True
    assert outcome.error_code == "health_check_failed"
    assert registry.get("edge-0").software.current_version == "2.0.0"


@pytest.mark.core
def test_device_held_by_other_deployment_is_skipped(
    deployer, registry, artifact_factory
):
    registry.begin_deployment(
        "edge-0", deployment_id="dep-other", version="1.5.0", checksum="sha256:x"
    )
    outcome = deployer.deploy("edge-0", artifact_factory(), deployment_id="dep-1")
    assert outcome.status == OUTCOME_SKIPPED
    assert outcome.error_code == "deployment_in_progress"
    assert registry.get("edge-0").software.owner_deployment_id == "dep-other"


@pytest.mark.core
def test_deploy_many_honours_halt(deployer, transport, artifact_factory):
    halt = threading.Event()
    halt.set()
    outcomes = deployer.deploy_many(
        ["edge-0", "edge-1"],
        artifact_factory(),
        deployment_id="dep-1",
        max_parallelism=2,
        halt=halt,
    )
    assert {item.error_code for item in outcomes.values()} == {"halted"}
    assert transport.calls == []


@pytest.mark.core
def test_deploy_many_isolates_device_failures(deployer, transport, artifact_factory):
    transport.fail("edge-2", "install", ChecksumMismatchError("bad"))
    outcomes = deployer.deploy_many(
        ["edge-0", "edge-1", "edge-2", "edge-3"],
        artifact_factory(),
        deployment_id="dep-1",
        max_parallelism=2,
    )
    assert list(outcomes) == ["edge-0", "edge-1", "edge-2", "edge-3"]
    assert [item.status for item in outcomes.values()] == [
        OUTCOME_DEPLOYED,
        OUTCOME_DEPLOYED,
        OUTCOME_FAILED,
        OUTCOME_DEPLOYED,
    ]


@pytest.mark.core
def test_retry_caps_attempts_and_propagates_permanent_errors():
    calls: list[int] = []

    def flaky() -> None:
        calls.append(1)
        raise TransferError("down")

    with pytest.raises(RetryExhaustedError) as excinfo:
        call_with_retry(
            flaky,
            RetryPolicy(max_attempts=10, backoff_s=0),
            sleep_fn=lambda _: None,
        )
    assert excinfo.value.attempts == 3
    assert len(calls) == 3

    def broken() -> None:
        calls.append(1)
        raise ValidationError("nope")

    calls.clear()
    with pytest.raises(ValidationError):
        call_with_retry(broken, RetryPolicy(), sleep_fn=lambda _: None)
    assert len(calls) == 1


@pytest.mark.core
def test_run_bounded_limits_concurrency():
    active = 0
    peak = 0
    lock = threading.Lock()

    def work(device_id: str) -> str:
        nonlocal active, peak
        with lock:
            active += 1
            peak = max(peak, active)
        time.sleep(0.01)
        with lock:
            active -= 1
        return device_id.upper()

    ids = [f"edge-{idx}" for idx in range(12)]
    results = run_bounded(ids, work, max_parallelism=3)
    assert peak <= 3
    assert list(results) == ids
    assert results["edge-4"] == "EDGE-4"


@pytest.mark.core
def test_run_bounded_marks_unstarted_work_after_halt():
    halt = threading.Event()

    def work(device_id: str) -> str:
        halt.set()
        return device_id

    results = run_bounded(["a", "b", "c"], work, max_parallelism=1, halt=halt)
    assert results["a"] == "a"
    assert results["b"] is HALTED
    assert results["c"] is HALTED
