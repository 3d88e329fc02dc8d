from __future__ import annotations

import pytest

from fleetwave_core.errors import TagExpressionError
from fleetwave_core.fleet import DeviceRegistry
from fleetwave_core.fleet.tags import compile_selector, matches

TAGS = frozenset({"prod", "lidar", "arch:arm64", "region:eu-west"})


@pytest.mark.core
@pytest.mark.parametrize(
    ("expression", "expected"),
    [
        ("prod", True),
        ("PROD", True),
        ("staging", False),
        ("prod AND lidar", True),
        ("prod and staging", False),
        ("staging OR lidar", True),
        ("NOT staging", True),
        ("!prod", False),
        ("prod && !(staging || canary)", True),
        ("(prod OR staging) AND region:eu-west", True),
        ("prod AND NOT lidar OR arch:arm64", True),
        ("prod AND NOT (lidar OR arch:arm64)", False),
        ("*", True),
    ],
)
def test_selector_evaluation(expression, expected):
    assert matches(expression, TAGS) is expected


@pytest.mark.core
def test_and_binds_tighter_than_or():
    predicate = compile_selector("a OR b AND c")
    assert predicate(frozenset({"a"}))
    assert not predicate(frozenset({"b"}))
    assert predicate(frozenset({"b", "c"}))


@pytest.mark.core
@pytest.mark.parametrize(
    "expression",
    ["", "   ", "prod AND", "(prod", "prod)", "AND prod", "prod OR OR lidar", "NOT"],
)
def test_malformed_expressions(expression):
    with pytest.raises(TagExpressionError):
        compile_selector(expression)


@pytest.mark.core
def test_query_uses_implicit_tags(clock, device_factory, metrics_factory):
    registry = DeviceRegistry(now_fn=clock)
    registry.register(
        device_factory("edge-1", hardware_type="gw-100", region="us-east", tags=("prod",))
    )
    registry.register(
        device_factory(
            "edge-2",
            hardware_type="cam-7",
            region="eu-west",
            capabilities=("gpu",),
            tags=("prod",),
        )
    )
    registry.register(device_factory("edge-3", architecture="x86_64"))
    registry.heartbeat("edge-2", "healthy", metrics_factory())

    def ids(expression: str) -> list[str]:
        return [device.id for device in registry.query(expression)]

    assert ids("prod") == ["edge-1", "edge-2"]
    assert ids("hw:cam-7 OR arch:x86_64") == ["edge-2", "edge-3"]
    assert ids("cap:gpu AND region:eu-west") == ["edge-2"]
    assert ids("status:provisioning AND NOT prod") == ["edge-3"]
    assert ids("status:healthy") == ["edge-2"]
    assert ids("*") == ["edge-1", "edge-2", "edge-3"]


@pytest.mark.core
def test_query_reflects_current_state(clock, device_factory, metrics_factory):
    registry = DeviceRegistry(now_fn=clock)
    registry.register(device_factory("edge-1"))
    assert registry.query("status:healthy") == []
    registry.heartbeat("edge-1", "healthy", metrics_factory())
    assert [device.id for device in registry.query("status:healthy")] == ["edge-1"]
