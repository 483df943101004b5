import pytest

from rollouts.errors import ProvisionError
from rollouts.models import GroupRole, HealthStatus
from rollouts.platform import InMemoryComputePlatform
from rollouts.registry import TargetRegistry


@pytest.fixture
def registry(compute, settings):
    return TargetRegistry(compute, settings)


def test_create_group_provisions_unknown_targets(registry, compute):
    group = registry.create_group("svc-a", "v1", 2)

    assert group.role == GroupRole.CANDIDATE
    assert len(group.targets) == 2
    assert all(t.health_status == HealthStatus.UNKNOWN for t in group.targets.values())
    assert sorted(compute.live_targets(group.id)) == group.target_ids


def test_create_group_is_idempotent_per_group_id(registry, compute):
    first = registry.create_group("svc-a", "v1", 2, group_id="grp-fixed")
    second = registry.create_group("svc-a", "v1", 2, group_id="grp-fixed")

    assert first is second
    assert len(compute.provision_calls) == 1


def test_rejected_artifact_raises_provision_error(settings):
    registry = TargetRegistry(InMemoryComputePlatform(rejected_artifacts=["v404"]), settings)

    with pytest.raises(ProvisionError):
        registry.create_group("svc-a", "v404", 2)

    assert registry.list_groups("svc-a") == []


def test_capacity_quota_raises_provision_error(settings):
    registry = TargetRegistry(InMemoryComputePlatform(capacity=3), settings)
    registry.create_group("svc-a", "v1", 2)

    with pytest.raises(ProvisionError, match="Capacity"):
        registry.create_group("svc-a", "v2", 2)


def test_transient_failures_are_retried(registry, compute):
    compute.transient_failures = 2

    group = registry.create_group("svc-a", "v1", 2)

    assert len(group.targets) == 2
    assert len(compute.provision_calls) == 3


def test_exhausted_retries_surface_as_provision_error(registry, compute):
    compute.transient_failures = 10

    with pytest.raises(ProvisionError, match="kept failing"):
        registry.create_group("svc-a", "v1", 2)


def test_destroy_group_twice_is_a_no_op(registry, compute):
    group = registry.create_group("svc-a", "v1", 2)

    registry.destroy_group(group.id)
    registry.destroy_group(group.id)

    assert registry.get_group(group.id) is None
    assert registry.is_destroyed(group.id)
    assert compute.live_targets(group.id) == []
    assert all(t.health_status == HealthStatus.DRAINING for t in group.targets.values())


def test_destroy_unknown_group_is_a_no_op(registry):
    registry.destroy_group("grp-missing")


def test_list_groups_oldest_first(registry):
    blue = registry.create_group("svc-a", "v1", 1, role=GroupRole.ACTIVE)
    green = registry.create_group("svc-a", "v2", 1)
    registry.create_group("svc-b", "v1", 1)

    assert [g.id for g in registry.list_groups("svc-a")] == [blue.id, green.id]
    assert registry.active_group("svc-a") is blue


def test_adopt_group_does_not_provision(registry, compute):
    group = registry.create_group("svc-a", "v1", 2)
    fresh = TargetRegistry(compute)

    adopted = fresh.adopt_group(group.snapshot(), GroupRole.ACTIVE)

    assert adopted.id == group.id
    assert adopted.target_ids == group.target_ids
    assert adopted.role == GroupRole.ACTIVE
    assert len(compute.provision_calls) == 1


def test_adopted_group_is_live_on_a_fresh_platform(registry, settings):
    group = registry.create_group("svc-a", "v1", 2)
    platform = InMemoryComputePlatform()
    fresh = TargetRegistry(platform, settings)

    fresh.adopt_group(group.snapshot(), GroupRole.ACTIVE)

    assert sorted(platform.live_targets(group.id)) == group.target_ids
    assert all(platform.probe_health(tid) for tid in group.target_ids)
    assert platform.provision_calls == []

    fresh.destroy_group(group.id)

    assert platform.live_targets(group.id) == []


def test_set_traffic_spreads_fraction_over_targets(registry):
    group = registry.create_group("svc-a", "v1", 4)
    assert all(t.weight == 0.0 for t in group.targets.values())

    registry.set_traffic(group.id, 0.5)

    assert [t.weight for t in group.targets.values()] == [0.125] * 4
    registry.set_traffic("grp-missing", 1.0)


def test_set_role(registry):
    group = registry.create_group("svc-a", "v1", 1)

    registry.set_role(group.id, GroupRole.ACTIVE)

    assert registry.active_group("svc-a").id == group.id
    with pytest.raises(KeyError):
        registry.set_role("grp-missing", GroupRole.ACTIVE)
