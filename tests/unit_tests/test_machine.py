import asyncio
import time

import pytest

from rollouts.errors import (
    ConflictError,
    FailureReason,
    IllegalTransitionError,
    LedgerWriteError,
    RolloutNotFoundError,
    RoutingError,
)
from rollouts.ledger import DeploymentLedger
from rollouts.machine import TRANSITIONS, replay
from rollouts.models import ArchivedRolloutError, GroupRole, LedgerEntry, RolloutState
from rollouts.platform import InMemoryComputePlatform, InMemoryLoadBalancer
from tests.fixtures.rollout_fixtures import deploy, wait_until

S = RolloutState


class HalfHealthyPlatform(InMemoryComputePlatform):
    """Only the first target of every group passes its health checks."""

    def probe_health(self, target_id):
        return target_id.endswith("-t0") and super().probe_health(target_id)


class SlowPlatform(InMemoryComputePlatform):
    def provision(self, spec):
        time.sleep(0.2)
        return super().provision(spec)


class HookedLoadBalancer(InMemoryLoadBalancer):
    """Calls ``on_update`` with every weight map the load balancer accepts."""

    def __init__(self, platform, on_update=None, reject_fraction=None):
        super().__init__(platform=platform)
        self.on_update = on_update
        self.reject_fraction = reject_fraction

    def update_weights(self, weights):
        if self.reject_fraction is not None and self.reject_fraction in weights.values():
            self.update_calls.append(dict(weights))
            raise RoutingError(f"Rejected weights {weights}")
        super().update_weights(weights)
        if self.on_update is not None:
            self.on_update(weights)


class BrokenLedger(DeploymentLedger):
    fail_on = None

    def append(self, entry):
        if entry.to_state == self.fail_on:
            raise LedgerWriteError("disk unavailable", rollout_id=entry.rollout_id)
        return super().append(entry)


def states(history):
    """Ledger states with consecutive repeats collapsed."""
    collapsed = []
    for entry in history:
        if not collapsed or collapsed[-1] != entry.to_state:
            collapsed.append(entry.to_state)
    return collapsed


def candidate_fractions(load_balancer, candidate_group_id):
    return [w[candidate_group_id] for w in load_balancer.applied_history if candidate_group_id in w]


async def test_first_deployment_goes_straight_to_full_traffic(machine, load_balancer, compute):
    rollout = await deploy(machine, "svc-a", "v1")

    assert states(machine.history(rollout.id)) == [
        S.REQUESTED, S.PROVISIONING, S.HEALTH_CHECKING, S.SHIFTING, S.DRAINING, S.COMPLETE,
    ]
    assert rollout.active_group_id == rollout.candidate_group_id
    assert load_balancer.get_weights() == {rollout.candidate_group_id: 1.0}
    assert machine.registry.active_group("svc-a").id == rollout.candidate_group_id
    assert rollout.attempts == 1


async def test_complete_ramp_drains_old_group(machine, load_balancer, compute):
    first = await deploy(machine, "svc-a", "v1")
    old_group = first.candidate_group_id

    rollout = await deploy(machine, "svc-a", "v2")
    candidate = rollout.candidate_group_id
    history = machine.history(rollout.id)

    assert states(history) == [
        S.REQUESTED, S.PROVISIONING, S.HEALTH_CHECKING, S.SHIFTING, S.DRAINING, S.COMPLETE,
    ]
    assert [e.detail["traffic_split"] for e in history
            if e.from_state == S.SHIFTING and e.to_state == S.SHIFTING] == [0.1, 0.5]
    assert candidate_fractions(load_balancer, candidate) == [0.1, 0.5, 1.0, 1.0]
    assert len(compute.live_targets(candidate)) == 2
    assert compute.live_targets(old_group) == []
    assert machine.registry.get_group(old_group) is None
    assert machine.registry.get_group(candidate).role == GroupRole.ACTIVE
    assert [t.weight for t in machine.registry.get_group(candidate).targets.values()] == [0.5, 0.5]
    assert load_balancer.get_weights() == {candidate: 1.0}
    assert history[-1].detail["destroyed_group_id"] == old_group


async def test_unhealthy_candidate_rolls_back(machine, load_balancer, compute):
    first = await deploy(machine, "svc-a", "v1")
    compute.set_artifact_health("v2", False)

    rollout = await machine.start("svc-a", "v2")
    rollout = await machine.wait(rollout.id)

    assert states(machine.history(rollout.id)) == [
        S.REQUESTED, S.PROVISIONING, S.HEALTH_CHECKING, S.UNHEALTHY_ROLLBACK, S.ROLLED_BACK,
    ]
    assert rollout.failure_reason == FailureReason.CANDIDATE_UNHEALTHY.value
    assert rollout.traffic_split == 0.0
    assert compute.live_targets(rollout.candidate_group_id) == []
    assert load_balancer.get_weights() == {first.candidate_group_id: 1.0, rollout.candidate_group_id: 0.0}
    assert machine.registry.active_group("svc-a").id == first.candidate_group_id


async def test_mid_shift_health_flip_resets_split_immediately(machine_factory, compute):
    active_ids = []

    def flip_candidate_at_half(weights):
        for group_id, fraction in weights.items():
            if group_id not in active_ids and fraction == 0.5:
                compute.set_group_health(group_id, False)

    load_balancer = HookedLoadBalancer(compute, on_update=flip_candidate_at_half)
    machine = machine_factory(lb=load_balancer, step_bake_seconds=1.0)
    first = await deploy(machine, "svc-a", "v1")
    active_ids.append(first.candidate_group_id)

    rollout = await machine.start("svc-a", "v2")
    rollout = await machine.wait(rollout.id)
    history = machine.history(rollout.id)

    assert states(history) == [
        S.REQUESTED, S.PROVISIONING, S.HEALTH_CHECKING, S.SHIFTING,
        S.SHIFT_FAILED_ROLLBACK, S.ROLLED_BACK,
    ]
    assert [e.detail["traffic_split"] for e in history
            if e.from_state == S.SHIFTING and e.to_state == S.SHIFTING] == [0.1, 0.5]
    assert rollout.failure_reason == FailureReason.CANDIDATE_UNHEALTHY.value
    assert candidate_fractions(load_balancer, rollout.candidate_group_id) == [0.1, 0.5, 0.0]
    assert load_balancer.applied_history[-1] == {first.candidate_group_id: 1.0, rollout.candidate_group_id: 0.0}
    active_weights = [t.weight for t in machine.registry.get_group(first.candidate_group_id).targets.values()]
    assert active_weights == [0.5, 0.5]


async def test_conflict_while_shifting_leaves_rollout_untouched(machine_factory, ledger):
    machine = machine_factory(step_bake_seconds=5.0)
    await deploy(machine, "svc-a", "v1")
    rollout = await machine.start("svc-a", "v2")
    await wait_until(lambda: rollout.state == S.SHIFTING and rollout.traffic_split > 0)

    before = rollout.to_dict()
    entries_before = len(ledger.entries(rollout.id))
    with pytest.raises(ConflictError) as exc_info:
        await machine.start("svc-a", "v3")

    assert exc_info.value.rollout_id == rollout.id
    assert rollout.to_dict() == before
    assert len(ledger.entries(rollout.id)) == entries_before
    assert ledger.rollout_ids("svc-a")[-1] == rollout.id


async def test_restart_mid_health_check_resumes_without_reprovisioning(machine_factory, compute, ledger):
    first_process = machine_factory(unhealthy_threshold=10_000)
    first = await deploy(first_process, "svc-a", "v1")
    compute.set_artifact_health("v2", False)
    rollout = await first_process.start("svc-a", "v2")
    await wait_until(lambda: rollout.state == S.HEALTH_CHECKING)
    await first_process.shutdown()

    compute.set_artifact_health("v2", True)
    second_process = machine_factory()
    [resumed] = await second_process.resume()
    assert resumed.id == rollout.id
    assert resumed.state == S.HEALTH_CHECKING

    resumed = await second_process.wait(rollout.id)

    assert resumed.state == S.COMPLETE
    assert len([spec for spec in compute.provision_calls if spec.artifact_ref == "v2"]) == 1
    assert resumed.candidate_group_id == rollout.candidate_group_id
    assert compute.live_targets(first.candidate_group_id) == []
    for entry in ledger.entries(rollout.id)[1:]:
        assert entry.to_state in TRANSITIONS[entry.from_state]


async def test_concurrent_start_admits_one_rollout(machine):
    results = await asyncio.gather(
        machine.start("svc-a", "v1"),
        machine.start("svc-a", "v1"),
        return_exceptions=True,
    )

    assert sum(isinstance(r, ConflictError) for r in results) == 1
    assert len(machine.in_flight()) == 1


async def test_units_roll_out_independently(machine):
    a = await machine.start("svc-a", "v1")
    b = await machine.start("svc-b", "v1")

    assert (await machine.wait(a.id)).state == S.COMPLETE
    assert (await machine.wait(b.id)).state == S.COMPLETE


async def test_rejected_artifact_fails_provisioning(machine, compute):
    compute.rejected_artifacts.add("v404")

    rollout = await machine.start("svc-a", "v404")
    rollout = await machine.wait(rollout.id)

    assert rollout.state == S.PROVISION_FAILED
    assert rollout.failure_reason == FailureReason.PROVISION_ERROR.value
    assert "v404" in machine.history(rollout.id)[-1].detail["error"]
    assert machine.in_flight() == {}


async def test_health_timeout_rolls_back(machine_factory):
    machine = machine_factory(compute_platform=HalfHealthyPlatform(), lb=InMemoryLoadBalancer(),
                              health_check_timeout_seconds=0.3)

    rollout = await machine.start("svc-a", "v1")
    rollout = await machine.wait(rollout.id)
    history = machine.history(rollout.id)

    assert rollout.state == S.ROLLED_BACK
    assert rollout.failure_reason == FailureReason.HEALTH_TIMEOUT.value
    assert history[-2].to_state == S.UNHEALTHY_ROLLBACK
    assert any(e.from_state == e.to_state == S.HEALTH_CHECKING for e in history)


async def test_routing_error_rolls_back(machine_factory, compute):
    load_balancer = HookedLoadBalancer(compute, reject_fraction=0.5)
    machine = machine_factory(lb=load_balancer)
    first = await deploy(machine, "svc-a", "v1")

    rollout = await machine.start("svc-a", "v2")
    rollout = await machine.wait(rollout.id)

    assert rollout.state == S.ROLLED_BACK
    assert rollout.failure_reason == FailureReason.ROUTING_ERROR.value
    assert load_balancer.get_weights() == {first.candidate_group_id: 1.0, rollout.candidate_group_id: 0.0}
    assert compute.live_targets(rollout.candidate_group_id) == []


async def test_failed_traffic_reset_still_finishes_rollback(machine_factory, compute, ledger):
    active_ids = []

    def break_routing_at_half(weights):
        for group_id, fraction in weights.items():
            if group_id not in active_ids and fraction == 0.5:
                compute.set_group_health(group_id, False)
                load_balancer.reject_next = 1_000

    load_balancer = HookedLoadBalancer(compute, on_update=break_routing_at_half)
    machine = machine_factory(lb=load_balancer, step_bake_seconds=1.0)
    first = await deploy(machine, "svc-a", "v1")
    active_ids.append(first.candidate_group_id)

    rollout = await machine.start("svc-a", "v2")
    rollout = await machine.wait(rollout.id)
    last = machine.history(rollout.id)[-1]

    assert rollout.state == S.ROLLED_BACK
    assert not rollout.halted
    assert rollout.failure_reason == FailureReason.CANDIDATE_UNHEALTHY.value
    assert "rejected" in last.detail["reset_error"]
    assert last.detail["destroyed_group_id"] == rollout.candidate_group_id
    assert compute.live_targets(rollout.candidate_group_id) == []
    assert machine.in_flight() == {}
    assert ledger.unfinished() == []


async def test_cancel_during_shifting_resets_split(machine_factory, load_balancer):
    machine = machine_factory(step_bake_seconds=5.0)
    first = await deploy(machine, "svc-a", "v1")
    rollout = await machine.start("svc-a", "v2")
    await wait_until(lambda: rollout.state == S.SHIFTING and rollout.traffic_split > 0)

    assert machine.cancel(rollout.id) is True
    rollout = await machine.wait(rollout.id)

    assert states(machine.history(rollout.id))[-3:] == [S.SHIFTING, S.SHIFT_FAILED_ROLLBACK, S.ROLLED_BACK]
    assert rollout.failure_reason == FailureReason.CANCELLED.value
    assert rollout.traffic_split == 0.0
    assert load_balancer.get_weights() == {first.candidate_group_id: 1.0, rollout.candidate_group_id: 0.0}
    assert machine.registry.active_group("svc-a").id == first.candidate_group_id


async def test_restart_mid_shift_continues_from_live_split(machine_factory, compute, load_balancer, ledger):
    first_process = machine_factory(step_bake_seconds=5.0)
    await deploy(first_process, "svc-a", "v1")
    rollout = await first_process.start("svc-a", "v2")
    await wait_until(lambda: rollout.state == S.SHIFTING and rollout.traffic_split == 0.1)
    await first_process.shutdown()

    second_process = machine_factory()
    [resumed] = await second_process.resume()
    assert resumed.state == S.SHIFTING
    assert resumed.traffic_split == 0.1

    resumed = await second_process.wait(rollout.id)
    history = ledger.entries(rollout.id)

    assert resumed.state == S.COMPLETE
    assert candidate_fractions(load_balancer, rollout.candidate_group_id) == [0.1, 0.5, 1.0, 1.0]
    assert [e.detail["traffic_split"] for e in history
            if e.from_state == S.SHIFTING and e.to_state == S.SHIFTING] == [0.1, 0.5]
    assert len([spec for spec in compute.provision_calls if spec.artifact_ref == "v2"]) == 1


async def test_cancel_during_health_check(machine_factory, compute):
    machine = machine_factory(healthy_threshold=10_000)
    rollout = await machine.start("svc-a", "v1")
    await wait_until(lambda: rollout.state == S.HEALTH_CHECKING)

    assert machine.cancel(rollout.id) is True
    rollout = await machine.wait(rollout.id)

    assert rollout.state == S.ROLLED_BACK
    assert rollout.failure_reason == FailureReason.CANCELLED.value
    assert compute.live_targets(rollout.candidate_group_id) == []


async def test_cancel_is_queued_during_provisioning(machine_factory):
    machine = machine_factory(compute_platform=SlowPlatform(), lb=InMemoryLoadBalancer())
    rollout = await machine.start("svc-a", "v1")

    assert machine.cancel(rollout.id) is True
    rollout = await machine.wait(rollout.id)

    assert states(machine.history(rollout.id)) == [
        S.REQUESTED, S.PROVISIONING, S.HEALTH_CHECKING, S.UNHEALTHY_ROLLBACK, S.ROLLED_BACK,
    ]
    assert rollout.failure_reason == FailureReason.CANCELLED.value


async def test_cancel_is_refused_after_completion(machine):
    rollout = await deploy(machine, "svc-a", "v1")

    assert machine.cancel(rollout.id) is False
    with pytest.raises(RolloutNotFoundError):
        machine.cancel("ro-missing")


async def test_ledger_outage_halts_rollout(machine_factory, settings):
    ledger = BrokenLedger(settings.ledger_db_path)
    ledger.fail_on = S.HEALTH_CHECKING
    machine = machine_factory(ledger_=ledger)

    rollout = await machine.start("svc-a", "v1")
    with pytest.raises(LedgerWriteError):
        await machine.wait(rollout.id)

    assert rollout.halted
    assert rollout.state == S.PROVISIONING
    assert ledger.last_entry("svc-a").to_state == S.PROVISIONING
    with pytest.raises(ConflictError):
        await machine.start("svc-a", "v2")


async def test_terminal_rollouts_are_archived(machine):
    rollout = await deploy(machine, "svc-a", "v1")

    with pytest.raises(ArchivedRolloutError):
        rollout.traffic_split = 0.5


async def test_ramp_splits_never_decrease(machine, ledger):
    await deploy(machine, "svc-a", "v1")
    rollout = await deploy(machine, "svc-a", "v2")

    splits = [e.detail["traffic_split"] for e in ledger.entries(rollout.id) if "traffic_split" in e.detail]
    assert splits == sorted(splits)


async def test_replay_rebuilds_completed_rollout(machine, ledger):
    rollout = await deploy(machine, "svc-a", "v1")

    rebuilt = replay(ledger.entries(rollout.id))

    assert rebuilt.state == S.COMPLETE
    assert rebuilt.archived
    assert rebuilt.candidate_group_id == rollout.candidate_group_id
    assert rebuilt.traffic_split == 1.0
    assert rebuilt.artifact_ref == "v1"


def test_replay_rejects_illegal_jumps():
    entries = [
        LedgerEntry("ro-1", "svc-a", None, S.REQUESTED),
        LedgerEntry("ro-1", "svc-a", S.REQUESTED, S.SHIFTING),
    ]

    with pytest.raises(IllegalTransitionError):
        replay(entries)


def test_replay_rejects_broken_chains():
    entries = [
        LedgerEntry("ro-1", "svc-a", None, S.REQUESTED),
        LedgerEntry("ro-1", "svc-a", S.REQUESTED, S.PROVISIONING),
        LedgerEntry("ro-1", "svc-a", S.HEALTH_CHECKING, S.SHIFTING),
    ]

    with pytest.raises(IllegalTransitionError):
        replay(entries)


async def test_status_reports_candidate_health(machine):
    rollout = await deploy(machine, "svc-a", "v1")

    status = machine.status(rollout.id)

    assert status["state"] == "COMPLETE"
    assert status["traffic_split"] == 1.0
    assert status["candidate_health"] in ("HEALTHY", "DEGRADED", "UNHEALTHY")
