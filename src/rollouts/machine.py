"""
Rollout State Machine.

The control loop that decides when to provision, shift or abort. Each
in-flight rollout is driven by exactly one asyncio task; every transition is
written to the deployment ledger before it is applied in memory, so the
ledger can always rebuild the rollout and a ledger outage halts the rollout
instead of letting it run unaudited.
"""
import asyncio
import functools
import logging
from concurrent.futures import Executor, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterable, List, Optional, Set

from .errors import (
    ConflictError,
    FailureReason,
    HealthTimeoutError,
    IllegalTransitionError,
    ProvisionError,
    RolloutNotFoundError,
    RoutingError,
)
from .ledger import DeploymentLedger
from .models import (
    AggregateHealth,
    GroupRole,
    LedgerEntry,
    Rollout,
    RolloutState,
    TargetGroup,
    utcnow,
)
from .platform import PlatformFactory
from .platform.base import ComputePlatform, LoadBalancer
from .prober import HealthProber
from .registry import TargetRegistry, new_group_id
from .settings import Settings, get_settings
from .shifter import SPLIT_TOLERANCE, TrafficShifter

logger = logging.getLogger(__name__)

S = RolloutState

TRANSITIONS: Dict[Optional[RolloutState], Set[RolloutState]] = {
    None: {S.REQUESTED},
    S.REQUESTED: {S.PROVISIONING},
    S.PROVISIONING: {S.PROVISION_FAILED, S.HEALTH_CHECKING},
    S.HEALTH_CHECKING: {S.HEALTH_CHECKING, S.UNHEALTHY_ROLLBACK, S.SHIFTING},
    S.SHIFTING: {S.SHIFTING, S.SHIFT_FAILED_ROLLBACK, S.DRAINING},
    S.DRAINING: {S.COMPLETE},
    S.UNHEALTHY_ROLLBACK: {S.ROLLED_BACK},
    S.SHIFT_FAILED_ROLLBACK: {S.ROLLED_BACK},
    S.PROVISION_FAILED: set(),
    S.COMPLETE: set(),
    S.ROLLED_BACK: set(),
}

# Cancellation is honored in HEALTH_CHECKING / SHIFTING and queued before that
CANCELLABLE_STATES = frozenset({S.REQUESTED, S.PROVISIONING, S.HEALTH_CHECKING, S.SHIFTING})

# Ledger detail keys that carry rollout fields
REPLAYED_FIELDS = ("candidate_group_id", "active_group_id", "traffic_split", "failure_reason")


def check_transition(from_state: Optional[RolloutState], to_state: RolloutState,
                     rollout_id: Optional[str] = None) -> None:
    if to_state not in TRANSITIONS.get(from_state, set()):
        label = from_state.value if from_state else "None"
        raise IllegalTransitionError(
            f"Illegal transition {label} -> {to_state.value}",
            rollout_id=rollout_id,
            state=label,
        )


def replay(entries: Iterable[LedgerEntry]) -> Rollout:
    """Rebuild a rollout from its ledger entries.

    Raises:
        IllegalTransitionError: the entries skip a state or make a jump the
            state machine does not allow
        RolloutNotFoundError: there are no entries
    """
    entries = list(entries)
    if not entries:
        raise RolloutNotFoundError("No ledger entries to replay")

    first = entries[0]
    check_transition(first.from_state, first.to_state, first.rollout_id)
    rollout = Rollout(
        unit_id=first.unit_id,
        artifact_ref=first.detail.get("artifact_ref", ""),
        id=first.rollout_id,
        target_count=first.detail.get("target_count", 0),
        started_at=first.timestamp,
        last_transition_at=first.timestamp,
        phase_started_at=first.timestamp,
    )

    for entry in entries[1:]:
        if entry.from_state != rollout.state:
            raise IllegalTransitionError(
                f"Ledger entry #{entry.sequence} starts from {entry.from_state} "
                f"but the rollout was in {rollout.state.value}",
                rollout_id=rollout.id,
                state=rollout.state.value,
            )
        check_transition(entry.from_state, entry.to_state, rollout.id)
        for key in REPLAYED_FIELDS:
            if key in entry.detail:
                setattr(rollout, key, entry.detail[key])
        if entry.to_state != rollout.state:
            rollout.phase_started_at = entry.timestamp
        rollout.state = entry.to_state
        rollout.last_transition_at = entry.timestamp

    if rollout.is_terminal:
        rollout.archived = True
    return rollout


class RolloutStateMachine:
    """Drives rollouts from REQUESTED to a terminal state.

    Only this class writes Rollout objects and target group roles. The
    registry, prober and shifter are called from the rollout's control task;
    blocking platform calls go through ``executor``.
    """

    def __init__(
        self,
        registry: TargetRegistry,
        prober: HealthProber,
        shifter: TrafficShifter,
        ledger: DeploymentLedger,
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.prober = prober
        self.shifter = shifter
        self.ledger = ledger
        self.executor = executor
        self.clock = clock
        self.owns_executor = False

        self._rollouts: Dict[str, Rollout] = {}
        self._in_flight: Dict[str, str] = {}        # unit_id -> rollout_id
        self._tasks: Dict[str, asyncio.Task] = {}
        self._errors: Dict[str, BaseException] = {}
        self._cancels: Set[str] = set()

        self._handlers = {
            S.REQUESTED: self._on_requested,
            S.PROVISIONING: self._on_provisioning,
            S.HEALTH_CHECKING: self._on_health_checking,
            S.SHIFTING: self._on_shifting,
            S.DRAINING: self._on_draining,
            S.UNHEALTHY_ROLLBACK: self._on_rollback,
            S.SHIFT_FAILED_ROLLBACK: self._on_rollback,
        }

    @classmethod
    def build(
        cls,
        settings: Optional[Settings] = None,
        compute: Optional[ComputePlatform] = None,
        load_balancer: Optional[LoadBalancer] = None,
        ledger: Optional[DeploymentLedger] = None,
    ) -> "RolloutStateMachine":
        """Wire a state machine and its collaborators for the deployment mode."""
        settings = settings or get_settings()
        if compute is None and load_balancer is None:
            compute, load_balancer = PlatformFactory.create(settings)
        elif compute is None or load_balancer is None:
            raise ValueError("Pass both a compute platform and a load balancer, or neither")

        executor = ThreadPoolExecutor(max_workers=settings.io_workers, thread_name_prefix="rollout-io")
        registry = TargetRegistry(compute, settings)
        machine = cls(
            registry=registry,
            prober=HealthProber(compute, registry, settings, executor=executor),
            shifter=TrafficShifter(load_balancer, settings, executor=executor),
            ledger=ledger or DeploymentLedger(settings.ledger_db_path),
            settings=settings,
            executor=executor,
        )
        machine.owns_executor = True
        return machine

    # ------------------------------------------------------------------
    # Operations
    # ------------------------------------------------------------------

    async def start(self, unit_id: str, artifact_ref: str, size: Optional[int] = None) -> Rollout:
        """Request a rollout of ``artifact_ref`` for ``unit_id``.

        Raises:
            ConflictError: the unit already has a non-terminal rollout; nothing
                is recorded in that case
            LedgerWriteError: the creation entry could not be recorded
        """
        size = size if size is not None else self.settings.default_target_count
        if size < 1:
            raise ValueError(f"Rollout size must be at least 1, got {size}")

        # No await between the checks and the reservation below
        running = self._in_flight.get(unit_id)
        if running is not None:
            raise ConflictError(
                f"Unit {unit_id} already has rollout {running} in flight",
                rollout_id=running,
                state=self._rollouts[running].state.value if running in self._rollouts else None,
            )
        last = self.ledger.last_entry(unit_id)
        if last is not None and not last.to_state.is_terminal:
            raise ConflictError(
                f"Unit {unit_id} already has rollout {last.rollout_id} in flight",
                rollout_id=last.rollout_id,
                state=last.to_state.value,
            )

        now = self.clock()
        rollout = Rollout(
            unit_id=unit_id,
            artifact_ref=artifact_ref,
            target_count=size,
            started_at=now,
            last_transition_at=now,
            phase_started_at=now,
        )
        self._in_flight[unit_id] = rollout.id
        try:
            self.ledger.append(LedgerEntry(
                rollout_id=rollout.id,
                unit_id=unit_id,
                from_state=None,
                to_state=S.REQUESTED,
                timestamp=now,
                detail={"artifact_ref": artifact_ref, "target_count": size},
            ))
        except Exception:
            self._in_flight.pop(unit_id, None)
            raise

        self._rollouts[rollout.id] = rollout
        logger.info(f"Rollout {rollout.id} requested for {unit_id}: {artifact_ref} x{size}")
        self._spawn(rollout)
        return rollout

    def cancel(self, rollout_id: str) -> bool:
        """Request rollback of a rollout.

        Returns True when the request was accepted (applied now, or queued
        until the candidate exists) and False when the rollout is already
        draining or finished.
        """
        rollout = self._rollouts.get(rollout_id)
        state = rollout.state if rollout is not None else self.get(rollout_id).state
        if state not in CANCELLABLE_STATES:
            logger.info(f"Ignoring cancel for rollout {rollout_id} in state {state.value}")
            return False

        self.ledger.request_cancel(rollout_id)
        self._cancels.add(rollout_id)
        if state in (S.REQUESTED, S.PROVISIONING):
            logger.info(f"Cancel for rollout {rollout_id} queued until its candidate group exists")
        return True

    async def resume(self) -> List[Rollout]:
        """Re-enter every unfinished rollout recorded in the ledger."""
        resumed = []
        for last in self.ledger.unfinished():
            task = self._tasks.get(last.rollout_id)
            if task is not None and not task.done():
                continue

            entries = self.ledger.entries(last.rollout_id)
            rollout = replay(entries)
            self._adopt_groups(entries)
            if self.ledger.cancel_requested(rollout.id):
                self._cancels.add(rollout.id)

            self._rollouts[rollout.id] = rollout
            self._in_flight[rollout.unit_id] = rollout.id
            self._errors.pop(rollout.id, None)
            logger.info(f"Resuming rollout {rollout.id} for {rollout.unit_id} in {rollout.state.value}")
            self._spawn(rollout)
            resumed.append(rollout)
        return resumed

    async def wait(self, rollout_id: str) -> Rollout:
        """Wait for the control task of a rollout to stop.

        Re-raises the error that halted the rollout, if any.
        """
        task = self._tasks.get(rollout_id)
        if task is not None:
            await asyncio.wait({task})
        error = self._errors.get(rollout_id)
        if error is not None:
            raise error
        return self.get(rollout_id)

    def get(self, rollout_id: str) -> Rollout:
        rollout = self._rollouts.get(rollout_id)
        if rollout is not None:
            return rollout
        entries = self.ledger.entries(rollout_id)
        if not entries:
            raise RolloutNotFoundError(f"Rollout {rollout_id} not found", rollout_id=rollout_id)
        return replay(entries)

    def status(self, rollout_id: str) -> Dict[str, Any]:
        """State, split, candidate health and failure reason of a rollout."""
        rollout = self.get(rollout_id)
        status = rollout.to_dict()
        candidate = rollout.candidate_group_id
        if candidate and self.registry.get_group(candidate) is not None:
            status["candidate_health"] = self.prober.aggregate_health(candidate).value
        else:
            status["candidate_health"] = None
        return status

    def history(self, rollout_id: str) -> List[LedgerEntry]:
        entries = self.ledger.entries(rollout_id)
        if not entries:
            raise RolloutNotFoundError(f"Rollout {rollout_id} not found", rollout_id=rollout_id)
        return entries

    def in_flight(self) -> Dict[str, str]:
        return dict(self._in_flight)

    async def shutdown(self) -> None:
        """Stop every control task without recording anything.

        Unfinished rollouts stay non-terminal in the ledger and are picked up
        by ``resume`` on the next start.
        """
        tasks = [t for t in self._tasks.values() if not t.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        await self.prober.shutdown()
        if self.owns_executor and isinstance(self.executor, ThreadPoolExecutor):
            self.executor.shutdown(wait=False)
        logger.info(f"State machine stopped ({len(tasks)} control tasks cancelled)")

    # ------------------------------------------------------------------
    # Control loop
    # ------------------------------------------------------------------

    def _spawn(self, rollout: Rollout) -> None:
        rollout.attempts += 1
        self._tasks[rollout.id] = asyncio.get_running_loop().create_task(
            self._drive(rollout), name=f"rollout-{rollout.id}"
        )

    async def _drive(self, rollout: Rollout) -> None:
        try:
            while not rollout.is_terminal:
                await self._handlers[rollout.state](rollout)
        except asyncio.CancelledError:
            logger.info(f"Control task for rollout {rollout.id} stopped in {rollout.state.value}")
            raise
        except Exception as e:
            self._errors[rollout.id] = e
            rollout.halted = True
            rollout.error = str(e)
            logger.error(
                f"Rollout {rollout.id} for {rollout.unit_id} halted in {rollout.state.value}: {e}"
            )
        else:
            logger.info(f"Rollout {rollout.id} finished in {rollout.state.value}")

    def _transition(self, rollout: Rollout, to_state: RolloutState,
                    detail: Optional[Dict[str, Any]] = None, **changes) -> None:
        """Record a transition in the ledger, then apply it.

        A failed append leaves the rollout untouched and propagates
        LedgerWriteError, which halts the control task.
        """
        check_transition(rollout.state, to_state, rollout.id)
        detail = dict(detail or {})
        for key in REPLAYED_FIELDS:
            if key in changes:
                detail[key] = changes[key]

        now = self.clock()
        from_state = rollout.state
        self.ledger.append(LedgerEntry(
            rollout_id=rollout.id,
            unit_id=rollout.unit_id,
            from_state=from_state,
            to_state=to_state,
            timestamp=now,
            detail=detail,
        ))

        for key, value in changes.items():
            setattr(rollout, key, value)
        if to_state != from_state:
            rollout.phase_started_at = now
        rollout.last_transition_at = now
        rollout.state = to_state

        if to_state in (S.UNHEALTHY_ROLLBACK, S.SHIFT_FAILED_ROLLBACK):
            logger.warning(
                f"Rollout {rollout.id} ({rollout.unit_id}) {from_state.value} -> {to_state.value}: "
                f"{rollout.failure_reason}"
            )
        else:
            logger.info(f"Rollout {rollout.id} ({rollout.unit_id}) {from_state.value} -> {to_state.value}")

        if to_state.is_terminal:
            self._in_flight.pop(rollout.unit_id, None)
            self._cancels.discard(rollout.id)
            rollout.archived = True

    async def _run_io(self, func, *args):
        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(self.executor, functools.partial(func, *args))

    def _cancel_pending(self, rollout: Rollout) -> bool:
        if rollout.id in self._cancels:
            return True
        if self.ledger.cancel_requested(rollout.id):
            self._cancels.add(rollout.id)
            return True
        return False

    def _abort_reason(self, rollout: Rollout) -> Optional[FailureReason]:
        if self._cancel_pending(rollout):
            return FailureReason.CANCELLED
        if self.prober.aggregate_health(rollout.candidate_group_id) == AggregateHealth.UNHEALTHY:
            return FailureReason.CANDIDATE_UNHEALTHY
        return None

    def _record_split(self, rollout: Rollout, fraction: float) -> None:
        self.registry.set_traffic(rollout.candidate_group_id, fraction)
        if rollout.active_group_id is not None:
            self.registry.set_traffic(rollout.active_group_id, 1.0 - fraction)

    def _recover_active_group(self, unit_id: str) -> Optional[TargetGroup]:
        active = self.registry.active_group(unit_id)
        if active is not None:
            return active
        completed = self.ledger.last_completed(unit_id)
        if completed is None or "new_active_group" not in completed.detail:
            return None
        snapshot = completed.detail["new_active_group"]
        if self.registry.is_destroyed(snapshot["group_id"]):
            return None
        active = self.registry.adopt_group(snapshot, GroupRole.ACTIVE)
        self.registry.set_traffic(active.id, 1.0)
        return active

    def _adopt_groups(self, entries: List[LedgerEntry]) -> None:
        for entry in entries:
            if "active_group" in entry.detail:
                self.registry.adopt_group(entry.detail["active_group"], GroupRole.ACTIVE)
            if "candidate_group" in entry.detail:
                self.registry.adopt_group(entry.detail["candidate_group"], GroupRole.CANDIDATE)

    # ------------------------------------------------------------------
    # State handlers
    # ------------------------------------------------------------------

    async def _on_requested(self, rollout: Rollout) -> None:
        active = self._recover_active_group(rollout.unit_id)
        detail = {"active_group": active.snapshot()} if active is not None else {}
        self._transition(
            rollout,
            S.PROVISIONING,
            detail,
            active_group_id=active.id if active is not None else None,
            candidate_group_id=new_group_id(),
        )

    async def _on_provisioning(self, rollout: Rollout) -> None:
        timeout = self.settings.provision_timeout_seconds
        try:
            group = await asyncio.wait_for(
                self._run_io(
                    self.registry.create_group,
                    rollout.unit_id,
                    rollout.artifact_ref,
                    rollout.target_count,
                    GroupRole.CANDIDATE,
                    rollout.candidate_group_id,
                ),
                timeout=timeout,
            )
        except ProvisionError as e:
            logger.error(f"Provisioning failed for rollout {rollout.id}: {e.message}")
            self._transition(rollout, S.PROVISION_FAILED, {"error": e.message},
                             failure_reason=FailureReason.PROVISION_ERROR.value)
            return
        except asyncio.TimeoutError:
            message = f"Candidate group {rollout.candidate_group_id} not provisioned within {timeout}s"
            logger.error(f"Provisioning failed for rollout {rollout.id}: {message}")
            self._transition(rollout, S.PROVISION_FAILED, {"error": message},
                             failure_reason=FailureReason.PROVISION_ERROR.value)
            return

        self._transition(rollout, S.HEALTH_CHECKING, {"candidate_group": group.snapshot()})

    async def _on_health_checking(self, rollout: Rollout) -> None:
        candidate = rollout.candidate_group_id
        timeout = self.settings.health_check_timeout_seconds
        deadline = rollout.phase_started_at + timedelta(seconds=timeout)
        self.prober.start_probing(candidate)

        last_health = None
        while True:
            if self._cancel_pending(rollout):
                self._transition(rollout, S.UNHEALTHY_ROLLBACK, {"cancelled": True},
                                 failure_reason=FailureReason.CANCELLED.value)
                return

            health = self.prober.aggregate_health(candidate)
            if health == AggregateHealth.HEALTHY:
                self._transition(rollout, S.SHIFTING, {"health": health.value})
                return
            if health == AggregateHealth.UNHEALTHY:
                self._transition(rollout, S.UNHEALTHY_ROLLBACK, {"health": health.value},
                                 failure_reason=FailureReason.CANDIDATE_UNHEALTHY.value)
                return
            if self.clock() >= deadline:
                error = HealthTimeoutError(
                    f"Candidate group {candidate} not healthy after {timeout}s",
                    rollout_id=rollout.id,
                    state=rollout.state.value,
                )
                logger.warning(str(error))
                self._transition(rollout, S.UNHEALTHY_ROLLBACK, {"error": error.message},
                                 failure_reason=FailureReason.HEALTH_TIMEOUT.value)
                return

            if health != last_health:
                self._transition(rollout, S.HEALTH_CHECKING, {
                    "health": health.value,
                    "targets": {tid: s.value for tid, s in self.prober.target_health(candidate).items()},
                })
                last_health = health
            await asyncio.sleep(self.settings.control_poll_interval_seconds)

    async def _on_shifting(self, rollout: Rollout) -> None:
        candidate = rollout.candidate_group_id
        self.shifter.bind(rollout.id, rollout.active_group_id, candidate)
        self.prober.start_probing(candidate)

        try:
            live = await self.shifter.observe(rollout.id)
        except RoutingError as e:
            self._shift_failed(rollout, FailureReason.ROUTING_ERROR, str(e))
            return
        self._record_split(rollout, live)

        # First deployment: nothing to ramp away from
        steps = self.settings.ramp_steps if rollout.active_group_id else [1.0]
        for step in steps:
            if step <= live + SPLIT_TOLERANCE:
                continue

            reason = self._abort_reason(rollout)
            if reason is not None:
                self._shift_failed(rollout, reason)
                return

            try:
                await self.shifter.set_split(rollout.id, step)
            except RoutingError as e:
                self._shift_failed(rollout, FailureReason.ROUTING_ERROR, str(e))
                return
            self._record_split(rollout, step)

            if step < 1.0:
                self._transition(rollout, S.SHIFTING, {"step": step}, traffic_split=step)
                reason = await self._bake(rollout)
                if reason is not None:
                    self._shift_failed(rollout, reason)
                    return
            live = step

        self._transition(rollout, S.DRAINING, {"step": 1.0}, traffic_split=1.0)

    async def _bake(self, rollout: Rollout) -> Optional[FailureReason]:
        """Hold the current step, watching for an abort reason."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.settings.step_bake_seconds
        poll = self.settings.control_poll_interval_seconds
        while True:
            reason = self._abort_reason(rollout)
            if reason is not None:
                return reason
            remaining = deadline - loop.time()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(poll, remaining))

    def _shift_failed(self, rollout: Rollout, reason: FailureReason, error: Optional[str] = None) -> None:
        detail = {"error": error} if error else {}
        self._transition(rollout, S.SHIFT_FAILED_ROLLBACK, detail, failure_reason=reason.value)

    async def _on_draining(self, rollout: Rollout) -> None:
        candidate = rollout.candidate_group_id
        old = rollout.active_group_id
        self.shifter.bind(rollout.id, old, candidate)
        await self.shifter.finalize(rollout.id)
        self._record_split(rollout, 1.0)

        if old is not None:
            self.prober.stop_probing(old)
            await self._run_io(self.registry.destroy_group, old)
        self.prober.stop_probing(candidate)
        self.registry.set_role(candidate, GroupRole.ACTIVE)
        self.shifter.release(rollout.id)

        self._transition(rollout, S.COMPLETE, {
            "new_active_group": self.registry.get_group(candidate).snapshot(),
            "destroyed_group_id": old,
        }, active_group_id=candidate, traffic_split=1.0)

    async def _on_rollback(self, rollout: Rollout) -> None:
        candidate = rollout.candidate_group_id
        self.shifter.bind(rollout.id, rollout.active_group_id, candidate)
        detail: Dict[str, Any] = {"destroyed_group_id": candidate}
        if rollout.active_group_id is not None or rollout.traffic_split > 0:
            try:
                await self.shifter.reset(rollout.id)
                self._record_split(rollout, 0.0)
            except RoutingError as e:
                # The teardown still has to finish or the unit stays reserved
                logger.error(
                    f"Rollout {rollout.id} could not reset traffic for {rollout.unit_id}; "
                    f"destroying {candidate} anyway: {e}"
                )
                detail["reset_error"] = str(e)

        self.prober.stop_probing(candidate)
        await self._run_io(self.registry.destroy_group, candidate)
        self.shifter.release(rollout.id)

        self._transition(rollout, S.ROLLED_BACK, detail, traffic_split=0.0)
