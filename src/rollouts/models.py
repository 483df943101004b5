"""
Rollout data model.

Targets and target groups describe deployable capacity; a Rollout is one
attempt to move a deployable unit onto a new artifact; ledger entries are the
immutable record of every rollout transition.
"""
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


class HealthStatus(str, Enum):
    """Health of a single target"""
    UNKNOWN = "UNKNOWN"
    HEALTHY = "HEALTHY"
    UNHEALTHY = "UNHEALTHY"
    DRAINING = "DRAINING"


class AggregateHealth(str, Enum):
    """Health of a target group as a whole"""
    HEALTHY = "HEALTHY"
    DEGRADED = "DEGRADED"
    UNHEALTHY = "UNHEALTHY"


class GroupRole(str, Enum):
    ACTIVE = "ACTIVE"
    CANDIDATE = "CANDIDATE"


class RolloutState(str, Enum):
    """States of the rollout state machine"""
    REQUESTED = "REQUESTED"
    PROVISIONING = "PROVISIONING"
    PROVISION_FAILED = "PROVISION_FAILED"    # terminal, failure
    HEALTH_CHECKING = "HEALTH_CHECKING"
    UNHEALTHY_ROLLBACK = "UNHEALTHY_ROLLBACK"
    SHIFTING = "SHIFTING"
    SHIFT_FAILED_ROLLBACK = "SHIFT_FAILED_ROLLBACK"
    DRAINING = "DRAINING"
    COMPLETE = "COMPLETE"                    # terminal, success
    ROLLED_BACK = "ROLLED_BACK"              # terminal, failure

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATES


TERMINAL_STATES = frozenset({
    RolloutState.PROVISION_FAILED,
    RolloutState.COMPLETE,
    RolloutState.ROLLED_BACK,
})


@dataclass
class Target:
    """A single compute unit capable of serving traffic.

    ``weight`` is the share of the unit's traffic this target receives,
    following the last split the load balancer confirmed.
    """
    id: str
    group_id: str
    health_status: HealthStatus = HealthStatus.UNKNOWN
    weight: float = 0.0


@dataclass
class TargetGroup:
    """A versioned pool of targets ("blue" or "green")."""
    id: str
    unit_id: str
    artifact_ref: str
    role: GroupRole
    targets: Dict[str, Target] = field(default_factory=dict)
    created_at: datetime = field(default_factory=utcnow)
    sequence: int = 0

    @property
    def target_ids(self):
        return sorted(self.targets)

    def snapshot(self) -> Dict[str, Any]:
        """JSON-friendly description used in ledger entry details."""
        return {
            "group_id": self.id,
            "unit_id": self.unit_id,
            "artifact_ref": self.artifact_ref,
            "target_ids": self.target_ids,
            "created_at": self.created_at.isoformat(),
        }


class ArchivedRolloutError(AttributeError):
    """Raised when a terminal rollout is modified"""
    pass


@dataclass
class Rollout:
    """One deployment attempt for a deployable unit.

    Only the state machine mutates a rollout. Once it reaches a terminal
    state it is archived and any further assignment raises
    ArchivedRolloutError.
    """
    unit_id: str
    artifact_ref: str
    id: str = field(default_factory=lambda: f"ro-{uuid.uuid4().hex[:12]}")
    state: RolloutState = RolloutState.REQUESTED
    active_group_id: Optional[str] = None
    candidate_group_id: Optional[str] = None
    traffic_split: float = 0.0
    target_count: int = 0
    started_at: datetime = field(default_factory=utcnow)
    last_transition_at: datetime = field(default_factory=utcnow)
    phase_started_at: datetime = field(default_factory=utcnow)
    attempts: int = 0
    failure_reason: Optional[str] = None
    halted: bool = False
    error: Optional[str] = None
    archived: bool = False

    def __setattr__(self, name, value):
        if self.__dict__.get("archived"):
            raise ArchivedRolloutError(f"Rollout {self.id} is archived in state {self.state.value}")
        object.__setattr__(self, name, value)

    @property
    def is_terminal(self) -> bool:
        return self.state.is_terminal

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rollout_id": self.id,
            "unit_id": self.unit_id,
            "artifact_ref": self.artifact_ref,
            "state": self.state.value,
            "active_group_id": self.active_group_id,
            "candidate_group_id": self.candidate_group_id,
            "traffic_split": self.traffic_split,
            "target_count": self.target_count,
            "started_at": self.started_at.isoformat(),
            "last_transition_at": self.last_transition_at.isoformat(),
            "attempts": self.attempts,
            "failure_reason": self.failure_reason,
            "halted": self.halted,
            "error": self.error,
        }


@dataclass(frozen=True)
class LedgerEntry:
    """Immutable record of one rollout state transition."""
    rollout_id: str
    unit_id: str
    from_state: Optional[RolloutState]
    to_state: RolloutState
    timestamp: datetime = field(default_factory=utcnow)
    detail: Dict[str, Any] = field(default_factory=dict)
    sequence: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sequence": self.sequence,
            "rollout_id": self.rollout_id,
            "unit_id": self.unit_id,
            "from_state": self.from_state.value if self.from_state else None,
            "to_state": self.to_state.value,
            "timestamp": self.timestamp.isoformat(),
            "detail": self.detail,
        }
