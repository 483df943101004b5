"""Error taxonomy for rollout orchestration."""
from enum import Enum
from typing import Optional


class FailureReason(str, Enum):
    """Failure codes recorded on a rollout and in its ledger entries"""
    PROVISION_ERROR = "PROVISION_ERROR"
    HEALTH_TIMEOUT = "HEALTH_TIMEOUT"
    CANDIDATE_UNHEALTHY = "CANDIDATE_UNHEALTHY"
    ROUTING_ERROR = "ROUTING_ERROR"
    CANCELLED = "CANCELLED"


class RolloutError(Exception):
    """Base class for orchestration errors.

    Operator-visible failures carry the rollout id, the state at failure and
    the failure reason whenever they are known.
    """

    failure_reason: Optional[FailureReason] = None

    def __init__(
        self,
        message: str,
        rollout_id: Optional[str] = None,
        state: Optional[str] = None,
        failure_reason: Optional[FailureReason] = None,
    ):
        self.message = message
        self.rollout_id = rollout_id
        self.state = state
        if failure_reason is not None:
            self.failure_reason = failure_reason
        super().__init__(str(self))

    def __str__(self) -> str:
        context = []
        if self.rollout_id:
            context.append(f"rollout={self.rollout_id}")
        if self.state:
            context.append(f"state={self.state}")
        if self.failure_reason:
            context.append(f"reason={self.failure_reason.value}")
        if context:
            return f"{self.message} ({', '.join(context)})"
        return self.message


class ProvisionError(RolloutError):
    """The compute platform could not create candidate capacity"""
    failure_reason = FailureReason.PROVISION_ERROR


class HealthTimeoutError(RolloutError):
    """The candidate group never converged to healthy within budget"""
    failure_reason = FailureReason.HEALTH_TIMEOUT


class RoutingError(RolloutError):
    """The load balancer rejected or failed to confirm a weight update"""
    failure_reason = FailureReason.ROUTING_ERROR


class ConflictError(RolloutError):
    """A rollout is already in flight for the deployable unit"""
    pass


class LedgerWriteError(RolloutError):
    """The durable ledger is unavailable; transitions must halt"""
    pass


class LedgerReadError(RolloutError):
    """The durable ledger could not be queried"""
    pass


class TransientPlatformError(RolloutError):
    """Retryable platform failure (throttling, 5xx, connection reset)"""
    pass


class IllegalTransitionError(RolloutError):
    """A transition not allowed by the rollout state machine"""
    pass


class RolloutNotFoundError(RolloutError):
    """No rollout with the given id is known"""
    pass
