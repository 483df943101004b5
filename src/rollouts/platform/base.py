from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Dict, List


@dataclass(frozen=True)
class ProvisionSpec:
    """What to run for one target group.

    ``group_id`` is chosen by the caller before provisioning starts, so a
    repeated provision call for the same group returns the targets it already
    created instead of launching a second set.
    """
    group_id: str
    unit_id: str
    artifact_ref: str
    size: int


class ComputePlatform(ABC):
    """Compute platform the registry and prober call into.

    Implementations are assumed eventually consistent; callers poll.
    """

    @abstractmethod
    def provision(self, spec: ProvisionSpec) -> List[str]:
        """Start ``spec.size`` targets running ``spec.artifact_ref``

        Args:
            spec: Provisioning request

        Returns:
            Ids of the targets serving the group

        Raises:
            ProvisionError: capacity or artifact rejected by the platform
            TransientPlatformError: retryable failure
        """
        pass

    @abstractmethod
    def terminate(self, target_ids: List[str]) -> None:
        """Stop the given targets; already stopped targets are ignored"""
        pass

    @abstractmethod
    def probe_health(self, target_id: str) -> bool:
        """Return True when the target passes its health check"""
        pass

    def adopt(self, spec: ProvisionSpec, target_ids: List[str]) -> None:
        """Take over targets another process provisioned for ``spec.group_id``.

        Platforms that look targets up remotely already see them, so the
        default does nothing.
        """


class LoadBalancer(ABC):
    """Routing layer capable of weighted splits between target groups."""

    @abstractmethod
    def update_weights(self, weights: Dict[str, float]) -> None:
        """Request that traffic be split by ``{group_id: fraction}``

        Raises:
            RoutingError: the update was rejected
        """
        pass

    @abstractmethod
    def get_weights(self) -> Dict[str, float]:
        """Return the weights currently applied, which may lag the last update"""
        pass
