"""
In-process compute platform and load balancer.

Used for local-dev mode and for tests. Both simulators are scriptable:
health per target or per artifact, rejected artifacts, a capacity quota,
transient failures, weight-application lag and routing rejections.
"""
import logging
import threading
from typing import Dict, List, Optional, Set, Tuple

from ..errors import ProvisionError, RoutingError, TransientPlatformError
from .base import ComputePlatform, LoadBalancer, ProvisionSpec

logger = logging.getLogger(__name__)


class InMemoryComputePlatform(ComputePlatform):
    """Simulated compute platform keyed by group id."""

    def __init__(self, capacity: Optional[int] = None, rejected_artifacts=(), default_healthy: bool = True):
        self.capacity = capacity
        self.rejected_artifacts: Set[str] = set(rejected_artifacts)
        self.default_healthy = default_healthy
        self.transient_failures = 0
        self.provision_calls: List[ProvisionSpec] = []
        self.terminated: Set[str] = set()
        self._groups: Dict[str, List[str]] = {}
        self._artifacts: Dict[str, str] = {}
        self._target_health: Dict[str, bool] = {}
        self._artifact_health: Dict[str, bool] = {}
        self._lock = threading.Lock()

    def provision(self, spec: ProvisionSpec) -> List[str]:
        with self._lock:
            self.provision_calls.append(spec)
            if self.transient_failures > 0:
                self.transient_failures -= 1
                raise TransientPlatformError(f"Simulated throttling while provisioning {spec.group_id}")

            existing = self._groups.get(spec.group_id)
            if existing is not None:
                logger.info(f"Group {spec.group_id} already provisioned with {len(existing)} targets")
                return list(existing)

            if spec.artifact_ref in self.rejected_artifacts:
                raise ProvisionError(f"Artifact {spec.artifact_ref} could not be resolved")

            live = sum(1 for target_id in self._artifacts if target_id not in self.terminated)
            if self.capacity is not None and live + spec.size > self.capacity:
                raise ProvisionError(
                    f"Capacity quota exceeded: {live} running, {spec.size} requested, limit {self.capacity}"
                )

            target_ids = [f"{spec.group_id}-t{i}" for i in range(spec.size)]
            for target_id in target_ids:
                self._artifacts[target_id] = spec.artifact_ref
            self._groups[spec.group_id] = target_ids
            logger.info(f"Provisioned {spec.size} targets for {spec.unit_id} running {spec.artifact_ref}")
            return list(target_ids)

    def adopt(self, spec: ProvisionSpec, target_ids: List[str]) -> None:
        """Treat ``target_ids`` as running ``spec.artifact_ref``, as if provisioned here"""
        with self._lock:
            if spec.group_id in self._groups:
                return
            for target_id in target_ids:
                self._artifacts.setdefault(target_id, spec.artifact_ref)
            self._groups[spec.group_id] = list(target_ids)
        logger.info(f"Adopted {len(target_ids)} targets of group {spec.group_id} ({spec.artifact_ref})")

    def terminate(self, target_ids: List[str]) -> None:
        with self._lock:
            for target_id in target_ids:
                self.terminated.add(target_id)

    def probe_health(self, target_id: str) -> bool:
        with self._lock:
            if target_id not in self._artifacts or target_id in self.terminated:
                return False
            if target_id in self._target_health:
                return self._target_health[target_id]
            artifact_ref = self._artifacts[target_id]
            return self._artifact_health.get(artifact_ref, self.default_healthy)

    def set_target_health(self, target_id: str, healthy: bool) -> None:
        with self._lock:
            self._target_health[target_id] = healthy

    def set_group_health(self, group_id: str, healthy: bool) -> None:
        with self._lock:
            for target_id in self._groups.get(group_id, []):
                self._target_health[target_id] = healthy

    def set_artifact_health(self, artifact_ref: str, healthy: bool) -> None:
        """Health reported by targets running ``artifact_ref`` without a per-target override"""
        with self._lock:
            self._artifact_health[artifact_ref] = healthy

    def live_targets(self, group_id: str) -> List[str]:
        with self._lock:
            return [t for t in self._groups.get(group_id, []) if t not in self.terminated]


class InMemoryLoadBalancer(LoadBalancer):
    """Simulated weighted router.

    ``lag`` is the number of ``get_weights`` reads that still return the
    previous weights after an update, mimicking asynchronous application.
    """

    def __init__(self, platform: Optional[InMemoryComputePlatform] = None, lag: int = 0):
        self.platform = platform
        self.lag = lag
        self.reject_next = 0
        self.update_calls: List[Dict[str, float]] = []
        self.applied_history: List[Dict[str, float]] = []
        self._applied: Dict[str, float] = {}
        self._pending: Optional[Tuple[Dict[str, float], int]] = None
        self._lock = threading.Lock()

    def update_weights(self, weights: Dict[str, float]) -> None:
        with self._lock:
            self.update_calls.append(dict(weights))
            if self.reject_next > 0:
                self.reject_next -= 1
                raise RoutingError("Load balancer rejected the weight update")

            if self.platform is not None:
                for group_id, fraction in weights.items():
                    if fraction > 0 and not self.platform.live_targets(group_id):
                        raise RoutingError(f"Target group {group_id} has no registered targets")

            if self.lag <= 0:
                self._apply(dict(weights))
            else:
                self._pending = (dict(weights), self.lag)

    def get_weights(self) -> Dict[str, float]:
        with self._lock:
            if self._pending is not None:
                weights, remaining = self._pending
                if remaining <= 0:
                    self._apply(weights)
                else:
                    self._pending = (weights, remaining - 1)
            return dict(self._applied)

    def _apply(self, weights: Dict[str, float]) -> None:
        self._applied = weights
        self._pending = None
        self.applied_history.append(dict(weights))
