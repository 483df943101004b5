"""
Traffic Shifter.

Moves load balancer weight between a rollout's active and candidate groups.
Splits only ever grow during a ramp; ``reset`` is the single way back to 0.
"""
import asyncio
import logging
from concurrent.futures import Executor
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .errors import RoutingError
from .platform.base import LoadBalancer
from .settings import Settings, get_settings
from .utils.decorators import call_with_retry

logger = logging.getLogger(__name__)

SPLIT_TOLERANCE = 1e-3


@dataclass
class Binding:
    active_group_id: Optional[str]
    candidate_group_id: str
    split: float = 0.0
    history: List[float] = field(default_factory=list)


class TrafficShifter:
    def __init__(
        self,
        load_balancer: LoadBalancer,
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
    ):
        settings = settings or get_settings()
        self.load_balancer = load_balancer
        self.executor = executor
        self.max_attempts = settings.routing_max_attempts
        self.backoff = settings.routing_backoff_seconds
        self.confirm_timeout = settings.split_confirm_timeout_seconds
        self.poll_interval = settings.split_poll_interval_seconds
        self._bindings: Dict[str, Binding] = {}

    def bind(self, rollout_id: str, active_group_id: Optional[str], candidate_group_id: str) -> None:
        """Register the pair of groups whose weights ``rollout_id`` controls."""
        existing = self._bindings.get(rollout_id)
        if existing is not None and existing.candidate_group_id == candidate_group_id:
            return
        self._bindings[rollout_id] = Binding(active_group_id, candidate_group_id)

    def release(self, rollout_id: str) -> None:
        self._bindings.pop(rollout_id, None)

    def _binding(self, rollout_id: str) -> Binding:
        binding = self._bindings.get(rollout_id)
        if binding is None:
            raise KeyError(f"Rollout {rollout_id} has no bound target groups")
        return binding

    def current_split(self, rollout_id: str) -> float:
        """Last confirmed candidate fraction."""
        return self._binding(rollout_id).split

    def split_history(self, rollout_id: str) -> List[float]:
        return list(self._binding(rollout_id).history)

    def _weights(self, binding: Binding, fraction: float) -> Dict[str, float]:
        if binding.active_group_id is None:
            return {binding.candidate_group_id: fraction}
        return {binding.active_group_id: 1.0 - fraction, binding.candidate_group_id: fraction}

    async def set_split(self, rollout_id: str, candidate_fraction: float) -> float:
        """Route ``candidate_fraction`` of traffic to the candidate and wait until
        the load balancer reports it.

        Raises:
            ValueError: the fraction is outside [0, 1] or lower than the current split
            RoutingError: the update was rejected or never confirmed after all retries
        """
        if not 0.0 <= candidate_fraction <= 1.0:
            raise ValueError(f"Traffic split must be within [0, 1], got {candidate_fraction}")
        binding = self._binding(rollout_id)
        if candidate_fraction < binding.split - SPLIT_TOLERANCE:
            raise ValueError(
                f"Traffic split for {rollout_id} cannot decrease from {binding.split} to {candidate_fraction}"
            )

        await self._apply(rollout_id, binding, self._weights(binding, candidate_fraction), candidate_fraction)
        logger.info(f"Rollout {rollout_id} now routes {candidate_fraction:.0%} to {binding.candidate_group_id}")
        return binding.split

    async def reset(self, rollout_id: str) -> None:
        """Send all traffic back to the active group at once."""
        binding = self._binding(rollout_id)
        await self._apply(rollout_id, binding, self._weights(binding, 0.0), 0.0)
        logger.warning(f"Rollout {rollout_id} traffic reset to the active group")

    async def finalize(self, rollout_id: str) -> None:
        """Route everything to the candidate and drop the old group from the listener."""
        binding = self._binding(rollout_id)
        await self._apply(rollout_id, binding, {binding.candidate_group_id: 1.0}, 1.0)

    async def observe(self, rollout_id: str) -> float:
        """Re-read the live split from the load balancer."""
        binding = self._binding(rollout_id)
        loop = asyncio.get_running_loop()
        weights = await loop.run_in_executor(self.executor, self.load_balancer.get_weights)
        binding.split = weights.get(binding.candidate_group_id, 0.0)
        return binding.split

    async def _apply(self, rollout_id: str, binding: Binding, weights: Dict[str, float], fraction: float) -> None:
        await call_with_retry(
            self._update_and_confirm,
            binding,
            weights,
            fraction,
            max_attempts=self.max_attempts,
            delay=self.backoff,
            exceptions=(RoutingError,),
            logger_name=__name__,
        )
        binding.split = fraction
        binding.history.append(fraction)

    async def _update_and_confirm(self, binding: Binding, weights: Dict[str, float], fraction: float) -> None:
        loop = asyncio.get_running_loop()
        await loop.run_in_executor(self.executor, self.load_balancer.update_weights, weights)

        deadline = loop.time() + self.confirm_timeout
        while True:
            observed = await loop.run_in_executor(self.executor, self.load_balancer.get_weights)
            if abs(observed.get(binding.candidate_group_id, 0.0) - fraction) <= SPLIT_TOLERANCE:
                return
            if loop.time() >= deadline:
                raise RoutingError(
                    f"Load balancer did not confirm {fraction:.0%} on {binding.candidate_group_id} "
                    f"within {self.confirm_timeout}s (observed {observed})"
                )
            await asyncio.sleep(self.poll_interval)
