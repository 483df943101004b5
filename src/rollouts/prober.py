"""
Health Prober.

Background polling of target health with consecutive-result thresholds, and
the aggregate health view the state machine decides on.
"""
import asyncio
import logging
import time
from concurrent.futures import Executor
from typing import Callable, Dict, Optional

from .models import AggregateHealth, HealthStatus
from .platform.base import ComputePlatform
from .registry import TargetRegistry
from .settings import Settings, get_settings

logger = logging.getLogger(__name__)


class HealthProber:
    """Probes the targets of registered groups on an interval.

    A target becomes HEALTHY after ``healthy_threshold`` consecutive successful
    probes and UNHEALTHY after ``unhealthy_threshold`` consecutive failures.
    Probes run on ``executor`` so a slow platform never blocks the event loop.
    """

    def __init__(
        self,
        platform: ComputePlatform,
        registry: TargetRegistry,
        settings: Optional[Settings] = None,
        executor: Optional[Executor] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        settings = settings or get_settings()
        self.platform = platform
        self.registry = registry
        self.executor = executor
        self.clock = clock
        self.interval = settings.probe_interval_seconds
        self.healthy_threshold = settings.healthy_threshold
        self.unhealthy_threshold = settings.unhealthy_threshold
        self.grace_period = settings.unknown_grace_period_seconds
        self._tasks: Dict[str, asyncio.Task] = {}
        self._probing_since: Dict[str, float] = {}
        self._successes: Dict[str, Dict[str, int]] = {}
        self._failures: Dict[str, Dict[str, int]] = {}

    def start_probing(self, group_id: str) -> None:
        """Start the background probe loop for a group; no-op if already running.

        Must be called from inside a running event loop.
        """
        task = self._tasks.get(group_id)
        if task is not None and not task.done():
            return
        self._probing_since.setdefault(group_id, self.clock())
        self._successes.setdefault(group_id, {})
        self._failures.setdefault(group_id, {})
        self._tasks[group_id] = asyncio.get_running_loop().create_task(
            self._probe_loop(group_id), name=f"probe-{group_id}"
        )
        logger.info(f"Started probing group {group_id} every {self.interval}s")

    def stop_probing(self, group_id: str) -> None:
        task = self._tasks.pop(group_id, None)
        if task is not None:
            task.cancel()
            logger.info(f"Stopped probing group {group_id}")
        self._probing_since.pop(group_id, None)
        self._successes.pop(group_id, None)
        self._failures.pop(group_id, None)

    def is_probing(self, group_id: str) -> bool:
        task = self._tasks.get(group_id)
        return task is not None and not task.done()

    async def _probe_loop(self, group_id: str) -> None:
        while True:
            try:
                await self.probe_once(group_id)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                logger.error(f"Probe round for group {group_id} failed: {e}")
            await asyncio.sleep(self.interval)

    async def probe_once(self, group_id: str) -> None:
        """Probe every target of the group once and apply the thresholds."""
        group = self.registry.get_group(group_id)
        if group is None:
            return
        self._probing_since.setdefault(group_id, self.clock())
        successes = self._successes.setdefault(group_id, {})
        failures = self._failures.setdefault(group_id, {})
        loop = asyncio.get_running_loop()

        for target in list(group.targets.values()):
            if target.health_status == HealthStatus.DRAINING:
                continue
            try:
                ok = await loop.run_in_executor(self.executor, self.platform.probe_health, target.id)
            except Exception as e:
                logger.warning(f"Probe of target {target.id} raised: {e}")
                ok = False

            if ok:
                successes[target.id] = successes.get(target.id, 0) + 1
                failures[target.id] = 0
                if (target.health_status != HealthStatus.HEALTHY
                        and successes[target.id] >= self.healthy_threshold):
                    self._set_status(target, HealthStatus.HEALTHY)
            else:
                failures[target.id] = failures.get(target.id, 0) + 1
                successes[target.id] = 0
                if (target.health_status != HealthStatus.UNHEALTHY
                        and failures[target.id] >= self.unhealthy_threshold):
                    self._set_status(target, HealthStatus.UNHEALTHY)

    def _set_status(self, target, status: HealthStatus) -> None:
        # Destroyed groups have their targets set to DRAINING concurrently
        if target.health_status == HealthStatus.DRAINING:
            return
        logger.info(f"Target {target.id} {target.health_status.value} -> {status.value}")
        target.health_status = status

    def aggregate_health(self, group_id: str) -> AggregateHealth:
        """HEALTHY iff every target is HEALTHY; UNHEALTHY iff more than half are
        failing (UNHEALTHY, DRAINING, or UNKNOWN past the grace period)."""
        group = self.registry.get_group(group_id)
        if group is None or not group.targets:
            return AggregateHealth.UNHEALTHY

        statuses = [t.health_status for t in group.targets.values()]
        if all(s == HealthStatus.HEALTHY for s in statuses):
            return AggregateHealth.HEALTHY

        since = self._probing_since.get(group_id)
        grace_elapsed = since is not None and self.clock() - since >= self.grace_period
        failing = sum(
            1 for s in statuses
            if s in (HealthStatus.UNHEALTHY, HealthStatus.DRAINING)
            or (s == HealthStatus.UNKNOWN and grace_elapsed)
        )
        if failing * 2 > len(statuses):
            return AggregateHealth.UNHEALTHY
        return AggregateHealth.DEGRADED

    def target_health(self, group_id: str) -> Dict[str, HealthStatus]:
        group = self.registry.get_group(group_id)
        if group is None:
            return {}
        return {t.id: t.health_status for t in group.targets.values()}

    async def shutdown(self) -> None:
        tasks = list(self._tasks.values())
        for group_id in list(self._tasks):
            self.stop_probing(group_id)
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
