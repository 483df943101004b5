"""
Target Registry.

Creates, enumerates and tears down target groups against the compute
platform. Group roles are stored here but written only by the rollout state
machine.
"""
import itertools
import logging
import threading
import uuid
from datetime import datetime
from typing import Any, Dict, List, Optional, Set

from .errors import ProvisionError, TransientPlatformError
from .models import GroupRole, HealthStatus, Target, TargetGroup, utcnow
from .platform.base import ComputePlatform, ProvisionSpec
from .settings import Settings, get_settings
from .utils.decorators import log_execution_time, retry

logger = logging.getLogger(__name__)


def new_group_id() -> str:
    return f"grp-{uuid.uuid4().hex[:12]}"


class TargetRegistry:
    """Tracks the target groups of every deployable unit."""

    def __init__(self, platform: ComputePlatform, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.platform = platform
        self._groups: Dict[str, TargetGroup] = {}
        self._destroyed: Set[str] = set()
        self._sequence = itertools.count()
        self._lock = threading.Lock()

        with_retry = retry(
            max_attempts=settings.platform_max_attempts,
            delay=settings.platform_backoff_seconds,
            exceptions=(TransientPlatformError,),
            logger_name=__name__,
        )
        self._provision = with_retry(platform.provision)
        self._terminate = with_retry(platform.terminate)

    @log_execution_time
    def create_group(
        self,
        unit_id: str,
        artifact_ref: str,
        size: int,
        role: GroupRole = GroupRole.CANDIDATE,
        group_id: Optional[str] = None,
    ) -> TargetGroup:
        """Provision ``size`` targets running ``artifact_ref``.

        Args:
            unit_id: Deployable unit the group belongs to
            artifact_ref: Image / task definition to run
            size: Number of targets
            role: Initial role of the group
            group_id: Pre-chosen group id; provisioning is idempotent per id

        Returns:
            The new group, with every target in UNKNOWN health

        Raises:
            ProvisionError: the platform rejected the request or kept failing
        """
        if size < 1:
            raise ValueError(f"Target group size must be at least 1, got {size}")

        group_id = group_id or new_group_id()
        with self._lock:
            existing = self._groups.get(group_id)
        if existing is not None:
            return existing

        spec = ProvisionSpec(group_id=group_id, unit_id=unit_id, artifact_ref=artifact_ref, size=size)
        try:
            target_ids = self._provision(spec)
        except TransientPlatformError as e:
            raise ProvisionError(f"Provisioning {group_id} kept failing: {e.message}") from e

        if len(target_ids) < size:
            raise ProvisionError(f"Platform started {len(target_ids)} of {size} targets for {group_id}")

        group = TargetGroup(
            id=group_id,
            unit_id=unit_id,
            artifact_ref=artifact_ref,
            role=role,
            targets={tid: Target(id=tid, group_id=group_id) for tid in target_ids},
            sequence=next(self._sequence),
        )
        with self._lock:
            self._groups[group_id] = group
            self._destroyed.discard(group_id)

        logger.info(f"Created {role.value} group {group_id} for {unit_id} ({artifact_ref}, {size} targets)")
        return group

    def adopt_group(self, snapshot: Dict[str, Any], role: GroupRole) -> TargetGroup:
        """Register a group that already exists on the platform.

        Used after a restart to rebuild the registry from ledger details
        without provisioning anything. Health starts UNKNOWN again.
        """
        group_id = snapshot["group_id"]
        with self._lock:
            existing = self._groups.get(group_id)
            if existing is not None:
                return existing

            created_at = snapshot.get("created_at")
            group = TargetGroup(
                id=group_id,
                unit_id=snapshot["unit_id"],
                artifact_ref=snapshot["artifact_ref"],
                role=role,
                targets={tid: Target(id=tid, group_id=group_id) for tid in snapshot.get("target_ids", [])},
                created_at=datetime.fromisoformat(created_at) if created_at else utcnow(),
                sequence=next(self._sequence),
            )
            self._groups[group_id] = group

        spec = ProvisionSpec(
            group_id=group_id,
            unit_id=group.unit_id,
            artifact_ref=group.artifact_ref,
            size=len(group.targets),
        )
        self.platform.adopt(spec, group.target_ids)
        logger.info(f"Adopted {role.value} group {group_id} for {group.unit_id} ({len(group.targets)} targets)")
        return group

    @log_execution_time
    def destroy_group(self, group_id: str) -> None:
        """Drain and terminate every target of the group.

        Destroying a group that is already gone is a no-op.
        """
        with self._lock:
            group = self._groups.pop(group_id, None)
            if group is None:
                logger.debug(f"Group {group_id} already destroyed or unknown")
                return
            for target in group.targets.values():
                target.health_status = HealthStatus.DRAINING

        try:
            self._terminate(group.target_ids)
        except TransientPlatformError:
            with self._lock:
                self._groups.setdefault(group_id, group)
            raise

        with self._lock:
            self._destroyed.add(group_id)
        logger.info(f"Destroyed group {group_id} ({len(group.targets)} targets)")

    def get_group(self, group_id: str) -> Optional[TargetGroup]:
        with self._lock:
            return self._groups.get(group_id)

    def is_destroyed(self, group_id: str) -> bool:
        with self._lock:
            return group_id in self._destroyed

    def list_groups(self, unit_id: str) -> List[TargetGroup]:
        """Groups of a unit, oldest first."""
        with self._lock:
            groups = [g for g in self._groups.values() if g.unit_id == unit_id]
        return sorted(groups, key=lambda g: (g.created_at, g.sequence))

    def active_group(self, unit_id: str) -> Optional[TargetGroup]:
        for group in self.list_groups(unit_id):
            if group.role == GroupRole.ACTIVE:
                return group
        return None

    def set_traffic(self, group_id: str, fraction: float) -> None:
        """Spread a confirmed group fraction evenly over the group's targets."""
        with self._lock:
            group = self._groups.get(group_id)
            if group is None or not group.targets:
                return
            share = fraction / len(group.targets)
            for target in group.targets.values():
                target.weight = share

    def set_role(self, group_id: str, role: GroupRole) -> None:
        with self._lock:
            group = self._groups.get(group_id)
            if group is None:
                raise KeyError(f"Group {group_id} not found")
            group.role = role
        logger.info(f"Group {group_id} is now {role.value}")
