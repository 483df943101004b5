"""ECS-backed compute platform: one target group is a set of standalone tasks."""
import logging
from typing import Any, Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..errors import ProvisionError, TransientPlatformError
from ..platform.base import ComputePlatform, ProvisionSpec
from ..settings import Settings, get_settings
from .clients import get_ecs_client

logger = logging.getLogger(__name__)

TRANSIENT_ERROR_CODES = {
    "Throttling",
    "ThrottlingException",
    "RequestLimitExceeded",
    "ServerException",
    "ServiceUnavailable",
    "InternalFailure",
}

# run_task starts at most ten tasks per call
RUN_TASK_BATCH = 10

# describe_tasks accepts at most 100 tasks per call
DESCRIBE_TASKS_BATCH = 100


def task_private_ip(task: Dict[str, Any]) -> Optional[str]:
    """Private IPv4 address of an awsvpc task, from its ENI attachment"""
    for attachment in task.get("attachments", []):
        if attachment.get("type") != "ElasticNetworkInterface":
            continue
        for detail in attachment.get("details", []):
            if detail.get("name") == "privateIPv4Address":
                return detail.get("value")
    return None


def is_transient(error: ClientError) -> bool:
    """Throttling and server-side errors are worth retrying"""
    code = error.response.get("Error", {}).get("Code", "")
    status = error.response.get("ResponseMetadata", {}).get("HTTPStatusCode", 0)
    return code in TRANSIENT_ERROR_CODES or status >= 500


class EcsComputePlatform(ComputePlatform):
    """Runs each target group as ECS tasks tagged ``startedBy=<group_id>``.

    ``artifact_ref`` is the task definition (family:revision or ARN) to run.
    """

    def __init__(self, ecs_client=None, settings: Optional[Settings] = None):
        settings = settings or get_settings()
        self.ecs_client = ecs_client or get_ecs_client()
        self.cluster = settings.ecs_cluster
        self.launch_type = settings.ecs_launch_type
        self.subnets = settings.ecs_subnets
        self.security_groups = settings.ecs_security_groups
        self.assign_public_ip = settings.ecs_assign_public_ip

    def provision(self, spec: ProvisionSpec) -> List[str]:
        try:
            existing = self._list_group_tasks(spec.group_id)
            if len(existing) >= spec.size:
                logger.info(f"Group {spec.group_id} already has {len(existing)} tasks in {self.cluster}")
                return existing

            started = list(existing)
            remaining = spec.size - len(existing)
            while remaining > 0:
                count = min(remaining, RUN_TASK_BATCH)
                response = self.ecs_client.run_task(**self._run_task_kwargs(spec, count))
                failures = response.get("failures", [])
                started.extend(task["taskArn"] for task in response.get("tasks", []))
                if failures:
                    reasons = ", ".join(f"{f.get('arn', '?')}: {f.get('reason', 'unknown')}" for f in failures)
                    self._stop_quietly(started[len(existing):])
                    raise ProvisionError(f"ECS could not place tasks for {spec.artifact_ref}: {reasons}")
                remaining -= count
        except ClientError as e:
            if is_transient(e):
                raise TransientPlatformError(f"ECS run_task throttled: {e}") from e
            raise ProvisionError(f"ECS rejected task definition {spec.artifact_ref}: {e}") from e
        except BotoCoreError as e:
            raise TransientPlatformError(f"ECS unreachable: {e}") from e

        logger.info(f"Started {len(started)} ECS tasks for group {spec.group_id} ({spec.artifact_ref})")
        return started

    def terminate(self, target_ids: List[str]) -> None:
        for task_arn in target_ids:
            try:
                self.ecs_client.stop_task(
                    cluster=self.cluster,
                    task=task_arn,
                    reason="Rollout target group destroyed"
                )
            except ClientError as e:
                if is_transient(e):
                    raise TransientPlatformError(f"ECS stop_task throttled: {e}") from e
                code = e.response.get("Error", {}).get("Code", "")
                if code != "InvalidParameterException":
                    raise
                logger.debug(f"Task {task_arn} already stopped")
            except BotoCoreError as e:
                raise TransientPlatformError(f"ECS unreachable: {e}") from e

    def probe_health(self, target_id: str) -> bool:
        try:
            response = self.ecs_client.describe_tasks(cluster=self.cluster, tasks=[target_id])
        except ClientError as e:
            raise TransientPlatformError(f"ECS describe_tasks failed for {target_id}: {e}") from e
        except BotoCoreError as e:
            raise TransientPlatformError(f"ECS unreachable: {e}") from e

        tasks = response.get("tasks", [])
        if not tasks:
            return False
        task = tasks[0]
        return task.get("lastStatus") == "RUNNING" and task.get("healthStatus", "UNKNOWN") != "UNHEALTHY"

    def target_addresses(self, group_id: str) -> List[str]:
        """Private IPs of the running tasks of a group, for ALB ip-type target groups"""
        try:
            task_arns = self._list_group_tasks(group_id)
            addresses: List[str] = []
            for start in range(0, len(task_arns), DESCRIBE_TASKS_BATCH):
                response = self.ecs_client.describe_tasks(
                    cluster=self.cluster,
                    tasks=task_arns[start:start + DESCRIBE_TASKS_BATCH],
                )
                for task in response.get("tasks", []):
                    address = task_private_ip(task)
                    if address:
                        addresses.append(address)
                    else:
                        logger.warning(f"Task {task.get('taskArn')} of {group_id} has no private IP yet")
        except ClientError as e:
            raise TransientPlatformError(f"ECS could not describe tasks of {group_id}: {e}") from e
        except BotoCoreError as e:
            raise TransientPlatformError(f"ECS unreachable: {e}") from e
        return addresses

    def _list_group_tasks(self, group_id: str) -> List[str]:
        task_arns: List[str] = []
        paginator = self.ecs_client.get_paginator("list_tasks")
        for page in paginator.paginate(cluster=self.cluster, startedBy=group_id, desiredStatus="RUNNING"):
            task_arns.extend(page.get("taskArns", []))
        return task_arns

    def _run_task_kwargs(self, spec: ProvisionSpec, count: int) -> Dict[str, Any]:
        kwargs: Dict[str, Any] = {
            "cluster": self.cluster,
            "taskDefinition": spec.artifact_ref,
            "count": count,
            "startedBy": spec.group_id,
            "group": f"rollout:{spec.unit_id}",
            "launchType": self.launch_type,
        }
        if self.subnets:
            kwargs["networkConfiguration"] = {
                "awsvpcConfiguration": {
                    "subnets": self.subnets,
                    "securityGroups": self.security_groups,
                    "assignPublicIp": "ENABLED" if self.assign_public_ip else "DISABLED",
                }
            }
        return kwargs

    def _stop_quietly(self, task_arns: List[str]) -> None:
        """Best-effort cleanup of a partially placed group before reporting the failure"""
        try:
            self.terminate(task_arns)
        except (ClientError, BotoCoreError, TransientPlatformError) as e:
            logger.warning(f"Could not stop partially started tasks {task_arns}: {e}")
