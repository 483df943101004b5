"""ALB-backed load balancer using weighted listener forward actions."""
import logging
import threading
from typing import Dict, List, Optional

from botocore.exceptions import BotoCoreError, ClientError

from ..errors import RoutingError, TransientPlatformError
from ..platform.base import LoadBalancer
from ..settings import Settings, get_settings
from .clients import get_elbv2_client
from .ecs import EcsComputePlatform

logger = logging.getLogger(__name__)

# ALB accepts integer weights 0-999; fractions are expressed in percent
WEIGHT_SCALE = 100


class ElbLoadBalancer(LoadBalancer):
    """Splits a listener's traffic between a blue and a green ALB target group.

    A rollout group is bound to one of the two ip-type target groups (a slot)
    the first time it receives traffic. Binding registers the group's task
    IPs in the slot and deregisters whatever else the slot held. A group whose
    weight drops to 0, or that leaves the weight map, gives its slot up: its
    targets are deregistered once the listener no longer forwards to them.
    """

    def __init__(self, elbv2_client=None, platform: Optional[EcsComputePlatform] = None,
                 settings: Optional[Settings] = None):
        settings = settings or get_settings()
        if not settings.alb_listener_arn or len(settings.alb_target_group_arns) != 2:
            raise ValueError("ElbLoadBalancer needs alb_listener_arn and two alb_target_group_arns")
        self.elbv2_client = elbv2_client or get_elbv2_client()
        self.platform = platform or EcsComputePlatform(settings=settings)
        self.listener_arn = settings.alb_listener_arn
        self.slots: List[str] = list(settings.alb_target_group_arns)
        self.port = settings.alb_target_port
        self._bindings: Dict[str, str] = {}
        self._lock = threading.Lock()

    @property
    def bindings(self) -> Dict[str, str]:
        return dict(self._bindings)

    def update_weights(self, weights: Dict[str, float]) -> None:
        with self._lock:
            serving = {group_id: fraction for group_id, fraction in weights.items() if fraction > 0}
            bindings = self._resolve_bindings(serving)

            for group_id, arn in bindings.items():
                if self._bindings.get(group_id) != arn:
                    self._attach(group_id, arn)

            if serving:
                forward = [
                    {"TargetGroupArn": bindings[group_id], "Weight": int(round(fraction * WEIGHT_SCALE))}
                    for group_id, fraction in serving.items()
                ]
                try:
                    self.elbv2_client.modify_listener(
                        ListenerArn=self.listener_arn,
                        DefaultActions=[{
                            "Type": "forward",
                            "ForwardConfig": {"TargetGroups": forward},
                        }],
                    )
                except (ClientError, BotoCoreError) as e:
                    raise RoutingError(f"ALB rejected weight update on {self.listener_arn}: {e}") from e
            else:
                logger.warning(f"No group receives traffic in {weights}; listener {self.listener_arn} unchanged")

            released = {
                group_id: arn for group_id, arn in self._bindings.items()
                if group_id not in bindings and arn not in bindings.values()
            }
            self._bindings = bindings
            for group_id, arn in released.items():
                self._detach(group_id, arn)
            logger.info(f"Requested listener weights {weights}")

    def get_weights(self) -> Dict[str, float]:
        arn_weights = self._listener_weights()
        total = sum(arn_weights.values())
        weights: Dict[str, float] = {}
        for group_id, arn in self._bindings.items():
            if arn in arn_weights:
                weights[group_id] = arn_weights[arn] / total if total else 0.0
        return weights

    def _resolve_bindings(self, serving: Dict[str, float]) -> Dict[str, str]:
        bindings = {g: arn for g, arn in self._bindings.items() if g in serving}

        if not self._bindings:
            # Fresh process: the first group in the map keeps whichever
            # target group currently carries the most traffic.
            current = self._listener_weights()
            if current and serving:
                first_group = next(iter(serving))
                bindings[first_group] = max(current, key=current.get)

        for group_id in serving:
            if group_id in bindings:
                continue
            free = [arn for arn in self.slots if arn not in bindings.values()]
            if not free:
                raise RoutingError(f"No free ALB target group for {group_id}")
            bindings[group_id] = free[0]
        return bindings

    def _attach(self, group_id: str, target_group_arn: str) -> None:
        """Make ``target_group_arn`` contain exactly the tasks of ``group_id``."""
        try:
            addresses = self.platform.target_addresses(group_id)
        except TransientPlatformError as e:
            raise RoutingError(f"Could not look up the tasks of {group_id}: {e.message}") from e
        if not addresses:
            raise RoutingError(f"Group {group_id} has no running tasks to register in {target_group_arn}")

        wanted = [{"Id": address, "Port": self.port} for address in addresses]
        stale = [t for t in self._registered_targets(target_group_arn) if t not in wanted]
        try:
            self.elbv2_client.register_targets(TargetGroupArn=target_group_arn, Targets=wanted)
            if stale:
                self.elbv2_client.deregister_targets(TargetGroupArn=target_group_arn, Targets=stale)
        except (ClientError, BotoCoreError) as e:
            raise RoutingError(f"Could not register {group_id} in {target_group_arn}: {e}") from e
        logger.info(f"Bound {group_id} to {target_group_arn} ({len(wanted)} targets, {len(stale)} removed)")

    def _detach(self, group_id: str, target_group_arn: str) -> None:
        """Deregister a released group; leftovers are removed by the next ``_attach`` of the slot."""
        try:
            registered = self._registered_targets(target_group_arn)
            if registered:
                self.elbv2_client.deregister_targets(TargetGroupArn=target_group_arn, Targets=registered)
        except (RoutingError, ClientError, BotoCoreError) as e:
            logger.warning(f"Could not deregister {group_id} from {target_group_arn}: {e}")
            return
        logger.info(f"Released {target_group_arn} held by {group_id}")

    def _registered_targets(self, target_group_arn: str) -> List[Dict]:
        try:
            response = self.elbv2_client.describe_target_health(TargetGroupArn=target_group_arn)
        except (ClientError, BotoCoreError) as e:
            raise RoutingError(f"Could not read targets of {target_group_arn}: {e}") from e
        return [
            {"Id": d["Target"]["Id"], "Port": d["Target"].get("Port", self.port)}
            for d in response.get("TargetHealthDescriptions", [])
        ]

    def _listener_weights(self) -> Dict[str, int]:
        try:
            response = self.elbv2_client.describe_listeners(ListenerArns=[self.listener_arn])
        except (ClientError, BotoCoreError) as e:
            raise RoutingError(f"Could not read listener {self.listener_arn}: {e}") from e

        listeners = response.get("Listeners", [])
        if not listeners:
            raise RoutingError(f"Listener {self.listener_arn} not found")

        arn_weights: Dict[str, int] = {}
        for action in listeners[0].get("DefaultActions", []):
            if action.get("Type") != "forward":
                continue
            forward_config = action.get("ForwardConfig")
            if forward_config:
                for tg in forward_config.get("TargetGroups", []):
                    arn_weights[tg["TargetGroupArn"]] = tg.get("Weight", 1)
            elif action.get("TargetGroupArn"):
                arn_weights[action["TargetGroupArn"]] = 1
        return arn_weights
