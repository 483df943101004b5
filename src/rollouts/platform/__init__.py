import logging
from typing import Optional, Tuple

from ..settings import Settings, get_settings
from .base import ComputePlatform, LoadBalancer, ProvisionSpec
from .memory import InMemoryComputePlatform, InMemoryLoadBalancer

logger = logging.getLogger(__name__)

__all__ = [
    "ComputePlatform",
    "LoadBalancer",
    "ProvisionSpec",
    "InMemoryComputePlatform",
    "InMemoryLoadBalancer",
    "PlatformFactory",
]


class PlatformFactory:
    """Factory to build the compute platform and load balancer for the deployment mode"""

    @staticmethod
    def create(settings: Optional[Settings] = None) -> Tuple[ComputePlatform, LoadBalancer]:
        settings = settings or get_settings()
        deployment_mode = settings.deployment_mode
        logger.info(f"Creating platform collaborators for mode: {deployment_mode}")

        if deployment_mode == "local-dev":
            compute = InMemoryComputePlatform()
            return compute, InMemoryLoadBalancer(platform=compute)

        if deployment_mode in ("aws-mock", "aws-prod"):
            # Imported lazily so local-dev never touches boto3 configuration
            from ..aws import EcsComputePlatform, ElbLoadBalancer
            compute = EcsComputePlatform(settings=settings)
            return compute, ElbLoadBalancer(platform=compute, settings=settings)

        raise ValueError(
            f"Invalid deployment_mode: {deployment_mode}. "
            f"Choose from ['local-dev', 'aws-mock', 'aws-prod']"
        )
