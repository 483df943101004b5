from .ecs import EcsComputePlatform
from .elb import ElbLoadBalancer

__all__ = ["EcsComputePlatform", "ElbLoadBalancer"]
