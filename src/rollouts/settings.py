# src/rollouts/settings.py
from functools import lru_cache
from typing import List, Optional

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """
    Single source of truth for rollout orchestration settings.

    Configuration precedence:
    1. Environment variables (highest priority)
    2. .env file (if exists)
    3. Default values in this class (lowest priority)

    Usage:
        from rollouts.settings import get_settings
        settings = get_settings()
        timeout = settings.health_check_timeout_seconds
    """

    app_name: str = Field(
        default="ecs-rollouts",
        description="Application name"
    )

    # Deployment Mode
    deployment_mode: str = Field(
        default="local-dev",
        description="Deployment mode: local-dev, aws-mock, or aws-prod"
    )

    # AWS Core Settings
    aws_region: str = Field(
        default="us-east-1",
        alias="AWS_DEFAULT_REGION"
    )

    aws_access_key_id: Optional[str] = Field(
        default=None,
        alias="AWS_ACCESS_KEY_ID"
    )

    aws_secret_access_key: Optional[str] = Field(
        default=None,
        alias="AWS_SECRET_ACCESS_KEY"
    )

    aws_endpoint_url: Optional[str] = Field(
        default=None,
        alias="AWS_ENDPOINT_URL"
    )

    # Ledger
    ledger_db_path: str = Field(
        default="rollouts.db",
        description="SQLite file backing the deployment ledger"
    )

    # Target Registry
    default_target_count: int = Field(
        default=2,
        ge=1,
        description="Targets provisioned per candidate group when no size is given"
    )

    provision_timeout_seconds: float = Field(
        default=300.0,
        gt=0,
        description="Upper bound on waiting for the platform to report provisioned targets"
    )
    platform_max_attempts: int = Field(
        default=3,
        ge=1,
        description="Attempts for platform calls failing with transient errors"
    )
    platform_backoff_seconds: float = Field(default=1.0, ge=0)

    # Health Prober
    probe_interval_seconds: float = Field(default=5.0, gt=0)
    healthy_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive successful probes before a target is HEALTHY"
    )
    unhealthy_threshold: int = Field(
        default=3,
        ge=1,
        description="Consecutive failed probes before a target is UNHEALTHY"
    )
    unknown_grace_period_seconds: float = Field(
        default=60.0,
        ge=0,
        description="How long UNKNOWN targets are tolerated before counting as unhealthy"
    )
    health_check_timeout_seconds: float = Field(
        default=600.0,
        gt=0,
        description="Hard timeout for the HEALTH_CHECKING state"
    )

    # Traffic Shifter
    ramp_steps: List[float] = Field(
        default_factory=lambda: [0.1, 0.5, 1.0],
        description="Canary ramp: candidate traffic fractions applied in order"
    )
    step_bake_seconds: float = Field(
        default=30.0,
        ge=0,
        description="Time each ramp step is observed before the next one"
    )
    routing_max_attempts: int = Field(default=3, ge=1)
    routing_backoff_seconds: float = Field(default=1.0, ge=0)
    split_confirm_timeout_seconds: float = Field(default=60.0, gt=0)
    split_poll_interval_seconds: float = Field(default=1.0, gt=0)

    # State machine
    control_poll_interval_seconds: float = Field(default=2.0, gt=0)
    io_workers: int = Field(
        default=8,
        ge=1,
        description="Worker threads for calls into the compute platform and load balancer"
    )

    # ECS
    ecs_cluster: str = Field(default="default")
    ecs_launch_type: str = Field(default="FARGATE")
    ecs_subnets: List[str] = Field(default_factory=list)
    ecs_security_groups: List[str] = Field(default_factory=list)
    ecs_assign_public_ip: bool = Field(default=False)

    # ALB
    alb_listener_arn: Optional[str] = Field(default=None)
    alb_target_group_arns: List[str] = Field(
        default_factory=list,
        description="Blue and green ALB target groups that candidate groups alternate between"
    )
    alb_target_port: int = Field(
        default=80,
        ge=1,
        le=65535,
        description="Container port registered with the ip-type ALB target groups"
    )

    # Logging
    log_level: str = Field(
        default="INFO",
        description="Logging level"
    )

    @field_validator('deployment_mode')
    @classmethod
    def validate_deployment_mode(cls, v):
        """Validate deployment mode is one of the allowed values."""
        valid_modes = ["local-dev", "aws-mock", "aws-prod"]
        if v not in valid_modes:
            raise ValueError(f"Invalid deployment_mode: {v}. Must be one of {valid_modes}")
        return v

    @field_validator('ramp_steps')
    @classmethod
    def validate_ramp_steps(cls, v):
        """Ramp steps must increase strictly within (0, 1] and end at full traffic."""
        if not v:
            raise ValueError("ramp_steps must not be empty")
        previous = 0.0
        for step in v:
            if not previous < step <= 1.0:
                raise ValueError(f"ramp_steps must increase strictly within (0, 1]: {v}")
            previous = step
        if v[-1] != 1.0:
            raise ValueError(f"ramp_steps must end at 1.0: {v}")
        return v

    @field_validator('alb_target_group_arns')
    @classmethod
    def validate_target_group_pair(cls, v):
        if v and len(v) != 2:
            raise ValueError("alb_target_group_arns must name exactly two target groups (blue, green)")
        return v

    model_config = SettingsConfigDict(
        case_sensitive=False,
        env_file=".env",
        env_file_encoding="utf-8",
        extra="ignore",
        populate_by_name=True,
    )


@lru_cache()
def get_settings() -> Settings:
    """
    Get cached settings instance.
    This ensures we only create one Settings instance per process.
    """
    return Settings()
