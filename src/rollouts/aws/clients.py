"""AWS client management."""
import logging
import os
from typing import Any, Dict

import boto3

from ..settings import get_settings

logger = logging.getLogger(__name__)


class AWSClientManager:
    """Singleton manager for AWS service clients."""
    _instance = None
    _clients: Dict[str, Any] = {}

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super(AWSClientManager, cls).__new__(cls)
            cls._instance._initialize()
        return cls._instance

    def _initialize(self):
        """Initialize the client manager with settings."""
        self.settings = get_settings()

        self.region = self.settings.aws_region
        self.endpoint_url = self.settings.aws_endpoint_url
        self.mode = self.settings.deployment_mode

        logger.info(f"Initializing AWSClientManager (mode={self.mode}, region={self.region})")

    def get_client(self, service_name: str) -> Any:
        """Get or create an AWS service client."""
        if service_name in self._clients:
            return self._clients[service_name]

        client_kwargs = {
            'region_name': self.region
        }

        # SSO profiles only apply to real AWS
        aws_profile = os.environ.get('AWS_PROFILE')
        if aws_profile and self.mode == 'aws-prod':
            session = boto3.Session(profile_name=aws_profile)
            client = session.client(service_name, region_name=self.region)
            self._clients[service_name] = client
            logger.debug(f"Created {service_name} client using profile: {aws_profile}")
            return client

        if self.settings.aws_access_key_id:
            client_kwargs['aws_access_key_id'] = self.settings.aws_access_key_id
        if self.settings.aws_secret_access_key:
            client_kwargs['aws_secret_access_key'] = self.settings.aws_secret_access_key

        # Endpoint override for moto server / localstack
        if self.endpoint_url and self.mode == 'aws-mock':
            client_kwargs['endpoint_url'] = self.endpoint_url

        client = boto3.client(service_name, **client_kwargs)
        self._clients[service_name] = client
        logger.debug(f"Created {service_name} client")
        return client


def get_ecs_client():
    """Get the ECS client."""
    return AWSClientManager().get_client('ecs')


def get_elbv2_client():
    """Get the Elastic Load Balancing v2 client."""
    return AWSClientManager().get_client('elbv2')
