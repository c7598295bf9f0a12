"""AWS provider for kubestrap.

Usage:
    from kubestrap.providers.aws import AWS, AWSProvider

    provider = AWSProvider.create(AWS(region="us-east-1"), cluster="dev")
"""

from .clients import AWSModule, EC2ClientFactory, SSMClientFactory
from .config import AWS
from .provider import AWSProvider

__all__ = [
    "AWS",
    "AWSModule",
    "AWSProvider",
    "EC2ClientFactory",
    "SSMClientFactory",
]
