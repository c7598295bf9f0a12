"""AWS provider configuration.

Immutable configuration dataclass for the AWS provider.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Literal

type UbuntuVersion = Literal["22.04", "24.04"] | str


@dataclass(frozen=True, slots=True)
class AWS:
    """AWS provider configuration.

    Example:
        >>> from kubestrap.providers.aws import AWS
        >>> config = AWS(region="eu-west-1", operator_cidr="198.51.100.7/32")

    Args:
        region: AWS region for every resource. Default: us-east-1
        network_cidr: CIDR block of the cluster VPC.
        subnet_cidr: CIDR block of the single public subnet.
        operator_cidr: Source range allowed to reach SSH and the API server.
        ami: Custom AMI ID. If None, resolves Ubuntu via SSM Parameter Store.
        ubuntu_version: Ubuntu LTS version for auto-resolved AMIs.
        ssh_public_key_path: Public key imported as the instances' key pair.
        instance_timeout: Seconds to wait for an instance to reach running.
        prefix: Name prefix for tagged resources.
    """

    region: str = "us-east-1"
    network_cidr: str = "10.0.0.0/16"
    subnet_cidr: str = "10.0.1.0/24"
    operator_cidr: str = "0.0.0.0/0"
    ami: str | None = None
    ubuntu_version: UbuntuVersion = "24.04"
    ssh_public_key_path: str = "~/.ssh/id_ed25519.pub"
    instance_timeout: int = 300
    prefix: str = "kubestrap"

    @property
    def type(self) -> str: return "aws"

    @property
    def ami_parameter(self) -> str:
        """SSM parameter holding the current Ubuntu server AMI for this version."""
        # Canonical publishes gp3-backed images from 24.04 on
        volume = "ebs-gp2" if self.ubuntu_version < "24.04" else "ebs-gp3"
        return (
            f"/aws/service/canonical/ubuntu/server/{self.ubuntu_version}"
            f"/stable/current/amd64/hvm/{volume}/ami-id"
        )
