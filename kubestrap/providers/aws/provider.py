"""AWS cloud resource provider.

Builds a dedicated VPC with one public subnet per cluster, launches
instances with the composed user data, and manages the Elastic IP the
control plane is reached through.
"""

from __future__ import annotations

import asyncio
import hashlib
from collections.abc import Sequence
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any

from injector import Injector
from loguru import logger
from tenacity import AsyncRetrying, RetryError, retry_if_exception_type, stop_after_delay, wait_fixed

from kubestrap.constants import API_SERVER_PORT, InstanceState, KubestrapTag
from kubestrap.core.exceptions import ConfigurationError, KubestrapError
from kubestrap.types import ExternalAddress, NetworkingStack, ProvisionedNode, Role

from .clients import AWSModule, EC2ClientFactory, SSMClientFactory
from .config import AWS


class _InstancePendingError(Exception):
    """Instance not yet in the expected state - retry."""


@dataclass
class _Created:
    """Resources created by this provider, in creation order."""

    vpc_id: str | None = None
    subnet_id: str | None = None
    internet_gateway_id: str | None = None
    route_table_id: str | None = None
    security_group_id: str | None = None
    instance_ids: list[str] = field(default_factory=list)
    allocation_ids: list[str] = field(default_factory=list)


class AWSProvider:
    """CloudResourceProvider backed by EC2.

    Example:
        >>> provider = AWSProvider.create(AWS(region="us-west-2"), cluster="dev")
        >>> network = await provider.create_networking_stack()
    """

    def __init__(
        self,
        config: AWS,
        ec2: EC2ClientFactory,
        ssm: SSMClientFactory,
        *,
        cluster: str = "default",
        poll_interval: float = 5.0,
    ) -> None:
        self.config = config
        self.cluster = cluster
        self._ec2 = ec2
        self._ssm = ssm
        self._poll_interval = poll_interval
        self._network: NetworkingStack | None = None
        self._network_lock = asyncio.Lock()
        self._ami: str | None = config.ami
        self._created = _Created()

    @classmethod
    def create(cls, config: AWS, cluster: str = "default") -> AWSProvider:
        injector = Injector([AWSModule(config)])
        return cls(
            config,
            injector.get(EC2ClientFactory),
            injector.get(SSMClientFactory),
            cluster=cluster,
        )

    @property
    def name(self) -> str:
        return f"{self.config.prefix}-{self.cluster}"

    def _tags(self, resource_type: str, name: str, **extra: str) -> list[dict[str, Any]]:
        tags = [
            {"Key": "Name", "Value": name},
            {"Key": KubestrapTag.MANAGED, "Value": "true"},
            {"Key": KubestrapTag.CLUSTER, "Value": self.cluster},
        ]
        tags.extend({"Key": k, "Value": v} for k, v in extra.items())
        return [{"ResourceType": resource_type, "Tags": tags}]

    # -------------------------------------------------------------------------
    # Networking
    # -------------------------------------------------------------------------

    async def create_networking_stack(self) -> NetworkingStack:
        async with self._network_lock:
            if self._network is None:
                self._network = await self._create_network()
            return self._network

    async def _create_network(self) -> NetworkingStack:
        key_name = await self._ensure_key_pair()
        created = self._created

        async with self._ec2() as ec2:
            resp = await ec2.create_vpc(
                CidrBlock=self.config.network_cidr,
                TagSpecifications=self._tags("vpc", f"{self.name}-vpc"),
            )
            created.vpc_id = vpc_id = resp["Vpc"]["VpcId"]
            await ec2.modify_vpc_attribute(VpcId=vpc_id, EnableDnsHostnames={"Value": True})

            resp = await ec2.create_subnet(
                VpcId=vpc_id,
                CidrBlock=self.config.subnet_cidr,
                TagSpecifications=self._tags("subnet", f"{self.name}-subnet"),
            )
            created.subnet_id = subnet_id = resp["Subnet"]["SubnetId"]
            await ec2.modify_subnet_attribute(
                SubnetId=subnet_id, MapPublicIpOnLaunch={"Value": True},
            )

            resp = await ec2.create_internet_gateway(
                TagSpecifications=self._tags("internet-gateway", f"{self.name}-igw"),
            )
            created.internet_gateway_id = igw_id = resp["InternetGateway"]["InternetGatewayId"]
            await ec2.attach_internet_gateway(InternetGatewayId=igw_id, VpcId=vpc_id)

            resp = await ec2.create_route_table(
                VpcId=vpc_id,
                TagSpecifications=self._tags("route-table", f"{self.name}-rtb"),
            )
            created.route_table_id = rtb_id = resp["RouteTable"]["RouteTableId"]
            await ec2.create_route(
                RouteTableId=rtb_id, DestinationCidrBlock="0.0.0.0/0", GatewayId=igw_id,
            )
            await ec2.associate_route_table(RouteTableId=rtb_id, SubnetId=subnet_id)

            sg_id = await self._create_security_group(ec2, vpc_id)

        logger.info("AWS: network ready (vpc={vpc}, subnet={subnet})", vpc=vpc_id, subnet=subnet_id)
        return NetworkingStack(
            vpc_id=vpc_id,
            subnet_id=subnet_id,
            security_group_ids=(sg_id,),
            key_name=key_name,
        )

    async def _create_security_group(self, ec2: Any, vpc_id: str) -> str:
        sg_name = f"{self.name}-sg"
        resp = await ec2.create_security_group(
            GroupName=sg_name,
            Description="kubestrap cluster nodes",
            VpcId=vpc_id,
            TagSpecifications=self._tags("security-group", sg_name),
        )
        sg_id = resp["GroupId"]
        self._created.security_group_id = sg_id

        operator = self.config.operator_cidr
        await ec2.authorize_security_group_ingress(
            GroupId=sg_id,
            IpPermissions=[
                {
                    "IpProtocol": "-1",
                    "UserIdGroupPairs": [
                        {"GroupId": sg_id, "Description": "All traffic between nodes"}
                    ],
                },
                {
                    "IpProtocol": "tcp",
                    "FromPort": 22,
                    "ToPort": 22,
                    "IpRanges": [{"CidrIp": operator, "Description": "SSH"}],
                },
                {
                    "IpProtocol": "tcp",
                    "FromPort": API_SERVER_PORT,
                    "ToPort": API_SERVER_PORT,
                    "IpRanges": [{"CidrIp": operator, "Description": "Kubernetes API"}],
                },
            ],
        )
        return sg_id

    async def _ensure_key_pair(self) -> str:
        """Import the operator's public key to AWS if not present."""
        pub_path = Path(self.config.ssh_public_key_path).expanduser()
        if not pub_path.is_file():
            raise ConfigurationError(
                f"SSH public key {pub_path} not found. Create with: ssh-keygen -t ed25519"
            )
        public_key = pub_path.read_text().strip()

        fingerprint = hashlib.md5(public_key.encode()).hexdigest()[:12]
        key_name = f"{self.config.prefix}-{fingerprint}"

        async with self._ec2() as ec2:
            try:
                response = await ec2.describe_key_pairs(KeyNames=[key_name])
                if response.get("KeyPairs"):
                    return key_name
            except Exception as e:
                if "InvalidKeyPair.NotFound" not in str(e):
                    raise
            await ec2.import_key_pair(KeyName=key_name, PublicKeyMaterial=public_key.encode())

        logger.debug("AWS: imported key pair {name}", name=key_name)
        return key_name

    async def _resolve_ami(self) -> str:
        if self._ami is None:
            param = self.config.ami_parameter
            async with self._ssm() as ssm:
                try:
                    response = await ssm.get_parameter(Name=param)
                except Exception as e:
                    raise ConfigurationError(
                        f"Could not resolve Ubuntu {self.config.ubuntu_version} AMI in "
                        f"{self.config.region} (SSM parameter {param}): {e}"
                    ) from e
            self._ami = response["Parameter"]["Value"]
            logger.debug("AWS: resolved AMI {ami}", ami=self._ami)
        return self._ami

    # -------------------------------------------------------------------------
    # Instances
    # -------------------------------------------------------------------------

    async def create_instance(
        self,
        role: Role,
        machine_class: str,
        user_data: str,
        security_groups: Sequence[str],
        *,
        index: int | None = None,
    ) -> ProvisionedNode:
        network = await self.create_networking_stack()
        ami = await self._resolve_ami()
        node = ProvisionedNode(role=role, internal_address="", provider_id="", index=index)

        extra = {KubestrapTag.ROLE: str(role)}
        if index is not None:
            extra[KubestrapTag.NODE_INDEX] = str(index)

        async with self._ec2() as ec2:
            resp = await ec2.run_instances(
                ImageId=ami,
                InstanceType=machine_class,
                MinCount=1,
                MaxCount=1,
                KeyName=network.key_name,
                UserData=user_data,
                NetworkInterfaces=[
                    {
                        "DeviceIndex": 0,
                        "SubnetId": network.subnet_id,
                        "Groups": list(security_groups),
                        "AssociatePublicIpAddress": True,
                    }
                ],
                TagSpecifications=self._tags("instance", f"{self.name}-{node.name}", **extra),
            )
        instance_id = resp["Instances"][0]["InstanceId"]
        self._created.instance_ids.append(instance_id)
        logger.debug("AWS: launched {id} for {name}", id=instance_id, name=node.name)

        instance = await self._wait_state(instance_id, InstanceState.RUNNING)
        return replace(
            node,
            provider_id=instance_id,
            internal_address=instance.get("PrivateIpAddress", ""),
            external_address=instance.get("PublicIpAddress"),
        )

    async def _describe(self, instance_id: str) -> dict[str, Any]:
        async with self._ec2() as ec2:
            response = await ec2.describe_instances(InstanceIds=[instance_id])
        return response["Reservations"][0]["Instances"][0]

    async def _wait_state(self, instance_id: str, state: InstanceState) -> dict[str, Any]:
        timeout = self.config.instance_timeout
        try:
            async for attempt in AsyncRetrying(
                stop=stop_after_delay(timeout),
                wait=wait_fixed(self._poll_interval),
                retry=retry_if_exception_type(_InstancePendingError),
            ):
                with attempt:
                    instance = await self._describe(instance_id)
                    current = instance["State"]["Name"]
                    if current != state:
                        if state is InstanceState.RUNNING and current in (
                            InstanceState.TERMINATED, InstanceState.SHUTTING_DOWN,
                        ):
                            raise KubestrapError(f"Instance {instance_id} is {current}")
                        raise _InstancePendingError(current)
        except RetryError as e:
            raise TimeoutError(
                f"Instance {instance_id} did not become {state} within {timeout}s"
            ) from e
        return instance

    # -------------------------------------------------------------------------
    # External Addresses
    # -------------------------------------------------------------------------

    async def allocate_external_address(self) -> ExternalAddress:
        async with self._ec2() as ec2:
            resp = await ec2.allocate_address(
                Domain="vpc",
                TagSpecifications=self._tags("elastic-ip", f"{self.name}-eip"),
            )
        self._created.allocation_ids.append(resp["AllocationId"])
        return ExternalAddress(allocation_id=resp["AllocationId"], public_ip=resp["PublicIp"])

    async def associate_external_address(
        self,
        address: ExternalAddress,
        instance: ProvisionedNode,
    ) -> ProvisionedNode:
        async with self._ec2() as ec2:
            await ec2.associate_address(
                AllocationId=address.allocation_id,
                InstanceId=instance.provider_id,
            )
        logger.info(
            "AWS: {ip} associated with {name} ({id})",
            ip=address.public_ip, name=instance.name, id=instance.provider_id,
        )
        return replace(instance, external_address=address.public_ip)

    # -------------------------------------------------------------------------
    # Teardown
    # -------------------------------------------------------------------------

    async def teardown(self) -> None:
        """Delete everything this provider created, newest first.

        Every deletion is attempted; failures are logged and reported together.

        Raises:
            KubestrapError: If any resource could not be deleted.
        """
        created = self._created
        errors: list[str] = []

        async def attempt(what: str, call: Any, **kwargs: Any) -> None:
            try:
                await call(**kwargs)
            except Exception as e:
                logger.warning("AWS: failed to delete {what}: {err}", what=what, err=e)
                errors.append(f"{what}: {e}")

        async with self._ec2() as ec2:
            if created.instance_ids:
                await attempt("instances", ec2.terminate_instances, InstanceIds=list(created.instance_ids))

        for instance_id in created.instance_ids:
            try:
                await self._wait_state(instance_id, InstanceState.TERMINATED)
            except (TimeoutError, KubestrapError) as e:
                logger.warning("AWS: {id} not terminated: {err}", id=instance_id, err=e)
                errors.append(f"{instance_id}: {e}")

        async with self._ec2() as ec2:
            for allocation_id in created.allocation_ids:
                await attempt(allocation_id, ec2.release_address, AllocationId=allocation_id)
            if created.security_group_id:
                await attempt(created.security_group_id, ec2.delete_security_group, GroupId=created.security_group_id)
            if created.internet_gateway_id and created.vpc_id:
                await attempt(
                    created.internet_gateway_id, ec2.detach_internet_gateway,
                    InternetGatewayId=created.internet_gateway_id, VpcId=created.vpc_id,
                )
                await attempt(
                    created.internet_gateway_id, ec2.delete_internet_gateway,
                    InternetGatewayId=created.internet_gateway_id,
                )
            if created.subnet_id:
                await attempt(created.subnet_id, ec2.delete_subnet, SubnetId=created.subnet_id)
            if created.route_table_id:
                await attempt(created.route_table_id, ec2.delete_route_table, RouteTableId=created.route_table_id)
            if created.vpc_id:
                await attempt(created.vpc_id, ec2.delete_vpc, VpcId=created.vpc_id)

        self._created = _Created()
        self._network = None

        if errors:
            raise KubestrapError(f"Teardown incomplete: {'; '.join(errors)}")
        logger.info("AWS: cluster {name} torn down", name=self.name)


__all__ = ["AWSProvider"]
