from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any

import pytest
from injector import Injector

from kubestrap.constants import KubestrapTag
from kubestrap.core.exceptions import ConfigurationError, KubestrapError
from kubestrap.providers import CloudResourceProvider
from kubestrap.providers.aws import AWS, AWSModule, AWSProvider, EC2ClientFactory, SSMClientFactory
from kubestrap.types import Role

pytestmark = [pytest.mark.timeout(10)]


class FakeEC2:
    """Records calls; answers with deterministic ids."""

    def __init__(self, pending_polls: int = 1) -> None:
        self.calls: list[tuple[str, dict[str, Any]]] = []
        self.key_pairs: set[str] = set()
        self.states: dict[str, list[str]] = {}
        self.pending_polls = pending_polls
        self.fail: set[str] = set()
        self._instances = 0

    def __getattr__(self, name: str):
        if name.startswith("_"):
            raise AttributeError(name)

        async def call(**kwargs: Any) -> dict[str, Any]:
            self.calls.append((name, kwargs))
            if name in self.fail:
                raise RuntimeError(f"{name} failed")
            handler = getattr(self, f"_{name}", None)
            return handler(**kwargs) if handler else {}

        return call

    def names(self) -> list[str]:
        return [name for name, _ in self.calls]

    def kwargs(self, name: str) -> dict[str, Any]:
        return next(kw for n, kw in self.calls if n == name)

    def _describe_key_pairs(self, KeyNames: list[str]) -> dict[str, Any]:
        if KeyNames[0] not in self.key_pairs:
            raise RuntimeError("An error occurred (InvalidKeyPair.NotFound)")
        return {"KeyPairs": [{"KeyName": KeyNames[0]}]}

    def _import_key_pair(self, KeyName: str, **_: Any) -> dict[str, Any]:
        self.key_pairs.add(KeyName)
        return {}

    def _create_vpc(self, **_: Any) -> dict[str, Any]:
        return {"Vpc": {"VpcId": "vpc-1"}}

    def _create_subnet(self, **_: Any) -> dict[str, Any]:
        return {"Subnet": {"SubnetId": "subnet-1"}}

    def _create_internet_gateway(self, **_: Any) -> dict[str, Any]:
        return {"InternetGateway": {"InternetGatewayId": "igw-1"}}

    def _create_route_table(self, **_: Any) -> dict[str, Any]:
        return {"RouteTable": {"RouteTableId": "rtb-1"}}

    def _create_security_group(self, **_: Any) -> dict[str, Any]:
        return {"GroupId": "sg-1"}

    def _run_instances(self, **_: Any) -> dict[str, Any]:
        self._instances += 1
        instance_id = f"i-{self._instances}"
        self.states[instance_id] = ["pending"] * self.pending_polls + ["running"]
        return {"Instances": [{"InstanceId": instance_id}]}

    def _describe_instances(self, InstanceIds: list[str]) -> dict[str, Any]:
        instance_id = InstanceIds[0]
        states = self.states[instance_id]
        state = states.pop(0) if len(states) > 1 else states[0]
        n = int(instance_id.split("-")[1])
        return {"Reservations": [{"Instances": [{
            "InstanceId": instance_id,
            "State": {"Name": state},
            "PrivateIpAddress": f"10.0.1.{n}",
            "PublicIpAddress": f"198.51.100.{n}",
        }]}]}

    def _terminate_instances(self, InstanceIds: list[str]) -> dict[str, Any]:
        for instance_id in InstanceIds:
            self.states[instance_id] = ["shutting-down", "terminated"]
        return {}

    def _allocate_address(self, **_: Any) -> dict[str, Any]:
        return {"AllocationId": "eipalloc-1", "PublicIp": "203.0.113.10"}


class FakeSSM:
    def __init__(self) -> None:
        self.names: list[str] = []

    async def get_parameter(self, Name: str) -> dict[str, Any]:
        self.names.append(Name)
        return {"Parameter": {"Value": "ami-ubuntu"}}


def _factory(client: Any):
    @asynccontextmanager
    async def factory() -> AsyncIterator[Any]:
        yield client

    return factory


@pytest.fixture
def public_key(tmp_path: Path) -> Path:
    path = tmp_path / "id_ed25519.pub"
    path.write_text("ssh-ed25519 AAAAC3NzaC1lZDI1NTE5AAAAIFake operator@laptop\n")
    return path


@pytest.fixture
def ec2() -> FakeEC2:
    return FakeEC2()


@pytest.fixture
def ssm() -> FakeSSM:
    return FakeSSM()


@pytest.fixture
def aws(public_key: Path, ec2: FakeEC2, ssm: FakeSSM) -> AWSProvider:
    config = AWS(ssh_public_key_path=str(public_key), operator_cidr="198.51.100.7/32")
    return AWSProvider(
        config,
        EC2ClientFactory(_factory(ec2)),
        SSMClientFactory(_factory(ssm)),
        cluster="dev",
        poll_interval=0,
    )


class TestModule:
    def test_injector_provides_factories(self):
        injector = Injector([AWSModule(AWS(region="eu-west-1"))])
        assert isinstance(injector.get(EC2ClientFactory), EC2ClientFactory)
        assert isinstance(injector.get(SSMClientFactory), SSMClientFactory)
        assert injector.get(AWS).region == "eu-west-1"

    def test_create(self):
        provider = AWSProvider.create(AWS(), cluster="dev")
        assert provider.name == "kubestrap-dev"
        assert isinstance(provider, CloudResourceProvider)


class TestNetworking:
    @pytest.mark.asyncio
    async def test_creates_stack(self, aws: AWSProvider, ec2: FakeEC2):
        network = await aws.create_networking_stack()
        assert network.vpc_id == "vpc-1"
        assert network.subnet_id == "subnet-1"
        assert network.security_group_ids == ("sg-1",)
        assert network.key_name is not None and network.key_name.startswith("kubestrap-")
        assert ec2.kwargs("create_route")["GatewayId"] == "igw-1"
        assert ec2.kwargs("modify_subnet_attribute")["MapPublicIpOnLaunch"] == {"Value": True}

    @pytest.mark.asyncio
    async def test_created_once(self, aws: AWSProvider, ec2: FakeEC2):
        first = await aws.create_networking_stack()
        second = await aws.create_networking_stack()
        assert first is second
        assert ec2.names().count("create_vpc") == 1

    @pytest.mark.asyncio
    async def test_security_group_rules(self, aws: AWSProvider, ec2: FakeEC2):
        await aws.create_networking_stack()
        rules = ec2.kwargs("authorize_security_group_ingress")["IpPermissions"]
        ports = {r.get("FromPort") for r in rules}
        assert ports == {None, 22, 6443}
        for rule in rules:
            if "IpRanges" in rule:
                assert rule["IpRanges"][0]["CidrIp"] == "198.51.100.7/32"

    @pytest.mark.asyncio
    async def test_existing_key_pair_is_reused(self, aws: AWSProvider, ec2: FakeEC2):
        network = await aws.create_networking_stack()
        ec2.calls.clear()
        assert await aws._ensure_key_pair() == network.key_name
        assert "import_key_pair" not in ec2.names()

    @pytest.mark.asyncio
    async def test_missing_public_key(self, tmp_path: Path, ec2: FakeEC2, ssm: FakeSSM):
        provider = AWSProvider(
            AWS(ssh_public_key_path=str(tmp_path / "missing.pub")),
            EC2ClientFactory(_factory(ec2)),
            SSMClientFactory(_factory(ssm)),
        )
        with pytest.raises(ConfigurationError):
            await provider.create_networking_stack()


class TestInstances:
    @pytest.mark.asyncio
    async def test_create_instance(self, aws: AWSProvider, ec2: FakeEC2, ssm: FakeSSM):
        node = await aws.create_instance(Role.WORKER, "t3.medium", "#!/bin/bash\n", ["sg-1"], index=0)
        assert node.name == "worker-0"
        assert node.provider_id == "i-1"
        assert node.internal_address == "10.0.1.1"
        assert node.external_address == "198.51.100.1"

        launch = ec2.kwargs("run_instances")
        assert launch["ImageId"] == "ami-ubuntu"
        assert launch["InstanceType"] == "t3.medium"
        assert launch["UserData"] == "#!/bin/bash\n"
        assert launch["NetworkInterfaces"][0]["Groups"] == ["sg-1"]
        tags = {t["Key"]: t["Value"] for t in launch["TagSpecifications"][0]["Tags"]}
        assert tags["Name"] == "kubestrap-dev-worker-0"
        assert tags[KubestrapTag.ROLE] == "worker"
        assert tags[KubestrapTag.NODE_INDEX] == "0"
        assert ssm.names == [AWS().ami_parameter]

    @pytest.mark.asyncio
    async def test_ami_resolved_once(self, aws: AWSProvider, ssm: FakeSSM):
        await aws.create_instance(Role.CONTROL_PLANE, "t3.medium", "", ["sg-1"])
        await aws.create_instance(Role.WORKER, "t3.medium", "", ["sg-1"], index=0)
        assert len(ssm.names) == 1

    @pytest.mark.asyncio
    async def test_configured_ami_skips_ssm(self, public_key: Path, ec2: FakeEC2, ssm: FakeSSM):
        provider = AWSProvider(
            AWS(ami="ami-custom", ssh_public_key_path=str(public_key)),
            EC2ClientFactory(_factory(ec2)),
            SSMClientFactory(_factory(ssm)),
            poll_interval=0,
        )
        await provider.create_instance(Role.CONTROL_PLANE, "t3.medium", "", ["sg-1"])
        assert ec2.kwargs("run_instances")["ImageId"] == "ami-custom"
        assert ssm.names == []

    @pytest.mark.asyncio
    async def test_terminated_instance_fails(self, aws: AWSProvider, ec2: FakeEC2):
        original = ec2._run_instances

        def run_then_die(**kwargs: Any) -> dict[str, Any]:
            result = original(**kwargs)
            ec2.states[result["Instances"][0]["InstanceId"]] = ["terminated"]
            return result

        ec2._run_instances = run_then_die  # type: ignore[method-assign]
        with pytest.raises(KubestrapError, match="terminated"):
            await aws.create_instance(Role.CONTROL_PLANE, "t3.medium", "", ["sg-1"])


class TestExternalAddress:
    @pytest.mark.asyncio
    async def test_allocate_and_associate(self, aws: AWSProvider, ec2: FakeEC2):
        node = await aws.create_instance(Role.CONTROL_PLANE, "t3.medium", "", ["sg-1"])
        address = await aws.allocate_external_address()
        assert address.public_ip == "203.0.113.10"

        bound = await aws.associate_external_address(address, node)
        assert bound.external_address == "203.0.113.10"
        assert bound.internal_address == node.internal_address
        assert ec2.kwargs("associate_address") == {"AllocationId": "eipalloc-1", "InstanceId": "i-1"}


class TestTeardown:
    @pytest.mark.asyncio
    async def test_deletes_created_resources(self, aws: AWSProvider, ec2: FakeEC2):
        await aws.create_instance(Role.CONTROL_PLANE, "t3.medium", "", ["sg-1"])
        await aws.allocate_external_address()
        ec2.calls.clear()

        await aws.teardown()

        names = ec2.names()
        assert names[0] == "terminate_instances"
        assert names.index("release_address") < names.index("delete_security_group")
        assert names.index("detach_internet_gateway") < names.index("delete_internet_gateway")
        assert names.index("delete_subnet") < names.index("delete_route_table") < names.index("delete_vpc")
        assert names[-1] == "delete_vpc"

    @pytest.mark.asyncio
    async def test_reports_failures_after_trying_everything(self, aws: AWSProvider, ec2: FakeEC2):
        await aws.create_networking_stack()
        ec2.fail.add("delete_security_group")

        with pytest.raises(KubestrapError, match="sg-1"):
            await aws.teardown()
        assert "delete_vpc" in ec2.names()

    @pytest.mark.asyncio
    async def test_nothing_created(self, aws: AWSProvider, ec2: FakeEC2):
        await aws.teardown()
        assert ec2.calls == []
