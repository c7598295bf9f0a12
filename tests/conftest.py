from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Sequence
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path

import pytest

from kubestrap.config import ClusterConfig
from kubestrap.constants import KUBECONFIG_PATH, SENTINEL_PATH
from kubestrap.core.exceptions import ProbeUnreachable
from kubestrap.providers.aws.config import AWS
from kubestrap.types import ExternalAddress, NetworkingStack, ProvisionedNode, Role, node_name

CONTROL_PLANE_INTERNAL = "10.0.1.10"
EXTERNAL_IP = "203.0.113.10"

KUBECONFIG = f"""\
apiVersion: v1
clusters:
- cluster:
    certificate-authority-data: LS0tLS1CRUdJTg==
    server: https://{CONTROL_PLANE_INTERNAL}:6443
  name: kubernetes
contexts:
- context:
    cluster: kubernetes
    user: kubernetes-admin
  name: kubernetes-admin@kubernetes
current-context: kubernetes-admin@kubernetes
kind: Config
users:
- name: kubernetes-admin
  user:
    client-certificate-data: Y2VydA==
    client-key-data: a2V5
"""


class FakeProvider:
    """In-memory CloudResourceProvider recording every call in order."""

    def __init__(
        self,
        *,
        fail_nodes: Sequence[str] = (),
        fail_networking: bool = False,
        delay: float = 0.0,
    ) -> None:
        self.calls: list[str] = []
        self.user_data: dict[str, str] = {}
        self.security_groups: dict[str, tuple[str, ...]] = {}
        self._fail_nodes = set(fail_nodes)
        self._fail_networking = fail_networking
        self._delay = delay

    async def create_networking_stack(self) -> NetworkingStack:
        self.calls.append("networking")
        await asyncio.sleep(self._delay)
        if self._fail_networking:
            raise RuntimeError("VpcLimitExceeded")
        return NetworkingStack(
            vpc_id="vpc-1", subnet_id="subnet-1", security_group_ids=("sg-1",), key_name="key-1",
        )

    async def create_instance(
        self,
        role: Role,
        machine_class: str,
        user_data: str,
        security_groups: Sequence[str],
        *,
        index: int | None = None,
    ) -> ProvisionedNode:
        name = node_name(role, index)
        self.calls.append(f"create:{name}")
        self.user_data[name] = user_data
        self.security_groups[name] = tuple(security_groups)
        await asyncio.sleep(self._delay)
        if name in self._fail_nodes:
            raise RuntimeError("InsufficientInstanceCapacity")

        internal = CONTROL_PLANE_INTERNAL if index is None else f"10.0.1.{20 + index}"
        return ProvisionedNode(
            role=role, internal_address=internal, provider_id=f"i-{name}", index=index,
        )

    async def allocate_external_address(self) -> ExternalAddress:
        self.calls.append("allocate")
        return ExternalAddress(allocation_id="eipalloc-1", public_ip=EXTERNAL_IP)

    async def associate_external_address(
        self,
        address: ExternalAddress,
        instance: ProvisionedNode,
    ) -> ProvisionedNode:
        self.calls.append(f"associate:{instance.name}")
        return replace(instance, external_address=address.public_ip)


class FakeTransport:
    def __init__(self, host: str, files: dict[str, str]) -> None:
        self.host = host
        self.files = files

    async def file_exists(self, remote: str) -> bool:
        return remote in self.files

    async def read_file(self, remote: str) -> str:
        if remote not in self.files:
            raise FileNotFoundError(remote)
        return self.files[remote]


class FakeChannels:
    """NodeChannels stand-in serving per-node in-memory files."""

    def __init__(self) -> None:
        self.files: dict[str, dict[str, str]] = {}
        self.unreachable: set[str] = set()
        self.sessions: list[str] = []
        self.closed = False

    def mark_ready(self, name: str) -> None:
        self.files.setdefault(name, {})[SENTINEL_PATH] = ""

    @asynccontextmanager
    async def session(self, node: ProvisionedNode) -> AsyncIterator[FakeTransport]:
        self.sessions.append(node.name)
        if node.name in self.unreachable:
            raise ConnectionRefusedError(f"{node.reachable_address}:22")
        yield FakeTransport(node.reachable_address, self.files.setdefault(node.name, {}))

    async def close(self) -> None:
        self.closed = True


class RoundProbe:
    """Probe where each node turns ready from a given round on (default: round 1).

    Every round starts with the control plane, so its probes count rounds.
    """

    def __init__(
        self,
        ready_from: dict[str, int] | None = None,
        unreachable_until: dict[str, int] | None = None,
    ) -> None:
        self.ready_from = ready_from or {}
        self.unreachable_until = unreachable_until or {}
        self.calls: list[tuple[int, str]] = []
        self.round = 0

    async def __call__(self, node: ProvisionedNode) -> bool:
        if node.role is Role.CONTROL_PLANE:
            self.round += 1
        self.calls.append((self.round, node.name))
        if self.round < self.unreachable_until.get(node.name, 0):
            raise ProbeUnreachable(node.name, "connection refused")
        return self.round >= self.ready_from.get(node.name, 1)


async def no_sleep(_: float) -> None:
    await asyncio.sleep(0)


def make_node(role: Role, index: int | None = None, external: str | None = None) -> ProvisionedNode:
    internal = CONTROL_PLANE_INTERNAL if index is None else f"10.0.1.{20 + index}"
    return ProvisionedNode(
        role=role,
        internal_address=internal,
        provider_id=f"i-{node_name(role, index)}",
        index=index,
        external_address=external,
    )


@pytest.fixture
def provider() -> FakeProvider:
    return FakeProvider()


@pytest.fixture
def channels() -> FakeChannels:
    fake = FakeChannels()
    fake.files["control-plane"] = {KUBECONFIG_PATH: KUBECONFIG}
    return fake


@pytest.fixture
def cluster_config(tmp_path: Path) -> ClusterConfig:
    return ClusterConfig(
        provider=AWS(),
        workers=2,
        pod_network_cidr="10.244.0.0/16",
        kubeconfig=tmp_path / "kubeconfig",
        poll_interval=0.01,
    )
