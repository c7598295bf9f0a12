"""Core data types shared across the bootstrap pipeline.

All types are immutable: a ClusterState is assembled once by the
sequencer and then only read by the poller and the credential retriever.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import StrEnum
from pathlib import Path

from kubestrap.constants import CONTROL_PLANE_NAME, WORKER_NAME_PREFIX
from kubestrap.core.exceptions import ProvisioningFailed
from kubestrap.token import BootstrapToken


class Role(StrEnum):
    """Node role inside the cluster."""

    CONTROL_PLANE = "control-plane"
    WORKER = "worker"


def node_name(role: Role, index: int | None = None) -> str:
    """Stable node name: ``control-plane`` or ``worker-<index>``."""
    match role:
        case Role.CONTROL_PLANE:
            return CONTROL_PLANE_NAME
        case Role.WORKER if index is not None:
            return f"{WORKER_NAME_PREFIX}{index}"
        case _:
            raise ValueError("Worker nodes require an index")


def _check_index(role: Role, index: int | None) -> None:
    if role is Role.WORKER and (index is None or index < 0):
        raise ValueError("Worker nodes require a non-negative index")
    if role is Role.CONTROL_PLANE and index is not None:
        raise ValueError("The control plane has no index")


@dataclass(frozen=True, slots=True)
class NodeSpec:
    """Request for one node: role, machine class and startup script."""

    role: Role
    machine_class: str
    script: str = field(repr=False)
    index: int | None = None

    def __post_init__(self) -> None:
        _check_index(self.role, self.index)

    @property
    def name(self) -> str:
        return node_name(self.role, self.index)


@dataclass(frozen=True, slots=True)
class ProvisionedNode:
    """A node as reported by the cloud resource provider."""

    role: Role
    internal_address: str
    provider_id: str
    index: int | None = None
    external_address: str | None = None

    def __post_init__(self) -> None:
        _check_index(self.role, self.index)

    @property
    def name(self) -> str:
        return node_name(self.role, self.index)

    @property
    def reachable_address(self) -> str:
        """Address used by the operator's machine, preferring the external one."""
        return self.external_address or self.internal_address


@dataclass(frozen=True, slots=True)
class ExternalAddress:
    """An allocated public address, possibly not yet associated."""

    allocation_id: str
    public_ip: str


@dataclass(frozen=True, slots=True)
class NetworkingStack:
    """Network resources every node is attached to."""

    vpc_id: str
    subnet_id: str
    security_group_ids: tuple[str, ...]
    key_name: str | None = None


@dataclass(frozen=True, slots=True)
class WorkerFailure:
    """A worker that could not be provisioned."""

    index: int
    error: ProvisioningFailed

    @property
    def name(self) -> str:
        return node_name(Role.WORKER, self.index)


@dataclass(frozen=True, slots=True)
class ClusterState:
    """Everything known about one bootstrap run."""

    token: BootstrapToken
    control_plane: ProvisionedNode
    workers: tuple[ProvisionedNode, ...] = ()
    failed_workers: tuple[WorkerFailure, ...] = ()

    @property
    def nodes(self) -> tuple[ProvisionedNode, ...]:
        """Control plane first, then workers ordered by index."""
        return (self.control_plane, *self.workers)

    @property
    def complete(self) -> bool:
        return not self.failed_workers


@dataclass(frozen=True, slots=True)
class BootstrapResult:
    """Outcome of a successful bootstrap run."""

    state: ClusterState
    kubeconfig_path: Path


__all__ = [
    "BootstrapResult",
    "ClusterState",
    "ExternalAddress",
    "NetworkingStack",
    "NodeSpec",
    "ProvisionedNode",
    "Role",
    "WorkerFailure",
    "node_name",
]
