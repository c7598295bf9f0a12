"""Cloud resource provider protocol.

The orchestrator never talks to a cloud API directly. Everything it needs
(network, instances, public addresses) goes through this narrow, async
interface. Calls may be slow and eventually consistent; retries, if any,
belong to the implementation.
"""

from __future__ import annotations

from collections.abc import Sequence
from typing import Protocol, runtime_checkable

from kubestrap.types import ExternalAddress, NetworkingStack, ProvisionedNode, Role


@runtime_checkable
class CloudResourceProvider(Protocol):
    """Narrow interface to the cloud the cluster is built on."""

    async def create_networking_stack(self) -> NetworkingStack:
        """Create (or reuse) the network, firewall and SSH key every node uses."""
        ...

    async def create_instance(
        self,
        role: Role,
        machine_class: str,
        user_data: str,
        security_groups: Sequence[str],
        *,
        index: int | None = None,
    ) -> ProvisionedNode:
        """Launch one instance and return it once its internal address is known.

        Args:
            role: Cluster role, used for naming and tagging.
            machine_class: Provider instance type (e.g. ``t3.medium``).
            user_data: Startup script executed at first boot.
            security_groups: Firewall groups to attach.
            index: Worker index (workers only).
        """
        ...

    async def allocate_external_address(self) -> ExternalAddress:
        """Reserve a public address. Its IP is fixed at allocation time."""
        ...

    async def associate_external_address(
        self,
        address: ExternalAddress,
        instance: ProvisionedNode,
    ) -> ProvisionedNode:
        """Bind a reserved address to an instance, returning the updated node."""
        ...


__all__ = ["CloudResourceProvider"]
