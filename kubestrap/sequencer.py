"""Provisioning sequencer.

Orders provider calls so that every address a script embeds is known
before the script is composed:

    networking ------+
                     +-> control-plane -> associate-address -> worker-N
    external-address +

The external address is allocated before the control plane exists, so its
public IP can be baked into the control-plane user data (certificate SAN
and kubeconfig endpoint). Workers only need the control plane's internal
address and are launched concurrently.
"""

from __future__ import annotations

from dataclasses import replace
from typing import Final

from loguru import logger

from kubestrap.bootstrap import compose_control_plane_script, compose_worker_script
from kubestrap.constants import CONTROL_PLANE_NAME
from kubestrap.core.exceptions import ProvisioningFailed
from kubestrap.graph import ResourceGraph, StepFn, StepResults
from kubestrap.providers.protocols import CloudResourceProvider
from kubestrap.token import BootstrapToken
from kubestrap.types import (
    ClusterState,
    ExternalAddress,
    NetworkingStack,
    NodeSpec,
    ProvisionedNode,
    Role,
    WorkerFailure,
    node_name,
)

NETWORKING: Final = "networking"
EXTERNAL_ADDRESS: Final = "external-address"
CONTROL_PLANE: Final = "control-plane"
ASSOCIATE_ADDRESS: Final = "associate-address"


def worker_step(index: int) -> str:
    return node_name(Role.WORKER, index)


class ProvisioningSequencer:
    """Creates the control plane, then the workers, against a provider."""

    def __init__(self, provider: CloudResourceProvider) -> None:
        self._provider = provider

    async def provision(
        self,
        token: BootstrapToken,
        num_workers: int,
        master_class: str,
        worker_class: str,
        pod_network_cidr: str | None = None,
    ) -> ClusterState:
        """Provision one control plane and ``num_workers`` workers.

        Raises:
            ValueError: If ``num_workers`` is negative.
            ProvisioningFailed: If the control plane (or anything it depends
                on) cannot be created. No worker is created in that case.
        """
        if num_workers < 0:
            raise ValueError(f"num_workers must be >= 0, got {num_workers}")

        graph = self.plan(token, num_workers, master_class, worker_class, pod_network_cidr)

        logger.info(
            "Provisioning control plane ({cls}) and {n} workers ({wcls})",
            cls=master_class, n=num_workers, wcls=worker_class,
        )

        try:
            outcome = await graph.run()
        except ProvisioningFailed:
            raise
        except Exception as e:
            raise ProvisioningFailed(CONTROL_PLANE_NAME, str(e)) from e

        control_plane: ProvisionedNode = outcome.results[ASSOCIATE_ADDRESS]

        workers: list[ProvisionedNode] = []
        failures: list[WorkerFailure] = []
        for i in range(num_workers):
            step = worker_step(i)
            if step in outcome.results:
                workers.append(outcome.results[step])
                continue
            error = outcome.failures[step]
            failure = (
                error if isinstance(error, ProvisioningFailed)
                else ProvisioningFailed(step, str(error))
            )
            logger.warning("Worker {name} failed: {reason}", name=step, reason=failure.reason)
            failures.append(WorkerFailure(index=i, error=failure))

        logger.info(
            "Provisioned {ok}/{n} workers, control plane at {ip}",
            ok=len(workers), n=num_workers, ip=control_plane.external_address,
        )

        return ClusterState(
            token=token,
            control_plane=control_plane,
            workers=tuple(workers),
            failed_workers=tuple(failures),
        )

    def plan(
        self,
        token: BootstrapToken,
        num_workers: int,
        master_class: str,
        worker_class: str,
        pod_network_cidr: str | None = None,
    ) -> ResourceGraph:
        """Build the resource graph for one cluster without running it."""
        provider = self._provider

        async def networking(_: StepResults) -> NetworkingStack:
            return await provider.create_networking_stack()

        async def external_address(_: StepResults) -> ExternalAddress:
            address = await provider.allocate_external_address()
            logger.debug("Allocated external address {ip}", ip=address.public_ip)
            return address

        async def control_plane(results: StepResults) -> ProvisionedNode:
            network: NetworkingStack = results[NETWORKING]
            address: ExternalAddress = results[EXTERNAL_ADDRESS]
            spec = NodeSpec(
                role=Role.CONTROL_PLANE,
                machine_class=master_class,
                script=compose_control_plane_script(token, pod_network_cidr, address.public_ip),
            )
            return await _create(provider, spec, network)

        async def associate(results: StepResults) -> ProvisionedNode:
            address: ExternalAddress = results[EXTERNAL_ADDRESS]
            node: ProvisionedNode = results[CONTROL_PLANE]
            bound = await provider.associate_external_address(address, node)
            if not bound.external_address:
                bound = replace(bound, external_address=address.public_ip)
            if not bound.internal_address:
                raise ProvisioningFailed(CONTROL_PLANE_NAME, "provider returned no internal address")
            return bound

        graph = ResourceGraph()
        graph.add(NETWORKING, networking)
        graph.add(EXTERNAL_ADDRESS, external_address)
        graph.add(CONTROL_PLANE, control_plane, after=(NETWORKING, EXTERNAL_ADDRESS))
        graph.add(ASSOCIATE_ADDRESS, associate, after=(CONTROL_PLANE,))

        for i in range(num_workers):
            graph.add(
                worker_step(i),
                _worker(provider, token, worker_class, i),
                after=(NETWORKING, ASSOCIATE_ADDRESS),
                optional=True,
            )

        return graph


def _worker(
    provider: CloudResourceProvider,
    token: BootstrapToken,
    worker_class: str,
    index: int,
) -> StepFn:
    async def run(results: StepResults) -> ProvisionedNode:
        network: NetworkingStack = results[NETWORKING]
        control_plane: ProvisionedNode = results[ASSOCIATE_ADDRESS]
        spec = NodeSpec(
            role=Role.WORKER,
            index=index,
            machine_class=worker_class,
            script=compose_worker_script(token, control_plane.internal_address, index),
        )
        return await _create(provider, spec, network)

    return run


async def _create(
    provider: CloudResourceProvider,
    spec: NodeSpec,
    network: NetworkingStack,
) -> ProvisionedNode:
    logger.info("Creating {name} ({cls})", name=spec.name, cls=spec.machine_class)
    try:
        node = await provider.create_instance(
            spec.role,
            spec.machine_class,
            spec.script,
            network.security_group_ids,
            index=spec.index,
        )
    except Exception as e:
        raise ProvisioningFailed(spec.name, str(e)) from e

    if node.role is not spec.role or node.index != spec.index:
        raise ProvisioningFailed(spec.name, f"provider returned mismatched node {node.name}")

    logger.info(
        "Created {name}: {id} at {ip}",
        name=spec.name, id=node.provider_id, ip=node.internal_address,
    )
    return node


__all__ = ["ProvisioningSequencer"]
