"""Cluster bootstrap orchestrator.

Runs the pipeline end to end:

    token -> sequencer -> readiness poller -> credential retriever

Errors propagate to the caller unchanged. Nothing is cleaned up on
failure; resources created before the error stay in place.
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
from pathlib import Path

from loguru import logger

from kubestrap.config import ClusterConfig
from kubestrap.core.exceptions import ConfigurationError
from kubestrap.credentials import CredentialRetriever
from kubestrap.poller import Probe, ReadinessPoller, SentinelProbe
from kubestrap.providers.protocols import CloudResourceProvider
from kubestrap.sequencer import ProvisioningSequencer
from kubestrap.token import BootstrapToken, generate
from kubestrap.transport.ssh import NodeChannels
from kubestrap.types import BootstrapResult


class ClusterBootstrapper:
    """One bootstrap run against one provider.

    Args:
        provider: Cloud resource provider the nodes are created on.
        config: Cluster inputs.
        channels: SSH channels for probing and copying. Created from the
            config (and closed after the run) when omitted.
        probe: Readiness probe. Defaults to the SSH sentinel probe.
        retriever: Credential retriever. Defaults to SSH retrieval.
        token_factory: Join token source.
    """

    def __init__(
        self,
        provider: CloudResourceProvider,
        config: ClusterConfig,
        channels: NodeChannels | None = None,
        probe: Probe | None = None,
        retriever: CredentialRetriever | None = None,
        *,
        token_factory: Callable[[], BootstrapToken] = generate,
    ) -> None:
        self._provider = provider
        self._config = config
        self._owns_channels = channels is None
        self._channels = channels or NodeChannels(config.ssh_user, config.private_key)
        self._probe = probe or SentinelProbe(self._channels)
        self._retriever = retriever or CredentialRetriever(self._channels)
        self._token_factory = token_factory

    async def run(self) -> BootstrapResult:
        """Provision, wait for readiness and retrieve the kubeconfig.

        Raises:
            ConfigurationError: If the SSH private key is missing. Checked
                before anything is created.
        """
        config = self._config
        if self._owns_channels and not Path(config.private_key).is_file():
            raise ConfigurationError(
                f"SSH private key not found: {config.private_key}. "
                "Set ssh_key_path to the key matching the provider's public key."
            )

        try:
            token = self._token_factory()
            logger.info("Generated join token {id}", id=token.id)

            state = await ProvisioningSequencer(self._provider).provision(
                token,
                config.workers,
                config.master_class,
                config.worker_class,
                config.pod_network_cidr,
            )

            poller = ReadinessPoller(
                self._probe,
                interval=config.poll_interval,
                deadline=config.ready_timeout,
            )
            await poller.wait_for_all_ready(state.nodes)

            path = await self._retriever.retrieve(state.control_plane, config.kubeconfig)
        finally:
            if self._owns_channels:
                await self._channels.close()

        for failure in state.failed_workers:
            logger.warning(
                "{name} was not provisioned: {reason}",
                name=failure.name, reason=failure.error.reason,
            )

        logger.info(
            "Cluster ready: {n} nodes, API at {ip}",
            n=len(state.nodes), ip=state.control_plane.reachable_address,
        )
        return BootstrapResult(state=state, kubeconfig_path=path)


def bootstrap_cluster(
    config: ClusterConfig,
    provider: CloudResourceProvider | None = None,
    *,
    cluster: str = "default",
) -> BootstrapResult:
    """Synchronous entry point: bootstrap a cluster and return its kubeconfig path."""
    if provider is None:
        from kubestrap.providers.aws import AWSProvider

        provider = AWSProvider.create(config.provider, cluster=cluster)

    return asyncio.run(ClusterBootstrapper(provider, config).run())


__all__ = ["ClusterBootstrapper", "bootstrap_cluster"]
