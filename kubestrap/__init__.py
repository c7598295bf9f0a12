"""kubestrap - Bootstrap a minimal kubeadm cluster on a cloud provider.

Example:

    from kubestrap import ClusterConfig, bootstrap_cluster
    from kubestrap.providers.aws import AWS

    config = ClusterConfig(provider=AWS(region="eu-west-1"), workers=2)
    result = bootstrap_cluster(config)
    print(result.kubeconfig_path)
"""

# Configuration
from kubestrap.config import ClusterConfig, load_config, resolve_cluster

# Errors
from kubestrap.core.exceptions import (
    ConfigurationError,
    EntropyUnavailable,
    KubestrapError,
    ProbeUnreachable,
    ProvisioningFailed,
    ReadinessTimeout,
    RetrievalFailed,
)

# Logging
from kubestrap.logging import LogConfig

# Pipeline
from kubestrap.orchestrator import ClusterBootstrapper, bootstrap_cluster
from kubestrap.poller import ReadinessPoller, wait_for_all_ready
from kubestrap.providers import CloudResourceProvider
from kubestrap.sequencer import ProvisioningSequencer

# Types
from kubestrap.token import BootstrapToken, generate
from kubestrap.types import (
    BootstrapResult,
    ClusterState,
    ExternalAddress,
    NetworkingStack,
    NodeSpec,
    ProvisionedNode,
    Role,
    WorkerFailure,
)

__version__ = "0.1.0"

__all__ = [
    "BootstrapResult",
    "BootstrapToken",
    "CloudResourceProvider",
    "ClusterBootstrapper",
    "ClusterConfig",
    "ClusterState",
    "ConfigurationError",
    "EntropyUnavailable",
    "ExternalAddress",
    "KubestrapError",
    "LogConfig",
    "NetworkingStack",
    "NodeSpec",
    "ProbeUnreachable",
    "ProvisionedNode",
    "ProvisioningFailed",
    "ProvisioningSequencer",
    "ReadinessPoller",
    "ReadinessTimeout",
    "RetrievalFailed",
    "Role",
    "WorkerFailure",
    "bootstrap_cluster",
    "generate",
    "load_config",
    "resolve_cluster",
    "wait_for_all_ready",
]
