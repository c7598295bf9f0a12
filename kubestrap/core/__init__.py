from kubestrap.core.exceptions import (
    ConfigurationError,
    EntropyUnavailable,
    KubestrapError,
    ProbeUnreachable,
    ProvisioningFailed,
    ReadinessTimeout,
    RetrievalFailed,
)

__all__ = [
    "ConfigurationError",
    "EntropyUnavailable",
    "KubestrapError",
    "ProbeUnreachable",
    "ProvisioningFailed",
    "ReadinessTimeout",
    "RetrievalFailed",
]
