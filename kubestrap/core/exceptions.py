"""Custom exception hierarchy for kubestrap.

All kubestrap-specific exceptions inherit from KubestrapError, enabling
callers to catch all kubestrap exceptions with a single except clause.
"""

from __future__ import annotations

from collections.abc import Sequence


class KubestrapError(Exception):
    """Base exception for all kubestrap errors."""


class EntropyUnavailable(KubestrapError):
    """Raised when the random source cannot produce a bootstrap token."""


class ProvisioningFailed(KubestrapError):
    """Raised when a node (or a resource it depends on) cannot be provisioned."""

    def __init__(self, node: str, reason: str = "unknown") -> None:
        self.node = node
        self.reason = reason
        super().__init__(f"Provisioning of {node} failed: {reason}")


class ProbeUnreachable(KubestrapError):
    """Raised when a node cannot be reached for a readiness probe."""

    def __init__(self, node: str, reason: str = "unknown") -> None:
        self.node = node
        self.reason = reason
        super().__init__(f"Node {node} unreachable: {reason}")


class ReadinessTimeout(KubestrapError):
    """Raised when an explicit readiness bound is exceeded."""

    def __init__(self, pending: Sequence[str], rounds: int) -> None:
        self.pending = tuple(pending)
        self.rounds = rounds
        super().__init__(
            f"Nodes not ready after {rounds} rounds: {', '.join(self.pending)}"
        )


class RetrievalFailed(KubestrapError):
    """Raised when the cluster credentials cannot be copied locally."""


class ConfigurationError(KubestrapError):
    """Raised for invalid configuration or missing required settings."""
