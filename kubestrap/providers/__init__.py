"""Cloud resource providers."""

from kubestrap.providers.protocols import CloudResourceProvider

__all__ = ["CloudResourceProvider"]
