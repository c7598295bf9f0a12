"""Centralized constants and enums for kubestrap.

Paths, ports and tag keys shared by the bootstrap scripts, the poller and
the credential retriever live here so both sides of the wire agree.
"""

from __future__ import annotations

from enum import StrEnum
from typing import Final

# =============================================================================
# Node Paths
# =============================================================================

KUBESTRAP_DIR: Final = "/var/lib/kubestrap"
SENTINEL_PATH: Final = f"{KUBESTRAP_DIR}/bootstrap-complete"
BOOTSTRAP_LOG: Final = "/var/log/kubestrap-bootstrap.log"

ADMIN_CONF: Final = "/etc/kubernetes/admin.conf"
OPERATOR_USER: Final = "ubuntu"
KUBECONFIG_PATH: Final = f"/home/{OPERATOR_USER}/admin.conf"

# =============================================================================
# Cluster
# =============================================================================

API_SERVER_PORT: Final = 6443
KUBERNETES_VERSION: Final = "v1.30"
TOKEN_TTL: Final = "15m"
CONTROL_PLANE_NAME: Final = "control-plane"
WORKER_NAME_PREFIX: Final = "worker-"

DEFAULT_POLL_INTERVAL: Final = 2.0


# =============================================================================
# AWS Resource Tags
# =============================================================================


class KubestrapTag(StrEnum):
    """AWS resource tag keys used by kubestrap."""

    MANAGED = "kubestrap:managed"
    CLUSTER = "kubestrap:cluster"
    ROLE = "kubestrap:role"
    NODE_INDEX = "kubestrap:node-index"


# =============================================================================
# EC2 Instance States
# =============================================================================


class InstanceState(StrEnum):
    """EC2 instance state names."""

    RUNNING = "running"
    PENDING = "pending"
    TERMINATED = "terminated"
    SHUTTING_DOWN = "shutting-down"
