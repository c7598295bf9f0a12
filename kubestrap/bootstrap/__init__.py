"""Declarative bootstrap scripts for cluster nodes.

Example:
    from kubestrap.bootstrap import compose_worker_script

    script = compose_worker_script(token, "10.0.1.10", worker_index=0)
"""

from kubestrap.bootstrap.compose import Op, bootstrap, resolve
from kubestrap.bootstrap.kubeadm import (
    compose_control_plane_script,
    compose_worker_script,
)

__all__ = [
    "Op",
    "bootstrap",
    "compose_control_plane_script",
    "compose_worker_script",
    "resolve",
]
