"""Kubernetes bootstrap operations and role scripts.

Operations for installing the node runtime, initializing the control plane
and joining workers, plus the two composers that turn them into the user
data each node runs at first boot.
"""

from __future__ import annotations

from kubestrap.constants import (
    ADMIN_CONF,
    API_SERVER_PORT,
    KUBECONFIG_PATH,
    OPERATOR_USER,
    TOKEN_TTL,
)
from kubestrap.token import BootstrapToken
from kubestrap.types import Role, node_name

from .compose import Op, bootstrap
from .ops import (
    apt,
    command,
    containerd,
    copy,
    hold,
    kernel_modules,
    kubernetes_repo,
    sentinel,
    swap_off,
    sysctl,
)

K8S_PACKAGES = ("kubelet", "kubeadm", "kubectl")


def api_endpoint(address: str, port: int = API_SERVER_PORT) -> str:
    return f"{address}:{port}"


def api_server_url(address: str, port: int = API_SERVER_PORT) -> str:
    return f"https://{api_endpoint(address, port)}"


# =============================================================================
# Operations
# =============================================================================


def install_runtime() -> list[Op]:
    """Base runtime shared by every role: kernel prerequisites, containerd, kubeadm."""
    return [
        swap_off(),
        kernel_modules("overlay", "br_netfilter"),
        sysctl({
            "net.bridge.bridge-nf-call-iptables": "1",
            "net.bridge.bridge-nf-call-ip6tables": "1",
            "net.ipv4.ip_forward": "1",
        }),
        apt("apt-transport-https", "ca-certificates", "curl", "gpg"),
        containerd(),
        kubernetes_repo(),
        apt(*K8S_PACKAGES),
        hold(*K8S_PACKAGES),
        command("systemctl", "enable", "--now", "kubelet"),
    ]


def kubeadm_init(
    token: BootstrapToken,
    external_address: str,
    pod_network_cidr: str | None = None,
) -> Op:
    """Initialize the control plane.

    The external address is added to the API server certificate so the
    exported kubeconfig validates from outside the cluster network. The pod
    network flag is emitted only for a non-empty CIDR.
    """
    argv = [
        "kubeadm", "init",
        "--token", token.value,
        "--token-ttl", TOKEN_TTL,
        "--apiserver-cert-extra-sans", external_address,
    ]
    if pod_network_cidr:
        argv.extend(["--pod-network-cidr", pod_network_cidr])
    return command(*argv)


def export_kubeconfig(user: str = OPERATOR_USER, dest: str = KUBECONFIG_PATH) -> Op:
    """Copy the admin kubeconfig where the operator account can read it."""
    return copy(ADMIN_CONF, dest, mode="0600", owner=f"{user}:{user}")


def rewrite_server(external_address: str, path: str = KUBECONFIG_PATH) -> Op:
    """Point the kubeconfig server field at the externally reachable address."""
    url = api_server_url(external_address)
    return lambda: f"sed -i -E 's#^([[:space:]]*server:).*#\\1 {url}#' {path}"


def kubeadm_join(token: BootstrapToken, control_plane_address: str, name: str) -> Op:
    """Join a worker to the control plane.

    CA pinning is skipped: possession of the token is the only trust anchor.
    """
    return command(
        "kubeadm", "join", api_endpoint(control_plane_address),
        "--token", token.value,
        "--discovery-token-unsafe-skip-ca-verification",
        "--node-name", name,
    )


# =============================================================================
# Role Scripts
# =============================================================================


def compose_control_plane_script(
    token: BootstrapToken,
    pod_network_cidr: str | None,
    external_address: str,
) -> str:
    """Render the control-plane user data.

    Args:
        token: Shared bootstrap token.
        pod_network_cidr: Pod network range; ``None`` or empty omits the flag.
        external_address: Public address registered as an extra certificate SAN
            and written into the exported kubeconfig.

    Returns:
        Complete shell script ending with the completion sentinel.
    """
    if not external_address:
        raise ValueError("Control plane script requires an external address")

    return bootstrap(
        "# kubestrap: control plane",
        install_runtime(),
        kubeadm_init(token, external_address, pod_network_cidr),
        export_kubeconfig(),
        rewrite_server(external_address),
        sentinel(),
    )


def compose_worker_script(
    token: BootstrapToken,
    control_plane_internal_address: str,
    worker_index: int,
) -> str:
    """Render the user data of worker ``worker_index``."""
    if not control_plane_internal_address:
        raise ValueError("Worker script requires the control plane internal address")
    if worker_index < 0:
        raise ValueError(f"Invalid worker index: {worker_index}")

    return bootstrap(
        f"# kubestrap: worker {worker_index}",
        install_runtime(),
        kubeadm_join(token, control_plane_internal_address, node_name(Role.WORKER, worker_index)),
        sentinel(),
    )


__all__ = [
    "api_endpoint",
    "api_server_url",
    "compose_control_plane_script",
    "compose_worker_script",
    "export_kubeconfig",
    "install_runtime",
    "kubeadm_init",
    "kubeadm_join",
    "rewrite_server",
]
