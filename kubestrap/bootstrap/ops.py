"""Core bootstrap operations.

Declarative operations for system setup: packages, files, kernel settings.
Each operation is a function returning an Op (string or callable).
"""

from __future__ import annotations

import shlex
from collections.abc import Mapping
from typing import Final

from kubestrap.constants import KUBERNETES_VERSION, SENTINEL_PATH

from .compose import Op

KUBERNETES_APT_KEYRING: Final = "/etc/apt/keyrings/kubernetes-apt-keyring.gpg"

# =============================================================================
# Package Operations
# =============================================================================


def apt(*packages: str, quiet: bool = True, update: bool = True) -> Op:
    """Install APT packages.

    Waits for dpkg lock to be released (handles unattended-upgrades).

    Args:
        *packages: Package names to install.
        quiet: Use quiet mode (-qq).
        update: Run apt-get update first.

    Example:
        >>> apt("curl", "gpg")()
        'apt-get -o DPkg::Lock::Timeout=-1 update -qq\\napt-get ... install -y -qq curl gpg'
    """
    if not packages:
        return lambda: "# No APT packages to install"

    flags = "-qq" if quiet else ""
    install_flags = "-y -qq" if quiet else "-y"
    pkg_list = " ".join(packages)

    def generate() -> str:
        lock_wait = "-o DPkg::Lock::Timeout=-1"
        lines = []
        if update:
            lines.append(f"apt-get {lock_wait} update {flags}".strip())
        lines.append(f"apt-get {lock_wait} install {install_flags} {pkg_list}")
        return "\n".join(lines)

    return generate


def hold(*packages: str) -> Op:
    """Pin APT packages at their installed version."""
    return lambda: f"apt-mark hold {' '.join(packages)}"


def kubernetes_repo(version: str = KUBERNETES_VERSION) -> Op:
    """Register the upstream Kubernetes APT repository for a minor version.

    Example:
        >>> "pkgs.k8s.io/core:/stable:/v1.30/deb/" in kubernetes_repo("v1.30")()
        True
    """
    base = f"https://pkgs.k8s.io/core:/stable:/{version}/deb/"

    def generate() -> str:
        return "\n".join([
            "mkdir -p /etc/apt/keyrings",
            f"curl -fsSL {base}Release.key | gpg --dearmor --yes -o {KUBERNETES_APT_KEYRING}",
            f"echo 'deb [signed-by={KUBERNETES_APT_KEYRING}] {base} /' "
            "> /etc/apt/sources.list.d/kubernetes.list",
        ])

    return generate


def containerd() -> Op:
    """Install containerd configured with the systemd cgroup driver."""
    return lambda: """apt-get -o DPkg::Lock::Timeout=-1 install -y -qq containerd
mkdir -p /etc/containerd
containerd config default > /etc/containerd/config.toml
sed -i 's/SystemdCgroup = false/SystemdCgroup = true/' /etc/containerd/config.toml
systemctl restart containerd
systemctl enable containerd"""


# =============================================================================
# Kernel Operations
# =============================================================================


def swap_off() -> Op:
    """Disable swap now and on reboot (kubelet refuses to run with swap)."""
    return lambda: "swapoff -a\nsed -i '/ swap / s/^/#/' /etc/fstab"


def kernel_modules(*modules: str) -> Op:
    """Load kernel modules now and on every boot.

    Example:
        >>> "modprobe overlay" in kernel_modules("overlay")()
        True
    """
    if not modules:
        return lambda: "# No kernel modules to load"

    def generate() -> str:
        lines = [resolve_file("/etc/modules-load.d/kubestrap.conf", "\n".join(modules))]
        lines.extend(f"modprobe {m}" for m in modules)
        return "\n".join(lines)

    return generate


def sysctl(settings: Mapping[str, str]) -> Op:
    """Persist and apply sysctl settings.

    Example:
        >>> "net.ipv4.ip_forward = 1" in sysctl({"net.ipv4.ip_forward": "1"})()
        True
    """
    if not settings:
        return lambda: "# No sysctl settings"

    def generate() -> str:
        content = "\n".join(f"{key} = {value}" for key, value in settings.items())
        return resolve_file("/etc/sysctl.d/99-kubestrap.conf", content) + "\nsysctl --system"

    return generate


# =============================================================================
# File Operations
# =============================================================================


def resolve_file(path: str, content: str) -> str:
    return "\n".join([f"cat > {path} << 'EOF'", content, "EOF"])


def copy(source: str, dest: str, mode: str | None = None, owner: str | None = None) -> Op:
    """Copy a file on the node, optionally fixing mode and owner."""

    def generate() -> str:
        lines = [f"cp -f {source} {dest}"]
        if mode:
            lines.append(f"chmod {mode} {dest}")
        if owner:
            lines.append(f"chown {owner} {dest}")
        return "\n".join(lines)

    return generate


def sentinel(path: str = SENTINEL_PATH) -> Op:
    """Write the completion marker. Must be the last operation of a script.

    Example:
        >>> sentinel("/var/lib/kubestrap/done")()
        'mkdir -p /var/lib/kubestrap\\ntouch /var/lib/kubestrap/done'
    """
    parent = path.rsplit("/", 1)[0] or "/"
    return lambda: f"mkdir -p {parent}\ntouch {path}"


# =============================================================================
# Shell Operations
# =============================================================================


def command(*argv: str) -> Op:
    """Execute a command with each argument shell-quoted."""
    return lambda: shlex.join(argv)


__all__ = [
    "apt",
    "command",
    "containerd",
    "copy",
    "hold",
    "kernel_modules",
    "kubernetes_repo",
    "resolve_file",
    "sentinel",
    "swap_off",
    "sysctl",
]
