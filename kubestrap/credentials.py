"""Cluster credential retrieval.

Copies the admin kubeconfig from the control plane once every node is
ready, points its server endpoint at the external address, and writes it
atomically to the operator's machine.
"""

from __future__ import annotations

import os
import tempfile
from pathlib import Path
from typing import Any

import yaml
from loguru import logger

from kubestrap.bootstrap.kubeadm import api_server_url
from kubestrap.constants import API_SERVER_PORT, KUBECONFIG_PATH
from kubestrap.core.exceptions import RetrievalFailed
from kubestrap.transport.ssh import CONNECT_ERRORS, NodeChannels
from kubestrap.types import ProvisionedNode


def rewrite_server_endpoint(text: str, address: str, port: int = API_SERVER_PORT) -> str:
    """Set every cluster's ``server`` to ``https://<address>:<port>``.

    Raises:
        ValueError: If the text is not a kubeconfig with at least one cluster.
    """
    try:
        config: Any = yaml.safe_load(text)
    except yaml.YAMLError as e:
        raise ValueError(f"Invalid kubeconfig: {e}") from e

    clusters = config.get("clusters") if isinstance(config, dict) else None
    if not clusters:
        raise ValueError("Kubeconfig has no clusters")

    url = api_server_url(address, port)
    for entry in clusters:
        cluster = entry.get("cluster") if isinstance(entry, dict) else None
        if not isinstance(cluster, dict):
            raise ValueError("Kubeconfig cluster entry has no 'cluster' mapping")
        cluster["server"] = url

    return yaml.safe_dump(config, default_flow_style=False, sort_keys=False)


def write_private(path: Path, content: str) -> None:
    """Atomically replace ``path`` with ``content``, readable by the owner only."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "w") as f:
            f.write(content)
            f.flush()
            os.fsync(f.fileno())
        os.chmod(tmp, 0o600)
        os.replace(tmp, path)
    except BaseException:
        Path(tmp).unlink(missing_ok=True)
        raise


class CredentialRetriever:
    """Fetches the admin kubeconfig from the control plane."""

    def __init__(self, channels: NodeChannels, remote_path: str = KUBECONFIG_PATH) -> None:
        self._channels = channels
        self._remote_path = remote_path

    async def fetch(self, control_plane: ProvisionedNode) -> str:
        async with self._channels.session(control_plane) as transport:
            return await transport.read_file(self._remote_path)

    async def retrieve(self, control_plane: ProvisionedNode, destination: str | Path) -> Path:
        """Copy the kubeconfig to ``destination``, overwriting it.

        Raises:
            RetrievalFailed: If the file cannot be read, parsed or written.
        """
        dest = Path(destination).expanduser()
        logger.info("Retrieving kubeconfig from {name}", name=control_plane.name)

        try:
            raw = await self.fetch(control_plane)
            content = rewrite_server_endpoint(raw, control_plane.reachable_address)
            write_private(dest, content)
        except (*CONNECT_ERRORS, ValueError, RuntimeError) as e:
            raise RetrievalFailed(f"Could not retrieve kubeconfig to {dest}: {e}") from e

        logger.info("Kubeconfig written to {path}", path=dest)
        return dest


__all__ = ["CredentialRetriever", "rewrite_server_endpoint", "write_private"]
