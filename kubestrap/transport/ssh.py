"""SSH access to cluster nodes.

The operator's machine talks to nodes only to probe the completion
sentinel and to copy the kubeconfig back, both as short shell commands
over asyncssh.
"""

from __future__ import annotations

import asyncio
import contextlib
import shlex
from collections.abc import AsyncIterator
from dataclasses import dataclass, field

import asyncssh
from loguru import logger
from tenacity import AsyncRetrying, retry_if_exception_type, stop_after_attempt, wait_fixed

from kubestrap.types import ProvisionedNode

CONNECT_ERRORS = (OSError, asyncssh.Error, TimeoutError)
CLOSE_TIMEOUT = 5.0


@dataclass(frozen=True, slots=True)
class CommandResult:
    exit_status: int
    stdout: str = ""
    stderr: str = ""

    @property
    def ok(self) -> bool:
        return self.exit_status == 0


@dataclass
class SSHTransport:
    """One asyncssh connection to one node.

    Nodes are fresh instances whose host keys cannot be known in advance,
    so host key verification is off (``known_hosts=None``). The imported
    key pair authenticates us to the node, not the node to us.

    ``connect()`` retries refused or timed-out connections up to
    ``retry_max_attempts`` times, ``retry_delay`` seconds apart.

    Example:
        >>> async with SSHTransport("203.0.113.10", "ubuntu", "/home/me/.ssh/id_ed25519") as node:
        ...     result = await node.run("kubectl", "get", "nodes")
    """

    host: str
    user: str
    key_path: str
    port: int = 22
    connect_timeout: float = 10.0
    retry_max_attempts: int = 1
    retry_delay: float = 2.0

    _connection: asyncssh.SSHClientConnection | None = field(default=None, repr=False)

    @property
    def is_connected(self) -> bool:
        return self._connection is not None

    async def connect(self) -> None:
        if self.is_connected:
            return

        retrying = AsyncRetrying(
            stop=stop_after_attempt(self.retry_max_attempts),
            wait=wait_fixed(self.retry_delay),
            retry=retry_if_exception_type(CONNECT_ERRORS),
            reraise=True,
        )
        async for attempt in retrying:
            with attempt:
                self._connection = await asyncssh.connect(
                    self.host,
                    port=self.port,
                    username=self.user,
                    client_keys=[self.key_path],
                    known_hosts=None,
                    connect_timeout=self.connect_timeout,
                )
        logger.debug("SSH: {user}@{host}:{port} connected", user=self.user, host=self.host, port=self.port)

    async def close(self) -> None:
        connection, self._connection = self._connection, None
        if connection is None:
            return
        connection.close()
        with contextlib.suppress(TimeoutError):
            await asyncio.wait_for(connection.wait_closed(), timeout=CLOSE_TIMEOUT)

    async def __aenter__(self) -> SSHTransport:
        await self.connect()
        return self

    async def __aexit__(self, *_: object) -> None:
        await self.close()

    async def run(self, *argv: str, timeout: float | None = None, check: bool = False) -> CommandResult:
        """Run ``argv`` (shell-quoted) on the node.

        Raises:
            RuntimeError: If not connected, or ``check`` is set and the command fails.
        """
        if self._connection is None:
            raise RuntimeError(f"SSH to {self.host} is not connected")

        completed = await self._connection.run(shlex.join(argv), timeout=timeout, check=False)
        result = CommandResult(
            exit_status=completed.exit_status or 0,
            stdout=str(completed.stdout or ""),
            stderr=str(completed.stderr or ""),
        )
        if check and not result.ok:
            raise RuntimeError(f"{argv[0]} exited {result.exit_status} on {self.host}: {result.stderr.strip()}")
        return result

    async def read_file(self, remote: str) -> str:
        """Contents of ``remote``.

        Raises:
            FileNotFoundError: If the file is missing or unreadable.
        """
        result = await self.run("cat", remote)
        if not result.ok:
            raise FileNotFoundError(f"{remote}: {result.stderr.strip() or f'exit {result.exit_status}'}")
        return result.stdout

    async def file_exists(self, remote: str) -> bool:
        return (await self.run("test", "-f", remote)).ok


class NodeChannels:
    """One SSH transport and one lock per node.

    At most one probe or copy is in flight against a node at any time;
    callers serialize on the node's lock through ``session()``. A transport
    whose operation fails is dropped and reconnected on next use.
    """

    def __init__(
        self,
        user: str,
        key_path: str,
        *,
        port: int = 22,
        connect_timeout: float = 10.0,
    ) -> None:
        self._user = user
        self._key_path = key_path
        self._port = port
        self._connect_timeout = connect_timeout
        self._transports: dict[str, SSHTransport] = {}
        self._locks: dict[str, asyncio.Lock] = {}

    def transport(self, node: ProvisionedNode) -> SSHTransport:
        if node.name not in self._transports:
            self._transports[node.name] = SSHTransport(
                host=node.reachable_address,
                user=self._user,
                key_path=self._key_path,
                port=self._port,
                connect_timeout=self._connect_timeout,
            )
        return self._transports[node.name]

    @contextlib.asynccontextmanager
    async def session(self, node: ProvisionedNode) -> AsyncIterator[SSHTransport]:
        """Connected transport for ``node``, held under the node's lock."""
        async with self._locks.setdefault(node.name, asyncio.Lock()):
            transport = self.transport(node)
            try:
                await transport.connect()
                yield transport
            except BaseException:
                self._transports.pop(node.name, None)
                await transport.close()
                raise

    async def close(self) -> None:
        transports = list(self._transports.values())
        self._transports.clear()
        for transport in transports:
            await transport.close()


__all__ = ["CONNECT_ERRORS", "CommandResult", "NodeChannels", "SSHTransport"]
