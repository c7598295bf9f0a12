"""Readiness poller.

Blocks until every node has written its completion sentinel. Each node is
a two-state machine (PENDING -> READY). Rounds probe the control plane
first, then the workers in order; the first absent marker or unreachable
node abandons the round, which is retried after a fixed interval.

There is no deadline by default: a node that never finishes keeps the
caller waiting forever. ``deadline`` and ``max_rounds`` bound the wait
explicitly.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from enum import StrEnum

from loguru import logger

from kubestrap.constants import DEFAULT_POLL_INTERVAL, SENTINEL_PATH
from kubestrap.core.exceptions import ProbeUnreachable, ReadinessTimeout
from kubestrap.transport.ssh import CONNECT_ERRORS, NodeChannels
from kubestrap.types import ProvisionedNode, Role

type Probe = Callable[[ProvisionedNode], Awaitable[bool]]
type Sleep = Callable[[float], Awaitable[object]]


class NodeState(StrEnum):
    PENDING = "pending"
    READY = "ready"


class ReadinessPoller:
    """Polls nodes for their completion sentinel.

    Args:
        probe: Returns True when the node's marker exists, False when it does
            not, or raises ProbeUnreachable.
        interval: Seconds between rounds.
        deadline: Optional overall bound in seconds. None waits forever.
        max_rounds: Optional bound on the number of rounds.
        report_every: Log the pending nodes at INFO every this many rounds.
        sleep: Sleep function, injectable for tests.
        on_ready: Called once per node when it becomes READY.
    """

    def __init__(
        self,
        probe: Probe,
        *,
        interval: float = DEFAULT_POLL_INTERVAL,
        deadline: float | None = None,
        max_rounds: int | None = None,
        report_every: int = 15,
        sleep: Sleep = asyncio.sleep,
        on_ready: Callable[[ProvisionedNode], None] | None = None,
    ) -> None:
        if interval < 0:
            raise ValueError(f"interval must be >= 0, got {interval}")
        self._probe = probe
        self._interval = interval
        self._deadline = deadline
        self._max_rounds = max_rounds
        self._report_every = report_every
        self._sleep = sleep
        self._on_ready = on_ready
        self._states: dict[str, NodeState] = {}
        self._unreachable: dict[str, str] = {}
        self._rounds = 0

    @property
    def rounds(self) -> int:
        """Rounds run by the last ``wait_for_all_ready`` call."""
        return self._rounds

    @property
    def states(self) -> dict[str, NodeState]:
        return dict(self._states)

    async def wait_for_all_ready(self, nodes: Sequence[ProvisionedNode]) -> None:
        """Return once every node has been observed ready.

        Raises:
            ReadinessTimeout: Only when a deadline or max_rounds was given and
                exceeded.
        """
        ordered = _probe_order(nodes)
        self._states = {node.name: NodeState.PENDING for node in ordered}
        self._unreachable = {}
        self._rounds = 0

        if not ordered:
            return

        loop = asyncio.get_running_loop()
        start = loop.time()

        logger.info("Waiting for {n} nodes to finish bootstrap", n=len(ordered))

        while True:
            self._rounds += 1
            await self._round(ordered)

            pending = self._pending()
            if not pending:
                logger.info("All {n} nodes ready after {r} rounds", n=len(ordered), r=self._rounds)
                return

            if self._max_rounds is not None and self._rounds >= self._max_rounds:
                raise ReadinessTimeout(pending, self._rounds)
            if self._deadline is not None and loop.time() - start + self._interval > self._deadline:
                raise ReadinessTimeout(pending, self._rounds)

            if self._report_every > 0 and self._rounds % self._report_every == 0:
                self._report(pending)
            else:
                logger.debug(
                    "Round {r}: waiting on {pending}", r=self._rounds, pending=", ".join(pending),
                )
            await self._sleep(self._interval)

    def _report(self, pending: list[str]) -> None:
        logger.info(
            "Still waiting after {r} rounds on {pending}",
            r=self._rounds, pending=", ".join(pending),
        )
        for name, reason in self._unreachable.items():
            logger.info("{name} unreachable: {reason}", name=name, reason=reason)

    async def _round(self, ordered: Sequence[ProvisionedNode]) -> None:
        for node in ordered:
            try:
                ready = await self._probe(node)
            except ProbeUnreachable as e:
                self._unreachable[node.name] = e.reason
                logger.debug("Probe of {name} unreachable: {reason}", name=node.name, reason=e.reason)
                return

            self._unreachable.pop(node.name, None)
            if not ready:
                return

            if self._states[node.name] is NodeState.PENDING:
                self._states[node.name] = NodeState.READY
                logger.info("{name} ready", name=node.name)
                if self._on_ready is not None:
                    self._on_ready(node)

    def _pending(self) -> list[str]:
        return [name for name, state in self._states.items() if state is NodeState.PENDING]


def _probe_order(nodes: Sequence[ProvisionedNode]) -> list[ProvisionedNode]:
    """Control plane first; workers keep their given order."""
    control = [n for n in nodes if n.role is Role.CONTROL_PLANE]
    workers = [n for n in nodes if n.role is not Role.CONTROL_PLANE]
    return [*control, *workers]


async def wait_for_all_ready(
    nodes: Sequence[ProvisionedNode],
    probe: Probe,
    *,
    interval: float = DEFAULT_POLL_INTERVAL,
    deadline: float | None = None,
    max_rounds: int | None = None,
) -> int:
    """Wait for every node; returns the number of rounds it took."""
    poller = ReadinessPoller(probe, interval=interval, deadline=deadline, max_rounds=max_rounds)
    await poller.wait_for_all_ready(nodes)
    return poller.rounds


# =============================================================================
# SSH Sentinel Probe
# =============================================================================


class SentinelProbe:
    """Checks the completion sentinel over each node's SSH channel."""

    def __init__(
        self,
        channels: NodeChannels,
        path: str = SENTINEL_PATH,
        timeout: float = 30.0,
    ) -> None:
        self._channels = channels
        self._path = path
        self._timeout = timeout

    async def __call__(self, node: ProvisionedNode) -> bool:
        try:
            async with self._channels.session(node) as transport:
                return await asyncio.wait_for(transport.file_exists(self._path), self._timeout)
        except CONNECT_ERRORS as e:
            raise ProbeUnreachable(node.name, str(e) or type(e).__name__) from e


__all__ = [
    "NodeState",
    "Probe",
    "ReadinessPoller",
    "SentinelProbe",
    "wait_for_all_ready",
]
