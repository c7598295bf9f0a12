"""Explicit resource dependency graph.

Cloud resources form a small DAG (a worker needs the control plane, the
control plane needs its external address, everything needs the network).
ResourceGraph runs async steps in topological order, launching every step
whose dependencies are satisfied concurrently.
"""

from __future__ import annotations

import asyncio
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from graphlib import CycleError, TopologicalSorter
from types import MappingProxyType
from typing import Any

from loguru import logger

type StepResults = Mapping[str, Any]
type StepFn = Callable[[StepResults], Awaitable[Any]]


@dataclass(frozen=True, slots=True)
class Step:
    """One node of the graph.

    Attributes:
        name: Unique step name.
        run: Coroutine function receiving a read-only view of finished results.
        after: Names of the steps that must succeed first.
        optional: A failing optional step only skips its dependents; a failing
            required step aborts the graph.
    """

    name: str
    run: StepFn
    after: tuple[str, ...] = ()
    optional: bool = False


@dataclass(frozen=True, slots=True)
class GraphResult:
    """Outcome of a graph run."""

    results: Mapping[str, Any]
    failures: Mapping[str, BaseException] = field(default_factory=dict)
    skipped: tuple[str, ...] = ()

    @property
    def ok(self) -> bool:
        return not self.failures and not self.skipped


class ResourceGraph:
    """DAG of async provisioning steps.

    Example:
        >>> graph = ResourceGraph()
        >>> graph.add("network", lambda r: provider.create_networking_stack())
        >>> graph.add("node", lambda r: create(r["network"]), after=("network",))
        >>> result = await graph.run()
    """

    def __init__(self) -> None:
        self._steps: dict[str, Step] = {}

    def add(
        self,
        name: str,
        run: StepFn,
        *,
        after: tuple[str, ...] = (),
        optional: bool = False,
    ) -> ResourceGraph:
        if name in self._steps:
            raise ValueError(f"Duplicate step: {name}")
        self._steps[name] = Step(name=name, run=run, after=tuple(after), optional=optional)
        return self

    @property
    def steps(self) -> tuple[Step, ...]:
        return tuple(self._steps.values())

    def order(self) -> tuple[str, ...]:
        """A valid sequential execution order."""
        try:
            return tuple(self._sorter().static_order())
        except CycleError as e:
            raise ValueError(f"Dependency cycle: {e.args[1]}") from e

    def _sorter(self) -> TopologicalSorter[str]:
        for step in self._steps.values():
            unknown = [dep for dep in step.after if dep not in self._steps]
            if unknown:
                raise ValueError(f"Step '{step.name}' depends on unknown steps: {unknown}")

        sorter: TopologicalSorter[str] = TopologicalSorter()
        for step in self._steps.values():
            sorter.add(step.name, *step.after)
        return sorter

    async def run(self) -> GraphResult:
        """Execute all steps.

        Returns:
            Results, failures of optional steps, and the steps skipped because
            a dependency failed.

        Raises:
            ValueError: If the graph has a cycle or an unknown dependency.
            Exception: The error of the first required step that failed, once
                every step already in flight has finished.
        """
        sorter = self._sorter()
        try:
            sorter.prepare()
        except CycleError as e:
            raise ValueError(f"Dependency cycle: {e.args[1]}") from e

        results: dict[str, Any] = {}
        failures: dict[str, BaseException] = {}
        skipped: list[str] = []
        running: dict[asyncio.Task[Any], str] = {}
        view = MappingProxyType(results)

        def schedule() -> None:
            ready = sorter.get_ready()
            while ready:
                for name in ready:
                    step = self._steps[name]
                    if any(dep in failures or dep in skipped for dep in step.after):
                        logger.debug("Skipping step {name}: dependency failed", name=name)
                        skipped.append(name)
                        sorter.done(name)
                        continue
                    logger.debug("Starting step {name}", name=name)
                    running[asyncio.create_task(step.run(view), name=name)] = name
                ready = sorter.get_ready()

        fatal: BaseException | None = None
        while sorter.is_active() and fatal is None:
            schedule()
            if not running:
                break

            done, _ = await asyncio.wait(running, return_when=asyncio.FIRST_COMPLETED)
            for task in done:
                name = running.pop(task)
                error = task.exception()
                if error is None:
                    results[name] = task.result()
                    sorter.done(name)
                    continue

                failures[name] = error
                if self._steps[name].optional:
                    logger.debug("Optional step {name} failed: {error}", name=name, error=error)
                    sorter.done(name)
                elif fatal is None:
                    fatal = error

        if fatal is not None:
            if running:
                await asyncio.gather(*running, return_exceptions=True)
            raise fatal

        return GraphResult(results=dict(results), failures=dict(failures), skipped=tuple(skipped))


__all__ = ["GraphResult", "ResourceGraph", "Step"]
