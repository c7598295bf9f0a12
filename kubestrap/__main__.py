"""Command line entry point.

Usage:
    python -m kubestrap up dev --workers 3
    python -m kubestrap token
"""

from __future__ import annotations

import argparse
import sys
from collections.abc import Sequence

from rich.console import Console
from rich.table import Table

from kubestrap.config import resolve_cluster
from kubestrap.core.exceptions import KubestrapError
from kubestrap.logging import LogConfig, logging_enabled
from kubestrap.orchestrator import bootstrap_cluster
from kubestrap.token import generate
from kubestrap.types import BootstrapResult

console = Console(stderr=True)


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="kubestrap",
        description="Provision a minimal kubeadm cluster and fetch its kubeconfig",
    )
    commands = parser.add_subparsers(dest="command", required=True)

    up = commands.add_parser("up", help="Bootstrap a cluster defined in kubestrap.toml")
    up.add_argument("cluster", help="Cluster name under [clusters]")
    up.add_argument("--workers", type=int, default=None)
    up.add_argument("--kubeconfig", type=str, default=None, help="Local kubeconfig destination")
    up.add_argument(
        "--ready-timeout", type=float, default=None,
        help="Give up waiting for nodes after this many seconds (default: wait forever)",
    )
    up.add_argument(
        "--log-level", type=str, default="INFO",
        choices=["DEBUG", "INFO", "WARNING", "ERROR"],
    )
    up.add_argument("--log-file", type=str, default=None)

    commands.add_parser("token", help="Print a fresh join token")
    return parser


def _summary(result: BootstrapResult) -> Table:
    table = Table(title="Cluster nodes")
    table.add_column("Node", style="cyan")
    table.add_column("Instance")
    table.add_column("Internal")
    table.add_column("External")
    table.add_column("Status")

    for node in result.state.nodes:
        table.add_row(
            node.name, node.provider_id, node.internal_address,
            node.external_address or "-", "[green]ready[/green]",
        )
    for failure in result.state.failed_workers:
        table.add_row(failure.name, "-", "-", "-", f"[red]failed[/red]: {failure.error.reason}")
    return table


def _up(args: argparse.Namespace) -> int:
    config = resolve_cluster(
        args.cluster,
        workers=args.workers,
        kubeconfig=args.kubeconfig,
        ready_timeout=args.ready_timeout,
    )

    with logging_enabled(LogConfig(level=args.log_level, file=args.log_file)):
        result = bootstrap_cluster(config, cluster=args.cluster)

    console.print(_summary(result))
    console.print(f"[bold green]✓[/bold green] Kubeconfig written to {result.kubeconfig_path}")
    return 0


def main(argv: Sequence[str] | None = None) -> int:
    args = _build_parser().parse_args(argv)

    try:
        match args.command:
            case "up":
                return _up(args)
            case "token":
                print(generate())
                return 0
    except KubestrapError as e:
        console.print(f"[bold red]✗[/bold red] {e}")
        return 1
    return 2


if __name__ == "__main__":
    sys.exit(main())
