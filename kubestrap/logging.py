"""loguru setup for kubestrap.

The library stays silent unless a caller opts in: ``kubestrap`` is disabled
at import, and ``setup_logging`` (or the ``logging_enabled`` context
manager used by the CLI) turns it on for the duration of a run.

Example:
    with logging_enabled(LogConfig(level="DEBUG", file="kubestrap.log")):
        bootstrap_cluster(config)
"""

from __future__ import annotations

import sys
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Final, Literal

from loguru import logger

PACKAGE: Final = "kubestrap"

logger.disable(PACKAGE)

type LogLevel = Literal["DEBUG", "INFO", "WARNING", "ERROR"]

CONSOLE_FORMAT: Final = (
    "<dim>{time:HH:mm:ss}</dim> <level>{level: <7}</level> "
    "<cyan>{name}</cyan> {message}"
)
FILE_FORMAT: Final = "{time:YYYY-MM-DDTHH:mm:ss.SSSZZ} {level: <7} {name}:{line} {message}"


@dataclass(frozen=True, slots=True)
class LogConfig:
    """Where kubestrap logs go.

    Attributes:
        level: Minimum level shown on stderr.
        file: Optional log file. Always captures DEBUG.
        console: Log to stderr.
        rotation: Rotation policy of the log file, e.g. "50 MB".
        retention: Rotated files kept.
    """

    level: LogLevel = "INFO"
    file: str | None = None
    console: bool = True
    rotation: str = "50 MB"
    retention: int = 10


def setup_logging(config: LogConfig) -> list[int]:
    """Enable kubestrap logging. Returns the sink ids to pass to ``teardown_logging``."""
    logger.enable(PACKAGE)
    sinks: list[int] = []

    if config.console:
        sinks.append(
            logger.add(sys.stderr, level=config.level, format=CONSOLE_FORMAT, colorize=True, filter=PACKAGE)
        )
    if config.file:
        # diagnose=False: variable values in tracebacks would include the join token
        sinks.append(
            logger.add(
                config.file,
                level="DEBUG",
                format=FILE_FORMAT,
                rotation=config.rotation,
                retention=config.retention,
                diagnose=False,
                filter=PACKAGE,
            )
        )
    return sinks


def teardown_logging(sinks: list[int]) -> None:
    for sink in sinks:
        logger.remove(sink)
    logger.disable(PACKAGE)


@contextmanager
def logging_enabled(config: LogConfig) -> Iterator[None]:
    sinks = setup_logging(config)
    try:
        yield
    finally:
        teardown_logging(sinks)


__all__ = ["LogConfig", "LogLevel", "logging_enabled", "setup_logging", "teardown_logging"]
