"""Bootstrap token generation.

A bootstrap token is the shared secret that lets workers join the cluster
without prior credentials. It has the kubeadm format ``<id>.<secret>``:
six and sixteen characters drawn from ``[a-z0-9]``.
"""

from __future__ import annotations

import re
import secrets
import string
from dataclasses import dataclass, field
from typing import Final

from kubestrap.core.exceptions import EntropyUnavailable

TOKEN_ALPHABET: Final = string.ascii_lowercase + string.digits
TOKEN_ID_LENGTH: Final = 6
TOKEN_SECRET_LENGTH: Final = 16
TOKEN_PATTERN: Final = re.compile(r"^([a-z0-9]{6})\.([a-z0-9]{16})$")

_RESERVED_ID: Final = "0" * TOKEN_ID_LENGTH


@dataclass(frozen=True, slots=True)
class BootstrapToken:
    """Join token shared by the control plane and every worker.

    The secret is excluded from ``repr`` so the token can be passed to
    loggers and exception messages without leaking it.
    """

    id: str
    secret: str = field(repr=False)

    def __post_init__(self) -> None:
        if TOKEN_PATTERN.match(f"{self.id}.{self.secret}") is None:
            raise ValueError("Bootstrap token must match [a-z0-9]{6}.[a-z0-9]{16}")

    @property
    def value(self) -> str:
        """Serialized ``<id>.<secret>`` form passed to kubeadm."""
        return f"{self.id}.{self.secret}"

    def __str__(self) -> str:
        return self.value

    @classmethod
    def parse(cls, text: str) -> BootstrapToken:
        match = TOKEN_PATTERN.match(text.strip())
        if match is None:
            raise ValueError("Not a bootstrap token")
        return cls(id=match.group(1), secret=match.group(2))


def _random_string(length: int) -> str:
    try:
        return "".join(secrets.choice(TOKEN_ALPHABET) for _ in range(length))
    except (OSError, NotImplementedError) as e:
        raise EntropyUnavailable(f"Random source unavailable: {e}") from e


def generate() -> BootstrapToken:
    """Generate a fresh, unguessable bootstrap token.

    Raises:
        EntropyUnavailable: If the operating system random source cannot be read.
    """
    token_id = _random_string(TOKEN_ID_LENGTH)
    while token_id == _RESERVED_ID:
        token_id = _random_string(TOKEN_ID_LENGTH)
    return BootstrapToken(id=token_id, secret=_random_string(TOKEN_SECRET_LENGTH))


__all__ = [
    "BootstrapToken",
    "TOKEN_ID_LENGTH",
    "TOKEN_PATTERN",
    "TOKEN_SECRET_LENGTH",
    "generate",
]
