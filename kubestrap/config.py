"""TOML-based cluster and provider configuration.

Loads ~/.kubestrap/defaults.toml (global) and kubestrap.toml (project),
merges them, and resolves named clusters into ClusterConfig instances.
"""

from __future__ import annotations

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import TYPE_CHECKING, Any

from kubestrap.constants import DEFAULT_POLL_INTERVAL, OPERATOR_USER
from kubestrap.core.exceptions import ConfigurationError

if TYPE_CHECKING:
    from kubestrap.providers.aws.config import AWS

    type ProviderConfig = AWS

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".kubestrap" / "defaults.toml"
PROJECT_CONFIG_NAME = "kubestrap.toml"


@dataclass(frozen=True, slots=True)
class ClusterConfig:
    """Operator inputs for one bootstrap run.

    Args:
        provider: Cloud provider configuration.
        workers: Number of worker nodes.
        master_class: Instance type of the control plane.
        worker_class: Instance type of the workers.
        pod_network_cidr: Pod network range passed to kubeadm, if any.
        kubeconfig: Local destination of the cluster credentials.
        ssh_key_path: Private key matching the imported public key.
        ssh_user: Login user of the base image.
        poll_interval: Seconds between readiness rounds.
        ready_timeout: Optional bound on the readiness wait. None waits forever.
    """

    provider: ProviderConfig
    workers: int = 1
    master_class: str = "t3.medium"
    worker_class: str = "t3.medium"
    pod_network_cidr: str | None = None
    kubeconfig: Path = field(default_factory=lambda: Path("kubeconfig"))
    ssh_key_path: str = "~/.ssh/id_ed25519"
    ssh_user: str = OPERATOR_USER
    poll_interval: float = DEFAULT_POLL_INTERVAL
    ready_timeout: float | None = None

    def __post_init__(self) -> None:
        if self.workers < 0:
            raise ConfigurationError(f"workers must be >= 0, got {self.workers}")
        if self.poll_interval <= 0:
            raise ConfigurationError(f"poll_interval must be > 0, got {self.poll_interval}")
        if self.ready_timeout is not None and self.ready_timeout <= 0:
            raise ConfigurationError(f"ready_timeout must be > 0, got {self.ready_timeout}")
        if not self.master_class or not self.worker_class:
            raise ConfigurationError("master_class and worker_class are required")

    @property
    def private_key(self) -> str:
        return os.path.expanduser(self.ssh_key_path)


def _deep_merge(base: RawConfig, override: RawConfig) -> RawConfig:
    result = dict(base)
    for key, value in override.items():
        if key in result and isinstance(result[key], dict) and isinstance(value, dict):
            result[key] = _deep_merge(result[key], value)
        else:
            result[key] = value
    return result


def _read_toml(path: Path) -> RawConfig:
    if not path.is_file():
        return {}
    try:
        with path.open("rb") as f:
            return tomllib.load(f)
    except tomllib.TOMLDecodeError as e:
        raise ConfigurationError(f"Invalid TOML in {path}: {e}") from e


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    merged.setdefault("providers", {})
    merged.setdefault("clusters", {})
    return merged


def _get_provider_map() -> dict[str, type]:
    from kubestrap.providers.aws.config import AWS

    return {"aws": AWS}


def _build_provider(name: str, raw: RawConfig) -> ProviderConfig:
    raw = dict(raw)
    provider_type = raw.pop("type", None)
    if provider_type is None:
        raise ConfigurationError(f"Provider '{name}' missing 'type' field")

    provider_map = _get_provider_map()
    cls = provider_map.get(provider_type)
    if cls is None:
        raise ConfigurationError(
            f"Unknown provider type '{provider_type}'. "
            f"Valid: {', '.join(provider_map)}"
        )
    return _construct(cls, raw, f"provider '{name}'")


def _construct[T](cls: type[T], raw: RawConfig, what: str) -> T:
    known = {f.name for f in fields(cls)}  # type: ignore[arg-type]
    unknown = sorted(set(raw) - known)
    if unknown:
        raise ConfigurationError(f"Unknown keys for {what}: {', '.join(unknown)}")
    return cls(**raw)


def resolve_cluster(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
    **overrides: Any,
) -> ClusterConfig:
    """Resolve a named cluster section into a ClusterConfig.

    Keyword overrides (e.g. ``workers=3``) win over file values; ``None``
    overrides are ignored.
    """
    config = load_config(project_dir=project_dir, global_path=global_path)

    clusters = config["clusters"]
    if name not in clusters:
        raise ConfigurationError(
            f"Cluster '{name}' not found. Available: {', '.join(clusters) or 'none'}"
        )

    raw_cluster = dict(clusters[name])
    raw_cluster.update({k: v for k, v in overrides.items() if v is not None})

    provider_ref = raw_cluster.pop("provider", None)
    if provider_ref is None:
        raise ConfigurationError(f"Cluster '{name}' missing 'provider' field")

    providers = config["providers"]
    if provider_ref not in providers:
        raise ConfigurationError(
            f"Provider '{provider_ref}' not found. Available: {', '.join(providers) or 'none'}"
        )

    provider = _build_provider(provider_ref, providers[provider_ref])

    if "kubeconfig" in raw_cluster:
        raw_cluster["kubeconfig"] = Path(raw_cluster["kubeconfig"]).expanduser()

    return _construct(ClusterConfig, {"provider": provider, **raw_cluster}, f"cluster '{name}'")


__all__ = ["ClusterConfig", "load_config", "resolve_cluster"]
