"""TOML-based server, logging and cloud configuration.

Loads ~/.stratus/defaults.toml (global) and stratus.toml (project),
merges them, and resolves named clouds into Cloud instances.

Example stratus.toml:

    [server]
    host = "0.0.0.0"
    port = 8080

    [logging]
    level = "DEBUG"

    [timeouts]
    create = 20

    [clouds.training]
    provider = "aws"
    region = "us-west"
    tags = { team = "research" }
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, fields
from datetime import timedelta
from pathlib import Path
from typing import Any

from stratus.constants import DEFAULT_AGENT_COMMAND, WORKER_DIR, Provider
from stratus.logging import LogConfig
from stratus.task.cloud import Cloud, Timeouts

type RawConfig = dict[str, Any]

GLOBAL_CONFIG_PATH = Path.home() / ".stratus" / "defaults.toml"
PROJECT_CONFIG_NAME = "stratus.toml"


@dataclass(frozen=True, slots=True)
class ServerSettings:
    host: str = "127.0.0.1"
    port: int = 8080


@dataclass(frozen=True, slots=True)
class AgentSettings:
    """How workers hand off to the agent after bootstrap."""

    command: str = DEFAULT_AGENT_COMMAND
    directory: str = WORKER_DIR


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
    with path.open("rb") as f:
        return tomllib.load(f)


def load_config(
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> RawConfig:
    global_cfg = _read_toml(global_path or GLOBAL_CONFIG_PATH)
    project_path = (project_dir or Path.cwd()) / PROJECT_CONFIG_NAME
    project_cfg = _read_toml(project_path)

    merged = _deep_merge(global_cfg, project_cfg)
    for section in ("server", "logging", "timeouts", "agent", "clouds"):
        merged.setdefault(section, {})
    return merged


def _only_known(cls: type, raw: RawConfig, section: str) -> RawConfig:
    known = {f.name for f in fields(cls)}
    unknown = set(raw) - known
    if unknown:
        raise ValueError(
            f"Unknown keys in [{section}]: {', '.join(sorted(unknown))}. "
            f"Valid: {', '.join(sorted(known))}"
        )
    return raw


def _build_timeouts(raw: RawConfig, section: str = "timeouts") -> Timeouts:
    minutes = _only_known(Timeouts, raw, section)
    return Timeouts(**{k: timedelta(minutes=v) for k, v in minutes.items()})


def server_settings(config: RawConfig | None = None) -> ServerSettings:
    config = config if config is not None else load_config()
    return ServerSettings(**_only_known(ServerSettings, config["server"], "server"))


def agent_settings(config: RawConfig | None = None) -> AgentSettings:
    config = config if config is not None else load_config()
    return AgentSettings(**_only_known(AgentSettings, config["agent"], "agent"))


def timeouts(config: RawConfig | None = None) -> Timeouts:
    """Global [timeouts], used for clouds built outside [clouds.<name>]."""
    config = config if config is not None else load_config()
    return _build_timeouts(config["timeouts"])


def log_config(config: RawConfig | None = None) -> LogConfig:
    config = config if config is not None else load_config()
    return LogConfig(**_only_known(LogConfig, config["logging"], "logging"))


def resolve_cloud(
    name: str,
    *,
    project_dir: Path | None = None,
    global_path: Path | None = None,
) -> Cloud:
    """Build the Cloud named ``name`` from [clouds.<name>].

    Timeouts in the cloud section override the global [timeouts] section.
    Credentials are not read from configuration; the provider SDKs discover
    them from the environment.
    """
    config = load_config(project_dir=project_dir, global_path=global_path)

    clouds = config["clouds"]
    if name not in clouds:
        raise KeyError(f"Cloud '{name}' not found. Available: {', '.join(clouds) or 'none'}")

    raw_cloud = dict(clouds[name])

    provider_ref = raw_cloud.pop("provider", None)
    if provider_ref is None:
        raise ValueError(f"Cloud '{name}' missing 'provider' field")
    try:
        provider = Provider(provider_ref)
    except ValueError:
        raise ValueError(
            f"Unknown provider '{provider_ref}'. Valid: {', '.join(p.value for p in Provider)}"
        ) from None

    raw_timeouts = _deep_merge(config["timeouts"], raw_cloud.pop("timeouts", {}))
    timeouts = _build_timeouts(raw_timeouts, f"clouds.{name}.timeouts")

    region = raw_cloud.pop("region", "us-east")
    tags = dict(raw_cloud.pop("tags", {}))
    if raw_cloud:
        raise ValueError(f"Unknown keys in [clouds.{name}]: {', '.join(sorted(raw_cloud))}")

    return Cloud(provider=provider, region=region, timeouts=timeouts, tags=tags)
