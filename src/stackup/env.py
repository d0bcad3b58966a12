"""Environment variables exported to every command."""

from __future__ import annotations

import getpass
from datetime import datetime, timezone
from typing import Iterable, Mapping

from .config import Network, Supfile


def _quote(value: str) -> str:
    # Double quotes keep $VAR and $(...) expansion on the remote side.
    escaped = value.replace("\\", "\\\\").replace('"', '\\"')
    return f'"{escaped}"'


def as_export(env: Mapping[str, str]) -> str:
    """Render ``env`` as a shell prefix of ``export KEY="value";`` statements."""
    return "".join(f"export {key}={_quote(value)};" for key, value in env.items())


def host_prefix(env: Mapping[str, str], host: str) -> str:
    """Environment prefix for a single client, binding ``SUP_HOST``."""
    return as_export(env) + f"export SUP_HOST={_quote(host)};"


def parse_env_args(args: Iterable[str]) -> dict[str, str]:
    """Parse ``KEY=VALUE`` command line arguments."""
    env: dict[str, str] = {}
    for item in args:
        key, sep, value = item.partition("=")
        if not sep or not key:
            raise ValueError(f"Invalid environment variable '{item}', expected KEY=VALUE")
        env[key] = value
    return env


def build_environment(
    supfile: Supfile,
    network: Network,
    extra: Mapping[str, str] | None = None,
    *,
    now: datetime | None = None,
    user: str | None = None,
) -> dict[str, str]:
    """Merge global, network and command line variables plus the SUP_* bindings."""
    extra = dict(extra or {})
    now = now or datetime.now(timezone.utc)

    env: dict[str, str] = {}
    env.update(supfile.env)
    env.update(network.env)
    env.update(extra)
    env["SUP_NETWORK"] = network.name
    env["SUP_USER"] = user or getpass.getuser()
    env["SUP_TIME"] = now.astimezone(timezone.utc).strftime("%Y-%m-%dT%H:%M:%SZ")
    env["SUP_ENV"] = " ".join(f"-e {key}={_quote(value)}" for key, value in extra.items())
    return env
