"""Supfile loader for stackup."""

from __future__ import annotations

import subprocess
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

import yaml

DEFAULT_SUPFILES = ("Supfile", "Supfile.yml")


@dataclass
class Defaults:
    """Connection and execution defaults shared by every host."""

    user: str = "root"
    port: int = 22
    stop_on_error: bool = True
    no_logs: bool = False
    ssh_key: Path = field(default_factory=lambda: Path("~/.ssh/id_rsa").expanduser())
    timeout: int = 30


@dataclass(frozen=True)
class Upload:
    """A local path tree copied to a remote destination."""

    src: str
    dst: str
    exclude: tuple[str, ...] = ()


@dataclass(frozen=True)
class TemplateSpec:
    """A local template rendered per host and written to ``dst``."""

    src: str
    dst: str
    vars: str | None = None


@dataclass(frozen=True)
class Command:
    """One logical step: what to run and how to spread it over the hosts."""

    name: str
    desc: str = ""
    upload: tuple[Upload, ...] = ()
    template: TemplateSpec | None = None
    script: str = ""
    local: str = ""
    run: str = ""
    once: bool = False
    serial: int = 0
    stdin: bool = False


@dataclass
class Network:
    """A named group of hosts with its own environment."""

    name: str
    hosts: list[str] = field(default_factory=list)
    env: dict[str, str] = field(default_factory=dict)
    inventory: str | None = None

    def resolve_hosts(self) -> list[str]:
        """Return static hosts followed by the hosts printed by ``inventory``."""
        hosts = list(self.hosts)
        if not self.inventory:
            return hosts

        proc = subprocess.run(
            ["bash", "-c", self.inventory],
            capture_output=True,
            text=True,
        )
        if proc.returncode != 0:
            raise RuntimeError(
                f"inventory for network '{self.name}' failed: "
                f"{proc.stderr.strip() or proc.stdout.strip()}"
            )
        for line in proc.stdout.splitlines():
            line = line.strip()
            if not line or line.startswith("#"):
                continue
            hosts.append(line)
        return hosts


@dataclass
class Supfile:
    """Main configuration: networks, commands and targets."""

    networks: dict[str, Network]
    commands: dict[str, Command]
    targets: dict[str, list[str]] = field(default_factory=dict)
    env: dict[str, str] = field(default_factory=dict)
    defaults: Defaults = field(default_factory=Defaults)
    log_dir: Path = field(default_factory=lambda: Path("logs"))
    version: str = ""
    source_path: Path | None = None  # Path to the original Supfile

    def resolve_commands(self, names: list[str]) -> list[Command]:
        """Expand targets and look up commands, preserving the given order."""
        commands: list[Command] = []
        for name in names:
            if name in self.targets:
                for command_name in self.targets[name]:
                    commands.append(self._command(command_name, target=name))
            else:
                commands.append(self._command(name))
        return commands

    def _command(self, name: str, target: str | None = None) -> Command:
        command = self.commands.get(name)
        if command is None:
            if target:
                raise ValueError(f"Target '{target}' refers to unknown command '{name}'")
            raise ValueError(f"Unknown command or target '{name}'")
        return command


def find_supfile(directory: Path | None = None) -> Path:
    """Locate the default Supfile in ``directory`` (the CWD by default)."""
    base = directory or Path.cwd()
    for name in DEFAULT_SUPFILES:
        candidate = base / name
        if candidate.exists():
            return candidate
    return base / DEFAULT_SUPFILES[0]


def load_supfile(path: str | Path) -> Supfile:
    """Load and validate a Supfile."""
    path = Path(path).resolve()

    if not path.exists():
        raise FileNotFoundError(f"Supfile not found: {path}")

    with open(path) as f:
        try:
            raw = yaml.safe_load(f)
        except yaml.YAMLError as e:
            raise ValueError(f"{path}: invalid YAML: {e}") from e

    if raw is None:
        raw = {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: top level must be a mapping")

    supfile = _parse_supfile(raw)
    supfile.source_path = path
    return supfile


def _parse_defaults(raw: dict[str, Any]) -> Defaults:
    """Parse the defaults section."""
    defaults_raw = raw.get("defaults") or {}
    ssh_key_str = defaults_raw.get("ssh_key", "~/.ssh/id_rsa")
    return Defaults(
        user=defaults_raw.get("user", "root"),
        port=int(defaults_raw.get("port", 22)),
        stop_on_error=bool(defaults_raw.get("stop_on_error", True)),
        no_logs=bool(defaults_raw.get("no_logs", False)),
        ssh_key=Path(ssh_key_str).expanduser(),
        timeout=int(defaults_raw.get("timeout", 30)),
    )


def _parse_supfile(raw: dict[str, Any]) -> Supfile:
    """Parse raw YAML data into a Supfile object."""
    defaults = _parse_defaults(raw)
    log_dir = Path(raw.get("log_dir", "logs")).expanduser().resolve()

    networks = {
        name: _parse_network(name, network_raw or {})
        for name, network_raw in (raw.get("networks") or {}).items()
    }
    if not networks:
        raise ValueError("No networks defined in Supfile")

    commands = {
        name: _parse_command(name, command_raw or {})
        for name, command_raw in (raw.get("commands") or {}).items()
    }
    if not commands:
        raise ValueError("No commands defined in Supfile")

    targets: dict[str, list[str]] = {}
    for name, members in (raw.get("targets") or {}).items():
        if isinstance(members, str):
            members = [members]
        if name in commands:
            raise ValueError(f"Target '{name}' shadows a command of the same name")
        targets[name] = [str(member) for member in members or []]

    return Supfile(
        networks=networks,
        commands=commands,
        targets=targets,
        env=_parse_env(raw.get("env"), "env"),
        defaults=defaults,
        log_dir=log_dir,
        version=str(raw.get("version", "")),
    )


def _parse_env(raw: Any, where: str) -> dict[str, str]:
    """Parse an environment mapping, keeping declaration order."""
    if raw is None:
        return {}
    if not isinstance(raw, dict):
        raise ValueError(f"{where}: environment must be a mapping")
    return {str(key): "" if value is None else str(value) for key, value in raw.items()}


def _parse_network(name: str, raw: dict[str, Any]) -> Network:
    """Parse a single network."""
    hosts = raw.get("hosts") or []
    if isinstance(hosts, str):
        hosts = [hosts]
    inventory = raw.get("inventory")
    if not hosts and not inventory:
        raise ValueError(f"Network '{name}' must have 'hosts' or an 'inventory'")
    return Network(
        name=name,
        hosts=[str(host) for host in hosts],
        env=_parse_env(raw.get("env"), f"network '{name}'"),
        inventory=str(inventory) if inventory else None,
    )


def _parse_command(name: str, raw: dict[str, Any]) -> Command:
    """Parse a single command entry."""
    uploads = tuple(_parse_upload(name, entry) for entry in raw.get("upload") or [])

    template = None
    template_raw = raw.get("template")
    if template_raw:
        if not template_raw.get("src") or not template_raw.get("dst"):
            raise ValueError(f"Command '{name}': template needs src and dst")
        template = TemplateSpec(
            src=str(template_raw["src"]),
            dst=str(template_raw["dst"]),
            vars=str(template_raw["vars"]) if template_raw.get("vars") else None,
        )

    serial = raw.get("serial", 0) or 0
    if isinstance(serial, bool) or not isinstance(serial, int) or serial < 0:
        raise ValueError(f"Command '{name}': serial must be a non-negative integer")

    command = Command(
        name=name,
        desc=str(raw.get("desc", "")),
        upload=uploads,
        template=template,
        script=str(raw.get("script") or ""),
        local=str(raw.get("local") or ""),
        run=str(raw.get("run") or ""),
        once=bool(raw.get("once", False)),
        serial=serial,
        stdin=bool(raw.get("stdin", False)),
    )
    if not (command.upload or command.template or command.script or command.local or command.run):
        raise ValueError(f"Command '{name}' has nothing to do")
    return command


def _parse_upload(command_name: str, raw: dict[str, Any]) -> Upload:
    """Parse one upload entry; ``exclude`` may be a list or comma-separated."""
    if not raw.get("src") or not raw.get("dst"):
        raise ValueError(f"Command '{command_name}': upload entry needs src and dst")

    exclude = raw.get("exclude") or []
    if isinstance(exclude, str):
        exclude = exclude.split(",")
    return Upload(
        src=str(raw["src"]),
        dst=str(raw["dst"]),
        exclude=tuple(pattern.strip() for pattern in map(str, exclude) if pattern.strip()),
    )
