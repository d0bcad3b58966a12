"""Shared test fixtures for stackup tests."""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from pathlib import Path
from typing import AsyncIterator

import pytest

from stackup.client import CommandError, OutputHandler, parse_address
from stackup.config import Command, Defaults


@pytest.fixture(scope="session", autouse=True)
def configure_test_logging() -> None:
    """Keep library logs quiet but show stackup debug output."""
    logging.getLogger().setLevel(logging.WARNING)
    logging.getLogger("stackup").setLevel(logging.DEBUG)


@dataclass
class Call:
    command: str
    stdin: bytes | None
    tty: bool


class FakeClient:
    """In-memory Client that records what it was asked to run."""

    def __init__(
        self,
        host: str,
        *,
        user: str = "deploy",
        port: int = 22,
        exit_status: int = 0,
        connect_error: Exception | None = None,
        delay: float = 0.0,
        output: tuple[str, ...] = (),
        events: list[str] | None = None,
    ) -> None:
        self.host = host
        self.user = user
        self.port = port
        self.env = ""
        self.exit_status = exit_status
        self.connect_error = connect_error
        self.delay = delay
        self.output = output
        self.events = events if events is not None else []
        self.calls: list[Call] = []
        self.connected = False
        self.closed = False

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"

    @property
    def prefix(self) -> str:
        return f"{self.user}@{self.host}"

    def __repr__(self) -> str:
        return f"FakeClient({self.host!r})"

    async def connect(self) -> None:
        if self.connect_error is not None:
            raise self.connect_error
        self.connected = True

    async def run(
        self,
        command: str,
        *,
        stdin: AsyncIterator[bytes] | None = None,
        tty: bool = False,
        on_output: OutputHandler | None = None,
    ) -> None:
        self.events.append(f"start:{self.host}")
        data = None
        if stdin is not None:
            data = b"".join([chunk async for chunk in stdin])
        self.calls.append(Call(command, data, tty))
        for line in self.output:
            if on_output:
                on_output(self, line, False)
        if self.delay:
            await asyncio.sleep(self.delay)
        self.events.append(f"end:{self.host}")
        if self.exit_status:
            raise CommandError(self, command, self.exit_status)

    async def close(self) -> None:
        self.closed = True


@pytest.fixture
def make_clients():
    """Build ``count`` fake clients named web0, web1, ..."""

    def _make(count: int, **kwargs) -> list[FakeClient]:
        return [FakeClient(f"web{i}", **kwargs) for i in range(count)]

    return _make


@pytest.fixture
def env() -> dict[str, str]:
    return {"SUP_NETWORK": "production", "SUP_USER": "tester", "APP": "api"}


@pytest.fixture
def project(tmp_path: Path) -> Path:
    """A working directory with an upload tree, template, vars and script."""
    dist = tmp_path / "dist"
    (dist / "static").mkdir(parents=True)
    (dist / "app.py").write_text("print('hi')\n")
    (dist / "static" / "site.css").write_text("body {}\n")
    (dist / "app.pyc").write_bytes(b"\x00")
    (dist / ".git").mkdir()
    (dist / ".git" / "HEAD").write_text("ref: refs/heads/main\n")

    (tmp_path / "nginx.conf.j2").write_text(
        "server_name {{ client.host }};\nworkers {{ vars.workers }};\n"
    )
    (tmp_path / "vars.yml").write_text("workers: 4\nupstreams:\n  api: [10.0.0.1, 10.0.0.2]\n")
    (tmp_path / "restart.sh").write_text("systemctl restart api\nsystemctl status api\n")
    return tmp_path


def command(name: str = "cmd", **kwargs) -> Command:
    return Command(name=name, **kwargs)


class FakeFleet:
    """Stands in for SSHClient construction inside the orchestrator."""

    def __init__(self) -> None:
        self.clients: dict[str, FakeClient] = {}
        self.exit_status: dict[str, int] = {}
        self.unreachable: set[str] = set()
        self.events: list[str] = []

    def __call__(self, address: str, *, defaults: Defaults | None = None, ssh_key: Path | None = None) -> FakeClient:
        user, host, port = parse_address(address, defaults or Defaults())
        client = FakeClient(
            host,
            user=user,
            port=port,
            exit_status=self.exit_status.get(host, 0),
            connect_error=ConnectionRefusedError("refused") if host in self.unreachable else None,
            events=self.events,
        )
        client.ssh_key = ssh_key
        self.clients[host] = client
        return client


@pytest.fixture
def fleet(monkeypatch) -> FakeFleet:
    """Replace SSH connections with in-memory clients."""
    fake = FakeFleet()
    monkeypatch.setattr("stackup.orchestrator.SSHClient", fake)
    return fake
