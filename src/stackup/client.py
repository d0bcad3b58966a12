"""SSH and localhost clients that run task commands."""

from __future__ import annotations

import asyncio
import contextlib
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Protocol

import asyncssh

from .config import Defaults

# (client, line, is_stderr) -> None
OutputHandler = Callable[["Client", str, bool], None]


class CommandError(Exception):
    """A command exited with a non-zero status."""

    def __init__(self, client: Client, command: str, exit_status: int | None) -> None:
        self.client = client
        self.command = command
        self.exit_status = exit_status
        super().__init__(f"{client.prefix}: exited with status {exit_status}")


class Client(Protocol):
    """An addressable endpoint that can run a shell command."""

    host: str
    user: str
    port: int

    @property
    def address(self) -> str: ...

    @property
    def prefix(self) -> str: ...

    async def connect(self) -> None: ...

    async def run(
        self,
        command: str,
        *,
        stdin: AsyncIterator[bytes] | None = None,
        tty: bool = False,
        on_output: OutputHandler | None = None,
    ) -> None: ...

    async def close(self) -> None: ...


def parse_address(address: str, defaults: Defaults) -> tuple[str, str, int]:
    """Split ``[ssh://][user@]host[:port]`` into user, host and port."""
    rest = address.strip()
    if rest.startswith("ssh://"):
        rest = rest[len("ssh://"):]

    user = defaults.user
    if "@" in rest:
        user, _, rest = rest.rpartition("@")

    port = defaults.port
    if rest.startswith("["):
        # [ipv6]:port
        host, _, tail = rest[1:].partition("]")
        if tail.startswith(":"):
            port = _parse_port(tail[1:], address)
    elif rest.count(":") == 1:
        host, _, raw_port = rest.partition(":")
        port = _parse_port(raw_port, address)
    else:
        host = rest

    if not host or not user:
        raise ValueError(f"Invalid host address '{address}'")
    return user, host, port


def _parse_port(raw: str, address: str) -> int:
    try:
        port = int(raw)
    except ValueError:
        raise ValueError(f"Invalid port in host address '{address}'") from None
    if not 0 < port < 65536:
        raise ValueError(f"Invalid port in host address '{address}'")
    return port


async def _feed(writer: Any, chunks: AsyncIterator[bytes] | None) -> None:
    """Copy ``chunks`` into a process's stdin, then signal EOF."""
    try:
        if chunks is not None:
            async for chunk in chunks:
                writer.write(chunk)
                await writer.drain()
        writer.write_eof()
    except (BrokenPipeError, ConnectionResetError):
        # The command exited without consuming all of its input.
        pass


async def _read_lines(
    client: Client,
    stream: Any,
    on_output: OutputHandler | None,
    is_stderr: bool,
) -> None:
    while True:
        line = await stream.readline()
        if not line:
            break
        if on_output:
            text = line.decode("utf-8", errors="replace").rstrip("\r\n")
            on_output(client, text, is_stderr)


async def _stop_feeder(feeder: asyncio.Task[None]) -> None:
    if not feeder.done():
        feeder.cancel()
    with contextlib.suppress(asyncio.CancelledError):
        await feeder


class SSHClient:
    """Runs commands on a remote host over a single SSH connection."""

    def __init__(
        self,
        address: str,
        *,
        env: str = "",
        defaults: Defaults | None = None,
        ssh_key: Path | None = None,
    ) -> None:
        defaults = defaults or Defaults()
        self.user, self.host, self.port = parse_address(address, defaults)
        self.env = env
        self.ssh_key = ssh_key or defaults.ssh_key
        self.timeout = defaults.timeout
        self._conn: asyncssh.SSHClientConnection | None = None

    @property
    def address(self) -> str:
        return f"{self.user}@{self.host}:{self.port}"

    @property
    def prefix(self) -> str:
        if self.port == 22:
            return f"{self.user}@{self.host}"
        return f"{self.user}@{self.host}:{self.port}"

    @property
    def connected(self) -> bool:
        return self._conn is not None

    def __repr__(self) -> str:
        return f"SSHClient({self.address!r})"

    async def connect(self) -> None:
        if self._conn is not None:
            return
        options: dict[str, Any] = {}
        # Fall back to the agent and ~/.ssh defaults when the key is absent
        if self.ssh_key and Path(self.ssh_key).exists():
            options["client_keys"] = [str(self.ssh_key)]
        self._conn = await asyncssh.connect(
            self.host,
            port=self.port,
            username=self.user,
            known_hosts=None,  # Skip host key verification for simplicity
            connect_timeout=self.timeout,
            **options,
        )

    async def run(
        self,
        command: str,
        *,
        stdin: AsyncIterator[bytes] | None = None,
        tty: bool = False,
        on_output: OutputHandler | None = None,
    ) -> None:
        """Run ``command`` behind the environment prefix and stream its output."""
        if self._conn is None:
            raise RuntimeError(f"{self.prefix}: not connected")

        async with self._conn.create_process(
            self.env + command,
            term_type="xterm" if tty else None,
            encoding=None,
        ) as proc:
            feeder = asyncio.create_task(_feed(proc.stdin, stdin))
            try:
                # Read stdout and stderr concurrently
                await asyncio.gather(
                    _read_lines(self, proc.stdout, on_output, False),
                    _read_lines(self, proc.stderr, on_output, True),
                )
                await proc.wait()
            finally:
                await _stop_feeder(feeder)

            if proc.exit_status != 0:
                raise CommandError(self, command, proc.exit_status)

    async def close(self) -> None:
        if self._conn is not None:
            self._conn.close()
            await self._conn.wait_closed()
            self._conn = None


class LocalhostClient:
    """Runs commands on the invoking machine through ``bash -c``."""

    def __init__(self, *, env: str = "", user: str = "", host: str = "localhost") -> None:
        self.env = env
        self.user = user
        self.host = host
        self.port = 0

    @property
    def address(self) -> str:
        return self.host

    @property
    def prefix(self) -> str:
        return f"{self.user}@{self.host}" if self.user else self.host

    def __repr__(self) -> str:
        return f"LocalhostClient({self.host!r})"

    async def connect(self) -> None:
        """Nothing to establish; kept for the Client protocol."""

    async def run(
        self,
        command: str,
        *,
        stdin: AsyncIterator[bytes] | None = None,
        tty: bool = False,
        on_output: OutputHandler | None = None,
    ) -> None:
        proc = await asyncio.create_subprocess_exec(
            "bash",
            "-c",
            self.env + command,
            stdin=asyncio.subprocess.PIPE,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE,
        )
        feeder = asyncio.create_task(_feed(proc.stdin, stdin))
        try:
            await asyncio.gather(
                _read_lines(self, proc.stdout, on_output, False),
                _read_lines(self, proc.stderr, on_output, True),
            )
            await proc.wait()
        except asyncio.CancelledError:
            if proc.returncode is None:
                proc.terminate()
                await proc.wait()
            raise
        finally:
            await _stop_feeder(feeder)

        if proc.returncode != 0:
            raise CommandError(self, command, proc.returncode)

    async def close(self) -> None:
        """Nothing to release."""
