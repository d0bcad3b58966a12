"""Runs Supfile commands against a network of hosts."""

from __future__ import annotations

import asyncio
import logging
import re
from pathlib import Path
from typing import BinaryIO, Mapping, Sequence

from .client import SSHClient
from .config import Command, Network, Supfile
from .env import build_environment, host_prefix
from .executor import Executor, OutputCallback, StatusCallback, TaskCallback
from .task import BuildOptions, ErrTask, build_tasks, close_inputs

logger = logging.getLogger(__name__)


def filter_hosts(hosts: Sequence[str], only: str | None = None, exclude: str | None = None) -> list[str]:
    """Apply ``--only``/``--except`` regular expressions, dropping duplicates."""
    only_re = re.compile(only) if only else None
    exclude_re = re.compile(exclude) if exclude else None

    selected: list[str] = []
    for host in hosts:
        if only_re and not only_re.search(host):
            continue
        if exclude_re and exclude_re.search(host):
            continue
        if host not in selected:
            selected.append(host)
    return selected


class Stackup:
    """One run of commands against a network."""

    def __init__(
        self,
        supfile: Supfile,
        network: Network,
        *,
        extra_env: Mapping[str, str] | None = None,
        only: str | None = None,
        exclude: str | None = None,
        debug: bool = False,
        stop_on_error: bool | None = None,
        enable_logging: bool = True,
        ssh_key: Path | None = None,
        cwd: Path | None = None,
        stdin: BinaryIO | None = None,
        on_output: OutputCallback | None = None,
        on_status: StatusCallback | None = None,
        on_task: TaskCallback | None = None,
    ) -> None:
        self.supfile = supfile
        self.network = network
        self.env = build_environment(supfile, network, extra_env)
        self.options = BuildOptions(debug=debug, cwd=cwd, stdin=stdin)

        hosts = filter_hosts(network.resolve_hosts(), only, exclude)
        if not hosts:
            raise ValueError(f"No hosts left to run on in network '{network.name}'")
        self.clients = [self._make_client(host, ssh_key) for host in hosts]

        if stop_on_error is None:
            stop_on_error = supfile.defaults.stop_on_error
        log_dir = None
        if enable_logging and not supfile.defaults.no_logs:
            log_dir = supfile.log_dir
        self.executor = Executor(
            on_output=on_output,
            on_status=on_status,
            on_task=on_task,
            stop_on_error=stop_on_error,
            log_dir=log_dir,
            source_path=supfile.source_path,
        )

    def _make_client(self, host: str, ssh_key: Path | None) -> SSHClient:
        client = SSHClient(host, defaults=self.supfile.defaults, ssh_key=ssh_key)
        client.env = host_prefix(self.env, client.host)
        return client

    async def run(self, commands: Sequence[Command]) -> list[ErrTask]:
        """Connect, run every command in order, and disconnect.

        Connection failures and (with ``stop_on_error``) the first failing
        command end the run. :class:`TaskBuildError` propagates unchanged.
        """
        errors = await self.executor.connect(self.clients)
        try:
            if errors:
                return errors
            for command in commands:
                logger.info("network=%s command=%s", self.network.name, command.name)
                tasks = build_tasks(command, self.clients, self.env, self.options)
                try:
                    command_errors = await self.executor.run(tasks)
                finally:
                    close_inputs(tasks)
                errors.extend(command_errors)
                if command_errors and self.executor.stop_on_error:
                    break
            self.executor.finish()
            return errors
        finally:
            await self.close()

    async def close(self) -> None:
        results = await asyncio.gather(
            *(client.close() for client in self.clients), return_exceptions=True
        )
        for client, result in zip(self.clients, results):
            if isinstance(result, Exception):
                logger.warning("closing %s failed: %s", client.prefix, result)
