"""Tasks: the client-bound units of work built from one command."""

from __future__ import annotations

import getpass
import logging
import os
import shlex
import sys
import tarfile
from dataclasses import dataclass, field, replace
from pathlib import Path
from types import MappingProxyType
from typing import Any, BinaryIO, ClassVar, Iterable, Mapping, Protocol, Sequence, runtime_checkable

import jinja2
import yaml

from .client import Client, LocalhostClient
from .config import Command, TemplateSpec, Upload
from .env import host_prefix
from .tar import new_tar_stream, remote_tar_command, resolve_local_path
from .template import Renderer, load_variables

logger = logging.getLogger(__name__)

TRACE_PREFIX = "set -x;"


class Task(Protocol):
    """What the executor needs to dispatch a unit of work."""

    clients: tuple[Client, ...]
    tty: bool

    def run(self) -> str:
        """Shell command line executed on every client."""
        ...


@runtime_checkable
class ClientRenderedTask(Protocol):
    """Tasks whose input must be computed separately for each client."""

    def input_for_client(self, client: Client) -> bytes: ...


@dataclass(frozen=True)
class CommandTask:
    """A fixed command line with an optional static input stream."""

    command: str
    clients: tuple[Client, ...] = ()
    tty: bool = False
    input: BinaryIO | None = None
    owns_input: bool = False

    def run(self) -> str:
        return self.command


@dataclass(frozen=True)
class TemplateTask:
    """Writes a template, rendered per client, to ``dst`` on every client."""

    renderer: Renderer
    dst: str
    variables: Mapping[str, Any] = field(default_factory=dict)
    clients: tuple[Client, ...] = ()
    tty: ClassVar[bool] = False

    def run(self) -> str:
        return f"cat > {shlex.quote(self.dst)}"

    @property
    def input(self) -> BinaryIO | None:
        raise TypeError("template tasks have no static input; use input_for_client()")

    def input_for_client(self, client: Client) -> bytes:
        return self.renderer.render(client, self.variables)


def describe_task(task: Task) -> str:
    """First line of the task's command, shortened for messages."""
    text = task.run().strip()
    line = text.splitlines()[0] if text else ""
    if len(line) > 60 or "\n" in text:
        return line[:57] + "..."
    return line


class ErrTask(Exception):
    """A task failed on one client (or a client failed to connect)."""

    def __init__(self, task: Task | None, reason: str, client: Client | None = None) -> None:
        self.task = task
        self.reason = reason
        self.client = client
        super().__init__(self._message())

    def _message(self) -> str:
        where = f" on {self.client.prefix}" if self.client is not None else ""
        if self.task is None:
            return f"{self.client.prefix if self.client is not None else '?'}: {self.reason}"
        return f'Run("{describe_task(self.task)}"){where}: {self.reason}'


class TaskBuildError(Exception):
    """A command could not be turned into tasks; nothing was built."""

    def __init__(self, kind: str, source: str, reason: str) -> None:
        self.kind = kind
        self.source = source
        self.reason = reason
        super().__init__(f"{kind}: {source}: {reason}")


@dataclass(frozen=True)
class BuildOptions:
    """Settings that shape how commands turn into tasks."""

    debug: bool = False
    cwd: Path | None = None
    stdin: BinaryIO | None = None

    def input_stream(self) -> BinaryIO:
        return self.stdin if self.stdin is not None else sys.stdin.buffer


def close_inputs(tasks: Iterable[Task]) -> None:
    """Close the upload archives built for ``tasks``; borrowed streams such as stdin stay open."""
    for task in tasks:
        if getattr(task, "owns_input", False) and not task.input.closed:
            task.input.close()


def partition(clients: Sequence[Client], *, once: bool = False, serial: int = 0) -> list[tuple[Client, ...]]:
    """Split ``clients`` into the ordered groups that each become one task.

    ``once`` wins over ``serial``. Groups are contiguous slices, so their
    concatenation is always the original list (or its first client).
    """
    clients = tuple(clients)
    if not clients:
        return []
    if once:
        return [clients[:1]]
    if serial > 0:
        return [clients[i:i + serial] for i in range(0, len(clients), serial)]
    return [clients]


def _spread(descriptor: Any, groups: Iterable[tuple[Client, ...]]) -> list[Task]:
    return [replace(descriptor, clients=group) for group in groups]


def _local_path(cwd: Path, path: str) -> Path:
    resolved = Path(path).expanduser()
    return resolved if resolved.is_absolute() else cwd / resolved


def _shell_task(body: str, command: Command, options: BuildOptions) -> CommandTask:
    if options.debug:
        body = TRACE_PREFIX + body
    return CommandTask(
        command=body,
        tty=True,
        input=options.input_stream() if command.stdin else None,
    )


def _upload_tasks(
    upload: Upload,
    command: Command,
    clients: Sequence[Client],
    env: Mapping[str, str],
    cwd: Path,
    streams: list[BinaryIO],
) -> list[Task]:
    try:
        path = resolve_local_path(cwd, upload.src, env)
        stream = new_tar_stream(cwd, path, upload.exclude)
    except (OSError, tarfile.TarError) as e:
        raise TaskBuildError("upload", upload.src, str(e)) from e
    streams.append(stream)

    descriptor = CommandTask(command=remote_tar_command(upload.dst), tty=False, input=stream, owns_input=True)
    return _spread(descriptor, partition(clients, once=command.once, serial=command.serial))


def _template_tasks(spec: TemplateSpec, command: Command, clients: Sequence[Client], cwd: Path) -> list[Task]:
    try:
        renderer = Renderer.from_file(_local_path(cwd, spec.src))
    except OSError as e:
        raise TaskBuildError("template", spec.src, f"can't open template: {e}") from e
    except jinja2.TemplateSyntaxError as e:
        raise TaskBuildError("template", spec.src, f"can't parse template: {e}") from e

    variables: dict[str, Any] = {}
    if spec.vars:
        try:
            variables = load_variables(_local_path(cwd, spec.vars))
        except OSError as e:
            raise TaskBuildError("template", spec.vars, f"can't read variables: {e}") from e
        except (yaml.YAMLError, ValueError) as e:
            raise TaskBuildError("template", spec.vars, f"can't parse variables: {e}") from e

    descriptor = TemplateTask(renderer=renderer, dst=spec.dst, variables=MappingProxyType(variables))
    # Templates ignore once
    return _spread(descriptor, partition(clients, serial=command.serial))


def build_tasks(
    command: Command,
    clients: Sequence[Client],
    env: Mapping[str, str],
    options: BuildOptions | None = None,
) -> list[Task]:
    """Translate ``command`` into the ordered tasks that carry it out.

    Tasks come out as uploads, template, script, local, then run; each kind
    is partitioned over ``clients`` on its own. Any failure raises
    :class:`TaskBuildError` and no tasks are returned.
    """
    options = options or BuildOptions()
    try:
        cwd = options.cwd or Path(os.getcwd())
    except OSError as e:
        raise TaskBuildError("cwd", ".", f"resolving CWD failed: {e}") from e

    tasks: list[Task] = []
    streams: list[BinaryIO] = []
    groups = partition(clients, once=command.once, serial=command.serial)
    try:
        for upload in command.upload:
            tasks.extend(_upload_tasks(upload, command, clients, env, cwd, streams))

        if command.template is not None:
            tasks.extend(_template_tasks(command.template, command, clients, cwd))

        # Script: the whole file is the command body
        if command.script:
            try:
                body = _local_path(cwd, command.script).read_text()
            except OSError as e:
                raise TaskBuildError("script", command.script, f"can't read script: {e}") from e
            tasks.extend(_spread(_shell_task(body, command, options), groups))

        if command.local:
            local = LocalhostClient(
                env=host_prefix(env, "localhost"),
                user=env.get("SUP_USER") or getpass.getuser(),
            )
            tasks.append(replace(_shell_task(command.local, command, options), clients=(local,)))

        if command.run:
            tasks.extend(_spread(_shell_task(command.run, command, options), groups))
    except Exception:
        for stream in streams:
            stream.close()
        raise

    logger.debug("command=%s tasks=%d clients=%d", command.name, len(tasks), len(clients))
    return tasks
