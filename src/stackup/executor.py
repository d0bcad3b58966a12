"""Execution driver: runs tasks in order, fanning each out over its clients."""

from __future__ import annotations

import asyncio
import logging
import shutil
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Callable, Sequence

import asyncssh

from .client import Client, CommandError
from .task import ClientRenderedTask, ErrTask, Task, describe_task

logger = logging.getLogger(__name__)

CHUNK_SIZE = 32 * 1024


class HostStatus(Enum):
    """Status of a host across the run."""

    PENDING = "pending"
    CONNECTING = "connecting"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


@dataclass
class HostState:
    """Runtime state for a host."""

    client: Client
    status: HostStatus = HostStatus.PENDING
    current_command: str = ""
    output_lines: list[str] = field(default_factory=list)
    error_message: str = ""
    log_file: Path | None = None


# Type aliases for callbacks
OutputCallback = Callable[[str, str], None]  # (host, line) -> None
StatusCallback = Callable[[str, HostStatus], None]  # (host, status) -> None
TaskCallback = Callable[[int, int, Task], None]  # (index, total, task) -> None


class InputFanout:
    """Copies one blocking byte stream to several async readers.

    A daemon thread does the blocking reads, so an interactive stdin that
    never reaches EOF cannot keep the process alive. Call :meth:`close`
    once the readers are done; the stream must not be reused before
    :meth:`wait_closed` returns.
    """

    def __init__(self, stream: BinaryIO, readers: int, chunk_size: int = CHUNK_SIZE) -> None:
        self._stream = stream
        self._chunk_size = chunk_size
        self._queues: list[asyncio.Queue[bytes]] = [asyncio.Queue() for _ in range(readers)]
        self._stop = threading.Event()
        self._thread: threading.Thread | None = None

    def start(self) -> list[AsyncIterator[bytes]]:
        loop = asyncio.get_running_loop()
        self._thread = threading.Thread(target=self._pump, args=(loop,), daemon=True)
        self._thread.start()
        return [self._read(queue) for queue in self._queues]

    def close(self) -> None:
        """Ask the reader thread to stop after its current read."""
        self._stop.set()

    async def wait_closed(self) -> None:
        if self._thread is not None:
            await asyncio.to_thread(self._thread.join)

    def _pump(self, loop: asyncio.AbstractEventLoop) -> None:
        read = getattr(self._stream, "read1", self._stream.read)
        while not self._stop.is_set():
            try:
                chunk = read(self._chunk_size)
            except (OSError, ValueError):
                chunk = b""
            try:
                for queue in self._queues:
                    loop.call_soon_threadsafe(queue.put_nowait, chunk)
            except RuntimeError:
                return  # event loop already closed
            if not chunk:
                return

    @staticmethod
    async def _read(queue: asyncio.Queue[bytes]) -> AsyncIterator[bytes]:
        while True:
            chunk = await queue.get()
            if not chunk:
                return
            yield chunk


async def _single_chunk(data: bytes) -> AsyncIterator[bytes]:
    yield data


class Executor:
    """Dispatches tasks to their clients: sequential across tasks, parallel within one."""

    def __init__(
        self,
        on_output: OutputCallback | None = None,
        on_status: StatusCallback | None = None,
        on_task: TaskCallback | None = None,
        stop_on_error: bool = True,
        log_dir: Path | None = None,
        source_path: Path | None = None,
    ):
        self.on_output = on_output
        self.on_status = on_status
        self.on_task = on_task
        self.stop_on_error = stop_on_error
        self.log_dir = log_dir
        self.source_path = source_path
        self.states: dict[str, HostState] = {}
        self._run_log_dir: Path | None = None
        self._logging_ready = False

    def _setup_logging(self) -> None:
        """Set up log directory with timestamp."""
        if self._logging_ready:
            return
        self._logging_ready = True
        if self.log_dir is None:
            return
        timestamp = datetime.now().strftime("%Y%m%d_%H%M%S")
        self._run_log_dir = self.log_dir / timestamp
        self._run_log_dir.mkdir(parents=True, exist_ok=True)

        # Copy the source Supfile to the log directory
        if self.source_path and self.source_path.exists():
            shutil.copy(self.source_path, self._run_log_dir / "Supfile")

    def _track(self, client: Client) -> str:
        """Register ``client`` and return its output label."""
        label = client.prefix
        if label not in self.states:
            log_file = None
            if self._run_log_dir:
                log_file = self._run_log_dir / f"{label.replace('/', '_')}.log"
            self.states[label] = HostState(client=client, log_file=log_file)
        return label

    def _emit_output(self, label: str, line: str) -> None:
        """Emit output line for a host."""
        if label in self.states:
            self.states[label].output_lines.append(line)

            # Write to log file
            state = self.states[label]
            if state.log_file:
                with open(state.log_file, "a") as f:
                    f.write(line + "\n")

        if self.on_output:
            self.on_output(label, line)

    def _emit_status(self, label: str, status: HostStatus) -> None:
        """Emit status change for a host."""
        if label in self.states:
            if self.states[label].status == status:
                return
            self.states[label].status = status
        if self.on_status:
            self.on_status(label, status)

    def _client_output(self, client: Client, line: str, is_stderr: bool) -> None:
        prefix = "STDERR: " if is_stderr else ""
        self._emit_output(client.prefix, f"{prefix}{line}")

    def _fail(self, task: Task | None, client: Client, reason: str) -> ErrTask:
        label = self._track(client)
        self.states[label].error_message = reason
        self._emit_output(label, f"ERROR: {reason}")
        self._emit_status(label, HostStatus.FAILED)
        return ErrTask(task, reason, client)

    async def connect(self, clients: Sequence[Client]) -> list[ErrTask]:
        """Connect to all clients in parallel."""
        self._setup_logging()

        async def _connect(client: Client) -> ErrTask | None:
            label = self._track(client)
            self._emit_status(label, HostStatus.CONNECTING)
            self._emit_output(label, f"Connecting to {client.address}...")
            try:
                await client.connect()
            except asyncssh.Error as e:
                return self._fail(None, client, f"SSH error: {e}")
            except OSError as e:
                return self._fail(None, client, f"Connection error: {e}")
            self._emit_output(label, "Connected successfully")
            self._emit_status(label, HostStatus.PENDING)
            return None

        results = await asyncio.gather(*(_connect(client) for client in clients))
        return [error for error in results if error is not None]

    async def run(self, tasks: Sequence[Task]) -> list[ErrTask]:
        """Run ``tasks`` in order and return the failures.

        No task starts before every dispatch of the previous one has
        returned. With ``stop_on_error`` the first failing task ends the run.
        """
        self._setup_logging()
        errors: list[ErrTask] = []
        total = len(tasks)
        for index, task in enumerate(tasks, start=1):
            if self.on_task:
                self.on_task(index, total, task)
            logger.debug("task %d/%d clients=%d run=%s", index, total, len(task.clients), describe_task(task))

            task_errors = await self.run_task(task)
            errors.extend(task_errors)
            if task_errors and self.stop_on_error:
                if index < total:
                    logger.warning("stopping after task %d/%d: %d host(s) failed", index, total, len(task_errors))
                break
        return errors

    async def run_task(self, task: Task) -> list[ErrTask]:
        """Dispatch one task to all of its clients concurrently."""
        clients = task.clients
        stream = self._static_input(task)
        fanout = None
        inputs: list[AsyncIterator[bytes] | None] = [None] * len(clients)
        if stream is not None:
            if stream.seekable():
                stream.seek(0)
            fanout = InputFanout(stream, len(clients))
            inputs = list(fanout.start())
        try:
            results = await asyncio.gather(
                *(self._dispatch(task, client, stdin) for client, stdin in zip(clients, inputs))
            )
        finally:
            if fanout is not None:
                fanout.close()
                # A seekable stream is rewound for the next batch; a blocked stdin read is left behind
                if stream.seekable():
                    await fanout.wait_closed()
        return [error for error in results if error is not None]

    @staticmethod
    def _static_input(task: Task) -> BinaryIO | None:
        if isinstance(task, ClientRenderedTask):
            return None
        return getattr(task, "input", None)

    async def _dispatch(
        self,
        task: Task,
        client: Client,
        stdin: AsyncIterator[bytes] | None,
    ) -> ErrTask | None:
        """Run a task on a single client. Returns an error on failure."""
        label = self._track(client)
        command = task.run()
        self.states[label].current_command = command
        self._emit_status(label, HostStatus.RUNNING)
        self._emit_output(label, f"$ {describe_task(task)}")

        if isinstance(task, ClientRenderedTask):
            try:
                stdin = _single_chunk(task.input_for_client(client))
            except Exception as e:
                # Any exception raised while rendering fails this client only
                return self._fail(task, client, f"template render failed: {e}")

        try:
            await client.run(command, stdin=stdin, tty=task.tty, on_output=self._client_output)
        except CommandError as e:
            return self._fail(task, client, f"exited with status {e.exit_status}")
        except (asyncssh.Error, asyncssh.ChannelOpenError) as e:
            return self._fail(task, client, f"SSH error: {e}")
        except OSError as e:
            return self._fail(task, client, f"Connection error: {e}")
        return None

    def finish(self) -> None:
        """Mark every host that did not fail as successful."""
        for label, state in self.states.items():
            if state.status != HostStatus.FAILED:
                self._emit_status(label, HostStatus.SUCCESS)
