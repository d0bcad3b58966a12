"""TUI Dashboard for stackup."""

from typing import Any, Sequence

from rich.text import Text

from textual.app import App, ComposeResult
from textual.message import Message
from textual.reactive import reactive
from textual.widgets import Footer, Header, Label, RichLog, Static
from textual.worker import Worker, WorkerState

from .config import Command, Network, Supfile
from .executor import HostStatus
from .orchestrator import Stackup
from .task import ErrTask, Task, describe_task


STATUS_ICONS = {
    HostStatus.PENDING: ("", "dim"),
    HostStatus.CONNECTING: ("", "yellow"),
    HostStatus.RUNNING: ("", "yellow"),
    HostStatus.SUCCESS: ("", "green"),
    HostStatus.FAILED: ("", "red"),
}


class HostPanel(Static):
    """A panel displaying output for a single host."""

    status: reactive[HostStatus] = reactive(HostStatus.PENDING)

    def __init__(self, label: str, address: str, index: int, **kwargs) -> None:
        super().__init__(**kwargs)
        self.label = label
        self.address = address
        self.index = index
        self._pending: list[str] = []

    def compose(self) -> ComposeResult:
        yield Label(self._get_header(), id=f"header-{self.index}")
        yield RichLog(
            id=f"log-{self.index}",
            highlight=True,
            markup=False,
            wrap=True,
            auto_scroll=True,
        )

    def _get_header(self) -> str:
        icon, color = STATUS_ICONS.get(self.status, ("?", "white"))
        return f"[{color}]{icon}[/] [{color}][bold]{self.label}[/bold][/] [{color}]{self.address}[/]"

    def watch_status(self, status: HostStatus) -> None:
        """Update header when status changes."""
        if not self.is_mounted:
            return
        header = self.query_one(f"#header-{self.index}", Label)
        header.update(self._get_header())

    def on_mount(self) -> None:
        pending, self._pending = self._pending, []
        for line in pending:
            self.append_output(line)

    def append_output(self, line: str) -> None:
        """Append a line of output to this panel."""
        if not self.is_mounted:
            self._pending.append(line)
            return
        log = self.query_one(f"#log-{self.index}", RichLog)
        if line.startswith("$ "):
            log.write(Text(line, style="bold cyan"))
        elif line.startswith("STDERR:"):
            log.write(Text(line, style="red"))
        elif line.startswith("ERROR:"):
            log.write(Text(line, style="bold red"))
        else:
            log.write(Text(line))


class StatusBar(Static):
    """Bottom status bar showing overall progress."""

    completed: reactive[int] = reactive(0)
    total: reactive[int] = reactive(0)
    task_index: reactive[int] = reactive(0)
    task_total: reactive[int] = reactive(0)
    task_name: reactive[str] = reactive("")
    running: reactive[bool] = reactive(True)

    def render(self) -> str:
        status = "Running..." if self.running else "Complete"
        task = f"Task {self.task_index}/{self.task_total}: {self.task_name}" if self.task_total else "Connecting"
        return f"{task} | {self.completed}/{self.total} hosts done | {status} | Press 'q' to quit"


class HostOutput(Message):
    """Message for host output."""

    def __init__(self, label: str, line: str) -> None:
        self.label = label
        self.line = line
        super().__init__()


class HostStatusChange(Message):
    """Message for host status change."""

    def __init__(self, label: str, status: HostStatus) -> None:
        self.label = label
        self.status = status
        super().__init__()


class TaskStarted(Message):
    """Message for a task starting."""

    def __init__(self, index: int, total: int, name: str) -> None:
        self.index = index
        self.total = total
        self.name = name
        super().__init__()


class Dashboard(App):
    """Main TUI Dashboard application."""

    CSS = """
    Screen {
        layout: grid;
        grid-size: 2;
        grid-gutter: 1;
    }

    HostPanel {
        border: solid $primary;
        height: 100%;
        min-height: 10;
    }

    HostPanel Label {
        dock: top;
        padding: 0 1;
        background: $surface;
    }

    HostPanel RichLog {
        height: 1fr;
        padding: 0 1;
    }

    StatusBar {
        dock: bottom;
        height: 1;
        background: $surface;
        padding: 0 1;
    }
    """

    BINDINGS = [
        ("q", "quit", "Quit"),
        ("escape", "quit", "Quit"),
    ]

    def __init__(
        self,
        supfile: Supfile,
        network: Network,
        commands: Sequence[Command],
        options: dict[str, Any],
        **kwargs,
    ) -> None:
        super().__init__(**kwargs)
        self.commands = list(commands)
        self.panels: dict[str, HostPanel] = {}
        self.errors: list[ErrTask] = []
        self.failure: str | None = None
        self._worker: Worker | None = None
        self.stackup = Stackup(
            supfile,
            network,
            **options,
            on_output=self._on_output,
            on_status=self._on_status,
            on_task=self._on_task,
        )

    def _new_panel(self, label: str, address: str) -> HostPanel:
        panel = HostPanel(label, address, len(self.panels), id=f"panel-{len(self.panels)}")
        self.panels[label] = panel
        return panel

    def compose(self) -> ComposeResult:
        yield Header(show_clock=True)

        # Create panels for each host
        for client in self.stackup.clients:
            yield self._new_panel(client.prefix, client.address)

        yield StatusBar(id="status-bar")
        yield Footer()

    def on_mount(self) -> None:
        """Start execution when the app mounts."""
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.total = len(self.stackup.clients)

        # Start execution using Textual's worker system
        self._worker = self.run_worker(
            self._run_execution(), exclusive=True, thread=True, exit_on_error=False
        )

    async def _run_execution(self) -> None:
        """Run the commands and keep the collected errors."""
        self.errors = await self.stackup.run(self.commands)

    def on_worker_state_changed(self, event: Worker.StateChanged) -> None:
        """Handle worker completion."""
        if event.worker != self._worker:
            return
        if event.state in (WorkerState.SUCCESS, WorkerState.ERROR):
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.running = False
        if event.state == WorkerState.ERROR:
            self.failure = str(event.worker.error)
            self.notify(self.failure, title="Run failed", severity="error")

    def _on_output(self, label: str, line: str) -> None:
        """Handle output from a host - posts message to main thread."""
        self.post_message(HostOutput(label, line))

    def _on_status(self, label: str, status: HostStatus) -> None:
        """Handle status change for a host - posts message to main thread."""
        self.post_message(HostStatusChange(label, status))

    def _on_task(self, index: int, total: int, task: Task) -> None:
        self.post_message(TaskStarted(index, total, describe_task(task)))

    def _panel(self, label: str) -> HostPanel:
        # Local commands run on a client that only exists once tasks are built
        if label not in self.panels:
            panel = self._new_panel(label, label)
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.total += 1
            self.mount(panel, before=status_bar)
        return self.panels[label]

    def on_host_output(self, message: HostOutput) -> None:
        """Handle HostOutput message in main thread."""
        self._panel(message.label).append_output(message.line)

    def on_host_status_change(self, message: HostStatusChange) -> None:
        """Handle HostStatusChange message in main thread."""
        self._panel(message.label).status = message.status

        # Update completed count
        if message.status in (HostStatus.SUCCESS, HostStatus.FAILED):
            status_bar = self.query_one("#status-bar", StatusBar)
            status_bar.completed += 1

    def on_task_started(self, message: TaskStarted) -> None:
        status_bar = self.query_one("#status-bar", StatusBar)
        status_bar.task_index = message.index
        status_bar.task_total = message.total
        status_bar.task_name = message.name

    async def action_quit(self) -> None:
        """Quit the application."""
        if self._worker and self._worker.is_running:
            self._worker.cancel()
        self.exit()
