"""stackup: Run Supfile commands across a fleet of SSH hosts."""

from .config import Command, Defaults, Network, Supfile, TemplateSpec, Upload, load_supfile
from .executor import Executor, HostState, HostStatus
from .orchestrator import Stackup
from .task import (
    BuildOptions,
    CommandTask,
    ErrTask,
    Task,
    TaskBuildError,
    TemplateTask,
    build_tasks,
    partition,
)

__all__ = [
    "Command",
    "Defaults",
    "Network",
    "Supfile",
    "TemplateSpec",
    "Upload",
    "load_supfile",
    "Executor",
    "HostState",
    "HostStatus",
    "Stackup",
    "BuildOptions",
    "CommandTask",
    "ErrTask",
    "Task",
    "TaskBuildError",
    "TemplateTask",
    "build_tasks",
    "partition",
]
