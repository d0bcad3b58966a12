#!/usr/bin/env python3
"""Main entry point for stackup."""

import argparse
import asyncio
import logging
import sys
from pathlib import Path
from typing import Optional, Sequence

from .config import Supfile, find_supfile, load_supfile
from .env import parse_env_args
from .executor import HostStatus
from .orchestrator import Stackup
from .task import Task, TaskBuildError, describe_task


def parse_args(argv: Optional[Sequence[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(
        prog="stackup",
        description="Run Supfile commands on a network of SSH hosts",
    )
    parser.add_argument("network", nargs="?", help="Network to run against")
    parser.add_argument("commands", nargs="*", help="Commands or targets to run, in order")
    parser.add_argument(
        "-f",
        "--file",
        type=Path,
        help="Path to the Supfile (default: ./Supfile or ./Supfile.yml)",
    )
    parser.add_argument(
        "-e",
        "--env",
        action="append",
        default=[],
        metavar="KEY=VALUE",
        help="Set an environment variable (repeatable)",
    )
    parser.add_argument("--only", metavar="REGEX", help="Run only on hosts matching REGEX")
    parser.add_argument("--except", dest="exclude", metavar="REGEX", help="Skip hosts matching REGEX")
    parser.add_argument(
        "-D",
        "--debug",
        action="store_true",
        help="Trace every executed line of remote commands (set -x)",
    )
    parser.add_argument(
        "--keep-going",
        action="store_true",
        help="Continue with the remaining tasks after a host fails",
    )
    parser.add_argument(
        "--key",
        type=Path,
        help="Override SSH key path from the Supfile",
    )
    parser.add_argument(
        "--no-logs",
        action="store_true",
        help="Disable logging to files",
    )
    parser.add_argument(
        "--dashboard",
        action="store_true",
        help="Run with the TUI dashboard",
    )
    parser.add_argument(
        "--log-level",
        default="WARNING",
        help="Python logging level (default: WARNING)",
    )
    return parser.parse_args(argv)


def configure_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.WARNING),
        format="%(levelname)s %(name)s - %(message)s",
    )


def main(argv: Optional[Sequence[str]] = None) -> int:
    """Main entry point."""
    args = parse_args(argv)
    configure_logging("DEBUG" if args.debug else args.log_level)

    # Load configuration
    try:
        supfile = load_supfile(args.file or find_supfile())
    except FileNotFoundError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return 1

    ssh_key = None
    if args.key:
        ssh_key = args.key.expanduser()
        if not ssh_key.exists():
            print(f"Error: SSH key not found: {ssh_key}", file=sys.stderr)
            return 1

    if not args.network:
        print("Error: no network given", file=sys.stderr)
        _print_networks(supfile)
        return 1

    network = supfile.networks.get(args.network)
    if network is None:
        print(f"Error: unknown network '{args.network}'", file=sys.stderr)
        _print_networks(supfile)
        return 1

    if not args.commands:
        print("Error: no command given", file=sys.stderr)
        _print_commands(supfile)
        return 1

    try:
        commands = supfile.resolve_commands(args.commands)
        extra_env = parse_env_args(args.env)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    options = dict(
        extra_env=extra_env,
        only=args.only,
        exclude=args.exclude,
        debug=args.debug,
        stop_on_error=False if args.keep_going else None,
        enable_logging=not args.no_logs,
        ssh_key=ssh_key,
    )

    if not args.dashboard:
        # Run without TUI dashboard (default)
        return _run_headless(supfile, network, commands, options)

    # Imported lazily so headless runs don't pay for textual
    from .dashboard import Dashboard

    try:
        app = Dashboard(supfile, network, commands, options)
    except (ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    app.run()

    if app.failure:
        print(f"Error: {app.failure}", file=sys.stderr)
        return 1
    return _report(app.errors)


def _run_headless(supfile: Supfile, network, commands, options: dict) -> int:
    """Run commands without the TUI dashboard."""
    # ANSI colors for different hosts
    colors = [
        "\033[36m",  # Cyan
        "\033[33m",  # Yellow
        "\033[35m",  # Magenta
        "\033[32m",  # Green
        "\033[34m",  # Blue
        "\033[91m",  # Light Red
        "\033[96m",  # Light Cyan
        "\033[93m",  # Light Yellow
    ]
    reset = "\033[0m"
    bold = "\033[1m"
    host_colors: dict[str, str] = {}

    def color_for(host: str) -> str:
        if host not in host_colors:
            host_colors[host] = colors[len(host_colors) % len(colors)]
        return host_colors[host]

    def on_output(host: str, line: str) -> None:
        print(f"{color_for(host)}[{host}]{reset} {line}")

    def on_status(host: str, status: HostStatus) -> None:
        if status in (HostStatus.FAILED, HostStatus.SUCCESS):
            print(f"{color_for(host)}[{host}]{reset} Status: {status.value}")

    def on_task(index: int, total: int, task: Task) -> None:
        hosts = ", ".join(client.prefix for client in task.clients)
        print(f"{bold}Task {index}/{total}: {describe_task(task)} ({hosts}){reset}")

    try:
        stackup = Stackup(
            supfile,
            network,
            **options,
            on_output=on_output,
            on_status=on_status,
            on_task=on_task,
        )
        errors = asyncio.run(stackup.run(commands))
    except (TaskBuildError, ValueError, RuntimeError) as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\nInterrupted", file=sys.stderr)
        return 130

    return _report(errors)


def _report(errors) -> int:
    if not errors:
        return 0
    print("", file=sys.stderr)
    for error in errors:
        print(f"Error: {error}", file=sys.stderr)
    return 1


def _print_networks(supfile: Supfile) -> None:
    print("Networks:", file=sys.stderr)
    for name, network in supfile.networks.items():
        print(f"- {name}", file=sys.stderr)
        for host in network.hosts:
            print(f"\t- {host}", file=sys.stderr)


def _print_commands(supfile: Supfile) -> None:
    print("Targets:", file=sys.stderr)
    for name, members in supfile.targets.items():
        print(f"- {name:<20} {' '.join(members)}", file=sys.stderr)
    print("Commands:", file=sys.stderr)
    for name, command in supfile.commands.items():
        print(f"- {name:<20} {command.desc}", file=sys.stderr)


if __name__ == "__main__":
    sys.exit(main())
