"""
Progress reporting for builds, livepush and device logs.

Components never print directly. They report per-service events to a
ProgressSink, which demultiplexes them by service name. ConsoleSink is the
terminal implementation used by the CLI.
"""

import hashlib
from dataclasses import dataclass, field
from datetime import datetime
from typing import Literal, Protocol

import click

EventKind = Literal[
    "build_output",
    "pull_output",
    "build_status",
    "error",
    "command_execute",
    "command_output",
    "command_return",
    "container_restart",
    "cancel",
    "livepush",
    "log",
]


@dataclass
class ServiceEvent:
    """A single progress event for one service."""

    kind: EventKind
    message: str = ""
    return_code: int | None = None
    timestamp: datetime | None = None


class ProgressSink(Protocol):
    def on_service_event(self, service_name: str, event: ServiceEvent) -> None: ...


@dataclass
class RunContext:
    """
    State owned by a single pipeline run.

    Holds what would otherwise be process-wide memoized lookups, so that
    separate runs in one process do not share state.
    """

    service_colours: dict[str, tuple[int, int, int]] = field(default_factory=dict)
    device_type_arch: dict[str, str] = field(default_factory=dict)

    def service_colour(self, service_name: str) -> tuple[int, int, int]:
        """Return a stable RGB colour for a service name."""
        colour = self.service_colours.get(service_name)
        if colour is None:
            digest = hashlib.sha1(service_name.encode()).digest()
            # Keep channels away from black so output stays readable
            colour = tuple(80 + b % 176 for b in digest[:3])
            self.service_colours[service_name] = colour
        return colour


class ConsoleSink:
    """Render service events to the terminal with click."""

    def __init__(self, context: RunContext | None = None, debug: bool = False):
        self.context = context or RunContext()
        self.debug = debug

    def service_prefix(self, service_name: str) -> str:
        return click.style(
            f"[{service_name}]", fg=self.context.service_colour(service_name)
        )

    def on_service_event(self, service_name: str, event: ServiceEvent) -> None:
        prefix = self.service_prefix(service_name)
        if event.kind in ("build_output", "pull_output"):
            self.log_build(f"{prefix} {event.message}")
        elif event.kind == "build_status":
            self.log_info(f"{prefix} {event.message}")
        elif event.kind == "error":
            self.log_error(f"{prefix} {event.message}")
        elif event.kind == "command_execute":
            self.log_live(f"{prefix} Executing command: `{event.message}`")
        elif event.kind == "command_output":
            self.log_live(f"{prefix}    {event.message}")
        elif event.kind == "command_return":
            if event.return_code:
                self.log_error(
                    f"{prefix}    Command {event.message} failed with exit "
                    f"code: {event.return_code}"
                )
            else:
                self.log_live(f"{prefix} Command succeeded")
        elif event.kind == "container_restart":
            self.log_live(f"{prefix} Restarting service...")
        elif event.kind == "cancel":
            self.log_live(f"{prefix} Cancelling current livepush...")
        elif event.kind == "livepush":
            self.log_live(f"{prefix} {event.message}")
        elif event.kind == "log":
            stamp = (event.timestamp or datetime.now()).strftime("%Y-%m-%d %H:%M:%S")
            # System logs carry no service name
            if service_name:
                self.log_logs(f"[{stamp}] {prefix} {event.message}")
            else:
                self.log_logs(f"[{stamp}] {event.message}")

    def log_build(self, message: str) -> None:
        click.echo(f"{click.style('[Build]', fg='blue')}   {message}")

    def log_info(self, message: str) -> None:
        click.echo(f"{click.style('[Info]', fg='cyan')}    {message}")

    def log_success(self, message: str) -> None:
        click.echo(f"{click.style('[Success]', fg='green')} {message}")

    def log_warn(self, message: str) -> None:
        click.echo(f"{click.style('[Warn]', fg='yellow')}    {message}", err=True)

    def log_error(self, message: str) -> None:
        click.echo(f"{click.style('[Error]', fg='red')}   {message}", err=True)

    def log_live(self, message: str) -> None:
        click.echo(f"{click.style('[Live]', fg='yellow')}    {message}")

    def log_debug(self, message: str) -> None:
        if self.debug:
            click.echo(f"{click.style('[debug]', fg='magenta')}   {message}", err=True)

    def log_logs(self, message: str) -> None:
        click.echo(message)
