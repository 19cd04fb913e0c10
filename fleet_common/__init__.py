"""
Fleet Common module.

This module contains shared domain models, the error taxonomy, configuration
helpers and the progress sink used across the fleet components (build,
deploy, device, cli).

The common module has no dependencies on other fleet_* modules, making it
a pure domain layer that can be imported by any component.
"""

from .errors import BuildError, ComposeParseError, DeviceAPIError, ExpectedError
from .events import ConsoleSink, ProgressSink, RunContext, ServiceEvent
from .models import (
    BuiltImage,
    ComposeProject,
    DockerOpts,
    ExecutedTask,
    Release,
    ResolvedTask,
    ServiceImage,
    SplitTask,
    TaggedImage,
)

__all__ = [
    "BuildError",
    "BuiltImage",
    "ComposeParseError",
    "ComposeProject",
    "ConsoleSink",
    "DeviceAPIError",
    "DockerOpts",
    "ExecutedTask",
    "ExpectedError",
    "ProgressSink",
    "Release",
    "ResolvedTask",
    "RunContext",
    "ServiceEvent",
    "ServiceImage",
    "SplitTask",
    "TaggedImage",
]
