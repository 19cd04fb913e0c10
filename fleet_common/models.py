"""
Data models for the fleet build and deploy pipeline.

These models represent the domain objects passed between the pipeline
stages (resolver, splitter, executor, release manager, device driver),
independent of the engine or API used to produce them.

Build tasks are immutable snapshots per stage: the splitter produces
SplitTask, the resolver turns each into a ResolvedTask, and the executor
wraps that in an ExecutedTask. The ``index`` field correlates every
snapshot back to the composition's service order.
"""

from dataclasses import dataclass, field, fields
from datetime import datetime
from typing import Any, Literal

ReleaseStatus = Literal["running", "success", "failed", "cancelled"]
ImageStatus = Literal["running", "success", "failed"]


@dataclass
class DockerOpts:
    """Options passed to the engine when building or pulling a task."""

    tag: str | None = None
    cache_from: list[str] = field(default_factory=list)
    labels: dict[str, str] = field(default_factory=dict)
    build_args: dict[str, str] = field(default_factory=dict)
    nocache: bool = False
    pull: bool = False
    squash: bool = False
    force_rm: bool = True


@dataclass
class ImageDescriptor:
    """
    Pairs a service name with either an image reference or a build config.

    ``image`` is a plain string for external images, otherwise a dict with
    ``context`` and optionally ``dockerfile``, ``args`` and ``tag``.
    """

    service_name: str
    image: str | dict[str, Any]

    @property
    def is_external(self) -> bool:
        return isinstance(self.image, str)


@dataclass
class ComposeProject:
    """A resolved project: its directory, name and normalized composition."""

    path: str
    name: str
    composition: dict[str, Any]
    descriptors: list[ImageDescriptor]
    compose_str: str = ""


@dataclass(frozen=True)
class SplitTask:
    """One build or pull task per service, as produced by the splitter."""

    index: int
    service_name: str
    external: bool = False
    image_name: str | None = None  # image reference for external tasks
    context: str | None = None  # context path relative to the project
    build_stream: bytes | None = None  # tar archive of the context
    dockerfile_path: str | None = None  # configured in the composition
    args: dict[str, str] = field(default_factory=dict)
    tag: str | None = None
    docker_opts: DockerOpts = field(default_factory=DockerOpts)

    def _values(self) -> dict[str, Any]:
        return {f.name: getattr(self, f.name) for f in fields(self)}


@dataclass(frozen=True)
class ResolvedTask(SplitTask):
    """A task whose Dockerfile has been located (and rendered, for templates)."""

    project_type: str | None = None
    dockerfile: str | None = None  # resolved content
    dockerfile_name: str | None = None  # file passed to the engine, inside the context

    @classmethod
    def from_split(cls, task: SplitTask, **changes: Any) -> "ResolvedTask":
        values = task._values()
        values.update(changes)
        return cls(**values)

    def with_changes(self, **changes: Any) -> "ResolvedTask":
        values = self._values()
        values.update(changes)
        return ResolvedTask(**values)


@dataclass(frozen=True)
class ExecutedTask:
    """The terminal state of a task after the executor has run it."""

    task: ResolvedTask
    successful: bool
    name: str | None = None  # local image name (tag) on success
    error: str | None = None
    logs: str = ""
    start_time: datetime | None = None
    end_time: datetime | None = None

    @property
    def service_name(self) -> str:
        return self.task.service_name


@dataclass
class BuiltImage:
    """
    A local image ready to be deployed.

    May describe a skipped build when the image already exists locally.
    """

    service_name: str
    name: str
    logs: str = ""
    dockerfile: str | None = None
    project_type: str | None = None
    size: int | None = None
    start_time: datetime | None = None
    end_time: datetime | None = None


@dataclass
class Release:
    """A release record on the cloud API."""

    id: int
    commit: str
    status: ReleaseStatus = "running"
    composition: dict[str, Any] = field(default_factory=dict)
    source: str = "local"
    is_final: bool = True
    semver: str | None = None
    start_timestamp: datetime | None = None
    end_timestamp: datetime | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the field set the client may patch on the API."""
        result: dict[str, Any] = {
            "status": self.status,
            "is_final": self.is_final,
        }
        if self.start_timestamp is not None:
            result["start_timestamp"] = self.start_timestamp.isoformat()
        if self.end_timestamp is not None:
            result["end_timestamp"] = self.end_timestamp.isoformat()
        return result

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "Release":
        """Create a release from an API response body."""
        return cls(
            id=data["id"],
            commit=data["commit"],
            status=data.get("status", "running"),
            composition=data.get("composition") or {},
            source=data.get("source", "local"),
            is_final=data.get("is_final", True),
            semver=data.get("semver"),
            start_timestamp=_parse_timestamp(data.get("start_timestamp")),
            end_timestamp=_parse_timestamp(data.get("end_timestamp")),
        )


@dataclass
class ServiceImage:
    """A per-service image record attached to a release."""

    id: int
    service_name: str
    location: str  # is_stored_at__image_location
    status: ImageStatus = "running"
    image_size: int | None = None
    content_hash: str | None = None
    build_log: str | None = None
    dockerfile: str | None = None
    project_type: str | None = None
    start_timestamp: datetime | None = None
    end_timestamp: datetime | None = None
    push_timestamp: datetime | None = None
    error_message: str | None = None

    def to_dict(self) -> dict[str, Any]:
        """Convert to the field set patched on the API after a push."""
        result: dict[str, Any] = {"status": self.status}
        for name in (
            "image_size",
            "content_hash",
            "build_log",
            "dockerfile",
            "project_type",
            "error_message",
        ):
            value = getattr(self, name)
            if value is not None:
                result[name] = value
        for name in ("start_timestamp", "end_timestamp", "push_timestamp"):
            value = getattr(self, name)
            if value is not None:
                result[name] = value.isoformat()
        return result


@dataclass
class TaggedImage:
    """A built image tagged to its registry location for a release."""

    service_name: str
    service_image: ServiceImage
    local_image: BuiltImage
    registry: str
    repo: str
    tag: str

    @property
    def name(self) -> str:
        return f"{self.registry}/{self.repo}:{self.tag}"


@dataclass
class DeviceInfo:
    """Device type and architecture as reported by a device supervisor."""

    device_type: str
    arch: str

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceInfo":
        return cls(device_type=data["deviceType"], arch=data["arch"])


@dataclass
class DeviceContainer:
    service_name: str
    container_id: str | None
    status: str | None = None


@dataclass
class DeviceStatus:
    """Application state as reported by a device supervisor."""

    app_state: str
    containers: list[DeviceContainer] = field(default_factory=list)
    overall_progress: int | None = None

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "DeviceStatus":
        return cls(
            app_state=data.get("appState", ""),
            containers=[
                DeviceContainer(
                    service_name=c.get("serviceName", ""),
                    container_id=c.get("containerId"),
                    status=c.get("status"),
                )
                for c in data.get("containers", [])
            ],
            overall_progress=data.get("overallDownloadProgress"),
        )


def _parse_timestamp(value: str | None) -> datetime | None:
    if not value:
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None
