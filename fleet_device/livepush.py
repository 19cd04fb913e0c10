"""
Livepush: patch a running container instead of rebuilding its image.

The service's Dockerfile is analysed stage by stage. For every COPY/ADD
from the build context we know which local files end up where in the
container; a file change is applied by copying the file in (or deleting
it) and replaying the RUN instructions that follow the affected COPY,
with the WORKDIR, ENV and build arguments in effect at that point.

Intermediate stages are patched in temporary containers created from the
stage images recorded during the build, and their ``COPY --from``
artefacts are copied into the running container. The container is
restarted once all stages have been patched.
"""

import io
import logging
import os
import posixpath
import re
import tarfile
from collections.abc import Callable
from dataclasses import dataclass, field
from fnmatch import fnmatchcase

from fleet_build.docker_engine import DockerEngine
from fleet_build.dockerfile import Dockerfile, Instruction
from fleet_build.packager import read_tar_entries, write_tar_entries
from fleet_common.errors import ContainerNotRunningError
from fleet_common.events import ServiceEvent

logger = logging.getLogger(__name__)

EventHandler = Callable[[ServiceEvent], None]

_GLOB_CHARS = re.compile(r"[*?\[]")
_ENV_PAIR_RE = re.compile(r'(\w+)=("(?:[^"\\]|\\.)*"|\S*)')
INTERMEDIATE_COMMAND = ["/bin/sh", "-c", "while true; do sleep 3600; done"]


def _normalize_source(source: str) -> str:
    normalized = posixpath.normpath(source.replace("\\", "/"))
    return "" if normalized in (".", "/") else normalized.lstrip("/")


def parse_env_value(value: str) -> dict[str, str]:
    """Parse an ENV instruction's value (``K=V K2="V 2"`` or legacy ``K V``)."""
    value = value.strip()
    if "=" not in value.split(None, 1)[0]:
        key, _, rest = value.partition(" ")
        return {key: rest.strip()}
    result = {}
    for key, raw in _ENV_PAIR_RE.findall(value):
        if raw.startswith('"') and raw.endswith('"') and len(raw) >= 2:
            raw = raw[1:-1].replace('\\"', '"')
        result[key] = raw
    return result


def glob_prefix_length(pattern: str, rel_path: str) -> int | None:
    """
    Number of leading segments of ``rel_path`` matched by a COPY glob, or None.

    Wildcards never cross a ``/``: each pattern segment is matched against
    exactly one path segment.
    """
    pattern_parts = pattern.split("/")
    path_parts = rel_path.split("/")
    if len(path_parts) < len(pattern_parts):
        return None
    for pattern_part, path_part in zip(pattern_parts, path_parts):
        if not fnmatchcase(path_part, pattern_part):
            return None
    return len(pattern_parts)


@dataclass
class LocalCopy:
    """A COPY/ADD from the build context."""

    position: int
    sources: list[str]
    dest: str  # absolute, trailing slash kept

    def container_path(self, rel_path: str) -> str | None:
        """Where a context file lands in the container, or None if not copied."""
        many = len(self.sources) > 1
        for source in self.sources:
            if "://" in source:
                continue
            src = _normalize_source(source)
            if src == "":
                return posixpath.join(self.dest, rel_path)
            if rel_path == src:
                if self.dest.endswith("/") or many:
                    return posixpath.join(self.dest, posixpath.basename(rel_path))
                return self.dest
            if _GLOB_CHARS.search(src):
                matched = glob_prefix_length(src, rel_path)
                if matched is None:
                    continue
                parts = rel_path.split("/")
                if matched == len(parts):
                    return posixpath.join(self.dest, parts[-1])
                # a matched directory has its contents copied into dest
                return posixpath.join(self.dest, *parts[matched:])
            if rel_path.startswith(f"{src}/"):
                return posixpath.join(self.dest, rel_path[len(src) + 1 :])
        return None


@dataclass
class StageCopy:
    """A ``COPY --from=<stage>`` of build artefacts."""

    position: int
    from_stage: int
    sources: list[str]
    dest: str


@dataclass
class RunStep:
    position: int
    command: list[str]
    workdir: str
    env: dict[str, str]
    display: str


@dataclass
class StagePlan:
    """What livepush needs to know about one build stage."""

    index: int
    local_copies: list[LocalCopy] = field(default_factory=list)
    stage_copies: list[StageCopy] = field(default_factory=list)
    runs: list[RunStep] = field(default_factory=list)
    args: list[str] = field(default_factory=list)


def _resolve_dest(dest: str, workdir: str) -> str:
    resolved = posixpath.normpath(posixpath.join(workdir, dest))
    # "." and "dir/." name a directory just like a trailing slash does
    is_dir = dest.endswith("/") or dest == "." or dest.endswith("/.")
    if is_dir and not resolved.endswith("/"):
        resolved += "/"
    return resolved


def _run_command(instruction: Instruction) -> list[str]:
    if instruction.json_args is not None:
        return list(instruction.json_args)
    return ["/bin/sh", "-c", instruction.value]


def plan_stages(dockerfile: Dockerfile) -> list[StagePlan]:
    """Build a StagePlan per stage, tracking WORKDIR and ENV as they change."""
    plans = []
    for stage in dockerfile.stages:
        plan = StagePlan(stage.index)
        workdir = "/"
        env: dict[str, str] = {}
        for position, instruction in enumerate(stage.instructions):
            keyword = instruction.keyword
            if keyword == "WORKDIR":
                workdir = posixpath.normpath(posixpath.join(workdir, instruction.value.strip()))
            elif keyword == "ENV":
                env.update(parse_env_value(instruction.value))
            elif keyword == "ARG":
                plan.args.append(instruction.value.split("=", 1)[0].strip())
            elif keyword in ("COPY", "ADD"):
                args = instruction.args
                if len(args) < 2:
                    continue
                dest = _resolve_dest(instruction.dest, workdir)
                from_ref = instruction.flags.get("from")
                if from_ref is None:
                    plan.local_copies.append(LocalCopy(position, instruction.sources, dest))
                    continue
                source_stage = dockerfile.stage_for(from_ref)
                # Copies from external images never change
                if source_stage is not None:
                    plan.stage_copies.append(
                        StageCopy(position, source_stage.index, instruction.sources, dest)
                    )
            elif keyword == "RUN":
                plan.runs.append(
                    RunStep(
                        position,
                        _run_command(instruction),
                        workdir,
                        dict(env),
                        instruction.value,
                    )
                )
        plans.append(plan)
    return plans


class Livepush:
    """
    Livepush session for one service's running container.

    Args:
        dockerfile: The Dockerfile the container's image was built from
        context: Absolute path of the service's build context
        container_id: The running container
        stage_images: Final image id of each stage but the last, in order
        engine: The device's container engine
        on_event: Receives command and restart events
    """

    def __init__(
        self,
        dockerfile: Dockerfile,
        context: str,
        container_id: str,
        stage_images: list[str],
        engine: DockerEngine,
        on_event: EventHandler | None = None,
    ):
        self.dockerfile = dockerfile
        self.context = context
        self.container_id = container_id
        self.stage_images = list(stage_images)
        self.engine = engine
        self.on_event = on_event or (lambda event: None)
        self.stages = plan_stages(dockerfile)
        self.build_args: dict[str, str] = {}
        self.intermediate_containers: dict[int, str] = {}
        self._cancelled = False
        self._running = False

    def set_build_args(self, build_args: dict[str, str]) -> None:
        self.build_args = dict(build_args)

    def _stage_affected_at(self, stage: StagePlan, changed: list[str]) -> int | None:
        """Position of the first COPY in ``stage`` that copies any of ``changed``."""
        positions = [
            copy.position
            for copy in stage.local_copies
            if any(copy.container_path(path) is not None for path in changed)
        ]
        return min(positions) if positions else None

    def livepush_needed(self, updated: list[str], deleted: list[str]) -> bool:
        """Whether any changed context path is copied into some stage."""
        changed = [*updated, *deleted]
        return any(self._stage_affected_at(stage, changed) is not None for stage in self.stages)

    async def perform_livepush(self, updated: list[str], deleted: list[str]) -> None:
        """
        Apply file changes to the running container and restart it.

        Args:
            updated: Added or modified paths, relative to the context
            deleted: Removed paths, relative to the context

        Raises:
            ContainerNotRunningError: If the service container is not running
        """
        if not await self.engine.container_running(self.container_id):
            raise ContainerNotRunningError(f"Container {self.container_id} is not running")

        self._cancelled = False
        self._running = True
        try:
            changed = [*updated, *deleted]
            affected: dict[int, int] = {}
            last_index = len(self.stages) - 1
            for stage in self.stages:
                position = self._stage_affected_at(stage, changed)
                for stage_copy in stage.stage_copies:
                    if stage_copy.from_stage in affected:
                        position = (
                            stage_copy.position
                            if position is None
                            else min(position, stage_copy.position)
                        )
                if position is None:
                    continue
                if stage.index != last_index and stage.index >= len(self.stage_images):
                    logger.warning(
                        f"No image recorded for build stage {stage.index}; skipping its changes"
                    )
                    continue
                affected[stage.index] = position

            if not affected:
                logger.debug("No copied files changed; nothing to push")
                return

            for stage in self.stages:
                if stage.index not in affected:
                    continue
                if self._cancelled:
                    return
                container_id = await self._stage_container(stage.index, last_index)
                await self._apply_files(stage, container_id, updated, deleted)
                await self._apply_stage_copies(stage, container_id, affected)
                if not await self._replay_runs(stage, container_id, affected[stage.index]):
                    return

            if self._cancelled:
                return
            self.on_event(ServiceEvent("container_restart"))
            await self.engine.restart_container(self.container_id)
        finally:
            self._running = False

    async def _stage_container(self, stage_index: int, last_index: int) -> str:
        if stage_index == last_index:
            return self.container_id
        container_id = self.intermediate_containers.get(stage_index)
        if container_id is None:
            container_id = await self.engine.create_container(
                self.stage_images[stage_index], INTERMEDIATE_COMMAND
            )
            await self.engine.start_container(container_id)
            self.intermediate_containers[stage_index] = container_id
        return container_id

    async def _apply_files(
        self, stage: StagePlan, container_id: str, updated: list[str], deleted: list[str]
    ) -> None:
        to_copy: dict[str, str] = {}
        to_delete: list[str] = []
        for copy in stage.local_copies:
            for path in updated:
                target = copy.container_path(path)
                if target is not None:
                    to_copy[target] = path
            for path in deleted:
                target = copy.container_path(path)
                if target is not None:
                    to_delete.append(target)

        if to_copy:
            buffer = io.BytesIO()
            with tarfile.open(fileobj=buffer, mode="w", format=tarfile.PAX_FORMAT) as tar:
                for target, path in to_copy.items():
                    local_path = os.path.join(self.context, *path.split("/"))
                    if os.path.isfile(local_path):
                        tar.add(local_path, arcname=target.lstrip("/"), recursive=False)
            logger.debug(f"Copying {len(to_copy)} file(s) to container {container_id}")
            await self.engine.copy_archive_to_container(container_id, "/", buffer.getvalue())
        if to_delete:
            logger.debug(f"Deleting {len(to_delete)} file(s) in container {container_id}")
            await self.engine.exec(container_id, ["rm", "-f", *to_delete])

    async def _apply_stage_copies(
        self, stage: StagePlan, container_id: str, affected: dict[int, int]
    ) -> None:
        for stage_copy in stage.stage_copies:
            source_container = self.intermediate_containers.get(stage_copy.from_stage)
            if stage_copy.from_stage not in affected or source_container is None:
                continue
            for source in stage_copy.sources:
                archive = await self.engine.copy_from_container(source_container, source)
                target_dir, target_name = self._stage_copy_target(source, stage_copy)
                entries = []
                for info, data in read_tar_entries(archive):
                    head, _, tail = info.name.partition("/")
                    info.name = f"{target_name}/{tail}" if tail else target_name
                    entries.append((info, data))
                await self.engine.copy_archive_to_container(
                    container_id, target_dir, write_tar_entries(entries)
                )

    @staticmethod
    def _stage_copy_target(source: str, stage_copy: StageCopy) -> tuple[str, str]:
        base = posixpath.basename(source.rstrip("/"))
        if stage_copy.dest.endswith("/") or len(stage_copy.sources) > 1:
            return stage_copy.dest.rstrip("/") or "/", base
        return posixpath.dirname(stage_copy.dest) or "/", posixpath.basename(stage_copy.dest)

    async def _replay_runs(self, stage: StagePlan, container_id: str, from_position: int) -> bool:
        """Replay RUN steps after ``from_position``. Returns False if one failed or was cancelled."""
        build_env = {k: v for k, v in self.build_args.items() if k in stage.args}
        for run in stage.runs:
            if run.position < from_position:
                continue
            if self._cancelled:
                return False
            self.on_event(ServiceEvent("command_execute", run.display))

            def on_line(line: str) -> None:
                self.on_event(ServiceEvent("command_output", line))

            return_code = await self.engine.exec(
                container_id,
                run.command,
                workdir=run.workdir,
                env={**build_env, **run.env},
                on_line=on_line,
            )
            self.on_event(ServiceEvent("command_return", run.display, return_code=return_code))
            if return_code != 0:
                return False
        return True

    async def cancel(self) -> None:
        """Stop the running livepush before its next step."""
        if self._running:
            self._cancelled = True
            self.on_event(ServiceEvent("cancel"))

    async def cleanup_intermediate_containers(self) -> None:
        for stage_index, container_id in list(self.intermediate_containers.items()):
            try:
                await self.engine.remove_container(container_id, force=True)
            except RuntimeError as e:
                logger.warning(f"Failed to remove intermediate container {container_id}: {e}")
            del self.intermediate_containers[stage_index]
