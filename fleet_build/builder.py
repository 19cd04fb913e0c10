"""
Build execution.

Runs every resolved task against a container engine concurrently: external
images are pulled and retagged to their canonical name, everything else is
built from its context archive. Failures are collected per task and raised
once, as a single BuildError, after all tasks have finished.
"""

import asyncio
import dataclasses
import logging
from collections.abc import Callable
from datetime import UTC, datetime
from typing import Any

from fleet_common.errors import BuildError, ExpectedError
from fleet_common.events import ProgressSink, ServiceEvent
from fleet_common.models import (
    BuiltImage,
    DockerOpts,
    ExecutedTask,
    ImageDescriptor,
    ResolvedTask,
)

from . import qemu
from .docker_engine import DockerEngine
from .packager import registry_secrets_entry, replace_tar_entry, tar_directory
from .project import load_build_metadata, make_image_name
from .tasks import make_build_tasks

logger = logging.getLogger(__name__)

LOG_LENGTH_MAX = 512 * 1024  # 512KB


def truncate_log(text: str, max_length: int = LOG_LENGTH_MAX) -> str:
    """Keep the start of a log, cut at a line boundary, within ``max_length`` characters."""
    if len(text) <= max_length:
        return text
    cut = text[:max_length]
    newline = cut.rfind("\n")
    return cut[:newline] if newline > 0 else cut


def format_size(size: int | None) -> str:
    if size is None:
        return "unknown"
    value = float(size)
    for unit in ("B", "KB", "MB", "GB"):
        if value < 1024 or unit == "GB":
            return f"{value:.2f} {unit}" if unit != "B" else f"{int(value)} B"
        value /= 1024
    return f"{value:.2f} GB"


async def run_task(
    task: ResolvedTask,
    engine: DockerEngine,
    sink: ProgressSink,
    *,
    tag_external: bool = True,
    line_filter: Callable[[str], str] | None = None,
    on_line: Callable[[str, str], None] | None = None,
) -> ExecutedTask:
    """
    Build or pull a single task. Never raises for engine failures.

    Args:
        task: Resolved task
        engine: Target engine
        sink: Receives each output line for the task's service
        tag_external: Retag pulled images to the task's canonical tag
        line_filter: Rewrites build output lines before they are reported
        on_line: Also called with (service name, line) for every line
    """
    logs: list[str] = []
    kind = "pull_output" if task.external else "build_output"

    def handle(line: str) -> None:
        if line_filter is not None:
            line = line_filter(line)
        logs.append(line)
        sink.on_service_event(task.service_name, ServiceEvent(kind, line))
        if on_line is not None:
            on_line(task.service_name, line)

    start_time = datetime.now(UTC)
    try:
        if task.external:
            if task.image_name is None:
                raise ExpectedError(f'No image to pull for service "{task.service_name}"')
            await engine.pull(task.image_name, on_line=handle)
            name = task.image_name
            canonical = task.docker_opts.tag
            if tag_external and canonical and canonical != task.image_name:
                # Address every image by its canonical name from here on
                await engine.tag(task.image_name, canonical)
                await engine.remove_image(task.image_name)
                name = canonical
        else:
            await engine.build(
                task.build_stream or b"",
                task.docker_opts,
                dockerfile=task.dockerfile_name,
                on_line=handle,
            )
            name = task.docker_opts.tag
        return ExecutedTask(
            task=task,
            successful=True,
            name=name,
            logs="\n".join(logs),
            start_time=start_time,
            end_time=datetime.now(UTC),
        )
    except Exception as e:
        logger.debug(f"Task for service {task.service_name} failed: {e}")
        sink.on_service_event(task.service_name, ServiceEvent("error", str(e)))
        return ExecutedTask(
            task=task,
            successful=False,
            error=str(e),
            logs="\n".join(logs),
            start_time=start_time,
            end_time=datetime.now(UTC),
        )


async def perform_builds(
    tasks: list[ResolvedTask],
    engine: DockerEngine,
    sink: ProgressSink,
    *,
    tag_external: bool = True,
    line_filter: Callable[[str], str] | None = None,
    on_line: Callable[[str, str], None] | None = None,
) -> list[ExecutedTask]:
    """Run all tasks concurrently and return their results in task order."""
    coroutines = [
        run_task(
            task,
            engine,
            sink,
            tag_external=tag_external,
            line_filter=line_filter,
            on_line=on_line,
        )
        for task in tasks
    ]
    return list(await asyncio.gather(*coroutines))


def inspect_build_results(executed: list[ExecutedTask]) -> None:
    """
    Raise one aggregate error if any task failed.

    Raises:
        BuildError: Naming every failed service and its message
    """
    failures = [(t.service_name, t.error or "Unknown error") for t in executed if not t.successful]
    if failures:
        raise BuildError(failures)


def set_task_attributes(
    tasks: list[ResolvedTask],
    descriptors: list[ImageDescriptor],
    project_name: str,
    build_opts: DockerOpts,
    image_tag: str | None = None,
) -> list[ResolvedTask]:
    """
    Attach engine options to every task.

    Build arguments given on the command line take precedence over those
    in the composition. Descriptors are updated with the final tag.
    """
    by_service = {d.service_name: d for d in descriptors}
    result = []
    for task in tasks:
        tag = task.tag or make_image_name(project_name, task.service_name, image_tag)
        descriptor = by_service.get(task.service_name)
        if descriptor is not None and isinstance(descriptor.image, dict):
            tag = descriptor.image.get("tag") or tag
            descriptor.image["tag"] = tag
        args = {**task.args, **build_opts.build_args}
        opts = dataclasses.replace(
            build_opts,
            tag=tag,
            build_args=args,
            cache_from=list(build_opts.cache_from),
            labels=dict(build_opts.labels),
        )
        result.append(task.with_changes(tag=tag, args=args, docker_opts=opts))
    return result


async def check_build_secrets_requirements(engine: DockerEngine, source_dir: str) -> None:
    """
    Build secrets require balenaEngine.

    Raises:
        ExpectedError: If build secrets are configured and the engine is not balenaEngine
    """
    metadata, metadata_path = load_build_metadata(source_dir)
    if metadata.get("build-secrets") and not await engine.is_balena_engine():
        raise ExpectedError(
            'The "build secrets" feature currently requires balenaEngine, but a standard '
            "Docker\ndaemon was detected. Please use command-line options to specify the "
            "hostname and\nport number (or socket path) of a balenaEngine daemon. If the "
            "build secrets feature\nis not required, comment out or delete the "
            f"'build-secrets' entry in the file:\n\"{metadata_path}\""
        )


async def install_qemu_in_contexts(
    emulated: bool,
    arch: str,
    engine: DockerEngine,
    project_path: str,
    descriptors: list[ImageDescriptor],
) -> bool:
    """Install QEMU if needed and copy it into every build context."""
    needs_qemu = await qemu.install_qemu_if_needed(emulated, arch, engine)
    if needs_qemu:
        logger.info("Emulation is enabled")
        for descriptor in descriptors:
            if isinstance(descriptor.image, dict):
                context = descriptor.image.get("context") or "."
                qemu.copy_qemu(f"{project_path}/{context}", arch)
    return needs_qemu


def qemu_transpose_task(task: ResolvedTask) -> ResolvedTask:
    """Rewrite a build task's Dockerfile to run through QEMU."""
    content = qemu.transpose_dockerfile(task.dockerfile or "")
    name = task.dockerfile_name or "Dockerfile"
    return task.with_changes(
        build_stream=replace_tar_entry(task.build_stream or b"", name, content.encode())
    )


async def build_project(
    engine: DockerEngine,
    sink: ProgressSink,
    *,
    project_path: str,
    project_name: str,
    composition: dict[str, Any],
    descriptors: list[ImageDescriptor],
    arch: str,
    device_type: str,
    emulated: bool = False,
    build_opts: DockerOpts | None = None,
    image_tag: str | None = None,
    convert_eol: bool = True,
    multi_dockerignore: bool = False,
    use_gitignore: bool = True,
    registry_secrets: dict[str, dict[str, str]] | None = None,
) -> list[BuiltImage]:
    """
    Build every service of a project.

    Returns:
        One BuiltImage per service, in composition order

    Raises:
        BuildError: If one or more services failed to build
        ExpectedError: For resolution or build secrets problems
    """
    build_opts = build_opts or DockerOpts()
    await check_build_secrets_requirements(engine, project_path)
    logger.info(f"Building for {arch}/{device_type}")

    needs_qemu = await install_qemu_in_contexts(
        emulated, arch, engine, project_path, descriptors
    )
    archive = await asyncio.to_thread(
        tar_directory,
        project_path,
        composition=composition,
        convert_eol=convert_eol,
        multi_dockerignore=multi_dockerignore,
        use_gitignore=use_gitignore,
        pre_finalize=registry_secrets_entry(registry_secrets) if registry_secrets else None,
    )
    tasks = make_build_tasks(composition, archive, arch, device_type, project_name)
    tasks = set_task_attributes(tasks, descriptors, project_name, build_opts, image_tag)
    if needs_qemu:
        tasks = [t if t.external else qemu_transpose_task(t) for t in tasks]

    logger.debug("Prepared tasks; building...")
    line_filter = qemu.untranspose_line if needs_qemu else None
    if registry_secrets:
        with engine.registry_auth(secrets=registry_secrets) as auth_engine:
            executed = await perform_builds(tasks, auth_engine, sink, line_filter=line_filter)
    else:
        executed = await perform_builds(tasks, engine, sink, line_filter=line_filter)
    inspect_build_results(executed)
    return await inspect_built_images(engine, sink, executed)


async def inspect_built_images(
    engine: DockerEngine, sink: ProgressSink, executed: list[ExecutedTask]
) -> list[BuiltImage]:
    """Turn successful tasks into BuiltImages, recording each image's size."""
    images = []
    for result in executed:
        name = result.name or ""
        info = await engine.inspect_image(name)
        size = info.get("Size") if info else None
        images.append(
            BuiltImage(
                service_name=result.service_name,
                name=name,
                logs=truncate_log(result.logs),
                dockerfile=result.task.dockerfile,
                project_type=result.task.project_type,
                size=size,
                start_time=result.start_time,
                end_time=result.end_time,
            )
        )
        sink.on_service_event(
            result.service_name,
            ServiceEvent("build_status", f"Image size: {format_size(size)}"),
        )
    return images
