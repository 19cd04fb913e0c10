"""
Build task splitting and resolution.

The splitter partitions one project archive into a task per service: a
sub-archive of the service's build context, or a pull-only task for an
external image. The resolver then selects each build task's Dockerfile
for the target device type and architecture, rendering templates, and
returns new ResolvedTask snapshots. Input tasks are never modified.
"""

import copy
import logging
import posixpath
from collections.abc import Callable
from typing import Any

from fleet_common.errors import ExpectedError
from fleet_common.models import ResolvedTask, SplitTask

from .dockerfile import render_template
from .packager import read_tar_entries, replace_tar_entry, write_tar_entries

logger = logging.getLogger(__name__)

STANDARD_DOCKERFILE = "Standard Dockerfile"
DOCKERFILE_TEMPLATE = "Dockerfile.template"
ARCH_SPECIFIC_DOCKERFILE = "Architecture-specific Dockerfile"


def _normalize_context(context: str) -> str:
    context = posixpath.normpath(context.replace("\\", "/"))
    return "" if context == "." else context.strip("/")


def _context_archive(archive_entries: list, context: str) -> bytes:
    """Select the entries below ``context`` and make their names relative to it."""
    prefix = f"{context}/" if context else ""
    selected = []
    for info, data in archive_entries:
        if prefix and not info.name.startswith(prefix):
            continue
        if prefix:
            info = copy.copy(info)
            info.name = info.name[len(prefix) :]
        selected.append((info, data))
    return write_tar_entries(selected)


def split_build_stream(composition: dict[str, Any], archive: bytes) -> list[SplitTask]:
    """
    Produce exactly one task per service, in composition order.

    Args:
        composition: Normalized composition
        archive: Project archive from the packager

    Returns:
        SplitTask list; services with only an ``image`` get external tasks
        without a build stream
    """
    entries = read_tar_entries(archive)
    tasks = []
    for index, (service_name, service) in enumerate(composition["services"].items()):
        build = service.get("build")
        if build is None:
            tasks.append(
                SplitTask(
                    index=index,
                    service_name=service_name,
                    external=True,
                    image_name=service["image"],
                )
            )
            continue
        context = _normalize_context(build.get("context") or ".")
        tasks.append(
            SplitTask(
                index=index,
                service_name=service_name,
                context=context or ".",
                build_stream=_context_archive(entries, context),
                dockerfile_path=build.get("dockerfile"),
                args=dict(build.get("args") or {}),
                tag=service.get("image"),
            )
        )
    return tasks


def template_variables(
    arch: str,
    device_type: str,
    service_name: str,
    app_name: str | None = None,
    release_hash: str | None = None,
) -> dict[str, str]:
    variables = {
        "BALENA_ARCH": arch,
        "BALENA_MACHINE_NAME": device_type,
        "RESIN_ARCH": arch,
        "RESIN_MACHINE_NAME": device_type,
        "BALENA_SERVICE_NAME": service_name,
    }
    if app_name is not None:
        variables["BALENA_APP_NAME"] = app_name
    if release_hash is not None:
        variables["BALENA_RELEASE_HASH"] = release_hash
    return variables


def resolve_task(
    task: SplitTask,
    arch: str,
    device_type: str,
    app_name: str | None = None,
    release_hash: str | None = None,
    preprocess: Callable[[str], str] | None = None,
) -> ResolvedTask:
    """
    Select and render the Dockerfile for one build task.

    Precedence: a Dockerfile configured in the composition, then
    ``Dockerfile.<deviceType>``, ``Dockerfile.<arch>``,
    ``Dockerfile.template`` and finally ``Dockerfile``.

    Raises:
        ExpectedError: If no Dockerfile can be found
    """
    if task.external:
        return ResolvedTask.from_split(task)

    files = {info.name: data for info, data in read_tar_entries(task.build_stream or b"")}
    candidates: list[tuple[str, str]]
    if task.dockerfile_path:
        configured = posixpath.normpath(task.dockerfile_path)
        project_type = (
            DOCKERFILE_TEMPLATE if configured.endswith(".template") else STANDARD_DOCKERFILE
        )
        candidates = [(configured, project_type)]
    else:
        candidates = [
            (f"Dockerfile.{device_type}", ARCH_SPECIFIC_DOCKERFILE),
            (f"Dockerfile.{arch}", ARCH_SPECIFIC_DOCKERFILE),
            ("Dockerfile.template", DOCKERFILE_TEMPLATE),
            ("Dockerfile", STANDARD_DOCKERFILE),
        ]

    for source_path, project_type in candidates:
        if source_path not in files:
            continue
        content = files[source_path].decode()
        if project_type != STANDARD_DOCKERFILE:
            content = render_template(
                content,
                template_variables(arch, device_type, task.service_name, app_name, release_hash),
            )
        if preprocess is not None:
            content = preprocess(content)

        if source_path.endswith(".template"):
            build_name = source_path.removesuffix(".template")
        elif project_type == ARCH_SPECIFIC_DOCKERFILE:
            build_name = "Dockerfile"
        else:
            build_name = source_path
        build_stream = task.build_stream
        if build_name != source_path or content.encode() != files[source_path]:
            build_stream = replace_tar_entry(build_stream or b"", build_name, content.encode())

        return ResolvedTask.from_split(
            task,
            build_stream=build_stream,
            project_type=project_type,
            dockerfile=content,
            dockerfile_path=source_path,
            dockerfile_name=build_name,
        )

    raise ExpectedError(
        f'Project type for service "{task.service_name}" could not be determined. '
        "Missing a Dockerfile?"
    )


def perform_resolution(
    tasks: list[SplitTask],
    arch: str,
    device_type: str,
    *,
    app_name: str | None = None,
    release_hash: str | None = None,
    preprocess: Callable[[str], str] | None = None,
) -> list[ResolvedTask]:
    """Resolve tasks one at a time, bounding how many contexts are held in memory at once."""
    return [
        resolve_task(task, arch, device_type, app_name, release_hash, preprocess)
        for task in tasks
    ]


def make_build_tasks(
    composition: dict[str, Any],
    archive: bytes,
    arch: str,
    device_type: str,
    project_name: str,
    release_hash: str = "unavailable",
    preprocess: Callable[[str], str] | None = None,
) -> list[ResolvedTask]:
    """Split the project archive and resolve every task."""
    tasks = split_build_stream(composition, archive)
    logger.debug("Found build tasks:")
    for task in tasks:
        info = f"image pull [{task.image_name}]" if task.external else f"build [{task.context}]"
        logger.debug(f"    {task.service_name}: {info}")

    logger.debug(f"Resolving services with [{device_type}|{arch}]")
    resolved = perform_resolution(
        tasks,
        arch,
        device_type,
        app_name=project_name,
        release_hash=release_hash,
        preprocess=preprocess,
    )

    logger.debug("Found project types:")
    for task in resolved:
        kind = "External image" if task.external else task.project_type
        logger.debug(f"    {task.service_name}: {kind}")
    return resolved
