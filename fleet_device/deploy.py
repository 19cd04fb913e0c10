"""
Deploy a project to a device in local mode.

Builds every service on the device's own engine, then replaces the
device's local target state so the supervisor runs the freshly built
images. Unless detached, device logs are streamed afterwards and, with
livepush enabled, file changes are applied to the running containers.
"""

import asyncio
import copy
import logging
import re
import socket
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Any

from fleet_build.builder import (
    check_build_secrets_requirements,
    inspect_build_results,
    perform_builds,
)
from fleet_build.docker_engine import DockerEngine
from fleet_build.dockerfile import generate_live_dockerfile
from fleet_build.packager import tar_directory
from fleet_build.project import load_project, make_image_name
from fleet_build.tasks import make_build_tasks
from fleet_common.errors import BuildError, DeviceAPIError, ExpectedError
from fleet_common.events import ProgressSink
from fleet_common.models import ComposeProject, DeviceInfo, DockerOpts, ResolvedTask

from .api import DEFAULT_SUPERVISOR_PORT, DeviceAPI
from .logs import display_device_logs

logger = logging.getLogger(__name__)

LOCAL_APPNAME = "localapp"
LOCAL_RELEASEHASH = "10ca12e1ea5e"
LOCAL_PROJECT_NAME = "local_image"

MIN_LOCAL_MODE_VERSION = (7, 21, 4)
MIN_LIVEPUSH_VERSION = (9, 7, 0)

_ENV_RE = re.compile(r"^(?:([^\s:]+):)?([^\s]+?)=(.*)$")
_ARROW_RE = re.compile(r"^.*\s*-+>\s*(.+)")
_FROM_STEP_RE = re.compile(r"step \d+(?:/\d+)?\s*:\s*FROM", re.IGNORECASE)
_RUNNING_IN_RE = re.compile(r"^\s*--->\s*Running\s*in\s*([a-f0-9]*)\s*$", re.IGNORECASE)
_VERSION_RE = re.compile(r"^v?(\d+)\.(\d+)\.(\d+)")


@dataclass
class DeviceDeployOptions:
    """Options of the ``push`` command when targeting a local device."""

    source: str
    device_host: str
    device_port: int | None = None
    dockerfile_path: str | None = None
    registry_secrets: dict[str, dict[str, str]] = field(default_factory=dict)
    multi_dockerignore: bool = False
    nocache: bool = False
    noparent_check: bool = False
    nolive: bool = False
    pull: bool = False
    detached: bool = False
    services: list[str] | None = None
    system: bool = False
    env: list[str] = field(default_factory=list)
    convert_eol: bool = True
    use_gitignore: bool = True


def parse_version(version: str) -> tuple[int, int, int]:
    """Parse the leading ``major.minor.patch`` of a supervisor version."""
    match = _VERSION_RE.match(version.strip())
    if match is None:
        raise ValueError(f"Invalid version: {version}")
    major, minor, patch = (int(part) for part in match.groups())
    return major, minor, patch


def environment_from_input(
    envs: list[str], service_names: list[str]
) -> dict[str, dict[str, str]]:
    """
    Parse ``[service:]NAME=value`` entries into per-service variables.

    An entry without a service prefix applies to every service. A prefix
    that is not a known service is taken as part of the variable name.

    Raises:
        ExpectedError: If an entry cannot be parsed
    """
    environment: dict[str, dict[str, str]] = {name: {} for name in service_names}
    for env in envs:
        match = _ENV_RE.match(env)
        if match is None:
            raise ExpectedError(f"Unable to parse environment variable: {env}")
        service, name, value = match.groups()
        if service is not None and service not in environment:
            logger.debug(
                f"Service {service} not found in project, using {service}:{name} as variable name"
            )
            name = f"{service}:{name}"
            service = None
        targets = [service] if service is not None else service_names
        for target in targets:
            environment[target][name] = value
    return environment


def extract_docker_arrow_message(line: str) -> str | None:
    """Return the text after ``--->`` in a classic builder output line."""
    match = _ARROW_RE.match(line)
    return match.group(1) if match else None


class StageIdScanner:
    """
    Collect, per service, the final image id of every build stage but the last.

    Fed with classic builder output: when a ``Step N/M : FROM`` line starts a
    new stage, the last ``---> <id>`` message seen belongs to the stage
    that just ended. Also reports intermediate container ids from
    ``---> Running in <id>`` lines.
    """

    def __init__(self, on_container_id: Callable[[str], None] | None = None):
        self.stage_ids: dict[str, list[str]] = {}
        self._last_arrow: dict[str, str | None] = {}
        self.on_container_id = on_container_id

    def __call__(self, service_name: str, line: str) -> None:
        ids = self.stage_ids.setdefault(service_name, [])
        if self.on_container_id is not None:
            running = _RUNNING_IN_RE.match(line)
            if running:
                self.on_container_id(running.group(1))
        if _FROM_STEP_RE.search(line):
            last = self._last_arrow.get(service_name)
            if last is not None:
                ids.append(last)
            return
        message = extract_docker_arrow_message(line)
        if message is not None:
            self._last_arrow[service_name] = message.strip()


def local_image_name(service_name: str) -> str:
    """The name a service image is known by on the device."""
    return make_image_name(LOCAL_PROJECT_NAME, service_name, "latest")


async def assign_docker_build_opts(
    engine: DockerEngine, tasks: list[ResolvedTask], opts: DeviceDeployOptions
) -> list[ResolvedTask]:
    """Label every task as a local image and cache from the images already on the device."""
    cache_from = await engine.list_image_ids()
    logger.debug(f"Using {len(cache_from)} on-device images for cache...")
    assigned = []
    for task in tasks:
        docker_opts = DockerOpts(
            tag=local_image_name(task.service_name),
            cache_from=cache_from,
            labels={
                "io.resin.local.image": "1",
                "io.resin.local.service": task.service_name,
            },
            build_args=dict(task.args),
            nocache=opts.nocache,
            pull=opts.pull,
            force_rm=True,
        )
        assigned.append(task.with_changes(docker_opts=docker_opts))
    return assigned


def generate_target_state(
    current_state: dict[str, Any],
    composition: dict[str, Any],
    env: dict[str, dict[str, str]] | None = None,
) -> dict[str, Any]:
    """
    Build a local target state running the composition with the built images.

    Every service of the composition is included, so re-applying it after
    a single-service rebuild leaves the other services running. The current
    state is copied and its local application replaced.
    """
    services: dict[str, Any] = {}
    for idx, (name, service) in enumerate(composition.get("services", {}).items(), start=1):
        opts = copy.deepcopy(service)
        opts.pop("build", None)
        opts.pop("image", None)
        opts["environment"] = {**opts.get("environment", {}), **(env or {}).get(name, {})}
        services[str(idx)] = {
            "environment": {},
            "labels": {},
            **opts,
            "imageId": idx,
            "serviceName": name,
            "serviceId": idx,
            "image": local_image_name(name),
            "running": True,
        }

    target_state = copy.deepcopy(current_state)
    target_state.setdefault("local", {})["apps"] = {
        "1": {
            "name": LOCAL_APPNAME,
            "commit": LOCAL_RELEASEHASH,
            "releaseId": "1",
            "services": services,
            "volumes": copy.deepcopy(composition.get("volumes", {})),
            "networks": copy.deepcopy(composition.get("networks", {})),
        }
    }
    return target_state


def _project_tasks(
    project: ComposeProject,
    opts: DeviceDeployOptions,
    device_info: DeviceInfo,
) -> list[ResolvedTask]:
    archive = tar_directory(
        opts.source,
        composition=project.composition,
        convert_eol=opts.convert_eol,
        multi_dockerignore=opts.multi_dockerignore,
        use_gitignore=opts.use_gitignore,
    )
    return make_build_tasks(
        project.composition,
        archive,
        device_info.arch,
        device_info.device_type,
        LOCAL_APPNAME,
        LOCAL_RELEASEHASH,
        preprocess=None if opts.nolive else generate_live_dockerfile,
    )


async def perform_device_builds(
    engine: DockerEngine,
    sink: ProgressSink,
    project: ComposeProject,
    opts: DeviceDeployOptions,
    device_info: DeviceInfo,
) -> tuple[list[ResolvedTask], dict[str, list[str]]]:
    """
    Build every service on the device engine.

    Returns:
        Tuple of (tasks, stage image ids per service)

    Raises:
        BuildError: If any service fails to build
    """
    tasks = await asyncio.to_thread(_project_tasks, project, opts, device_info)
    tasks = await assign_docker_build_opts(engine, tasks, opts)

    scanner = StageIdScanner()
    logger.debug("Starting builds...")
    if opts.registry_secrets:
        with engine.registry_auth(secrets=opts.registry_secrets) as auth_engine:
            executed = await perform_builds(tasks, auth_engine, sink, on_line=scanner)
    else:
        executed = await perform_builds(tasks, engine, sink, on_line=scanner)
    inspect_build_results(executed)
    return tasks, scanner.stage_ids


async def rebuild_single_task(
    service_name: str,
    engine: DockerEngine,
    sink: ProgressSink,
    project: ComposeProject,
    opts: DeviceDeployOptions,
    device_info: DeviceInfo,
    container_id_cb: Callable[[str], None] | None = None,
) -> tuple[ResolvedTask, list[str]]:
    """
    Rebuild one service on the device engine.

    Args:
        container_id_cb: Called with each intermediate build container id,
            so that a rebuild can be cancelled by removing it

    Returns:
        Tuple of (the rebuilt task, its stage image ids)

    Raises:
        ExpectedError: If the service has no build task
        BuildError: If the build fails
    """
    tasks = await asyncio.to_thread(_project_tasks, project, opts, device_info)
    task = next((t for t in tasks if t.service_name == service_name), None)
    if task is None:
        raise ExpectedError(f"Could not find build task for service {service_name}")
    [task] = await assign_docker_build_opts(engine, [task], opts)

    scanner = StageIdScanner(on_container_id=container_id_cb)
    [executed] = await perform_builds([task], engine, sink, on_line=scanner)
    if not executed.successful:
        raise BuildError([(service_name, executed.error or "Unknown error")])
    return task, scanner.stage_ids.get(service_name, [])


def resolve_device_host(host: str) -> str:
    """Resolve ``.local`` mDNS names to an IPv4 address."""
    if ".local" not in host:
        return host
    try:
        address = socket.getaddrinfo(host, None, socket.AF_INET)[0][4][0]
    except OSError as e:
        raise ExpectedError(f"Could not resolve device address {host}: {e}") from e
    logger.debug(f"Resolved {host} to {address}")
    return str(address)


async def check_supervisor(api: DeviceAPI, live: bool) -> bool:
    """
    Make sure the device supervisor supports local mode.

    Returns:
        Whether livepush can be used

    Raises:
        ExpectedError: If the supervisor is unreachable or too old
    """
    try:
        await asyncio.to_thread(api.ping)
    except DeviceAPIError as e:
        raise ExpectedError(
            f"Could not communicate with device supervisor at address "
            f"{api.host}:{api.port}.\nDevice may not have local mode enabled. Check with:\n"
            "  balena device local-mode <device-uuid>"
        ) from e

    too_old = ExpectedError(
        "The supervisor version on this remote device does not support multicontainer "
        "local mode. Please update your device to balenaOS v2.20.0 or greater from the "
        "dashboard."
    )
    try:
        version = parse_version(await asyncio.to_thread(api.get_version))
    except (DeviceAPIError, ValueError) as e:
        raise too_old from e
    logger.info(f"Found supervisor version {'.'.join(map(str, version))}")
    if version < MIN_LOCAL_MODE_VERSION:
        raise too_old
    if live and version < MIN_LIVEPUSH_VERSION:
        logger.warning(
            "Using livepush requires a balena supervisor version >= 9.7.0. "
            "A live session will not be started."
        )
        return False
    return live


async def deploy_to_device(opts: DeviceDeployOptions, sink: ProgressSink) -> None:
    """
    Build a project on a device and run it there.

    Raises:
        ExpectedError: If the device cannot be used, or for invalid input
        BuildError: If any service fails to build
    """
    # Imported here: the manager pulls in the file watcher
    from .live import LivepushManager

    host = resolve_device_host(opts.device_host)
    api = DeviceAPI(host, DEFAULT_SUPERVISOR_PORT)
    live = await check_supervisor(api, not opts.nolive)
    opts.nolive = not live

    logger.info(f"Starting build on device {host}")
    project = load_project(
        opts.source,
        project_name="local",
        dockerfile_path=opts.dockerfile_path,
        is_local=True,
    )
    engine = DockerEngine(host=host, port=opts.device_port or 2375)
    if not await engine.ping():
        raise ExpectedError(
            f"Could not connect to the container engine on device {host}:{engine.port}"
        )
    await check_build_secrets_requirements(engine, opts.source)

    device_info = await asyncio.to_thread(api.get_device_info)
    tasks, stage_ids = await perform_device_builds(engine, sink, project, opts, device_info)

    service_names = list(project.composition.get("services", {}))
    env = environment_from_input(opts.env, service_names)

    logger.debug("Setting device state...")
    current_state = await asyncio.to_thread(api.get_target_state)
    target_state = generate_target_state(current_state, project.composition, env)
    await asyncio.to_thread(api.set_target_state, target_state)

    if opts.detached:
        logger.info("Running in detached mode, no service logs will be shown")
        return

    manager = None
    try:
        if live:
            manager = LivepushManager(
                api=api,
                engine=engine,
                sink=sink,
                project=project,
                opts=opts,
                tasks=tasks,
                stage_ids=stage_ids,
            )
            await manager.init()
            logger.info("Watching for file changes...")
        await display_device_logs(api, sink, opts.system, opts.services)
    finally:
        if manager is not None:
            manager.close()
            await manager.cleanup()
